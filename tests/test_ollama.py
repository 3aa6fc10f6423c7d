from __future__ import annotations

import json

import pytest
import requests

from conftest import FakeHttp, FakeResponse, chat_reply, image_bytes
from config.settings import RemoteSettings
from core.classifiers.ollama_classifier import (
    RESPONSE_SCHEMA,
    OllamaClassifier,
    check_connection,
    extract_first_json_object,
    list_models,
    parse_model_reply,
)
from core.errors import RemoteEngineError
from core.models.domain import CategoryKey

REPLY = {
    "category": "food_cafe",
    "scores": {"food_cafe": 0.7, "people": 0.2, "other": 0.1},
    "tags": ["coffee", " latte ", ""],
    "caption": "A latte on a wooden table",
    "text_in_image": "",
}


def classifier(http: FakeHttp, **remote) -> OllamaClassifier:
    return OllamaClassifier(RemoteSettings(**remote), max_edge=64, session=http)


def test_parse_tolerates_fences_and_prose() -> None:
    content = "Sure! Here it is:\n```json\n" + json.dumps(REPLY) + "\n```\nanything else?"

    reply = parse_model_reply(content)

    assert reply.category is CategoryKey.FOOD_CAFE
    assert reply.scores["food_cafe"] == pytest.approx(0.7)
    assert reply.tags == ("coffee", "latte")
    assert reply.caption == "A latte on a wooden table"
    assert reply.text_in_image is None


def test_parse_falls_back_to_one_hot_and_legacy_keys() -> None:
    reply = parse_model_reply('{"category": "selfie", "tags_ko": ["a"], "caption_ko": "b"}')

    assert reply.category is CategoryKey.OTHER
    assert reply.scores["other"] == 1.0
    assert reply.tags == ("a",)
    assert reply.caption == "b"


def test_parse_rejects_unusable_answers() -> None:
    with pytest.raises(RemoteEngineError):
        parse_model_reply("no json here")
    with pytest.raises(RemoteEngineError):
        parse_model_reply('{"caption": "nothing to classify"}')


def test_first_balanced_object_is_extracted() -> None:
    assert extract_first_json_object('x {"a": {"b": 1}} {"c": 2}') == '{"a": {"b": 1}}'
    assert extract_first_json_object("{ unbalanced") is None


def test_classify_sends_schema_and_image() -> None:
    http = FakeHttp([chat_reply(json.dumps(REPLY))])

    output = classifier(http, model="llava:7b").classify(image_bytes(size=(256, 128)))

    body = http.posts[0]["json"]
    assert http.posts[0]["url"] == "http://127.0.0.1:11434/api/chat"
    assert body["model"] == "llava:7b"
    assert body["format"] == RESPONSE_SCHEMA
    assert body["think"] is False
    assert body["stream"] is False
    assert len(body["messages"][1]["images"]) == 1
    assert output.category is CategoryKey.FOOD_CAFE
    assert output.top_score == pytest.approx(0.7)
    assert output.model == "llava:7b"
    assert "message.content:" in output.analysis_log


def test_format_negotiation_downgrades_to_json() -> None:
    http = FakeHttp([FakeResponse(400, text="invalid format: schema not supported"), chat_reply(json.dumps(REPLY))])

    output = classifier(http).classify(image_bytes())

    assert [post["json"].get("format") for post in http.posts] == [RESPONSE_SCHEMA, "json"]
    assert output.category is CategoryKey.FOOD_CAFE


def test_think_field_is_dropped_when_server_rejects_it() -> None:
    rejected = 'json: unknown field "think"'
    http = FakeHttp([FakeResponse(400, text=rejected) for _ in range(3)] + [chat_reply(json.dumps(REPLY))])

    classifier(http).classify(image_bytes())

    assert "think" in http.posts[0]["json"]
    assert "think" not in http.posts[-1]["json"]
    assert http.posts[-1]["json"]["format"] == RESPONSE_SCHEMA


def test_missing_model_gets_a_friendly_error() -> None:
    http = FakeHttp([FakeResponse(404, text='{"error":"model \\"llava\\" not found, try pulling it first"}')])

    with pytest.raises(RemoteEngineError, match="ollama pull"):
        classifier(http, model="llava").classify(image_bytes())


def test_timeout_becomes_remote_engine_error() -> None:
    http = FakeHttp([requests.Timeout("read timed out")])

    with pytest.raises(RemoteEngineError, match="timed out"):
        classifier(http, timeout_seconds=2).classify(image_bytes())
    assert http.posts[0]["timeout"] == 2


def test_streaming_forwards_deltas() -> None:
    text = json.dumps(REPLY)
    halves = [text[: len(text) // 2], text[len(text) // 2 :]]
    lines = [json.dumps({"message": {"content": part}, "done": False}) for part in halves]
    lines.append(json.dumps({"message": {"content": ""}, "done": True}))
    http = FakeHttp([FakeResponse(200, text="", lines=lines)])
    deltas = []

    output = classifier(http).classify(image_bytes(), on_delta=deltas.append)

    assert deltas == halves
    assert http.posts[0]["stream"] is True
    assert output.category is CategoryKey.FOOD_CAFE


def test_stream_without_done_is_an_error() -> None:
    lines = [json.dumps({"message": {"content": "{"}, "done": False})]
    http = FakeHttp([FakeResponse(200, text="", lines=lines)])

    with pytest.raises(RemoteEngineError, match="ended"):
        classifier(http).classify(image_bytes(), on_delta=lambda _: None)


def test_empty_model_name_is_rejected() -> None:
    with pytest.raises(RemoteEngineError):
        classifier(FakeHttp(), model="  ")


def test_list_models_sorted_and_unique() -> None:
    payload = {"models": [{"name": "qwen2.5vl:7b"}, {"model": "llava:7b"}, {"name": "llava:7b"}, {"name": ""}]}
    http = FakeHttp([FakeResponse(200, payload=payload)])

    assert list_models("http://host:11434/", session=http) == ["llava:7b", "qwen2.5vl:7b"]
    assert http.gets[0]["url"] == "http://host:11434/api/tags"


def test_connection_check() -> None:
    assert check_connection("http://host", session=FakeHttp([FakeResponse(200, payload={"models": []})])) == "connected"
    with pytest.raises(RemoteEngineError):
        check_connection("http://host", session=FakeHttp([requests.ConnectionError("refused")]))
    with pytest.raises(RemoteEngineError):
        check_connection("http://host", session=FakeHttp([FakeResponse(500, text="boom")]))


def test_one_off_tag_requests_close_their_session(monkeypatch) -> None:
    http = FakeHttp([FakeResponse(200, payload={"models": [{"name": "llava:7b"}]})])
    monkeypatch.setattr(requests, "Session", lambda: http)

    assert list_models("http://host") == ["llava:7b"]
    assert http.closed


def test_injected_session_stays_open() -> None:
    http = FakeHttp([FakeResponse(200, payload={"models": []})])

    check_connection("http://host", session=http)

    assert not http.closed


def test_format_negotiation_ends_with_a_plain_request() -> None:
    http = FakeHttp([FakeResponse(400, text="invalid format: expected object") for _ in range(3)])

    with pytest.raises(RemoteEngineError, match="400"):
        classifier(http).classify(image_bytes())

    assert [post["json"].get("format", "none") for post in http.posts] == [RESPONSE_SCHEMA, "json", "none"]
