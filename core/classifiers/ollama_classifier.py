# Path: core/classifiers/ollama_classifier.py
# Purpose: Classify images with a vision-language model served by Ollama.
# Layer: core/classifiers.
# Details: Negotiates the response format, tolerates loosely formatted JSON, and can stream partial text.

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests

from config.settings import RemoteSettings
from core.errors import RemoteEngineError
from core.models.domain import CATEGORY_KEYS, CategoryKey, ScoreVector
from core.scoring.preprocess import encode_jpeg_base64

from .base import ClassificationOutput, Classifier, DeltaCallback

logger = logging.getLogger(__name__)

CONNECTION_TIMEOUT_SECONDS = 5.0
LIST_MODELS_TIMEOUT_SECONDS = 10.0
MAX_LOGGED_CONTENT = 20000

_CATEGORY_VALUES = [key.value for key in CATEGORY_KEYS]

RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "category": {"type": "string", "enum": _CATEGORY_VALUES},
        "scores": {
            "type": "object",
            "additionalProperties": False,
            "properties": {key: {"type": "number", "minimum": 0, "maximum": 1} for key in _CATEGORY_VALUES},
            "required": _CATEGORY_VALUES,
        },
        "tags": {"type": "array", "minItems": 0, "maxItems": 12, "items": {"type": "string"}},
        "caption": {"type": "string"},
        "text_in_image": {"type": "string"},
    },
    "required": ["category", "scores", "tags", "caption", "text_in_image"],
}

SYSTEM_PROMPT = (
    "You are a strict JSON generator. Return ONLY a JSON object, "
    "no markdown, no prose, no code fences."
)

USER_PROMPT = (
    "Analyze the image and output JSON with EXACT keys: "
    '{"category": "' + "|".join(_CATEGORY_VALUES) + '", '
    '"scores": {' + ", ".join(f'"{key}": number' for key in _CATEGORY_VALUES) + "}, "
    '"tags": string[], "caption": string, "text_in_image": string}. '
    "scores must be between 0 and 1 and sum to 1."
)

# Sentinel for "send no format field".
_NO_FORMAT = object()
FORMAT_ATTEMPTS: Tuple[Any, ...] = (RESPONSE_SCHEMA, "json", _NO_FORMAT)


@dataclass(frozen=True)
class ModelReply:
    scores: ScoreVector
    category: CategoryKey
    tags: Tuple[str, ...] = ()
    caption: Optional[str] = None
    text_in_image: Optional[str] = None


def strip_code_fences(text: str) -> str:
    trimmed = text.strip()
    for prefix in ("```json", "```JSON", "```"):
        if trimmed.startswith(prefix):
            trimmed = trimmed[len(prefix):]
            break
    if trimmed.endswith("```"):
        trimmed = trimmed[:-3]
    return trimmed.strip()


def extract_first_json_object(text: str) -> Optional[str]:
    """Return the first brace-balanced ``{...}`` span, if any."""

    start: Optional[int] = None
    depth = 0
    for index, char in enumerate(text):
        if char == "{":
            if start is None:
                start = index
            depth += 1
        elif char == "}" and start is not None:
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def _first_str(payload: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str):
            return value.strip()
    return None


def parse_model_reply(content: str) -> ModelReply:
    """Parse a model's JSON answer, tolerating code fences and surrounding prose."""

    cleaned = strip_code_fences(content)
    candidate = extract_first_json_object(cleaned) or cleaned
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise RemoteEngineError(f"Could not parse model JSON: {exc} | head: {cleaned[:220]}") from exc
    if not isinstance(payload, dict):
        raise RemoteEngineError("Model JSON is not an object.")

    raw_category = payload.get("category")
    raw_scores = payload.get("scores")
    if isinstance(raw_scores, dict):
        scores = ScoreVector.from_mapping(raw_scores)
    elif raw_category is not None:
        scores = ScoreVector.one_hot(CategoryKey.parse(raw_category))
    else:
        raise RemoteEngineError("Model JSON has neither scores nor category.")
    category = CategoryKey.parse(raw_category) if raw_category is not None else scores.top()[0]

    raw_tags = payload.get("tags", payload.get("tags_ko"))
    if not isinstance(raw_tags, list):
        raw_tags = []
    tags = tuple(tag.strip() for tag in raw_tags if isinstance(tag, str) and tag.strip())
    caption = _first_str(payload, "caption", "caption_ko") or None
    text_in_image = _first_str(payload, "text_in_image", "text_in_image_ko") or None
    return ModelReply(scores=scores, category=category, tags=tags, caption=caption, text_in_image=text_in_image)


def _is_format_problem(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in ("format", "schema", "expected", "unknown field"))


def _is_think_unsupported(text: str) -> bool:
    lowered = text.lower()
    return "unknown field" in lowered and "think" in lowered


def _truncate(text: str, limit: int = MAX_LOGGED_CONTENT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n...(truncated)..."


class OllamaClassifier(Classifier):
    """Remote classifier calling Ollama's ``/api/chat`` endpoint with the image attached."""

    id = "ollama"
    streams = True

    def __init__(
        self,
        settings: RemoteSettings,
        session: requests.Session,
        max_edge: int = 768,
        jpeg_quality: int = 60,
        resize_enabled: bool = True,
    ) -> None:
        if not settings.model.strip():
            raise RemoteEngineError("Remote model name is empty.")
        self.settings = settings
        self.max_edge = max_edge
        self.jpeg_quality = jpeg_quality
        self.resize_enabled = resize_enabled
        self.http = session
        self.url = f"{settings.base_url.rstrip('/')}/api/chat"

    def classify(self, data: bytes, on_delta: Optional[DeltaCallback] = None) -> ClassificationOutput:
        """Send one image; stream partial text to ``on_delta`` when it is given."""

        image_b64 = encode_jpeg_base64(data, self.max_edge, self.jpeg_quality, self.resize_enabled)
        started = time.perf_counter()
        stream = on_delta is not None
        response = self._negotiate(image_b64, stream)
        with response:
            if stream:
                content = self._read_stream(response, on_delta)
                reply = parse_model_reply(content)
            else:
                content, reply = self._read_single(response)
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        category_score = reply.scores[reply.category]
        log = (
            f"engine: ollama\nurl: {self.url}\nmodel: {self.settings.model}\n"
            f"think: {self.settings.think}\nstream: {stream}\nremote_ms: {elapsed_ms}\n\n"
            f"message.content:\n{_truncate(content)}\n"
        )
        return ClassificationOutput(
            scores=reply.scores,
            category=reply.category,
            top_score=category_score,
            model=self.settings.model,
            tags=reply.tags,
            caption=reply.caption,
            text_in_image=reply.text_in_image,
            analysis_log=log,
            inference_ms=elapsed_ms,
        )

    def _body(self, image_b64: str, stream: bool, send_think: bool, response_format: Any) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": self.settings.model,
            "stream": stream,
            "options": {"temperature": 0},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": USER_PROMPT, "images": [image_b64]},
            ],
        }
        if send_think and not self.settings.think:
            body["think"] = False
        if response_format is not _NO_FORMAT:
            body["format"] = response_format
        return body

    def _post(self, body: Dict[str, Any], stream: bool) -> requests.Response:
        try:
            return self.http.post(self.url, json=body, timeout=self.settings.timeout_seconds, stream=stream)
        except requests.Timeout as exc:
            raise RemoteEngineError(f"Remote engine timed out after {self.settings.timeout_seconds:g}s") from exc
        except requests.RequestException as exc:
            raise RemoteEngineError(f"Remote engine request failed: {exc}") from exc

    def _try_formats(self, image_b64: str, stream: bool, send_think: bool) -> requests.Response:
        """Walk schema, then ``"json"``, then no format, while the server objects to the format."""

        for response_format in FORMAT_ATTEMPTS[:-1]:
            response = self._post(self._body(image_b64, stream, send_think, response_format), stream)
            if response.ok or not _is_format_problem(response.text):
                return response
            response.close()
        return self._post(self._body(image_b64, stream, send_think, FORMAT_ATTEMPTS[-1]), stream)

    def _negotiate(self, image_b64: str, stream: bool) -> requests.Response:
        response = self._try_formats(image_b64, stream, send_think=True)
        if response.ok:
            return response
        if _is_think_unsupported(response.text):
            logger.info("Server rejected the think field; retrying without it")
            response.close()
            response = self._try_formats(image_b64, stream, send_think=False)
            if response.ok:
                return response
        status, text = response.status_code, response.text
        response.close()
        raise self._friendly_error(status, text)

    def _friendly_error(self, status: int, text: str) -> RemoteEngineError:
        lowered = text.lower()
        model = self.settings.model
        if status == 404 and "model" in lowered:
            return RemoteEngineError(f"Model not found ({model}). Run `ollama pull {model}` then retry. raw: {text}")
        if "does not support image" in lowered or "images are not supported" in lowered:
            return RemoteEngineError(
                f"Model does not support images ({model}). Choose a vision model such as llava or qwen2.5vl. raw: {text}"
            )
        return RemoteEngineError(f"Remote engine error {status}: {text}")

    def _read_single(self, response: requests.Response) -> Tuple[str, ModelReply]:
        text = response.text
        try:
            content = response.json()["message"]["content"]
        except (ValueError, KeyError, TypeError) as exc:
            raise RemoteEngineError("Response is missing message.content") from exc
        if not isinstance(content, str):
            raise RemoteEngineError("Response message.content is not text")
        try:
            return content, parse_model_reply(content)
        except RemoteEngineError:
            return content, parse_model_reply(text.strip())

    def _read_stream(self, response: requests.Response, on_delta: DeltaCallback) -> str:
        """Accumulate ``message.content`` deltas from an NDJSON stream until ``done``."""

        accumulated: List[str] = []
        try:
            for line in self._iter_lines(response):
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                delta = (event.get("message") or {}).get("content") or ""
                if delta:
                    accumulated.append(delta)
                    on_delta(delta)
                if event.get("done"):
                    return "".join(accumulated).strip()
        except requests.RequestException as exc:
            raise RemoteEngineError(f"Remote stream failed: {exc}") from exc
        raise RemoteEngineError("Remote stream ended unexpectedly")

    @staticmethod
    def _iter_lines(response: requests.Response) -> Iterable[str]:
        for raw in response.iter_lines(decode_unicode=True):
            if raw and raw.strip():
                yield raw.strip()


def _get_tags(http: requests.Session, base_url: str, timeout: float) -> requests.Response:
    url = f"{base_url.rstrip('/')}/api/tags"
    try:
        response = http.get(url, timeout=timeout)
    except requests.RequestException as exc:
        raise RemoteEngineError(f"Cannot reach {base_url}: {exc}") from exc
    if not response.ok:
        raise RemoteEngineError(f"Remote engine error {response.status_code}: {response.text}")
    return response


def _fetch_tags(base_url: str, timeout: float, session: Optional[requests.Session]) -> requests.Response:
    if session is not None:
        return _get_tags(session, base_url, timeout)
    with requests.Session() as http:
        return _get_tags(http, base_url, timeout)


def check_connection(base_url: str, session: Optional[requests.Session] = None) -> str:
    """Ping ``/api/tags``; return a short status message or raise RemoteEngineError."""

    _fetch_tags(base_url, CONNECTION_TIMEOUT_SECONDS, session)
    return "connected"


def list_models(base_url: str, session: Optional[requests.Session] = None) -> List[str]:
    """Return the sorted, de-duplicated model names reported by ``/api/tags``."""

    response = _fetch_tags(base_url, LIST_MODELS_TIMEOUT_SECONDS, session)
    try:
        models = response.json()["models"]
    except (ValueError, KeyError, TypeError) as exc:
        raise RemoteEngineError("Response is missing the models field") from exc
    names = set()
    for entry in models if isinstance(models, list) else []:
        if isinstance(entry, dict):
            name = entry.get("name") or entry.get("model")
            if isinstance(name, str) and name:
                names.add(name)
    return sorted(names)
