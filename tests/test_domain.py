from __future__ import annotations

import pytest

from core.models.domain import (
    CATEGORY_KEYS,
    CategoryKey,
    JobState,
    JobStatus,
    ScoreVector,
)


def test_category_order_and_keys() -> None:
    assert [key.value for key in CATEGORY_KEYS] == [
        "screenshot_document",
        "people",
        "food_cafe",
        "nature_landscape",
        "city_street_travel",
        "pets_animals",
        "products_objects",
        "other",
    ]


def test_unknown_category_normalizes_to_other() -> None:
    assert CategoryKey.parse("Food_Cafe ") is CategoryKey.FOOD_CAFE
    assert CategoryKey.parse("selfie") is CategoryKey.OTHER
    with pytest.raises(ValueError):
        CategoryKey.from_key("selfie")


def test_score_vector_rejects_invalid_values() -> None:
    with pytest.raises(ValueError):
        ScoreVector((0.5, 0.5))
    with pytest.raises(ValueError):
        ScoreVector((0.5, 0.6, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0))
    with pytest.raises(ValueError):
        ScoreVector((1.5, -0.5, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0))


def test_from_mapping_normalizes_and_ignores_unknown_keys() -> None:
    scores = ScoreVector.from_mapping({"people": 2.0, "other": 2.0, "selfie": 9.0, "food_cafe": "n/a"})

    assert scores["people"] == pytest.approx(0.5)
    assert scores[CategoryKey.OTHER] == pytest.approx(0.5)
    assert sum(scores.values) == pytest.approx(1.0)


def test_all_zero_mapping_becomes_uniform() -> None:
    scores = ScoreVector.from_mapping({"people": 0.0})

    assert scores == ScoreVector.uniform()


def test_top_prefers_earliest_category_on_ties() -> None:
    scores = ScoreVector.from_mapping({"food_cafe": 0.4, "people": 0.4, "other": 0.2})

    assert scores.top() == (CategoryKey.PEOPLE, pytest.approx(0.4))
    assert ScoreVector.uniform().top()[0] is CategoryKey.SCREENSHOT_DOCUMENT


def test_job_state_copy_is_independent() -> None:
    state = JobState(job_id="job", status=JobStatus.RUNNING, total=3)
    copy = state.copy()
    state.processed = 2

    assert copy.processed == 0
    assert copy.to_dict()["status"] == "running"
    assert JobStatus.CANCELED.is_terminal and not JobStatus.RUNNING.is_terminal
