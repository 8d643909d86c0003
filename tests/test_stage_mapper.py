from __future__ import annotations

import pytest

from auditwatch.models.session import SessionStatus
from auditwatch.services.stage_mapper import Stage, classify_stage, map_stage


def test_analyzing_trusts_server_percentage_and_labels_it():
    mapped = map_stage("ANALYZING", 73)

    assert mapped.status is SessionStatus.RUNNING
    assert mapped.progress == 73
    assert "73" in mapped.label


@pytest.mark.parametrize("percentage", [None, 0, 42, 100, 250])
def test_completed_is_done_at_100_for_any_percentage(percentage):
    mapped = map_stage("COMPLETED", percentage)

    assert mapped.status is SessionStatus.DONE
    assert mapped.progress == 100


def test_error_stage_is_terminal_with_server_message():
    mapped = map_stage("ERROR", 12, "crawler blocked by robots.txt")

    assert mapped.status is SessionStatus.ERROR
    assert mapped.progress == 100
    assert mapped.label == "crawler blocked by robots.txt"


def test_evaluation_is_clamped_into_its_band():
    assert map_stage("ANALYZING", 5).progress == 40
    assert map_stage("ANALYZING", 100).progress == 99
    assert map_stage("ANALYZING").progress == 40
    assert map_stage("ANALYZING", analyzed_count=3, total_count=6).progress == 70


def test_collection_uses_ratio_when_counts_are_known():
    assert map_stage("CRAWLING", crawled_count=0, total_count=10).progress == 10
    assert map_stage("CRAWLING", crawled_count=5, total_count=10).progress == 30
    assert map_stage("CRAWLING", crawled_count=10, total_count=10).progress == 50
    assert map_stage("CRAWLING", crawled_count=99, total_count=10).progress == 50


def test_collection_falls_back_to_fixed_floor():
    mapped = map_stage("CRAWLING", 95, "Collecting")

    assert mapped.status is SessionStatus.RUNNING
    assert mapped.progress == 20


def test_unknown_stage_keeps_previous_progress_and_raw_label():
    mapped = map_stage("WARMING_UP", 90, None, previous_progress=35)

    assert mapped.status is SessionStatus.RUNNING
    assert mapped.progress == 35
    assert mapped.label == "WARMING_UP"

    assert map_stage("???", previous_progress=0).progress == 10
    assert map_stage(None, None, "queued").label == "queued"


def test_stage_names_are_case_insensitive_aliases():
    assert classify_stage("analyzing") is Stage.EVALUATION
    assert classify_stage(" Crawling ") is Stage.COLLECTION
    assert classify_stage("done") is Stage.COMPLETED
    assert classify_stage("FAILED") is Stage.ERROR
    assert classify_stage("") is Stage.UNKNOWN


def test_mapping_is_deterministic():
    args = ("CRAWLING", 12.5, "msg")
    kwargs = {"crawled_count": 3, "total_count": 7, "previous_progress": 11}

    assert map_stage(*args, **kwargs) == map_stage(*args, **kwargs)


def test_non_finite_percentage_falls_to_band_floor():
    mapped = map_stage("ANALYZING", float("nan"))
    assert mapped.status is SessionStatus.RUNNING
    assert mapped.progress == 40


def test_stage_formats_as_its_value():
    assert f"{Stage.EVALUATION}" == "evaluation"
    assert str(classify_stage("crawling")) == "collection"
