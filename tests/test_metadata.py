from __future__ import annotations

import pytest

from parallax.services.metadata import TagMetadataExtractor, parse_test_case_ids


@pytest.mark.unit
def test_extracts_all_identifiers() -> None:
    metadata = TagMetadataExtractor().extract(
        ["@smoke", "@TestPlanId:417", "@testsuiteid:418", "@TestCaseId:{419, 420}", "@BuildId:12", "@ReleaseId:3"]
    )
    assert metadata == {
        "test_plan_id": 417,
        "test_suite_id": 418,
        "test_case_ids": [419, 420],
        "build_id": "12",
        "release_id": "3",
    }


@pytest.mark.unit
def test_case_ids_accumulate_without_duplicates() -> None:
    metadata = TagMetadataExtractor()(["@TestCaseId:419", "@TestCaseId:{419,421}"])
    assert metadata == {"test_case_ids": [419, 421]}


@pytest.mark.unit
def test_no_recognised_tags_yields_none() -> None:
    assert TagMetadataExtractor().extract(["@smoke", "@TestCaseIdx:1"]) is None


@pytest.mark.unit
def test_parse_test_case_ids_skips_garbage() -> None:
    assert parse_test_case_ids("1, x, 3,") == [1, 3]
