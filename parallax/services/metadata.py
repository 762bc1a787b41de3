"""Test-management identifiers carried on scenario tags.

Recognised tags (case-insensitive): ``@TestCaseId:419``, ``@TestCaseId:{419,420}``,
``@TestPlanId:417``, ``@TestSuiteId:418``, ``@BuildId:123`` and ``@ReleaseId:456``.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

LOGGER = logging.getLogger("parallax.metadata")

_TEST_CASE = re.compile(r"@?TestCaseId:(?:\{([^}]+)\}|(\d+))", re.IGNORECASE)
_NUMERIC_TAGS = {
    "test_plan_id": re.compile(r"@?TestPlanId:(\d+)", re.IGNORECASE),
    "test_suite_id": re.compile(r"@?TestSuiteId:(\d+)", re.IGNORECASE),
}
_STRING_TAGS = {
    "build_id": re.compile(r"@?BuildId:(\d+)", re.IGNORECASE),
    "release_id": re.compile(r"@?ReleaseId:(\d+)", re.IGNORECASE),
}


def parse_test_case_ids(value: str) -> List[int]:
    ids: List[int] = []
    for part in value.split(","):
        part = part.strip()
        if part.isdigit():
            ids.append(int(part))
        elif part:
            LOGGER.debug("Ignoring non-numeric test case id '%s'", part)
    return ids


class TagMetadataExtractor:
    """Extract test-management identifiers from a task's tags.

    Later tags win for single-valued identifiers; test case ids accumulate
    without duplicates. Returns None when no tag matched.
    """

    def extract(self, tags: Iterable[str]) -> Optional[Dict[str, Any]]:
        metadata: Dict[str, Any] = {}
        case_ids: List[int] = []
        for tag in tags:
            match = _TEST_CASE.fullmatch(tag.strip())
            if match:
                found = parse_test_case_ids(match.group(1)) if match.group(1) else [int(match.group(2))]
                case_ids.extend(item for item in found if item not in case_ids)
                continue
            for key, pattern in _NUMERIC_TAGS.items():
                match = pattern.fullmatch(tag.strip())
                if match:
                    metadata[key] = int(match.group(1))
            for key, pattern in _STRING_TAGS.items():
                match = pattern.fullmatch(tag.strip())
                if match:
                    metadata[key] = match.group(1)
        if case_ids:
            metadata["test_case_ids"] = case_ids
        return metadata or None

    def __call__(self, tags: Iterable[str]) -> Optional[Dict[str, Any]]:
        return self.extract(tags)
