"""Extraction payloads stored in ``file_data``.

The payload keeps every extraction in ``raw_data`` and a cached fold of
their ``data`` maps in ``merged_data``. ``merged_data`` is always
recomputed from ``raw_data`` in insertion order, never patched
incrementally, so it stays a pure function of ``raw_data`` and the merge
strategy. All helpers return new structures and leave their inputs alone.
"""

from __future__ import annotations

import copy
import json
import logging
import secrets
import string
import time
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Literal

from ledgerfs.fs.exceptions import ErrorCode
from ledgerfs.fs.types import OperationResult

logger = logging.getLogger(__name__)

MergeStrategy = Literal["shallow", "deep"]

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_extraction_id() -> str:
    """``ext_<epoch-ms>_<9 random chars>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"ext_{int(time.time() * 1000)}_{suffix}"


@dataclass(frozen=True)
class ExtractionData:
    """One extraction result."""

    id: str
    extracted_at: str
    data: dict[str, Any]
    source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "extracted_at": self.extracted_at,
            "data": self.data,
        }
        if self.source:
            out["source"] = self.source
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ExtractionData:
        return cls(
            id=raw["id"],
            extracted_at=raw["extracted_at"],
            data=dict(raw["data"]),
            source=raw.get("source"),
        )


@dataclass(frozen=True)
class FileDataStructure:
    merged_data: dict[str, Any] = field(default_factory=dict)
    raw_data: tuple[ExtractionData, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "merged_data": self.merged_data,
            "raw_data": [e.to_dict() for e in self.raw_data],
        }


def create_empty_file_data() -> FileDataStructure:
    return FileDataStructure()


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def has_extraction_structure(obj: Any) -> bool:
    return (
        isinstance(obj, dict)
        and isinstance(obj.get("merged_data"), dict)
        and isinstance(obj.get("raw_data"), list)
    )


def is_valid_extraction(obj: Any) -> bool:
    return (
        isinstance(obj, dict)
        and isinstance(obj.get("id"), str)
        and isinstance(obj.get("extracted_at"), str)
        and isinstance(obj.get("data"), dict)
    )


def is_valid_file_data(obj: Any) -> bool:
    return has_extraction_structure(obj) and all(is_valid_extraction(e) for e in obj["raw_data"])


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def parse_file_data(raw: str | dict[str, Any] | None) -> FileDataStructure:
    """Parse a stored payload.

    A plain mapping without the extraction structure is treated as legacy
    data and moved into ``merged_data`` with an empty ``raw_data``. Anything
    unparseable yields an empty structure.
    """
    if not raw:
        return create_empty_file_data()

    parsed: Any = raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring unparseable file_data payload")
            return create_empty_file_data()

    if has_extraction_structure(parsed):
        extractions = tuple(
            ExtractionData.from_dict(e) for e in parsed["raw_data"] if is_valid_extraction(e)
        )
        return FileDataStructure(merged_data=dict(parsed["merged_data"]), raw_data=extractions)

    if isinstance(parsed, dict):
        return FileDataStructure(merged_data=dict(parsed), raw_data=())

    return create_empty_file_data()


def stringify_file_data(data: FileDataStructure) -> str:
    return json.dumps(data.to_dict())


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


def deep_merge(target: dict[str, Any], source: dict[str, Any]) -> dict[str, Any]:
    """Merge *source* into a copy of *target*.

    Nested dicts merge key by key, lists concatenate, anything else is
    overwritten by *source*.
    """
    result = dict(target)
    for key, value in source.items():
        existing = result.get(key)
        if isinstance(value, list) and isinstance(existing, list):
            result[key] = [*existing, *value]
        elif isinstance(value, dict) and isinstance(existing, dict):
            result[key] = deep_merge(existing, value)
        else:
            result[key] = value
    return result


def recalculate_merged_data(
    raw_data: tuple[ExtractionData, ...] | list[ExtractionData],
    strategy: MergeStrategy = "shallow",
) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for extraction in raw_data:
        payload = copy.deepcopy(extraction.data)
        if strategy == "deep":
            merged = deep_merge(merged, payload)
        else:
            merged = {**merged, **payload}
    return merged


def _with_raw_data(
    raw_data: tuple[ExtractionData, ...],
    previous: FileDataStructure,
    strategy: MergeStrategy,
    recalculate: bool,
) -> FileDataStructure:
    merged = recalculate_merged_data(raw_data, strategy) if recalculate else previous.merged_data
    return FileDataStructure(merged_data=merged, raw_data=raw_data)


# ---------------------------------------------------------------------------
# Extraction operations
# ---------------------------------------------------------------------------


def add_extraction(
    file_data: FileDataStructure,
    data: dict[str, Any],
    *,
    strategy: MergeStrategy = "shallow",
    source: str | None = None,
    extraction_id: str | None = None,
) -> FileDataStructure:
    extraction = ExtractionData(
        id=extraction_id or generate_extraction_id(),
        extracted_at=datetime.now(UTC).isoformat(),
        data=copy.deepcopy(data),
        source=source,
    )
    return _with_raw_data((*file_data.raw_data, extraction), file_data, strategy, True)


def remove_extraction_by_id(
    file_data: FileDataStructure,
    extraction_id: str,
    *,
    strategy: MergeStrategy = "shallow",
    recalculate_merged: bool = True,
) -> OperationResult[FileDataStructure]:
    """Drop one extraction.

    With ``recalculate_merged=False`` the old ``merged_data`` is kept as is
    and will be stale until the next recalculation.
    """
    for index, extraction in enumerate(file_data.raw_data):
        if extraction.id == extraction_id:
            return remove_extraction_by_index(
                file_data, index, strategy=strategy, recalculate_merged=recalculate_merged
            )
    return OperationResult.fail(
        f'Extraction with id "{extraction_id}" not found', ErrorCode.OPERATION_FAILED
    )


def remove_extraction_by_index(
    file_data: FileDataStructure,
    index: int,
    *,
    strategy: MergeStrategy = "shallow",
    recalculate_merged: bool = True,
) -> OperationResult[FileDataStructure]:
    count = len(file_data.raw_data)
    if index < 0 or index >= count:
        return OperationResult.fail(
            f"Index {index} out of bounds (0-{count - 1})", ErrorCode.OPERATION_FAILED
        )
    raw_data = file_data.raw_data[:index] + file_data.raw_data[index + 1:]
    return OperationResult.ok(_with_raw_data(raw_data, file_data, strategy, recalculate_merged))


def update_extraction_by_id(
    file_data: FileDataStructure,
    extraction_id: str,
    data: dict[str, Any],
    *,
    strategy: MergeStrategy = "shallow",
    recalculate_merged: bool = True,
) -> OperationResult[FileDataStructure]:
    for index, extraction in enumerate(file_data.raw_data):
        if extraction.id == extraction_id:
            updated = replace(
                extraction,
                data=copy.deepcopy(data),
                extracted_at=datetime.now(UTC).isoformat(),
            )
            raw_data = (
                file_data.raw_data[:index] + (updated,) + file_data.raw_data[index + 1:]
            )
            return OperationResult.ok(
                _with_raw_data(raw_data, file_data, strategy, recalculate_merged)
            )
    return OperationResult.fail(
        f'Extraction with id "{extraction_id}" not found', ErrorCode.OPERATION_FAILED
    )


def get_extraction_by_id(file_data: FileDataStructure, extraction_id: str) -> ExtractionData | None:
    for extraction in file_data.raw_data:
        if extraction.id == extraction_id:
            return replace(extraction, data=copy.deepcopy(extraction.data))
    return None


def get_extraction_count(file_data: FileDataStructure) -> int:
    return len(file_data.raw_data)


def get_merged_data(file_data: FileDataStructure) -> dict[str, Any]:
    return copy.deepcopy(file_data.merged_data)


def clear_extractions() -> FileDataStructure:
    return create_empty_file_data()
