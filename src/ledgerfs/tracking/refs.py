"""FileRef and pure helpers for reference lists.

Reference lists are stored as JSON text on the record. Every helper here
returns new lists; callers recompute ``ref_count`` from the result rather
than adjusting it independently.
"""

from __future__ import annotations

import json
import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from ledgerfs.models.files import FileStatus

if TYPE_CHECKING:
    from ledgerfs.models.files import FileRecordBase

logger = logging.getLogger(__name__)

Visibility = Literal["public", "private", "internal"]

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_ref_id() -> str:
    """``ref_<epoch-ms>_<9 random chars>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"ref_{int(time.time() * 1000)}_{suffix}"


@dataclass
class FileRef:
    """One entity's reference to a tracked file."""

    ref_id: str
    entity_type: str
    entity_id: str
    created_at: str
    created_by: str | None = None
    visibility: Visibility | None = None
    label: str | None = None
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize, omitting optional fields that are unset."""
        data: dict[str, Any] = {
            "ref_id": self.ref_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "created_at": self.created_at,
        }
        for key in ("created_by", "visibility", "label", "metadata"):
            value = getattr(self, key)
            if value:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileRef:
        return cls(
            ref_id=str(data["ref_id"]),
            entity_type=str(data["entity_type"]),
            entity_id=str(data["entity_id"]),
            created_at=str(data.get("created_at") or ""),
            created_by=data.get("created_by"),
            visibility=data.get("visibility"),
            label=data.get("label"),
            metadata=data.get("metadata"),
        )


@dataclass
class RemoveRefsCriteria:
    """Criteria for bulk reference removal.

    ``entity_type`` and ``entity_id`` select references and are ANDed.
    ``scope_id`` and ``file_id`` only narrow which records are scanned.
    With no reference-level field set nothing is removed.
    """

    entity_type: str | None = None
    entity_id: str | None = None
    scope_id: str | None = None
    file_id: str | None = None

    @property
    def has_ref_criteria(self) -> bool:
        return bool(self.entity_type or self.entity_id)

    def matches(self, ref: FileRef) -> bool:
        if not self.has_ref_criteria:
            return False
        if self.entity_type and ref.entity_type != self.entity_type:
            return False
        if self.entity_id and ref.entity_id != self.entity_id:
            return False
        return True


@dataclass
class FileWithStatus:
    """A record together with its parsed references."""

    record: FileRecordBase
    refs: list[FileRef] = field(default_factory=list)
    is_orphaned: bool = False


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def parse_file_refs(raw: str | None) -> list[FileRef]:
    """Parse stored JSON into refs. Invalid input yields an empty list."""
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.debug("Ignoring unparseable file_refs payload")
        return []
    if not isinstance(parsed, list):
        return []

    refs: list[FileRef] = []
    for entry in parsed:
        if not isinstance(entry, dict):
            continue
        try:
            refs.append(FileRef.from_dict(entry))
        except KeyError:
            logger.debug("Skipping malformed ref entry: %r", entry)
    return refs


def stringify_file_refs(refs: list[FileRef]) -> str:
    return json.dumps([r.to_dict() for r in refs])


# ---------------------------------------------------------------------------
# List operations
# ---------------------------------------------------------------------------


def create_file_ref(
    entity_type: str,
    entity_id: str,
    *,
    created_by: str | None = None,
    visibility: Visibility | None = None,
    label: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> FileRef:
    return FileRef(
        ref_id=generate_ref_id(),
        entity_type=entity_type,
        entity_id=entity_id,
        created_at=datetime.now(UTC).isoformat(),
        created_by=created_by,
        visibility=visibility,
        label=label,
        metadata=metadata,
    )


def add_ref_to_list(refs: list[FileRef], ref: FileRef) -> list[FileRef]:
    return [*refs, ref]


def remove_ref_from_list(refs: list[FileRef], ref_id: str) -> list[FileRef]:
    return [r for r in refs if r.ref_id != ref_id]


def remove_refs_by_criteria(refs: list[FileRef], criteria: RemoveRefsCriteria) -> list[FileRef]:
    """Return *refs* without those matching *criteria*.

    No reference-level criteria means nothing matches, so the list comes
    back unchanged.
    """
    return [r for r in refs if not criteria.matches(r)]


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


def is_orphaned(record: FileRecordBase) -> bool:
    """Zero references and not soft-deleted."""
    return (record.ref_count or 0) == 0 and record.status != FileStatus.SOFT_DELETED.value


def build_file_with_status(record: FileRecordBase) -> FileWithStatus:
    refs = parse_file_refs(record.file_refs)
    return FileWithStatus(
        record=record,
        refs=refs,
        is_orphaned=not refs and record.status != FileStatus.SOFT_DELETED.value,
    )
