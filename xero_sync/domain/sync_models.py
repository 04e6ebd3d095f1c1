from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from xero_sync.domain.models import EntityType, RunStatus, SyncDirection


class RecordOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class ConflictEntry:
    entity_type: EntityType
    local_id: int | None
    xero_id: str | None
    entity_name: str
    local_data: dict[str, Any]
    remote_data: dict[str, Any]
    conflict_fields: tuple[str, ...]


@dataclass(frozen=True)
class ErrorDetail:
    entity_type: EntityType
    message: str
    xero_id: str | None = None
    local_id: int | None = None
    error_type: str = ""


@dataclass(frozen=True)
class RecordResult:
    outcome: RecordOutcome
    entity_type: EntityType
    local_id: int | None = None
    xero_id: str | None = None
    conflict: ConflictEntry | None = None
    note: str | None = None


@dataclass(frozen=True)
class SyncOptions:
    dry_run: bool = False
    modified_since: datetime | None = None
    include_archived: bool = False
    local_ids: tuple[int, ...] = ()
    page_size: int | None = None
    actor: str | None = None


@dataclass
class SyncCounts:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: int = 0

    def record(self, result: RecordResult) -> None:
        if result.outcome is RecordOutcome.CREATED:
            self.created += 1
        elif result.outcome is RecordOutcome.UPDATED:
            self.updated += 1
        elif result.outcome is RecordOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.conflicts += 1

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class SyncResult:
    entity_type: EntityType | None
    direction: SyncDirection
    status: RunStatus
    correlation_id: str
    dry_run: bool
    counts: dict[str, int]
    error_details: tuple[ErrorDetail, ...] = ()
    conflict_details: tuple[ConflictEntry, ...] = ()
    notes: tuple[str, ...] = ()
    total_fetched: int = 0
    pages_fetched: int = 0
    cancelled: bool = False
    message: str = ""
    started_at: datetime | None = None
    finished_at: datetime | None = None
    children: tuple["SyncResult", ...] = field(default_factory=tuple)

    @property
    def success(self) -> bool:
        return self.status is RunStatus.COMPLETED and self.counts.get("errors", 0) == 0

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["success"] = self.success
        return _json_ready(payload)


def summarize_counts(counts: dict[str, int], *, dry_run: bool) -> str:
    if dry_run:
        return (
            f"Dry run: {counts['created']} would be created, {counts['updated']} would be updated, "
            f"{counts['skipped']} skipped, {counts['conflicts']} conflicts, {counts['errors']} errors"
        )
    return (
        f"{counts['created']} created, {counts['updated']} updated, {counts['skipped']} skipped, "
        f"{counts['conflicts']} conflicts, {counts['errors']} errors"
    )


def _json_ready(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _json_ready(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_ready(item) for item in value]
    return value
