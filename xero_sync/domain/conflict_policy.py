from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from xero_sync.domain.models import SyncOrigin, SyncStateRecord, SyncStatus
from xero_sync.domain.time_utils import EPOCH


class ConflictOutcome(str, Enum):
    PROCEED = "proceed"
    ABORT_CONFLICT = "abort_conflict"
    PENDING_RESOLUTION = "pending_resolution"


@dataclass(frozen=True)
class ConflictDecision:
    outcome: ConflictOutcome
    conflict_fields: tuple[str, ...] = ()

    @property
    def allow_overwrite(self) -> bool:
        return self.outcome is ConflictOutcome.PROCEED

    @property
    def should_register_conflict(self) -> bool:
        return self.outcome is ConflictOutcome.ABORT_CONFLICT


def _changed_since(modified_at: datetime | None, last_synced_at: datetime) -> bool:
    if modified_at is None:
        return False
    return modified_at > last_synced_at


def detect_conflicts(
    local_fields: Mapping[str, Any],
    remote_fields: Mapping[str, Any],
    sync_state: SyncStateRecord | None,
    *,
    local_modified: datetime | None,
    remote_modified: datetime | None,
) -> set[str]:
    """Returns the canonical fields edited independently on both sides since the last sync.

    Rules:
    - A field is in conflict only when its values differ AND both the local
      and the remote copy were modified after ``last_synced_at``.
    - A field changed on one side only is not a conflict; it just propagates.
    - Without a sync state the reference point is the epoch.
    """
    last_synced_at = (sync_state.last_synced_at if sync_state else None) or EPOCH
    if not (_changed_since(local_modified, last_synced_at) and _changed_since(remote_modified, last_synced_at)):
        return set()
    return {
        field_name
        for field_name in local_fields
        if local_fields.get(field_name) != remote_fields.get(field_name)
    }


def evaluate_conflict(
    conflict_fields: set[str],
    sync_state: SyncStateRecord | None,
    writer: SyncOrigin,
) -> ConflictDecision:
    """Decides whether ``writer`` may overwrite the other side for this record.

    An unresolved CONFLICT state blocks automatic sync until an operator
    resolves it. Otherwise the sync aborts only when there are conflicting
    fields and the last authoritative writer was the opposite side.
    """
    ordered = tuple(sorted(conflict_fields))
    if sync_state is not None and sync_state.status is SyncStatus.CONFLICT:
        previous = (sync_state.conflict_data or {}).get("conflict_fields") or ordered
        return ConflictDecision(ConflictOutcome.PENDING_RESOLUTION, tuple(previous))
    if not conflict_fields or sync_state is None or sync_state.sync_origin is None:
        return ConflictDecision(ConflictOutcome.PROCEED)
    if sync_state.sync_origin is writer:
        return ConflictDecision(ConflictOutcome.PROCEED, ordered)
    return ConflictDecision(ConflictOutcome.ABORT_CONFLICT, ordered)


def build_conflict_data(
    local_fields: Mapping[str, Any],
    remote_fields: Mapping[str, Any],
    conflict_fields: tuple[str, ...],
    detected_at: str,
) -> dict[str, Any]:
    return {
        "local_data": dict(local_fields),
        "remote_data": dict(remote_fields),
        "conflict_fields": list(conflict_fields),
        "detected_at": detected_at,
    }
