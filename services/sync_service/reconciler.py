"""Classifies every note into a reconciliation plan."""

import logging
from dataclasses import dataclass, field
from typing import Collection, Dict, Iterable, List, Optional

from notesync.models import ManifestEntry, Note, NoteTombstone, PlanAction

logger = logging.getLogger(__name__)


@dataclass
class PlanEntry:
    """Decision for a single note."""
    note_id: str
    action: PlanAction
    local: Optional[Note] = None
    remote: Optional[ManifestEntry] = None
    tombstone: Optional[NoteTombstone] = None

    @property
    def is_deletion_conflict(self) -> bool:
        """Conflict between a local deletion and a remote edit."""
        return self.action == PlanAction.CONFLICT and self.local is None


@dataclass
class ReconciliationPlan:
    """Per-cycle mapping from note ID to action, computed before any transfer."""
    entries: Dict[str, PlanEntry] = field(default_factory=dict)
    stale_tombstones: List[NoteTombstone] = field(default_factory=list)
    damaged: List[ManifestEntry] = field(default_factory=list)

    def by_action(self, action: PlanAction) -> List[PlanEntry]:
        return [entry for entry in self.entries.values() if entry.action == action]

    def counts(self) -> Dict[PlanAction, int]:
        result = {action: 0 for action in PlanAction}
        for entry in self.entries.values():
            result[entry.action] += 1
        return result

    @property
    def pending_work(self) -> int:
        """Number of entries that require a transfer or decision."""
        return sum(1 for entry in self.entries.values() if entry.action != PlanAction.NO_OP)


def classify(
    local: Optional[Note],
    remote: Optional[ManifestEntry],
    tombstone: Optional[NoteTombstone] = None
) -> PlanAction:
    """
    Decide what to do with one note.

    Unsynced edits means ``modified_date`` strictly after ``last_synced_date``;
    an edit stamped exactly at the last sync counts as already synced.
    """
    if local is None and remote is None:
        return PlanAction.NO_OP

    if remote is not None and remote.damaged:
        # Unreadable is not deleted; leave both sides alone
        return PlanAction.NO_OP

    if local is None:
        if tombstone is None:
            return PlanAction.DOWNLOAD_REMOTE
        if remote.sync_version > tombstone.sync_version:
            # Deleted here, edited elsewhere
            return PlanAction.CONFLICT
        return PlanAction.DELETE_REMOTE

    if remote is None:
        if local.sync_version == 0 or local.last_synced_date is None:
            return PlanAction.UPLOAD_LOCAL
        if local.has_unsynced_edits():
            return PlanAction.UPLOAD_LOCAL
        return PlanAction.DELETE_LOCAL

    edited = local.has_unsynced_edits()

    if local.sync_version == remote.sync_version:
        return PlanAction.UPLOAD_LOCAL if edited else PlanAction.NO_OP

    if local.sync_version < remote.sync_version:
        return PlanAction.CONFLICT if edited else PlanAction.DOWNLOAD_REMOTE

    # Remote is behind local, e.g. a record restored from an older state
    return PlanAction.UPLOAD_LOCAL


def compute_plan(
    local_notes: Iterable[Note],
    remote_manifest: Iterable[ManifestEntry],
    tombstones: Iterable[NoteTombstone] = (),
    note_ids: Optional[Collection[str]] = None
) -> ReconciliationPlan:
    """
    Build the reconciliation plan from a snapshot of both sides.

    Args:
        local_notes: Snapshot of the local note store
        remote_manifest: Snapshot of the remote manifest
        tombstones: Local deletions not yet reconciled
        note_ids: Restrict the plan to these IDs (single-note sync)

    Returns:
        ReconciliationPlan with exactly one entry per note present on either side
    """
    local_by_id = {note.id: note for note in local_notes}
    remote_by_id = {entry.id: entry for entry in remote_manifest}
    tombstones_by_id = {t.note_id: t for t in tombstones}

    plan = ReconciliationPlan()
    all_ids = set(local_by_id) | set(remote_by_id)
    if note_ids is not None:
        all_ids &= set(note_ids)

    for note_id in sorted(all_ids):
        local = local_by_id.get(note_id)
        remote = remote_by_id.get(note_id)
        # A tombstone only matters while the note is gone locally
        tombstone = tombstones_by_id.get(note_id) if local is None else None
        action = classify(local, remote, tombstone)
        if remote is not None and remote.damaged:
            plan.damaged.append(remote)
        plan.entries[note_id] = PlanEntry(
            note_id=note_id,
            action=action,
            local=local,
            remote=remote,
            tombstone=tombstone,
        )

    for note_id, tombstone in tombstones_by_id.items():
        if note_ids is not None and note_id not in note_ids:
            continue
        if note_id not in remote_by_id:
            plan.stale_tombstones.append(tombstone)

    logger.info(
        "Reconciliation plan: "
        + ", ".join(f"{action.value}={count}" for action, count in plan.counts().items() if count)
    )
    return plan
