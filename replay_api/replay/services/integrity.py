"""Reconcile cloud-backed track rows against what the bucket can actually serve."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import StorageUnavailable
from ..core.storage import ACCESS_DENIED_CODES, StorageService
from ..models.track import Track

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    checked: int = 0
    deleted: int = 0
    tracks: list[dict[str, Any]] = field(default_factory=list)
    repointed: int = 0
    note: Optional[str] = None


class IntegrityReconciler:
    def __init__(self, storage: StorageService):
        self._storage = storage

    async def verify_cloud_objects(self, db: AsyncSession, owner_id: str) -> ReconcileReport:
        result = await db.execute(
            select(
                Track.id,
                Track.title,
                Track.file_key,
                Track.file_data.is_not(None).label("has_inline"),
            ).where(Track.user_id == owner_id, Track.file_key.is_not(None))
        )
        rows = result.all()
        if not rows:
            return ReconcileReport()

        if not self._storage.cloud_available:
            logger.info(f"Cloud storage not configured, skipping verification for user {owner_id}")
            return ReconcileReport(note="Cloud storage not configured")

        unreadable = []
        denied = 0
        try:
            for row in rows:
                reason = await asyncio.to_thread(self._storage.probe_object, row.file_key)
                if reason is None:
                    continue
                unreadable.append(row)
                if reason in ACCESS_DENIED_CODES:
                    denied += 1
        except StorageUnavailable as exc:
            # Credential faults say nothing about the objects; delete nothing.
            logger.error(f"Cloud verification aborted for user {owner_id}: {exc.message}")
            return ReconcileReport(note=exc.message)

        if denied == len(rows):
            # Blanket denial is a policy fault, not missing objects.
            note = "Cloud storage denied access to every object"
            logger.error(f"Cloud verification aborted for user {owner_id}: {note}")
            return ReconcileReport(note=note)

        # Rows that still carry an inline copy fall back to it instead of being dropped.
        repoint_ids = [row.id for row in unreadable if row.has_inline]
        orphans = [row for row in unreadable if not row.has_inline]

        if repoint_ids:
            await db.execute(
                update(Track)
                .where(Track.id.in_(repoint_ids), Track.user_id == owner_id)
                .values(file_key=None)
            )
        if orphans:
            await db.execute(
                delete(Track).where(
                    Track.id.in_([row.id for row in orphans]), Track.user_id == owner_id
                )
            )
        await db.commit()

        logger.info(
            f"Verified cloud files: {len(rows)} tracks checked, {len(orphans)} orphaned tracks "
            f"deleted, {len(repoint_ids)} repointed to inline for user {owner_id}"
        )
        return ReconcileReport(
            checked=len(rows),
            deleted=len(orphans),
            tracks=[{"id": row.id, "title": row.title} for row in orphans],
            repointed=len(repoint_ids),
        )
