"""
Segment Engine

Maintains named audiences and their membership snapshots. A refresh computes
the full member set away from the published snapshot and then swaps the
segment's version pointer in one step, so dispatch runs never observe a
half-built membership.
"""

import asyncio
import logging
from collections import defaultdict
from concurrent.futures import Executor, ProcessPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, List, Optional, Set, Tuple, Union

from pydantic import ValidationError

from core.config import EngineConfig

from .criteria import criteria_fingerprint, matching_ids
from .events.publishers import CampaignEventPublisher
from .models import (
    Segment,
    SegmentCreateRequest,
    SegmentSnapshot,
    SegmentType,
    SegmentUpdateRequest,
    Suppression,
    membership_checksum,
)
from .protocols import (
    CampaignValidationError,
    ClockProtocol,
    DataSourceUnavailableError,
    EventBusProtocol,
    ProfileClientProtocol,
    SegmentNotFoundError,
    SegmentRepositoryProtocol,
)
from .scheduler import SystemClock

logger = logging.getLogger(__name__)

SnapshotKey = Tuple[str, int]


class SegmentService:
    """Segment definitions, snapshot arena and suppression list"""

    def __init__(
        self,
        repository: SegmentRepositoryProtocol,
        profile_client: ProfileClientProtocol,
        event_bus: Optional[EventBusProtocol] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        executor: Optional[Executor] = None,
    ):
        self.repository = repository
        self.profile_client = profile_client
        self.publisher = CampaignEventPublisher(event_bus)
        self.config = config or EngineConfig()
        self.clock = clock or SystemClock()

        self._executor = executor
        self._owns_executor = False

        # Snapshot arena: published pointer per segment + reference counts
        self._current: Dict[str, SegmentSnapshot] = {}
        self._arena: Dict[SnapshotKey, SegmentSnapshot] = {}
        self._refcounts: Dict[SnapshotKey, int] = defaultdict(int)
        self._refresh_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

        self._suppressed: Optional[Set[str]] = None

    async def close(self) -> None:
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
            self._owns_executor = False

    # ====================
    # Segment CRUD
    # ====================

    async def create_segment(self, request: Union[SegmentCreateRequest, Dict[str, Any]]) -> Segment:
        """Create a static or dynamic segment; rejected requests change nothing"""
        try:
            if isinstance(request, dict):
                request = SegmentCreateRequest.model_validate(request)
            segment = Segment(
                name=request.name,
                segment_type=request.segment_type,
                criteria=request.criteria,
                static_member_ids=request.static_member_ids,
                refresh_cadence_minutes=request.refresh_cadence_minutes,
            )
        except ValidationError as e:
            raise CampaignValidationError.from_pydantic(e) from e

        segment = await self.repository.save_segment(segment)
        logger.info(f"Segment created: {segment.segment_id} ({segment.segment_type.value})")
        return segment

    async def get_segment(self, segment_id: str) -> Segment:
        segment = await self.repository.get_segment(segment_id)
        if segment is None or segment.is_deleted:
            raise SegmentNotFoundError(f"Segment not found: {segment_id}")
        return segment

    async def list_segments(self) -> List[Segment]:
        return await self.repository.list_segments()

    async def update_segment(
        self,
        segment_id: str,
        request: Union[SegmentUpdateRequest, Dict[str, Any]],
    ) -> Segment:
        """
        Update a segment definition.

        Membership is not recomputed until the next refresh.
        """
        segment = await self.get_segment(segment_id)
        try:
            if isinstance(request, dict):
                request = SegmentUpdateRequest.model_validate(request)
            updates = request.model_dump(exclude_unset=True)
            if "criteria" in updates:
                updates["criteria"] = request.criteria
            merged = segment.model_dump()
            merged.update(updates)
            merged["updated_at"] = self.clock.now()
            updated = Segment.model_validate(merged)
        except ValidationError as e:
            raise CampaignValidationError.from_pydantic(e) from e

        updated = await self.repository.save_segment(updated)
        logger.info(f"Segment updated: {segment_id} fields={sorted(updates)}")
        return updated

    async def delete_segment(self, segment_id: str) -> bool:
        """
        Soft delete a segment.

        Snapshots still pinned by running campaigns stay readable until
        released; the dispatcher fails those campaigns at the next batch.
        """
        segment = await self.get_segment(segment_id)
        deleted = await self.repository.soft_delete_segment(segment_id, self.clock.now())
        self._current.pop(segment_id, None)
        await self._collect_garbage(segment_id, current_version=None)
        logger.info(f"Segment deleted: {segment.segment_id}")
        return deleted

    async def add_static_member(self, segment_id: str, customer_id: str) -> Segment:
        """Add a customer to a static segment's explicit member set"""
        return await self._change_static_members(segment_id, customer_id, add=True)

    async def remove_static_member(self, segment_id: str, customer_id: str) -> Segment:
        """Remove a customer from a static segment's explicit member set"""
        return await self._change_static_members(segment_id, customer_id, add=False)

    async def _change_static_members(self, segment_id: str, customer_id: str, add: bool) -> Segment:
        async with self._refresh_locks[segment_id]:
            segment = await self.get_segment(segment_id)
            if segment.segment_type != SegmentType.STATIC:
                raise CampaignValidationError(
                    f"Segment {segment_id} is dynamic; membership follows its criteria",
                    "segment_id",
                )
            members = set(segment.static_member_ids)
            if (customer_id in members) == add:
                return segment
            if add:
                members.add(customer_id)
            else:
                members.discard(customer_id)
            segment.static_member_ids = sorted(members)
            segment.updated_at = self.clock.now()
            return await self.repository.save_segment(segment)

    async def get_size(self, segment_id: str) -> int:
        segment = await self.get_segment(segment_id)
        return segment.cached_size

    async def is_deleted(self, segment_id: str) -> bool:
        segment = await self.repository.get_segment(segment_id, include_deleted=True)
        return segment is None or segment.is_deleted

    # ====================
    # Refresh
    # ====================

    async def refresh(self, segment_id: str, incremental: bool = False) -> SegmentSnapshot:
        """
        Recompute membership and publish a new snapshot if it changed.

        Unchanged membership keeps the current version; only
        `last_refreshed_at` moves. A profile source failure aborts the refresh
        with the previous snapshot still active.

        Raises:
            SegmentNotFoundError: Unknown or deleted segment
            DataSourceUnavailableError: Profile source unreachable
        """
        async with self._refresh_locks[segment_id]:
            segment = await self.get_segment(segment_id)
            now = self.clock.now()
            suppressed = await self.suppressed_ids(refresh=True)
            previous = await self._current_snapshot(segment)
            fingerprint = criteria_fingerprint(segment.criteria)

            # Unchanged customers keep their membership only under the same criteria
            can_increment = (
                incremental
                and previous is not None
                and segment.last_refreshed_at is not None
                and previous.criteria_fingerprint == fingerprint
            )
            if incremental and not can_increment:
                logger.debug(f"Segment {segment_id} needs a full refresh")

            try:
                if segment.segment_type == SegmentType.STATIC:
                    members = set(segment.static_member_ids)
                elif can_increment:
                    members = await self._incremental_members(segment, previous)
                else:
                    members = await self._full_members(segment)
            except DataSourceUnavailableError as e:
                logger.warning(f"Refresh of {segment_id} aborted, keeping v{segment.snapshot_version}: {e}")
                raise

            members -= suppressed
            ordered = tuple(sorted(members))
            checksum = membership_checksum(ordered)
            changed = (
                previous is None
                or previous.checksum != checksum
                or previous.criteria_fingerprint != fingerprint
            )

            if changed:
                snapshot = SegmentSnapshot(
                    segment_id=segment_id,
                    version=segment.snapshot_version + 1,
                    member_ids=ordered,
                    checksum=checksum,
                    criteria_fingerprint=fingerprint,
                    created_at=now,
                )
                await self.repository.save_snapshot(snapshot)
                segment.snapshot_version = snapshot.version
                segment.cached_size = snapshot.size
            else:
                snapshot = previous

            segment.last_refreshed_at = now
            segment.updated_at = now
            await self.repository.save_segment(segment)

            # Pointer swap: readers see either the old or the new snapshot
            self._install(snapshot)
            await self._collect_garbage(segment_id, current_version=snapshot.version)

        await self.publisher.publish_segment_refreshed(snapshot, changed, now)
        if changed:
            logger.info(f"Segment {segment_id} refreshed to v{snapshot.version} (size={snapshot.size})")
        else:
            logger.debug(f"Segment {segment_id} unchanged at v{snapshot.version}")
        return snapshot

    async def _full_members(self, segment: Segment) -> Set[str]:
        """Stream every customer and evaluate batches independently"""
        pending: List[asyncio.Future] = []
        loop = asyncio.get_running_loop()
        executor = self._get_executor()
        try:
            async for batch in self.profile_client.iter_customers(self.config.refresh_batch_size):
                records = [(c.customer_id, c.attributes) for c in batch]
                if executor is None:
                    future = loop.create_future()
                    future.set_result(matching_ids(segment.criteria, records))
                else:
                    future = loop.run_in_executor(executor, matching_ids, segment.criteria, records)
                pending.append(future)
        except BaseException:
            for future in pending:
                future.cancel()
            raise

        members: Set[str] = set()
        for batch_ids in await asyncio.gather(*pending):
            members.update(batch_ids)
        return members

    async def _incremental_members(self, segment: Segment, previous: SegmentSnapshot) -> Set[str]:
        """Re-evaluate only customers changed since the last refresh"""
        changed_ids = await self.repository.get_changed_customers(segment.last_refreshed_at)
        members = set(previous.member_ids)
        if not changed_ids:
            return members

        records = await self.profile_client.batch_get_customers(changed_ids)
        members.difference_update(changed_ids)
        members.update(matching_ids(segment.criteria, [(c.customer_id, c.attributes) for c in records]))
        logger.debug(f"Incremental refresh of {segment.segment_id}: {len(changed_ids)} changed customers")
        return members

    def _get_executor(self) -> Optional[Executor]:
        if self._executor is None and self.config.refresh_parallelism > 1:
            self._executor = ProcessPoolExecutor(max_workers=self.config.refresh_parallelism)
            self._owns_executor = True
        return self._executor

    async def refresh_due_segments(self, now: Optional[datetime] = None) -> List[str]:
        """Full refresh of segments whose cadence has elapsed (scheduler hook)"""
        now = now or self.clock.now()
        refreshed = []
        for segment in await self.repository.list_segments():
            cadence = timedelta(
                minutes=segment.refresh_cadence_minutes or self.config.default_refresh_cadence_minutes
            )
            if segment.last_refreshed_at and now - segment.last_refreshed_at < cadence:
                continue
            try:
                await self.refresh(segment.segment_id)
                refreshed.append(segment.segment_id)
            except DataSourceUnavailableError as e:
                logger.warning(f"Scheduled refresh of {segment.segment_id} skipped: {e}")
        return refreshed

    async def refresh_changed_segments(self, now: Optional[datetime] = None) -> List[str]:
        """Incremental refresh of dynamic segments with changed customers (scheduler hook)"""
        refreshed = []
        for segment in await self.repository.list_segments():
            if segment.segment_type != SegmentType.DYNAMIC or not segment.last_refreshed_at:
                continue
            if not await self.repository.get_changed_customers(segment.last_refreshed_at):
                continue
            try:
                await self.refresh(segment.segment_id, incremental=True)
                refreshed.append(segment.segment_id)
            except DataSourceUnavailableError as e:
                logger.warning(f"Incremental refresh of {segment.segment_id} skipped: {e}")
        return refreshed

    # ====================
    # Snapshot arena
    # ====================

    def _install(self, snapshot: SegmentSnapshot) -> None:
        self._arena[(snapshot.segment_id, snapshot.version)] = snapshot
        self._current[snapshot.segment_id] = snapshot

    async def _current_snapshot(self, segment: Segment) -> Optional[SegmentSnapshot]:
        if segment.snapshot_version == 0:
            return None
        cached = self._current.get(segment.segment_id)
        if cached is not None and cached.version == segment.snapshot_version:
            return cached
        snapshot = await self.repository.get_snapshot(segment.segment_id, segment.snapshot_version)
        if snapshot is not None:
            self._install(snapshot)
        return snapshot

    async def current_snapshot(self, segment_id: str) -> Optional[SegmentSnapshot]:
        """Published snapshot, or None if the segment was never refreshed"""
        return await self._current_snapshot(await self.get_segment(segment_id))

    async def get_snapshot(self, segment_id: str, version: int) -> SegmentSnapshot:
        """Read a specific version (deleted segments included while pinned)"""
        snapshot = self._arena.get((segment_id, version))
        if snapshot is None:
            snapshot = await self.repository.get_snapshot(segment_id, version)
            if snapshot is None:
                raise SegmentNotFoundError(f"Snapshot v{version} of segment {segment_id} not found")
            self._arena[(segment_id, version)] = snapshot
        return snapshot

    async def acquire_snapshot(self, segment_id: str, version: Optional[int] = None) -> SegmentSnapshot:
        """
        Pin a snapshot for a dispatch run.

        Without a version the current snapshot is pinned, materializing it
        first if the segment was never refreshed.
        """
        if version is None:
            segment = await self.get_segment(segment_id)
            snapshot = await self._current_snapshot(segment)
            if snapshot is None:
                snapshot = await self.refresh(segment_id)
        else:
            snapshot = await self.get_snapshot(segment_id, version)

        self._refcounts[(segment_id, snapshot.version)] += 1
        return snapshot

    async def release_snapshot(self, segment_id: str, version: int) -> None:
        key = (segment_id, version)
        if self._refcounts.get(key, 0) <= 1:
            self._refcounts.pop(key, None)
        else:
            self._refcounts[key] -= 1

        current = self._current.get(segment_id)
        await self._collect_garbage(segment_id, current_version=current.version if current else None)

    def reference_count(self, segment_id: str, version: int) -> int:
        return self._refcounts.get((segment_id, version), 0)

    async def _collect_garbage(self, segment_id: str, current_version: Optional[int]) -> List[int]:
        """Drop versions that are neither current nor pinned"""
        collected = []
        for version in await self.repository.list_snapshot_versions(segment_id):
            if version == current_version or self._refcounts.get((segment_id, version), 0) > 0:
                continue
            await self.repository.delete_snapshot(segment_id, version)
            self._arena.pop((segment_id, version), None)
            collected.append(version)
        if collected:
            logger.debug(f"Collected snapshots of {segment_id}: {collected}")
        return collected

    # ====================
    # Suppression & change tracking
    # ====================

    async def suppress_customer(
        self,
        customer_id: str,
        reason: str = "consent_revoked",
        source_event_id: Optional[str] = None,
    ) -> bool:
        """
        Exclude a customer from every future snapshot and dispatch batch.

        Takes effect for in-flight batches immediately; live snapshots drop the
        customer on their next refresh.
        """
        suppression = Suppression(
            customer_id=customer_id,
            reason=reason,
            source_event_id=source_event_id,
            recorded_at=self.clock.now(),
        )
        created = await self.repository.add_suppression(suppression)
        if self._suppressed is not None:
            self._suppressed.add(suppression.customer_id)
        if created:
            logger.info(f"Customer {suppression.customer_id} suppressed ({reason})")
        return created

    async def suppressed_ids(self, refresh: bool = False) -> FrozenSet[str]:
        await self._load_suppressed(refresh)
        return frozenset(self._suppressed)

    async def is_suppressed(self, customer_id: str) -> bool:
        await self._load_suppressed()
        return customer_id in self._suppressed

    async def _load_suppressed(self, refresh: bool = False) -> None:
        if self._suppressed is None or refresh:
            self._suppressed = set(await self.repository.list_suppressed_ids())

    async def mark_customer_changed(self, customer_id: str, changed_at: Optional[datetime] = None) -> None:
        await self.repository.mark_customer_changed(customer_id, changed_at or self.clock.now())


__all__ = ["SegmentService"]
