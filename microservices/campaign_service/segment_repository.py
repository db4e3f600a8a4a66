"""
Segment Data Repository

Data access layer for segments, snapshots, suppressions and customer change
tracking - PostgreSQL (Async)
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from core.postgres_client import PostgresClientWrapper, rows_affected

from .models import Segment, SegmentSnapshot, SegmentType, Suppression

logger = logging.getLogger(__name__)


class SegmentRepository:
    """Segment data repository - PostgreSQL (Async)"""

    def __init__(self, db: Optional[PostgresClientWrapper] = None):
        self.db = db or PostgresClientWrapper("campaign_engine")
        self.schema = self.db.schema

        # Table names
        self.segments_table = "segments"
        self.snapshots_table = "segment_snapshots"
        self.suppressions_table = "suppressions"
        self.changes_table = "customer_changes"

    async def initialize(self):
        """Initialize database connection"""
        await self.db.connect()
        logger.info("Segment repository initialized with PostgreSQL")

    async def close(self):
        """Close database connection"""
        await self.db.close()

    async def health_check(self) -> bool:
        """Check repository health"""
        return await self.db.health_check()

    # ====================
    # Segments
    # ====================

    async def save_segment(self, segment: Segment) -> Segment:
        """Save a segment"""
        try:
            query = f'''
                INSERT INTO {self.schema}.{self.segments_table} (
                    segment_id, name, segment_type, criteria, static_member_ids,
                    cached_size, snapshot_version, last_refreshed_at,
                    refresh_cadence_minutes, created_at, updated_at, deleted_at
                ) VALUES (
                    $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12
                )
                ON CONFLICT (segment_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    criteria = EXCLUDED.criteria,
                    static_member_ids = EXCLUDED.static_member_ids,
                    cached_size = EXCLUDED.cached_size,
                    snapshot_version = EXCLUDED.snapshot_version,
                    last_refreshed_at = EXCLUDED.last_refreshed_at,
                    refresh_cadence_minutes = EXCLUDED.refresh_cadence_minutes,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
            '''
            params = [
                segment.segment_id,
                segment.name,
                segment.segment_type.value,
                segment.criteria.model_dump(mode="json") if segment.criteria else None,
                segment.static_member_ids,
                segment.cached_size,
                segment.snapshot_version,
                segment.last_refreshed_at,
                segment.refresh_cadence_minutes,
                segment.created_at,
                segment.updated_at,
                segment.deleted_at,
            ]
            result = await self.db.query_row(query, params)
            return self._row_to_segment(result) if result else segment

        except Exception as e:
            logger.error(f"Error saving segment: {e}", exc_info=True)
            raise

    async def get_segment(self, segment_id: str, include_deleted: bool = False) -> Optional[Segment]:
        """Get segment by ID"""
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.segments_table}
                WHERE segment_id = $1
            '''
            if not include_deleted:
                query += " AND deleted_at IS NULL"
            result = await self.db.query_row(query, [segment_id])
            return self._row_to_segment(result) if result else None

        except Exception as e:
            logger.error(f"Error getting segment {segment_id}: {e}")
            raise

    async def list_segments(self, include_deleted: bool = False) -> List[Segment]:
        """List segments"""
        try:
            where = "" if include_deleted else "WHERE deleted_at IS NULL"
            query = f'''
                SELECT * FROM {self.schema}.{self.segments_table}
                {where}
                ORDER BY created_at, segment_id
            '''
            results = await self.db.query(query)
            return [self._row_to_segment(row) for row in results]

        except Exception as e:
            logger.error(f"Error listing segments: {e}")
            raise

    async def soft_delete_segment(self, segment_id: str, deleted_at: datetime) -> bool:
        """Soft delete segment"""
        try:
            query = f'''
                UPDATE {self.schema}.{self.segments_table}
                SET deleted_at = $2, updated_at = $2
                WHERE segment_id = $1 AND deleted_at IS NULL
            '''
            status = await self.db.execute(query, [segment_id, deleted_at])
            return rows_affected(status) > 0

        except Exception as e:
            logger.error(f"Error deleting segment {segment_id}: {e}")
            raise

    # ====================
    # Snapshots
    # ====================

    async def save_snapshot(self, snapshot: SegmentSnapshot) -> None:
        """Persist an immutable snapshot version"""
        try:
            query = f'''
                INSERT INTO {self.schema}.{self.snapshots_table} (
                    segment_id, version, member_ids, size, checksum,
                    criteria_fingerprint, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (segment_id, version) DO NOTHING
            '''
            await self.db.execute(query, [
                snapshot.segment_id,
                snapshot.version,
                list(snapshot.member_ids),
                snapshot.size,
                snapshot.checksum,
                snapshot.criteria_fingerprint,
                snapshot.created_at,
            ])

        except Exception as e:
            logger.error(f"Error saving snapshot {snapshot.segment_id} v{snapshot.version}: {e}")
            raise

    async def get_snapshot(self, segment_id: str, version: int) -> Optional[SegmentSnapshot]:
        """Get one snapshot version"""
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.snapshots_table}
                WHERE segment_id = $1 AND version = $2
            '''
            row = await self.db.query_row(query, [segment_id, version])
            if not row:
                return None
            return SegmentSnapshot(
                segment_id=row["segment_id"],
                version=row["version"],
                member_ids=tuple(row["member_ids"] or ()),
                checksum=row["checksum"],
                criteria_fingerprint=row.get("criteria_fingerprint"),
                created_at=row["created_at"],
            )

        except Exception as e:
            logger.error(f"Error getting snapshot {segment_id} v{version}: {e}")
            raise

    async def list_snapshot_versions(self, segment_id: str) -> List[int]:
        """List stored snapshot versions"""
        query = f'''
            SELECT version FROM {self.schema}.{self.snapshots_table}
            WHERE segment_id = $1
            ORDER BY version
        '''
        results = await self.db.query(query, [segment_id])
        return [row["version"] for row in results]

    async def delete_snapshot(self, segment_id: str, version: int) -> bool:
        """Delete a snapshot version"""
        query = f'''
            DELETE FROM {self.schema}.{self.snapshots_table}
            WHERE segment_id = $1 AND version = $2
        '''
        status = await self.db.execute(query, [segment_id, version])
        return rows_affected(status) > 0

    # ====================
    # Suppressions & change tracking
    # ====================

    async def add_suppression(self, suppression: Suppression) -> bool:
        """Record a suppression once per customer"""
        try:
            query = f'''
                INSERT INTO {self.schema}.{self.suppressions_table} (
                    customer_id, reason, source_event_id, recorded_at
                ) VALUES ($1, $2, $3, $4)
                ON CONFLICT (customer_id) DO NOTHING
            '''
            status = await self.db.execute(query, [
                suppression.customer_id,
                suppression.reason,
                suppression.source_event_id,
                suppression.recorded_at,
            ])
            return rows_affected(status) == 1

        except Exception as e:
            logger.error(f"Error adding suppression for {suppression.customer_id}: {e}")
            raise

    async def list_suppressed_ids(self) -> Set[str]:
        """All suppressed customer ids"""
        query = f"SELECT customer_id FROM {self.schema}.{self.suppressions_table}"
        results = await self.db.query(query)
        return {row["customer_id"] for row in results}

    async def mark_customer_changed(self, customer_id: str, changed_at: datetime) -> None:
        """Record that a customer's attributes changed"""
        query = f'''
            INSERT INTO {self.schema}.{self.changes_table} (customer_id, changed_at)
            VALUES ($1, $2)
            ON CONFLICT (customer_id) DO UPDATE SET
                changed_at = GREATEST({self.changes_table}.changed_at, EXCLUDED.changed_at)
        '''
        await self.db.execute(query, [customer_id, changed_at])

    async def get_changed_customers(self, since: Optional[datetime]) -> List[str]:
        """Customers changed at or after `since`"""
        if since is None:
            query = f"SELECT customer_id FROM {self.schema}.{self.changes_table} ORDER BY customer_id"
            results = await self.db.query(query)
        else:
            query = f'''
                SELECT customer_id FROM {self.schema}.{self.changes_table}
                WHERE changed_at >= $1
                ORDER BY customer_id
            '''
            results = await self.db.query(query, [since])
        return [row["customer_id"] for row in results]

    # ====================
    # Row mappers
    # ====================

    def _row_to_segment(self, row: Dict[str, Any]) -> Segment:
        """Convert database row to Segment model"""
        return Segment(
            segment_id=row["segment_id"],
            name=row["name"],
            segment_type=SegmentType(row["segment_type"]),
            criteria=row.get("criteria"),
            static_member_ids=row.get("static_member_ids") or [],
            cached_size=row.get("cached_size") or 0,
            snapshot_version=row.get("snapshot_version") or 0,
            last_refreshed_at=row.get("last_refreshed_at"),
            refresh_cadence_minutes=row.get("refresh_cadence_minutes"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row.get("deleted_at"),
        )


__all__ = ["SegmentRepository"]
