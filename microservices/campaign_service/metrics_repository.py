"""
Metrics Data Repository

Data access layer for the append-only event log, the rollup contribution
index and per-campaign daily rollups - PostgreSQL (Async)
"""

import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.postgres_client import PostgresClientWrapper, rows_affected

from .models import EngineEvent, MetricRollup, MetricType, RollupContribution

logger = logging.getLogger(__name__)

_COUNTER_COLUMNS = [m.value for m in MetricType]

# Pure function from the full event log to (rollups, contribution index)
RollupRebuild = Callable[[List[EngineEvent]], Tuple[List[MetricRollup], List[RollupContribution]]]


class MetricsRepository:
    """Metrics data repository - PostgreSQL (Async)"""

    def __init__(self, db: Optional[PostgresClientWrapper] = None):
        self.db = db or PostgresClientWrapper("campaign_engine")
        self.schema = self.db.schema

        # Table names
        self.events_table = "engine_events"
        self.contributions_table = "rollup_contributions"
        self.rollups_table = "metric_rollups"

    async def initialize(self):
        """Initialize database connection"""
        await self.db.connect()
        logger.info("Metrics repository initialized with PostgreSQL")

    async def close(self):
        """Close database connection"""
        await self.db.close()

    # ====================
    # Event log
    # ====================

    async def append_event(self, event: EngineEvent) -> bool:
        """Append an event; False if its id is already logged"""
        try:
            query = f'''
                INSERT INTO {self.schema}.{self.events_table} (
                    event_id, event_type, timestamp, customer_id, campaign_id,
                    properties, metadata
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (event_id) DO NOTHING
            '''
            status = await self.db.execute(query, [
                event.event_id,
                event.event_type,
                event.timestamp,
                event.customer_id,
                event.campaign_id,
                event.properties,
                event.metadata,
            ])
            return rows_affected(status) == 1

        except Exception as e:
            logger.error(f"Error appending event {event.event_id}: {e}")
            raise

    async def list_events(
        self,
        customer_id: Optional[str] = None,
        event_types: Optional[List[str]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[EngineEvent]:
        """Events ordered by timestamp, then event id"""
        try:
            conditions = []
            params: List[Any] = []
            if customer_id:
                params.append(customer_id)
                conditions.append(f"customer_id = ${len(params)}")
            if event_types:
                params.append(event_types)
                conditions.append(f"event_type = ANY(${len(params)})")
            if since:
                params.append(since)
                conditions.append(f"timestamp >= ${len(params)}")
            if until:
                params.append(until)
                conditions.append(f"timestamp <= ${len(params)}")

            where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            query = f'''
                SELECT * FROM {self.schema}.{self.events_table}
                {where}
                ORDER BY timestamp, event_id
            '''
            results = await self.db.query(query, params)
            return [self._row_to_event(row) for row in results]

        except Exception as e:
            logger.error(f"Error listing events: {e}")
            raise

    # ====================
    # Rollups
    # ====================

    async def apply_contribution(self, contribution: RollupContribution) -> bool:
        """Count an event toward its rollup at most once"""
        column = contribution.metric.value
        try:
            async with self.db.transaction() as conn:
                status = await conn.execute(
                    f'''
                    INSERT INTO {self.schema}.{self.contributions_table} (
                        event_id, campaign_id, day, metric
                    ) VALUES ($1, $2, $3, $4)
                    ON CONFLICT (event_id) DO NOTHING
                    ''',
                    contribution.event_id,
                    contribution.campaign_id,
                    contribution.day,
                    column,
                )
                if rows_affected(status) != 1:
                    return False

                await conn.execute(
                    f'''
                    INSERT INTO {self.schema}.{self.rollups_table} (
                        campaign_id, day, {column}, updated_at
                    ) VALUES ($1, $2, 1, NOW())
                    ON CONFLICT (campaign_id, day) DO UPDATE SET
                        {column} = {self.rollups_table}.{column} + 1,
                        updated_at = NOW()
                    ''',
                    contribution.campaign_id,
                    contribution.day,
                )
                return True

        except Exception as e:
            logger.error(f"Error applying contribution {contribution.event_id}: {e}")
            raise

    async def get_rollup(self, campaign_id: str, day: date) -> Optional[MetricRollup]:
        query = f'''
            SELECT * FROM {self.schema}.{self.rollups_table}
            WHERE campaign_id = $1 AND day = $2
        '''
        row = await self.db.query_row(query, [campaign_id, day])
        return self._row_to_rollup(row) if row else None

    async def list_rollups(self, campaign_id: Optional[str] = None) -> List[MetricRollup]:
        if campaign_id:
            query = f'''
                SELECT * FROM {self.schema}.{self.rollups_table}
                WHERE campaign_id = $1
                ORDER BY day
            '''
            results = await self.db.query(query, [campaign_id])
        else:
            query = f"SELECT * FROM {self.schema}.{self.rollups_table} ORDER BY campaign_id, day"
            results = await self.db.query(query)
        return [self._row_to_rollup(row) for row in results]

    async def rebuild_rollups(self, rebuild: RollupRebuild) -> Tuple[List[MetricRollup], int]:
        """
        Recompute rollups from the event log and swap them in atomically.

        The contribution index is locked EXCLUSIVE before the log is read, so
        a concurrent apply_contribution either commits first (and its event
        is in the log read) or waits and lands on top of the rebuilt state.

        Returns:
            (rollups, number of events read)
        """
        try:
            async with self.db.transaction() as conn:
                await conn.execute(
                    f"LOCK TABLE {self.schema}.{self.contributions_table} IN EXCLUSIVE MODE"
                )
                rows = await conn.fetch(
                    f"SELECT * FROM {self.schema}.{self.events_table} ORDER BY timestamp, event_id"
                )
                events = [self._row_to_event(dict(row)) for row in rows]
                rollups, contributions = rebuild(events)

                await conn.execute(f"DELETE FROM {self.schema}.{self.rollups_table}")
                await conn.execute(f"DELETE FROM {self.schema}.{self.contributions_table}")
                await conn.executemany(
                    f'''
                    INSERT INTO {self.schema}.{self.contributions_table} (
                        event_id, campaign_id, day, metric
                    ) VALUES ($1, $2, $3, $4)
                    ''',
                    [[c.event_id, c.campaign_id, c.day, c.metric.value] for c in contributions],
                )
                await conn.executemany(
                    f'''
                    INSERT INTO {self.schema}.{self.rollups_table} (
                        campaign_id, day, {", ".join(_COUNTER_COLUMNS)}, updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    ''',
                    [
                        [r.campaign_id, r.day, *[r.get(m) for m in MetricType], r.updated_at]
                        for r in rollups
                    ],
                )
            logger.info(f"Rebuilt rollups: {len(rollups)} rows from {len(contributions)} contributions")
            return rollups, len(events)

        except Exception as e:
            logger.error(f"Error rebuilding rollups: {e}", exc_info=True)
            raise

    # ====================
    # Row mappers
    # ====================

    def _row_to_event(self, row: Dict[str, Any]) -> EngineEvent:
        """Convert database row to EngineEvent model"""
        return EngineEvent(
            event_id=row["event_id"],
            event_type=row["event_type"],
            timestamp=row["timestamp"],
            customer_id=row.get("customer_id"),
            campaign_id=row.get("campaign_id"),
            properties=row.get("properties") or {},
            metadata=row.get("metadata") or {},
        )

    def _row_to_rollup(self, row: Dict[str, Any]) -> MetricRollup:
        """Convert database row to MetricRollup model"""
        return MetricRollup(
            campaign_id=row["campaign_id"],
            day=row["day"],
            updated_at=row["updated_at"],
            **{column: row.get(column) or 0 for column in _COUNTER_COLUMNS},
        )


__all__ = ["MetricsRepository"]
