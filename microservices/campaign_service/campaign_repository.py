"""
Campaign Data Repository

Data access layer for campaigns, runs and the dispatch ledger - PostgreSQL (Async)
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from core.postgres_client import PostgresClientWrapper, rows_affected

from .models import (
    Campaign,
    CampaignBudget,
    CampaignGoal,
    CampaignRun,
    CampaignSchedule,
    CampaignStatus,
    CampaignType,
    ChannelType,
    DeliveryStatus,
    DispatchRecord,
    RunStatus,
)

logger = logging.getLogger(__name__)


class CampaignRepository:
    """Campaign data repository - PostgreSQL (Async)"""

    def __init__(self, db: Optional[PostgresClientWrapper] = None):
        self.db = db or PostgresClientWrapper("campaign_engine")
        self.schema = self.db.schema

        # Table names
        self.campaigns_table = "campaigns"
        self.runs_table = "campaign_runs"
        self.ledger_table = "dispatch_ledger"

    async def initialize(self):
        """Initialize database connection"""
        await self.db.connect()
        logger.info("Campaign repository initialized with PostgreSQL")

    async def close(self):
        """Close database connection"""
        await self.db.close()
        logger.info("Campaign repository database connection closed")

    async def health_check(self) -> bool:
        """Check repository health"""
        return await self.db.health_check()

    # ====================
    # Campaign CRUD
    # ====================

    async def save_campaign(self, campaign: Campaign, expected_status: Optional[CampaignStatus] = None) -> Optional[Campaign]:
        """
        Save a campaign; budget_spent never decreases.

        With expected_status the update is a compare-and-set on the stored
        status and None is returned when another writer moved it first.
        """
        try:
            query = f'''
                INSERT INTO {self.schema}.{self.campaigns_table} (
                    campaign_id, name, description, campaign_type, channels,
                    status, segment_id, content_id, schedule,
                    budget_total, budget_spent, cost_per_send, goals,
                    batch_size, current_run_id, next_run_at, failure_reason,
                    tags, metadata, launched_at, paused_at, completed_at,
                    failed_at, created_at, updated_at
                ) VALUES (
                    $1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
                    $11, $12, $13, $14, $15, $16, $17, $18, $19, $20,
                    $21, $22, $23, $24, $25
                )
                ON CONFLICT (campaign_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    channels = EXCLUDED.channels,
                    status = EXCLUDED.status,
                    content_id = EXCLUDED.content_id,
                    schedule = EXCLUDED.schedule,
                    budget_total = EXCLUDED.budget_total,
                    budget_spent = GREATEST({self.campaigns_table}.budget_spent, EXCLUDED.budget_spent),
                    cost_per_send = EXCLUDED.cost_per_send,
                    goals = EXCLUDED.goals,
                    batch_size = EXCLUDED.batch_size,
                    current_run_id = EXCLUDED.current_run_id,
                    next_run_at = EXCLUDED.next_run_at,
                    failure_reason = EXCLUDED.failure_reason,
                    tags = EXCLUDED.tags,
                    metadata = EXCLUDED.metadata,
                    launched_at = EXCLUDED.launched_at,
                    paused_at = EXCLUDED.paused_at,
                    completed_at = EXCLUDED.completed_at,
                    failed_at = EXCLUDED.failed_at,
                    updated_at = EXCLUDED.updated_at
                WHERE $26::text IS NULL OR {self.campaigns_table}.status = $26
                RETURNING *
            '''

            params = [
                campaign.campaign_id,
                campaign.name,
                campaign.description,
                campaign.campaign_type.value,
                [c.value for c in campaign.channels],
                campaign.status.value,
                campaign.segment_id,
                campaign.content_id,
                campaign.schedule.model_dump(mode="json") if campaign.schedule else None,
                campaign.budget.total,
                campaign.budget.spent,
                campaign.budget.cost_per_send,
                [g.model_dump(mode="json") for g in campaign.goals],
                campaign.batch_size,
                campaign.current_run_id,
                campaign.next_run_at,
                campaign.failure_reason,
                campaign.tags,
                campaign.metadata,
                campaign.launched_at,
                campaign.paused_at,
                campaign.completed_at,
                campaign.failed_at,
                campaign.created_at,
                campaign.updated_at,
                expected_status.value if expected_status else None,
            ]

            result = await self.db.query_row(query, params)
            if result:
                return self._row_to_campaign(result)
            return None if expected_status is not None else campaign

        except Exception as e:
            logger.error(f"Error saving campaign: {e}", exc_info=True)
            raise

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        """Get campaign by ID"""
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.campaigns_table}
                WHERE campaign_id = $1
            '''
            result = await self.db.query_row(query, [campaign_id])
            return self._row_to_campaign(result) if result else None

        except Exception as e:
            logger.error(f"Error getting campaign {campaign_id}: {e}")
            raise

    async def list_campaigns(
        self,
        status: Optional[List[CampaignStatus]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Campaign]:
        """List campaigns, optionally filtered by status"""
        try:
            conditions = []
            params: List[Any] = []
            if status:
                params.append([s.value for s in status])
                conditions.append(f"status = ANY(${len(params)})")

            where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            params.extend([limit, offset])
            query = f'''
                SELECT * FROM {self.schema}.{self.campaigns_table}
                {where}
                ORDER BY created_at, campaign_id
                LIMIT ${len(params) - 1} OFFSET ${len(params)}
            '''
            results = await self.db.query(query, params)
            return [self._row_to_campaign(row) for row in results]

        except Exception as e:
            logger.error(f"Error listing campaigns: {e}")
            raise

    async def increment_spend(self, campaign_id: str, amount: Decimal) -> Decimal:
        """Add to budget spent, returning the new total"""
        try:
            query = f'''
                UPDATE {self.schema}.{self.campaigns_table}
                SET budget_spent = budget_spent + $2
                WHERE campaign_id = $1
                RETURNING budget_spent
            '''
            result = await self.db.query_row(query, [campaign_id, amount])
            return Decimal(str(result["budget_spent"])) if result else Decimal("0")

        except Exception as e:
            logger.error(f"Error incrementing spend for {campaign_id}: {e}")
            raise

    # ====================
    # Runs
    # ====================

    async def save_run(self, run: CampaignRun) -> CampaignRun:
        """Save a run"""
        try:
            query = f'''
                INSERT INTO {self.schema}.{self.runs_table} (
                    run_id, campaign_id, segment_id, snapshot_version,
                    batch_size, total_recipients, total_batches, next_batch_index,
                    status, scheduled_for, sent_count, failed_count, skipped_count,
                    started_at, completed_at
                ) VALUES (
                    $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15
                )
                ON CONFLICT (run_id) DO UPDATE SET
                    next_batch_index = GREATEST({self.runs_table}.next_batch_index, EXCLUDED.next_batch_index),
                    status = EXCLUDED.status,
                    sent_count = EXCLUDED.sent_count,
                    failed_count = EXCLUDED.failed_count,
                    skipped_count = EXCLUDED.skipped_count,
                    completed_at = EXCLUDED.completed_at
                RETURNING *
            '''
            params = [
                run.run_id,
                run.campaign_id,
                run.segment_id,
                run.snapshot_version,
                run.batch_size,
                run.total_recipients,
                run.total_batches,
                run.next_batch_index,
                run.status.value,
                run.scheduled_for,
                run.sent_count,
                run.failed_count,
                run.skipped_count,
                run.started_at,
                run.completed_at,
            ]
            result = await self.db.query_row(query, params)
            return self._row_to_run(result) if result else run

        except Exception as e:
            logger.error(f"Error saving run {run.run_id}: {e}", exc_info=True)
            raise

    async def get_run(self, run_id: str) -> Optional[CampaignRun]:
        """Get run by ID"""
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.runs_table}
                WHERE run_id = $1
            '''
            result = await self.db.query_row(query, [run_id])
            return self._row_to_run(result) if result else None

        except Exception as e:
            logger.error(f"Error getting run {run_id}: {e}")
            raise

    # ====================
    # Dispatch ledger
    # ====================

    async def claim_dispatch(self, record: DispatchRecord) -> bool:
        """Insert-if-absent on (campaign_id, recipient_id, batch_id)"""
        try:
            query = f'''
                INSERT INTO {self.schema}.{self.ledger_table} (
                    campaign_id, recipient_id, batch_id, run_id, channel,
                    variant_id, status, reason, attempts, provider_message_id,
                    created_at, updated_at
                ) VALUES (
                    $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12
                )
                ON CONFLICT (campaign_id, recipient_id, batch_id) DO NOTHING
            '''
            status = await self.db.execute(query, self._record_params(record))
            return rows_affected(status) == 1

        except Exception as e:
            logger.error(f"Error claiming dispatch {record.idempotency_key}: {e}")
            raise

    async def update_dispatch(self, record: DispatchRecord) -> None:
        """Persist a claimed record's resolution"""
        try:
            query = f'''
                UPDATE {self.schema}.{self.ledger_table}
                SET channel = $4, status = $5, reason = $6, attempts = $7,
                    provider_message_id = $8, updated_at = $9
                WHERE campaign_id = $1 AND recipient_id = $2 AND batch_id = $3
            '''
            await self.db.execute(query, [
                record.campaign_id,
                record.recipient_id,
                record.batch_id,
                record.channel.value if record.channel else None,
                record.status.value,
                record.reason,
                record.attempts,
                record.provider_message_id,
                record.updated_at,
            ])

        except Exception as e:
            logger.error(f"Error updating dispatch {record.idempotency_key}: {e}")
            raise

    async def get_dispatch(
        self, campaign_id: str, recipient_id: str, batch_id: str
    ) -> Optional[DispatchRecord]:
        """Get one ledger record"""
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.ledger_table}
                WHERE campaign_id = $1 AND recipient_id = $2 AND batch_id = $3
            '''
            result = await self.db.query_row(query, [campaign_id, recipient_id, batch_id])
            return self._row_to_record(result) if result else None

        except Exception as e:
            logger.error(f"Error getting dispatch record: {e}")
            raise

    async def list_dispatches(
        self,
        campaign_id: str,
        batch_id: Optional[str] = None,
        status: Optional[DeliveryStatus] = None,
    ) -> List[DispatchRecord]:
        """List ledger records for a campaign"""
        try:
            conditions = ["campaign_id = $1"]
            params: List[Any] = [campaign_id]
            if batch_id:
                params.append(batch_id)
                conditions.append(f"batch_id = ${len(params)}")
            if status:
                params.append(status.value)
                conditions.append(f"status = ${len(params)}")

            query = f'''
                SELECT * FROM {self.schema}.{self.ledger_table}
                WHERE {' AND '.join(conditions)}
                ORDER BY batch_id, recipient_id
            '''
            results = await self.db.query(query, params)
            return [self._row_to_record(row) for row in results]

        except Exception as e:
            logger.error(f"Error listing dispatches for {campaign_id}: {e}")
            raise

    async def resolve_stale_dispatches(self, campaign_id: str, reason: str) -> int:
        """Mark leftover `dispatching` records failed"""
        try:
            query = f'''
                UPDATE {self.schema}.{self.ledger_table}
                SET status = $2, reason = $3, updated_at = $4
                WHERE campaign_id = $1 AND status = $5
            '''
            status = await self.db.execute(query, [
                campaign_id,
                DeliveryStatus.FAILED.value,
                reason,
                datetime.now(timezone.utc),
                DeliveryStatus.DISPATCHING.value,
            ])
            return rows_affected(status)

        except Exception as e:
            logger.error(f"Error resolving stale dispatches for {campaign_id}: {e}")
            raise

    # ====================
    # Row mappers
    # ====================

    def _record_params(self, record: DispatchRecord) -> List[Any]:
        return [
            record.campaign_id,
            record.recipient_id,
            record.batch_id,
            record.run_id,
            record.channel.value if record.channel else None,
            record.variant_id,
            record.status.value,
            record.reason,
            record.attempts,
            record.provider_message_id,
            record.created_at,
            record.updated_at,
        ]

    def _row_to_campaign(self, row: Dict[str, Any]) -> Campaign:
        """Convert database row to Campaign model"""
        schedule = row.get("schedule")
        return Campaign(
            campaign_id=row["campaign_id"],
            name=row["name"],
            description=row.get("description"),
            campaign_type=CampaignType(row["campaign_type"]),
            channels=[ChannelType(c) for c in (row.get("channels") or [])],
            status=CampaignStatus(row["status"]),
            segment_id=row["segment_id"],
            content_id=row["content_id"],
            schedule=CampaignSchedule.model_validate(schedule) if schedule else None,
            budget=CampaignBudget(
                total=row.get("budget_total"),
                spent=row.get("budget_spent") or Decimal("0"),
                cost_per_send=row.get("cost_per_send") or Decimal("0"),
            ),
            goals=[CampaignGoal.model_validate(g) for g in (row.get("goals") or [])],
            batch_size=row.get("batch_size"),
            current_run_id=row.get("current_run_id"),
            next_run_at=row.get("next_run_at"),
            failure_reason=row.get("failure_reason"),
            tags=row.get("tags") or [],
            metadata=row.get("metadata") or {},
            launched_at=row.get("launched_at"),
            paused_at=row.get("paused_at"),
            completed_at=row.get("completed_at"),
            failed_at=row.get("failed_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_run(self, row: Dict[str, Any]) -> CampaignRun:
        """Convert database row to CampaignRun model"""
        return CampaignRun(
            run_id=row["run_id"],
            campaign_id=row["campaign_id"],
            segment_id=row["segment_id"],
            snapshot_version=row["snapshot_version"],
            batch_size=row["batch_size"],
            total_recipients=row["total_recipients"],
            total_batches=row["total_batches"],
            next_batch_index=row["next_batch_index"],
            status=RunStatus(row["status"]),
            scheduled_for=row.get("scheduled_for"),
            sent_count=row["sent_count"],
            failed_count=row["failed_count"],
            skipped_count=row["skipped_count"],
            started_at=row["started_at"],
            completed_at=row.get("completed_at"),
        )

    def _row_to_record(self, row: Dict[str, Any]) -> DispatchRecord:
        """Convert database row to DispatchRecord model"""
        return DispatchRecord(
            campaign_id=row["campaign_id"],
            recipient_id=row["recipient_id"],
            batch_id=row["batch_id"],
            run_id=row["run_id"],
            channel=ChannelType(row["channel"]) if row.get("channel") else None,
            variant_id=row.get("variant_id"),
            status=DeliveryStatus(row["status"]),
            reason=row.get("reason"),
            attempts=row.get("attempts") or 0,
            provider_message_id=row.get("provider_message_id"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


__all__ = ["CampaignRepository"]
