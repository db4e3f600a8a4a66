"""
Automation Data Repository

Data access layer for trigger rules, workflow instances and step effect
claims - PostgreSQL (Async)
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.postgres_client import PostgresClientWrapper, rows_affected

from .models import EngineEvent, TriggerRule, WorkflowInstance, WorkflowStatus

logger = logging.getLogger(__name__)


class AutomationRepository:
    """Automation data repository - PostgreSQL (Async)"""

    def __init__(self, db: Optional[PostgresClientWrapper] = None):
        self.db = db or PostgresClientWrapper("campaign_engine")
        self.schema = self.db.schema

        # Table names
        self.rules_table = "trigger_rules"
        self.instances_table = "workflow_instances"
        self.effects_table = "workflow_step_effects"

    async def initialize(self):
        """Initialize database connection"""
        await self.db.connect()
        logger.info("Automation repository initialized with PostgreSQL")

    async def close(self):
        """Close database connection"""
        await self.db.close()

    # ====================
    # Trigger rules
    # ====================

    async def save_rule(self, rule: TriggerRule) -> TriggerRule:
        """Save a trigger rule"""
        try:
            query = f'''
                INSERT INTO {self.schema}.{self.rules_table} (
                    rule_id, name, event_type, conditions, steps, enabled,
                    version, created_at, updated_at, deleted_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (rule_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    event_type = EXCLUDED.event_type,
                    conditions = EXCLUDED.conditions,
                    steps = EXCLUDED.steps,
                    enabled = EXCLUDED.enabled,
                    version = EXCLUDED.version,
                    updated_at = EXCLUDED.updated_at,
                    deleted_at = EXCLUDED.deleted_at
                RETURNING *
            '''
            params = [
                rule.rule_id,
                rule.name,
                rule.event_type,
                rule.conditions.model_dump(mode="json") if rule.conditions else None,
                [step.model_dump(mode="json") for step in rule.steps],
                rule.enabled,
                rule.version,
                rule.created_at,
                rule.updated_at,
                rule.deleted_at,
            ]
            result = await self.db.query_row(query, params)
            return self._row_to_rule(result) if result else rule

        except Exception as e:
            logger.error(f"Error saving trigger rule: {e}", exc_info=True)
            raise

    async def get_rule(self, rule_id: str) -> Optional[TriggerRule]:
        """Get rule by ID, deleted rules included"""
        try:
            query = f"SELECT * FROM {self.schema}.{self.rules_table} WHERE rule_id = $1"
            result = await self.db.query_row(query, [rule_id])
            return self._row_to_rule(result) if result else None

        except Exception as e:
            logger.error(f"Error getting trigger rule {rule_id}: {e}")
            raise

    async def list_rules(self, event_type: Optional[str] = None, enabled_only: bool = False) -> List[TriggerRule]:
        """List non-deleted rules"""
        try:
            conditions = ["deleted_at IS NULL"]
            params: List[Any] = []
            if event_type:
                params.append(event_type)
                conditions.append(f"event_type = ${len(params)}")
            if enabled_only:
                conditions.append("enabled = TRUE")

            query = f'''
                SELECT * FROM {self.schema}.{self.rules_table}
                WHERE {" AND ".join(conditions)}
                ORDER BY created_at, rule_id
            '''
            results = await self.db.query(query, params)
            return [self._row_to_rule(row) for row in results]

        except Exception as e:
            logger.error(f"Error listing trigger rules: {e}")
            raise

    # ====================
    # Workflow instances
    # ====================

    async def create_instance_if_absent(self, instance: WorkflowInstance) -> bool:
        """Insert a new instance; False if one with the same id exists"""
        try:
            query = f'''
                INSERT INTO {self.schema}.{self.instances_table} (
                    instance_id, customer_id, rule_id, event_id, event,
                    status, current_step, resume_at, remaining_delay_seconds,
                    step_attempts, last_error, version, created_at, updated_at,
                    completed_at
                ) VALUES (
                    $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15
                )
                ON CONFLICT (instance_id) DO NOTHING
            '''
            status = await self.db.execute(query, self._instance_params(instance))
            return rows_affected(status) == 1

        except Exception as e:
            logger.error(f"Error creating workflow instance {instance.instance_id}: {e}")
            raise

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        try:
            query = f"SELECT * FROM {self.schema}.{self.instances_table} WHERE instance_id = $1"
            result = await self.db.query_row(query, [instance_id])
            return self._row_to_instance(result) if result else None

        except Exception as e:
            logger.error(f"Error getting workflow instance {instance_id}: {e}")
            raise

    async def update_instance(self, instance: WorkflowInstance, expected_version: int) -> bool:
        """Compare-and-set on version; False when another writer got there first"""
        try:
            query = f'''
                UPDATE {self.schema}.{self.instances_table} SET
                    status = $2,
                    current_step = $3,
                    resume_at = $4,
                    remaining_delay_seconds = $5,
                    step_attempts = $6,
                    last_error = $7,
                    version = $8,
                    updated_at = $9,
                    completed_at = $10
                WHERE instance_id = $1 AND version = $11
            '''
            status = await self.db.execute(query, [
                instance.instance_id,
                instance.status.value,
                instance.current_step,
                instance.resume_at,
                instance.remaining_delay_seconds,
                instance.step_attempts,
                instance.last_error,
                instance.version,
                instance.updated_at,
                instance.completed_at,
                expected_version,
            ])
            return rows_affected(status) == 1

        except Exception as e:
            logger.error(f"Error updating workflow instance {instance.instance_id}: {e}")
            raise

    async def list_instances(
        self,
        status: Optional[List[WorkflowStatus]] = None,
        rule_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> List[WorkflowInstance]:
        try:
            conditions = []
            params: List[Any] = []
            if status:
                params.append([s.value for s in status])
                conditions.append(f"status = ANY(${len(params)})")
            if rule_id:
                params.append(rule_id)
                conditions.append(f"rule_id = ${len(params)}")
            if customer_id:
                params.append(customer_id)
                conditions.append(f"customer_id = ${len(params)}")

            where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            query = f'''
                SELECT * FROM {self.schema}.{self.instances_table}
                {where}
                ORDER BY created_at, instance_id
            '''
            results = await self.db.query(query, params)
            return [self._row_to_instance(row) for row in results]

        except Exception as e:
            logger.error(f"Error listing workflow instances: {e}")
            raise

    async def list_due_instances(self, now: datetime) -> List[WorkflowInstance]:
        """Waiting instances whose resume time has passed"""
        query = f'''
            SELECT * FROM {self.schema}.{self.instances_table}
            WHERE status = $1 AND resume_at <= $2
            ORDER BY resume_at, instance_id
        '''
        results = await self.db.query(query, [WorkflowStatus.WAITING.value, now])
        return [self._row_to_instance(row) for row in results]

    async def claim_step_effect(self, instance_id: str, step_index: int) -> bool:
        """Record that a step's side effect is being attempted; False if already claimed"""
        query = f'''
            INSERT INTO {self.schema}.{self.effects_table} (instance_id, step_index, claimed_at)
            VALUES ($1, $2, NOW())
            ON CONFLICT (instance_id, step_index) DO NOTHING
        '''
        status = await self.db.execute(query, [instance_id, step_index])
        return rows_affected(status) == 1

    # ====================
    # Row mappers
    # ====================

    def _instance_params(self, instance: WorkflowInstance) -> List[Any]:
        return [
            instance.instance_id,
            instance.customer_id,
            instance.rule_id,
            instance.event_id,
            instance.event.to_envelope(),
            instance.status.value,
            instance.current_step,
            instance.resume_at,
            instance.remaining_delay_seconds,
            instance.step_attempts,
            instance.last_error,
            instance.version,
            instance.created_at,
            instance.updated_at,
            instance.completed_at,
        ]

    def _row_to_rule(self, row: Dict[str, Any]) -> TriggerRule:
        """Convert database row to TriggerRule model"""
        return TriggerRule(
            rule_id=row["rule_id"],
            name=row["name"],
            event_type=row["event_type"],
            conditions=row.get("conditions"),
            steps=row.get("steps") or [],
            enabled=row.get("enabled", True),
            version=row.get("version") or 1,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row.get("deleted_at"),
        )

    def _row_to_instance(self, row: Dict[str, Any]) -> WorkflowInstance:
        """Convert database row to WorkflowInstance model"""
        return WorkflowInstance(
            instance_id=row["instance_id"],
            customer_id=row["customer_id"],
            rule_id=row["rule_id"],
            event_id=row["event_id"],
            event=EngineEvent.from_envelope(row["event"]),
            status=WorkflowStatus(row["status"]),
            current_step=row.get("current_step") or 0,
            resume_at=row.get("resume_at"),
            remaining_delay_seconds=row.get("remaining_delay_seconds"),
            step_attempts=row.get("step_attempts") or 0,
            last_error=row.get("last_error"),
            version=row.get("version") or 0,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row.get("completed_at"),
        )


__all__ = ["AutomationRepository"]
