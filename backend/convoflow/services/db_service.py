# /convoflow/services/db_service.py

import logging
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, Tuple

from convoflow.config.settings import settings
from convoflow.models.execution import Execution, ExecutionStatus
from convoflow.models.flow import Flow, Step
from convoflow.utils.metrics import database_operations_counter
from convoflow.workflows.errors import PersistenceError
from convoflow.workflows.store import ExecutionStore
from convoflow.workflows.validator import parse_execution, parse_flow

logger = logging.getLogger(__name__)

FLOWS = "flows"
EXECUTIONS = "workflow_executions"


class DatabaseService(ExecutionStore):
    """
    MongoDB-backed execution store. Also owns the client that the side-effect
    services (messages, tickets, notifications, conversations) share.
    """

    def __init__(self, mongo_uri: str):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=settings.max_pool_size,
                minPoolSize=settings.min_pool_size,
                tls=settings.mongo_ssl,
                tz_aware=True,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000
            )
            self.db = self.client.get_default_database()
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    # ==================== Helper Methods ====================

    def _now_utc(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _run(self, operation_name: str, operation):
        """
        Execute a database operation, translating driver failures into PersistenceError.

        Args:
            operation_name: Label used for metrics and logs
            operation: Zero-argument async callable

        Returns:
            The operation result
        """
        try:
            result = await operation()
            database_operations_counter.labels(operation=operation_name, status="success").inc()
            return result
        except PyMongoError as e:
            database_operations_counter.labels(operation=operation_name, status="failed").inc()
            logger.error(f"Database operation '{operation_name}' failed: {type(e).__name__}: {e}")
            raise PersistenceError(f"{operation_name} failed: {e}") from e

    def _execution_to_document(self, execution: Execution) -> Dict[str, Any]:
        document = execution.model_dump(by_alias=True, exclude={"status", "steps"})
        document["status"] = execution.status.value
        document["steps"] = (
            [step.model_dump(mode="json") for step in execution.steps]
            if execution.steps is not None else None
        )
        return document

    # ==================== Index Management ====================

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            (FLOWS, [("tenant_id", 1), ("is_active", 1)], {}),
            (EXECUTIONS, [("tenant_id", 1), ("status", 1)], {}),
            (EXECUTIONS, [("status", 1), ("resume_at", 1)], {}),
            (EXECUTIONS, [("flow_id", 1), ("started_at", -1)], {}),
            ("messages", [("idempotency_key", 1)], {"unique": True, "sparse": True}),
            ("messages", [("conversation_id", 1), ("created_at", 1)], {}),
            ("tickets", [("idempotency_key", 1)], {"unique": True, "sparse": True}),
            ("notifications", [("idempotency_key", 1)], {"unique": True, "sparse": True}),
        ]

        for collection, keys, options in indexes:
            try:
                await self.db[collection].create_index(keys, **options)
                logger.debug(f"Created index on {collection}: {keys}")
            except Exception as e:
                logger.error(f"Failed to create index on {collection} {keys}: {e}")

        logger.info("Database indexes created successfully.")

    async def health_check(self) -> bool:
        try:
            await self.client.admin.command('ping')
            return True
        except Exception as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False

    # ==================== Flow Operations ====================

    async def load_flow(self, flow_id: str, tenant_id: str) -> Optional[Flow]:
        document = await self._run(
            "load_flow",
            lambda: self.db[FLOWS].find_one({"_id": flow_id, "tenant_id": tenant_id})
        )
        return parse_flow(document) if document else None

    # ==================== Execution Operations ====================

    async def create_execution(self, execution: Execution) -> Execution:
        document = self._execution_to_document(execution)
        await self._run("create_execution", lambda: self.db[EXECUTIONS].insert_one(document))
        return execution

    async def load_execution(self, execution_id: str) -> Optional[Execution]:
        document = await self._run(
            "load_execution",
            lambda: self.db[EXECUTIONS].find_one({"_id": execution_id})
        )
        return parse_execution(document) if document else None

    async def save_steps_snapshot(self, execution_id: str, steps: List[Step]) -> None:
        snapshot = [step.model_dump(mode="json") for step in steps]
        await self._run(
            "save_steps_snapshot",
            lambda: self.db[EXECUTIONS].update_one(
                {"_id": execution_id, "steps": None},
                {"$set": {"steps": snapshot, "updated_at": self._now_utc()}}
            )
        )

    async def checkpoint(
        self,
        execution_id: str,
        current_step: int,
        data: Dict[str, Any],
        resume_at: Optional[datetime] = None,
    ) -> None:
        result = await self._run(
            "checkpoint",
            lambda: self.db[EXECUTIONS].update_one(
                {
                    "_id": execution_id,
                    "status": ExecutionStatus.RUNNING.value,
                    "current_step": {"$lte": current_step},
                },
                {"$set": {
                    "current_step": current_step,
                    "data": data,
                    "resume_at": resume_at,
                    "updated_at": self._now_utc(),
                }}
            )
        )
        if result.matched_count == 0:
            logger.warning(f"Checkpoint for execution {execution_id} matched no RUNNING record at step <= {current_step}")

    async def finalize(
        self,
        execution_id: str,
        status: ExecutionStatus,
        result: Optional[Dict[str, Any]],
        ended_at: datetime,
    ) -> None:
        update = await self._run(
            "finalize",
            lambda: self.db[EXECUTIONS].update_one(
                {"_id": execution_id, "status": ExecutionStatus.RUNNING.value},
                {"$set": {
                    "status": status.value,
                    "result": result,
                    "ended_at": ended_at,
                    "resume_at": None,
                    "updated_at": ended_at,
                }}
            )
        )
        if update.matched_count == 0:
            logger.warning(f"Finalize for execution {execution_id} ignored: record is not RUNNING")

    async def request_cancel(self, execution_id: str) -> bool:
        document = await self._run(
            "request_cancel",
            lambda: self.db[EXECUTIONS].find_one_and_update(
                {"_id": execution_id, "status": ExecutionStatus.RUNNING.value},
                {"$set": {"cancel_requested": True, "updated_at": self._now_utc()}},
                return_document=ReturnDocument.AFTER
            )
        )
        return document is not None

    async def is_cancel_requested(self, execution_id: str) -> bool:
        document = await self._run(
            "is_cancel_requested",
            lambda: self.db[EXECUTIONS].find_one({"_id": execution_id}, {"cancel_requested": 1})
        )
        return bool(document and document.get("cancel_requested"))

    async def find_due_executions(self, now: datetime, limit: int = 100) -> List[str]:
        documents = await self._run(
            "find_due_executions",
            lambda: self.db[EXECUTIONS].find(
                {"status": ExecutionStatus.RUNNING.value, "resume_at": {"$ne": None, "$lte": now}},
                {"_id": 1}
            ).sort("resume_at", 1).limit(limit).to_list(length=limit)
        )
        return [document["_id"] for document in documents]

    async def list_executions(
        self,
        tenant_id: str,
        page: int = 1,
        limit: int = 20,
        status: Optional[ExecutionStatus] = None,
        flow_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> Tuple[List[Execution], Dict[str, int]]:
        """
        Get a tenant's executions, newest first.

        Args:
            tenant_id: Owning tenant
            page: Page number (1-indexed)
            limit: Items per page
            status, flow_id, conversation_id: Optional exact-match filters

        Returns:
            Tuple of (executions without their step snapshot, pagination info)
        """
        query: Dict[str, Any] = {"tenant_id": tenant_id}
        if status is not None:
            query["status"] = ExecutionStatus(status).value
        if flow_id:
            query["flow_id"] = flow_id
        if conversation_id:
            query["conversation_id"] = conversation_id

        skip = (page - 1) * limit
        pipeline = [
            {"$match": query},
            {
                "$facet": {
                    "executions": [
                        {"$sort": {"started_at": -1}},
                        {"$skip": skip},
                        {"$limit": limit},
                        {"$project": {"steps": 0}}
                    ],
                    "total": [{"$count": "count"}]
                }
            }
        ]

        result = await self._run(
            "list_executions",
            lambda: self.db[EXECUTIONS].aggregate(pipeline).to_list(length=1)
        )

        documents = result[0].get("executions", []) if result else []
        total_count = (result[0].get("total") or [{}])[0].get("count", 0) if result else 0
        pagination = {
            "page": page,
            "limit": limit,
            "total": total_count,
            "pages": (total_count + limit - 1) // limit if limit else 0,
        }
        return [parse_execution(document) for document in documents], pagination

    async def get_execution_stats(self, tenant_id: str) -> Dict[str, Any]:
        async def _collect():
            total_flows = await self.db[FLOWS].count_documents({"tenant_id": tenant_id})
            active_flows = await self.db[FLOWS].count_documents({"tenant_id": tenant_id, "is_active": True})
            by_status = {status.value: 0 for status in ExecutionStatus}
            pipeline = [
                {"$match": {"tenant_id": tenant_id}},
                {"$group": {"_id": "$status", "count": {"$sum": 1}}},
            ]
            async for row in self.db[EXECUTIONS].aggregate(pipeline):
                by_status[row["_id"]] = row["count"]
            return total_flows, active_flows, by_status

        total_flows, active_flows, by_status = await self._run("get_execution_stats", _collect)
        total_executions = sum(by_status.values())
        completed = by_status[ExecutionStatus.COMPLETED.value]
        return {
            "total_flows": total_flows,
            "active_flows": active_flows,
            "total_executions": total_executions,
            "executions_by_status": by_status,
            "success_rate": (completed / total_executions) * 100 if total_executions else 0,
        }

# Globally accessible instance
db_service = DatabaseService(settings.mongo_uri)
