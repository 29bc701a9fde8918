#!/usr/bin/env python3
"""
MongoDB Atlas Manager for the Nelo WhatsApp assistant
Persists users, pending operations, settlement jobs and payment requests.
Falls back to an in-process cache when MongoDB is not configured.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any, Iterable
from pymongo.mongo_client import MongoClient
from pymongo.server_api import ServerApi
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pydantic import BaseModel
from nelo.schemas.core import (
    UserRecord, PendingOperation, SettlementJob, PaymentRequest, VirtualCard,
    OperationState, JobStatus, PaymentStatus, utcnow,
)
from .config import settings
from .logger import get_logger

logger = get_logger("mongodb_manager")


def _plain(value: Any) -> Any:
    """Strip enums so documents are plain BSON types."""
    if isinstance(value, BaseModel):
        return _plain(value.model_dump())
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return value


def _doc(model) -> Dict[str, Any]:
    return _plain(model.model_dump())


class MongoDBManager:
    """MongoDB Atlas connection and persistence operations."""

    def __init__(self, mongodb_url: Optional[str] = None):
        self.client: Optional[MongoClient] = None
        self.db: Optional[Database] = None
        self.connected: bool = False
        # Fallback in-memory collections if MongoDB is unavailable
        self.local_cache: Dict[str, Dict[str, Any]] = {
            "users": {},
            "operations": {},
            "settlement_jobs": {},
            "payment_requests": {},
        }
        self._connect(mongodb_url if mongodb_url is not None else settings.mongodb_url)

    def _connect(self, mongodb_url: str):
        """Connect to MongoDB Atlas."""
        try:
            if not mongodb_url or mongodb_url == "mongodb://localhost:27017":
                logger.warning("MongoDB Atlas URL not configured, using local fallback")
                return

            if "<db_password>" in mongodb_url:
                logger.warning("MongoDB password placeholder found - please replace <db_password> with actual password")
                return

            self.client = MongoClient(mongodb_url, server_api=ServerApi('1'), tz_aware=True)

            # Test connection
            self.client.admin.command('ping')

            self.db = self.client[settings.mongodb_database]
            self.connected = True

            self._create_indexes()

            logger.info(f"✅ Connected to MongoDB Atlas database: {settings.mongodb_database}")

        except Exception as e:
            logger.error(f"Failed to connect to MongoDB Atlas: {e}")
            logger.info("App will continue with the in-process store")
            self.client = None
            self.db = None
            self.connected = False

    def _create_indexes(self):
        """Create database indexes."""
        if not self.connected or self.db is None:
            return

        try:
            self.db.users.create_index([("user_id", ASCENDING)], unique=True)
            self.db.users.create_index([("last_active", ASCENDING)])

            self.db.operations.create_index([("operation_id", ASCENDING)], unique=True)
            self.db.operations.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])

            self.db.settlement_jobs.create_index([("operation_id", ASCENDING)], unique=True)
            self.db.settlement_jobs.create_index([("status", ASCENDING), ("next_run_at", ASCENDING)])

            self.db.payment_requests.create_index([("reference", ASCENDING)], unique=True)
            self.db.payment_requests.create_index([("user_id", ASCENDING), ("status", ASCENDING)])

            logger.info("✅ Database indexes created successfully")

        except Exception as e:
            logger.warning(f"Failed to create database indexes: {e}")

    def is_connected(self) -> bool:
        """Check if MongoDB is connected."""
        return self.connected

    # User Management
    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        if self.connected and self.db is not None:
            doc = self.db.users.find_one({"user_id": user_id}, {"_id": 0})
            return UserRecord(**doc) if doc else None

        user = self.local_cache["users"].get(user_id)
        return user.model_copy(deep=True) if user else None

    async def save_user(self, user: UserRecord) -> UserRecord:
        if self.connected and self.db is not None:
            self.db.users.replace_one({"user_id": user.user_id}, _doc(user), upsert=True)
        else:
            self.local_cache["users"][user.user_id] = user.model_copy(deep=True)
        logger.debug(f"Saved user {user.user_id}")
        return user

    async def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[UserRecord]:
        if self.connected and self.db is not None:
            doc = self.db.users.find_one_and_update(
                {"user_id": user_id},
                {"$set": _plain(fields)},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
            return UserRecord(**doc) if doc else None

        user = self.local_cache["users"].get(user_id)
        if user is None:
            return None
        self.local_cache["users"][user_id] = UserRecord(**{**user.model_dump(), **fields})
        return self.local_cache["users"][user_id].model_copy(deep=True)

    async def add_card(self, user_id: str, card: VirtualCard) -> bool:
        """Attach a card once per originating operation."""
        if self.connected and self.db is not None:
            query: Dict[str, Any] = {"user_id": user_id}
            if card.operation_id:
                query["cards.operation_id"] = {"$ne": card.operation_id}
            result = self.db.users.update_one(query, {"$push": {"cards": _doc(card)}})
            return result.modified_count == 1

        user = self.local_cache["users"].get(user_id)
        if user is None:
            return False
        if card.operation_id and any(c.operation_id == card.operation_id for c in user.cards):
            return False
        user.cards.append(card.model_copy(deep=True))
        return True

    async def find_inactive_users(self, since: datetime, limit: int) -> List[UserRecord]:
        """Users whose last activity is older than `since`."""
        if self.connected and self.db is not None:
            cursor = self.db.users.find(
                {"last_active": {"$lt": since}}, {"_id": 0}
            ).sort("last_active", ASCENDING).limit(limit)
            return [UserRecord(**doc) for doc in cursor]

        users = [u for u in self.local_cache["users"].values() if u.last_active < since]
        users.sort(key=lambda u: u.last_active)
        return [u.model_copy(deep=True) for u in users[:limit]]

    async def list_users(self, limit: int) -> List[UserRecord]:
        if self.connected and self.db is not None:
            cursor = self.db.users.find({}, {"_id": 0}).sort("created_at", DESCENDING).limit(limit)
            return [UserRecord(**doc) for doc in cursor]

        users = sorted(self.local_cache["users"].values(), key=lambda u: u.created_at, reverse=True)
        return [u.model_copy(deep=True) for u in users[:limit]]

    # Operation Management
    async def save_operation(self, operation: PendingOperation) -> PendingOperation:
        if self.connected and self.db is not None:
            self.db.operations.replace_one(
                {"operation_id": operation.operation_id}, _doc(operation), upsert=True
            )
        else:
            self.local_cache["operations"][operation.operation_id] = operation.model_copy(deep=True)
        return operation

    async def get_operation(self, operation_id: str) -> Optional[PendingOperation]:
        if self.connected and self.db is not None:
            doc = self.db.operations.find_one({"operation_id": operation_id}, {"_id": 0})
            return PendingOperation(**doc) if doc else None

        operation = self.local_cache["operations"].get(operation_id)
        return operation.model_copy(deep=True) if operation else None

    async def transition_operation(self, operation_id: str, expected: Iterable[OperationState],
                                   updates: Dict[str, Any]) -> Optional[PendingOperation]:
        """
        Compare-and-set an operation.

        Applies `updates` only if the stored state is one of `expected`.
        Returns the updated operation, or None if another writer got there first.
        """
        expected_values = [state.value for state in expected]
        updates = {**updates, "updated_at": utcnow()}

        if self.connected and self.db is not None:
            doc = self.db.operations.find_one_and_update(
                {"operation_id": operation_id, "state": {"$in": expected_values}},
                {"$set": _plain(updates)},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
            return PendingOperation(**doc) if doc else None

        operation = self.local_cache["operations"].get(operation_id)
        if operation is None or operation.state.value not in expected_values:
            return None
        updated = PendingOperation(**{**operation.model_dump(), **updates})
        self.local_cache["operations"][operation_id] = updated
        return updated.model_copy(deep=True)

    async def claim_operation_flag(self, operation_id: str, flag: str) -> bool:
        """Set metadata[flag] once; False if it was already set."""
        if self.connected and self.db is not None:
            result = self.db.operations.update_one(
                {"operation_id": operation_id, f"metadata.{flag}": {"$ne": True}},
                {"$set": {f"metadata.{flag}": True, "updated_at": utcnow()}},
            )
            return result.modified_count == 1

        operation = self.local_cache["operations"].get(operation_id)
        if operation is None or operation.metadata.get(flag):
            return False
        operation.metadata[flag] = True
        return True

    async def list_user_operations(self, user_id: str, limit: int = 10) -> List[PendingOperation]:
        if self.connected and self.db is not None:
            cursor = self.db.operations.find(
                {"user_id": user_id}, {"_id": 0}
            ).sort("created_at", DESCENDING).limit(limit)
            return [PendingOperation(**doc) for doc in cursor]

        operations = [op for op in self.local_cache["operations"].values() if op.user_id == user_id]
        operations.sort(key=lambda op: op.created_at, reverse=True)
        return [op.model_copy(deep=True) for op in operations[:limit]]

    # Settlement Job Management
    async def save_job(self, job: SettlementJob) -> SettlementJob:
        if self.connected and self.db is not None:
            self.db.settlement_jobs.replace_one({"operation_id": job.operation_id}, _doc(job), upsert=True)
        else:
            self.local_cache["settlement_jobs"][job.operation_id] = job.model_copy(deep=True)
        return job

    async def get_job(self, operation_id: str) -> Optional[SettlementJob]:
        if self.connected and self.db is not None:
            doc = self.db.settlement_jobs.find_one({"operation_id": operation_id}, {"_id": 0})
            return SettlementJob(**doc) if doc else None

        job = self.local_cache["settlement_jobs"].get(operation_id)
        return job.model_copy(deep=True) if job else None

    async def update_job(self, operation_id: str, fields: Dict[str, Any]) -> None:
        if self.connected and self.db is not None:
            self.db.settlement_jobs.update_one({"operation_id": operation_id}, {"$set": _plain(fields)})
            return

        job = self.local_cache["settlement_jobs"].get(operation_id)
        if job is not None:
            self.local_cache["settlement_jobs"][operation_id] = SettlementJob(**{**job.model_dump(), **fields})

    async def list_pending_jobs(self) -> List[SettlementJob]:
        if self.connected and self.db is not None:
            cursor = self.db.settlement_jobs.find(
                {"status": JobStatus.PENDING.value}, {"_id": 0}
            ).sort("next_run_at", ASCENDING)
            return [SettlementJob(**doc) for doc in cursor]

        jobs = [job for job in self.local_cache["settlement_jobs"].values() if job.status == JobStatus.PENDING]
        jobs.sort(key=lambda job: job.next_run_at)
        return [job.model_copy(deep=True) for job in jobs]

    # Payment Request Management
    async def save_payment_request(self, request: PaymentRequest) -> PaymentRequest:
        if self.connected and self.db is not None:
            self.db.payment_requests.replace_one({"reference": request.reference}, _doc(request), upsert=True)
        else:
            self.local_cache["payment_requests"][request.reference] = request.model_copy(deep=True)
        return request

    async def find_pending_payment(self, user_id: str, amount: int, token: str) -> Optional[PaymentRequest]:
        """Most recent pending request for exactly this amount."""
        query = {
            "user_id": user_id,
            "amount": amount,
            "token": token,
            "status": PaymentStatus.PENDING.value,
        }
        if self.connected and self.db is not None:
            doc = self.db.payment_requests.find_one(query, {"_id": 0}, sort=[("created_at", DESCENDING)])
            return PaymentRequest(**doc) if doc else None

        matches = [
            r for r in self.local_cache["payment_requests"].values()
            if r.user_id == user_id and r.amount == amount and r.token == token
            and r.status == PaymentStatus.PENDING
        ]
        if not matches:
            return None
        return max(matches, key=lambda r: r.created_at).model_copy(deep=True)

    async def mark_payment_verified(self, reference: str) -> bool:
        """PENDING -> VERIFIED; False if the request was already consumed."""
        if self.connected and self.db is not None:
            result = self.db.payment_requests.update_one(
                {"reference": reference, "status": PaymentStatus.PENDING.value},
                {"$set": {"status": PaymentStatus.VERIFIED.value}},
            )
            return result.modified_count == 1

        request = self.local_cache["payment_requests"].get(reference)
        if request is None or request.status != PaymentStatus.PENDING:
            return False
        request.status = PaymentStatus.VERIFIED
        return True

    async def revert_payment(self, reference: str) -> None:
        """VERIFIED -> PENDING after a failed mint so the user can retry."""
        if self.connected and self.db is not None:
            self.db.payment_requests.update_one(
                {"reference": reference, "status": PaymentStatus.VERIFIED.value},
                {"$set": {"status": PaymentStatus.PENDING.value}},
            )
            return

        request = self.local_cache["payment_requests"].get(reference)
        if request is not None and request.status == PaymentStatus.VERIFIED:
            request.status = PaymentStatus.PENDING

    def close(self):
        """Close MongoDB connection."""
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")
