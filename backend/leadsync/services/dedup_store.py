"""Event deduplication ledger (SQL authoritative, optional Redis cache)."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

import redis.asyncio as redis
from sqlalchemy import select, and_, text
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from leadsync.config import settings
from leadsync.errors import AlreadyExists, DedupStoreUnavailable
from leadsync.models import EventRecord, UserRecord

logger = logging.getLogger(__name__)


class DedupStore:
    """
    Gate in front of every event write.

    ``record_event`` is an atomic check-and-set: the unique ``event_key``
    constraint decides which of two racing writers wins. The Redis tier
    only answers ``has_event`` hits faster; a cache miss always falls
    through to SQL.
    """

    def __init__(self, session_factory, redis_client=None, cache_ttl: Optional[int] = None):
        self.session_factory = session_factory
        self.redis_client = redis_client
        self.cache_ttl = cache_ttl or settings.DEDUP_CACHE_TTL_SECONDS

    async def initialize(self):
        """Initialize Redis connection."""
        if settings.ENABLE_DEDUP_CACHE and not self.redis_client:
            self.redis_client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True
            )
            logger.info("Redis connection initialized for event dedup cache")

    async def close(self):
        """Close Redis connection."""
        if self.redis_client:
            await self.redis_client.aclose()

    @staticmethod
    def generate_cache_key(event_key: str) -> str:
        return f"leadsync:event:{event_key}"

    @asynccontextmanager
    async def _guard(self, operation: str):
        """Translate storage outages into DedupStoreUnavailable."""
        try:
            yield
        except (AlreadyExists, IntegrityError):
            raise
        except (OperationalError, DBAPIError, OSError) as e:
            logger.error(f"❌ Dedup store unavailable during {operation}: {e}")
            raise DedupStoreUnavailable(f"Dedup store unavailable ({operation}): {e}") from e

    async def has_event(self, key: str) -> bool:
        if self.redis_client:
            try:
                if await self.redis_client.get(self.generate_cache_key(key)):
                    logger.debug(f"Cache hit for event key: {key}")
                    return True
            except (redis.RedisError, OSError) as e:
                logger.warning(f"Redis cache check failed: {e}")

        async with self._guard("has_event"):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(EventRecord.id).where(EventRecord.event_key == key)
                )
                return result.scalar_one_or_none() is not None

    async def record_event(
        self,
        event_key: str,
        event_type: str,
        platform: str,
        partition_id: UUID,
        user_email: str,
        campaign_name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        occurred_at: Optional[datetime] = None,
    ) -> EventRecord:
        """
        Insert the event if its key is new.

        Raises:
            AlreadyExists: another writer (or an earlier run) owns the key
            DedupStoreUnavailable: the ledger could not be reached
        """
        record = EventRecord(
            event_key=event_key,
            event_type=event_type,
            platform=platform,
            partition_id=partition_id,
            user_email=user_email,
            campaign_name=campaign_name,
            event_metadata=metadata or {},
            occurred_at=occurred_at,
        )

        async with self._guard("record_event"):
            async with self.session_factory() as session:
                session.add(record)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    raise AlreadyExists(event_key)

        if self.redis_client:
            try:
                await self.redis_client.setex(self.generate_cache_key(event_key), self.cache_ttl, "1")
            except (redis.RedisError, OSError) as e:
                logger.warning(f"Failed to cache event key: {e}")

        return record

    async def has_user(self, partition_id: UUID, email: str) -> bool:
        async with self._guard("has_user"):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(UserRecord.id).where(
                        and_(
                            UserRecord.partition_id == partition_id,
                            UserRecord.email == email.lower()
                        )
                    )
                )
                return result.scalar_one_or_none() is not None

    async def ping(self) -> bool:
        """True when the SQL ledger answers."""
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except (OperationalError, DBAPIError, OSError) as e:
            logger.error(f"Dedup store ping failed: {e}")
            return False
