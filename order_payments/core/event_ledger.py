"""
Idempotency ledger for gateway webhook events.

Two tiers, following the payment idempotency cache:
1. Redis for fast "already seen" lookups (optional)
2. Database rows as the durable, authoritative record

The database primary key on event_id makes recording atomic: when two
redelivered copies race, exactly one insert succeeds.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
import uuid

import redis.asyncio as aioredis
import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_payments.database.models import ProcessedEvent

logger = structlog.get_logger(__name__)


class EventLedger:
    """Records which gateway event ids have already produced an effect."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: Optional[aioredis.Redis] = None,
        cache_ttl: int = 86400 * 7,
    ):
        """
        Initialize the ledger.

        Args:
            session_factory: Session factory for the ledger table
            redis_client: Optional Redis client used as a lookup cache
            cache_ttl: Seconds a processed id stays in Redis
        """
        self.session_factory = session_factory
        self.redis_client = redis_client
        self.cache_ttl = cache_ttl

    @staticmethod
    def _cache_key(event_id: str) -> str:
        return f"webhook:processed:{event_id}"

    async def has_processed(self, event_id: str) -> bool:
        """
        Check if a gateway event has already been processed.

        Checks Redis first, then falls back to the database.
        """
        if self.redis_client is not None:
            try:
                if await self.redis_client.exists(self._cache_key(event_id)):
                    logger.info("ledger_cache_hit", event_id=event_id, source="redis")
                    return True
            except Exception as e:
                logger.warning("ledger_cache_check_error", error=str(e), event_id=event_id)

        async with self.session_factory() as session:
            found = await session.scalar(
                select(ProcessedEvent.event_id).where(ProcessedEvent.event_id == event_id)
            )
        if found is not None:
            logger.info("ledger_cache_hit", event_id=event_id, source="database")
            await self._cache(event_id)
            return True
        return False

    async def record(
        self,
        event_id: str,
        event_type: str,
        effect: str,
        order_id: Optional[uuid.UUID] = None,
    ) -> bool:
        """
        Insert the event id if absent.

        Returns:
            bool: True if this call recorded the event, False if it was already there
        """
        entry = ProcessedEvent(
            event_id=event_id,
            event_type=event_type,
            order_id=order_id,
            effect=effect,
            processed_at=datetime.now(timezone.utc),
        )
        async with self.session_factory() as session:
            session.add(entry)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("ledger_event_already_recorded", event_id=event_id)
                return False

        logger.info("ledger_event_recorded", event_id=event_id, event_type=event_type, effect=effect)
        await self._cache(event_id)
        return True

    async def get(self, event_id: str) -> Optional[ProcessedEvent]:
        async with self.session_factory() as session:
            return await session.get(ProcessedEvent, event_id)

    async def count(self) -> int:
        async with self.session_factory() as session:
            return await session.scalar(select(func.count()).select_from(ProcessedEvent)) or 0

    async def purge_older_than(self, retention: timedelta) -> int:
        """
        Delete ledger rows older than the retention window.

        The window must exceed the gateway's redelivery window, otherwise a
        late redelivery would be processed a second time.

        Returns:
            int: Number of rows deleted
        """
        cutoff = datetime.now(timezone.utc) - retention
        async with self.session_factory() as session:
            result = await session.execute(
                delete(ProcessedEvent).where(ProcessedEvent.processed_at < cutoff)
            )
            await session.commit()

        logger.info("ledger_purged", cutoff=cutoff.isoformat(), deleted=result.rowcount)
        return result.rowcount

    async def _cache(self, event_id: str) -> None:
        if self.redis_client is None:
            return
        try:
            await self.redis_client.setex(self._cache_key(event_id), self.cache_ttl, "1")
        except Exception as e:
            logger.warning("ledger_cache_store_error", error=str(e), event_id=event_id)

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
