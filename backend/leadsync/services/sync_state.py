"""Per (platform, namespace) sync watermarks."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, Iterable, Optional

from sqlalchemy import select, and_

from leadsync.database import storage_guard
from leadsync.models import SyncWatermark
from leadsync.utils import to_naive_utc

logger = logging.getLogger(__name__)


class SyncStateStore:
    """Last successfully synced time, read by incremental runs."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str):
        async with storage_guard("Watermark", operation):
            async with self.session_factory() as session:
                yield session

    async def get_watermark(self, platform: str, namespace: str) -> Optional[datetime]:
        async with self._session("get_watermark") as session:
            result = await session.execute(
                select(SyncWatermark.last_synced_at).where(
                    and_(
                        SyncWatermark.platform == platform,
                        SyncWatermark.namespace == namespace
                    )
                )
            )
            return result.scalar_one_or_none()

    async def set_watermark(self, platform: str, namespace: str, ts: datetime) -> None:
        ts = to_naive_utc(ts)
        async with self._session("set_watermark") as session:
            result = await session.execute(
                select(SyncWatermark).where(
                    and_(
                        SyncWatermark.platform == platform,
                        SyncWatermark.namespace == namespace
                    )
                ).with_for_update()
            )
            row = result.scalars().first()
            if row is None:
                session.add(SyncWatermark(platform=platform, namespace=namespace, last_synced_at=ts))
            else:
                row.last_synced_at = ts
            await session.commit()
        logger.info(f"🕒 Watermark {platform}/{namespace} -> {ts.isoformat()}")

    async def reset_watermarks(self, platform: str, namespaces: Iterable[str], ts: datetime) -> None:
        """Overwrite (not just advance) the watermark for each namespace."""
        for namespace in namespaces:
            await self.set_watermark(platform, namespace, ts)

    async def all_watermarks(self) -> Dict[str, Dict[str, str]]:
        async with self._session("all_watermarks") as session:
            result = await session.execute(select(SyncWatermark))
            rows = result.scalars().all()
        watermarks: Dict[str, Dict[str, str]] = {}
        for row in rows:
            watermarks.setdefault(row.platform, {})[row.namespace] = row.last_synced_at.isoformat()
        return watermarks
