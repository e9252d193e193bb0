"""
User store: merge-on-sighting and score persistence.

A user belongs to exactly one namespace. The first routing decides the
partition; later sightings routed elsewhere merge into that record.
"""

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, and_, func

from leadsync.connectors.base import InboundEvent
from leadsync.database import storage_guard
from leadsync.models import EventRecord, UserRecord
from leadsync.utils import normalize_email, utcnow

logger = logging.getLogger(__name__)

# First non-null value wins
IDENTITY_FIELDS = (
    "first_name", "last_name", "full_name", "company", "title", "linkedin_profile",
)


def merge_user_data(existing: UserRecord, new_data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge a sighting into an existing user.

    Strategy:
    - identity fields only fill blanks
    - enrichment payload: latest non-null wins
    - platforms / external ids accumulate
    - null never overwrites anything

    Returns:
        Dict of fields that actually change
    """
    changes: Dict[str, Any] = {}

    for key in IDENTITY_FIELDS:
        value = new_data.get(key)
        if value not in (None, "") and not getattr(existing, key):
            changes[key] = value

    if new_data.get("enrichment"):
        changes["enrichment"] = new_data["enrichment"]
        for key in ("enrichment_source", "enrichment_confidence", "enriched_at"):
            if new_data.get(key) is not None:
                changes[key] = new_data[key]

    platform = new_data.get("platform")
    platforms = list(existing.platforms or [])
    if platform and platform not in platforms:
        changes["platforms"] = platforms + [platform]

    external_id = new_data.get("external_id")
    if platform and external_id:
        external_ids = dict(existing.external_ids or {})
        if platform not in external_ids:
            external_ids[platform] = str(external_id)
            changes["external_ids"] = external_ids

    if not existing.origin_platform and platform:
        changes["origin_platform"] = platform

    return changes


def sighting_from(record: Any) -> Dict[str, Any]:
    """Field dict for an InboundUser / InboundEvent sighting."""
    # an event's external id identifies the event, not the user
    is_event = isinstance(record, InboundEvent)
    data = {
        "platform": record.platform,
        "external_id": None if is_event else record.external_id,
    }
    for key in IDENTITY_FIELDS:
        data[key] = getattr(record, key, None)
    enrichment = getattr(record, "enrichment", None)
    if enrichment:
        data["enrichment"] = enrichment
        data["enrichment_source"] = record.platform
        data["enriched_at"] = utcnow()
    return data


class UserStore:
    """
    Per-operation sessions; merges are serialized per email with an
    in-process lock plus SELECT ... FOR UPDATE on the row.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, email: str) -> asyncio.Lock:
        lock = self._locks.get(email)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[email] = lock
        return lock

    @asynccontextmanager
    async def _session(self, operation: str):
        async with storage_guard("User", operation):
            async with self.session_factory() as session:
                yield session

    async def merge_user(
        self,
        partition_id: UUID,
        email: str,
        data: Dict[str, Any],
    ) -> Tuple[UserRecord, bool]:
        """
        Create the user on first sighting, otherwise merge.

        Returns:
            (user, created)
        """
        email = normalize_email(email)
        if not email:
            raise ValueError("A valid email is required to merge a user")

        lock = self._lock_for(email)
        async with lock:
            async with self._session("merge_user") as session:
                result = await session.execute(
                    select(UserRecord)
                    .where(UserRecord.email == email)
                    .order_by(UserRecord.created_at, UserRecord.id)
                    .with_for_update()
                )
                user = result.scalars().first()

                if user is None:
                    platform = data.get("platform")
                    user = UserRecord(
                        partition_id=partition_id,
                        email=email,
                        origin_platform=platform,
                        platforms=[platform] if platform else [],
                        external_ids=(
                            {platform: str(data["external_id"])}
                            if platform and data.get("external_id") else {}
                        ),
                        behavior_score=0,
                    )
                    for key in IDENTITY_FIELDS:
                        if data.get(key) not in (None, ""):
                            setattr(user, key, data[key])
                    if data.get("enrichment"):
                        user.enrichment = data["enrichment"]
                        user.enrichment_source = data.get("enrichment_source")
                        user.enrichment_confidence = data.get("enrichment_confidence")
                        user.enriched_at = data.get("enriched_at") or utcnow()
                    session.add(user)
                    await session.commit()
                    logger.debug(f"✨ Created user {email}")
                    return user, True

                if user.partition_id != partition_id:
                    logger.debug(
                        f"User {email} already lives in partition {user.partition_id}; "
                        f"merging sighting routed to {partition_id}"
                    )

                changes = merge_user_data(user, data)
                if changes:
                    for key, value in changes.items():
                        setattr(user, key, value)
                    await session.commit()
                    logger.debug(f"🔄 Merged user {email}: {sorted(changes)}")
                return user, False

    async def get_user(self, email: str) -> Optional[UserRecord]:
        email = normalize_email(email)
        async with self._session("get_user") as session:
            result = await session.execute(
                select(UserRecord)
                .where(UserRecord.email == email)
                .order_by(UserRecord.created_at, UserRecord.id)
            )
            return result.scalars().first()

    async def get_by_id(self, user_id: int) -> Optional[UserRecord]:
        async with self._session("get_by_id") as session:
            return await session.get(UserRecord, user_id)

    async def list_events(self, partition_id: UUID, email: str) -> List[EventRecord]:
        async with self._session("list_events") as session:
            result = await session.execute(
                select(EventRecord)
                .where(
                    and_(
                        EventRecord.partition_id == partition_id,
                        EventRecord.user_email == email
                    )
                )
                .order_by(EventRecord.id)
            )
            return list(result.scalars().all())

    async def save_scores(self, user_id: int, scores: Dict[str, Any]) -> Optional[UserRecord]:
        """Persist the score fields produced by LeadScoringEngine.apply."""
        async with self._session("save_scores") as session:
            user = await session.get(UserRecord, user_id, with_for_update=True)
            if user is None:
                return None
            for key, value in scores.items():
                setattr(user, key, value)
            await session.commit()
            return user

    async def apply_enrichment(
        self,
        user_id: int,
        data: Dict[str, Any],
        source: str,
        confidence: float,
        enriched_at: Optional[datetime] = None,
    ) -> Optional[UserRecord]:
        async with self._session("apply_enrichment") as session:
            user = await session.get(UserRecord, user_id, with_for_update=True)
            if user is None:
                return None
            user.enrichment = data
            user.enrichment_source = source
            user.enrichment_confidence = confidence
            user.enriched_at = enriched_at or utcnow()
            await session.commit()
            return user

    async def mark_crm_synced(self, user_id: int, record_id: Optional[str]) -> None:
        async with self._session("mark_crm_synced") as session:
            user = await session.get(UserRecord, user_id)
            if user is None:
                return
            if record_id:
                user.crm_record_id = record_id
            user.crm_synced_at = utcnow()
            await session.commit()

    async def iter_active_user_ids(self, batch_size: int = 500):
        """Yield batches of active user ids (keyset paging)."""
        last_id = 0
        while True:
            async with self._session("iter_active_user_ids") as session:
                result = await session.execute(
                    select(UserRecord.id)
                    .where(
                        and_(
                            UserRecord.id > last_id,
                            UserRecord.lifecycle_status == "active"
                        )
                    )
                    .order_by(UserRecord.id)
                    .limit(batch_size)
                )
                ids = list(result.scalars().all())
            if not ids:
                return
            yield ids
            last_id = ids[-1]

    async def count_users(self, partition_id: Optional[UUID] = None) -> int:
        async with self._session("count_users") as session:
            query = select(func.count(UserRecord.id))
            if partition_id is not None:
                query = query.where(UserRecord.partition_id == partition_id)
            result = await session.execute(query)
            return result.scalar() or 0
