"""
Namespace registry and campaign router.

Tenants are addressed through opaque partition handles; a namespace name
is never formatted into a storage path.
"""

import asyncio
import inspect
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import select, func

from leadsync.config import settings
from leadsync.errors import NamespaceError
from leadsync.models import Namespace

logger = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")


@dataclass(frozen=True)
class NamespaceHandle:
    name: str
    partition_id: UUID
    keywords: Tuple[str, ...] = ()
    is_default: bool = False
    is_active: bool = True
    position: int = 0
    crm_config: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def min_behavior_score(self, fallback: int) -> int:
        value = (self.crm_config or {}).get("min_behavior_score")
        return fallback if value is None else int(value)

    def crm_enabled(self) -> bool:
        return bool((self.crm_config or {}).get("enabled", True))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "keywords": list(self.keywords),
            "is_default": self.is_default,
            "is_active": self.is_active,
            "crm_config": dict(self.crm_config or {}),
        }


def _to_handle(row: Namespace) -> NamespaceHandle:
    return NamespaceHandle(
        name=row.name,
        partition_id=row.partition_id,
        keywords=tuple(row.keywords or ()),
        is_default=row.is_default,
        is_active=row.is_active,
        position=row.position,
        crm_config=dict(row.crm_config or {}),
    )


class NamespaceRouter:
    """
    Pure campaign-name -> namespace resolution over a registry snapshot.

    Non-default namespaces are tried in registration order; the first one
    with a keyword that is a case-insensitive substring of the campaign
    name wins. Anything else lands in the default namespace.
    """

    def __init__(self, snapshot: Sequence[NamespaceHandle]):
        ordered = sorted(snapshot, key=lambda h: h.position)
        self._candidates = [h for h in ordered if h.is_active and not h.is_default]
        defaults = [h for h in ordered if h.is_default]
        if not defaults:
            raise NamespaceError("Namespace snapshot has no default namespace")
        self.default = defaults[0]

    def resolve(self, campaign_name: Optional[str]) -> NamespaceHandle:
        if not campaign_name:
            return self.default
        haystack = campaign_name.lower()
        for handle in self._candidates:
            for keyword in handle.keywords:
                if keyword and keyword.lower() in haystack:
                    return handle
        return self.default


class NamespaceRegistry:
    """
    DB-backed registry with an in-memory snapshot.

    Writes are serialized by an asyncio.Lock; reads use the snapshot.
    ``on_provision`` (sync or async callable taking a NamespaceHandle) is
    invoked after register/update so the partition can be provisioned.
    """

    def __init__(
        self,
        session_factory,
        default_name: Optional[str] = None,
        on_provision: Optional[Callable[[NamespaceHandle], Optional[Awaitable[None]]]] = None,
    ):
        self.session_factory = session_factory
        self.default_name = default_name or settings.DEFAULT_NAMESPACE
        self.on_provision = on_provision
        self._lock = asyncio.Lock()
        self._handles: Dict[str, NamespaceHandle] = {}

    @staticmethod
    def validate_name(name: str) -> str:
        if not name or not NAME_PATTERN.match(name):
            raise NamespaceError(
                f"Invalid namespace name '{name}': must start with a lowercase letter "
                "and contain only lowercase letters, digits, '_' or '-'"
            )
        return name

    @staticmethod
    def clean_keywords(keywords: Optional[Sequence[str]]) -> List[str]:
        cleaned = []
        for keyword in keywords or []:
            if not isinstance(keyword, str):
                raise NamespaceError(f"Keyword must be a string, got {type(keyword).__name__}")
            keyword = keyword.strip()
            if keyword and keyword not in cleaned:
                cleaned.append(keyword)
        return cleaned

    async def load(self) -> List[NamespaceHandle]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Namespace).order_by(Namespace.position, Namespace.id)
            )
            rows = result.scalars().all()
        self._handles = {row.name: _to_handle(row) for row in rows}
        logger.info(f"📚 Loaded {len(self._handles)} namespaces")
        return list(self._handles.values())

    async def ensure_default(self) -> NamespaceHandle:
        async with self._lock:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Namespace).where(Namespace.is_default.is_(True))
                )
                row = result.scalars().first()
                created = row is None
                if created:
                    row = Namespace(
                        name=self.default_name,
                        keywords=[],
                        is_default=True,
                        is_active=True,
                        position=0,
                    )
                    session.add(row)
                    await session.commit()
                    logger.info(f"✅ Created default namespace '{self.default_name}'")
                handle = _to_handle(row)
            self._handles[handle.name] = handle
        if created:
            await self._provision(handle)
        return handle

    async def register(
        self,
        name: str,
        keywords: Sequence[str],
        crm_config: Optional[Dict[str, Any]] = None,
    ) -> NamespaceHandle:
        self.validate_name(name)
        cleaned = self.clean_keywords(keywords)

        async with self._lock:
            async with self.session_factory() as session:
                existing = await session.execute(select(Namespace.id).where(Namespace.name == name))
                if existing.scalar_one_or_none() is not None:
                    raise NamespaceError(f"Namespace '{name}' already exists")

                max_position = await session.execute(select(func.max(Namespace.position)))
                position = (max_position.scalar() or 0) + 1

                row = Namespace(
                    name=name,
                    keywords=cleaned,
                    is_default=False,
                    is_active=True,
                    position=position,
                    crm_config=crm_config,
                )
                session.add(row)
                await session.commit()
                handle = _to_handle(row)
            self._handles[name] = handle

        logger.info(f"✅ Registered namespace '{name}' with keywords {cleaned}")
        await self._provision(handle)
        return handle

    async def update(
        self,
        name: str,
        keywords: Optional[Sequence[str]] = None,
        crm_config: Optional[Dict[str, Any]] = None,
        is_active: Optional[bool] = None,
    ) -> NamespaceHandle:
        async with self._lock:
            async with self.session_factory() as session:
                result = await session.execute(select(Namespace).where(Namespace.name == name))
                row = result.scalars().first()
                if row is None:
                    raise NamespaceError(f"Namespace '{name}' not found")
                if row.is_default and is_active is False:
                    raise NamespaceError("The default namespace cannot be deactivated")

                if keywords is not None:
                    row.keywords = self.clean_keywords(keywords)
                if crm_config is not None:
                    row.crm_config = crm_config
                if is_active is not None:
                    row.is_active = is_active
                await session.commit()
                handle = _to_handle(row)
            self._handles[name] = handle

        logger.info(f"🔄 Updated namespace '{name}'")
        if handle.is_active:
            await self._provision(handle)
        return handle

    async def deactivate(self, name: str) -> NamespaceHandle:
        return await self.update(name, is_active=False)

    async def _provision(self, handle: NamespaceHandle) -> None:
        if self.on_provision is None:
            return
        outcome = self.on_provision(handle)
        if inspect.isawaitable(outcome):
            await outcome

    def get(self, name: str) -> Optional[NamespaceHandle]:
        return self._handles.get(name)

    def by_partition(self, partition_id: UUID) -> Optional[NamespaceHandle]:
        for handle in self._handles.values():
            if handle.partition_id == partition_id:
                return handle
        return None

    def list_active(self) -> List[NamespaceHandle]:
        return sorted(
            (h for h in self._handles.values() if h.is_active),
            key=lambda h: h.position
        )

    def snapshot(self) -> Tuple[NamespaceHandle, ...]:
        """Immutable view used by one job for its whole run."""
        return tuple(self.list_active())

    def router(self) -> NamespaceRouter:
        return NamespaceRouter(self.snapshot())
