"""APScheduler wiring: periodic incremental syncs and behavior rescoring."""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from leadsync.config import settings
from leadsync.errors import LeadSyncError
from leadsync.schemas.sync import SyncMode, SyncRequest
from leadsync.services.sync_orchestrator import SyncOrchestrator, score_fields
from leadsync.utils import utcnow

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "incremental_sync"
RESCORE_JOB_ID = "behavior_rescore"


@dataclass
class SchedulerContext:
    enabled: bool = False
    interval_hours: int = 4
    next_run_at: Optional[datetime] = None
    behavior_rescore_minutes: int = 30

    @classmethod
    def from_settings(cls) -> "SchedulerContext":
        return cls(
            enabled=settings.ENABLE_PERIODIC_SYNC,
            interval_hours=settings.SYNC_INTERVAL_HOURS,
            behavior_rescore_minutes=settings.BEHAVIOR_RESCORE_MINUTES,
        )


class SyncScheduler:
    """
    Decides when syncs run; the orchestrator decides how.

    Jobs:
    - Incremental sync: every ``interval_hours`` over all active namespaces
    - Behavior rescore: every ``behavior_rescore_minutes`` (database only)
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        context: Optional[SchedulerContext] = None,
        platforms: Optional[List[str]] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.orchestrator = orchestrator
        self.context = context or SchedulerContext.from_settings()
        self.platforms = platforms
        self.scheduler = scheduler or AsyncIOScheduler()
        self.last_job_id: Optional[str] = None
        self.last_rescore: Optional[Dict[str, Any]] = None

    def configured_platforms(self) -> List[str]:
        if self.platforms is not None:
            return list(self.platforms)
        return sorted(p for p, key in self.orchestrator.credentials.items() if key)

    def start(self) -> None:
        if not self.context.enabled:
            logger.info("Periodic sync disabled")
            return
        if self.scheduler.running:
            logger.info("Scheduler already running")
            return

        self.scheduler.add_job(
            self.run_now,
            trigger=IntervalTrigger(hours=self.context.interval_hours),
            id=SYNC_JOB_ID,
            name="Incremental Sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"✅ Scheduled: Incremental Sync (every {self.context.interval_hours}h)")

        self.scheduler.add_job(
            self.rescore_behavior,
            trigger=IntervalTrigger(minutes=self.context.behavior_rescore_minutes),
            id=RESCORE_JOB_ID,
            name="Behavior Rescore",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(
            f"✅ Scheduled: Behavior Rescore (every {self.context.behavior_rescore_minutes} min)"
        )

        self.scheduler.start()
        self._refresh_next_run()
        logger.info("✅ APScheduler started successfully!")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def _refresh_next_run(self) -> None:
        job = self.scheduler.get_job(SYNC_JOB_ID)
        self.context.next_run_at = job.next_run_time if job else None

    async def run_now(self) -> Optional[str]:
        """Submit an incremental sync over every configured platform."""
        platforms = self.configured_platforms()
        if not platforms:
            logger.warning("⚠️ No platform credentials configured; skipping scheduled sync")
            return None

        request = SyncRequest(mode=SyncMode.INCREMENTAL, platforms=platforms, namespaces="all")
        try:
            self.last_job_id = await self.orchestrator.submit(request)
        except LeadSyncError as e:
            logger.error(f"❌ Scheduled sync not started: {e}")
            return None
        finally:
            if self.scheduler.running:
                self._refresh_next_run()

        logger.info(f"🕒 Scheduled incremental sync submitted: {self.last_job_id}")
        return self.last_job_id

    async def rescore_behavior(self) -> Dict[str, Any]:
        """Recompute behavior scores from stored events; no enrichment calls."""
        users = self.orchestrator.users
        engine = self.orchestrator.scoring
        rescored = 0
        started = utcnow()

        async for batch in users.iter_active_user_ids():
            for user_id in batch:
                user = await users.get_by_id(user_id)
                if user is None:
                    continue
                events = await users.list_events(user.partition_id, user.email)
                engine.apply(user, engine.score_behavior_only(user, events))
                await users.save_scores(user.id, score_fields(user))
                rescored += 1

        self.last_rescore = {
            "rescored": rescored,
            "started_at": started.isoformat(),
            "finished_at": utcnow().isoformat(),
        }
        logger.info(f"🔁 Behavior rescore complete: {rescored} users")
        return self.last_rescore

    def status(self) -> Dict[str, Any]:
        jobs = []
        if self.scheduler.running:
            self._refresh_next_run()
            jobs = [
                {"id": job.id, "name": job.name, "next_run_at": job.next_run_time}
                for job in self.scheduler.get_jobs()
            ]
        return {
            "enabled": self.context.enabled,
            "running": self.scheduler.running,
            "interval_hours": self.context.interval_hours,
            "behavior_rescore_minutes": self.context.behavior_rescore_minutes,
            "next_run_at": self.context.next_run_at,
            "last_job_id": self.last_job_id,
            "last_rescore": self.last_rescore,
            "jobs": jobs,
        }
