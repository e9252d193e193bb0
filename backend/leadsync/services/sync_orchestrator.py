"""
Sync orchestrator - coordinates one sync job end to end.

Pipeline per (platform, namespace) tuple, one batch at a time:
fetch → route → dedupe → merge → rescore → export → checkpoint
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple
import logging

from leadsync.config import settings
from leadsync.connectors import CONNECTOR_REGISTRY, get_connector
from leadsync.connectors.base import InboundEvent, Page, SyncWindow
from leadsync.errors import (
    AlreadyExists, DataIntegrityError, FatalError, InvalidJobTransition,
    LeadSyncError, RetryableError, SyncValidationError,
)
from leadsync.models import EventRecord, SyncJob, UserRecord
from leadsync.schemas.sync import JobStatus, SyncMode, SyncRequest, TERMINAL_STATUSES
from leadsync.services.dedup_store import DedupStore
from leadsync.services.enrichment import EnrichmentChain
from leadsync.services.event_keys import make_event_key
from leadsync.services.job_tracker import JobTracker
from leadsync.services.namespace_router import NamespaceHandle, NamespaceRegistry, NamespaceRouter
from leadsync.services.notifier import Notifier
from leadsync.services.rate_limiter import RateLimiterRegistry
from leadsync.services.retry import RetryCancelled, RetryPolicy, with_timeout
from leadsync.services.scoring_engine import LeadScoringEngine
from leadsync.services.sync_state import SyncStateStore
from leadsync.services.user_store import UserStore, sighting_from
from leadsync.utils import normalize_email, utcnow


logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 1000

PHASES = ("users", "events")

# Modes that move the per-tuple watermark forward on success
WATERMARK_MODES = {
    SyncMode.FULL_HISTORICAL,
    SyncMode.RESET_FROM_DATE,
    SyncMode.INCREMENTAL,
}


@dataclass
class SyncPlan:
    """Validated request: what will run, before any state exists."""
    request: SyncRequest
    platforms: List[str]
    namespaces: List[NamespaceHandle]
    batch_size: int

    @property
    def mode(self) -> SyncMode:
        return self.request.mode

    def tuples(self) -> List[Tuple[str, NamespaceHandle]]:
        return [(p, ns) for p in self.platforms for ns in self.namespaces]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "platforms": list(self.platforms),
            "namespaces": [ns.name for ns in self.namespaces],
            "batch_size": self.batch_size,
            "tuples": [[p, ns.name] for p, ns in self.tuples()],
            "window": {
                "start": self.request.start_date.isoformat() if self.request.start_date else None,
                "end": self.request.end_date.isoformat() if self.request.end_date else None,
                "reset_date": self.request.reset_date.isoformat() if self.request.reset_date else None,
            },
        }


@dataclass
class TupleOutcome:
    platform: str
    namespace: str
    status: str = "pending"
    users_processed: int = 0
    events_processed: int = 0
    errors: int = 0
    last_error: Optional[str] = None
    window: Optional[Dict[str, Optional[str]]] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "users_processed": self.users_processed,
            "events_processed": self.events_processed,
            "errors": self.errors,
            "last_error": self.last_error,
            "window": self.window,
        }


@dataclass
class JobContext:
    """Mutable state shared by the tuple tasks of one running job."""
    job_id: str
    plan: SyncPlan
    router: Optional[NamespaceRouter]
    started_at: datetime
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    disabled_platforms: Set[str] = field(default_factory=set)
    aborted: Optional[BaseException] = None
    crm: Any = None
    crm_disabled: bool = False
    exports: Dict[str, Any] = field(default_factory=lambda: {
        "users_exported": 0,
        "events_written": 0,
        "errors": 0,
        "disabled": False,
        "last_error": None,
    })


class SyncOrchestrator:
    """
    Runs sync jobs over (platform, namespace) tuples.

    The orchestrator owns no timers; the scheduler decides when to call it.
    """

    def __init__(
        self,
        registry: NamespaceRegistry,
        tracker: JobTracker,
        dedup: DedupStore,
        users: UserStore,
        state: SyncStateStore,
        limiters: RateLimiterRegistry,
        scoring: Optional[LeadScoringEngine] = None,
        enrichment: Optional[EnrichmentChain] = None,
        notifier: Optional[Notifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        connector_factory: Optional[Callable[..., Any]] = None,
        credentials: Optional[Dict[str, Optional[str]]] = None,
        known_platforms: Optional[Iterable[str]] = None,
        crm_platform: Optional[str] = None,
        max_parallel: Optional[int] = None,
        batch_timeout: Optional[float] = None,
        min_behavior_score: Optional[int] = None,
        crm_event_writeback: Optional[bool] = None,
    ):
        self.registry = registry
        self.tracker = tracker
        self.dedup = dedup
        self.users = users
        self.state = state
        self.limiters = limiters
        self.scoring = scoring or LeadScoringEngine()
        self.enrichment = enrichment
        self.notifier = notifier or Notifier()
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
        )
        self.credentials = credentials if credentials is not None else {
            "smartlead": settings.SMARTLEAD_API_KEY,
            "lemlist": settings.LEMLIST_API_KEY,
            "attio": settings.ATTIO_API_KEY,
        }
        self.connector_factory = connector_factory or self._default_connector
        self.known_platforms = set(known_platforms or CONNECTOR_REGISTRY.keys())

        if crm_platform is None and settings.CRM_PLATFORM and self.credentials.get(settings.CRM_PLATFORM):
            crm_platform = settings.CRM_PLATFORM
        self.crm_platform = crm_platform or None

        self.max_parallel = max_parallel or settings.MAX_PARALLEL_TASKS
        self.batch_timeout = settings.BATCH_TIMEOUT_SECONDS if batch_timeout is None else batch_timeout
        self.min_behavior_score = (
            settings.MIN_BEHAVIOR_SCORE_FOR_CRM if min_behavior_score is None else min_behavior_score
        )
        self.crm_event_writeback = (
            settings.CRM_EVENT_WRITEBACK if crm_event_writeback is None else crm_event_writeback
        )

        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}

    def _default_connector(self, platform: str, limiter, **kwargs):
        return get_connector(platform, self.credentials.get(platform), limiter, **kwargs)

    # ========================================================================
    # VALIDATION
    # ========================================================================

    def validate(self, request: SyncRequest) -> SyncPlan:
        """
        Check a request without touching any state.

        Raises:
            SyncValidationError: with every problem found
        """
        errors: List[str] = []

        if not request.platforms:
            errors.append("At least one platform is required")
        unknown = [p for p in request.platforms if p not in self.known_platforms]
        if unknown:
            errors.append(
                f"Unknown platforms: {unknown}. Available: {sorted(self.known_platforms)}"
            )

        namespaces: List[NamespaceHandle] = []
        if isinstance(request.namespaces, str):
            if request.namespaces != "all":
                errors.append("namespaces must be 'all' or a list of namespace names")
            else:
                namespaces = self.registry.list_active()
                if not namespaces:
                    errors.append("No active namespaces are registered")
        elif not request.namespaces:
            errors.append("namespaces list cannot be empty")
        else:
            for name in dict.fromkeys(request.namespaces):
                handle = self.registry.get(name)
                if handle is None or not handle.is_active:
                    errors.append(f"Namespace '{name}' is not an active namespace")
                else:
                    namespaces.append(handle)

        batch_size = request.batch_size if request.batch_size is not None else settings.DEFAULT_BATCH_SIZE
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            errors.append(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")

        if request.mode == SyncMode.DATE_RANGE:
            if request.start_date is None or request.end_date is None:
                errors.append("DATE_RANGE requires start_date and end_date")
        if request.mode == SyncMode.RESET_FROM_DATE:
            if request.reset_date is None:
                errors.append("RESET_FROM_DATE requires reset_date")
            elif request.reset_date > utcnow():
                errors.append("reset_date cannot be in the future")
        if request.start_date and request.end_date and request.start_date > request.end_date:
            errors.append("start_date must be before or equal to end_date")

        for platform in (request.rate_limit_overrides or {}):
            if platform not in request.platforms:
                errors.append(f"Rate limit override for '{platform}' which is not being synced")

        if request.callback_url and not request.callback_url.startswith(("http://", "https://")):
            errors.append("callback_url must be an http(s) URL")

        if errors:
            raise SyncValidationError(errors)

        return SyncPlan(
            request=request.model_copy(update={"batch_size": batch_size}),
            platforms=list(dict.fromkeys(request.platforms)),
            namespaces=namespaces,
            batch_size=batch_size,
        )

    # ========================================================================
    # ENTRY POINTS
    # ========================================================================

    async def execute(self, request: SyncRequest) -> Dict[str, Any]:
        """Run a job to its terminal state and return its summary."""
        plan = self.validate(request)
        job = await self.tracker.create_job(plan.request)
        return await self._run(job.id, plan)

    async def submit(self, request: SyncRequest) -> str:
        """Queue a job as a background task; returns its id."""
        plan = self.validate(request)
        job = await self.tracker.create_job(plan.request)
        self._start_background(job.id, plan)
        return job.id

    async def resume(self, job_id: str) -> str:
        """
        Start a new job with the source job's request and checkpoints.

        Raises:
            JobNotFound: unknown source job
            InvalidJobTransition: source job has not finished yet
        """
        source = await self.tracker.get_job(job_id)
        if source.status not in TERMINAL_STATUSES:
            raise InvalidJobTransition(job_id, source.status, "resume")

        plan = self.validate(request_from_job(source))
        job = await self.tracker.create_job(plan.request, resumed_from=source.id)
        await self.tracker.inherit_checkpoints(source.id, job.id)
        logger.info(f"♻️ Resuming job {source.id} as {job.id}")
        self._start_background(job.id, plan)
        return job.id

    async def cancel(self, job_id: str) -> SyncJob:
        job = await self.tracker.request_cancel(job_id)
        event = self._cancel_events.get(job_id)
        if event:
            event.set()
        return job

    async def wait(self, job_id: str) -> SyncJob:
        """Wait for a background job started by this process to finish."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return await self.tracker.get_job(job_id)

    def _start_background(self, job_id: str, plan: SyncPlan) -> None:
        task = asyncio.create_task(self._run(job_id, plan), name=f"sync-job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda t, jid=job_id: self._tasks.pop(jid, None))

    def running_jobs(self) -> List[str]:
        return list(self._tasks.keys())

    # ========================================================================
    # JOB
    # ========================================================================

    async def _run(self, job_id: str, plan: SyncPlan) -> Dict[str, Any]:
        try:
            await self.tracker.mark_running(job_id)
        except InvalidJobTransition:
            # cancelled while still queued
            job = await self.tracker.get_job(job_id)
            logger.info(f"Job {job_id} is {job.status}; not starting")
            return {"job_id": job_id, "status": job.status, **(job.result_summary or {})}

        ctx = JobContext(job_id=job_id, plan=plan, router=None, started_at=utcnow())
        self._cancel_events[job_id] = ctx.cancel_event

        outcomes: List[TupleOutcome] = [
            TupleOutcome(platform=platform, namespace=handle.name)
            for platform, handle in plan.tuples()
        ]
        error_message = None
        try:
            await self.registry.load()
            ctx.router = self.registry.router()

            if self.crm_platform:
                ctx.crm = self.connector_factory(
                    self.crm_platform,
                    self.limiters.get(self.crm_platform),
                    batch_size=plan.batch_size,
                )

            semaphore = asyncio.Semaphore(self.max_parallel)

            async def guarded(outcome: TupleOutcome, handle: NamespaceHandle) -> TupleOutcome:
                async with semaphore:
                    try:
                        return await self._run_tuple(ctx, outcome, handle)
                    except Exception as e:
                        logger.exception(
                            f"❌ {outcome.platform}/{outcome.namespace} crashed, aborting job {job_id}: {e}"
                        )
                        ctx.aborted = ctx.aborted or e
                        outcome.status = "failed"
                        outcome.errors += 1
                        outcome.last_error = str(e)
                        return outcome

            # guarded() never raises, so every sibling has stopped before the job finishes
            await asyncio.gather(*(
                guarded(outcome, handle)
                for outcome, (_, handle) in zip(outcomes, plan.tuples())
            ))
        except Exception as e:
            logger.exception(f"❌ Job {job_id} crashed: {e}")
            ctx.aborted = ctx.aborted or e
        finally:
            self._cancel_events.pop(job_id, None)
            if ctx.crm is not None:
                await ctx.crm.aclose()

        status = self._terminal_status(ctx, outcomes)
        if ctx.aborted is not None:
            error_message = str(ctx.aborted)
        summary = build_summary(plan, outcomes, ctx.exports, ctx.started_at)

        try:
            await self.retry_policy.run(
                lambda: self.tracker.finish(job_id, status, summary, error_message),
                description=f"Finish job {job_id}",
            )
        except LeadSyncError as e:
            # left running; recover_interrupted marks it failed on next startup
            logger.error(f"❌ Could not record final state {status} for job {job_id}: {e}")
            raise
        await self.notifier.publish("sync.job.finished", {
            "job_id": job_id,
            "status": status,
            "totals": summary["totals"],
        })
        return {"job_id": job_id, "status": status, **summary}

    @staticmethod
    def _terminal_status(ctx: JobContext, outcomes: List[TupleOutcome]) -> str:
        if ctx.aborted is not None:
            return JobStatus.FAILED.value
        if ctx.cancel_event.is_set() or any(o.status == "cancelled" for o in outcomes):
            return JobStatus.CANCELLED.value

        failed = [o for o in outcomes if o.status in ("failed", "skipped")]
        if outcomes and len(failed) == len(outcomes):
            return JobStatus.FAILED.value
        if failed or ctx.exports["disabled"] or ctx.exports["errors"]:
            return JobStatus.PARTIAL_SUCCESS.value
        return JobStatus.COMPLETED.value

    async def _cancelled(self, ctx: JobContext) -> bool:
        if ctx.cancel_event.is_set():
            return True
        # cancellation may come from another process
        if await self.tracker.is_cancel_requested(ctx.job_id):
            ctx.cancel_event.set()
            return True
        return False

    # ========================================================================
    # TUPLE
    # ========================================================================

    async def _window_for(self, ctx: JobContext, platform: str, handle: NamespaceHandle,
                          fresh: bool) -> SyncWindow:
        request = ctx.plan.request
        mode = ctx.plan.mode

        if mode == SyncMode.FULL_HISTORICAL:
            return SyncWindow(None, ctx.started_at)
        if mode == SyncMode.DATE_RANGE:
            return SyncWindow(request.start_date, request.end_date)
        if mode == SyncMode.RESET_FROM_DATE:
            if fresh:
                await self.state.reset_watermarks(platform, [handle.name], request.reset_date)
            return SyncWindow(request.reset_date, ctx.started_at)

        watermark = await self.state.get_watermark(platform, handle.name)
        start = watermark or ctx.started_at - timedelta(days=settings.INCREMENTAL_DEFAULT_LOOKBACK_DAYS)
        return SyncWindow(start, ctx.started_at)

    async def _run_tuple(self, ctx: JobContext, outcome: TupleOutcome, handle: NamespaceHandle) -> TupleOutcome:
        platform = outcome.platform
        job_id = ctx.job_id
        if ctx.aborted is not None:
            outcome.status = "interrupted"
            return outcome

        checkpoint = await self.tracker.get_checkpoint(job_id, platform, handle.name)
        sequence = checkpoint.sequence if checkpoint else 0
        if checkpoint:
            outcome.users_processed = checkpoint.users_processed or 0
            outcome.events_processed = checkpoint.events_processed or 0
            if checkpoint.status == "completed":
                outcome.status = "completed"
                return outcome

        async def stop(status: str, errors_delta: int = 0, last_error: Optional[str] = None) -> TupleOutcome:
            nonlocal sequence
            sequence += 1
            outcome.status = status
            outcome.errors += errors_delta
            if last_error:
                outcome.last_error = last_error
            try:
                await self.tracker.save_checkpoint(
                    job_id, platform, handle.name, state, sequence,
                    errors_delta=errors_delta, status=status, last_error=last_error,
                )
            except DataIntegrityError as e:
                ctx.aborted = ctx.aborted or e
            return outcome

        state: Dict[str, Any] = dict(
            (checkpoint.cursor if checkpoint and checkpoint.cursor else None)
            or {"phase": PHASES[0], "users": None, "events": None}
        )

        if platform in ctx.disabled_platforms:
            return await stop("skipped")

        window = await self._window_for(ctx, platform, handle, fresh=checkpoint is None)
        outcome.window = window.as_dict()

        limiter = self.limiters.limiter_for_job(platform, ctx.plan.request.override_for(platform))
        connector = self.connector_factory(
            platform,
            limiter,
            batch_size=limiter.clamp_batch_size(ctx.plan.batch_size),
            campaign_filter=lambda name: ctx.router.resolve(name).name == handle.name,
        )
        label = f"{platform}/{handle.name}"
        logger.info(f"📥 Syncing {label} window={outcome.window}")

        try:
            while state["phase"] in PHASES:
                if ctx.aborted is not None:
                    outcome.status = "interrupted"
                    return outcome
                if await self._cancelled(ctx):
                    return await stop("cancelled")
                if platform in ctx.disabled_platforms:
                    return await stop("skipped")

                phase = state["phase"]
                cursor = state[phase]
                fetch = connector.fetch_users if phase == "users" else connector.fetch_events

                page: Page = await self.retry_policy.run(
                    lambda: with_timeout(fetch(window, cursor), self.batch_timeout, f"{label} {phase} batch"),
                    cancel_event=ctx.cancel_event,
                    description=f"Fetch {label} {phase}",
                )
                if page.total:
                    await self.tracker.add_total(job_id, page.total)

                users_delta, events_delta = await self.retry_policy.run(
                    lambda: self._process_page(ctx, platform, handle, phase, page),
                    cancel_event=ctx.cancel_event,
                    description=f"Process {label} {phase}",
                )

                if page.has_more and page.next_cursor is not None:
                    state[phase] = page.next_cursor
                else:
                    state[phase] = None
                    index = PHASES.index(phase) + 1
                    state["phase"] = PHASES[index] if index < len(PHASES) else "done"

                sequence += 1
                await self.tracker.save_checkpoint(
                    job_id, platform, handle.name, dict(state), sequence,
                    users_delta=users_delta, events_delta=events_delta, status="running",
                )
                outcome.users_processed += users_delta
                outcome.events_processed += events_delta

            sequence += 1
            await self.tracker.save_checkpoint(job_id, platform, handle.name, dict(state), sequence,
                                               status="completed")
            if ctx.plan.mode in WATERMARK_MODES:
                await self.state.set_watermark(platform, handle.name, ctx.started_at)
            outcome.status = "completed"
            logger.info(
                f"✅ {label} done: {outcome.users_processed} users, "
                f"{outcome.events_processed} events"
            )
            return outcome

        except FatalError as e:
            logger.error(f"❌ {label} fatal: {e}; disabling {platform} for job {job_id}")
            ctx.disabled_platforms.add(platform)
            return await stop("failed", errors_delta=1, last_error=str(e))
        except RetryCancelled:
            return await stop("cancelled")
        except DataIntegrityError as e:
            logger.error(f"❌ {label} data integrity failure, aborting job {job_id}: {e}")
            ctx.aborted = ctx.aborted or e
            outcome.status = "failed"
            outcome.errors += 1
            outcome.last_error = str(e)
            return outcome
        except RetryableError as e:
            return await stop("failed", errors_delta=1, last_error=str(e))
        finally:
            await connector.aclose()

    # ========================================================================
    # BATCH
    # ========================================================================

    async def _process_page(
        self,
        ctx: JobContext,
        platform: str,
        handle: NamespaceHandle,
        phase: str,
        page: Page,
    ) -> Tuple[int, int]:
        """Persist one page; safe to repeat (dedup + merge are idempotent)."""
        users_delta = 0
        events_delta = 0
        touched: Dict[int, UserRecord] = {}
        new_events: List[Tuple[EventRecord, int]] = []

        for record in page.records:
            if ctx.router.resolve(record.campaign_name).name != handle.name:
                continue
            if not normalize_email(record.email):
                logger.debug(f"Skipping {platform} record without a usable email")
                continue

            if phase == "users":
                user, _ = await self.users.merge_user(handle.partition_id, record.email, sighting_from(record))
                users_delta += 1
                touched[user.id] = user
                continue

            event_key = self._event_key(record)
            if await self.dedup.has_event(event_key):
                continue
            user, _ = await self.users.merge_user(handle.partition_id, record.email, sighting_from(record))
            try:
                event = await self.dedup.record_event(
                    event_key,
                    event_type=record.event_type,
                    platform=platform,
                    partition_id=user.partition_id,
                    user_email=user.email,
                    campaign_name=record.campaign_name,
                    metadata=record.metadata,
                    occurred_at=record.occurred_at,
                )
            except AlreadyExists:
                continue
            events_delta += 1
            touched[user.id] = user
            new_events.append((event, user.id))

        if touched:
            scored = await self._rescore(list(touched))
            await self._export(ctx, platform, scored, new_events)

        return users_delta, events_delta

    @staticmethod
    def _event_key(event: InboundEvent) -> str:
        return make_event_key(
            event.platform,
            external_id=event.external_id,
            email=event.email,
            event_type=event.event_type,
            occurred_at=event.occurred_at,
            campaign_id=event.campaign_id,
        )

    async def _rescore(self, user_ids: List[int]) -> List[UserRecord]:
        scored = []
        for user_id in user_ids:
            user = await self.users.get_by_id(user_id)
            if user is None:
                continue

            if self.enrichment and not user.enrichment and self.scoring.needs_icp(user):
                result = await self.enrichment.enrich(user)
                if result is not None:
                    user = await self.users.apply_enrichment(
                        user.id, result.data, result.source, result.confidence
                    ) or user

            events = await self.users.list_events(user.partition_id, user.email)
            icp_scored = bool(user.enrichment) and self.scoring.needs_icp(user)
            if icp_scored:
                result = self.scoring.score_full(user, events)
            else:
                result = self.scoring.score_behavior_only(user, events)

            self.scoring.apply(user, result, icp_scored=icp_scored)
            await self.users.save_scores(user.id, score_fields(user))
            scored.append(user)
        return scored

    async def _export(
        self,
        ctx: JobContext,
        platform: str,
        scored: List[UserRecord],
        new_events: List[Tuple[EventRecord, int]],
    ) -> None:
        if ctx.crm is None or ctx.crm_disabled or platform == self.crm_platform:
            return

        for user in scored:
            handle = self.registry.by_partition(user.partition_id)
            if handle is not None and not handle.crm_enabled():
                continue
            threshold = (handle.min_behavior_score(self.min_behavior_score)
                         if handle else self.min_behavior_score)
            if (user.behavior_score or 0) < threshold:
                continue

            try:
                record_id = await self.retry_policy.run(
                    lambda: ctx.crm.upsert_user(user),
                    description=f"CRM upsert {user.email}",
                )
                await self.users.mark_crm_synced(user.id, record_id)
                ctx.exports["users_exported"] += 1

                if self.crm_event_writeback:
                    for event, owner_id in new_events:
                        if owner_id != user.id:
                            continue
                        await self.retry_policy.run(
                            lambda: ctx.crm.notify(event, record_id=record_id),
                            description=f"CRM event {event.event_key}",
                        )
                        ctx.exports["events_written"] += 1
            except FatalError as e:
                logger.error(f"❌ CRM export disabled for job {ctx.job_id}: {e}")
                ctx.crm_disabled = True
                ctx.exports["disabled"] = True
                ctx.exports["last_error"] = str(e)
                return
            except RetryableError as e:
                ctx.exports["errors"] += 1
                ctx.exports["last_error"] = str(e)


# ============================================================================
# HELPERS
# ============================================================================

def score_fields(user: UserRecord) -> Dict[str, Any]:
    return {
        "icp_score": user.icp_score,
        "behavior_score": user.behavior_score,
        "lead_score": user.lead_score,
        "lead_grade": user.lead_grade,
        "score_breakdown": user.score_breakdown,
        "last_scored_at": user.last_scored_at,
        "icp_scored_at": user.icp_scored_at,
    }


def request_from_job(job: SyncJob) -> SyncRequest:
    """Rebuild the request a job was created from."""
    return SyncRequest(
        mode=job.mode,
        platforms=list(job.platforms or []),
        namespaces=job.namespaces,
        start_date=job.window_start,
        end_date=job.window_end,
        reset_date=job.reset_date,
        batch_size=job.batch_size,
        rate_limit_overrides=job.rate_limit_overrides or None,
        callback_url=job.callback_url,
    )


def build_summary(
    plan: SyncPlan,
    outcomes: List[TupleOutcome],
    exports: Dict[str, Any],
    started_at: datetime,
) -> Dict[str, Any]:
    platforms: Dict[str, Dict[str, Any]] = {}
    namespaces: Dict[str, Dict[str, Any]] = {}
    totals = {"users_processed": 0, "events_processed": 0, "errors": 0}

    for outcome in outcomes:
        entry = platforms.setdefault(outcome.platform, {
            "users_processed": 0, "events_processed": 0, "errors": 0, "namespaces": {},
        })
        ns_entry = namespaces.setdefault(outcome.namespace, {
            "users_processed": 0, "events_processed": 0, "errors": 0,
        })
        for target in (entry, ns_entry, totals):
            target["users_processed"] += outcome.users_processed
            target["events_processed"] += outcome.events_processed
            target["errors"] += outcome.errors
        entry["namespaces"][outcome.namespace] = outcome.as_dict()

    for entry in platforms.values():
        statuses = {ns["status"] for ns in entry["namespaces"].values()}
        if statuses == {"completed"}:
            entry["status"] = "completed"
        elif "failed" in statuses:
            entry["status"] = "failed"
        else:
            entry["status"] = sorted(statuses)[0] if statuses else "pending"

    request = plan.request
    return {
        "mode": plan.mode.value,
        "window": {
            "start": request.start_date.isoformat() if request.start_date else None,
            "end": request.end_date.isoformat() if request.end_date else None,
            "reset_date": request.reset_date.isoformat() if request.reset_date else None,
            "started_at": started_at.isoformat(),
        },
        "platforms": platforms,
        "namespaces": namespaces,
        "exports": dict(exports),
        "totals": totals,
    }
