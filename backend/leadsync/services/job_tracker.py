"""
Sync job tracker: state machine, checkpoints, progress, callbacks.

States:
    queued  -> running | cancelled | failed
    running -> completed | failed | partial_success | cancelled
Terminal states never change again.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, delete, and_, desc
from sqlalchemy.exc import DBAPIError, OperationalError

from leadsync.database import storage_guard
from leadsync.errors import CheckpointError, InvalidJobTransition, JobNotFound, StoreUnavailable
from leadsync.models import SyncCheckpoint, SyncJob
from leadsync.schemas.sync import JobStatus, SyncRequest, TERMINAL_STATUSES
from leadsync.services.notifier import CallbackSender
from leadsync.utils import utcnow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED.value: {
        JobStatus.RUNNING.value,
        JobStatus.CANCELLED.value,
        JobStatus.FAILED.value,
    },
    JobStatus.RUNNING.value: {
        JobStatus.COMPLETED.value,
        JobStatus.FAILED.value,
        JobStatus.PARTIAL_SUCCESS.value,
        JobStatus.CANCELLED.value,
    },
}

CHECKPOINT_TERMINAL = {"completed", "skipped"}


def check_transition(job: SyncJob, target: str) -> None:
    if target not in ALLOWED_TRANSITIONS.get(job.status, set()):
        raise InvalidJobTransition(job.id, job.status, target)


class JobTracker:
    """
    Owns SyncJob / SyncCheckpoint rows.

    Counters are bumped with ``col = col + n`` so concurrent tuple tasks
    never lose updates; each checkpoint write and its counter deltas
    commit in the same transaction.
    """

    def __init__(
        self,
        session_factory,
        callback_sender: Optional[CallbackSender] = None,
        history_limit: int = 100,
    ):
        self.session_factory = session_factory
        self.callback_sender = callback_sender or CallbackSender()
        self.history_limit = history_limit

    @asynccontextmanager
    async def _session(self, operation: str):
        async with storage_guard("Job", operation):
            async with self.session_factory() as session:
                yield session

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(self, request: SyncRequest, resumed_from: Optional[str] = None) -> SyncJob:
        job = SyncJob(
            mode=request.mode.value,
            platforms=list(request.platforms),
            namespaces=request.namespaces if isinstance(request.namespaces, str) else list(request.namespaces),
            window_start=request.start_date,
            window_end=request.end_date,
            reset_date=request.reset_date,
            batch_size=request.batch_size,
            rate_limit_overrides=(
                {p: o.model_dump(exclude_none=True) for p, o in request.rate_limit_overrides.items()}
                if request.rate_limit_overrides else None
            ),
            callback_url=request.callback_url,
            status=JobStatus.QUEUED.value,
            resumed_from=resumed_from,
        )
        async with self._session("create_job") as session:
            session.add(job)
            await session.commit()
        logger.info(f"📝 Created sync job {job.id} ({job.mode}, platforms={job.platforms})")
        return job

    async def get_job(self, job_id: str) -> SyncJob:
        async with self._session("get_job") as session:
            job = await session.get(SyncJob, job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def list_jobs(self, status: Optional[str] = None, limit: int = 20) -> List[SyncJob]:
        async with self._session("list_jobs") as session:
            stmt = select(SyncJob)
            if status:
                stmt = stmt.where(SyncJob.status == status)
            stmt = stmt.order_by(desc(SyncJob.created_at)).limit(limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def mark_running(self, job_id: str) -> SyncJob:
        async with self._session("mark_running") as session:
            job = await session.get(SyncJob, job_id, with_for_update=True)
            if job is None:
                raise JobNotFound(job_id)
            check_transition(job, JobStatus.RUNNING.value)
            job.status = JobStatus.RUNNING.value
            job.started_at = utcnow()
            await session.commit()
        logger.info(f"🚀 Job {job_id} running")
        return job

    async def add_total(self, job_id: str, n: int) -> None:
        if not n:
            return
        async with self._session("add_total") as session:
            await session.execute(
                update(SyncJob).where(SyncJob.id == job_id).values(total=SyncJob.total + n)
            )
            await session.commit()

    async def request_cancel(self, job_id: str) -> SyncJob:
        """
        Flag a job for cooperative cancellation.

        A job that has not started yet is cancelled on the spot.
        """
        async with self._session("request_cancel") as session:
            job = await session.get(SyncJob, job_id, with_for_update=True)
            if job is None:
                raise JobNotFound(job_id)
            if job.status in TERMINAL_STATUSES:
                raise InvalidJobTransition(job_id, job.status, JobStatus.CANCELLED.value)
            job.cancel_requested = True
            queued = job.status == JobStatus.QUEUED.value
            await session.commit()

        logger.info(f"🛑 Cancellation requested for job {job_id}")
        if queued:
            return await self.finish(job_id, JobStatus.CANCELLED.value, {"cancelled_before_start": True})
        return job

    async def is_cancel_requested(self, job_id: str) -> bool:
        async with self._session("is_cancel_requested") as session:
            result = await session.execute(
                select(SyncJob.cancel_requested).where(SyncJob.id == job_id)
            )
            return bool(result.scalar_one_or_none())

    async def finish(
        self,
        job_id: str,
        status: str,
        summary: Optional[Dict[str, Any]],
        error_message: Optional[str] = None,
    ) -> SyncJob:
        """Move to a terminal state, then fire the callback (once)."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status}")

        async with self._session("finish") as session:
            job = await session.get(SyncJob, job_id, with_for_update=True)
            if job is None:
                raise JobNotFound(job_id)
            check_transition(job, status)
            job.status = status
            job.result_summary = summary
            job.error_message = error_message
            job.completed_at = utcnow()
            await session.commit()

        icon = "✅" if status == JobStatus.COMPLETED.value else "⚠️"
        logger.info(f"{icon} Job {job_id} finished: {status}")

        # the job is terminal at this point; bookkeeping failures must not undo that
        try:
            await self._fire_callback(job)
            await self.prune_history()
        except StoreUnavailable as e:
            logger.error(f"❌ Post-finish bookkeeping failed for job {job_id}: {e}")
        return job

    async def _fire_callback(self, job: SyncJob) -> bool:
        if not job.callback_url:
            return False

        # claim the callback slot; only one caller can win it
        async with self._session("fire_callback") as session:
            result = await session.execute(
                update(SyncJob)
                .where(and_(SyncJob.id == job.id, SyncJob.callback_sent_at.is_(None)))
                .values(callback_sent_at=utcnow())
            )
            await session.commit()
            if result.rowcount != 1:
                logger.debug(f"Callback for job {job.id} already sent")
                return False

        payload = {
            "job_id": job.id,
            "status": job.status,
            "result_summary": job.result_summary,
        }
        return await self.callback_sender.send(job.callback_url, payload)

    async def recover_interrupted(self) -> List[str]:
        """Jobs left 'running' by a dead process become failed (checkpoints kept)."""
        async with self._session("recover_interrupted") as session:
            result = await session.execute(
                select(SyncJob).where(SyncJob.status == JobStatus.RUNNING.value)
            )
            jobs = list(result.scalars().all())
            for job in jobs:
                job.status = JobStatus.FAILED.value
                job.error_message = "interrupted"
                job.completed_at = utcnow()
            await session.commit()

        for job in jobs:
            logger.warning(f"⚠️ Job {job.id} was interrupted; marked failed (resumable)")
        return [job.id for job in jobs]

    async def prune_history(self) -> int:
        """Keep only the newest ``history_limit`` terminal jobs."""
        async with self._session("prune_history") as session:
            result = await session.execute(
                select(SyncJob.id)
                .where(SyncJob.status.in_(TERMINAL_STATUSES))
                .order_by(desc(SyncJob.created_at))
                .offset(self.history_limit)
            )
            stale = list(result.scalars().all())
            if not stale:
                return 0
            await session.execute(delete(SyncCheckpoint).where(SyncCheckpoint.job_id.in_(stale)))
            await session.execute(delete(SyncJob).where(SyncJob.id.in_(stale)))
            await session.commit()
        logger.info(f"🧹 Pruned {len(stale)} old sync jobs")
        return len(stale)

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def get_checkpoint(self, job_id: str, platform: str, namespace: str) -> Optional[SyncCheckpoint]:
        async with self._session("get_checkpoint") as session:
            result = await session.execute(
                select(SyncCheckpoint).where(
                    and_(
                        SyncCheckpoint.job_id == job_id,
                        SyncCheckpoint.platform == platform,
                        SyncCheckpoint.namespace == namespace
                    )
                )
            )
            return result.scalars().first()

    async def list_checkpoints(self, job_id: str) -> List[SyncCheckpoint]:
        async with self._session("list_checkpoints") as session:
            result = await session.execute(
                select(SyncCheckpoint)
                .where(SyncCheckpoint.job_id == job_id)
                .order_by(SyncCheckpoint.platform, SyncCheckpoint.namespace)
            )
            return list(result.scalars().all())

    async def save_checkpoint(
        self,
        job_id: str,
        platform: str,
        namespace: str,
        cursor: Optional[Dict[str, Any]],
        sequence: int,
        users_delta: int = 0,
        events_delta: int = 0,
        errors_delta: int = 0,
        status: str = "running",
        last_error: Optional[str] = None,
    ) -> SyncCheckpoint:
        """
        Persist a tuple's cursor together with the job counters.

        Raises:
            CheckpointError: sequence did not advance, or the write failed
        """
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(SyncCheckpoint).where(
                        and_(
                            SyncCheckpoint.job_id == job_id,
                            SyncCheckpoint.platform == platform,
                            SyncCheckpoint.namespace == namespace
                        )
                    ).with_for_update()
                )
                checkpoint = result.scalars().first()

                if checkpoint is None:
                    checkpoint = SyncCheckpoint(
                        job_id=job_id, platform=platform, namespace=namespace,
                        sequence=0, users_processed=0, events_processed=0, errors=0,
                    )
                    session.add(checkpoint)
                elif sequence <= checkpoint.sequence:
                    raise CheckpointError(
                        f"Checkpoint for {job_id}/{platform}/{namespace} went backwards "
                        f"({checkpoint.sequence} -> {sequence})"
                    )

                checkpoint.cursor = cursor
                checkpoint.sequence = sequence
                checkpoint.status = status
                checkpoint.users_processed = (checkpoint.users_processed or 0) + users_delta
                checkpoint.events_processed = (checkpoint.events_processed or 0) + events_delta
                checkpoint.errors = (checkpoint.errors or 0) + errors_delta
                if last_error is not None:
                    checkpoint.last_error = last_error
                checkpoint.updated_at = utcnow()

                processed_delta = users_delta + events_delta
                if processed_delta or errors_delta:
                    await session.execute(
                        update(SyncJob)
                        .where(SyncJob.id == job_id)
                        .values(
                            processed=SyncJob.processed + processed_delta,
                            errors=SyncJob.errors + errors_delta,
                        )
                    )
                await session.commit()
                return checkpoint
        except (OperationalError, DBAPIError, OSError) as e:
            raise CheckpointError(f"Checkpoint write failed for {job_id}/{platform}/{namespace}: {e}") from e

    async def inherit_checkpoints(self, source_job_id: str, target_job_id: str) -> int:
        """
        Copy a job's checkpoints onto its resumption.

        Completed/skipped tuples keep their state and counters; everything
        else restarts from its last committed cursor with errors cleared.
        """
        source = await self.list_checkpoints(source_job_id)
        if not source:
            return 0

        processed = 0
        async with self._session("inherit_checkpoints") as session:
            for old in source:
                done = old.status == "completed"
                session.add(SyncCheckpoint(
                    job_id=target_job_id,
                    platform=old.platform,
                    namespace=old.namespace,
                    cursor=old.cursor,
                    sequence=old.sequence,
                    status="completed" if done else "pending",
                    users_processed=old.users_processed,
                    events_processed=old.events_processed,
                    errors=0,
                ))
                processed += (old.users_processed or 0) + (old.events_processed or 0)
            await session.execute(
                update(SyncJob)
                .where(SyncJob.id == target_job_id)
                .values(processed=SyncJob.processed + processed)
            )
            await session.commit()

        logger.info(f"♻️ Job {target_job_id} inherited {len(source)} checkpoints from {source_job_id}")
        return len(source)
