"""
SQLAlchemy ORM models.

Tenant data is partitioned by ``partition_id`` (an opaque UUID owned by the
namespace registry), never by tenant-named tables.
"""

from sqlalchemy import (
    Column, String, Boolean, Integer, Float, Text, DateTime, JSON, Index,
    ForeignKey, UniqueConstraint, CheckConstraint, Uuid
)
from sqlalchemy.dialects.postgresql import JSONB
import uuid

from leadsync.database import Base
from leadsync.utils import utcnow

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# NAMESPACES
# ============================================================================

class Namespace(Base):
    """Tenant partition descriptor."""
    __tablename__ = "namespaces"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)
    keywords = Column(JSONType, nullable=False, default=list)
    partition_id = Column(Uuid, nullable=False, unique=True, default=uuid.uuid4)
    is_default = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    position = Column(Integer, nullable=False, default=0)
    crm_config = Column(JSONType, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Namespace(name='{self.name}', active={self.is_active})>"


# ============================================================================
# USERS & EVENTS
# ============================================================================

class UserRecord(Base):
    """One lead per (namespace partition, email)."""
    __tablename__ = "lead_users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    partition_id = Column(Uuid, ForeignKey("namespaces.partition_id"), nullable=False, index=True)
    email = Column(String(320), nullable=False, index=True)

    # Identity (first non-null value wins)
    first_name = Column(String(255))
    last_name = Column(String(255))
    full_name = Column(String(255))
    company = Column(String(255))
    title = Column(String(255))
    linkedin_profile = Column(String(500))

    # Enrichment (latest payload wins)
    enrichment = Column(JSONType)
    enrichment_source = Column(String(50))
    enrichment_confidence = Column(Float)
    enriched_at = Column(DateTime)

    # Scoring
    icp_score = Column(Integer)
    behavior_score = Column(Integer, nullable=False, default=0)
    lead_score = Column(Integer)
    lead_grade = Column(String(5))
    score_breakdown = Column(JSONType)
    icp_scored_at = Column(DateTime)
    last_scored_at = Column(DateTime)

    # Origin
    origin_platform = Column(String(50))
    platforms = Column(JSONType, default=list)
    external_ids = Column(JSONType, default=dict)

    # CRM write-back
    crm_record_id = Column(String(255))
    crm_synced_at = Column(DateTime)

    lifecycle_status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("partition_id", "email", name="uq_lead_users_partition_email"),
        CheckConstraint("lifecycle_status IN ('active', 'archived')", name="chk_user_lifecycle"),
    )

    def __repr__(self):
        return f"<UserRecord(email='{self.email}', lead_score={self.lead_score})>"


class EventRecord(Base):
    """Immutable engagement event; ``event_key`` is the dedup contract."""
    __tablename__ = "lead_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_key = Column(String(128), nullable=False, unique=True)
    event_type = Column(String(100), nullable=False)
    platform = Column(String(50), nullable=False)
    partition_id = Column(Uuid, ForeignKey("namespaces.partition_id"), nullable=False)
    user_email = Column(String(320), nullable=False)
    campaign_name = Column(String(500))
    event_metadata = Column("metadata", JSONType, default=dict)
    occurred_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_lead_events_partition_email", "partition_id", "user_email"),
    )


# ============================================================================
# SYNC JOBS
# ============================================================================

class SyncJob(Base):
    """One orchestration run."""
    __tablename__ = "sync_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    mode = Column(String(30), nullable=False)
    platforms = Column(JSONType, nullable=False)
    namespaces = Column(JSONType, nullable=False)
    window_start = Column(DateTime)
    window_end = Column(DateTime)
    reset_date = Column(DateTime)
    batch_size = Column(Integer, nullable=False)
    rate_limit_overrides = Column(JSONType)
    callback_url = Column(String(1000))

    status = Column(String(20), nullable=False, default="queued")
    processed = Column(Integer, nullable=False, default=0)
    total = Column(Integer, nullable=False, default=0)
    errors = Column(Integer, nullable=False, default=0)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    result_summary = Column(JSONType)
    error_message = Column(Text)
    callback_sent_at = Column(DateTime)
    resumed_from = Column(String(36))

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'running', 'completed', 'failed', 'partial_success', 'cancelled')",
            name="chk_sync_job_status"
        ),
        Index("ix_sync_jobs_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return f"<SyncJob(id={self.id}, mode={self.mode}, status={self.status})>"


class SyncCheckpoint(Base):
    """Resumable cursor for one (job, platform, namespace) tuple."""
    __tablename__ = "sync_checkpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey("sync_jobs.id"), nullable=False)
    platform = Column(String(50), nullable=False)
    namespace = Column(String(100), nullable=False)
    cursor = Column(JSONType)
    sequence = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="pending")
    users_processed = Column(Integer, nullable=False, default=0)
    events_processed = Column(Integer, nullable=False, default=0)
    errors = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("job_id", "platform", "namespace", name="uq_checkpoint_tuple"),
    )


class SyncWatermark(Base):
    """Last successfully synced time per (platform, namespace)."""
    __tablename__ = "sync_watermarks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    platform = Column(String(50), nullable=False)
    namespace = Column(String(100), nullable=False)
    last_synced_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("platform", "namespace", name="uq_watermark_tuple"),
    )
