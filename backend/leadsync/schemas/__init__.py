from .sync import (
    SyncMode, JobStatus, TERMINAL_STATUSES, RateLimitOverride, SyncRequest,
    SyncJobCreated, SyncJobResponse, ValidationResponse,
)
from .namespace import NamespaceCreate, NamespaceUpdate, NamespaceResponse
