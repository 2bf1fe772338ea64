"""Sync run and result models."""

from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field
from enum import Enum

from connector_service.models.connection import ConnectionRef
from connector_service.utils.clock import utcnow


class SyncOutcome(str, Enum):
    """Outcome of one sync task."""
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REAUTH_REQUIRED = "reauth_required"
    SKIPPED = "skipped"


class SyncResult(BaseModel):
    """What a provider pulled during one sync."""
    integration_id: str
    records: Dict[str, int] = Field(default_factory=dict)
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def total_records(self) -> int:
        return sum(self.records.values())


class SyncRun(BaseModel):
    """Transient record of one dispatched sync task."""
    tenant_id: str
    integration_id: str
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    outcome: SyncOutcome = SyncOutcome.RUNNING
    result: Optional[SyncResult] = None
    error: Optional[str] = None

    @property
    def connection_ref(self) -> ConnectionRef:
        return ConnectionRef(self.tenant_id, self.integration_id)

    def finish(self, outcome: SyncOutcome, error: Optional[str] = None) -> "SyncRun":
        self.outcome = outcome
        self.error = error
        self.finished_at = utcnow()
        return self
