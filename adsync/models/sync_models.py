"""AdSync — Sync Run Models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SyncType(str, Enum):
    ACCOUNTS = "accounts"
    CAMPAIGNS = "campaigns"
    INSIGHTS = "insights"
    ACCOUNT = "account"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    ALREADY_RUNNING = "already_running"


class SyncResult(BaseModel):
    """Outcome of one sync call.

    `processed` counts accounts for fleet syncs; `records` counts rows written.
    """

    success: bool = True
    status: RunStatus = RunStatus.COMPLETED
    processed: int = 0
    errors: int = 0
    records: int = 0
    duration_ms: float = 0.0
    error_details: List[str] = Field(default_factory=list)

    def add_error(self, detail: str) -> None:
        self.errors += 1
        self.error_details.append(detail)

    def finish(self, started: float, now: float) -> "SyncResult":
        """Settle `success` / `status` from the counters."""
        self.duration_ms = round((now - started) * 1000, 2)
        if self.status in (RunStatus.FAILED, RunStatus.ALREADY_RUNNING):
            self.success = False
        elif self.errors:
            self.success = False
            self.status = RunStatus.PARTIALLY_FAILED
        else:
            self.success = True
            self.status = RunStatus.COMPLETED
        return self

    @classmethod
    def already_running(cls) -> "SyncResult":
        return cls(
            success=False,
            status=RunStatus.ALREADY_RUNNING,
            error_details=["sync already running"],
        )


class SyncRun(BaseModel):
    """One recorded execution of a sync operation."""

    sync_type: SyncType
    account_id: Optional[str] = None
    days: Optional[int] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    status: Optional[RunStatus] = None
    processed: int = 0
    errors: int = 0
    records: int = 0


class SyncStatus(BaseModel):
    """Read-only view of the engine for status endpoints."""

    is_running: bool
    running_scopes: List[str] = Field(default_factory=list)
    scheduled_jobs: List[Dict[str, Any]] = Field(default_factory=list)
    last_run: Optional[SyncRun] = None
    recent_runs: List[SyncRun] = Field(default_factory=list)


class InsightsQuery(BaseModel):
    """Parameters of a read-through insights fetch."""

    account_id: str
    level: str = "campaign"
    entity_id: Optional[str] = None
    date_start: str
    date_end: str
    breakdowns: List[str] = Field(default_factory=list)
    action_breakdowns: List[str] = Field(default_factory=list)
    limit: int = 1000
