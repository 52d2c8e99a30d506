"""Data models for queue items, validation outcomes and run statistics."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class ItemStatus(str, Enum):
    """Queue item lifecycle states."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ValidationType(str, Enum):
    """Contact fields that can be verified."""
    EMAIL = "email"
    NAME = "name"
    PHONE = "phone"
    ADDRESS = "address"


class ValidationFlags(BaseModel):
    """Which validations the ingress asked for."""
    email: bool = False
    name: bool = False
    phone: bool = False
    address: bool = False

    def requested(self) -> List[ValidationType]:
        return [vt for vt in ValidationType if getattr(self, vt.value)]


class QueueItem(BaseModel):
    """One persisted unit of validation work tied to a change event."""
    id: str = Field(default_factory=lambda: uuid4().hex)
    event_id: str
    subject_id: Optional[str] = None
    client_id: str
    flags: ValidationFlags = Field(default_factory=ValidationFlags)
    event_data: Dict[str, Any] = Field(default_factory=dict)
    contact_data: Optional[Dict[str, Any]] = None

    status: ItemStatus = ItemStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    next_retry_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None

    validation_results: Optional[Dict[str, Any]] = None
    submission_response: Optional[Dict[str, Any]] = None
    warning: Optional[str] = None
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def _attempts_within_limit(self) -> "QueueItem":
        if self.attempts > self.max_attempts:
            raise ValueError(
                f"attempts ({self.attempts}) exceeds max_attempts ({self.max_attempts})"
            )
        return self

    def is_eligible(self, now: Optional[datetime] = None) -> bool:
        """True if the next batch run may pick this item up."""
        now = now or utcnow()
        return (
            self.status == ItemStatus.PENDING
            and (self.next_retry_at is None or self.next_retry_at <= now)
            and self.attempts < self.max_attempts
        )


class ValidationSuccess(BaseModel):
    """A validator produced a normalized result."""
    ok: Literal[True] = True
    type: ValidationType
    data: Dict[str, Any] = Field(default_factory=dict)


class ValidationFailure(BaseModel):
    """A validator raised; the error is kept per field."""
    ok: Literal[False] = False
    type: ValidationType
    error: str


ValidationOutcome = Union[ValidationSuccess, ValidationFailure]


class EnqueueRequest(BaseModel):
    """A change event as handed over by ingress."""
    event_id: str
    subject_id: Optional[str] = None
    client_id: str
    flags: ValidationFlags = Field(default_factory=ValidationFlags)
    event_data: Dict[str, Any] = Field(default_factory=dict)
    contact_data: Optional[Dict[str, Any]] = None


class EnqueueResult(BaseModel):
    """Result of an enqueue attempt."""
    id: Optional[str] = None
    event_id: str
    duplicate: bool = False


class ItemOutcome(BaseModel):
    """Outcome of one pipeline execution."""
    item_id: str
    success: bool
    error: Optional[str] = None
    warning: Optional[str] = None
    processing_time: float = 0.0


class RunStatus(str, Enum):
    """Status of one batch coordinator invocation."""
    COMPLETED = "completed"
    EMPTY = "empty"
    ALREADY_PROCESSING = "already_processing"
    ERROR = "error"


class RunResult(BaseModel):
    """Statistics reported by one batch run."""
    status: RunStatus
    message: Optional[str] = None
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    runtime: float = 0.0
    peak_concurrency: int = 0
    error: Optional[str] = None


class ProcessorMetrics(BaseModel):
    """Rolling metrics across batch runs."""
    total_processed: int = 0
    total_failed: int = 0
    average_processing_time: float = 0.0
    last_processed_at: Optional[datetime] = None


class QueueStats(BaseModel):
    """Item counts per status."""
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0


class QueueStatusReport(QueueStats):
    """Queue health snapshot produced by the monitor job."""
    oldest_pending_age: float = 0.0
    oldest_processing_age: float = 0.0
    exhausted: int = 0  # pending but out of attempts, excluded from the backlog
    alerts: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)
