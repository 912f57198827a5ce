from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple, Union

# Job States
PENDING = "pending"
PROCESSING = "processing"
DONE = "done"
FAILED = "failed"
CANCELLED = "cancelled"

STATUSES = (PENDING, PROCESSING, DONE, FAILED, CANCELLED)
TERMINAL_STATUSES = (DONE, FAILED, CANCELLED)

# Job flavors
DELIVERY = "delivery"
TRIGGER = "trigger"

SEVERITIES = ("info", "warning", "error")


@dataclass
class DeliveryPayload:
    source: str
    message: str
    title: Optional[str] = None
    severity: str = "info"
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class TriggerPayload:
    automation_id: str
    requested_by: str
    automation_name: Optional[str] = None
    notify_on_complete: bool = False


Payload = Union[DeliveryPayload, TriggerPayload]


@dataclass(frozen=True)
class JobKind:
    """Describes how one job flavor is persisted."""
    name: str
    table: str
    payload_type: type
    columns: Tuple[str, ...]
    required: Tuple[str, ...]


DELIVERY_KIND = JobKind(
    name=DELIVERY,
    table="deliveries",
    payload_type=DeliveryPayload,
    columns=("source", "title", "message", "severity", "metadata"),
    required=("source", "message"),
)

TRIGGER_KIND = JobKind(
    name=TRIGGER,
    table="triggers",
    payload_type=TriggerPayload,
    columns=("automation_id", "automation_name", "requested_by", "notify_on_complete"),
    required=("automation_id", "requested_by"),
)

KINDS = {DELIVERY: DELIVERY_KIND, TRIGGER: TRIGGER_KIND}


@dataclass
class JobInput:
    payload: Payload
    scheduled_for: Union[str, datetime, None] = None
    max_retries: Optional[int] = None


@dataclass
class Job:
    id: int
    kind: str
    payload: Payload
    status: str = PENDING
    created_at: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 3
    last_error: Optional[str] = None
    receipt: Optional[str] = None

    @property
    def notify_on_complete(self) -> bool:
        return bool(getattr(self.payload, "notify_on_complete", False))

    @property
    def label(self) -> str:
        p = self.payload
        if isinstance(p, TriggerPayload):
            return p.automation_name or p.automation_id
        return p.title or p.source


@dataclass
class QueueStats:
    pending: int = 0
    processing: int = 0
    scheduled_future: int = 0
    failed: int = 0
    done_recent: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "pending": self.pending,
            "processing": self.processing,
            "scheduled_future": self.scheduled_future,
            "failed": self.failed,
            "done_recent": self.done_recent,
        }
