import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import PermanentJobError

# Job States
PENDING = "PENDING"
RUNNING = "RUNNING"
RETRY = "RETRY"
DONE = "DONE"
FAILED = "FAILED"

JOB_STATUSES = (PENDING, RUNNING, RETRY, DONE, FAILED)
CLAIMABLE_STATUSES = (PENDING, RETRY)
TERMINAL_STATUSES = (DONE, FAILED)

# Job Types
SYNC_ORDER = "SYNC_ORDER"
INVOICE_ORDER = "INVOICE_ORDER"
SHIP_ORDER = "SHIP_ORDER"
IMPORT_ORDERS = "IMPORT_ORDERS"

JOB_TYPES = (SYNC_ORDER, INVOICE_ORDER, SHIP_ORDER, IMPORT_ORDERS)
ORDER_JOB_TYPES = (SYNC_ORDER, INVOICE_ORDER, SHIP_ORDER)

# Order States
ORDER_PENDING = "PENDING"
ORDER_SYNCED = "SYNCED"
ORDER_FAILED = "FAILED"


class OrderJobPayload(BaseModel):
    """Payload of the sync / invoice / ship jobs."""

    order_id: int = Field(gt=0)

    model_config = ConfigDict(extra="ignore")


class ImportJobPayload(BaseModel):
    """Payload of the bookkeeping job recorded for one import run."""

    source: Optional[str] = None
    imported_by: Optional[str] = None
    total_orders: int = 0

    model_config = ConfigDict(extra="ignore")


JobPayload = Union[OrderJobPayload, ImportJobPayload]

PAYLOAD_MODELS = {
    SYNC_ORDER: OrderJobPayload,
    INVOICE_ORDER: OrderJobPayload,
    SHIP_ORDER: OrderJobPayload,
    IMPORT_ORDERS: ImportJobPayload,
}


def decode_payload(job_type: str, data: Dict[str, Any]) -> JobPayload:
    model = PAYLOAD_MODELS.get(job_type)
    if model is None:
        raise PermanentJobError(f"Unknown job type: {job_type}")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise PermanentJobError(f"Invalid payload for {job_type}: {e.errors()[0]['msg']}")


@dataclass
class Job:
    id: int
    type: str
    payload: Dict[str, Any]
    status: str = PENDING
    attempts: int = 0
    max_attempts: int = 5
    target_id: Optional[int] = None
    next_run_at: Optional[str] = None
    last_error: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row) -> "Job":
        payload = row["payload"]
        return cls(
            id=row["id"],
            type=row["type"],
            payload=json.loads(payload) if isinstance(payload, str) else dict(payload or {}),
            status=row["status"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            target_id=row["target_id"],
            next_run_at=row["next_run_at"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def decoded_payload(self) -> JobPayload:
        return decode_payload(self.type, self.payload)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class ChannelRule:
    auto_invoice: bool
    auto_ship: bool
