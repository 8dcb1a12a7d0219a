"""
Deployment record schema and status lifecycle.

Schema for deployments collection:
- tag (document ID): caller-supplied correlation id
- service_name: Nomad job name, empty for uploaded job files
- remote_handle: Nomad evaluation id, empty until submission succeeds
- status: pending | running | completed | failed
- created_at, updated_at
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict

from .errors import StoreError

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

ALL_STATUSES = (STATUS_PENDING, STATUS_RUNNING, STATUS_COMPLETED, STATUS_FAILED)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)

# Allowed forward moves; anything else is a regression.
TRANSITIONS = {
    STATUS_PENDING: (STATUS_RUNNING, STATUS_FAILED),
    STATUS_RUNNING: (STATUS_COMPLETED, STATUS_FAILED),
    STATUS_COMPLETED: (),
    STATUS_FAILED: (),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: str, new: str) -> bool:
    """Return True if a record in ``current`` may move to ``new``."""
    return new in TRANSITIONS.get(current, ())


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


@dataclass
class DeploymentRecord:
    """Tracked state of one deployment attempt."""

    tag: str
    service_name: str = ""
    remote_handle: str = ""
    status: str = STATUS_PENDING
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentRecord":
        status = data.get("status", STATUS_PENDING)
        if status not in ALL_STATUSES:
            raise StoreError(f"Deployment {data.get('tag')} has unknown status: {status!r}")
        return cls(
            tag=data["tag"],
            service_name=data.get("service_name") or "",
            remote_handle=data.get("remote_handle") or "",
            status=status,
            created_at=data.get("created_at") or utc_now(),
            updated_at=data.get("updated_at") or utc_now(),
        )
