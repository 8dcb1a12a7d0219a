"""Record store interface shared by all backends."""

from abc import ABC, abstractmethod

from .records import DeploymentRecord


class RecordStore(ABC):
    """Durable mapping from tag to deployment record.

    Records are never deleted. ``create`` is the only idempotency gate and must
    be atomic: of two concurrent callers with the same tag exactly one succeeds
    and the other gets ``AlreadyExists``.
    """

    @abstractmethod
    def create(self, tag: str, service_name: str = "") -> DeploymentRecord:
        """Insert a pending record or raise ``AlreadyExists``."""

    @abstractmethod
    def get(self, tag: str) -> DeploymentRecord:
        """Return the record for ``tag`` or raise ``RecordNotFound``."""

    @abstractmethod
    def set_handle_and_status(self, tag: str, handle: str, status: str) -> DeploymentRecord:
        """Record the orchestrator handle together with a new status."""

    @abstractmethod
    def set_status(self, tag: str, status: str) -> DeploymentRecord:
        """Move the record to ``status``; no write if it is already there."""
