"""Error types surfaced by the deployment engine and Nomad client."""
from typing import Optional


class GatewayError(Exception):
    """Base class for errors the gateway reports to callers."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, tag: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.tag = tag


class InvalidInput(GatewayError):
    status_code = 400
    code = "invalid_input"


class Conflict(GatewayError):
    status_code = 409
    code = "conflict"


class NotFound(GatewayError):
    status_code = 404
    code = "not_found"


class JobNotFound(NotFound):
    """The named job does not exist in Nomad."""

    code = "job_not_found"


class ParseError(GatewayError):
    """Nomad could not parse a caller-supplied job document."""

    status_code = 400
    code = "parse_error"


class OrchestratorError(GatewayError):
    """Nomad answered with something the gateway cannot use."""

    status_code = 502
    code = "orchestrator_error"


class OrchestratorUnavailable(OrchestratorError):
    """Nomad could not be reached or did not answer in time."""

    status_code = 503
    code = "orchestrator_unavailable"


class OrchestratorRejected(OrchestratorError):
    """Nomad returned a non-success HTTP status."""

    code = "orchestrator_rejected"

    def __init__(self, message: str, upstream_status: int, tag: Optional[str] = None):
        super().__init__(message, tag=tag)
        self.upstream_status = upstream_status
