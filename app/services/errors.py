"""Exception types shared by the proxy services and the polling client."""


class MeshOptimizerError(Exception):
    """Base class for all errors raised by this application."""


class TransportError(MeshOptimizerError):
    """The upstream service could not be reached (network, DNS, timeout)."""


class UpstreamError(MeshOptimizerError):
    """The upstream service answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str, raw_body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.raw_body = raw_body


class ValidationError(MeshOptimizerError):
    """A required input is missing or malformed."""


class NotFoundError(MeshOptimizerError):
    """The requested asset or job does not exist."""


class UploadInitError(MeshOptimizerError):
    """The upstream upload session did not return an asset id and transfer URL."""


class PhaseTimeoutError(MeshOptimizerError, TimeoutError):
    """A bounded wait for analysis, optimization or conversion ran out."""

    def __init__(self, phase: str, waited_seconds: float) -> None:
        super().__init__(f"{phase.capitalize()} timeout after {waited_seconds:.0f}s")
        self.phase = phase
        self.waited_seconds = waited_seconds
