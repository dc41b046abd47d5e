from typing import Iterable, Optional


class DrumError(Exception):
    """Base class for all errors raised by drum."""


class RefUnresolved(DrumError):
    """No registered service could interpret a raw reference."""

    def __init__(self, raw: str, known_services: Iterable[str]) -> None:
        self.raw = raw
        self.known_services = list(known_services)
        super().__init__(
            f"Could not resolve ref '{raw}'. Known services: {', '.join(self.known_services)}"
        )


class Unsupported(DrumError):
    """A service does not implement the requested capability."""

    def __init__(self, operation: str, service: str, detail: Optional[str] = None) -> None:
        self.operation = operation
        self.service = service
        message = f"Service '{service}' does not support {operation}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class RateLimited(DrumError):
    """Operation was rate limited by the remote service. Includes suggested wait time in milliseconds."""

    def __init__(self, retry_after_ms: int, message: str = "Rate limited") -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms

    @property
    def retry_after_sec(self) -> float:
        return self.retry_after_ms / 1000.0


class RemoteNotFound(DrumError):
    """Requested remote resource was not found."""


class RemoteTransient(DrumError):
    """Transient remote or network failure. Retrying may succeed."""


class AuthenticationFailed(DrumError):
    """Credentials could not be obtained or were rejected. Never retried."""
