"""cincout error hierarchy — all application exceptions defined here."""


class CinCoutError(Exception):
    """Base error for all cincout exceptions."""


class InputRejectedError(CinCoutError):
    """Source text or job options were refused before any process was spawned."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ToolInvocationError(CinCoutError):
    """An external tool (compiler, formatter, linter) exited non-zero."""

    def __init__(self, message: str, stderr: str = "", exit_code: int = 1) -> None:
        super().__init__(message)
        self.stderr = stderr
        self.exit_code = exit_code


class ToolTimeoutError(ToolInvocationError):
    """An external tool exceeded its absolute timeout and was killed."""


class ToolchainUnavailableError(CinCoutError):
    """A required binary or expected tool log file is missing."""


class WorkspaceError(CinCoutError):
    """A job workspace could not be created, written or removed."""


class SessionBusyError(CinCoutError):
    """A job request arrived while the session already has one in flight."""


class CapacityExceededError(CinCoutError):
    """The host-wide concurrent job ceiling has been reached."""


class ConfigurationError(CinCoutError):
    """Invalid or missing configuration."""


class ChannelClosedError(CinCoutError):
    """The session channel was closed by the peer or by the server."""
