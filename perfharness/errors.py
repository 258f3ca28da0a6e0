class HarnessError(Exception):
    """Base class for errors raised by the harness itself."""


class WorkFailure(HarnessError):
    """The measured unit of work raised. The original exception is chained."""

    @classmethod
    def from_exception(cls, exc: BaseException) -> "WorkFailure":
        return cls(f"{type(exc).__name__}: {exc}")


class DeviceUnavailable(HarnessError):
    pass


class AlreadyActive(HarnessError):
    pass


class NotActive(HarnessError):
    pass


class InvalidReport(HarnessError):
    """A benchmark finished without a single recorded sample."""

    def __init__(self, message: str, error: str | None = None):
        self.error = error
        super().__init__(message)
