"""Error taxonomy for the render pipeline."""

MAX_ERROR_LENGTH = 4000


class RenderError(Exception):
    """Base class for every render-pipeline error."""


class ValidationError(RenderError):
    """Malformed job data, rejected at intake before a job is created."""

    def __init__(self, errors):
        self.errors = errors
        super().__init__(f"Invalid job data: {errors}")


class ProviderError(RenderError):
    """An external voice or storage service answered with a failure."""

    def __init__(self, provider: str, message: str, status_code: int | None = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider}: {message}")


class UnsupportedProviderError(RenderError):
    def __init__(self, provider: str, registered=()):
        self.provider = provider
        known = ", ".join(sorted(registered)) or "none"
        super().__init__(f"Unsupported voice provider: {provider!r} (registered: {known})")


class ConcurrencyError(RenderError):
    """A claim race was lost, or the caller's claim has been superseded."""


class InvalidStateError(RenderError):
    def __init__(self, status: str, action: str = "cancel"):
        self.status = status
        super().__init__(f"Cannot {action} render job with status: {status}")


class ResourceLimitError(RenderError):
    def __init__(self, label: str, size: int, limit: int):
        self.label = label
        self.size = size
        self.limit = limit
        super().__init__(f"{label} is {size} bytes, above the {limit} byte limit")


class AudioProcessingError(RenderError):
    """The transcoder failed or produced output that breaks an audio invariant."""


class JobCancelled(RenderError):
    """Raised at a stage boundary once the job has been cancelled."""


class StageError(RenderError):
    """Wraps a stage failure with the name of the stage it happened in."""

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage} failed: {describe(cause)}")

    @property
    def message(self) -> str:
        return str(self)[:MAX_ERROR_LENGTH]


def describe(exc: BaseException) -> str:
    """Short, single-string description of an exception for ``job.error``."""
    text = str(exc).strip()
    return text or type(exc).__name__
