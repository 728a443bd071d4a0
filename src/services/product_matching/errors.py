"""
Error taxonomy for the product matching pipeline.

Every error carries a ``retryable`` flag. Stage-local errors are captured into
the item's result by the batch orchestrator; only ``NoEligibleDetections`` is
raised to the caller, and always before any progress is streamed.
"""


class MatchingError(Exception):
    retryable: bool = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class SearchUnavailable(MatchingError):
    """Catalog search transport failure, timeout, throttling or 5xx."""
    retryable = True


class SearchMisconfigured(MatchingError):
    """Missing credentials or a request the catalog rejects outright."""
    retryable = False


class VisualMatchUnavailable(MatchingError):
    """The image comparison service failed or exceeded its time budget."""
    retryable = True


class InvalidRegion(MatchingError):
    """Detection bounding region is missing or malformed."""
    retryable = False


class StorageWriteFailed(MatchingError):
    retryable = False


class MatchingCancelled(MatchingError):
    retryable = False


class NoEligibleDetections(MatchingError):
    retryable = False


class CandidateNotFound(MatchingError):
    """No stage record exists for the requested candidate of a detection."""
    retryable = False


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, MatchingError):
        return f"{type(exc).__name__}: {exc.message}"
    return f"{type(exc).__name__}: {exc}"
