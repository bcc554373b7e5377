from typing import Optional


class QueryClientError(RuntimeError):
    """Base class for faults raised by the query client."""


class SubmissionFailed(QueryClientError):
    """The submission exchange itself failed (network, auth, malformed reply)."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StreamRejected(QueryClientError):
    """The result stream ended in failure: backend error, disconnect, cancel or timeout."""

    def __init__(self, message: str, *, error_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.error_id = error_id


class ChannelError(QueryClientError):
    pass


class AggregationDefect(AssertionError):
    """A stream was settled twice or read after it was settled."""
