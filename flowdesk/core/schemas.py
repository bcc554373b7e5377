from datetime import datetime
from typing import Annotated, Optional, List, Dict, Any, Union, Literal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


# =========================
# Enums
# =========================
class StartStatus(str, Enum):
    READY = "ready"
    PENDING_APPROVAL = "pending_approval"
    NO_CONNECTION = "no_connection"
    ERROR = "error"


class RunStatus(str, Enum):
    OK = "ok"
    PENDING_APPROVAL = "pending_approval"
    NO_CONNECTION = "no_connection"
    ERROR = "error"
    REJECTED = "rejected"


# =========================
# SUBMISSION
# =========================
class QuerySubmission(BaseModel):
    """One statement sent to one connection. Immutable once built."""

    connection_id: str
    statement: str
    approval_id: Optional[str] = None
    max_rows: Optional[int] = Field(default=None, gt=0)
    timeout_ms: Optional[int] = Field(default=None, gt=0)

    model_config = ConfigDict(frozen=True)


class StartOutcome(BaseModel):
    """
    Classified reply of the submission exchange.

    Exactly one status holds:
        ready            -> session_id is set
        pending_approval -> approval_id is set
        no_connection    -> no payload
        error            -> optional message from the backend
    """

    status: StartStatus
    session_id: Optional[str] = None
    approval_id: Optional[str] = None
    message: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def check_payload_matches_status(self):
        if self.status == StartStatus.READY and not self.session_id:
            raise ValueError("a ready outcome needs a session id")
        if self.session_id is not None and self.status != StartStatus.READY:
            raise ValueError("only a ready outcome carries a session id")
        if (
            self.approval_id is not None
            and self.status != StartStatus.PENDING_APPROVAL
        ):
            raise ValueError("only a pending_approval outcome carries an approval id")
        if self.message is not None and self.status != StartStatus.ERROR:
            raise ValueError("only an error outcome carries a message")
        return self


# =========================
# STREAM EVENTS
# =========================
Row = Union[List[Any], Dict[str, Any]]


class SchemaEvent(BaseModel):
    kind: Literal["schema"] = "schema"
    columns: List[str]

    model_config = ConfigDict(frozen=True)


class RowBatchEvent(BaseModel):
    kind: Literal["rows"] = "rows"
    rows: List[Row] = []

    model_config = ConfigDict(frozen=True)


class EndEvent(BaseModel):
    kind: Literal["end"] = "end"
    row_count: Optional[int] = None
    duration_ms: int = 0

    model_config = ConfigDict(frozen=True)


class ErrorEvent(BaseModel):
    kind: Literal["error"] = "error"
    message: str
    error_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


StreamEvent = Annotated[
    Union[SchemaEvent, RowBatchEvent, EndEvent, ErrorEvent],
    Field(discriminator="kind"),
]

TERMINAL_EVENTS = (EndEvent, ErrorEvent)


# =========================
# RESULT
# =========================
class ColumnDescriptor(BaseModel):
    key: str
    label: str


class AggregatedResult(BaseModel):
    columns: List[ColumnDescriptor] = []
    rows: List[Dict[str, Any]] = []
    execution_time_ms: int = 0
    affected_rows: int = 0


# =========================
# RUN OUTCOME
# =========================
class RunOk(BaseModel):
    status: Literal["ok"] = "ok"
    result: AggregatedResult


class RunPendingApproval(BaseModel):
    status: Literal["pending_approval"] = "pending_approval"
    approval_id: str


class RunNoConnection(BaseModel):
    status: Literal["no_connection"] = "no_connection"


class RunError(BaseModel):
    status: Literal["error"] = "error"
    message: Optional[str] = None


class RunRejected(BaseModel):
    status: Literal["rejected"] = "rejected"
    message: str
    error_id: Optional[str] = None


RunOutcome = Annotated[
    Union[RunOk, RunPendingApproval, RunNoConnection, RunError, RunRejected],
    Field(discriminator="status"),
]


# =========================
# API
# =========================
class RunQueryRequest(BaseModel):
    statement: str = Field(min_length=1)
    approval_id: Optional[str] = None
    max_rows: Optional[int] = Field(default=None, gt=0)
    timeout_ms: Optional[int] = Field(default=None, gt=0)


class QueryRunResponse(BaseModel):
    id: int
    connection_id: str
    statement_hash: str
    status: str
    approval_id: Optional[str] = None
    row_count: int
    duration_ms: int
    error: Optional[str] = None
    started_at: datetime
    ended_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
