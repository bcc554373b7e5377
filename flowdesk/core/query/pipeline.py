import asyncio
import hashlib
from contextlib import aclosing
from typing import Optional
from datetime import datetime, timezone
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from flowdesk.core import models
from flowdesk.core.config import settings
from flowdesk.core.query.aggregate import ResultAggregator
from flowdesk.core.query.errors import StreamRejected
from flowdesk.core.query.gate import SubmissionGate
from flowdesk.core.query.stream import StreamDecoder
from flowdesk.core.schemas import (
    QuerySubmission,
    RunError,
    RunNoConnection,
    RunOk,
    RunOutcome,
    RunPendingApproval,
    RunRejected,
    RunStatus,
    StartStatus,
)


# -----------------------------------------------------------------------------
# PIPELINE MODULE - Orchestration
# Purpose: submit → (ready) open stream → aggregate → one RunOutcome,
# log every step and record the run in the history table
# -----------------------------------------------------------------------------

TIMEOUT_MESSAGE = "query timed out"

logger = logging.getLogger(__name__)


class QueryRunLogger:
    """Mirrors the steps of one run_query call to the module logger."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        self.start_time = datetime.now()

    def log(self, step: str, message: str, level: str = "info"):
        if level == "error":
            logger.error(f"[Connection {self.connection_id}] {step}: {message}")
        elif level == "warning":
            logger.warning(f"[Connection {self.connection_id}] {step}: {message}")
        else:
            logger.info(f"[Connection {self.connection_id}] {step}: {message}")

    def elapsed_ms(self) -> int:
        return int((datetime.now() - self.start_time).total_seconds() * 1000)


def statement_hash(statement: str) -> str:
    """SHA-256 of the statement; history never stores the statement text."""
    return hashlib.sha256(statement.encode("utf-8")).hexdigest()


# ============================================================================
# HISTORY
# ============================================================================


async def record_run_start(
    db: Optional[AsyncSession], submission: QuerySubmission
) -> Optional[models.QueryRun]:
    if db is None:
        return None

    try:
        run = models.QueryRun(
            connection_id=submission.connection_id,
            statement_hash=statement_hash(submission.statement),
            status="running",
            approval_id=submission.approval_id,
        )
        db.add(run)
        await db.commit()
        await db.refresh(run)
        return run
    except Exception as error:
        await db.rollback()
        logging.error(f"Failed to record query run: {error}")
        return None


async def record_run_end(
    db: Optional[AsyncSession],
    run: Optional[models.QueryRun],
    status: str,
    row_count: int = 0,
    duration_ms: int = 0,
    error: Optional[str] = None,
    approval_id: Optional[str] = None,
):
    if db is None or run is None:
        return

    try:
        run.status = status
        run.row_count = row_count
        run.duration_ms = duration_ms
        run.error = error
        if approval_id:
            run.approval_id = approval_id
        run.ended_at = datetime.now(timezone.utc)
        await db.commit()
    except Exception as error:
        await db.rollback()
        logging.error(f"Failed to update query run {run.id}: {error}")


# ============================================================================
# RUN
# ============================================================================


async def run_query(
    submission: QuerySubmission,
    *,
    gate: SubmissionGate,
    decoder: StreamDecoder,
    timeout: Optional[float] = None,
    db: Optional[AsyncSession] = None,
) -> RunOutcome:
    """
    Run one statement and collect its result.

    Only a "ready" submission opens a result stream; every other submission
    status is returned as-is. Nothing is retried. A later run carrying the
    approval id is the caller's job.

    Args:
        submission: Statement, target connection and options
        gate: Submission exchange
        decoder: Opens the result stream for a granted session
        timeout: Deadline in seconds for the stream phase
            (None falls back to settings.STREAM_TIMEOUT_SECONDS, and
            only waits forever when that setting is unset too)
        db: Optional session for the run history

    Returns:
        RunOk, RunPendingApproval, RunNoConnection, RunError or RunRejected

    Raises:
        SubmissionFailed: the submission exchange itself broke

    Whatever ends the run (including task cancellation), the history row
    leaves the "running" state before the exception propagates.
    """
    run_logger = QueryRunLogger(submission.connection_id)

    if not submission.connection_id:
        run_logger.log("submit", "No connection selected", "warning")
        return RunNoConnection()

    history = await record_run_start(db, submission)
    run_logger.log("submit", "Submitting statement...")

    try:
        start = await gate.submit(submission)
    except asyncio.CancelledError:
        run_logger.log("submit", "Run cancelled by caller", "warning")
        await record_run_end(db, history, "cancelled", duration_ms=run_logger.elapsed_ms())
        raise
    except Exception as error:
        # SubmissionFailed, or a client misconfiguration the gate does not wrap
        run_logger.log("submit", f"Submission failed: {error}", "error")
        await record_run_end(
            db, history, "failed", duration_ms=run_logger.elapsed_ms(), error=str(error)
        )
        raise

    if start.status == StartStatus.PENDING_APPROVAL:
        run_logger.log("submit", f"Waiting for approval {start.approval_id}")
        await record_run_end(
            db,
            history,
            RunStatus.PENDING_APPROVAL.value,
            duration_ms=run_logger.elapsed_ms(),
            approval_id=start.approval_id,
        )
        return RunPendingApproval(approval_id=start.approval_id)

    if start.status == StartStatus.NO_CONNECTION:
        run_logger.log("submit", "Backend does not know this connection", "warning")
        await record_run_end(
            db, history, RunStatus.NO_CONNECTION.value, duration_ms=run_logger.elapsed_ms()
        )
        return RunNoConnection()

    if start.status == StartStatus.ERROR:
        run_logger.log("submit", f"Backend rejected the statement: {start.message}", "warning")
        await record_run_end(
            db,
            history,
            RunStatus.ERROR.value,
            duration_ms=run_logger.elapsed_ms(),
            error=start.message,
        )
        return RunError(message=start.message)

    run_logger.log("stream", f"Opening result stream for session {start.session_id}")
    channel = decoder.open(submission.connection_id, start.session_id)
    aggregator = ResultAggregator(channel)
    deadline = timeout if timeout is not None else settings.STREAM_TIMEOUT_SECONDS

    try:
        async with aclosing(channel.events()) as events:
            result = await asyncio.wait_for(aggregator.aggregate(events), deadline)

    except asyncio.TimeoutError:
        await channel.close()
        run_logger.log("stream", f"No result after {deadline}s, stream cancelled", "error")
        await record_run_end(
            db,
            history,
            RunStatus.REJECTED.value,
            row_count=len(aggregator.rows),
            duration_ms=run_logger.elapsed_ms(),
            error=TIMEOUT_MESSAGE,
        )
        return RunRejected(message=TIMEOUT_MESSAGE)

    except StreamRejected as error:
        run_logger.log("stream", f"Query failed: {error.message}", "error")
        await record_run_end(
            db,
            history,
            RunStatus.REJECTED.value,
            row_count=len(aggregator.rows),
            duration_ms=run_logger.elapsed_ms(),
            error=error.message,
        )
        return RunRejected(message=error.message, error_id=error.error_id)

    except asyncio.CancelledError:
        await channel.close()
        run_logger.log("stream", "Run cancelled by caller", "warning")
        await record_run_end(
            db,
            history,
            "cancelled",
            row_count=len(aggregator.rows),
            duration_ms=run_logger.elapsed_ms(),
        )
        raise

    run_logger.log(
        "stream",
        f"Query completed: {result.affected_rows} rows in {result.execution_time_ms} ms",
    )
    await record_run_end(
        db,
        history,
        RunStatus.OK.value,
        row_count=result.affected_rows,
        duration_ms=result.execution_time_ms,
    )
    return RunOk(result=result)
