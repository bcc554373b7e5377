# flowdesk/core/query/gate.py
"""
SUBMISSION GATE - Ask the FlowDB backend to execute a statement

Purpose:
    1. POST the statement (plus approval id / row cap / timeout) to the backend
    2. Classify the single reply into one StartOutcome
    3. Raise SubmissionFailed only when the exchange itself is broken

Data Flow:
    QuerySubmission → submit() → HTTP reply → classify_response() → StartOutcome

"Needs approval", "no connection" and backend policy rejections are values,
not exceptions. The caller branches on StartOutcome.status.
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from flowdesk.core.config import settings
from flowdesk.core.query.errors import SubmissionFailed
from flowdesk.core.schemas import QuerySubmission, StartOutcome, StartStatus

logger = logging.getLogger(__name__)

# Backend refused to run the statement (policy, bad request, missing approval)
REJECTION_STATUS_CODES = {400, 403, 409, 422}


def build_http_client(access_token: Optional[str] = None) -> httpx.AsyncClient:
    """
    Create the AsyncClient used for submissions.

    The bearer token belongs to the authentication layer; it is only copied
    into the default headers here.
    """
    headers = {}
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"

    return httpx.AsyncClient(
        base_url=settings.API_BASE,
        timeout=settings.REQUEST_TIMEOUT_SECONDS,
        headers=headers,
    )


def submission_path(connection_id: str) -> str:
    return f"/api/v1/connections/{quote(connection_id, safe='')}/query"


def submission_body(submission: QuerySubmission) -> Dict[str, Any]:
    """
    Build the JSON body in the backend's field names.

    Example:
        QuerySubmission(connection_id="c1", statement="select 1", max_rows=10)
        → {"statement": "select 1", "maxRows": 10}
    """
    body: Dict[str, Any] = {"statement": submission.statement}
    if submission.approval_id:
        body["approvalId"] = submission.approval_id
    if submission.max_rows is not None:
        body["maxRows"] = submission.max_rows
    if submission.timeout_ms is not None:
        body["timeoutMs"] = submission.timeout_ms
    return body


def _error_message(response: httpx.Response) -> str:
    # Backend answers policy rejections with plain text, sometimes JSON
    text = response.text.strip()
    try:
        data = response.json()
    except ValueError:
        return text or response.reason_phrase
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return text or response.reason_phrase


def classify_response(response: httpx.Response) -> StartOutcome:
    """
    Turn one submission reply into a StartOutcome.

    Handles:
        - 200 {"status": "ready", "queryId": "..."}
        - 202 {"status": "pending_approval", "approvalId": "..."}
        - {"status": "no_connection"} or HTTP 404
        - {"status": "error", "message": "..."} or HTTP 400/403/409/422

    Raises:
        SubmissionFailed: any other status code, a non-JSON body, an unknown
        status, or a reply missing the id its status requires
    """
    if response.status_code == 404:
        return StartOutcome(status=StartStatus.NO_CONNECTION)

    if response.status_code in REJECTION_STATUS_CODES:
        return StartOutcome(status=StartStatus.ERROR, message=_error_message(response))

    if response.is_error:
        raise SubmissionFailed(
            f"Submission failed with HTTP {response.status_code}",
            status_code=response.status_code,
        )

    try:
        data = response.json()
    except ValueError as error:
        raise SubmissionFailed(
            "Submission reply is not JSON", status_code=response.status_code
        ) from error

    if not isinstance(data, dict):
        raise SubmissionFailed(
            f"Unexpected submission reply: {type(data).__name__}",
            status_code=response.status_code,
        )

    try:
        status = StartStatus(data.get("status"))
    except ValueError as error:
        raise SubmissionFailed(
            f"Unknown submission status: {data.get('status')!r}",
            status_code=response.status_code,
        ) from error

    if status == StartStatus.READY:
        session_id = data.get("queryId") or data.get("sessionId")
        if not session_id:
            raise SubmissionFailed(
                "Ready reply without a query id", status_code=response.status_code
            )
        return StartOutcome(status=status, session_id=str(session_id))

    if status == StartStatus.PENDING_APPROVAL:
        approval_id = data.get("approvalId")
        if not approval_id:
            raise SubmissionFailed(
                "Pending approval reply without an approval id",
                status_code=response.status_code,
            )
        return StartOutcome(status=status, approval_id=str(approval_id))

    if status == StartStatus.ERROR:
        message = data.get("message")
        return StartOutcome(
            status=status, message=str(message) if message is not None else None
        )

    return StartOutcome(status=status)


class SubmissionGate:
    """One request/response exchange per submit() call. No retries."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def submit(self, submission: QuerySubmission) -> StartOutcome:
        logger.info(f"Submitting statement to connection {submission.connection_id}")

        try:
            response = await self.client.post(
                submission_path(submission.connection_id),
                json=submission_body(submission),
            )
        except httpx.HTTPError as error:
            raise SubmissionFailed(f"Submission failed: {error}") from error

        outcome = classify_response(response)
        logger.info(
            f"Connection {submission.connection_id}: submission {outcome.status.value}"
        )
        return outcome
