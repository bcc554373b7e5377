# flowdesk/core/query/stream.py
"""
STREAM DECODER - Turn result-channel frames into typed events

Purpose:
    1. Open one websocket per granted session (never twice for the same id)
    2. Decode each JSON frame into a StreamEvent, in arrival order
    3. Ignore frames we don't understand (e.g. the backend's "start" frame)
    4. Never leave the consumer waiting: a disconnect or a caller-side close
       before the terminal frame is reported as an ErrorEvent

Frame Flow:
    {"type": "start"}                      → ignored
    {"type": "schema", "columns"|"fields"} → SchemaEvent
    {"type": "rows", "rows": [...]}        → RowBatchEvent   (0..n times)
    {"type": "end" | "error"}              → EndEvent | ErrorEvent (once, last)
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set
from urllib.parse import quote

from pydantic import ValidationError
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from flowdesk.core.config import settings
from flowdesk.core.query.errors import ChannelError
from flowdesk.core.schemas import (
    EndEvent,
    ErrorEvent,
    RowBatchEvent,
    SchemaEvent,
    StreamEvent,
    TERMINAL_EVENTS,
)

logger = logging.getLogger(__name__)

DISCONNECTED_MESSAGE = "connection closed before the query completed"
CANCELLED_MESSAGE = "query cancelled"
DEFAULT_ERROR_MESSAGE = "query failed"

TERMINAL_KINDS = {"end", "error"}

Connector = Callable[[str], Awaitable[Any]]


# ============================================================================
# FRAME DECODING
# ============================================================================


def schema_columns(payload: Dict[str, Any]) -> List[str]:
    """
    Read the ordered column names from a schema frame.

    Both encodings the backend uses give the same result:
        {"columns": [{"name": "id", "type": "int4"}, {"name": "name"}]}
        {"fields": ["id", "name"]}
        → ["id", "name"]
    """
    columns = payload.get("columns")
    if isinstance(columns, list):
        names = []
        for column in columns:
            if isinstance(column, dict):
                if "name" not in column:
                    raise ValueError("column descriptor without a name")
                names.append(str(column["name"]))
            else:
                names.append(str(column))
        return names

    fields = payload.get("fields")
    if isinstance(fields, list):
        return [str(field) for field in fields]

    raise ValueError("schema frame without columns or fields")


def decode_message(payload: Any) -> Optional[StreamEvent]:
    """
    Decode one parsed frame. Returns None for frames that should be skipped.

    A broken end/error frame still has to finish the stream, so it becomes
    an ErrorEvent instead of being skipped.
    """
    if not isinstance(payload, dict):
        logger.warning(f"Skipping non-object stream frame: {type(payload).__name__}")
        return None

    kind = payload.get("type")

    try:
        if kind == "schema":
            return SchemaEvent(columns=schema_columns(payload))

        if kind == "rows":
            return RowBatchEvent(rows=payload.get("rows") or [])

        if kind == "end":
            return EndEvent(
                row_count=payload.get("rowCount"),
                duration_ms=payload.get("durationMs") or 0,
            )

        if kind == "error":
            return ErrorEvent(
                message=payload.get("message") or DEFAULT_ERROR_MESSAGE,
                error_id=payload.get("errorId"),
            )

    except (ValidationError, ValueError, TypeError) as error:
        if kind in TERMINAL_KINDS:
            logger.warning(f"Malformed {kind} frame, treating as failure: {error}")
            return ErrorEvent(message=f"malformed {kind} message from server")
        logger.warning(f"Skipping malformed {kind} frame: {error}")
        return None

    logger.debug(f"Ignoring stream frame of type {kind!r}")
    return None


def decode_frame(raw: Any) -> Optional[StreamEvent]:
    """Parse a text/bytes websocket frame and decode it."""
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as error:
        logger.warning(f"Skipping unparseable stream frame: {error}")
        return None
    return decode_message(payload)


# ============================================================================
# CHANNEL
# ============================================================================


class ResultChannel:
    """
    The result stream of one granted session.

    events() can be consumed once. close() is safe to call any number of
    times and from another task; a pending read then ends with a
    cancellation ErrorEvent.
    """

    def __init__(self, locator: str, session_id: str, connector: Connector):
        self.locator = locator
        self.session_id = session_id
        self._connector = connector
        self._connection = None
        self._consumed = False
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._connection is not None:
            await self._connection.close()
            logger.debug(f"Closed result stream for session {self.session_id}")

    async def events(self) -> AsyncIterator[StreamEvent]:
        if self._consumed:
            raise ChannelError(f"Result stream for session {self.session_id} already consumed")
        self._consumed = True

        if self.closed:
            yield ErrorEvent(message=CANCELLED_MESSAGE)
            return

        try:
            connection = await self._connector(self.locator)
        except (OSError, asyncio.TimeoutError, WebSocketException) as error:
            logger.error(f"Could not open result stream {self.locator}: {error}")
            yield ErrorEvent(message=f"could not open result stream: {error}")
            return

        self._connection = connection
        if self.closed:
            # close() ran while the handshake was in flight
            await connection.close()
            yield ErrorEvent(message=CANCELLED_MESSAGE)
            return

        while True:
            try:
                raw = await connection.recv()
            except ConnectionClosed:
                if self.closed:
                    yield ErrorEvent(message=CANCELLED_MESSAGE)
                else:
                    logger.warning(
                        f"Result stream for session {self.session_id} dropped before completion"
                    )
                    yield ErrorEvent(message=DISCONNECTED_MESSAGE)
                return

            event = decode_frame(raw)
            if event is None:
                continue

            yield event
            if isinstance(event, TERMINAL_EVENTS):
                return
            if self.closed:
                yield ErrorEvent(message=CANCELLED_MESSAGE)
                return


class StreamDecoder:
    """Opens result channels. A session id can only be opened once per decoder."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        ws_base: Optional[str] = None,
        connector: Optional[Connector] = None,
    ):
        self.ws_base = (ws_base or settings.websocket_base).rstrip("/")
        self._headers = {}
        if access_token:
            self._headers["Authorization"] = f"Bearer {access_token}"
        self._connector = connector or self._connect
        self._opened: Set[str] = set()

    async def _connect(self, locator: str):
        return await connect(locator, additional_headers=self._headers or None)

    def locator(self, connection_id: str, session_id: str) -> str:
        return (
            f"{self.ws_base}/api/v1/connections/{quote(connection_id, safe='')}"
            f"/query/{quote(session_id, safe='')}/stream"
        )

    def open(self, connection_id: str, session_id: str) -> ResultChannel:
        if session_id in self._opened:
            raise ChannelError(f"Session {session_id} was already opened")
        self._opened.add(session_id)
        return ResultChannel(
            self.locator(connection_id, session_id), session_id, self._connector
        )
