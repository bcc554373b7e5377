# flowdesk/core/query/aggregate.py
"""
RESULT AGGREGATOR - Fold a stream of events into one settled result

Purpose:
    1. Track the column order (from the schema event, or seeded from the
       first associative row when no schema has arrived)
    2. Normalize every row to a {column: value} mapping, in arrival order
    3. Settle exactly once: AggregatedResult on End, StreamRejected on Error
    4. Close the channel as soon as the terminal event is seen, and on any
       other way out (cancellation, defects)
"""

import logging
from typing import Any, AsyncIterable, Dict, Iterable, List, Optional, Union

from flowdesk.core.query.errors import AggregationDefect, StreamRejected
from flowdesk.core.schemas import (
    AggregatedResult,
    ColumnDescriptor,
    EndEvent,
    ErrorEvent,
    Row,
    RowBatchEvent,
    SchemaEvent,
    StreamEvent,
)

logger = logging.getLogger(__name__)

INCOMPLETE_STREAM_MESSAGE = "stream ended without a result"


def row_to_mapping(row: Row, columns: List[str]) -> Dict[str, Any]:
    """
    Map one row onto the known columns.

    Example:
        row_to_mapping([1, "a"], ["id", "name"])      → {"id": 1, "name": "a"}
        row_to_mapping([1, "a", True], ["id", "name"]) → {"id": 1, "name": "a"}
        row_to_mapping([1], ["id", "name"])           → {"id": 1}
        row_to_mapping({"id": 1}, ["id", "name"])     → {"id": 1}
    """
    if isinstance(row, dict):
        return dict(row)
    return {column: value for column, value in zip(columns, row)}


class ResultAggregator:
    """
    Per-stream accumulator. One instance per run; nothing is reused.

    apply() feeds one event; settle() hands out the single outcome.
    aggregate() drives both from an async event source and owns the
    channel's closing.
    """

    def __init__(self, channel=None):
        self.channel = channel
        self.columns: List[str] = []
        self.rows: List[Dict[str, Any]] = []
        self.settled = False
        self._outcome: Optional[Union[AggregatedResult, StreamRejected]] = None
        self._delivered = False

    def apply(self, event: StreamEvent) -> bool:
        """Apply one event. Returns True when the event settled the stream."""
        if self.settled:
            raise AggregationDefect(
                f"Received {event.kind!r} event after the stream was settled"
            )

        if isinstance(event, SchemaEvent):
            self.columns = list(event.columns)
            return False

        if isinstance(event, RowBatchEvent):
            for row in event.rows:
                # Documents can arrive without a schema frame; the first
                # one decides the column order
                if isinstance(row, dict) and not self.columns:
                    self.columns = list(row.keys())
                self.rows.append(row_to_mapping(row, self.columns))
            return False

        if isinstance(event, EndEvent):
            self.settled = True
            self._outcome = AggregatedResult(
                columns=[ColumnDescriptor(key=name, label=name) for name in self.columns],
                rows=self.rows,
                execution_time_ms=event.duration_ms,
                affected_rows=event.row_count or len(self.rows),
            )
            return True

        if isinstance(event, ErrorEvent):
            self.settled = True
            self._outcome = StreamRejected(event.message, error_id=event.error_id)
            return True

        raise TypeError(f"Unknown stream event: {event!r}")

    def settle(self) -> AggregatedResult:
        """
        Return the result, or raise the stream's failure. Only once.

        A stream that stopped without End or Error settles as a rejection.
        """
        if self._delivered:
            raise AggregationDefect("Stream outcome was already delivered")
        self._delivered = True

        if not self.settled:
            self.settled = True
            self._outcome = StreamRejected(INCOMPLETE_STREAM_MESSAGE)

        if isinstance(self._outcome, StreamRejected):
            raise self._outcome
        return self._outcome

    async def _close_channel(self) -> None:
        if self.channel is not None:
            await self.channel.close()

    async def aggregate(self, events: AsyncIterable[StreamEvent]) -> AggregatedResult:
        try:
            async for event in events:
                if self.apply(event):
                    await self._close_channel()
                    break
        finally:
            await self._close_channel()

        result = self.settle()
        logger.info(
            f"Stream settled: {len(result.rows)} rows, {len(result.columns)} columns, "
            f"{result.execution_time_ms} ms"
        )
        return result


def fold_events(events: Iterable[StreamEvent]) -> AggregatedResult:
    """
    Fold a literal sequence of events, without any channel.

    Example:
        fold_events([
            SchemaEvent(columns=["id", "name"]),
            RowBatchEvent(rows=[[1, "a"]]),
            EndEvent(row_count=1, duration_ms=3),
        ]).rows
        → [{"id": 1, "name": "a"}]
    """
    aggregator = ResultAggregator()
    for event in events:
        aggregator.apply(event)
    return aggregator.settle()
