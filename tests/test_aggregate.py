import random

import pytest

from conftest import frame
from flowdesk.core.query.aggregate import ResultAggregator, fold_events, row_to_mapping
from flowdesk.core.query.errors import AggregationDefect, StreamRejected
from flowdesk.core.schemas import EndEvent, ErrorEvent, RowBatchEvent, SchemaEvent


async def events_from(items):
    for item in items:
        yield item


class RecordingChannel:
    def __init__(self):
        self.close_calls = 0

    async def close(self):
        self.close_calls += 1


def test_positional_row_maps_onto_schema():
    result = fold_events(
        [
            SchemaEvent(columns=["id", "name"]),
            RowBatchEvent(rows=[[1, "a"]]),
            EndEvent(row_count=1, duration_ms=3),
        ]
    )
    assert result.rows == [{"id": 1, "name": "a"}]
    assert [column.key for column in result.columns] == ["id", "name"]
    assert [column.label for column in result.columns] == ["id", "name"]
    assert result.execution_time_ms == 3


def test_documents_without_schema_seed_column_order():
    """First document's keys decide the columns; the document passes through"""
    result = fold_events(
        [
            RowBatchEvent(rows=[{"id": 1, "name": "a"}]),
            RowBatchEvent(rows=[[2, "b"]]),
            EndEvent(row_count=2, duration_ms=1),
        ]
    )
    assert [column.key for column in result.columns] == ["id", "name"]
    assert result.rows == [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}]


def test_terminal_row_count_wins():
    result = fold_events(
        [
            SchemaEvent(columns=["id"]),
            RowBatchEvent(rows=[[1], [2]]),
            RowBatchEvent(rows=[[3]]),
            EndEvent(row_count=5, duration_ms=12),
        ]
    )
    assert len(result.rows) == 3
    assert result.affected_rows == 5


@pytest.mark.parametrize("row_count", [None, 0])
def test_missing_row_count_falls_back_to_observed_rows(row_count):
    result = fold_events(
        [
            SchemaEvent(columns=["id"]),
            RowBatchEvent(rows=[[1], [2], [3]]),
            EndEvent(row_count=row_count, duration_ms=0),
        ]
    )
    assert result.affected_rows == 3


def test_row_length_mismatch():
    assert row_to_mapping([1, "a", True], ["id", "name"]) == {"id": 1, "name": "a"}
    assert row_to_mapping([1], ["id", "name"]) == {"id": 1}
    assert row_to_mapping([1, 2], []) == {}


def test_immediate_end_is_empty_success():
    result = fold_events([EndEvent(row_count=None, duration_ms=2)])
    assert result.rows == []
    assert result.columns == []
    assert result.affected_rows == 0


def test_error_event_rejects_with_message():
    with pytest.raises(StreamRejected) as excinfo:
        fold_events(
            [SchemaEvent(columns=["id"]), ErrorEvent(message="query failed", error_id="e-1")]
        )
    assert excinfo.value.message == "query failed"
    assert excinfo.value.error_id == "e-1"


def test_stream_without_terminal_rejects():
    with pytest.raises(StreamRejected):
        fold_events([SchemaEvent(columns=["id"]), RowBatchEvent(rows=[[1]])])


def test_second_terminal_is_a_defect():
    with pytest.raises(AggregationDefect):
        fold_events([EndEvent(row_count=0, duration_ms=0), ErrorEvent(message="late")])


def test_outcome_is_delivered_once():
    aggregator = ResultAggregator()
    aggregator.apply(EndEvent(row_count=0, duration_ms=0))
    aggregator.settle()
    with pytest.raises(AggregationDefect):
        aggregator.settle()


@pytest.mark.parametrize("seed", range(25))
def test_random_interleavings_settle_once(seed):
    rng = random.Random(seed)
    events = []
    expected_rows = 0
    for _ in range(rng.randint(0, 12)):
        if rng.random() < 0.2:
            events.append(SchemaEvent(columns=["a", "b"]))
        else:
            batch = [[rng.randint(0, 9), "x"] for _ in range(rng.randint(0, 4))]
            expected_rows += len(batch)
            events.append(RowBatchEvent(rows=batch))
    fails = rng.random() < 0.5
    events.append(ErrorEvent(message="boom") if fails else EndEvent(duration_ms=1))

    aggregator = ResultAggregator()
    settled_by = [aggregator.apply(event) for event in events]
    assert settled_by.count(True) == 1
    assert settled_by[-1] is True

    if fails:
        with pytest.raises(StreamRejected):
            aggregator.settle()
    else:
        assert len(aggregator.settle().rows) == expected_rows


@pytest.mark.asyncio
async def test_aggregate_closes_channel_on_success():
    channel = RecordingChannel()
    result = await ResultAggregator(channel).aggregate(
        events_from([SchemaEvent(columns=["id"]), EndEvent(row_count=0, duration_ms=0)])
    )
    assert result.affected_rows == 0
    assert channel.close_calls >= 1


@pytest.mark.asyncio
async def test_aggregate_closes_channel_on_failure():
    channel = RecordingChannel()
    with pytest.raises(StreamRejected):
        await ResultAggregator(channel).aggregate(
            events_from([ErrorEvent(message="query failed")])
        )
    assert channel.close_calls >= 1


@pytest.mark.asyncio
async def test_aggregate_over_real_channel_closes_connection_once(decoder_factory):
    decoder, connector = decoder_factory(
        [
            frame(type="schema", columns=[{"name": "id"}, {"name": "name"}]),
            frame(type="rows", rows=[[1, "a"]]),
            frame(type="end", rowCount=1, durationMs=5),
        ]
    )
    channel = decoder.open("c", "q-1")
    result = await ResultAggregator(channel).aggregate(channel.events())

    assert result.rows == [{"id": 1, "name": "a"}]
    assert channel.closed
    assert connector.connections[0].close_calls == 1
