"""Tests for the update stream."""

import queue
import threading
from pathlib import Path

import pytest

from lessanvil.errors import NBTError
from lessanvil.updates import (
    Finished,
    ProcessedRegion,
    RegionFile,
    RegionResult,
    Report,
    Starting,
    UpdateStream,
)


def make_report(**overrides) -> Report:
    values = dict(
        time_taken=1.5,
        total_freed_space=4096,
        total_regions=2,
        total_chunks=10,
        total_deleted_chunks=4,
    )
    values.update(overrides)
    return Report(**values)


def test_iteration_stops_after_finished():
    """Consumers iterating the stream stop at Finished."""
    stream = UpdateStream()
    region = RegionFile(path=Path("r.0.0.mca"), x=0, z=0)
    stream.send(Starting(total_files=1))
    stream.send(ProcessedRegion(region=region, result=RegionResult(0, 0, 3, 1)))
    stream.send(Finished(report=make_report()))

    updates = list(stream)

    assert [type(u) for u in updates] == [Starting, ProcessedRegion, Finished]


def test_iteration_stops_when_producer_ends():
    """A cancelled run ends the stream without Finished."""
    stream = UpdateStream()
    stream.send(Starting(total_files=3))
    stream.end()

    assert list(stream) == [Starting(total_files=3)]
    # The end marker is sticky
    assert stream.get(timeout=0) is None


def test_send_after_close_is_refused():
    """Closing the consumer side makes sends fail."""
    stream = UpdateStream()
    assert stream.send(Starting(total_files=1)) is True

    stream.close()

    assert stream.closed
    assert stream.send(Starting(total_files=1)) is False


def test_get_timeout():
    """get() raises queue.Empty when nothing arrives."""
    stream = UpdateStream()

    with pytest.raises(queue.Empty):
        stream.get(timeout=0.01)


def test_wait_for_producer():
    """wait() returns once the producer ends."""
    stream = UpdateStream()
    assert stream.wait(timeout=0.01) is False

    producer = threading.Thread(target=stream.end)
    producer.start()
    producer.join()

    assert stream.wait(timeout=1) is True
    assert stream.ended


def test_processed_region_ok():
    """ProcessedRegion carries either a result or an error."""
    region = RegionFile(path=Path("r.0.0.mca"), x=0, z=0)

    assert ProcessedRegion(region=region, result=RegionResult(0, 0, 1, 0)).ok
    assert not ProcessedRegion(region=region, error=NBTError("bad", region.path)).ok


def test_report_to_dict():
    """Reports serialize to plain dictionaries."""
    assert make_report(cancelled=True).to_dict() == {
        "time_taken": 1.5,
        "total_freed_space": 4096,
        "total_regions": 2,
        "total_chunks": 10,
        "total_deleted_chunks": 4,
        "failed_regions": 0,
        "cancelled": True,
    }


def test_error_string_names_file():
    """Per-file errors mention the file they belong to."""
    error = NBTError("Chunk has no InhabitedTime tag", Path("/world/region/r.1.2.mca"))

    assert str(error) == "r.1.2.mca: Chunk has no InhabitedTime tag"
    assert error.kind == "nbt"
