"""Tests for the Anvil region container."""

from pathlib import Path

import pytest

from lessanvil.errors import AnvilError
from lessanvil.region import (
    CHUNKS_PER_REGION,
    COMPRESSION_GZIP,
    COMPRESSION_NONE,
    HEADER_BYTES,
    SECTOR_BYTES,
    Region,
    chunk_positions,
    region_coordinates,
)


@pytest.mark.parametrize(
    "name, expected",
    [
        ("r.0.0.mca", (0, 0)),
        ("r.3.-7.mca", (3, -7)),
        ("r.-12.5.mca", (-12, 5)),
        ("r.x.4.mca", (0, 4)),
        ("r.9.mca", (0, 9)),
        ("garbage.mca", (0, 0)),
    ],
)
def test_region_coordinates(name, expected):
    """Coordinates are parsed leniently, falling back to 0."""
    assert region_coordinates(Path(name)) == expected


def test_chunk_positions_cover_grid_once():
    """Every slot is visited exactly once, x-major."""
    positions = list(chunk_positions())

    assert len(positions) == CHUNKS_PER_REGION
    assert len(set(positions)) == CHUNKS_PER_REGION
    assert positions[:2] == [(0, 0), (0, 1)]
    assert positions[32] == (1, 0)


def test_empty_file_is_an_empty_region(tmp_path):
    """Zero-length region files are valid and contain no chunks."""
    path = tmp_path / "r.0.0.mca"
    path.touch()

    with Region.open(path) as region:
        assert region.chunk_count() == 0
        assert region.read_chunk(5, 5) is None
        assert region.content_length() == 0
        assert region.truncate() == 0

    assert path.stat().st_size == 0


def test_short_header_is_malformed(tmp_path):
    """A file shorter than the header is not a region."""
    path = tmp_path / "r.0.0.mca"
    path.write_bytes(b"\x01" * 100)

    with pytest.raises(AnvilError, match="header truncated"):
        Region.open(path)


def test_open_missing_file(tmp_path):
    """Opening a missing file raises an OSError."""
    with pytest.raises(FileNotFoundError):
        Region.open(tmp_path / "r.0.0.mca")


@pytest.mark.parametrize("compression", [COMPRESSION_GZIP, COMPRESSION_NONE, 2])
def test_write_then_read_chunk(tmp_path, make_region, make_chunk, compression):
    """Payloads come back decompressed for every supported compression."""
    payload = make_chunk(42)
    path = make_region(tmp_path / "r.0.0.mca", {(3, 4): payload}, compression=compression)

    with Region.open(path) as region:
        assert region.chunk_count() == 1
        assert region.read_chunk(3, 4) == payload
        assert region.read_chunk(4, 3) is None


def test_layout_is_sector_aligned(tmp_path, make_region):
    """Chunks are appended in whole sectors after the header."""
    path = make_region(tmp_path / "r.0.0.mca", {(0, 0): 1, (1, 0): 2, (2, 0): 3})

    assert path.stat().st_size == HEADER_BYTES + 3 * SECTOR_BYTES
    with Region.open(path) as region:
        assert region.content_length() == HEADER_BYTES + 3 * SECTOR_BYTES


def test_remove_chunk_clears_header_entries(tmp_path, make_region):
    """Removing a chunk clears its location and timestamp on disk."""
    path = make_region(tmp_path / "r.0.0.mca", {(0, 0): 1, (7, 9): 2})

    with Region.open(path) as region:
        assert region.timestamp(7, 9) != 0
        region.remove_chunk(7, 9)
        # Removing an empty slot is a no-op
        region.remove_chunk(30, 30)

    with Region.open(path) as region:
        assert region.read_chunk(7, 9) is None
        assert region.timestamp(7, 9) == 0
        assert region.chunk_count() == 1


def test_truncate_after_removing_last_chunk(tmp_path, make_region):
    """Truncation cuts the file right after the last remaining chunk."""
    path = make_region(tmp_path / "r.0.0.mca", {(0, 0): 1, (1, 0): 2, (2, 0): 3})

    with Region.open(path) as region:
        region.remove_chunk(2, 0)
        region.remove_chunk(1, 0)
        assert region.truncate() == HEADER_BYTES + SECTOR_BYTES

    assert path.stat().st_size == HEADER_BYTES + SECTOR_BYTES


def test_truncate_keeps_holes_before_last_chunk(tmp_path, make_region):
    """Removed chunks before the last kept one leave their sectors in place."""
    path = make_region(tmp_path / "r.0.0.mca", {(0, 0): 1, (1, 0): 2, (2, 0): 3})

    with Region.open(path) as region:
        region.remove_chunk(0, 0)
        region.truncate()

    assert path.stat().st_size == HEADER_BYTES + 3 * SECTOR_BYTES


def test_truncate_all_removed_keeps_header(tmp_path, make_region):
    """A region with no chunks left shrinks to its header."""
    path = make_region(tmp_path / "r.0.0.mca", {(0, 0): 1, (1, 0): 2})

    with Region.open(path) as region:
        region.remove_chunk(0, 0)
        region.remove_chunk(1, 0)
        region.truncate()

    assert path.stat().st_size == HEADER_BYTES


def test_truncate_drops_trailing_garbage(tmp_path, make_region):
    """Bytes after the last chunk are reclaimed."""
    path = make_region(tmp_path / "r.0.0.mca", {(0, 0): 1})
    with open(path, "ab") as f:
        f.write(b"\xff" * 3 * SECTOR_BYTES)

    with Region.open(path) as region:
        region.truncate()

    assert path.stat().st_size == HEADER_BYTES + SECTOR_BYTES


def test_location_past_end_of_file(tmp_path, make_region):
    """A payload cut short by the end of the file is malformed."""
    path = make_region(tmp_path / "r.0.0.mca", {(0, 0): 1})
    with open(path, "r+b") as f:
        f.truncate(HEADER_BYTES + 10)

    with Region.open(path) as region:
        with pytest.raises(AnvilError, match="past the end"):
            region.read_chunk(0, 0)


def test_location_inside_header(tmp_path):
    """A slot pointing into the header is malformed."""
    path = tmp_path / "r.0.0.mca"
    header = bytearray(HEADER_BYTES)
    header[0:4] = ((1 << 8) | 1).to_bytes(4, "big")
    path.write_bytes(bytes(header))

    with Region.open(path) as region:
        with pytest.raises(AnvilError, match="header"):
            region.read_chunk(0, 0)


def test_unsupported_compression(tmp_path):
    """Unknown compression ids are reported as container errors."""
    path = tmp_path / "r.0.0.mca"
    header = bytearray(HEADER_BYTES)
    header[0:4] = ((2 << 8) | 1).to_bytes(4, "big")
    sector = bytearray(SECTOR_BYTES)
    sector[0:4] = (4).to_bytes(4, "big")
    sector[4] = 9
    path.write_bytes(bytes(header) + bytes(sector))

    with Region.open(path) as region:
        with pytest.raises(AnvilError, match="unsupported compression"):
            region.read_chunk(0, 0)


def test_corrupt_compressed_payload(tmp_path):
    """A payload that does not decompress is a container error."""
    path = tmp_path / "r.0.0.mca"
    header = bytearray(HEADER_BYTES)
    header[0:4] = ((2 << 8) | 1).to_bytes(4, "big")
    sector = bytearray(SECTOR_BYTES)
    sector[0:4] = (11).to_bytes(4, "big")
    sector[4] = 2
    sector[5:15] = b"not zlib!!"
    path.write_bytes(bytes(header) + bytes(sector))

    with Region.open(path) as region:
        with pytest.raises(AnvilError, match="decompressed"):
            region.read_chunk(0, 0)


def test_position_out_of_range(tmp_path, make_region):
    """Positions outside the 32x32 grid are programming errors."""
    path = make_region(tmp_path / "r.0.0.mca", {(0, 0): 1})

    with Region.open(path) as region:
        with pytest.raises(ValueError):
            region.read_chunk(32, 0)


def test_location_entirely_outside_file(tmp_path, make_region):
    """A slot whose sectors lie beyond the end of the file is malformed."""
    path = make_region(tmp_path / "r.0.0.mca", {(0, 0): 1})
    with open(path, "r+b") as f:
        f.truncate(HEADER_BYTES)

    with Region.open(path) as region:
        with pytest.raises(AnvilError, match="truncated payload header"):
            region.read_chunk(0, 0)
        # Truncation never grows the file to cover such a slot
        assert region.truncate() == HEADER_BYTES


def test_unpadded_last_sector_is_readable(tmp_path, make_region, make_chunk):
    """Only the declared payload length has to be present."""
    payload = make_chunk(7)
    path = make_region(tmp_path / "r.0.0.mca", {(0, 0): payload})
    with open(path, "rb") as f:
        f.seek(HEADER_BYTES)
        length = int.from_bytes(f.read(4), "big")
    with open(path, "r+b") as f:
        f.truncate(HEADER_BYTES + 4 + length)

    with Region.open(path) as region:
        assert region.read_chunk(0, 0) == payload
