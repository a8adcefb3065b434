"""Pytest configuration and fixtures for building test worlds."""

import io
import sys
from pathlib import Path

import pytest

# Add src directory to Python path to ensure tests use local source code
# instead of installed package
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from nbt.nbt import NBTFile, TAG_Compound, TAG_Int, TAG_Long  # noqa: E402

from lessanvil.region import COMPRESSION_ZLIB, Region  # noqa: E402


def _chunk_nbt(inhabited_time: int, legacy: bool = False) -> bytes:
    chunk = NBTFile()
    chunk.name = ""
    chunk.tags.append(TAG_Int(name="DataVersion", value=3700))
    inhabited = TAG_Long(name="InhabitedTime", value=inhabited_time)
    if legacy:
        level = TAG_Compound(name="Level")
        level.tags.append(inhabited)
        chunk.tags.append(level)
    else:
        chunk.tags.append(inhabited)

    buffer = io.BytesIO()
    chunk.write_file(buffer=buffer)
    return buffer.getvalue()


def _write_region(path: Path, chunks: dict, compression: int = COMPRESSION_ZLIB) -> Path:
    """Write a region file; ``chunks`` maps (x, z) to an InhabitedTime or raw bytes."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch()
    with Region.open(path) as region:
        for (x, z), value in chunks.items():
            data = value if isinstance(value, bytes) else _chunk_nbt(value)
            region.write_chunk(x, z, data, compression=compression)
    return path


@pytest.fixture
def make_chunk():
    """Build an uncompressed chunk NBT payload with the given InhabitedTime."""
    return _chunk_nbt


@pytest.fixture
def make_region():
    """Write a region file from a {(x, z): inhabited_time} mapping."""
    return _write_region


@pytest.fixture
def world(tmp_path):
    """An empty world folder with level.dat and an overworld region folder."""
    world_folder = tmp_path / "world"
    (world_folder / "region").mkdir(parents=True)
    (world_folder / "level.dat").write_bytes(b"\x00" * 16)
    return world_folder
