"""Minimal read/write access to Anvil region files (``r.<x>.<z>.mca``).

A region file starts with an 8 KiB header: 1024 big-endian location entries
(3 bytes sector offset, 1 byte sector count) followed by 1024 timestamps.
Chunk payloads live in 4 KiB sectors after the header, each prefixed with a
4 byte length and a 1 byte compression id.
"""

import gzip
import os
import struct
import time
import zlib
from pathlib import Path

from .errors import AnvilError

SECTOR_BYTES = 4096
HEADER_BYTES = 2 * SECTOR_BYTES
HEADER_SECTORS = HEADER_BYTES // SECTOR_BYTES
REGION_WIDTH = 32
CHUNKS_PER_REGION = REGION_WIDTH * REGION_WIDTH

COMPRESSION_GZIP = 1
COMPRESSION_ZLIB = 2
COMPRESSION_NONE = 3
COMPRESSION_LZ4 = 4
EXTERNAL_CHUNK_FLAG = 0x80

_HEADER_STRUCT = struct.Struct(f">{CHUNKS_PER_REGION}I")
_ENTRY_STRUCT = struct.Struct(">I")


def region_coordinates(path: Path) -> tuple[int, int]:
    """
    Parse the region coordinates from a file name like ``r.-1.3.mca``.

    Any coordinate that is missing or not an integer is reported as 0.
    """
    parts = Path(path).stem.split(".")[1:]

    def _coordinate(position: int) -> int:
        if len(parts) < position:
            return 0
        try:
            return int(parts[-position])
        except ValueError:
            return 0

    return _coordinate(2), _coordinate(1)


def chunk_positions():
    """Yield every (x, z) slot of a region, x-major."""
    for x in range(REGION_WIDTH):
        for z in range(REGION_WIDTH):
            yield x, z


def _compress(data: bytes, compression: int) -> bytes:
    if compression == COMPRESSION_ZLIB:
        return zlib.compress(data)
    if compression == COMPRESSION_GZIP:
        return gzip.compress(data)
    if compression == COMPRESSION_NONE:
        return data
    raise ValueError(f"Unsupported compression for writing: {compression}")


class Region:
    """
    An open region file.

    Removals are written to the header immediately. Space is only reclaimed
    when :meth:`truncate` cuts the file after the last remaining chunk.
    """

    def __init__(self, fileobj, path: Path | None = None):
        self.file = fileobj
        self.path = path

        self.file.seek(0, os.SEEK_END)
        self._file_size = self.file.tell()

        if self._file_size == 0:
            # Minecraft leaves zero-length region files behind for unsaved regions
            self._has_header = False
            self._locations = [0] * CHUNKS_PER_REGION
            self._timestamps = [0] * CHUNKS_PER_REGION
            return

        if self._file_size < HEADER_BYTES:
            raise AnvilError(f"Region header truncated: {self._file_size} bytes", path)

        self.file.seek(0)
        header = self.file.read(HEADER_BYTES)
        if len(header) != HEADER_BYTES:
            raise AnvilError(f"Region header truncated: {len(header)} bytes", path)

        self._has_header = True
        self._locations = list(_HEADER_STRUCT.unpack_from(header, 0))
        self._timestamps = list(_HEADER_STRUCT.unpack_from(header, SECTOR_BYTES))

    @classmethod
    def open(cls, path: Path) -> "Region":
        """Open a region file for reading and writing."""
        fileobj = open(path, "r+b")
        try:
            return cls(fileobj, Path(path))
        except BaseException:
            fileobj.close()
            raise

    def __enter__(self) -> "Region":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.file.close()

    @staticmethod
    def _index(x: int, z: int) -> int:
        if not (0 <= x < REGION_WIDTH and 0 <= z < REGION_WIDTH):
            raise ValueError(f"Chunk position out of range: ({x}, {z})")
        return x + z * REGION_WIDTH

    def chunk_count(self) -> int:
        """Number of populated slots."""
        return sum(1 for location in self._locations if location)

    def timestamp(self, x: int, z: int) -> int:
        return self._timestamps[self._index(x, z)]

    def read_chunk(self, x: int, z: int) -> bytes | None:
        """
        Return the decompressed payload of a chunk, or None if the slot is empty.

        Raises:
            AnvilError: If the slot location or payload is malformed
        """
        location = self._locations[self._index(x, z)]
        if location == 0:
            return None

        offset, sectors = location >> 8, location & 0xFF
        if offset < HEADER_SECTORS:
            raise AnvilError(f"Chunk ({x}, {z}) points into the region header", self.path)
        self.file.seek(offset * SECTOR_BYTES)
        prefix = self.file.read(5)
        if len(prefix) < 5:
            raise AnvilError(f"Chunk ({x}, {z}) has a truncated payload header", self.path)

        (length,) = _ENTRY_STRUCT.unpack_from(prefix, 0)
        compression = prefix[4]
        if length == 0 or length + 4 > sectors * SECTOR_BYTES:
            raise AnvilError(f"Chunk ({x}, {z}) has invalid payload length {length}", self.path)
        # The last sector of the final chunk may be unpadded
        if offset * SECTOR_BYTES + 4 + length > self._file_size:
            raise AnvilError(f"Chunk ({x}, {z}) extends past the end of the file", self.path)

        data = self.file.read(length - 1)
        if len(data) != length - 1:
            raise AnvilError(f"Chunk ({x}, {z}) payload is truncated", self.path)

        return self._decompress(x, z, data, compression)

    def _decompress(self, x: int, z: int, data: bytes, compression: int) -> bytes:
        if compression & EXTERNAL_CHUNK_FLAG:
            raise AnvilError(f"Chunk ({x}, {z}) is stored in an external .mcc file", self.path)
        try:
            if compression == COMPRESSION_ZLIB:
                return zlib.decompress(data)
            if compression == COMPRESSION_GZIP:
                return gzip.decompress(data)
        except (zlib.error, OSError, EOFError) as e:
            raise AnvilError(f"Chunk ({x}, {z}) could not be decompressed: {e}", self.path) from e
        if compression == COMPRESSION_NONE:
            return data
        raise AnvilError(f"Chunk ({x}, {z}) uses unsupported compression {compression}", self.path)

    def _write_entry(self, index: int) -> None:
        self.file.seek(index * 4)
        self.file.write(_ENTRY_STRUCT.pack(self._locations[index]))
        self.file.seek(SECTOR_BYTES + index * 4)
        self.file.write(_ENTRY_STRUCT.pack(self._timestamps[index]))

    def remove_chunk(self, x: int, z: int) -> None:
        """Clear the slot's location and timestamp. The payload bytes stay until truncation."""
        index = self._index(x, z)
        if self._locations[index] == 0 and self._timestamps[index] == 0:
            return
        self._locations[index] = 0
        self._timestamps[index] = 0
        self._write_entry(index)

    def write_chunk(
        self,
        x: int,
        z: int,
        data: bytes,
        compression: int = COMPRESSION_ZLIB,
        timestamp: int | None = None,
    ) -> None:
        """Append a chunk payload after the current content and point the slot at it."""
        index = self._index(x, z)
        body = bytes([compression]) + _compress(data, compression)
        payload = _ENTRY_STRUCT.pack(len(body)) + body
        sectors = -(-len(payload) // SECTOR_BYTES)
        if sectors > 0xFF:
            raise AnvilError(f"Chunk ({x}, {z}) is too large for an inline payload", self.path)

        if not self._has_header:
            self.file.seek(0)
            self.file.write(b"\x00" * HEADER_BYTES)
            self._has_header = True
            self._file_size = max(self._file_size, HEADER_BYTES)

        self._locations[index] = 0
        offset = self.content_length() // SECTOR_BYTES

        self.file.seek(offset * SECTOR_BYTES)
        self.file.write(payload)
        self.file.write(b"\x00" * (sectors * SECTOR_BYTES - len(payload)))
        self._file_size = max(self._file_size, (offset + sectors) * SECTOR_BYTES)

        self._locations[index] = (offset << 8) | sectors
        self._timestamps[index] = int(time.time()) if timestamp is None else timestamp
        self._write_entry(index)

    def content_length(self) -> int:
        """Offset immediately after the last remaining chunk's sectors."""
        if not self._has_header:
            return 0
        end = HEADER_SECTORS
        for location in self._locations:
            if location:
                end = max(end, (location >> 8) + (location & 0xFF))
        return end * SECTOR_BYTES

    def truncate(self) -> int:
        """
        Cut the file right after the last remaining chunk and return the new length.

        The file never grows, even if a slot points past its end.
        """
        length = min(self.content_length(), self._file_size)
        self.file.flush()
        self.file.truncate(length)
        self.file.flush()
        self._file_size = length
        return length
