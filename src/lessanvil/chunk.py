"""Decode the parts of a chunk's NBT that lessanvil cares about."""

import io
import struct

from nbt.nbt import MalformedFileError, NBTFile, TAG_Compound

from .errors import NBTError

# InhabitedTime is stored in game ticks
TICKS_PER_SECOND = 20


def seconds_to_ticks(seconds: int) -> int:
    """Convert a whole number of seconds into game ticks."""
    return int(seconds) * TICKS_PER_SECOND


def _ticks(tag) -> int:
    value = getattr(tag, "value", None)
    if not isinstance(value, int) or isinstance(value, bool):
        raise NBTError("InhabitedTime is not an integer")
    return value


def read_inhabited_time(raw: bytes) -> int:
    """
    Return the InhabitedTime (in ticks) of an uncompressed chunk payload.

    Chunks written since 1.18 keep the tag at the root; older chunks nest it
    inside the ``Level`` compound.

    Raises:
        NBTError: If the payload is not valid NBT or has no InhabitedTime
    """
    try:
        chunk = NBTFile(buffer=io.BytesIO(raw))
    except (MalformedFileError, struct.error, ValueError, KeyError, IndexError) as e:
        raise NBTError(f"Malformed chunk NBT: {e}") from e

    if "InhabitedTime" in chunk:
        return _ticks(chunk["InhabitedTime"])

    if "Level" in chunk and isinstance(chunk["Level"], TAG_Compound):
        level = chunk["Level"]
        if "InhabitedTime" in level:
            return _ticks(level["InhabitedTime"])

    raise NBTError("Chunk has no InhabitedTime tag")
