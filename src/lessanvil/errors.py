"""Exception types raised by lessanvil."""

from pathlib import Path


class WorldFolderNotFoundError(FileNotFoundError):
    """The world folder does not exist or cannot be accessed."""

    def __init__(self, world_folder: Path):
        super().__init__(f"The specified world folder could not be found: {world_folder}")
        self.world_folder = world_folder


class WorkerPoolError(RuntimeError):
    """The worker pool for processing region files could not be started."""


class RegionProcessingError(Exception):
    """
    Failure while processing a single region file.

    These never abort a run. They are reported as the result of the
    region that failed and the remaining regions are processed normally.
    """

    kind = "unknown"

    def __init__(self, message: str, path: Path | None = None):
        super().__init__(message)
        self.message = message
        self.path = path

    def __str__(self) -> str:
        if self.path is None:
            return self.message
        return f"{self.path.name}: {self.message}"


class RegionIOError(RegionProcessingError):
    """I/O failure while opening, reading, writing or truncating a region file."""

    kind = "io"


class AnvilError(RegionProcessingError):
    """The region file is not a well-formed Anvil container."""

    kind = "anvil"


class NBTError(RegionProcessingError):
    """A chunk payload could not be decoded as NBT."""

    kind = "nbt"
