"""Parallel region compaction: delete barely visited chunks and shrink region files."""

import asyncio
import logging
import os
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from pathlib import Path

import aiofiles.os
import psutil

from . import __version__
from .chunk import read_inhabited_time, seconds_to_ticks
from .errors import (
    AnvilError,
    RegionIOError,
    RegionProcessingError,
    WorkerPoolError,
    WorldFolderNotFoundError,
)
from .logging import log_with_context, setup_logging
from .region import Region, chunk_positions, region_coordinates
from .updates import (
    Finished,
    ProcessedRegion,
    RegionFile,
    RegionResult,
    Report,
    Starting,
    UpdateStream,
)

# Region folders relative to the world folder: overworld, nether, end
REGION_SUBFOLDERS = ("region", "DIM-1/region", "DIM1/region")
REGION_EXTENSION = ".mca"

logger = logging.getLogger("lessanvil")


def get_memory_usage_mb() -> float:
    """Get current memory usage in MB."""
    return psutil.Process().memory_info().rss / 1024 / 1024  # Convert bytes to MB


async def async_scandir(path: Path):
    """Async wrapper for os.scandir."""
    loop = asyncio.get_running_loop()

    def _scandir():
        with os.scandir(path) as entries:
            return list(entries)

    return await loop.run_in_executor(None, _scandir)


async def collect_region_files(world_folder: Path) -> list[RegionFile]:
    """
    List the region files of a world.

    Folders are visited in REGION_SUBFOLDERS order; missing folders are
    skipped. Within a folder the directory listing order is kept.

    Args:
        world_folder: Root folder of the world

    Returns:
        Region files found, with coordinates parsed from their names
    """
    regions: list[RegionFile] = []
    for subfolder in REGION_SUBFOLDERS:
        folder = Path(world_folder) / subfolder
        if not await aiofiles.os.path.isdir(folder):
            continue

        for entry in await async_scandir(folder):
            path = Path(entry.path)
            if path.suffix != REGION_EXTENSION:
                continue
            try:
                if not entry.is_file():
                    continue
            except OSError:
                continue
            x, z = region_coordinates(path)
            regions.append(RegionFile(path=path, x=x, z=z))

    return regions


def directory_size(path: Path) -> int:
    """
    Total size in bytes of all files below ``path``.

    Entries that vanish or cannot be read while walking are skipped, so the
    result is a best-effort figure when the tree changes underneath.
    """
    total = 0
    try:
        with os.scandir(path) as entries:
            entries = list(entries)
    except OSError:
        return 0

    for entry in entries:
        try:
            if entry.is_dir(follow_symlinks=False):
                total += directory_size(Path(entry.path))
            else:
                total += entry.stat(follow_symlinks=False).st_size
        except OSError:
            # Removed or unreadable between listing and stat
            continue
    return total


async def async_directory_size(path: Path) -> int:
    """Async wrapper for directory_size."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, directory_size, path)


def freed_space(size_before: int, size_after: int) -> int:
    """Bytes freed between two size samples, never negative."""
    return max(0, size_before - size_after)


def process_region_file(path: Path, max_inhabited_ticks: int) -> RegionResult:
    """
    Delete every chunk of a region file whose InhabitedTime is at most
    ``max_inhabited_ticks`` and truncate the file after the last kept chunk.

    Slots are visited x-major over the 32x32 grid. Slots whose payload cannot
    be read from the container are skipped. A chunk that cannot be decoded
    aborts the file; removals already written stay in place.

    Args:
        path: Region file to compact in place
        max_inhabited_ticks: Inclusive deletion threshold in game ticks

    Returns:
        Counts of examined and deleted chunks

    Raises:
        RegionIOError: On any I/O failure
        AnvilError: If the region header is malformed
        NBTError: If a chunk payload is not valid chunk NBT
    """
    path = Path(path)
    x, z = region_coordinates(path)
    total_chunks = 0
    deleted_chunks = 0

    try:
        with Region.open(path) as region:
            for chunk_x, chunk_z in chunk_positions():
                try:
                    raw = region.read_chunk(chunk_x, chunk_z)
                except AnvilError as e:
                    # Unreadable slots are left alone and not counted
                    logger.debug(f"Skipping unreadable chunk: {e}")
                    continue
                if raw is None:
                    continue

                inhabited_time = read_inhabited_time(raw)
                total_chunks += 1
                if inhabited_time <= max_inhabited_ticks:
                    region.remove_chunk(chunk_x, chunk_z)
                    deleted_chunks += 1

            region.truncate()
    except RegionProcessingError as e:
        if e.path is None:
            e.path = path
        raise
    except OSError as e:
        raise RegionIOError(e.strerror or str(e), path) from e

    return RegionResult(x=x, z=z, total_chunks=total_chunks, deleted_chunks=deleted_chunks)


class RegionCompactor:
    """
    Compacts all region files of a world.

    Region files are fanned out over a fixed-size thread pool, one file per
    worker at a time. Chunk counts are aggregated under a lock and every file
    produces exactly one ProcessedRegion update. Closing the update stream
    stops new files from being started; files already in progress finish.
    """

    def __init__(
        self,
        world_folder: str,
        max_inhabited_time: int,
        thread_count: int | None = None,
        log_level: str = "INFO",
        progress_interval: float = 30,
    ):
        """
        Initialize the compactor.

        Args:
            world_folder: Folder containing the world (level.dat, region/, ...)
            max_inhabited_time: Chunks inhabited for at most this many seconds are deleted
            thread_count: Worker threads (default: number of CPUs)
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
            progress_interval: Seconds between progress log lines

        Raises:
            ValueError: If invalid parameters are provided
        """
        if max_inhabited_time < 0:
            raise ValueError(f"max_inhabited_time must be >= 0, got {max_inhabited_time}")

        if thread_count is None:
            thread_count = os.cpu_count() or 1
        if thread_count < 1:
            raise ValueError(f"thread_count must be >= 1, got {thread_count}")

        if progress_interval <= 0:
            raise ValueError(f"progress_interval must be > 0, got {progress_interval}")

        world_path = Path(world_folder)
        if not world_path.is_absolute():
            world_path = world_path.resolve()

        self.world_folder = world_path
        self.max_inhabited_time = int(max_inhabited_time)
        self.max_inhabited_ticks = seconds_to_ticks(max_inhabited_time)
        self.thread_count = thread_count
        self.progress_interval = progress_interval

        # Statistics
        self.stats = {
            "regions_total": 0,
            "regions_processed": 0,
            "regions_failed": 0,
            "chunks_total": 0,
            "chunks_deleted": 0,
        }
        self.stats_lock = asyncio.Lock()

        # Set once the consumer is seen to have disconnected
        self.cancelled = False

        self.logger = setup_logging("lessanvil", log_level)

    async def update_stats(self, **kwargs) -> None:
        """Thread-safe update of statistics."""
        async with self.stats_lock:
            for key, value in kwargs.items():
                if key in self.stats:
                    self.stats[key] += value

    async def process_region(self, executor: Executor, region: RegionFile, stream: UpdateStream) -> None:
        """
        Compact one region file on the worker pool and report its outcome.

        Args:
            executor: Worker pool running the blocking region I/O
            region: Region file to process
            stream: Stream receiving the ProcessedRegion update
        """
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(
                executor, process_region_file, region.path, self.max_inhabited_ticks
            )
        except RegionProcessingError as e:
            level = "warning" if isinstance(e.__cause__, PermissionError) else "error"
            log_with_context(
                self.logger,
                level,
                "Failed to process region",
                {"file": str(region.path), "error": str(e), "error_type": e.kind},
            )
            await self.update_stats(regions_processed=1, regions_failed=1)
            update = ProcessedRegion(region=region, error=e)
        except Exception as e:
            log_with_context(
                self.logger,
                "error",
                "Unexpected exception while processing region",
                {"file": str(region.path), "error": str(e), "error_type": type(e).__name__},
            )
            await self.update_stats(regions_processed=1, regions_failed=1)
            error = RegionProcessingError(f"{type(e).__name__}: {e}", region.path)
            update = ProcessedRegion(region=region, error=error)
        else:
            await self.update_stats(
                regions_processed=1,
                chunks_total=result.total_chunks,
                chunks_deleted=result.deleted_chunks,
            )
            self.logger.debug(
                f"Processed r.{result.x}.{result.z}: deleted {result.deleted_chunks} of {result.total_chunks} chunks"
            )
            update = ProcessedRegion(region=region, result=result)

        if not stream.send(update):
            self.cancelled = True

    async def _dispatch(self, regions: list[RegionFile], stream: UpdateStream) -> None:
        """
        Process regions keeping at most thread_count files in flight.

        New files are only started while the stream is still connected.
        """
        remaining = list(regions)
        remaining.reverse()
        active_tasks: set[asyncio.Task] = set()

        with ThreadPoolExecutor(max_workers=self.thread_count, thread_name_prefix="lessanvil") as executor:
            while remaining or active_tasks:
                while len(active_tasks) < self.thread_count and remaining and not self.cancelled:
                    if stream.closed:
                        self.cancelled = True
                        break
                    region = remaining.pop()
                    active_tasks.add(asyncio.create_task(self.process_region(executor, region, stream)))

                if self.cancelled and not active_tasks:
                    break

                done, active_tasks = await asyncio.wait(active_tasks, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    # process_region reports its own failures; anything here is a bug
                    task.result()

    async def _background_progress_reporter(self) -> None:
        """Log progress every progress_interval seconds until cancelled."""
        while True:
            await asyncio.sleep(self.progress_interval)
            async with self.stats_lock:
                progress = dict(self.stats)
            log_with_context(self.logger, "info", "Progress update", progress)

    async def compact(self, stream: UpdateStream | None = None) -> Report:
        """
        Main compaction operation.

        Sends Starting, one ProcessedRegion per region file and, unless the
        consumer disconnected, Finished. The stream is always ended.

        Args:
            stream: Stream receiving updates (a private one is used if omitted)

        Returns:
            The run report, also when the run was cancelled

        Raises:
            WorldFolderNotFoundError: If the world folder does not exist
        """
        if stream is None:
            stream = UpdateStream()

        try:
            return await self._compact(stream)
        finally:
            stream.end()

    async def _compact(self, stream: UpdateStream) -> Report:
        start_time = time.monotonic()

        log_with_context(
            self.logger,
            "info",
            "Starting region compaction",
            {
                "version": __version__,
                "world_folder": str(self.world_folder),
                "max_inhabited_time": self.max_inhabited_time,
                "max_inhabited_ticks": self.max_inhabited_ticks,
                "thread_count": self.thread_count,
            },
        )

        if not await aiofiles.os.path.isdir(self.world_folder):
            log_with_context(
                self.logger, "error", "World folder not found", {"world_folder": str(self.world_folder)}
            )
            raise WorldFolderNotFoundError(self.world_folder)

        regions = await collect_region_files(self.world_folder)
        size_before = await async_directory_size(self.world_folder)
        self.stats["regions_total"] = len(regions)

        if not stream.send(Starting(total_files=len(regions))):
            self.cancelled = True

        progress_task = asyncio.create_task(self._background_progress_reporter())
        try:
            await self._dispatch(regions, stream)
        finally:
            progress_task.cancel()
            try:
                await progress_task
            except asyncio.CancelledError:
                pass  # Expected

        size_after = await async_directory_size(self.world_folder)
        if size_after > size_before:
            log_with_context(
                self.logger,
                "warning",
                "World folder grew during compaction",
                {"size_before": size_before, "size_after": size_after},
            )

        report = Report(
            time_taken=time.monotonic() - start_time,
            total_freed_space=freed_space(size_before, size_after),
            total_regions=self.stats["regions_processed"],
            total_chunks=self.stats["chunks_total"],
            total_deleted_chunks=self.stats["chunks_deleted"],
            failed_regions=self.stats["regions_failed"],
            cancelled=self.cancelled,
        )

        if self.cancelled:
            log_with_context(
                self.logger,
                "warning",
                "Compaction cancelled",
                {"regions_processed": self.stats["regions_processed"], "regions_total": len(regions)},
            )
        elif not stream.send(Finished(report=report)):
            self.cancelled = True

        elapsed = report.time_taken
        final_stats = {
            "duration_seconds": round(elapsed, 2),
            "regions_total": report.total_regions,
            "regions_processed": self.stats["regions_processed"],
            "regions_failed": report.failed_regions,
            "chunks_total": report.total_chunks,
            "chunks_deleted": report.total_deleted_chunks,
            "regions_per_second": round(self.stats["regions_processed"] / elapsed, 2) if elapsed > 0 else 0,
            "mb_freed": round(report.total_freed_space / (1024 * 1024), 2),
            "peak_memory_mb": round(get_memory_usage_mb(), 1),
            "cancelled": report.cancelled,
        }
        if self.logger.isEnabledFor(10):  # 10 = DEBUG level
            final_stats.update({"size_before": size_before, "size_after": size_after})

        log_with_context(self.logger, "info", "Compaction completed", final_stats)

        return report


def execute(
    world_folder: str,
    max_inhabited_time: int,
    thread_count: int | None = None,
    log_level: str = "INFO",
) -> UpdateStream:
    """
    Start compacting a world in the background.

    Args:
        world_folder: Folder containing the world
        max_inhabited_time: Chunks inhabited for at most this many seconds are deleted
        thread_count: Worker threads (default: number of CPUs)
        log_level: Logging level

    Returns:
        The stream of updates. Closing it cancels the run.

    Raises:
        WorldFolderNotFoundError: If the world folder does not exist
        ValueError: If invalid parameters are provided
        WorkerPoolError: If the background worker could not be started
    """
    compactor = RegionCompactor(
        world_folder=world_folder,
        max_inhabited_time=max_inhabited_time,
        thread_count=thread_count,
        log_level=log_level,
    )

    if not compactor.world_folder.is_dir():
        raise WorldFolderNotFoundError(compactor.world_folder)

    stream = UpdateStream()

    def _run() -> None:
        try:
            asyncio.run(compactor.compact(stream))
        except Exception as e:
            log_with_context(
                compactor.logger,
                "error",
                "Compaction aborted",
                {"error": str(e), "error_type": type(e).__name__},
            )
        finally:
            stream.end()

    thread = threading.Thread(target=_run, name="lessanvil-compactor", daemon=True)
    try:
        thread.start()
    except RuntimeError as e:
        raise WorkerPoolError(f"Failed to start compaction worker: {e}") from e

    return stream


async def async_main(
    world_folder: str,
    max_inhabited_time: int,
    thread_count: int | None = None,
    log_level: str = "INFO",
    stream: UpdateStream | None = None,
) -> Report:
    """
    Async entry point for the compactor.

    Args:
        world_folder: Folder containing the world
        max_inhabited_time: Chunks inhabited for at most this many seconds are deleted
        thread_count: Worker threads (default: number of CPUs)
        log_level: Logging level
        stream: Optional stream receiving updates

    Returns:
        The run report
    """
    compactor = RegionCompactor(
        world_folder=world_folder,
        max_inhabited_time=max_inhabited_time,
        thread_count=thread_count,
        log_level=log_level,
    )

    return await compactor.compact(stream)
