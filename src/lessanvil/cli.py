"""Command-line interface for lessanvil."""

import argparse
import json
import os
import sys
from pathlib import Path

from . import __version__
from .compactor import execute
from .errors import WorldFolderNotFoundError
from .logging import log_with_context, setup_logging
from .updates import Finished, ProcessedRegion, Report, Starting


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="lessanvil - Delete chunks players barely visited and shrink the region files",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "world_folder",
        nargs="?",
        help="Folder containing the world (level.dat, region/, ...) (default: .)",
    )

    parser.add_argument(
        "-w",
        "--world-folder",
        dest="world_folder_option",
        metavar="WORLD_FOLDER",
        help="Same as the positional world folder",
    )

    parser.add_argument(
        "-m",
        "--max-inhabited-time",
        type=int,
        default=int(os.getenv("LESSANVIL_MAX_INHABITED_TIME", "0")),
        help="Chunks players spent at most this many seconds in are deleted",
    )

    parser.add_argument(
        "-t",
        "--thread-count",
        type=int,
        default=int(os.getenv("LESSANVIL_THREAD_COUNT", "0") or "0") or None,
        help="Worker threads (default: number of CPUs)",
    )

    parser.add_argument(
        "--confirm",
        action="store_true",
        help="Skip the confirmation prompt. Use this with caution!",
    )

    parser.add_argument(
        "--force",
        action="store_true",
        help="Skip the checks that the folder looks like a world. Use this with caution!",
    )

    parser.add_argument(
        "--json",
        action="store_true",
        help="Print progress and the final report as JSON lines",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default=os.getenv("LESSANVIL_LOG_LEVEL", "WARNING"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level",
    )

    parser.add_argument(
        "--log-format",
        default=os.getenv("LESSANVIL_LOG_FORMAT", "text"),
        choices=["json", "text"],
        help="Format of log lines written to stderr",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"lessanvil {__version__}",
    )

    args = parser.parse_args(argv)
    if args.world_folder and args.world_folder_option and args.world_folder != args.world_folder_option:
        parser.error("world folder given twice with different values")
    args.world_folder = args.world_folder_option or args.world_folder or "."
    return args


def looks_like_world(world_folder: Path) -> bool:
    """A world folder has a level.dat and an overworld region folder."""
    return (world_folder / "level.dat").exists() and (world_folder / "region").is_dir()


def format_bytes(size: float) -> str:
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} TiB"


def format_report(report: Report) -> str:
    return (
        f"Successfully processed {report.total_regions} files in {report.time_taken:.1f}s "
        f"and freed up {format_bytes(report.total_freed_space)} "
        f"by deleting {report.total_deleted_chunks} chunks."
    )


def confirm(prompt: str) -> bool:
    print(
        "This tool will remove all chunks in which players have been less than the given amount of time.",
        file=sys.stderr,
    )
    print(
        "Warning: it works on the given world folder in place. Create a backup before continuing.",
        file=sys.stderr,
    )
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def run(args: argparse.Namespace) -> int:
    """Run a compaction for parsed arguments and return the exit code."""
    logger = setup_logging("lessanvil", args.log_level, json_format=args.log_format == "json")
    world_folder = Path(args.world_folder).resolve()

    if not args.force and not looks_like_world(world_folder):
        log_with_context(logger, "error", "Invalid world folder", {"world_folder": str(world_folder)})
        return 1

    if not args.confirm and not confirm("Do you want to continue?"):
        print("Aborting.", file=sys.stderr)
        return 1

    try:
        stream = execute(
            world_folder=str(world_folder),
            max_inhabited_time=args.max_inhabited_time,
            thread_count=args.thread_count,
            log_level=args.log_level,
        )
    except (WorldFolderNotFoundError, ValueError) as e:
        log_with_context(logger, "error", str(e), {"world_folder": str(world_folder)})
        return 1

    total_files = 0
    processed = 0
    try:
        for update in stream:
            if isinstance(update, Starting):
                total_files = update.total_files
            elif isinstance(update, ProcessedRegion):
                processed += 1
                if args.json:
                    progress = processed / total_files if total_files else 1.0
                    print(json.dumps({"processing": {"progress": progress}}), flush=True)
                elif not update.ok:
                    print(f"Skipped {update.region.path.name}: {update.error}", file=sys.stderr)
            elif isinstance(update, Finished):
                if args.json:
                    print(json.dumps({"finished": {"report": update.report.to_dict()}}), flush=True)
                else:
                    print(format_report(update.report), flush=True)
                return 0
    except KeyboardInterrupt:
        stream.close()
        print("\nAborting.", file=sys.stderr)
        stream.wait()
        return 130

    # Producer ended without a final report
    return 1


def main() -> None:
    """Main entry point for the CLI."""
    args = parse_args()
    sys.exit(run(args))


if __name__ == "__main__":
    main()
