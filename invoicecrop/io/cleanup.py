"""
Retention cleanup for upload and scratch directories.

Files older than the retention window are deleted; empty subdirectories
left behind are removed too, but never the root directory itself.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional
import time

from loguru import logger


@dataclass
class CleanupResult:
    """Outcome of one cleanup run."""
    deleted_count: int = 0
    deleted_bytes: int = 0
    failed: List[str] = field(default_factory=list)

    @property
    def deleted_mb(self) -> float:
        return self.deleted_bytes / (1024 * 1024)


def cleanup_directory(
    directory: str,
    retention_hours: float,
    result: Optional[CleanupResult] = None,
    now: Optional[float] = None,
) -> CleanupResult:
    """
    Delete files under ``directory`` not modified within ``retention_hours``.

    Args:
        directory: Directory to sweep (recursively)
        retention_hours: Age threshold in hours
        result: Accumulator to add counts to
        now: Reference timestamp (defaults to current time)

    Returns:
        CleanupResult with deleted file count and size
    """
    result = result or CleanupResult()
    root = Path(directory)

    if not root.is_dir():
        logger.warning(f"Cleanup skipped, not a directory: {directory}")
        return result

    cutoff = (now if now is not None else time.time()) - retention_hours * 3600

    # Deepest paths first so emptied directories can be removed on the way up
    for path in sorted(root.rglob("*"), key=lambda p: len(p.parts), reverse=True):
        try:
            if path.is_file():
                stat = path.stat()
                if stat.st_mtime < cutoff:
                    path.unlink()
                    result.deleted_count += 1
                    result.deleted_bytes += stat.st_size
                    logger.debug(f"Deleted expired file: {path} ({stat.st_size} bytes)")
            elif path.is_dir() and not any(path.iterdir()):
                path.rmdir()
                logger.debug(f"Removed empty directory: {path}")
        except OSError as e:
            logger.warning(f"Failed to remove {path}: {e}")
            result.failed.append(str(path))

    return result


def cleanup_expired_files(
    directories: Iterable[str],
    retention_hours: float = 24,
    now: Optional[float] = None,
) -> CleanupResult:
    """
    Sweep several directories with the same retention window.

    Args:
        directories: Directories to sweep
        retention_hours: Age threshold in hours
        now: Reference timestamp (defaults to current time)

    Returns:
        Combined CleanupResult
    """
    result = CleanupResult()
    for directory in directories:
        cleanup_directory(directory, retention_hours, result=result, now=now)

    logger.info(
        f"Cleanup finished: {result.deleted_count} files deleted, "
        f"{result.deleted_mb:.1f} MB freed"
    )
    return result
