"""
Raw grid download cache.

One file per (variable, time window), named deterministically from those
two keys. Presence of the file short-circuits the download. Files are
written to a temporary name in the cache directory and renamed into place,
so an interrupted download never leaves a partial file under the final name.
"""

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Iterable, Optional, Tuple

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class GridCache:
    """
    Manages the local cache of downloaded NetCDF grids.

    Attributes:
        cache_dir: Directory where cache files are stored
        enabled: Whether cached files are reused. When disabled every request
            goes to the network; responses are still written under cache_dir
            so they can be parsed.
    """

    suffix = ".nc"

    def __init__(self, cache_dir: Optional[Path] = None, enabled: bool = True):
        """
        Initialize grid cache.

        Args:
            cache_dir: Directory for cache files. If None, uses .grid_cache/ in cwd
            enabled: Whether cached files are reused (default: True)
        """
        if cache_dir is None:
            cache_dir = Path.cwd() / ".grid_cache"

        self.cache_dir = Path(cache_dir)
        self.enabled = enabled
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Grid cache initialized at: {self.cache_dir}")

    @staticmethod
    def cache_key(variable: str, time_range: Tuple[str, str]) -> str:
        """Deterministic file stem for a variable and time range."""
        start, end = time_range
        return _UNSAFE.sub("-", f"{variable}_{start}_{end}")

    def get_cache_path(self, variable: str, time_range: Tuple[str, str]) -> Path:
        return self.cache_dir / f"{self.cache_key(variable, time_range)}{self.suffix}"

    def lookup(self, variable: str, time_range: Tuple[str, str]) -> Optional[Path]:
        """
        Return the cached file for a request, or None on a miss.
        """
        if not self.enabled:
            return None
        path = self.get_cache_path(variable, time_range)
        if path.exists():
            logger.debug(f"Cache hit: {path.name}")
            return path
        logger.debug(f"Cache miss: {path.name}")
        return None

    def write(
        self, variable: str, time_range: Tuple[str, str], chunks: Iterable[bytes]
    ) -> Path:
        """
        Atomically write downloaded bytes to the cache.

        Args:
            variable: Variable name of the request
            time_range: (start, end) of the request
            chunks: Iterable of byte chunks (e.g. response.iter_content())

        Returns:
            Path of the completed cache file
        """
        final_path = self.get_cache_path(variable, time_range)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{final_path.stem}.", suffix=".part", dir=self.cache_dir
        )
        tmp_path = Path(tmp_name)
        size = 0
        try:
            with os.fdopen(fd, "wb") as f:
                for chunk in chunks:
                    if chunk:
                        f.write(chunk)
                        size += len(chunk)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, final_path)
        except BaseException:
            if tmp_path.exists():
                tmp_path.unlink()
            raise

        logger.info(f"Cached {final_path.name} ({size / (1024 * 1024):.1f} MB)")
        return final_path

    def invalidate(self, variable: str, time_range: Tuple[str, str]) -> bool:
        """Remove one cached file. Returns True if something was deleted."""
        path = self.get_cache_path(variable, time_range)
        if path.exists():
            path.unlink()
            logger.debug(f"Invalidated {path.name}")
            return True
        return False

    def clear_cache(self, pattern: str = "*") -> int:
        """
        Clear cached files matching a glob pattern.

        Args:
            pattern: Glob over file stems (default: everything)

        Returns:
            Number of files deleted
        """
        deleted_count = 0

        for cache_file in self.cache_dir.glob(f"{pattern}{self.suffix}"):
            try:
                cache_file.unlink()
                deleted_count += 1
                logger.debug(f"Deleted: {cache_file.name}")
            except OSError as e:
                logger.warning(f"Failed to delete {cache_file.name}: {e}")

        logger.info(f"Cleared {deleted_count} cached grids matching '{pattern}'")
        return deleted_count

    def get_cache_stats(self) -> dict:
        """
        Get statistics about cached files.

        Returns:
            Dictionary with cache statistics
        """
        stats = {
            "cache_dir": str(self.cache_dir),
            "enabled": self.enabled,
            "cache_files": 0,
            "total_size_mb": 0,
            "files": [],
        }

        if not self.cache_dir.exists():
            return stats

        for cache_file in sorted(self.cache_dir.glob(f"*{self.suffix}")):
            size_bytes = cache_file.stat().st_size
            stats["cache_files"] += 1
            stats["total_size_mb"] += size_bytes / (1024 * 1024)
            stats["files"].append({
                "name": cache_file.name,
                "size_mb": size_bytes / (1024 * 1024),
                "mtime": cache_file.stat().st_mtime,
            })

        return stats
