import asyncio
import os
from pathlib import Path

from logger_config import setup_logger

logger = setup_logger()


class QuotaManager:
    """Tracks the bytes stored below a repository root against a ceiling."""

    def __init__(self, path: Path, max_size: int):
        self.path = Path(path)
        self.max_size = max_size
        self.space_used: int = 0
        self.lock = asyncio.Lock()

    def initialize(self):
        """Calculate current usage by walking the tree."""
        logger.info("Initializing quota (can take a while)...")
        if not self.path.is_dir():
            raise RuntimeError(f"Data directory {self.path} does not exist")

        space_used = 0
        for folder_path, _, files in os.walk(self.path):
            for file in files:
                try:
                    space_used += (Path(folder_path) / file).stat().st_size
                except FileNotFoundError:
                    # removed while walking
                    continue
        self.space_used = space_used

        logger.info(f"Quota initialized, currently using {self.space_used / (1024*1024*1024):.2f} GiB")

    @property
    def space_remaining(self) -> int:
        return max(self.max_size - self.space_used, 0)

    async def admit(self, size: int) -> bool:
        """Reserve size bytes if that keeps usage within the ceiling.

        Returns False, reserving nothing, when the ceiling would be exceeded.
        """
        async with self.lock:
            if self.space_used + size > self.max_size:
                used = self.space_used
                admitted = False
            else:
                self.space_used += size
                used = self.space_used
                admitted = True
        if not admitted:
            logger.info(f"Quota exceeded: {used} of {self.max_size} bytes used, {size} more requested")
        return admitted

    async def release(self, size: int):
        """Give back size bytes, after a delete or an aborted upload."""
        async with self.lock:
            self.space_used = max(self.space_used - size, 0)
            current = self.space_used
        logger.debug(f"Quota released {size} bytes, now using {current}")
