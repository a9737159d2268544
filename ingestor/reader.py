"""Access-log cursor with truncation-in-place rotation."""

import logging
import os

import aiofiles

from ingestor.errors import SourceFileError

logger = logging.getLogger(__name__)

# Ceiling above which the log is discarded unread
DEFAULT_MAX_LOG_SIZE = 1024 * 1024 * 1024


class LogFileCursor:
    """Owns the open handle to the nginx access log.

    nginx keeps its own append-mode handle on the same inode, so the file is
    never renamed or recreated. Once everything written so far has been
    consumed it is truncated in place and reopened, which reclaims the space
    while leaving the writer's handle valid.

    Handles:
    - File not yet existing (ensure_open is a no-op until it appears)
    - Partial trailing lines (held back until the newline arrives)
    - Runaway growth (oversize guard truncates without reading)
    """

    def __init__(self, path: str, max_size: int = DEFAULT_MAX_LOG_SIZE):
        self._path = path
        self._max_size = max_size
        self._file = None
        self._has_read = False
        self._partial = b""

    @property
    def path(self) -> str:
        return self._path

    @property
    def is_open(self) -> bool:
        return self._file is not None

    @property
    def has_read(self) -> bool:
        """True when content was consumed since the last truncation."""
        return self._has_read

    @property
    def has_partial_line(self) -> bool:
        return bool(self._partial)

    async def ensure_open(self) -> bool:
        """Open the log for read+write if it exists. Returns True if open."""
        if self._file is not None:
            return True
        if not os.path.exists(self._path):
            return False
        try:
            self._file = await aiofiles.open(self._path, "r+b")
        except OSError as exc:
            raise SourceFileError(f"Cannot open {self._path}: {exc}") from exc
        logger.debug("Opened %s", self._path)
        return True

    async def read_available(self) -> bytes:
        """Read everything appended since the last read or truncation."""
        if not await self.ensure_open():
            raise SourceFileError(f"Log file {self._path} does not exist")

        try:
            size = os.fstat(self._file.fileno()).st_size
            if size > self._max_size:
                logger.error(
                    "Log file %s is %d bytes (limit %d), discarding unread",
                    self._path, size, self._max_size,
                )
                self._partial = b""
                await self._truncate_and_reopen()
                return b""

            data = await self._file.read()
        except OSError as exc:
            raise SourceFileError(f"Cannot read {self._path}: {exc}") from exc

        if data:
            self._has_read = True
        return data

    def split_lines(self, data: bytes) -> list[str]:
        """Decode *data* into complete lines.

        A trailing fragment without a newline is kept undecoded and prepended
        to the next chunk, so a character split across reads survives.
        """
        chunks = (self._partial + data).split(b"\n")
        self._partial = chunks.pop()
        lines = (c.decode("utf-8", errors="replace").rstrip("\r") for c in chunks)
        return [line for line in lines if line.strip()]

    async def reclaim_if_idle(self) -> bool:
        """Truncate and reopen after an empty read. Returns True if truncated.

        Does nothing unless content was consumed since the last truncation, or
        while a partial line is still waiting for its newline.
        """
        if not self._has_read or self._partial or self._file is None:
            return False
        try:
            await self._truncate_and_reopen()
        except OSError as exc:
            raise SourceFileError(f"Cannot truncate {self._path}: {exc}") from exc
        logger.debug("Truncated %s after consuming its content", self._path)
        return True

    async def _truncate_and_reopen(self):
        await self._file.truncate(0)
        await self.close()
        self._has_read = False
        await self.ensure_open()

    async def close(self):
        """Close the current handle."""
        if self._file is not None:
            try:
                await self._file.close()
            finally:
                self._file = None
