import asyncio
import sys
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles

if TYPE_CHECKING:
    from voice_recorder.context import Context

from voice_recorder.services.manager import BaseAsyncLoggingService

# -------------------------------------------------------------- #
# Async Logging Service
# -------------------------------------------------------------- #


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_STOP = None


def default_log_filename(use_timestamp: bool) -> str:
    """recorder_2025-11-03_14-30-45.log, or recorder.log without a timestamp."""
    if not use_timestamp:
        return "recorder.log"
    return f"recorder_{datetime.now().strftime('%Y-%m-%d_%H-%M-%S')}.log"


class AsyncLoggingService(BaseAsyncLoggingService):
    """
    Recorder log, written to disk by a single background task.

    Callers only enqueue formatted lines, so logging from the voice pipeline
    never waits on file I/O. Lines reach the file in the order they were
    logged. on_close() drains everything still queued before returning.
    """

    def __init__(
        self,
        context: "Context",
        log_dir: str = "logs",
        log_file: str | None = None,
        use_timestamp: bool = True,
        console_output: bool = True,
        min_level: str = "DEBUG",
    ):
        """
        Args:
            context: Application context
            log_dir: Folder for the log file (created on start)
            log_file: File name; generated from use_timestamp when None
            use_timestamp: Put the start time in the generated file name
            console_output: Echo every line to stdout
            min_level: Lowest level that is kept, one of LOG_LEVELS
        """
        super().__init__(context)

        level = min_level.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"min_level must be one of {LOG_LEVELS}, got {min_level!r}")
        self._min_rank = LOG_LEVELS.index(level)

        self.min_level = level
        self.console_output = console_output
        self.log_dir = Path(log_dir)
        self.log_file = log_file or default_log_filename(use_timestamp)
        self.log_path = self.log_dir / self.log_file

        self._lines: asyncio.Queue[str | None] = asyncio.Queue()
        self._writer: asyncio.Task | None = None

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services) -> None:
        await super().on_start(services)

        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._writer = asyncio.create_task(self._write_lines())

        await self.info(f"AsyncLoggingService started, writing to {self.log_path}")

    async def on_close(self) -> None:
        await super().on_close()

        if self._writer is None:
            return

        # Writer exits after everything queued before the marker
        await self._lines.put(_STOP)
        await self._writer
        self._writer = None

    # -------------------------------------------------------------- #
    # Public Logging Methods
    # -------------------------------------------------------------- #

    async def log(self, message: str, level: str = "INFO") -> None:
        """Queue one line at the given level (dropped below min_level)."""
        if LOG_LEVELS.index(level) < self._min_rank:
            return
        await self._lines.put(f"[{datetime.now().isoformat()}] [{level}] {message}")

    async def debug(self, message: str) -> None:
        await self.log(message, "DEBUG")

    async def info(self, message: str) -> None:
        await self.log(message, "INFO")

    async def warning(self, message: str) -> None:
        await self.log(message, "WARNING")

    async def error(self, message: str) -> None:
        await self.log(message, "ERROR")

    async def critical(self, message: str) -> None:
        await self.log(message, "CRITICAL")

    # -------------------------------------------------------------- #
    # Private Methods
    # -------------------------------------------------------------- #

    async def _write_lines(self) -> None:
        while True:
            line = await self._lines.get()
            if line is _STOP:
                return

            # Batch whatever else is already waiting into one append
            batch = [line]
            while not self._lines.empty():
                queued = self._lines.get_nowait()
                if queued is _STOP:
                    await self._append(batch)
                    return
                batch.append(queued)

            await self._append(batch)

    async def _append(self, lines: list[str]) -> None:
        text = "\n".join(lines) + "\n"

        if self.console_output:
            print(text, end="", file=sys.stdout, flush=True)

        try:
            async with aiofiles.open(self.log_path, mode="a", encoding="utf-8") as f:
                await f.write(text)
        except OSError as e:
            print(f"[ERROR] Failed to write to log file {self.log_path}: {e}", file=sys.stderr)
