import asyncio
import os

import aiofiles

from voice_recorder.services.discord_recorder.exceptions import WriteError
from voice_recorder.services.discord_recorder.pcm import calculate_pcm_duration_ms

# -------------------------------------------------------------- #
# PCM Staging Sink
# -------------------------------------------------------------- #


class PCMStagingSink:
    """
    Durable staging of one speaker's decoded PCM.

    Usable as an async context manager or through explicit open()/close().
    close() is idempotent and only returns once every prior write has been
    flushed and fsync'd.
    """

    def __init__(self, path: str):
        self.path = path
        self.bytes_written = 0

        self._file = None
        self._closed = False

    async def __aenter__(self) -> "PCMStagingSink":
        await self.open()
        return self

    async def __aexit__(self, *_exc) -> None:
        await self.close()

    # -------------------------------------------------------------- #
    # Properties
    # -------------------------------------------------------------- #

    @property
    def is_open(self) -> bool:
        return self._file is not None and not self._closed

    @property
    def duration_ms(self) -> int:
        return calculate_pcm_duration_ms(self.bytes_written)

    # -------------------------------------------------------------- #
    # Lifecycle
    # -------------------------------------------------------------- #

    async def open(self) -> None:
        """Create (or truncate) the staging file."""
        if self._file is not None or self._closed:
            raise WriteError(f"Staging sink already used: {self.path}")

        try:
            self._file = await aiofiles.open(self.path, mode="wb")
        except OSError as e:
            raise WriteError(
                f"Failed to open staging file - Path: {self.path}, "
                f"Error Type: {type(e).__name__}, Details: {str(e)}"
            ) from e

    async def write(self, chunk: bytes) -> None:
        """Append a PCM chunk in arrival order."""
        if not self.is_open:
            raise WriteError(f"Staging sink is not open: {self.path}")

        try:
            await self._file.write(chunk)
        except (OSError, ValueError) as e:
            raise WriteError(
                f"Failed to write staging file - Path: {self.path}, "
                f"Size: {len(chunk)} bytes, Error Type: {type(e).__name__}, Details: {str(e)}"
            ) from e

        self.bytes_written += len(chunk)

    async def close(self) -> None:
        """Flush, fsync and close. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True

        if self._file is None:
            return

        error: Exception | None = None
        try:
            await self._file.flush()
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, os.fsync, self._file.fileno())
        except (OSError, ValueError) as e:
            error = e

        try:
            await self._file.close()
        except OSError as e:
            error = error or e
        finally:
            self._file = None

        if error is not None:
            raise WriteError(
                f"Failed to close staging file - Path: {self.path}, "
                f"Error Type: {type(error).__name__}, Details: {str(error)}"
            ) from error

    async def discard(self) -> bool:
        """Best-effort removal of the staging file. Never raises."""
        try:
            await self.close()
        except WriteError:
            pass

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, os.remove, self.path)
        except FileNotFoundError:
            return True
        except OSError:
            return False
        return True
