import asyncio
import subprocess
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from voice_recorder.context import Context

from voice_recorder.services.discord_recorder.exceptions import TranscodeError
from voice_recorder.services.discord_recorder.pcm import DiscordRecorderConstants
from voice_recorder.services.manager import BaseFFmpegServiceManager

# -------------------------------------------------------------- #
# FFmpeg Handler
# -------------------------------------------------------------- #


class FFmpegHandler:
    """Runs the ffmpeg binary in a worker thread, one process per call."""

    def __init__(self, ffmpeg_path: str, timeout_seconds: float | None = None):
        self.ffmpeg_path = ffmpeg_path
        self.timeout_seconds = timeout_seconds

    async def _run(self, args: list[str], timeout: float | None) -> tuple[bool, str, str]:
        """
        Run ffmpeg with args off the event loop.

        Returns:
            Tuple of (success: bool, stdout: str, stderr: str). A missing
            binary or a timeout is reported as a failure, never raised.
        """
        cmd = [self.ffmpeg_path, *args]
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(
                None,
                lambda: subprocess.run(cmd, capture_output=True, text=True, timeout=timeout),
            )
        except subprocess.TimeoutExpired:
            return False, "", f"FFmpeg process timed out after {timeout}s"
        except (OSError, subprocess.SubprocessError) as e:
            return False, "", f"{type(e).__name__}: {e}"

        return result.returncode == 0, result.stdout, result.stderr

    async def validate_ffmpeg(self) -> bool:
        """Check that `ffmpeg -version` runs."""
        ok, _, _ = await self._run(["-version"], timeout=5)
        return ok

    def build_pcm_to_mp3_command(self, input_path: str, output_path: str, bitrate: str) -> list[str]:
        """Full command line for encoding a staging file."""
        pcm = DiscordRecorderConstants
        # Raw input has no header, so its format goes before -i
        input_args = [
            "-f", pcm.FFMPEG_INPUT_FORMAT,
            "-ar", str(pcm.DISCORD_SAMPLE_RATE),
            "-ac", str(pcm.DISCORD_CHANNELS),
            "-i", input_path,
        ]  # fmt: skip
        output_args = ["-codec:a", "libmp3lame", "-b:a", bitrate, "-y", output_path]

        return [self.ffmpeg_path, "-hide_banner", "-loglevel", "error", *input_args, *output_args]

    async def convert_pcm_to_mp3(
        self, input_path: str, output_path: str, bitrate: str = DiscordRecorderConstants.MP3_BITRATE
    ) -> tuple[bool, str, str]:
        """Encode raw Discord PCM as MP3. See _run() for the return value."""
        cmd = self.build_pcm_to_mp3_command(input_path, output_path, bitrate)
        return await self._run(cmd[1:], timeout=self.timeout_seconds)


# -------------------------------------------------------------- #
# FFmpeg Manager Service
# -------------------------------------------------------------- #


class FFmpegManagerService(BaseFFmpegServiceManager):
    """
    Transcodes finished speaker recordings to MP3.

    There is no job queue: each call starts its own ffmpeg process, so every
    speaker of a stopping guild is encoded at the same time.
    """

    def __init__(
        self,
        context: "Context",
        ffmpeg_path: str,
        bitrate: str = DiscordRecorderConstants.MP3_BITRATE,
        transcode_timeout_seconds: float | None = None,
    ):
        super().__init__(context)

        self.bitrate = bitrate
        self.handler = FFmpegHandler(ffmpeg_path, timeout_seconds=transcode_timeout_seconds)
        self._running: set[str] = set()

    async def on_start(self, services) -> None:
        await super().on_start(services)

        if await self.handler.validate_ffmpeg():
            await self.services.logging_service.info(
                f"FFmpegManagerService started with {self.get_ffmpeg_path()} (MP3 {self.bitrate})"
            )
        else:
            await self.services.logging_service.error(
                f"FFmpeg is not available at '{self.get_ffmpeg_path()}'; "
                f"recordings will fail to save"
            )

    async def on_close(self) -> None:
        if self._running:
            await self.services.logging_service.warning(
                f"FFmpegManagerService closing while encoding: {sorted(self._running)}"
            )
        await self.services.logging_service.info("FFmpegManagerService stopped")

    def get_ffmpeg_path(self) -> str:
        return self.handler.ffmpeg_path

    async def transcode_pcm_to_mp3(self, staging_path: str, output_path: str) -> str:
        """
        Encode one staging file, then delete it.

        Raises:
            TranscodeError: If ffmpeg failed; any partial output is removed
        """
        files = self.services.recording_file_service_manager
        log = self.services.logging_service

        await log.debug(f"Transcoding {staging_path} -> {output_path}")
        self._running.add(output_path)
        try:
            ok, stdout, stderr = await self.handler.convert_pcm_to_mp3(
                staging_path, output_path, self.bitrate
            )
        finally:
            self._running.discard(output_path)
            await files.delete_staging_file(staging_path)

        if stdout:
            await log.debug(f"FFmpeg STDOUT:\n{stdout}")

        if not ok:
            await files.delete_output_file(output_path)
            details = stderr.strip() or "unknown error"
            await log.error(
                f"CRITICAL FFMPEG ERROR: MP3 encoding failed - "
                f"Input: {staging_path}, Output: {output_path}, Details: {details}"
            )
            raise TranscodeError(f"FFmpeg failed to create {output_path}: {details}")

        if stderr:
            await log.debug(f"FFmpeg STDERR:\n{stderr}")
        await log.info(f"Encoded {output_path}")
        return output_path
