import os
import platform
from typing import TYPE_CHECKING

from dotenv import load_dotenv

if TYPE_CHECKING:
    from voice_recorder.context import Context
    from voice_recorder.services.discord_recorder.decoder import DecoderFactory

from voice_recorder.services.discord_recorder.pcm import DiscordRecorderConstants
from voice_recorder.services.logger import AsyncLoggingService
from voice_recorder.services.manager import ServicesManager

# prefer a project-local .env.local file, then fallback to any .env
load_dotenv(dotenv_path=".env.local")

# -------------------------------------------------------------- #
# Configuration Helpers
# -------------------------------------------------------------- #


def resolve_ffmpeg_path() -> str:
    """Decide the ffmpeg binary path based on environment and platform."""
    if platform.system().lower().startswith("win") or os.name == "nt":
        ffmpeg_env = os.getenv("WINDOWS_FFMPEG_PATH")
    else:
        ffmpeg_env = os.getenv("MAC_FFMPEG_PATH")

    return ffmpeg_env or "ffmpeg"


def resolve_transcode_timeout() -> float | None:
    """Read TRANSCODE_TIMEOUT_SECONDS; unset or empty means no limit."""
    value = os.getenv("TRANSCODE_TIMEOUT_SECONDS", "").strip()
    if not value:
        return None

    timeout = float(value)
    if timeout <= 0:
        raise ValueError(f"TRANSCODE_TIMEOUT_SECONDS must be positive, got {value}")
    return timeout


# -------------------------------------------------------------- #
# Constructor for Dynamic Creation of Services Manager
# -------------------------------------------------------------- #


def construct_services_manager(
    context: "Context",
    recording_storage_path: str,
    ffmpeg_path: str | None = None,
    default_logging_path: str = "logs",
    log_file: str | None = None,
    use_timestamp_logs: bool = True,
    mp3_bitrate: str | None = None,
    transcode_timeout_seconds: float | None = None,
    decoder_factory: "DecoderFactory | None" = None,
) -> ServicesManager:
    """Construct and return the services manager.

    Args:
        context: Context instance containing the bot and services
        recording_storage_path: Root folder for finished recordings (staging lives in temp/)
        ffmpeg_path: FFmpeg executable (default: from MAC_FFMPEG_PATH/WINDOWS_FFMPEG_PATH)
        default_logging_path: Directory to store log files (default: "logs")
        log_file: Specific log file name (optional, overrides use_timestamp_logs)
        use_timestamp_logs: If True and log_file is None, creates timestamped log files (default: True)
        mp3_bitrate: MP3 bitrate (default: MP3_BITRATE env var, then 128k)
        transcode_timeout_seconds: Per-file ffmpeg time limit (default: TRANSCODE_TIMEOUT_SECONDS, unbounded)
        decoder_factory: Opus decoder backend override (default: py-cord's libopus decoder)
    """
    from voice_recorder.services.discord_recorder.manager import DiscordRecorderManagerService
    from voice_recorder.services.ffmpeg_manager.manager import FFmpegManagerService
    from voice_recorder.services.recording_file_manager.manager import (
        RecordingFileManagerService,
    )

    # create logger
    logging_service = AsyncLoggingService(
        context=context,
        log_dir=default_logging_path,
        log_file=log_file,
        use_timestamp=use_timestamp_logs,
        min_level=os.getenv("LOG_LEVEL", "DEBUG"),
    )

    # -------------------------------------------------------------- #
    # Service Managers Setup
    # -------------------------------------------------------------- #

    recording_file_service_manager = RecordingFileManagerService(
        context=context, recording_storage_path=recording_storage_path
    )

    if transcode_timeout_seconds is None:
        transcode_timeout_seconds = resolve_transcode_timeout()

    ffmpeg_service_manager = FFmpegManagerService(
        context=context,
        ffmpeg_path=ffmpeg_path or resolve_ffmpeg_path(),
        bitrate=mp3_bitrate or os.getenv("MP3_BITRATE") or DiscordRecorderConstants.MP3_BITRATE,
        transcode_timeout_seconds=transcode_timeout_seconds,
    )

    # -------------------------------------------------------------- #
    # Discord Recorder Setup
    # -------------------------------------------------------------- #

    discord_recorder_service_manager = DiscordRecorderManagerService(
        context=context, decoder_factory=decoder_factory
    )

    return ServicesManager(
        context=context,
        logging_service=logging_service,
        recording_file_service_manager=recording_file_service_manager,
        ffmpeg_service_manager=ffmpeg_service_manager,
        discord_recorder_service_manager=discord_recorder_service_manager,
    )
