from __future__ import annotations

import asyncio
import os
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from voice_recorder.context import Context

from voice_recorder.services.discord_recorder.pcm import DiscordRecorderConstants
from voice_recorder.services.manager import BaseRecordingFileServiceManager

STAGING_FOLDER = "temp"


def sanitize_filename_part(value: str) -> str:
    """Keep a display name from escaping the recordings folder."""
    cleaned = value.replace("/", "_").replace("\\", "_").replace("\x00", "")
    return cleaned.strip() or "unknown"


def recording_filename(guild_id: str, part: str, started_at_ms: int, extension: str) -> str:
    """{guildId}-{part}-{startTimestampMillis}.{extension}"""
    return f"{guild_id}-{sanitize_filename_part(part)}-{started_at_ms}.{extension}"


def _purge_folder(folder: str) -> list[tuple[str, OSError]]:
    """Unlink every file and symlink directly in folder. Returns what could not be removed."""
    failures = []
    with os.scandir(folder) as entries:
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                continue
            try:
                os.unlink(entry.path)
            except OSError as e:
                failures.append((entry.path, e))
    return failures


# -------------------------------------------------------------- #
# Recording File Manager Service
# -------------------------------------------------------------- #


class RecordingFileManagerService(BaseRecordingFileServiceManager):
    """
    Owns the recordings folder and its staging subfolder.

    Layout:
        <recording_storage_path>/{guildId}-{displayName}-{startTimestampMillis}.mp3
        <recording_storage_path>/temp/{guildId}-{speakerId}-{startTimestampMillis}.pcm

    Staging files only live while a speaker is recorded. Anything left in
    temp/ when the service closes belonged to a recording that never
    finished and is removed.
    """

    def __init__(self, context: Context, recording_storage_path: str):
        super().__init__(context)
        self.recording_storage_path = recording_storage_path
        self.staging_path = os.path.join(recording_storage_path, STAGING_FOLDER)

    async def on_start(self, services):
        await super().on_start(services)

        def make_folders():
            os.makedirs(self.staging_path, exist_ok=True)

        # Creating temp/ also creates the recordings root
        await asyncio.get_running_loop().run_in_executor(None, make_folders)
        await self.services.logging_service.info(
            f"Recordings folder ready at {os.path.abspath(self.recording_storage_path)}"
        )

    async def on_close(self):
        loop = asyncio.get_running_loop()
        try:
            failures = await loop.run_in_executor(None, _purge_folder, self.staging_path)
        except FileNotFoundError:
            return

        for path, error in failures:
            await self.services.logging_service.error(
                f"FILE ERROR: Could not purge staging file - "
                f"Path: {path}, Error Type: {type(error).__name__}, Details: {error}"
            )

    # -------------------------------------------------------------- #
    # Paths
    # -------------------------------------------------------------- #

    def get_recordings_path(self) -> str:
        return self.recording_storage_path

    def get_temporary_storage_path(self) -> str:
        return os.path.abspath(self.staging_path)

    def build_output_path(self, guild_id: str, display_name: str, started_at_ms: int) -> str:
        name = recording_filename(
            guild_id, display_name, started_at_ms, DiscordRecorderConstants.OUTPUT_EXTENSION
        )
        return os.path.join(self.recording_storage_path, name)

    def build_staging_path(self, guild_id: str, speaker_id: str, started_at_ms: int) -> str:
        name = recording_filename(
            guild_id, speaker_id, started_at_ms, DiscordRecorderConstants.STAGING_EXTENSION
        )
        return os.path.join(self.staging_path, name)

    # -------------------------------------------------------------- #
    # Deletes
    # -------------------------------------------------------------- #

    async def delete_staging_file(self, staging_path: str) -> bool:
        return await self._remove(staging_path, "staging")

    async def delete_output_file(self, output_path: str) -> bool:
        return await self._remove(output_path, "output")

    async def _remove(self, path: str, kind: str) -> bool:
        # A file that is already gone counts as removed
        try:
            await asyncio.get_running_loop().run_in_executor(None, os.remove, path)
        except FileNotFoundError:
            return True
        except OSError as e:
            await self.services.logging_service.error(
                f"FILE ERROR: Failed to delete {kind} file - "
                f"Path: {path}, Error Type: {type(e).__name__}, Details: {e}"
            )
            return False

        await self.services.logging_service.debug(f"Removed {kind} file {path}")
        return True
