"""
Unit tests for the Recording File Manager Service.

Covers the output and staging layout, display-name sanitizing, best-effort
deletes, and the leftover staging purge on close.
"""

import os

import pytest

from voice_recorder.context import Context
from voice_recorder.services.recording_file_manager.manager import (
    RecordingFileManagerService,
    sanitize_filename_part,
)


@pytest.fixture
def files(services_manager):
    return services_manager.recording_file_service_manager


@pytest.mark.unit
class TestSanitizeFilenamePart:
    def test_plain_names_are_unchanged(self):
        assert sanitize_filename_part("Alice") == "Alice"
        assert sanitize_filename_part("Bob the Builder") == "Bob the Builder"

    def test_path_separators_are_replaced(self):
        assert sanitize_filename_part("../../etc/passwd") == ".._.._etc_passwd"
        assert sanitize_filename_part("a\\b") == "a_b"

    def test_empty_names_fall_back(self):
        assert sanitize_filename_part("") == "unknown"
        assert sanitize_filename_part("   ") == "unknown"
        assert sanitize_filename_part("\x00") == "unknown"


@pytest.mark.unit
class TestRecordingPaths:
    def test_output_path_layout_with_relative_root(self):
        files = RecordingFileManagerService(Context(), recording_storage_path="recordings")

        assert files.build_output_path("G1", "Alice", 1000) == os.path.join(
            "recordings", "G1-Alice-1000.mp3"
        )

    def test_staging_path_lives_under_temp(self):
        files = RecordingFileManagerService(Context(), recording_storage_path="recordings")

        assert files.build_staging_path("G1", "U1", 1000) == os.path.join(
            "recordings", "temp", "G1-U1-1000.pcm"
        )

    def test_display_name_cannot_escape_root(self):
        files = RecordingFileManagerService(Context(), recording_storage_path="recordings")

        path = files.build_output_path("G1", "../evil", 1000)

        assert os.path.dirname(path) == "recordings"

    def test_temporary_storage_path_is_absolute(self, tmp_path):
        files = RecordingFileManagerService(Context(), recording_storage_path=str(tmp_path))

        assert os.path.isabs(files.get_temporary_storage_path())
        assert files.get_recordings_path() == str(tmp_path)


@pytest.mark.unit
@pytest.mark.asyncio
class TestRecordingFileOperations:
    async def test_on_start_creates_root_and_temp(self, files, recordings_path):
        assert os.path.isdir(recordings_path)
        assert os.path.isdir(os.path.join(recordings_path, "temp"))

    async def test_delete_staging_file(self, files):
        path = files.build_staging_path("G1", "U1", 1000)
        with open(path, "wb") as f:
            f.write(b"\x00" * 16)

        assert await files.delete_staging_file(path) is True
        assert not os.path.exists(path)

    async def test_delete_missing_file_is_not_an_error(self, files):
        assert await files.delete_output_file(files.build_output_path("G1", "Nobody", 1)) is True

    async def test_delete_failure_returns_false(self, files, recordings_path):
        # A directory cannot be removed with os.remove
        directory = os.path.join(recordings_path, "not-a-file")
        os.makedirs(directory)

        assert await files.delete_output_file(directory) is False
        assert os.path.isdir(directory)

    async def test_on_close_purges_leftover_staging(self, files, recordings_path):
        leftover = files.build_staging_path("G1", "U1", 1000)
        finished = files.build_output_path("G1", "Alice", 1000)
        for path in (leftover, finished):
            with open(path, "wb") as f:
                f.write(b"\x00")

        await files.on_close()

        assert not os.path.exists(leftover)
        assert os.path.exists(finished)
