import ctypes.util
from collections.abc import Callable
from typing import Protocol

import discord

from voice_recorder.services.discord_recorder.exceptions import DecodeError
from voice_recorder.services.discord_recorder.pcm import frame_aligned_length

# -------------------------------------------------------------- #
# Decoder Backend
# -------------------------------------------------------------- #


class OpusFrameDecoder(Protocol):
    """Anything with the `discord.opus.Decoder.decode` signature."""

    def decode(self, data: bytes | None, *, fec: bool = False) -> bytes: ...


DecoderFactory = Callable[[], OpusFrameDecoder]


def ensure_opus_loaded() -> None:
    """Load libopus for py-cord if it is not loaded yet."""
    if discord.opus.is_loaded():
        return

    # py-cord only auto-loads opus on Windows
    for name in (ctypes.util.find_library("opus"), "libopus.so.0", "libopus.0.dylib"):
        if not name:
            continue
        try:
            discord.opus.load_opus(name)
        except OSError:
            continue
        if discord.opus.is_loaded():
            return

    raise DecodeError("libopus is not available; install the system opus library")


def default_decoder_factory() -> OpusFrameDecoder:
    """Create a py-cord Opus decoder (48 kHz, stereo)."""
    ensure_opus_loaded()
    return discord.opus.Decoder()


# -------------------------------------------------------------- #
# Opus Decoder Adapter
# -------------------------------------------------------------- #


class OpusDecoderAdapter:
    """
    Decodes one speaker's Opus frames into raw interleaved PCM.

    Output is s16le / 48 kHz / stereo and is handed out in whole 20ms frames
    (3840 bytes). Any remainder stays buffered until the next decode or until
    close(), which returns it exactly once.
    """

    def __init__(self, decoder_factory: DecoderFactory | None = None):
        factory = decoder_factory or default_decoder_factory
        try:
            self._decoder = factory()
        except DecodeError:
            raise
        except Exception as e:
            raise DecodeError(f"Failed to create Opus decoder: {e}") from e

        self._pending = bytearray()
        self._closed = False
        self.frames_decoded = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def decode(self, frame: bytes) -> bytes:
        """
        Decode one compressed frame.

        Args:
            frame: A single Opus packet payload

        Returns:
            Zero or more whole PCM frames, in arrival order

        Raises:
            DecodeError: If the adapter is closed or the frame is malformed
        """
        if self._closed:
            raise DecodeError("Decoder adapter is closed")
        if not frame:
            raise DecodeError("Empty Opus frame")

        try:
            pcm = self._decoder.decode(frame)
        except Exception as e:
            raise DecodeError(
                f"Malformed Opus frame #{self.frames_decoded} ({len(frame)} bytes): {e}"
            ) from e

        self.frames_decoded += 1
        self._pending.extend(pcm)

        aligned = frame_aligned_length(len(self._pending))
        if aligned == 0:
            return b""

        out = bytes(self._pending[:aligned])
        del self._pending[:aligned]
        return out

    def close(self) -> bytes:
        """Signal end-of-stream. Returns the buffered partial frame (once)."""
        if self._closed:
            return b""
        self._closed = True

        tail = bytes(self._pending)
        self._pending.clear()
        self._decoder = None
        return tail
