from __future__ import annotations

import asyncio
import contextlib
import enum
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from voice_recorder.services.discord_recorder.decoder import DecoderFactory, OpusDecoderAdapter
from voice_recorder.services.discord_recorder.exceptions import (
    SubscriptionError,
    TranscodeError,
    WriteError,
)
from voice_recorder.services.discord_recorder.staging import PCMStagingSink
from voice_recorder.services.discord_recorder.transport import (
    AudioSubscription,
    BaseVoiceTransport,
    EndBehavior,
)

if TYPE_CHECKING:
    from voice_recorder.services.manager import ServicesManager

# -------------------------------------------------------------- #
# Speaker Stream
# -------------------------------------------------------------- #


class SpeakerState(enum.Enum):
    STARTING = "starting"
    CAPTURING = "capturing"
    STOPPING = "stopping"
    ERROR_STOPPING = "error_stopping"
    FINALIZED = "finalized"


class SpeakerStream:
    """
    Records one speaker in one guild.

    Owns its subscription, decoder and staging sink, and a single pump task
    that moves frames between them in arrival order:

        subscription -> OpusDecoderAdapter -> PCMStagingSink -> ffmpeg (on stop)

    Lifecycle:
        STARTING -> CAPTURING -> STOPPING -> FINALIZED
        STARTING | CAPTURING -> ERROR_STOPPING -> FINALIZED

    Decode and write failures abandon the output. A failing audio source keeps
    whatever was captured before it failed.
    """

    def __init__(
        self,
        guild_id: str,
        speaker_id: str,
        display_name: str,
        transport: BaseVoiceTransport | None,
        services: ServicesManager,
        decoder_factory: DecoderFactory | None = None,
        on_error: Callable[[SpeakerStream], None] | None = None,
        started_at_ms: int | None = None,
    ):
        self.guild_id = guild_id
        self.speaker_id = speaker_id
        self.display_name = display_name
        self.transport = transport
        self.services = services
        self.started_at_ms = (
            started_at_ms if started_at_ms is not None else int(time.time() * 1000)
        )

        self.state = SpeakerState.STARTING
        self.error: Exception | None = None
        self.output_path: str | None = None

        self._decoder_factory = decoder_factory
        self._on_error = on_error

        self._decoder: OpusDecoderAdapter | None = None
        self._sink: PCMStagingSink | None = None
        self._subscription: AudioSubscription | None = None

        self._abandon = False
        self._start_task: asyncio.Future | None = None
        self._pump_task: asyncio.Task | None = None
        self._finalize_task: asyncio.Future | None = None

    def __repr__(self) -> str:
        return (
            f"SpeakerStream(guild={self.guild_id}, speaker={self.speaker_id}, "
            f"name={self.display_name!r}, state={self.state.name})"
        )

    # -------------------------------------------------------------- #
    # Properties
    # -------------------------------------------------------------- #

    @property
    def staging_path(self) -> str | None:
        return self._sink.path if self._sink else None

    @property
    def bytes_written(self) -> int:
        return self._sink.bytes_written if self._sink else 0

    @property
    def duration_ms(self) -> int:
        return self._sink.duration_ms if self._sink else 0

    # -------------------------------------------------------------- #
    # Lifecycle Methods
    # -------------------------------------------------------------- #

    async def start(self) -> None:
        """
        Subscribe to the speaker's audio and begin capturing.

        Raises:
            SubscriptionError: If the live source could not be established
            DecodeError: If no decoder could be created
            WriteError: If the staging file could not be opened
        """
        if self._start_task is None:
            self._start_task = asyncio.ensure_future(self._start())
        await asyncio.shield(self._start_task)

    async def stop(self) -> str | None:
        """
        Drive the stream to FINALIZED.

        The finalize sequence runs once; concurrent and repeated callers all
        receive the same result.

        Returns:
            Path of the MP3 recording, or None if nothing was produced
        """
        if self._finalize_task is None:
            self._finalize_task = asyncio.ensure_future(self._finalize())
        return await asyncio.shield(self._finalize_task)

    # -------------------------------------------------------------- #
    # Private Methods
    # -------------------------------------------------------------- #

    async def _start(self) -> None:
        if self.state is not SpeakerState.STARTING:
            raise SubscriptionError(f"Speaker stream is already {self.state.name.lower()}")

        files = self.services.recording_file_service_manager

        try:
            self._decoder = OpusDecoderAdapter(self._decoder_factory)

            if self.transport is None:
                raise SubscriptionError(f"No voice connection attached for guild {self.guild_id}")
            self._subscription = self.transport.subscribe(self.speaker_id, EndBehavior.MANUAL)

            self._sink = PCMStagingSink(
                files.build_staging_path(self.guild_id, self.speaker_id, self.started_at_ms)
            )
            await self._sink.open()
        except Exception as e:
            await self._abort_start(e)
            raise

        self.state = SpeakerState.CAPTURING
        self._pump_task = asyncio.create_task(self._pump())

        await self.services.logging_service.info(
            f"Started recording speaker {self.display_name} ({self.speaker_id}) "
            f"in guild {self.guild_id} -> {self._sink.path}"
        )

    async def _abort_start(self, error: Exception) -> None:
        self.error = error

        if self._subscription is not None:
            self._subscription.unsubscribe()
        if self._decoder is not None:
            self._decoder.close()
        if self._sink is not None:
            await self._sink.discard()

        self.state = SpeakerState.FINALIZED

        await self.services.logging_service.error(
            f"CRITICAL RECORDING ERROR: Failed to start speaker - "
            f"Guild: {self.guild_id}, Speaker: {self.speaker_id}, "
            f"Error Type: {type(error).__name__}, Details: {str(error)}"
        )

    async def _pump(self) -> None:
        try:
            async for frame in self._subscription:
                pcm = self._decoder.decode(frame)
                if pcm:
                    await self._sink.write(pcm)
        except SubscriptionError as e:
            await self._fail(e, abandon=False)
        except Exception as e:
            # DecodeError, WriteError or a broken stage
            await self._fail(e, abandon=True)

    async def _fail(self, error: Exception, abandon: bool) -> None:
        """Record a capture error and hand the stop over to the owner."""
        self.error = error
        self._abandon = self._abandon or abandon

        # Stops the transport from routing frames for this speaker
        if self._subscription is not None:
            self._subscription.unsubscribe()

        notify = self.state in (SpeakerState.STARTING, SpeakerState.CAPTURING)
        if notify:
            self.state = SpeakerState.ERROR_STOPPING

        await self.services.logging_service.error(
            f"CRITICAL RECORDING ERROR: Speaker capture failed - "
            f"Guild: {self.guild_id}, Speaker: {self.speaker_id}, "
            f"Error Type: {type(error).__name__}, Details: {str(error)}, "
            f"Output: {'abandoned' if self._abandon else 'kept'}"
        )

        if notify and self._on_error is not None:
            self._on_error(self)

    async def _finalize(self) -> str | None:
        if self._start_task is not None:
            with contextlib.suppress(Exception):
                await self._start_task

        if self.state is SpeakerState.FINALIZED:
            return None

        if self.state in (SpeakerState.STARTING, SpeakerState.CAPTURING):
            self.state = SpeakerState.STOPPING

        try:
            if self._sink is None:
                return None

            # Unsubscribe first; frames already queued are still drained
            self._subscription.unsubscribe()
            if self._pump_task is not None:
                await self._pump_task

            tail = self._decoder.close()
            if tail and not self._abandon:
                try:
                    await self._sink.write(tail)
                except WriteError as e:
                    await self._fail(e, abandon=True)

            try:
                await self._sink.close()
            except WriteError as e:
                await self._fail(e, abandon=True)

            if self._abandon:
                await self._sink.discard()
                await self.services.logging_service.warning(
                    f"Discarded recording for speaker {self.display_name} ({self.speaker_id}) "
                    f"in guild {self.guild_id}"
                )
                return None

            output_path = self.services.recording_file_service_manager.build_output_path(
                self.guild_id, self.display_name, self.started_at_ms
            )
            try:
                self.output_path = await self.services.ffmpeg_service_manager.transcode_pcm_to_mp3(
                    self._sink.path, output_path
                )
            except TranscodeError as e:
                self.error = e
                await self.services.logging_service.error(
                    f"CRITICAL RECORDING ERROR: Transcode failed - "
                    f"Guild: {self.guild_id}, Speaker: {self.speaker_id}, "
                    f"Error Type: {type(e).__name__}, Details: {str(e)}"
                )
                return None

            await self.services.logging_service.info(
                f"Saved recording for speaker {self.display_name} ({self.speaker_id}): "
                f"{self.output_path} ({self.duration_ms} ms)"
            )
            return self.output_path
        finally:
            self.state = SpeakerState.FINALIZED
