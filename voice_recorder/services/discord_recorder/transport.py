import asyncio
import contextlib
import enum
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

import discord

from voice_recorder.services.discord_recorder.exceptions import SubscriptionError

# -------------------------------------------------------------- #
# Subscription Primitives
# -------------------------------------------------------------- #


class EndBehavior(enum.Enum):
    """When a per-speaker audio subscription ends."""

    MANUAL = "manual"  # only on unsubscribe()
    AFTER_SILENCE = "after_silence"


SpeakingStartCallback = Callable[[str], Awaitable[None]]

_END_OF_STREAM = object()


class AudioSubscription:
    """
    FIFO stream of one speaker's compressed Opus frames.

    Frames are pushed by the transport (on the event loop) and consumed with
    `async for`. Iteration ends after unsubscribe(); frames already queued at
    that point are still delivered, anything pushed later is ignored.
    """

    def __init__(
        self,
        speaker_id: str,
        end_behavior: EndBehavior = EndBehavior.MANUAL,
        on_unsubscribe: Callable[["AudioSubscription"], None] | None = None,
    ):
        self.speaker_id = speaker_id
        self.end_behavior = end_behavior
        self.frames_received = 0

        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_unsubscribe = on_unsubscribe
        self._closed = False
        self._error: Exception | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, frame: bytes) -> None:
        """Queue one frame. Ignored once the subscription is closed."""
        if self._closed:
            return
        self.frames_received += 1
        self._queue.put_nowait(frame)

    def fail(self, exc: Exception) -> None:
        """End the stream with a source error raised to the consumer."""
        if self._closed:
            return
        self._error = exc
        self._close()

    def unsubscribe(self) -> None:
        """End the stream after the frames already queued. Idempotent."""
        if self._closed:
            return
        self._close()

    def _close(self) -> None:
        self._closed = True
        self._queue.put_nowait(_END_OF_STREAM)
        if self._on_unsubscribe is not None:
            self._on_unsubscribe(self)

    def __aiter__(self) -> "AudioSubscription":
        return self

    async def __anext__(self) -> bytes:
        item = await self._queue.get()
        if item is _END_OF_STREAM:
            # keep the sentinel for any later iteration attempt
            self._queue.put_nowait(_END_OF_STREAM)
            if self._error is not None:
                error, self._error = self._error, None
                raise SubscriptionError(
                    f"Audio source failed for speaker {self.speaker_id}: {error}"
                ) from error
            raise StopAsyncIteration
        return item


# -------------------------------------------------------------- #
# Base Voice Transport
# -------------------------------------------------------------- #


class BaseVoiceTransport(ABC):
    """A guild's voice connection, as seen by the recording pipeline."""

    def __init__(self, guild_id: str):
        self.guild_id = guild_id
        self._subscriptions: dict[str, AudioSubscription] = {}

    @abstractmethod
    def is_connected(self) -> bool:
        """Check whether the underlying voice connection is usable."""
        pass

    @abstractmethod
    async def destroy(self) -> None:
        """Tear down the voice connection. Idempotent."""
        pass

    def subscribe(
        self, speaker_id: str, end_behavior: EndBehavior = EndBehavior.MANUAL
    ) -> AudioSubscription:
        """
        Open a live audio subscription for one speaker.

        Raises:
            SubscriptionError: If the connection is gone, the speaker is already
                subscribed, or the end behavior is not supported
        """
        if end_behavior is not EndBehavior.MANUAL:
            raise SubscriptionError(
                f"Unsupported end behavior {end_behavior.name}; recordings end manually"
            )
        if not self.is_connected():
            raise SubscriptionError(f"Voice connection for guild {self.guild_id} is not connected")
        if speaker_id in self._subscriptions:
            raise SubscriptionError(
                f"Speaker {speaker_id} is already subscribed in guild {self.guild_id}"
            )

        subscription = AudioSubscription(
            speaker_id, end_behavior=end_behavior, on_unsubscribe=self._release
        )
        self._subscriptions[speaker_id] = subscription
        return subscription

    def get_subscription(self, speaker_id: str) -> AudioSubscription | None:
        return self._subscriptions.get(speaker_id)

    def _release(self, subscription: AudioSubscription) -> None:
        if self._subscriptions.get(subscription.speaker_id) is subscription:
            del self._subscriptions[subscription.speaker_id]

    def _fail_all(self, exc: Exception) -> None:
        for subscription in list(self._subscriptions.values()):
            subscription.fail(exc)


# -------------------------------------------------------------- #
# Pycord Voice Transport
# -------------------------------------------------------------- #


class _NullSink(discord.sinks.Sink):
    """Placeholder sink; audio is routed per speaker by RecordingVoiceClient."""

    def write(self, data, user):
        pass


class RecordingVoiceClient(discord.VoiceClient):
    """
    VoiceClient that hands decrypted Opus packets to per-speaker routes.

    Pycord decodes received audio inside its own sink pipeline; recording
    needs the compressed frames per speaker instead, so unpack_audio() is
    intercepted on the receive thread and frames are forwarded to the event
    loop with call_soon_threadsafe.
    """

    def __init__(self, client, channel):
        super().__init__(client, channel)
        self._routes: dict[str, Callable[[bytes], None]] = {}
        self._announced: set[str] = set()
        self._on_speaking_start: Callable[[str], None] | None = None

    def route(self, user_id: str, callback: Callable[[bytes], None]) -> None:
        self._routes[user_id] = callback

    def unroute(self, user_id: str) -> None:
        self._routes.pop(user_id, None)
        self._announced.discard(user_id)

    def set_speaking_listener(self, callback: Callable[[str], None] | None) -> None:
        self._on_speaking_start = callback

    def unpack_audio(self, data):
        # RTCP control packets carry no audio
        if 200 <= data[1] <= 204:
            return
        if self.paused:
            return

        raw = discord.sinks.RawData(data, self)
        if raw.decrypted_data == b"\xf8\xff\xfe":  # silence frame
            return

        ssrc_info = self.ws.ssrc_map.get(raw.ssrc)
        if ssrc_info is None:
            return
        user_id = str(ssrc_info["user_id"])

        callback = self._routes.get(user_id)
        if callback is not None:
            self.loop.call_soon_threadsafe(callback, raw.decrypted_data)
        elif self._on_speaking_start is not None and user_id not in self._announced:
            self._announced.add(user_id)
            self.loop.call_soon_threadsafe(self._on_speaking_start, user_id)


class PycordVoiceTransport(BaseVoiceTransport):
    """Voice transport backed by a connected RecordingVoiceClient."""

    def __init__(self, voice_client: RecordingVoiceClient):
        super().__init__(str(voice_client.guild.id))
        self.voice_client = voice_client
        self.channel_id = str(voice_client.channel.id)

        self._listening = False
        self._destroyed = False
        self._speaking_tasks: set[asyncio.Task] = set()

    def is_connected(self) -> bool:
        return not self._destroyed and self.voice_client.is_connected()

    # -------------------------------------------------------------- #
    # Receive Methods
    # -------------------------------------------------------------- #

    def start_listening(self, on_speaking_start: SpeakingStartCallback | None = None) -> None:
        """Start receiving audio from the channel."""
        if self._listening:
            return
        if not self.is_connected():
            raise SubscriptionError(f"Voice connection for guild {self.guild_id} is not connected")

        if on_speaking_start is not None:

            def announce(user_id: str) -> None:
                task = asyncio.ensure_future(on_speaking_start(user_id))
                self._speaking_tasks.add(task)
                task.add_done_callback(self._speaking_tasks.discard)

            self.voice_client.set_speaking_listener(announce)

        try:
            self.voice_client.start_recording(_NullSink(), self._on_receive_finished, sync_start=False)
        except discord.sinks.RecordingException as e:
            raise SubscriptionError(f"Failed to start receiving audio: {e}") from e
        self._listening = True

    def subscribe(
        self, speaker_id: str, end_behavior: EndBehavior = EndBehavior.MANUAL
    ) -> AudioSubscription:
        subscription = super().subscribe(speaker_id, end_behavior)
        self.voice_client.route(speaker_id, subscription.push)
        return subscription

    def _release(self, subscription: AudioSubscription) -> None:
        if self._subscriptions.get(subscription.speaker_id) is subscription:
            self.voice_client.unroute(subscription.speaker_id)
        super()._release(subscription)

    async def _on_receive_finished(self, _sink, *_args) -> None:
        # Receive thread ended while streams were still subscribed
        if not self._destroyed and self._subscriptions:
            self._fail_all(ConnectionError("voice receive loop stopped"))

    # -------------------------------------------------------------- #
    # Teardown
    # -------------------------------------------------------------- #

    async def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True

        self.voice_client.set_speaking_listener(None)
        for subscription in list(self._subscriptions.values()):
            subscription.unsubscribe()

        if self._listening and self.voice_client.recording:
            with contextlib.suppress(discord.sinks.RecordingException):
                self.voice_client.stop_recording()
        self._listening = False

        if self.voice_client.is_connected():
            await self.voice_client.disconnect(force=True)
