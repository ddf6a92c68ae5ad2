import asyncio
import logging

import discord
from discord.ext import commands

from voice_recorder.context import Context
from voice_recorder.services.discord_recorder.manager import DiscordRecorderManagerService
from voice_recorder.services.discord_recorder.transport import (
    PycordVoiceTransport,
    RecordingVoiceClient,
)

logger = logging.getLogger(__name__)

VOICE_CONNECT_TIMEOUT_SECONDS = 30.0


# -------------------------------------------------------------- #
# Cog
# -------------------------------------------------------------- #


class Voice(commands.Cog):
    """Voice recording commands."""

    def __init__(self, context: Context):
        self.context = context
        self.bot = context.bot
        self.services = context.services_manager

    @property
    def recorder(self) -> DiscordRecorderManagerService:
        return self.services.discord_recorder_service_manager

    # -------------------------------------------------------------- #
    # Utils
    # -------------------------------------------------------------- #

    def find_user_vc(self, ctx: discord.ApplicationContext) -> discord.VoiceChannel | None:
        """The caller's current voice channel, or None."""
        voice = getattr(ctx.author, "voice", None)
        return voice.channel if voice else None

    async def leave_voice(self, guild: discord.Guild) -> bool:
        """Drop the guild's voice connection, whether or not a recorder owns it.

        Returns:
            True if a connection was closed
        """
        if await self.recorder.release_transport(str(guild.id)):
            return True

        voice_client = guild.voice_client
        if voice_client is not None and voice_client.is_connected():
            await voice_client.disconnect(force=True)
            return True
        return False

    async def ensure_voice_client(
        self, guild: discord.Guild, target_channel: discord.VoiceChannel
    ) -> RecordingVoiceClient:
        """Reuse a connection to the target channel, replacing any other one.

        Raises:
            discord.ClientException: If the connection could not be established
            asyncio.TimeoutError: If the channel could not be joined in time
        """
        voice_client = guild.voice_client

        if voice_client is not None and voice_client.is_connected():
            if voice_client.channel.id == target_channel.id and isinstance(
                voice_client, RecordingVoiceClient
            ):
                logger.info(f"Reusing existing connection to channel {target_channel.name}")
                return voice_client

            logger.warning(
                f"Found connection to a different channel ({voice_client.channel.id}) "
                f"while not recording. Destroying."
            )
            await self.leave_voice(guild)
            # give the gateway a moment to settle the voice state
            await asyncio.sleep(0.2)

        logger.info(f"Joining channel {target_channel.name}")
        return await target_channel.connect(
            timeout=VOICE_CONNECT_TIMEOUT_SECONDS, cls=RecordingVoiceClient
        )

    async def start_member(self, guild_id: str, member: discord.Member) -> bool:
        if member.bot:
            logger.info(f"Skipping bot user: {member.name}")
            return False
        return await self.recorder.start_speaker(guild_id, str(member.id), member.name)

    async def on_speaking_start(self, guild: discord.Guild, user_id: str) -> None:
        """Start recording a user heard for the first time after /record."""
        member = guild.get_member(int(user_id))
        if member is None:
            try:
                member = await guild.fetch_member(int(user_id))
            except discord.HTTPException as e:
                logger.warning(f"Could not fetch member for speaking user ID {user_id}: {e}")
                return

        if await self.start_member(str(guild.id), member):
            logger.info(f"Detected user {member.name} speaking. Recording started.")

    # -------------------------------------------------------------- #
    # Slash Commands
    # -------------------------------------------------------------- #

    @commands.slash_command(
        name="record", description="Starts recording audio in your current voice channel."
    )
    async def record(self, ctx: discord.ApplicationContext) -> None:
        """Record every speaker in the caller's voice channel, one file each.

        Args:
            ctx: Discord application context
        """
        guild = ctx.guild
        if guild is None:
            await ctx.respond("This command can only be used in a server.", ephemeral=True)
            return

        voice_channel = self.find_user_vc(ctx)
        if not voice_channel:
            await ctx.respond("You must be in a voice channel to start recording.", ephemeral=True)
            return

        guild_id = str(guild.id)
        if self.recorder.is_guild_active(guild_id):
            await ctx.respond("I am already recording in this server.", ephemeral=True)
            return
        if self.recorder.is_guild_stopping(guild_id):
            await ctx.respond(
                "The last recording is still being saved. Try again in a moment.", ephemeral=True
            )
            return

        await ctx.defer()

        try:
            voice_client = await self.ensure_voice_client(guild, voice_channel)

            transport = self.recorder.get_transport(guild_id)
            if getattr(transport, "voice_client", None) is not voice_client:
                transport = PycordVoiceTransport(voice_client)
                self.recorder.attach_transport(guild_id, transport)

            transport.start_listening(
                on_speaking_start=lambda user_id: self.on_speaking_start(guild, user_id)
            )

            # Record users already in the channel when the command is run
            humans = [member for member in voice_channel.members if not member.bot]
            started = await asyncio.gather(
                *(self.start_member(guild_id, member) for member in humans)
            )
            if humans and not any(started):
                raise RuntimeError(f"No speaker in {voice_channel.name} could be recorded")
            logger.info(
                f"Recording {sum(started)} existing user(s) in channel {voice_channel.name}"
            )

            await ctx.edit(content="Command Started.")
        except Exception as e:
            logger.error(f"Error starting recording in guild {guild_id}: {e}", exc_info=True)

            # Clean up the connection unless some speaker did start
            if self.recorder.is_guild_active(guild_id):
                logger.info("Recording appears active despite error, not destroying connection.")
            elif await self.leave_voice(guild):
                logger.info("Destroyed connection due to error during startup.")

            await ctx.edit(
                content="Failed to start run command. Please check permissions and try again."
            )

    @commands.slash_command(
        name="stoprecord", description="Stops recording audio and saves the files."
    )
    async def stoprecord(self, ctx: discord.ApplicationContext) -> None:
        """Stop every recording in this server and save one MP3 per speaker.

        Args:
            ctx: Discord application context
        """
        guild = ctx.guild
        if guild is None:
            await ctx.respond("This command can only be used in a server.", ephemeral=True)
            return

        guild_id = str(guild.id)
        if self.recorder.is_guild_stopping(guild_id):
            await ctx.respond("Already stopping; the recordings are being saved.", ephemeral=True)
            return

        if not self.recorder.is_guild_active(guild_id):
            # Not recording, but a connection may be left over
            if await self.leave_voice(guild):
                logger.info("No active recording, but connection exists. Leaving channel.")
                await ctx.respond(
                    "No active recording was found, but I left the voice channel.",
                    ephemeral=True,
                )
            else:
                await ctx.respond("I am not currently recording in this server.", ephemeral=True)
            return

        await ctx.defer()

        try:
            logger.info(f"Attempting to stop recording for guild {guild_id}")
            saved_files = await self.recorder.stop_guild(guild_id)
            logger.info(f"Stopped recording for guild {guild_id}. Files saved: {len(saved_files)}")

            await ctx.edit(content=f"Finished Command. Saved {len(saved_files)} recording(s).")
        except Exception as e:
            logger.error(f"Error stopping recording in guild {guild_id}: {e}", exc_info=True)
            await ctx.edit(content="Error With Command")


def setup(context: Context):
    voice = Voice(context)
    context.bot.add_cog(voice)
    return voice
