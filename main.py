import asyncio
import logging
import os
import sys
from datetime import datetime
from pathlib import Path

import discord
import dotenv

from voice_recorder.context import Context
from voice_recorder.services.constructor import construct_services_manager

dotenv.load_dotenv(dotenv_path=".env.local")

LOGS_PATH = Path(os.getenv("LOGS_PATH", "logs"))
RECORDINGS_PATH = os.getenv("RECORDINGS_PATH", "recordings")
SHUTDOWN_TIMEOUT_SECONDS = 60.0


def parse_guild_ids(value: str | None) -> list[int]:
    """Comma-separated guild IDs; empty means commands are registered globally."""
    if not value:
        return []
    return [int(part) for part in value.split(",") if part.strip()]


DEBUG_GUILD_IDS = parse_guild_ids(os.getenv("DEBUG_GUILD_IDS"))

# -------------------------------------------------------------- #
# Startup Logging
# -------------------------------------------------------------- #


def configure_logging(started_at: datetime) -> Path:
    """
    Route py-cord's stdlib logging to stdout and a startup log file.

    The recorder's own messages go through AsyncLoggingService once it is
    running; this covers the gateway and voice internals before and after.
    """
    LOGS_PATH.mkdir(parents=True, exist_ok=True)
    startup_log = LOGS_PATH / f"app_{started_at:%Y-%m-%d_%H-%M-%S}.log"

    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(startup_log, mode="a", encoding="utf-8"),
        ],
        force=True,
    )
    return startup_log


# -------------------------------------------------------------- #
# Bot
# -------------------------------------------------------------- #


def create_bot(context: Context) -> discord.Bot:
    """Build the bot with the intents recording needs and register its events."""
    intents = discord.Intents.default()
    intents.voice_states = True
    # Members who start speaking after /record are looked up by ID
    intents.members = True

    bot = discord.Bot(intents=intents, debug_guilds=DEBUG_GUILD_IDS or None)
    bot.context = context
    context.set_bot(bot)

    def recorder_log():
        return context.services_manager.logging_service

    @bot.event
    async def on_ready():
        log = recorder_log()
        await log.info(f"Bot ready as {bot.user.name} ({bot.user.id}) in {len(bot.guilds)} guild(s)")
        for guild in bot.guilds:
            await log.debug(f"  guild {guild.name} ({guild.id})")

        names = [
            f"/{cmd.name}"
            for cmd in bot.pending_application_commands
            if isinstance(cmd, discord.SlashCommand)
        ]
        scope = f"guilds {DEBUG_GUILD_IDS}" if DEBUG_GUILD_IDS else "all guilds (global sync)"
        await log.info(f"Slash commands {', '.join(names) or '(none)'} registered for {scope}")

    @bot.event
    async def on_application_command_error(
        ctx: discord.ApplicationContext, error: discord.DiscordException
    ):
        await recorder_log().error(f"/{ctx.command.name} failed: {type(error).__name__}: {error}")

        if isinstance(error, discord.CheckFailure):
            message = "❌ You don't have permission to use this command."
        else:
            message = "❌ Something went wrong while running this command."
        await ctx.respond(message, ephemeral=True)

    return bot


def load_cogs(context: Context) -> None:
    from cogs.voice import setup as setup_voice

    setup_voice(context)
    logging.info("Loaded cogs.voice")


# -------------------------------------------------------------- #
# Entry Point
# -------------------------------------------------------------- #


async def main():
    started_at = datetime.now()
    startup_log = configure_logging(started_at)
    logging.info(f"Starting voice recorder, startup log at {startup_log}")

    context = Context()
    services_manager = construct_services_manager(
        context=context,
        recording_storage_path=RECORDINGS_PATH,
        default_logging_path=str(LOGS_PATH),
        log_file=f"recorder_{started_at:%Y-%m-%d_%H-%M-%S}.log",
    )
    context.set_services_manager(services_manager)
    await services_manager.initialize_all()

    log = services_manager.logging_service
    await log.info("All services initialized")

    bot = create_bot(context)
    token = os.getenv("DISCORD_API_TOKEN")

    try:
        if not token:
            await log.critical("DISCORD_API_TOKEN is not set; nothing to connect with")
            return

        async with bot:
            load_cogs(context)
            await bot.start(token)
    finally:
        # Active recordings are finalized before the process exits
        await services_manager.shutdown_all(timeout=SHUTDOWN_TIMEOUT_SECONDS)


if __name__ == "__main__":
    asyncio.run(main())
