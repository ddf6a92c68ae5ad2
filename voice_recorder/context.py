import asyncio
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import discord

    from voice_recorder.services.manager import ServicesManager

# -------------------------------------------------------------- #
# Context Class
# -------------------------------------------------------------- #


class Context:
    """
    Shared handle passed to every service and cog.

    Holds the services manager and the bot so neither has to import the
    other, plus the process-wide shutdown flag.
    """

    def __init__(self):
        self.services_manager: ServicesManager | None = None
        self.bot: discord.Bot | None = None
        self._shutdown = asyncio.Event()

    def set_services_manager(self, services_manager: "ServicesManager") -> None:
        self.services_manager = services_manager

    def set_bot(self, bot: "discord.Bot") -> None:
        self.bot = bot

    # -------------------------------------------------------------- #
    # Shutdown
    # -------------------------------------------------------------- #

    def is_shutting_down(self) -> bool:
        """True once shutdown began; no new recordings start after that."""
        return self._shutdown.is_set()

    def mark_shutdown_started(self) -> None:
        self._shutdown.set()
