"""
PlayBot - Main Entry Point
"""
import asyncio
import logging
import os
from pathlib import Path

import discord
from discord.ext import commands

from playbot.config import Config, ConfigError, config

logger = logging.getLogger("bot")


def setup_logging(cfg: Config) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if cfg.LOG_FILE:
        cfg.LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(cfg.LOG_FILE))

    logging.basicConfig(
        level=cfg.LOG_LEVEL,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )
    logging.getLogger("discord.gateway").setLevel(logging.WARNING)
    logging.getLogger("discord.voice_state").setLevel(logging.WARNING)


class PlayBot(commands.Bot):
    """Discord music bot driving one playback queue per voice channel."""

    def __init__(self, cfg: Config = config):
        intents = discord.Intents.default()
        intents.message_content = True
        intents.voice_states = True
        intents.guilds = True

        super().__init__(
            command_prefix=cfg.COMMAND_PREFIX,
            intents=intents,
        )
        self.config = cfg

    async def setup_hook(self) -> None:
        """Called when the bot is starting up."""
        logger.info("Setting up bot...")

        cogs_dir = Path(__file__).parent / "cogs"
        for cog_file in cogs_dir.glob("*.py"):
            if cog_file.name.startswith("_"):
                continue
            cog_name = f"playbot.cogs.{cog_file.stem}"
            try:
                await self.load_extension(cog_name)
                logger.info(f"Loaded cog: {cog_name}")
            except Exception as e:
                logger.error(f"Failed to load cog {cog_name}: {e}")

    async def on_ready(self) -> None:
        """Called when the bot is fully ready."""
        logger.info(f"Logged in as {self.user} (ID: {self.user.id})")
        logger.info(f"Connected to {len(self.guilds)} guild(s)")

        activity = discord.Activity(
            type=discord.ActivityType.listening,
            name=f"{self.config.COMMAND_PREFIX}play"
        )
        await self.change_presence(activity=activity)

    async def on_command_error(self, ctx: commands.Context, error: commands.CommandError) -> None:
        if isinstance(error, commands.CommandNotFound):
            return
        logger.error(f"Command error in {ctx.command}: {error}")

    async def close(self) -> None:
        """Cleanup when the bot is shutting down."""
        logger.info("Shutting down...")

        # Unload the music cog first so sessions stop FFmpeg and leave voice
        try:
            await self.unload_extension("playbot.cogs.music")
        except commands.ExtensionError as e:
            logger.debug(f"Music cog was not loaded: {e}")

        for vc in self.voice_clients:
            try:
                await vc.disconnect(force=True)
            except Exception as e:
                logger.debug(f"Voice disconnect failed: {e}")

        await super().close()
        logger.info("Shutdown complete.")


async def main(cfg: Config = config):
    """Main entry point."""
    bot = PlayBot(cfg)

    async with bot:
        try:
            await bot.start(cfg.DISCORD_TOKEN)
        except KeyboardInterrupt:
            logger.info("Shutdown initiated by user...")
        except discord.LoginFailure as e:
            logger.critical(f"Login failed: {e}")
        finally:
            if not bot.is_closed():
                await bot.close()


def run():
    setup_logging(config)
    try:
        config.validate()
    except ConfigError as e:
        logger.critical(f"Invalid configuration: {e}")
        raise SystemExit(1)

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        # standard exit
        os._exit(0)


if __name__ == "__main__":
    run()
