# Main File

import logging
import os
import sys
from datetime import datetime
from pathlib import Path

import discord
import dotenv

from noteify.constructor import ServerManagerType
from noteify.context import Context
from noteify.server.constructor import construct_server_manager
from noteify.services.constructor import construct_services_manager

# Configure Python's built-in logging for server initialization
# (before AsyncLoggingService is available)
logs_dir = Path("logs")
logs_dir.mkdir(parents=True, exist_ok=True)
timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
log_file = logs_dir / f"app_{timestamp}.log"

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(log_file, mode="a", encoding="utf-8"),
    ],
    force=True,
)

dotenv.load_dotenv(dotenv_path=".env.local")

# -------------------------------------------------------------- #
# Discord Bot Setup
# -------------------------------------------------------------- #


def parse_guild_ids(raw: str | None) -> list[int]:
    """Parse a comma separated list of guild ids. Empty means global commands."""
    if not raw:
        return []
    return [int(part) for part in raw.split(",") if part.strip()]


# Guild ids register slash commands instantly; global registration can take up to an hour
DEBUG_GUILD_IDS = parse_guild_ids(os.getenv("DEBUG_GUILD_IDS"))

SERVER_MANAGER_TYPE = ServerManagerType(os.getenv("NOTEIFY_ENV", "development").lower())

intents = discord.Intents.default()
intents.guilds = True
intents.messages = True
intents.voice_states = True
intents.message_content = True  # Required for reading revision requests

bot = discord.Bot(intents=intents, debug_guilds=DEBUG_GUILD_IDS or None)


async def load_cogs(context: Context):
    """Load all cog extensions with context."""
    from cogs.session import setup as setup_session

    setup_session(context)
    await context.services_manager.logging_service.info("✓ Loaded cogs.session")


# -------------------------------------------------------------- #
# Commands
# -------------------------------------------------------------- #


async def is_developer(user_id: int) -> bool:
    info = await bot.application_info()
    if info.team:
        return user_id in [member.id for member in info.team.members]
    return user_id == info.owner.id


@bot.command(name="murder", description="Stops the bot for real")
async def murder(ctx: discord.ApplicationContext):
    """Stop the bot gracefully, summarizing every live session first."""
    if not await is_developer(ctx.author.id):
        await ctx.respond("❌ You do not have permission to use this command.")
        return

    await ctx.respond("🔪 Initiating graceful shutdown... Summarizing open sessions first.")

    try:
        if not bot.context or not bot.context.services_manager:
            await ctx.followup.send("⚠️ Bot context not initialized properly. Forcing shutdown...")
            await bot.close()
            return

        logger = bot.context.services_manager.logging_service
        await logger.info(f"Shutdown initiated by user: {ctx.author.name} ({ctx.author.id})")

        await bot.context.services_manager.shutdown_all(timeout=60.0)
        await ctx.followup.send("✅ All sessions and services have shut down. Bot stopping now...")
    except Exception as e:
        logging.error(f"Shutdown completed with errors: {e}", exc_info=True)
        try:
            await ctx.followup.send(f"⚠️ Shutdown completed with errors: {str(e)}")
        except discord.HTTPException:
            pass

    await bot.close()


# -------------------------------------------------------------- #
# Events
# -------------------------------------------------------------- #


@bot.event
async def on_ready():
    """Called when the bot is ready and connected to Discord."""
    logger = bot.context.services_manager.logging_service

    await logger.info(f"Logged in as {bot.user.name} (ID: {bot.user.id})")
    await logger.info(f"Connected to {len(bot.guilds)} guild(s):")
    for guild in bot.guilds:
        await logger.info(f"  ✓ {guild.name} (ID: {guild.id})")

    slash_commands = [
        cmd for cmd in bot.pending_application_commands if isinstance(cmd, discord.SlashCommand)
    ]
    await logger.info("Registered slash commands:")
    for cmd in slash_commands:
        await logger.info(f"  ✓ /{cmd.name} - {cmd.description}")

    if DEBUG_GUILD_IDS:
        await logger.info(f"Commands registered for guilds: {DEBUG_GUILD_IDS}")
    else:
        await logger.info("Commands registered GLOBALLY (can take up to 1 hour to appear)")


@bot.event
async def on_application_command_error(
    ctx: discord.ApplicationContext, error: discord.DiscordException
):
    """Handle errors in application commands."""
    logger = bot.context.services_manager.logging_service
    await logger.error(f"Error in command {ctx.command.name}: {error}")

    if isinstance(error, discord.CheckFailure):
        await ctx.respond("❌ You don't have permission to use this command.", ephemeral=True)
    else:
        await ctx.respond(f"❌ An error occurred: {str(error)}", ephemeral=True)


# -------------------------------------------------------------- #
# Run Bot
# -------------------------------------------------------------- #


async def main():
    """Main function to load cogs and start the bot."""
    print("=" * 40)
    print("Syncing services...")

    context = Context()

    servers_manager = construct_server_manager(SERVER_MANAGER_TYPE, context)
    context.set_server_manager(servers_manager)
    await servers_manager.connect_all()
    print("[OK] Connected all servers.")

    services_manager = construct_services_manager(
        SERVER_MANAGER_TYPE,
        context=context,
        log_file=log_file.name,  # Use the same log file
    )
    context.set_services_manager(services_manager)
    await services_manager.initialize_all()

    logger = services_manager.logging_service
    await logger.info("[OK] Initialized all services.")

    context.set_bot(bot)
    bot.context = context

    # -------------------------------------------------------------- #
    # Start Discord Bot
    # -------------------------------------------------------------- #

    async with bot:
        await load_cogs(context)
        token = os.getenv("DISCORD_API_TOKEN")
        if not token:
            await logger.error("Error: DISCORD_API_TOKEN not found in environment variables")
            return
        await bot.start(token)


if __name__ == "__main__":
    import asyncio

    asyncio.run(main())
