import logging
import re

import discord
from discord.ext import commands

from noteify.context import Context
from noteify.services.discord.output_channel import DiscordOutputChannel
from noteify.services.discord.voice_connection import DiscordVoiceConnection
from noteify.services.session.state import SessionTransitionError
from noteify.utils import extract_user_id

logger = logging.getLogger(__name__)

# -------------------------------------------------------------- #
# Command Texts
# -------------------------------------------------------------- #

COMMAND_LIST = {
    "start-session": (
        "Will tell me to join the current vc you're in and begin recording listed participants. "
        "Can be used by typing `/start-session @player @player @player...`. "
        "You should use me ONLY if you are the GM."
    ),
    "stop-session": (
        "Will tell me to leave the current vc and begin summarizing. Can be used by typing "
        "`/stop-session` and I will ONLY listen to whoever used `/start-session`."
    ),
    "pause-session": (
        "Will tell me to stop recording and summarize the current game state. Can be used by "
        "typing `/pause-session`. This is helpful for taking breaks or resetting my token "
        "context. Again, I will ONLY listen to whoever used `/start-session`."
    ),
    "unpause-session": (
        "Will tell me to start recording the previously listed participants. Can be used by "
        "typing `/unpause-session`. Again, I will ONLY listen to whoever used `/start-session`."
    ),
    "help": "Literally this message. Can be used by typing `/help`.",
}

ALONE_PREFIX = "# YOU ARE ALL ALONE\n## You might want to send `/help` to see how commands work\n"

NOT_IN_VOICE_MESSAGE = (
    "You need to be in a voice channel first. Additionally, please only start sessions if you are GM."
)

_MENTION_TOKEN = re.compile(r"<@!?\d+>")


def build_help_message() -> str:
    return "".join(f"`/{name}`: {desc} \n" for name, desc in COMMAND_LIST.items())


def parse_mentions(text: str | None) -> list[int]:
    """Extract user ids from a string of mentions, keeping order and dropping repeats."""
    if not text:
        return []

    ids: list[int] = []
    for token in _MENTION_TOKEN.findall(text):
        user_id = extract_user_id(token)
        if user_id is not None and int(user_id) not in ids:
            ids.append(int(user_id))
    return ids


# -------------------------------------------------------------- #
# Cog
# -------------------------------------------------------------- #


class Session(commands.Cog):
    """Live session commands. Each command drives the caller's own session."""

    def __init__(self, context: Context):
        self.context = context
        self.bot = context.bot
        self.services = context.services_manager

    @property
    def session_manager(self):
        return self.services.session_manager

    # -------------------------------------------------------------- #
    # Utils
    # -------------------------------------------------------------- #

    def find_user_vc(self, ctx: discord.ApplicationContext) -> discord.VoiceChannel | None:
        """Find the voice channel the user is in, if any."""
        return ctx.author.voice.channel if ctx.author.voice else None

    async def resolve_participants(
        self, guild: discord.Guild, user_ids: list[int]
    ) -> dict[int, str]:
        """Map mentioned user ids to their display names, skipping unknown members."""
        participants: dict[int, str] = {}
        for user_id in user_ids:
            member = guild.get_member(user_id)
            if member is None:
                try:
                    member = await guild.fetch_member(user_id)
                except discord.HTTPException as e:
                    logger.warning(f"Could not resolve mentioned member {user_id}: {e}")
                    continue
            participants[user_id] = member.display_name
        return participants

    # -------------------------------------------------------------- #
    # Slash Commands
    # -------------------------------------------------------------- #

    @commands.slash_command(name="start-session", description="Join your voice channel and start listening")
    @discord.option("players", description="Mention every player to listen to", required=False, default="")
    async def start_session(self, ctx: discord.ApplicationContext, players: str = "") -> None:
        voice_channel = self.find_user_vc(ctx)
        if voice_channel is None or ctx.guild is None:
            await ctx.respond(NOT_IN_VOICE_MESSAGE, ephemeral=True)
            return

        await ctx.defer()

        participants = await self.resolve_participants(ctx.guild, parse_mentions(players))
        logger.info(
            f"start-session by {ctx.author.id} in {voice_channel.id} with players {participants}"
        )

        try:
            await self.session_manager.start_session(
                owner_id=ctx.author.id,
                voice=DiscordVoiceConnection(voice_channel, self.session_manager.registry),
                output_channel=DiscordOutputChannel(ctx.channel, self.bot),
                participants=participants,
            )
        except SessionTransitionError as e:
            await ctx.followup.send(str(e))
            return

        reply = f"Joined {voice_channel.name} and listening."
        if not participants:
            reply = ALONE_PREFIX + reply
        await ctx.followup.send(reply)

    @commands.slash_command(name="stop-session", description="Leave voice and summarize the session")
    async def stop_session(self, ctx: discord.ApplicationContext) -> None:
        await ctx.defer()
        try:
            await self.session_manager.stop_session(ctx.author.id)
        except SessionTransitionError as e:
            await ctx.followup.send(str(e))
            return
        await ctx.followup.send("Session stopped. Reply in the summary thread to revise it.")

    @commands.slash_command(name="pause-session", description="Stop listening and summarize so far")
    async def pause_session(self, ctx: discord.ApplicationContext) -> None:
        await ctx.defer()
        try:
            await self.session_manager.pause_session(ctx.author.id)
        except SessionTransitionError as e:
            await ctx.followup.send(str(e))
            return
        await ctx.followup.send("Session paused. Use `/unpause-session` when you're back.")

    @commands.slash_command(name="unpause-session", description="Rejoin voice and resume listening")
    async def unpause_session(self, ctx: discord.ApplicationContext) -> None:
        await ctx.defer()
        try:
            session = await self.session_manager.unpause_session(ctx.author.id)
        except SessionTransitionError as e:
            await ctx.followup.send(str(e))
            return
        await ctx.followup.send(f"Joined <#{session.voice_channel_id}> and listening.")

    @commands.slash_command(name="help", description="List the session commands")
    async def help(self, ctx: discord.ApplicationContext) -> None:
        await ctx.respond(build_help_message())


def setup(context: Context):
    session = Session(context)
    context.bot.add_cog(session)
    return session
