"""
Prompt templates and channel messages for session summaries.

This module contains the system messages sent to the summarizer model and
the fixed texts the bot posts while a session is paused, stopped and revised.
"""

# -------------------------------------------------------------- #
# Model Prompts
# -------------------------------------------------------------- #

INITIAL_PROMPT = """You are a tabletop role-playing game summarizer. Please summarize the conversation and plot between the following <player> and </player> delimiters. In your response, return a markdown formatted list that tells a story of current session events, player conversations, notable/funny quotes, and role-play interactions. Your list should retell the session as though someone is sharing a tale. Be direct and clear in your retelling."""

REPLY_PROMPT = """You will now take feedback on your markdown summary and apply based on user's preference."""

# -------------------------------------------------------------- #
# Channel Messages
# -------------------------------------------------------------- #

TOKEN_WARNING_MESSAGE = (
    "## Warning!!! \n Summarizing token maximum is 75% full! "
    "Past this point the summary may start losing early parts of the session. \n "
    "You can mitigate this by taking a break and telling me to `/pause-session`!"
)

TOKEN_LIMIT_MESSAGE = (
    "## Token limit reached \n The summarizer context is 85% full. "
    "Please `/pause-session` now so I can summarize before anything gets lost."
)

PAUSE_SUMMARY_MESSAGE = "Summarized the current game state and ready to unpause!"

SUMMARY_FAILED_MESSAGE = "I couldn't reach the summarizer, so nothing was summarized: {error}"

REVISION_FAILED_MESSAGE = "I couldn't revise the summary that time, try again: {error}"

REVISION_OPEN_MESSAGE = (
    "You now have {minutes} minutes to reply and update the summary here. "
    "I will only listen to the GM, in fact I will listen to EVERYTHING the GM says, so no fluff."
)

REVISION_LOCKED_MESSAGE = "Summary editing by me has been locked! You now gotta do it yourself"

THREAD_NAME_TEMPLATE = "Session Summary Discussion - {date}"

TRANSCRIPT_FILENAME_TEMPLATE = "TRANSCRIPT-{date}.txt"

PART_FOOTER_TEMPLATE = " \n\n-# (Part {index}/{total})"
