import logging
from typing import TYPE_CHECKING, Iterator

if TYPE_CHECKING:
    from noteify.services.session.state import SessionState

logger = logging.getLogger(__name__)

# -------------------------------------------------------------- #
# Session Registry
# -------------------------------------------------------------- #


class SessionRegistry:
    """
    Process-wide table of open sessions and the speaker -> session routes.

    Sessions are keyed by their owner's user id. A speaker is routed to at most
    one session at a time; routes exist only while a session is listening.
    """

    def __init__(self):
        self._sessions: dict[int, "SessionState"] = {}
        self._routes: dict[int, "SessionState"] = {}

    # -------------------------------------------------------------- #
    # Sessions
    # -------------------------------------------------------------- #

    def register(self, session: "SessionState") -> None:
        existing = self._sessions.get(session.session_id)
        if existing is not None and existing is not session:
            raise ValueError(f"Session {session.session_id} is already registered")
        self._sessions[session.session_id] = session

    def unregister(self, session: "SessionState") -> None:
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]
        self.unroute_all(session)

    def get(self, session_id: int) -> "SessionState | None":
        return self._sessions.get(session_id)

    def __contains__(self, session_id: int) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator["SessionState"]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)

    # -------------------------------------------------------------- #
    # Speaker Routes
    # -------------------------------------------------------------- #

    def route(self, speaker_id: int, session: "SessionState") -> None:
        current = self._routes.get(speaker_id)
        if current is not None and current is not session:
            logger.warning(
                f"[SessionRegistry] Speaker {speaker_id} moved from session "
                f"{current.session_id} to {session.session_id}"
            )
        self._routes[speaker_id] = session

    def unroute(self, speaker_id: int, session: "SessionState") -> None:
        if self._routes.get(speaker_id) is session:
            del self._routes[speaker_id]

    def unroute_all(self, session: "SessionState") -> None:
        for speaker_id in [sid for sid, s in self._routes.items() if s is session]:
            del self._routes[speaker_id]

    def lookup(self, speaker_id: int) -> "SessionState | None":
        return self._routes.get(speaker_id)

    def routed_speakers(self, session: "SessionState") -> set[int]:
        return {sid for sid, s in self._routes.items() if s is session}

    # -------------------------------------------------------------- #
    # Audio Dispatch
    # -------------------------------------------------------------- #

    def dispatch_audio(self, speaker_id: int, pcm: bytes) -> None:
        """Hand a decoded PCM packet to the session the speaker is routed to."""
        session = self._routes.get(speaker_id)
        if session is None:
            return
        session.on_audio(speaker_id, pcm)
