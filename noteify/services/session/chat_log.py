from dataclasses import dataclass

from noteify.utils import estimate_tokens

# -------------------------------------------------------------- #
# Roles
# -------------------------------------------------------------- #

SYSTEM = "system"
USER = "user"
ASSISTANT = "assistant"

ROLES = (SYSTEM, USER, ASSISTANT)


@dataclass
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


# -------------------------------------------------------------- #
# Chat Log
# -------------------------------------------------------------- #


class ChatLog:
    """
    Ordered role-tagged messages of one session plus a running token estimate.

    The count grows additively with every append and is only ever lowered by
    ``reset``, which starts a new epoch.
    """

    def __init__(self, system_prompt: str):
        self._messages: list[ChatMessage] = [ChatMessage(SYSTEM, system_prompt)]
        # The persona prompt is not counted against the budget
        self._token_count = 0
        self._epoch = 0

    def append(self, role: str, content: str) -> int:
        """
        Append a message and add its estimate to the token count.

        Returns:
            The token estimate of the appended message
        """
        if role not in ROLES:
            raise ValueError(f"Unknown chat role: {role}")
        self._messages.append(ChatMessage(role, content))
        tokens = estimate_tokens(content)
        self._token_count += tokens
        return tokens

    def reset(self, messages: list[ChatMessage], token_count: int) -> None:
        """Replace the whole log and start a new epoch with the given count."""
        if not messages or messages[0].role != SYSTEM:
            raise ValueError("A chat log epoch must start with a system message")
        self._messages = list(messages)
        self._token_count = token_count
        self._epoch += 1

    def build_transcript(self) -> str:
        """User lines only, separated by blank lines."""
        return "\n\n".join(m.content for m in self._messages if m.role == USER)

    def as_messages(self) -> list[dict[str, str]]:
        return [m.to_dict() for m in self._messages]

    @property
    def messages(self) -> list[ChatMessage]:
        return list(self._messages)

    @property
    def token_count(self) -> int:
        return self._token_count

    @property
    def epoch(self) -> int:
        return self._epoch

    def __len__(self) -> int:
        return len(self._messages)
