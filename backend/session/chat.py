"""Ephemeral text chat log."""

from session.models import ChatMessage, ChatSender


class ChatLog:
    """Append-only, in-memory, gone when the session ends."""

    def __init__(self) -> None:
        self._messages: list[ChatMessage] = []

    def add(self, text: str, sender: ChatSender, connection_id: str | None = None) -> ChatMessage:
        message = ChatMessage(text=text, sender=sender, connection_id=connection_id)
        self._messages.append(message)
        return message

    def messages(self) -> list[ChatMessage]:
        return list(self._messages)

    def clear(self) -> None:
        self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)


def clean_text(text: str) -> str:
    """Reject blank chat text; otherwise return it unchanged."""
    if not text or not text.strip():
        raise ValueError("Message text is empty")
    return text
