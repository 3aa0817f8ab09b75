"""Chat service: one live conversation per match"""
from datetime import datetime, timezone
from typing import List, Optional

from .realtime import LiveCollection, Scope
from ..storage.backend import Backend
from ..storage.mirror import LocalMirror
from ..storage.models import Message
from ..utils.logger import setup_logger

logger = setup_logger(__name__)

MESSAGES_TABLE = "messages"

# Rows not yet stamped by the database sort first
UNSENT = datetime.min.replace(tzinfo=timezone.utc)


def message_sort_key(message: Message) -> datetime:
    return message.sent_at or UNSENT


class ChatService:
    """
    Service for the currently open chat thread

    Only one thread is open at a time. Opening another closes the previous
    subscription before the new one starts.
    """

    def __init__(self, backend: Backend, max_body_length: int = 2000):
        """
        Initialize chat service

        Args:
            backend: Backend instance
            max_body_length: Longest message body accepted by send()
        """
        self.backend = backend
        self.max_body_length = max_body_length
        self.user_id: Optional[str] = None
        self.match_id: Optional[int] = None
        self.collection: LiveCollection[Message] = LiveCollection(
            backend,
            LocalMirror(sort_key=message_sort_key, name="messages"),
            Message.from_row,
            name="messages",
        )

    @property
    def messages(self) -> List[Message]:
        return self.collection.mirror.items

    @property
    def is_open(self) -> bool:
        return self.match_id is not None

    async def open_chat(self, user_id: str, match_id: int):
        """
        Show a match's conversation and follow new messages

        Raises:
            RequestError: subscribing or loading the history failed
        """
        await self.close_chat()
        self.user_id = user_id
        self.match_id = match_id
        scope = Scope(table=MESSAGES_TABLE, order_by="sent_at", clauses=(("match_id", match_id),))
        await self.collection.open(scope)

    async def refresh(self):
        """Reload the open conversation's history"""
        await self.collection.refresh()

    async def send(self, body: str) -> Message:
        """
        Send a message to the open conversation

        The stored row is shown immediately; its echo from the change feed is
        recognized by id and ignored.

        Raises:
            RuntimeError: no chat is open
            ValueError: body is blank or too long
            RequestError: the insert failed
        """
        if self.match_id is None or self.user_id is None:
            raise RuntimeError("No chat is open")
        body = (body or "").strip()
        if not body:
            raise ValueError("Message is empty")
        if len(body) > self.max_body_length:
            raise ValueError(f"Message is longer than {self.max_body_length} characters")

        row = await self.backend.insert_row(
            MESSAGES_TABLE,
            Message.insert_payload(self.match_id, self.user_id, body),
        )
        message = Message.from_row(row)
        # Only lands if the same chat is still open after the await
        self.collection.apply_local_insert(message, row)
        return message

    async def close_chat(self):
        if self.match_id is not None:
            logger.debug(f"Closing chat for match {self.match_id}")
        self.user_id = None
        self.match_id = None
        await self.collection.close()
