from __future__ import annotations

from typing import Any, Optional, Protocol

from .models import Message
from .schemas import ConversationSummary, MessageStatus


class MessageStorePort(Protocol):
    def find_by_message_id(self, message_id: str) -> Optional[Message]:
        ...

    def insert(self, record: Message) -> Message:
        """Insert a new record; raise DuplicateMessage if the key exists."""
        ...

    def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        conversation_id: Optional[str] = None,
    ) -> Optional[Message]:
        ...

    def update_status_by_correlation_id(
        self,
        correlation_id: str,
        status: MessageStatus,
        conversation_id: Optional[str] = None,
    ) -> Optional[Message]:
        ...

    def list_by_conversation(self, conversation_id: str) -> list[Message]:
        ...

    def conversation_summaries(self) -> list[ConversationSummary]:
        ...


class PublishSink(Protocol):
    def publish(self, event_name: str, payload: Any) -> None:
        ...
