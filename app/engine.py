from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .errors import DuplicateMessage
from .models import Message
from .ports import MessageStorePort
from .schemas import MessageInput, MessageStatus, StatusUpdateInput

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpsertResult:
    created: bool = False
    updated: bool = False
    rejected: bool = False
    message: Optional[Message] = None


@dataclass(frozen=True)
class StatusResult:
    matched: bool = False
    message: Optional[Message] = None


class UpsertEngine:
    def __init__(self, store: MessageStorePort) -> None:
        self._store = store

    def upsert_message(self, item: MessageInput) -> UpsertResult:
        if not item.conversation_id or not item.message_id:
            logger.debug(
                "rejecting message %r: conversation_id/message_id missing",
                item.message_id,
            )
            return UpsertResult(rejected=True)

        record = Message(
            conversation_id=item.conversation_id,
            message_id=item.message_id,
            correlation_id=item.correlation_id,
            body=item.body,
            created_at=item.created_at,
            status=(item.status or MessageStatus.SENT).value,
            sender_display_name=item.sender_display_name,
            is_outgoing=item.is_outgoing,
        )
        try:
            stored = self._store.insert(record)
        except DuplicateMessage:
            if item.status is None:
                return UpsertResult(message=self._store.find_by_message_id(item.message_id))
            updated = self._store.update_status(item.message_id, item.status)
            return UpsertResult(updated=updated is not None, message=updated)

        return UpsertResult(created=True, message=stored)

    def apply_status(self, item: StatusUpdateInput) -> StatusResult:
        # target id first, then correlation id (explicit, else the target id)
        if item.target_message_id:
            updated = self._store.update_status(
                item.target_message_id, item.status, item.conversation_id
            )
            if updated is not None:
                return StatusResult(matched=True, message=updated)

        correlation_key = item.correlation_id or item.target_message_id
        if correlation_key:
            updated = self._store.update_status_by_correlation_id(
                correlation_key, item.status, item.conversation_id
            )
            if updated is not None:
                return StatusResult(matched=True, message=updated)

        logger.debug(
            "status %s matched no message (id=%r, correlation=%r)",
            item.status.value,
            item.target_message_id,
            item.correlation_id,
        )
        return StatusResult(matched=False)
