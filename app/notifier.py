from __future__ import annotations

import logging
from typing import Any, Optional

from .logging_utils import log_json
from .metrics import inc_notification_failure
from .models import Message
from .ports import PublishSink
from .schemas import MessageOut, MessageStatus

logger = logging.getLogger(__name__)

MESSAGE_CREATED = "message:new"
MESSAGE_STATUS = "message:status"


class ChangeNotifier:
    def __init__(self, sink: PublishSink) -> None:
        self._sink = sink

    def notify_created(self, message: Message, client_id: Optional[str] = None) -> bool:
        payload = MessageOut.model_validate(message).model_dump(mode="json")
        # client_id lets the sending client ignore its own echo
        payload["client_id"] = client_id
        return self._emit(MESSAGE_CREATED, payload)

    def notify_status_changed(
        self, conversation_id: str, message_id: str, status: MessageStatus | str
    ) -> bool:
        payload = {
            "conversation_id": conversation_id,
            "message_id": message_id,
            "status": MessageStatus(status).value,
        }
        return self._emit(MESSAGE_STATUS, payload)

    def _emit(self, event_name: str, payload: dict[str, Any]) -> bool:
        try:
            self._sink.publish(event_name, payload)
        except Exception as exc:  # sink failures must not reach the caller
            inc_notification_failure(event_name)
            log_json(
                logger,
                logging.WARNING,
                event="notification_failed",
                name=event_name,
                message_id=payload.get("message_id"),
                error=str(exc),
            )
            return False
        return True


class LoggingSink:
    def publish(self, event_name: str, payload: Any) -> None:
        log_json(logger, logging.DEBUG, event="publish", name=event_name, payload=payload)
