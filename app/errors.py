class IngestError(Exception):
    pass


class InvalidInput(IngestError):
    """A request is missing the keys needed to identify a message."""


class NotFound(IngestError):
    pass


class DuplicateMessage(IngestError):
    def __init__(self, message_id: str) -> None:
        super().__init__(f"message {message_id!r} already exists")
        self.message_id = message_id


class StoreFailure(IngestError):
    """The message store is unavailable or rejected a write."""


class MalformedPayload(IngestError):
    """Raw input could not be decoded as JSON."""


class SourceTimeout(IngestError):
    pass
