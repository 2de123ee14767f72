from sqlalchemy.orm import declarative_base
from sqlalchemy import Boolean, Column, DateTime, Index, String, Text

Base = declarative_base()


class Message(Base):
    __tablename__ = "messages"

    # Primary key doubles as the uniqueness constraint for idempotent upserts
    message_id = Column(String, primary_key=True)
    conversation_id = Column(String, nullable=False, index=True)
    correlation_id = Column(String, nullable=True, index=True)
    body = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), nullable=False)  # UTC
    status = Column(String(16), nullable=False, default="sent")
    sender_display_name = Column(String, nullable=False, default="Unknown")
    is_outgoing = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )
