from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from sqlalchemy import create_engine, func, select, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased, sessionmaker

from .errors import DuplicateMessage, StoreFailure
from .models import Base, Message
from .schemas import ConversationSummary, MessageStatus

# dialects with INSERT .. ON CONFLICT DO NOTHING
_INSERT_BY_DIALECT = {
    "sqlite": sqlite_insert,
    "postgresql": postgresql_insert,
}


def _engine_connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


def _ensure_sqlite_dir(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return
    if not parsed.database or parsed.database == ":memory:":
        return
    Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)


class Database:
    def __init__(self, url: str) -> None:
        self.url = url
        self._engine: Optional[Engine] = None
        self._sessionmaker: Optional[sessionmaker] = None

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def open(self) -> None:
        if self._engine is not None:
            return
        _ensure_sqlite_dir(self.url)
        self._engine = create_engine(
            self.url,
            connect_args=_engine_connect_args(self.url),
        )
        Base.metadata.create_all(bind=self._engine)
        self._sessionmaker = sessionmaker(
            bind=self._engine, autoflush=False, autocommit=False
        )

    def close(self) -> None:
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
        self._sessionmaker = None

    @contextmanager
    def session(self) -> Iterator[Session]:
        if self._sessionmaker is None:
            raise StoreFailure("database is not open")
        db = self._sessionmaker()
        try:
            yield db
        finally:
            db.close()

    def ping(self) -> bool:
        try:
            with self.session() as db:
                db.execute(text("SELECT 1"))
        except (SQLAlchemyError, StoreFailure):
            return False
        return True


class MessageStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StoreFailure(f"{action} failed: {exc}") from exc

    def find_by_message_id(self, message_id: str) -> Optional[Message]:
        with self._guard("find"):
            return self.db.query(Message).filter(Message.message_id == message_id).first()

    def insert(self, record: Message) -> Message:
        """Raise DuplicateMessage if the key exists; nothing is rolled back."""
        dialect = self.db.get_bind().dialect.name
        build_insert = _INSERT_BY_DIALECT.get(dialect)
        if build_insert is None:
            raise StoreFailure(f"unsupported database dialect {dialect!r}")

        values = {
            column.name: getattr(record, column.key)
            for column in Message.__table__.columns
            if getattr(record, column.key) is not None
        }
        stmt = (
            build_insert(Message)
            .values(**values)
            .on_conflict_do_nothing(index_elements=[Message.message_id])
        )
        with self._guard("insert"):
            inserted = self.db.execute(stmt).rowcount
            self.db.commit()
        if inserted == 0:
            raise DuplicateMessage(record.message_id)
        return self.find_by_message_id(record.message_id)

    def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        conversation_id: Optional[str] = None,
    ) -> Optional[Message]:
        with self._guard("status update"):
            query = self.db.query(Message).filter(Message.message_id == message_id)
            if conversation_id:
                query = query.filter(Message.conversation_id == conversation_id)
            updated = query.update({Message.status: MessageStatus(status).value})
            self.db.commit()
            if not updated:
                return None
            return self.find_by_message_id(message_id)

    def update_status_by_correlation_id(
        self,
        correlation_id: str,
        status: MessageStatus,
        conversation_id: Optional[str] = None,
    ) -> Optional[Message]:
        # Several replies may share one context id; the earliest one wins
        with self._guard("status update"):
            query = self.db.query(Message.message_id).filter(
                Message.correlation_id == correlation_id
            )
            if conversation_id:
                query = query.filter(Message.conversation_id == conversation_id)
            target = query.order_by(
                Message.created_at.asc(), Message.message_id.asc()
            ).first()
        if target is None:
            return None
        return self.update_status(target[0], status, conversation_id)

    def list_by_conversation(self, conversation_id: str) -> List[Message]:
        with self._guard("list"):
            return (
                self.db.query(Message)
                .filter(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.asc(), Message.message_id.asc())
                .all()
            )

    def conversation_summaries(self) -> List[ConversationSummary]:
        ranked = select(
            Message,
            func.row_number()
            .over(
                partition_by=Message.conversation_id,
                order_by=(Message.created_at.desc(), Message.message_id.desc()),
            )
            .label("rn"),
        ).subquery()
        latest = aliased(Message, ranked)

        with self._guard("summaries"):
            rows = (
                self.db.query(latest)
                .filter(ranked.c.rn == 1)
                .order_by(ranked.c.created_at.desc(), ranked.c.conversation_id.asc())
                .all()
            )

        return [
            ConversationSummary(
                conversation_id=m.conversation_id,
                last_body=m.body,
                last_created_at=m.created_at,
                status=m.status,
                sender_display_name=m.sender_display_name,
            )
            for m in rows
        ]
