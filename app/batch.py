from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional

from .engine import UpsertEngine
from .errors import IngestError, SourceTimeout
from .logging_utils import log_json
from .metrics import inc_ingest_result
from .normalizer import normalize
from .notifier import ChangeNotifier
from .schemas import BatchReport, IngestSummary, SourceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Source:
    identifier: str
    read: Callable[[], Any]

    @classmethod
    def from_text(cls, identifier: str, raw: Any) -> "Source":
        return cls(identifier=identifier, read=lambda: raw)

    @classmethod
    def from_path(cls, path: Path) -> "Source":
        return cls(identifier=path.name, read=path.read_bytes)


def directory_sources(directory: str | Path) -> Iterator[Source]:
    """Yield a Source for every ``*.json`` file in ``directory``, by name."""
    root = Path(directory)
    files = sorted(
        p for p in root.iterdir() if p.is_file() and p.suffix.lower() == ".json"
    )
    for path in files:
        yield Source.from_path(path)


class BatchDriver:
    def __init__(
        self,
        engine: UpsertEngine,
        notifier: ChangeNotifier,
        source_timeout: Optional[float] = None,
    ) -> None:
        self._engine = engine
        self._notifier = notifier
        self._source_timeout = source_timeout

    def ingest_payload(self, raw: Any, deadline: Optional[float] = None) -> IngestSummary:
        """``deadline`` is a ``time.monotonic()`` value checked before each item."""
        normalized = normalize(raw)
        summary = IngestSummary()

        for item in normalized.messages:
            _check_deadline(deadline)
            result = self._engine.upsert_message(item)
            if result.rejected:
                summary.messages_rejected += 1
                continue
            if result.created:
                summary.messages_created += 1
                if not self._notifier.notify_created(result.message):
                    summary.notifications_failed += 1
                continue
            summary.messages_duplicate += 1
            if result.updated:
                message = result.message
                if not self._notifier.notify_status_changed(
                    message.conversation_id, message.message_id, message.status
                ):
                    summary.notifications_failed += 1

        for status in normalized.statuses:
            _check_deadline(deadline)
            result = self._engine.apply_status(status)
            if not result.matched:
                summary.statuses_unmatched += 1
                continue
            summary.statuses_applied += 1
            message = result.message
            if not self._notifier.notify_status_changed(
                message.conversation_id, message.message_id, message.status
            ):
                summary.notifications_failed += 1

        _record_metrics(summary)
        return summary

    def run_batch(self, sources: Iterable[Source]) -> BatchReport:
        report = BatchReport()
        for source in sources:
            report.sources_total += 1
            deadline = None
            if self._source_timeout is not None:
                deadline = time.monotonic() + self._source_timeout
            try:
                raw = source.read()
                _check_deadline(deadline)
                summary = self.ingest_payload(raw, deadline=deadline)
            except (IngestError, OSError) as exc:
                report.errors.append(SourceError(source=source.identifier, error=str(exc)))
                log_json(
                    logger,
                    logging.ERROR,
                    event="source_failed",
                    source=source.identifier,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            except Exception as exc:
                report.errors.append(
                    SourceError(source=source.identifier, error=f"{type(exc).__name__}: {exc}")
                )
                logger.exception("unexpected failure in source %s", source.identifier)
                continue

            report.sources_succeeded += 1
            report.add(summary)
            log_json(
                logger,
                logging.INFO,
                event="source_processed",
                source=source.identifier,
                **summary.model_dump(),
            )

        log_json(
            logger,
            logging.INFO,
            event="batch_complete",
            sources_total=report.sources_total,
            sources_failed=report.sources_failed,
        )
        return report


def _check_deadline(deadline: Optional[float]) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise SourceTimeout("source processing timed out")


def _record_metrics(summary: IngestSummary) -> None:
    inc_ingest_result("created", summary.messages_created)
    inc_ingest_result("duplicate", summary.messages_duplicate)
    inc_ingest_result("rejected", summary.messages_rejected)
    inc_ingest_result("status_applied", summary.statuses_applied)
    inc_ingest_result("status_unmatched", summary.statuses_unmatched)
