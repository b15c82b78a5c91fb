"""Batch ingestion: validate, classify, and turn uploads into photo records.

Files are processed strictly one after another against the shared classifier
session. Each file resolves to a tagged outcome (classified, degraded, or
rejected) and a notification; a failing file never interrupts the batch.
The only error that escapes is ``BatchAbortedError``, raised when no
classifier session can be had. It stops the batch at the failing file and
carries what the earlier files produced.

Batches themselves are serialized by ``BatchQueue`` in submission order and
land in the gallery in one piece once processed.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

from autogallery.gallery.models import DEGRADED_CONFIDENCE, UNKNOWN_LABEL, PhotoRecord
from autogallery.ml.model_manager import SessionUnavailableError
from autogallery.ml.preprocessing import staged_image

if TYPE_CHECKING:
    from collections.abc import Sequence

    from PIL import Image

    from autogallery.gallery.filters import Gallery
    from autogallery.gallery.models import RawFile
    from autogallery.ml.image_classifier import ClassificationResult

logger = logging.getLogger(__name__)


class Classifier(Protocol):
    """Anything that ranks labels for a decoded image."""

    async def classify(self, image: Image.Image) -> list[ClassificationResult]: ...


# ---------------------------------------------------------------------------
# Outcomes and notifications
# ---------------------------------------------------------------------------


class OutcomeKind(StrEnum):
    CLASSIFIED = "classified"
    DEGRADED = "degraded"
    REJECTED = "rejected"


class NotificationKind(StrEnum):
    REJECTED = "rejected"
    CLASSIFIED = "classified"
    ERROR = "error"


@dataclass(frozen=True)
class Notification:
    """A per-file event for the reporting layer."""

    kind: NotificationKind
    file_name: str
    detail: str


@dataclass(frozen=True)
class ItemOutcome:
    """Result of processing one file."""

    kind: OutcomeKind
    file_name: str
    detail: str
    record: PhotoRecord | None = None

    def notification(self) -> Notification:
        kind = {
            OutcomeKind.CLASSIFIED: NotificationKind.CLASSIFIED,
            OutcomeKind.DEGRADED: NotificationKind.ERROR,
            OutcomeKind.REJECTED: NotificationKind.REJECTED,
        }[self.kind]
        return Notification(kind=kind, file_name=self.file_name, detail=self.detail)


@dataclass
class IngestReport:
    records: list[PhotoRecord] = field(default_factory=list)
    notifications: list[Notification] = field(default_factory=list)


class BatchAbortedError(SessionUnavailableError):
    """The classifier session was lost partway through a batch.

    ``report`` holds the records and notifications of the files handled before
    ``file_name``; that file and the ones after it were not processed.
    """

    def __init__(self, message: str, file_name: str, report: IngestReport, remaining: int) -> None:
        super().__init__(message)
        self.file_name = file_name
        self.report = report
        self.remaining = remaining


Notifier = Callable[[Notification], None]


def log_notification(notification: Notification) -> None:
    """Default notifier: write the event to the log."""
    if notification.kind is NotificationKind.CLASSIFIED:
        logger.info("%s: %s", notification.file_name, notification.detail)
    else:
        logger.warning("%s %s: %s", notification.kind, notification.file_name, notification.detail)


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BatchProcessor:
    """Drives uploads through the classifier and builds photo records."""

    def __init__(
        self,
        classifier: Classifier,
        *,
        max_image_pixels: int,
        max_file_size: int,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], uuid.UUID] = uuid.uuid4,
    ) -> None:
        self._classifier = classifier
        self._max_image_pixels = max_image_pixels
        self._max_file_size = max_file_size
        self._clock = clock
        self._id_factory = id_factory

    async def ingest(self, files: Sequence[RawFile], notifier: Notifier = log_notification) -> list[PhotoRecord]:
        """Process ``files`` in order and return the records of every image.

        Raises:
            BatchAbortedError: If no classifier session can be acquired. The
                error carries the outcomes of the files before the failing one.
        """
        report = IngestReport()
        for index, raw in enumerate(files):
            try:
                outcome = await self.process(raw)
            except SessionUnavailableError as exc:
                remaining = len(files) - index
                logger.error("Batch stopped at %s with %d files unprocessed: %s", raw.name, remaining, exc)
                raise BatchAbortedError(str(exc), raw.name, report, remaining) from exc
            notification = outcome.notification()
            report.notifications.append(notification)
            notifier(notification)
            if outcome.record is not None:
                report.records.append(outcome.record)
        logger.info("Batch of %d files produced %d photos", len(files), len(report.records))
        return report.records

    async def process(self, raw: RawFile) -> ItemOutcome:
        """Process one file into a tagged outcome."""
        if not raw.is_image:
            return ItemOutcome(OutcomeKind.REJECTED, raw.name, f"{raw.name} is not an image file (invalid type)")
        if len(raw.content) > self._max_file_size:
            return ItemOutcome(
                OutcomeKind.REJECTED,
                raw.name,
                f"{raw.name} exceeds the {self._max_file_size} byte limit (file too large)",
            )

        try:
            with staged_image(raw.content, self._max_image_pixels) as image:
                predictions = await self._classifier.classify(image)
        except SessionUnavailableError:
            raise
        except Exception:
            logger.exception("Failed to classify %s", raw.name)
            record = self._build_record(raw, (UNKNOWN_LABEL,), DEGRADED_CONFIDENCE)
            return ItemOutcome(OutcomeKind.DEGRADED, raw.name, f"Failed to process {raw.name}", record)

        labels = tuple(prediction.label for prediction in predictions)
        confidence = predictions[0].score if predictions else 0.0
        record = self._build_record(raw, labels, confidence)
        top = labels[0] if labels else "nothing"
        return ItemOutcome(OutcomeKind.CLASSIFIED, raw.name, f"{raw.name} classified as: {top}", record)

    def _build_record(self, raw: RawFile, labels: tuple[str, ...], confidence: float) -> PhotoRecord:
        return PhotoRecord(
            id=self._id_factory(),
            name=raw.name,
            media_type=raw.media_type,
            content=raw.content,
            categories=labels,
            confidence=confidence,
            created_at=self._clock(),
        )


# ---------------------------------------------------------------------------
# Batch queue
# ---------------------------------------------------------------------------


class BatchQueue:
    """Runs submitted batches one at a time, in submission order."""

    def __init__(self, processor: BatchProcessor, gallery: Gallery) -> None:
        self._processor = processor
        self._gallery = gallery
        self._lock = asyncio.Lock()
        self._waiting = 0

    @property
    def pending_batches(self) -> int:
        """Batches submitted but not yet finished, including the running one."""
        return self._waiting

    async def submit(self, files: Sequence[RawFile], notifier: Notifier | None = None) -> IngestReport:
        """Ingest one batch after all earlier batches, then add it to the gallery.

        Raises:
            BatchAbortedError: If no classifier session can be acquired. The
                records produced before the failure are still added.
        """
        report = IngestReport()

        def collect(notification: Notification) -> None:
            report.notifications.append(notification)
            log_notification(notification)
            if notifier is not None:
                notifier(notification)

        self._waiting += 1
        try:
            async with self._lock:
                try:
                    report.records = await self._processor.ingest(files, collect)
                except BatchAbortedError as exc:
                    self._gallery.add_batch(exc.report.records)
                    raise
                self._gallery.add_batch(report.records)
        finally:
            self._waiting -= 1
        return report
