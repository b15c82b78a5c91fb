"""In-memory gallery store.

Photos are kept in insertion order, which is also the display order.
Categories are never cached: they are derived from the current records on
every call so inserts and deletes are reflected immediately.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable
    from uuid import UUID

    from autogallery.gallery.models import PhotoRecord

logger = logging.getLogger(__name__)


class GalleryStore:
    """Ordered collection of classified photos."""

    def __init__(self) -> None:
        self._records: dict[UUID, PhotoRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, photo_id: object) -> bool:
        return photo_id in self._records

    def insert_batch(self, records: Iterable[PhotoRecord]) -> None:
        """Append records to the end of the collection.

        The batch is all-or-nothing: a duplicate id, whether already stored or
        repeated within the batch, raises ``ValueError`` before anything is added.
        """
        batch = list(records)
        seen: set[UUID] = set()
        for record in batch:
            if record.id in self._records or record.id in seen:
                raise ValueError(f"Duplicate photo id: {record.id}")
            seen.add(record.id)
        for record in batch:
            self._records[record.id] = record
        logger.debug("Inserted %d photos (total %d)", len(batch), len(self._records))

    def delete(self, photo_id: UUID) -> bool:
        """Remove one photo by id. Returns False when the id is not present."""
        removed = self._records.pop(photo_id, None)
        if removed is None:
            return False
        logger.info("Deleted photo %s (%s)", photo_id, removed.name)
        return True

    def get(self, photo_id: UUID) -> PhotoRecord | None:
        return self._records.get(photo_id)

    def list(self) -> list[PhotoRecord]:
        """Return every photo in insertion order."""
        return list(self._records.values())

    def categories(self) -> list[str]:
        """Return the unique canonical categories across all photos, sorted."""
        return sorted(
            {category for record in self._records.values() for category in record.canonical_categories if category}
        )

    def category_counts(self) -> dict[str, int]:
        """Map each canonical category to the number of photos carrying it."""
        counts: Counter[str] = Counter()
        for record in self._records.values():
            counts.update({category for category in record.canonical_categories if category})
        return {category: counts[category] for category in sorted(counts)}
