"""Gallery domain records."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

CATEGORY_DELIMITER = ","
UNKNOWN_LABEL = "unknown"
DEGRADED_CONFIDENCE = 0.5


def canonical_category(label: str) -> str:
    """Return the grouping identity of a label: the text before its first delimiter.

    ImageNet-style labels carry synonyms after a comma ("tabby, tabby cat");
    only the leading name identifies the category.
    """
    return label.split(CATEGORY_DELIMITER, 1)[0].strip()


@dataclass(frozen=True)
class RawFile:
    """An uploaded file as handed over by the presentation layer."""

    name: str
    media_type: str
    content: bytes

    @property
    def is_image(self) -> bool:
        return self.media_type.lower().startswith("image/")


@dataclass(frozen=True)
class PhotoRecord:
    """A classified photo owned by the gallery store."""

    id: UUID
    name: str
    media_type: str
    content: bytes
    categories: tuple[str, ...]
    confidence: float
    created_at: datetime

    @property
    def canonical_categories(self) -> tuple[str, ...]:
        return tuple(canonical_category(label) for label in self.categories)

    @property
    def degraded(self) -> bool:
        return self.categories == (UNKNOWN_LABEL,) and self.confidence == DEGRADED_CONFIDENCE
