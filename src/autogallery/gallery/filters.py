"""Category filter state and the gallery facade that keeps it consistent.

The filter is either "all" or one canonical category that currently exists
in the store. The visible subset is never stored; it is recomputed from the
store and the filter on every read.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar

from autogallery.gallery.models import canonical_category
from autogallery.gallery.store import GalleryStore

if TYPE_CHECKING:
    from collections.abc import Iterable
    from uuid import UUID

    from autogallery.gallery.models import PhotoRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FilterState:
    """Either ``FilterState.ALL`` (category is None) or a single category."""

    category: str | None = None

    ALL: ClassVar[FilterState]

    @property
    def is_all(self) -> bool:
        return self.category is None

    def __str__(self) -> str:
        return "all" if self.category is None else self.category


FilterState.ALL = FilterState()


def matches(record: PhotoRecord, category: str) -> bool:
    """True when any label's canonical form contains ``category``, ignoring case."""
    needle = category.casefold()
    return any(needle in label.casefold() for label in record.canonical_categories)


class FilterStateMachine:
    """Tracks the selected category filter."""

    def __init__(self) -> None:
        self._state = FilterState.ALL

    @property
    def state(self) -> FilterState:
        return self._state

    def select_all(self) -> FilterState:
        self._state = FilterState.ALL
        return self._state

    def select_category(self, category: str, store: GalleryStore) -> bool:
        """Select ``category`` if the store currently has it.

        Returns False and leaves the state untouched otherwise.
        """
        wanted = canonical_category(category)
        if wanted not in store.categories():
            logger.debug("Ignoring selection of absent category %r", wanted)
            return False
        self._state = FilterState(wanted)
        return True

    def reconcile(self, store: GalleryStore) -> FilterState:
        """Fall back to "all" when the selected category has left the store."""
        if not self._state.is_all and self._state.category not in store.categories():
            logger.info("Category %r no longer present, resetting filter", self._state.category)
            self._state = FilterState.ALL
        return self._state

    def visible(self, store: GalleryStore) -> list[PhotoRecord]:
        """Return the photos shown under the current filter, in store order."""
        records = store.list()
        if self._state.category is None:
            return records
        return [record for record in records if matches(record, self._state.category)]


class Gallery:
    """A store plus its filter; every mutation reconciles the selection."""

    def __init__(self, store: GalleryStore | None = None, filter_machine: FilterStateMachine | None = None) -> None:
        self.store = store if store is not None else GalleryStore()
        self.filter = filter_machine if filter_machine is not None else FilterStateMachine()

    def add_batch(self, records: Iterable[PhotoRecord]) -> None:
        self.store.insert_batch(records)
        self.filter.reconcile(self.store)

    def delete(self, photo_id: UUID) -> bool:
        removed = self.store.delete(photo_id)
        self.filter.reconcile(self.store)
        return removed

    def select_all(self) -> FilterState:
        return self.filter.select_all()

    def select_category(self, category: str) -> bool:
        return self.filter.select_category(category, self.store)

    def visible(self) -> list[PhotoRecord]:
        return self.filter.visible(self.store)

    def categories(self) -> list[str]:
        return self.store.categories()
