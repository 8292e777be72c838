"""In-memory vocabulary store, scoped to one solver run."""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable
from rosetta.schema import VocabularyEntry

log = logging.getLogger(__name__)


@dataclass
class AddResult:
    added: int
    skipped: int
    total: int


@dataclass
class UpdateResult:
    updated: int
    skipped: int
    total: int


@dataclass
class RemoveResult:
    removed: int
    not_found: int
    total: int


@dataclass
class ClearResult:
    removed: int


# (action, entries touched, total after) -> None
ChangeListener = Callable[[str, list[VocabularyEntry], int], None]


class VocabularyStore:
    """
    Vocabulary keyed by `foreign_form`.

    Writes happen only in the sequential hypothesis and improvement steps.
    During a verification pass the store is locked with `read_only()` and
    verifiers read an immutable `snapshot()`.
    """

    def __init__(self, on_change: ChangeListener | None = None):
        """
        Initialize an empty store.

        Args:
            on_change: Callback invoked after every write that changed something
        """
        self._entries: dict[str, VocabularyEntry] = {}
        self._on_change = on_change
        self._locked = False

    def get(self) -> list[VocabularyEntry]:
        """All entries in insertion order."""
        return list(self._entries.values())

    def snapshot(self) -> tuple[VocabularyEntry, ...]:
        """Immutable view for concurrent readers."""
        return tuple(self._entries.values())

    def count(self) -> int:
        return len(self._entries)

    def __contains__(self, foreign_form: str) -> bool:
        return foreign_form in self._entries

    def add(self, entries: list[VocabularyEntry]) -> AddResult:
        """
        Add new entries. Entries whose foreign_form already exists are skipped.

        Args:
            entries: Entries to add

        Returns:
            AddResult with added/skipped counts and the new total
        """
        self._check_writable()
        added = []
        skipped = 0
        for entry in entries:
            if entry.foreign_form in self._entries:
                skipped += 1
                continue
            self._entries[entry.foreign_form] = entry
            added.append(entry)

        log.info(f"[VOCAB:ADD] Added {len(added)}, skipped {skipped}, total {self.count()}")
        self._notify("add", added)
        return AddResult(added=len(added), skipped=skipped, total=self.count())

    def update(self, entries: list[VocabularyEntry]) -> UpdateResult:
        """
        Overwrite existing entries. Entries whose foreign_form is unknown are skipped.

        Args:
            entries: Replacement entries

        Returns:
            UpdateResult with updated/skipped counts and the new total
        """
        self._check_writable()
        updated = []
        skipped = 0
        for entry in entries:
            if entry.foreign_form not in self._entries:
                skipped += 1
                continue
            self._entries[entry.foreign_form] = entry
            updated.append(entry)

        log.info(f"[VOCAB:UPDATE] Updated {len(updated)}, skipped {skipped}, total {self.count()}")
        self._notify("update", updated)
        return UpdateResult(updated=len(updated), skipped=skipped, total=self.count())

    def remove(self, foreign_forms: list[str]) -> RemoveResult:
        """
        Remove entries by key.

        Args:
            foreign_forms: Keys to remove

        Returns:
            RemoveResult with removed/not-found counts and the new total
        """
        self._check_writable()
        removed = []
        not_found = 0
        for form in foreign_forms:
            entry = self._entries.pop(form, None)
            if entry is None:
                not_found += 1
            else:
                removed.append(entry)

        log.info(f"[VOCAB:REMOVE] Removed {len(removed)}, not found {not_found}, total {self.count()}")
        self._notify("remove", removed)
        return RemoveResult(removed=len(removed), not_found=not_found, total=self.count())

    def clear(self) -> ClearResult:
        """Remove every entry."""
        self._check_writable()
        removed = list(self._entries.values())
        self._entries.clear()

        log.info(f"[VOCAB:CLEAR] Cleared {len(removed)} vocabulary entries")
        self._notify("clear", removed)
        return ClearResult(removed=len(removed))

    @contextmanager
    def read_only(self):
        """Reject writes for the duration of a verification pass."""
        previous = self._locked
        self._locked = True
        try:
            yield self.snapshot()
        finally:
            self._locked = previous

    def _check_writable(self):
        if self._locked:
            raise RuntimeError("vocabulary store is read-only during verification")

    def _notify(self, action: str, entries: list[VocabularyEntry]):
        if self._on_change and entries:
            self._on_change(action, entries, self.count())
