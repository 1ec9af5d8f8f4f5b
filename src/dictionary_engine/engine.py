"""DictionaryEngine: the public API for importing, querying and deleting."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from dictionary_engine import db as _db
from dictionary_engine.cancel import CancelToken, check_cancelled
from dictionary_engine.config import EngineConfig
from dictionary_engine.exceptions import DictionaryNotFoundError
from dictionary_engine.importer import ImportOrchestrator
from dictionary_engine.models import DictionarySummary, TermRecord
from dictionary_engine.store import HIGH_KEY, DictionaryStore, ProgressCallback

logger = logging.getLogger(__name__)

FRAGMENT_SEPARATOR = "<hr>"
BLOCK_SEPARATOR = "\n\n"
MAX_DID_YOU_MEAN_CHARS = 15


def _join_fragments(term: TermRecord) -> str:
    if len(term.glossary) >= 2:
        return FRAGMENT_SEPARATOR.join(term.glossary)
    return "".join(term.glossary)


def _join_blocks(blocks: list[str]) -> str | None:
    if not blocks:
        return None
    parts: list[str] = []
    for block in blocks:
        if parts:
            parts.append(FRAGMENT_SEPARATOR)
        parts.append(block)
    return BLOCK_SEPARATOR.join(parts)


def _pick_term(terms: list[TermRecord], reading: str) -> TermRecord | None:
    """Prefer the term whose reading matches; else the lowest sequence."""
    if not terms:
        return None
    for term in terms:
        if term.reading == reading:
            return term
    return min(terms, key=lambda t: (t.sequence, t.reading))


class DictionaryEngine:
    """A local multi-dictionary store with lookup and suggestion queries."""

    def __init__(
        self,
        db_path: str | Path | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._db_path = str(db_path if db_path is not None else self._config.db_path)
        self._conn = _db.connect(self._db_path)
        _db.check_schema_version(self._conn)
        _db.init_db(self._conn)
        self._store = DictionaryStore(self._conn)
        self._importer = ImportOrchestrator(self._store, self._config)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> DictionaryEngine:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def store(self) -> DictionaryStore:
        return self._store

    # ------------------------------------------------------------------
    # Import / delete
    # ------------------------------------------------------------------

    def import_dictionary(
        self,
        data: bytes,
        progress_cb: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> DictionarySummary:
        """Import a StarDict or Yomitan archive.

        Args:
            data: Raw archive bytes (ZIP or tar)
            progress_cb: Called with a :class:`~dictionary_engine.models.Progress`
                at every stage and chunk boundary
            cancel: Token checked at every chunk boundary

        Returns:
            The committed DictionarySummary

        Raises:
            DictionaryImportError: If the archive cannot be imported
            OperationCancelledError: If the import was cancelled
            StorageError: If the database fails
        """
        return self._importer.run(data, progress_cb=progress_cb, cancel=cancel)

    def delete_dictionary(
        self,
        title: str,
        progress_cb: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> int:
        """Remove a dictionary and every row that references it.

        Returns:
            The number of per-entity rows deleted

        Raises:
            DictionaryNotFoundError: If no dictionary has this title
            OperationCancelledError: If cancelled; nothing is deleted
        """
        if not self._store.has_dictionary(title):
            raise DictionaryNotFoundError(f"Dictionary not found: {title!r}")
        logger.info(f"Deleting dictionary {title!r}")
        deleted = self._store.delete_dictionary(
            title,
            batch_size=self._config.batch_size,
            progress_cb=progress_cb,
            progress_interval=self._config.progress_interval,
            cancel=cancel,
        )
        logger.info(f"Deleted {title!r}: {deleted} rows")
        return deleted

    # ------------------------------------------------------------------
    # Dictionary listing
    # ------------------------------------------------------------------

    def list_dictionaries(self) -> list[DictionarySummary]:
        """Installed dictionaries in install order."""
        return self._store.list_dictionaries()

    def get_dictionary(self, title: str) -> DictionarySummary | None:
        return self._store.get_dictionary(title)

    def term_counts(self) -> dict[str, tuple[int, int]]:
        """Per dictionary: (recorded ``terms_total``, actual term rows)."""
        actual = self._store.term_counts()
        return {
            d.title: (d.counts.terms_total, actual.get(d.title, 0))
            for d in self._store.list_dictionaries()
        }

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def lookup(
        self,
        expression: str,
        reading: str | None = None,
        cancel: CancelToken | None = None,
    ) -> str | None:
        """Definitions of ``expression`` from every dictionary, in install order.

        Returns None when no dictionary has a match.
        """
        titles = [d.title for d in self._store.list_dictionaries()]
        return self._lookup(expression, reading, titles, cancel)

    def lookup_in_dictionaries(
        self,
        expression: str,
        dict_names: Sequence[str],
        reading: str | None = None,
        order: Sequence[str] | None = None,
        cancel: CancelToken | None = None,
    ) -> str | None:
        """Like :meth:`lookup`, restricted to ``dict_names``.

        Results follow ``order`` when given; titles missing from it come
        last in install order.
        """
        wanted = set(dict_names)
        titles = [
            d.title for d in self._store.list_dictionaries() if d.title in wanted
        ]
        if order is not None:
            rank = {title: i for i, title in enumerate(order)}
            titles.sort(key=lambda t: rank.get(t, len(rank)))
        return self._lookup(expression, reading, titles, cancel)

    def _lookup(
        self,
        expression: str,
        reading: str | None,
        titles: list[str],
        cancel: CancelToken | None,
    ) -> str | None:
        if not expression:
            return None
        reading = reading or expression
        blocks: list[str] = []
        with self._store.read_transaction():
            for title in titles:
                check_cancelled(cancel)
                terms = self._store.terms_by_expression(title, expression)
                if not terms and reading != expression:
                    terms = self._store.terms_by_reading(title, reading)
                term = _pick_term(terms, reading)
                if term is not None and term.glossary:
                    blocks.append(_join_fragments(term))
        return _join_blocks(blocks)

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    def suggest_prefix(
        self,
        prefix: str,
        max_results: int | None = None,
        dict_names: Sequence[str] | None = None,
    ) -> list[str]:
        """Distinct expressions starting with ``prefix``, sorted ascending.

        ``max_results=None`` means unlimited.  ``dict_names=None`` searches
        every installed dictionary through the global expression index.
        """
        if not prefix or (max_results is not None and max_results <= 0):
            return []
        found: set[str] = set()
        upper = prefix + HIGH_KEY

        if dict_names is None:
            for term in self._store.range_scan(
                "term_global_expression_index", (prefix,), (upper,)
            ):
                found.add(term.expression)
                if max_results is not None and len(found) >= max_results:
                    break
            return sorted(found)

        for title in dict_names:
            for term in self._store.range_scan(
                "term_expression_index", (title, prefix), (title, upper)
            ):
                found.add(term.expression)
                if max_results is not None and len(found) >= max_results:
                    return sorted(found)
        return sorted(found)

    def suggest_did_you_mean(
        self,
        word: str,
        next_chars: str,
        max_results: int | None = 10,
        dict_names: Sequence[str] | None = None,
    ) -> list[str]:
        """Expand ``word`` with the characters that follow it in the text.

        Candidates are ``word + next_chars[:k]`` for k up to 15, plus the
        same with whitespace removed from ``next_chars``.  Returns ``[]``
        when no candidate other than ``word`` exists; otherwise ``word``
        (if stored) followed by the existing candidates, shortest first.
        """
        if not word or not next_chars:
            return []
        if max_results is not None and max_results <= 0:
            return []

        candidates = [
            word + next_chars[:k]
            for k in range(1, min(len(next_chars), MAX_DID_YOU_MEAN_CHARS) + 1)
        ]
        if any(c.isspace() for c in next_chars):
            stripped = "".join(next_chars.split())
            candidates.extend(
                word + stripped[:k]
                for k in range(1, min(len(stripped), MAX_DID_YOU_MEAN_CHARS) + 1)
            )
        candidates = list(dict.fromkeys(candidates))

        found = self._store.existing_expressions([word, *candidates], dict_names)
        alternatives = [c for c in candidates if c in found and c != word]
        if not alternatives:
            return []
        results = ([word] if word in found else []) + alternatives
        return results if max_results is None else results[:max_results]
