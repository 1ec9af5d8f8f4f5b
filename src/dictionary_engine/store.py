"""Indexed object store over SQLite: batched writes, range scans, cursor deletes."""

from __future__ import annotations

import dataclasses
import logging
import sqlite3
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from itertools import islice
from typing import Any

from dictionary_engine import db as _db
from dictionary_engine.cancel import CancelToken, check_cancelled
from dictionary_engine.exceptions import (
    DictionaryAlreadyPresentError,
    StorageError,
)
from dictionary_engine.merger import merge_terms
from dictionary_engine.models import (
    DictionaryCounts,
    DictionarySummary,
    KanjiMetaRecord,
    KanjiRecord,
    MediaRecord,
    Progress,
    Stage,
    TagMetaRecord,
    TermMetaRecord,
    TermRecord,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 2000
DEFAULT_PROGRESS_INTERVAL = 2.0

# Sorts after every string under SQLite's BINARY (UTF-8) collation.
HIGH_KEY = "\U0010ffff"

ProgressCallback = Callable[[Progress], None]


def _batches(records: Iterable[Any], size: int) -> Iterator[list[Any]]:
    if size <= 0:
        raise ValueError("batch size must be positive")
    it = iter(records)
    while batch := list(islice(it, size)):
        yield batch


class DictionaryStore:
    """Object stores, indexes and transactions on one SQLite connection.

    Mutations outside an explicit :meth:`write_transaction` each run in
    their own transaction; inside one they become savepoints, so a nested
    failure unwinds only its own work.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._depth = 0
        self._savepoints = 0

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def write_transaction(self) -> Iterator[DictionaryStore]:
        """Serialize writers; commit on success, roll back on any error."""
        self._depth += 1
        savepoint = None
        try:
            if self._depth == 1:
                self._conn.execute("BEGIN IMMEDIATE")
            else:
                self._savepoints += 1
                savepoint = f"sp_{self._savepoints}"
                self._conn.execute(f"SAVEPOINT {savepoint}")
        except sqlite3.Error as e:
            self._depth -= 1
            raise StorageError(f"Cannot start write transaction: {e}") from e

        try:
            yield self
        except BaseException:
            try:
                if savepoint is None:
                    self._conn.rollback()
                else:
                    self._conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                    self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            finally:
                self._depth -= 1
            raise
        else:
            self._depth -= 1
            try:
                if savepoint is None:
                    self._conn.commit()
                else:
                    self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            except sqlite3.Error as e:
                if savepoint is None:
                    self._conn.rollback()
                raise StorageError(f"Commit failed: {e}") from e

    @contextmanager
    def read_transaction(self) -> Iterator[DictionaryStore]:
        """A consistent snapshot for multi-statement reads."""
        if self._depth:
            yield self
            return
        self._depth += 1
        try:
            self._conn.execute("BEGIN")
        except sqlite3.Error as e:
            self._depth -= 1
            raise StorageError(f"Cannot start read transaction: {e}") from e
        try:
            yield self
        finally:
            self._depth -= 1
            self._conn.rollback()

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StorageError(f"Database error: {e}") from e

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(self, table: str, record: Any) -> None:
        """Insert ``record``, replacing any row with the same key."""
        spec = _db.get_table(table)
        with self.write_transaction():
            self._upsert(spec, [record])

    def batch_write(
        self,
        table: str,
        records: Iterable[Any],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        merge: bool = True,
        total: int = 0,
        progress_cb: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> int:
        """Write ``records`` in batches, each batch atomically.

        Term rows whose key already exists are merged into the stored row
        when ``merge`` is set; every other table upserts.  Returns the
        number of records written.
        """
        spec = _db.get_table(table)
        written = 0
        for batch in _batches(records, batch_size):
            check_cancelled(cancel)
            with self.write_transaction():
                if spec.name == "terms" and merge:
                    self._merge_terms(batch)
                else:
                    self._upsert(spec, batch)
            written += len(batch)
            logger.debug(f"Wrote {written} {table} rows")
            if progress_cb is not None:
                progress_cb(Progress(
                    Stage.PERSIST,
                    written,
                    total,
                    f"Saved {written} {table} rows to database so far",
                ))
        return written

    def _upsert(self, spec: _db.TableSpec, records: Sequence[Any]) -> None:
        verb = "INSERT OR REPLACE" if spec.key else "INSERT"
        placeholders = ", ".join("?" for _ in spec.columns)
        sql = f"{verb} INTO {spec.name} ({spec.column_list}) VALUES ({placeholders})"
        try:
            self._conn.executemany(sql, [spec.to_row(r) for r in records])
        except sqlite3.Error as e:
            raise StorageError(f"Write to {spec.name} failed: {e}") from e

    def _merge_terms(self, terms: Sequence[TermRecord]) -> None:
        spec = _db.TABLES["terms"]
        placeholders = ", ".join("?" for _ in spec.columns)
        insert = (
            f"INSERT INTO terms ({spec.column_list}) VALUES ({placeholders}) "
            "ON CONFLICT (dictionary, expression, reading) DO NOTHING"
        )
        for term in terms:
            cur = self._execute(insert, spec.to_row(term))
            if cur.rowcount:
                continue
            existing = self.get_term(term.dictionary, term.expression, term.reading)
            if existing is None:
                raise StorageError(
                    f"Term {term.expression!r} vanished during merge"
                )
            merged = merge_terms(existing, term)
            self._upsert(spec, [merged])

    # ------------------------------------------------------------------
    # Range operations
    # ------------------------------------------------------------------

    @staticmethod
    def _range_clause(
        columns: tuple[str, ...],
        lower: Sequence[Any],
        upper: Sequence[Any],
    ) -> tuple[str, list[Any]]:
        n = len(lower)
        if n != len(upper) or not 0 < n <= len(columns):
            raise StorageError(
                f"Range bounds must have between 1 and {len(columns)} "
                "components of equal length"
            )
        key = ", ".join(columns[:n])
        marks = ", ".join("?" for _ in range(n))
        clause = f"({key}) >= ({marks}) AND ({key}) < ({marks})"
        return clause, [*lower, *upper]

    def range_scan(
        self,
        index: str,
        lower: Sequence[Any],
        upper: Sequence[Any],
        *,
        limit: int | None = None,
    ) -> Iterator[Any]:
        """Yield records with ``lower <= key < upper`` in index order.

        Bounds may cover a leading subset of the index columns.
        """
        spec, columns = _db.get_index(index)
        clause, params = self._range_clause(columns, lower, upper)
        sql = (
            f"SELECT * FROM {spec.name} WHERE {clause} "
            f"ORDER BY {', '.join(columns)}"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        for row in self._execute(sql, params):
            yield spec.from_row(row)

    def cursor_delete(
        self,
        index: str,
        lower: Sequence[Any],
        upper: Sequence[Any],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        total: int = 0,
        progress_cb: ProgressCallback | None = None,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
        cancel: CancelToken | None = None,
    ) -> int:
        """Delete every record in a key range, one batch at a time.

        Progress is reported at most once per ``progress_interval``
        seconds, plus once at the end.  Returns the number deleted.
        """
        spec, columns = _db.get_index(index)
        clause, params = self._range_clause(columns, lower, upper)
        sql = (
            f"DELETE FROM {spec.name} WHERE rowid IN "
            f"(SELECT rowid FROM {spec.name} WHERE {clause} LIMIT ?)"
        )
        deleted = 0
        last_report = time.monotonic()
        with self.write_transaction():
            while True:
                check_cancelled(cancel)
                count = self._execute(sql, [*params, batch_size]).rowcount
                if count <= 0:
                    break
                deleted += count
                now = time.monotonic()
                if progress_cb is not None and now - last_report >= progress_interval:
                    last_report = now
                    progress_cb(Progress(
                        Stage.DELETE, deleted, total,
                        f"Deleted {deleted} {spec.name} rows",
                    ))
        if progress_cb is not None:
            progress_cb(Progress(
                Stage.DELETE, deleted, total, f"Deleted {deleted} {spec.name} rows",
            ))
        return deleted

    def sweep_dictionary(self, title: str) -> int:
        """Delete every row tagged with ``title`` from the content tables."""
        removed = 0
        with self.write_transaction():
            for table in _db.CONTENT_TABLES:
                removed += self._execute(
                    f"DELETE FROM {table} WHERE dictionary = ?", (title,)
                ).rowcount
        return removed

    # ------------------------------------------------------------------
    # Dictionary rows
    # ------------------------------------------------------------------

    def get_dictionary(self, title: str) -> DictionarySummary | None:
        row = self._execute(
            "SELECT * FROM dictionaries WHERE title = ?", (title,)
        ).fetchone()
        return _db.row_to_summary(row) if row is not None else None

    def has_dictionary(self, title: str) -> bool:
        row = self._execute(
            "SELECT 1 FROM dictionaries WHERE title = ?", (title,)
        ).fetchone()
        return row is not None

    def list_dictionaries(self) -> list[DictionarySummary]:
        """Installed dictionaries, oldest import first."""
        rows = self._execute(
            "SELECT * FROM dictionaries ORDER BY import_date, rowid"
        ).fetchall()
        return [_db.row_to_summary(r) for r in rows]

    def delete_dictionary_row(self, title: str) -> int:
        return self._execute(
            "DELETE FROM dictionaries WHERE title = ?", (title,)
        ).rowcount

    def count_rows(self, table: str, title: str) -> int:
        spec = _db.get_table(table)
        row = self._execute(
            f"SELECT COUNT(*) FROM {spec.name} WHERE dictionary = ?", (title,)
        ).fetchone()
        return row[0]

    def mode_counts(self, table: str, title: str) -> dict[str, int]:
        spec = _db.get_table(table)
        rows = self._execute(
            f"SELECT mode, COUNT(*) FROM {spec.name} WHERE dictionary = ? "
            "GROUP BY mode ORDER BY mode",
            (title,),
        ).fetchall()
        return {mode: count for mode, count in rows}

    def compute_counts(self, title: str) -> DictionaryCounts:
        return DictionaryCounts(
            terms_total=self.count_rows("terms", title),
            term_meta_total=self.count_rows("term_meta", title),
            kanji_total=self.count_rows("kanji", title),
            kanji_meta_total=self.count_rows("kanji_meta", title),
            tag_meta_total=self.count_rows("tag_meta", title),
            media_total=self.count_rows("media", title),
            term_meta_modes=self.mode_counts("term_meta", title),
            kanji_meta_modes=self.mode_counts("kanji_meta", title),
        )

    def store_dictionary(
        self,
        summary: DictionarySummary,
        *,
        terms: Iterable[TermRecord] = (),
        term_meta: Iterable[TermMetaRecord] = (),
        kanji: Iterable[KanjiRecord] = (),
        kanji_meta: Iterable[KanjiMetaRecord] = (),
        tag_meta: Iterable[TagMetaRecord] = (),
        media: Iterable[MediaRecord] = (),
        batch_size: int = DEFAULT_BATCH_SIZE,
        total_terms: int = 0,
        progress_cb: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> DictionarySummary:
        """Persist a whole dictionary in a single write transaction.

        The ``dictionaries`` row is written last, with counts taken from
        what actually landed, so a reader never sees a dictionary whose
        rows are still missing.  Any failure rolls everything back.
        """
        title = summary.title
        with self.write_transaction():
            if self.has_dictionary(title):
                raise DictionaryAlreadyPresentError(title)
            self.batch_write(
                "terms", terms, batch_size=batch_size, total=total_terms,
                progress_cb=progress_cb, cancel=cancel,
            )
            for table, records in (
                ("term_meta", term_meta),
                ("kanji", kanji),
                ("kanji_meta", kanji_meta),
                ("tag_meta", tag_meta),
                ("media", media),
            ):
                self.batch_write(
                    table, records, batch_size=batch_size, cancel=cancel,
                )
            check_cancelled(cancel)
            stored = dataclasses.replace(summary, counts=self.compute_counts(title))
            self.put("dictionaries", stored)
        logger.info(
            f"Stored dictionary {title!r}: {stored.counts.terms_total} terms"
        )
        return stored

    def delete_dictionary(
        self,
        title: str,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        progress_cb: ProgressCallback | None = None,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
        cancel: CancelToken | None = None,
    ) -> int:
        """Remove a dictionary row and all of its content in one transaction.

        Returns the number of content rows deleted.
        """
        with self.write_transaction():
            total = self.count_rows("terms", title)
            self.delete_dictionary_row(title)
            deleted = self.cursor_delete(
                "term_key_index",
                (title, ""),
                (title, HIGH_KEY),
                batch_size=batch_size,
                total=total,
                progress_cb=progress_cb,
                progress_interval=progress_interval,
                cancel=cancel,
            )
            check_cancelled(cancel)
            deleted += self.sweep_dictionary(title)
        return deleted

    # ------------------------------------------------------------------
    # Term queries
    # ------------------------------------------------------------------

    def get_term(
        self, dictionary: str, expression: str, reading: str,
    ) -> TermRecord | None:
        row = self._execute(
            "SELECT * FROM terms "
            "WHERE dictionary = ? AND expression = ? AND reading = ?",
            (dictionary, expression, reading),
        ).fetchone()
        return _db.TABLES["terms"].from_row(row) if row is not None else None

    def terms_by_expression(self, dictionary: str, expression: str) -> list[TermRecord]:
        rows = self._execute(
            "SELECT * FROM terms WHERE dictionary = ? AND expression = ? "
            "ORDER BY sequence, reading",
            (dictionary, expression),
        ).fetchall()
        return [_db.TABLES["terms"].from_row(r) for r in rows]

    def terms_by_reading(self, dictionary: str, reading: str) -> list[TermRecord]:
        rows = self._execute(
            "SELECT * FROM terms WHERE dictionary = ? AND reading = ? "
            "ORDER BY sequence, expression",
            (dictionary, reading),
        ).fetchall()
        return [_db.TABLES["terms"].from_row(r) for r in rows]

    def existing_expressions(
        self,
        candidates: Iterable[str],
        dictionaries: Sequence[str] | None = None,
    ) -> set[str]:
        """The subset of ``candidates`` stored as an expression."""
        wanted = list(dict.fromkeys(candidates))
        if not wanted:
            return set()
        sql = (
            "SELECT DISTINCT expression FROM terms WHERE expression IN "
            f"({', '.join('?' for _ in wanted)})"
        )
        params: list[Any] = list(wanted)
        if dictionaries is not None:
            if not dictionaries:
                return set()
            sql += f" AND dictionary IN ({', '.join('?' for _ in dictionaries)})"
            params.extend(dictionaries)
        return {row[0] for row in self._execute(sql, params)}

    def term_counts(self) -> dict[str, int]:
        rows = self._execute(
            "SELECT d.title, COUNT(t.expression) FROM dictionaries d "
            "LEFT JOIN terms t ON t.dictionary = d.title "
            "GROUP BY d.title ORDER BY d.import_date, d.rowid"
        ).fetchall()
        return {title: count for title, count in rows}

