"""Database connection, DDL, and row codecs for dictionary-engine."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dictionary_engine.exceptions import StorageError
from dictionary_engine.models import (
    DictionaryCounts,
    DictionarySummary,
    KanjiMetaRecord,
    KanjiRecord,
    MediaRecord,
    TagMetaRecord,
    TermMetaRecord,
    TermRecord,
)

SCHEMA_VERSION = 7

# ---------------------------------------------------------------------------
# JSON type converter
# ---------------------------------------------------------------------------

def _dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False)


def _convert_json(data: bytes) -> Any:
    if data == b"":
        return None
    return json.loads(data)


sqlite3.register_converter("JSON", _convert_json)


# ---------------------------------------------------------------------------
# DDL statements, keyed by the schema version that introduced them
# ---------------------------------------------------------------------------

_DDL_V2 = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT NOT NULL,
    value TEXT,
    UNIQUE (key)
);

CREATE TABLE IF NOT EXISTS dictionaries (
    rowid INTEGER PRIMARY KEY,
    title TEXT NOT NULL,
    revision TEXT NOT NULL,
    version INTEGER NOT NULL,
    sequenced BOOLEAN CHECK( sequenced IN (0, 1) ) DEFAULT 0 NOT NULL,
    import_date REAL NOT NULL,
    format TEXT NOT NULL,
    counts JSON,
    author TEXT,
    url TEXT,
    description TEXT,
    attribution TEXT,
    source_language TEXT,
    target_language TEXT,
    styles TEXT,
    UNIQUE (title)
);
CREATE INDEX IF NOT EXISTS dictionary_import_date_index ON dictionaries (import_date);

CREATE TABLE IF NOT EXISTS terms (
    dictionary TEXT NOT NULL,
    expression TEXT NOT NULL,
    reading TEXT NOT NULL,
    definition_tags JSON,
    rules TEXT DEFAULT '' NOT NULL,
    score INTEGER DEFAULT 0 NOT NULL,
    glossary JSON NOT NULL,
    sequence INTEGER DEFAULT 0 NOT NULL,
    term_tags JSON,
    PRIMARY KEY (dictionary, expression, reading)
);
CREATE INDEX IF NOT EXISTS term_expression_index ON terms (dictionary, expression);
CREATE INDEX IF NOT EXISTS term_reading_index ON terms (dictionary, reading);

CREATE TABLE IF NOT EXISTS kanji (
    dictionary TEXT NOT NULL,
    character TEXT NOT NULL,
    onyomi TEXT DEFAULT '' NOT NULL,
    kunyomi TEXT DEFAULT '' NOT NULL,
    tags JSON,
    meanings JSON,
    stats JSON,
    PRIMARY KEY (dictionary, character)
);

CREATE TABLE IF NOT EXISTS media (
    dictionary TEXT NOT NULL,
    path TEXT NOT NULL,
    media_type TEXT NOT NULL,
    width INTEGER DEFAULT 0 NOT NULL,
    height INTEGER DEFAULT 0 NOT NULL,
    content BLOB,
    PRIMARY KEY (dictionary, path)
);
"""

_DDL_V3 = """
CREATE TABLE IF NOT EXISTS tag_meta (
    dictionary TEXT NOT NULL,
    name TEXT NOT NULL,
    category TEXT DEFAULT '' NOT NULL,
    "order" INTEGER DEFAULT 0 NOT NULL,
    notes TEXT DEFAULT '' NOT NULL,
    score INTEGER DEFAULT 0 NOT NULL,
    PRIMARY KEY (dictionary, name)
);
"""

_DDL_V7 = """
CREATE TABLE IF NOT EXISTS term_meta (
    rowid INTEGER PRIMARY KEY,
    dictionary TEXT NOT NULL,
    expression TEXT NOT NULL,
    mode TEXT NOT NULL,
    data JSON
);
CREATE INDEX IF NOT EXISTS term_meta_expression_index
    ON term_meta (dictionary, expression, mode);

CREATE TABLE IF NOT EXISTS kanji_meta (
    rowid INTEGER PRIMARY KEY,
    dictionary TEXT NOT NULL,
    character TEXT NOT NULL,
    mode TEXT NOT NULL,
    data JSON
);
CREATE INDEX IF NOT EXISTS kanji_meta_character_index
    ON kanji_meta (dictionary, character, mode);

CREATE INDEX IF NOT EXISTS term_global_expression_index ON terms (expression);
"""

_MIGRATIONS: tuple[tuple[int, str], ...] = (
    (2, _DDL_V2),
    (3, _DDL_V3),
    (7, _DDL_V7),
)


# ---------------------------------------------------------------------------
# Connection and schema management
# ---------------------------------------------------------------------------

def connect(db_path: str | Path = ":memory:") -> sqlite3.Connection:
    """Open a database connection with engine PRAGMA settings."""
    db_path_str = str(db_path)
    try:
        conn = sqlite3.connect(
            db_path_str,
            detect_types=sqlite3.PARSE_DECLTYPES,
        )
    except sqlite3.Error as e:
        raise StorageError(f"Cannot open database {db_path_str!r}: {e}") from e
    if db_path_str != ":memory:":
        conn.execute("PRAGMA journal_mode = WAL")
    conn.row_factory = sqlite3.Row
    return conn


def check_schema_version(conn: sqlite3.Connection) -> int | None:
    """Return the stored schema version, or None for a fresh database."""
    try:
        row = conn.execute(
            "SELECT value FROM meta WHERE key = 'schema_version'"
        ).fetchone()
    except sqlite3.OperationalError:
        # meta table doesn't exist - uninitialized DB
        return None
    if row is None:
        return None
    try:
        version = int(row[0])
    except (TypeError, ValueError) as e:
        raise StorageError(f"Unreadable schema version: {row[0]!r}") from e
    if version > SCHEMA_VERSION:
        raise StorageError(
            f"Incompatible schema version: {version} "
            f"(this release supports up to {SCHEMA_VERSION})"
        )
    return version


def init_db(conn: sqlite3.Connection) -> int:
    """Create or upgrade every table to :data:`SCHEMA_VERSION`.

    Each migration step is applied at most once; all steps use
    ``IF NOT EXISTS`` so a partially upgraded file converges.
    Returns the schema version the database ends at.
    """
    current = check_schema_version(conn)
    try:
        for version, ddl in _MIGRATIONS:
            if current is not None and version <= current:
                continue
            conn.executescript(ddl)
            conn.execute(
                "INSERT INTO meta (key, value) VALUES ('schema_version', ?) "
                "ON CONFLICT (key) DO UPDATE SET value = excluded.value",
                (str(version),),
            )
            conn.commit()
        conn.execute(
            "INSERT OR IGNORE INTO meta (key, value) "
            "VALUES ('created_at', strftime('%Y-%m-%dT%H:%M:%f', 'now'))",
        )
        conn.commit()
    except sqlite3.Error as e:
        raise StorageError(f"Schema upgrade failed: {e}") from e
    return SCHEMA_VERSION


# ---------------------------------------------------------------------------
# Row codecs
# ---------------------------------------------------------------------------

def _term_to_row(t: TermRecord) -> tuple:
    return (
        t.dictionary,
        t.expression,
        t.reading,
        _dumps(list(t.definition_tags)),
        t.rules,
        t.score,
        _dumps(list(t.glossary)),
        t.sequence,
        _dumps(list(t.term_tags)),
    )


def _row_to_term(row: sqlite3.Row) -> TermRecord:
    return TermRecord(
        dictionary=row["dictionary"],
        expression=row["expression"],
        reading=row["reading"],
        definition_tags=tuple(row["definition_tags"] or ()),
        rules=row["rules"],
        score=row["score"],
        glossary=tuple(row["glossary"] or ()),
        sequence=row["sequence"],
        term_tags=tuple(row["term_tags"] or ()),
    )


def _term_meta_to_row(m: TermMetaRecord) -> tuple:
    return (m.dictionary, m.expression, m.mode, _dumps(m.data))


def _row_to_term_meta(row: sqlite3.Row) -> TermMetaRecord:
    return TermMetaRecord(
        dictionary=row["dictionary"],
        expression=row["expression"],
        mode=row["mode"],
        data=row["data"],
    )


def _kanji_to_row(k: KanjiRecord) -> tuple:
    return (
        k.dictionary,
        k.character,
        k.onyomi,
        k.kunyomi,
        _dumps(list(k.tags)),
        _dumps(list(k.meanings)),
        _dumps(k.stats),
    )


def _row_to_kanji(row: sqlite3.Row) -> KanjiRecord:
    return KanjiRecord(
        dictionary=row["dictionary"],
        character=row["character"],
        onyomi=row["onyomi"],
        kunyomi=row["kunyomi"],
        tags=tuple(row["tags"] or ()),
        meanings=tuple(row["meanings"] or ()),
        stats=row["stats"] or {},
    )


def _kanji_meta_to_row(m: KanjiMetaRecord) -> tuple:
    return (m.dictionary, m.character, m.mode, _dumps(m.data))


def _row_to_kanji_meta(row: sqlite3.Row) -> KanjiMetaRecord:
    return KanjiMetaRecord(
        dictionary=row["dictionary"],
        character=row["character"],
        mode=row["mode"],
        data=row["data"],
    )


def _tag_meta_to_row(t: TagMetaRecord) -> tuple:
    return (t.dictionary, t.name, t.category, t.order, t.notes, t.score)


def _row_to_tag_meta(row: sqlite3.Row) -> TagMetaRecord:
    return TagMetaRecord(
        dictionary=row["dictionary"],
        name=row["name"],
        category=row["category"],
        order=row["order"],
        notes=row["notes"],
        score=row["score"],
    )


def _media_to_row(m: MediaRecord) -> tuple:
    return (
        m.dictionary, m.path, m.media_type, m.width, m.height, m.content,
    )


def _row_to_media(row: sqlite3.Row) -> MediaRecord:
    return MediaRecord(
        dictionary=row["dictionary"],
        path=row["path"],
        media_type=row["media_type"],
        width=row["width"],
        height=row["height"],
        content=row["content"] or b"",
    )


def _summary_to_row(s: DictionarySummary) -> tuple:
    return (
        s.title,
        s.revision,
        s.version,
        1 if s.sequenced else 0,
        s.import_date,
        s.format,
        _dumps(s.counts.to_dict()),
        s.author,
        s.url,
        s.description,
        s.attribution,
        s.source_language,
        s.target_language,
        s.styles,
    )


def row_to_summary(row: sqlite3.Row) -> DictionarySummary:
    return DictionarySummary(
        title=row["title"],
        revision=row["revision"],
        version=row["version"],
        sequenced=bool(row["sequenced"]),
        import_date=row["import_date"],
        format=row["format"],
        counts=DictionaryCounts.from_dict(row["counts"]),
        author=row["author"],
        url=row["url"],
        description=row["description"],
        attribution=row["attribution"],
        source_language=row["source_language"],
        target_language=row["target_language"],
        styles=row["styles"],
    )


@dataclass(frozen=True, slots=True)
class TableSpec:
    """Column layout and codecs of one object store."""

    name: str
    columns: tuple[str, ...]
    key: tuple[str, ...]
    to_row: Callable[[Any], tuple]
    from_row: Callable[[sqlite3.Row], Any]

    @property
    def column_list(self) -> str:
        return ", ".join(f'"{c}"' for c in self.columns)


TABLES: dict[str, TableSpec] = {
    "dictionaries": TableSpec(
        "dictionaries",
        (
            "title", "revision", "version", "sequenced", "import_date",
            "format", "counts", "author", "url", "description",
            "attribution", "source_language", "target_language", "styles",
        ),
        ("title",),
        _summary_to_row,
        row_to_summary,
    ),
    "terms": TableSpec(
        "terms",
        (
            "dictionary", "expression", "reading", "definition_tags",
            "rules", "score", "glossary", "sequence", "term_tags",
        ),
        ("dictionary", "expression", "reading"),
        _term_to_row,
        _row_to_term,
    ),
    "term_meta": TableSpec(
        "term_meta",
        ("dictionary", "expression", "mode", "data"),
        (),
        _term_meta_to_row,
        _row_to_term_meta,
    ),
    "kanji": TableSpec(
        "kanji",
        (
            "dictionary", "character", "onyomi", "kunyomi", "tags",
            "meanings", "stats",
        ),
        ("dictionary", "character"),
        _kanji_to_row,
        _row_to_kanji,
    ),
    "kanji_meta": TableSpec(
        "kanji_meta",
        ("dictionary", "character", "mode", "data"),
        (),
        _kanji_meta_to_row,
        _row_to_kanji_meta,
    ),
    "tag_meta": TableSpec(
        "tag_meta",
        ("dictionary", "name", "category", "order", "notes", "score"),
        ("dictionary", "name"),
        _tag_meta_to_row,
        _row_to_tag_meta,
    ),
    "media": TableSpec(
        "media",
        ("dictionary", "path", "media_type", "width", "height", "content"),
        ("dictionary", "path"),
        _media_to_row,
        _row_to_media,
    ),
}

# index name -> (table, ordered key columns)
INDEXES: dict[str, tuple[str, tuple[str, ...]]] = {
    "dictionary_import_date_index": ("dictionaries", ("import_date",)),
    "term_key_index": ("terms", ("dictionary", "expression", "reading")),
    "term_expression_index": ("terms", ("dictionary", "expression")),
    "term_reading_index": ("terms", ("dictionary", "reading")),
    "term_global_expression_index": ("terms", ("expression",)),
    "term_meta_expression_index": (
        "term_meta", ("dictionary", "expression", "mode"),
    ),
    "kanji_character_index": ("kanji", ("dictionary", "character")),
    "kanji_meta_character_index": (
        "kanji_meta", ("dictionary", "character", "mode"),
    ),
    "tag_meta_name_index": ("tag_meta", ("dictionary", "name")),
    "media_path_index": ("media", ("dictionary", "path")),
}

# Tables holding per-dictionary rows, swept on delete and failed import.
CONTENT_TABLES = ("terms", "term_meta", "kanji", "kanji_meta", "tag_meta", "media")


def get_table(name: str) -> TableSpec:
    try:
        return TABLES[name]
    except KeyError:
        raise StorageError(f"Unknown table: {name!r}") from None


def get_index(name: str) -> tuple[TableSpec, tuple[str, ...]]:
    try:
        table, columns = INDEXES[name]
    except KeyError:
        raise StorageError(f"Unknown index: {name!r}") from None
    return TABLES[table], columns
