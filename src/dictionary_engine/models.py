"""Domain model dataclasses and enums for dictionary-engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class DictionaryFormat(str, Enum):
    """Archive wire formats understood by the importer."""

    STARDICT = "stardict"
    YOMITAN = "yomitan"
    UNKNOWN = "unknown"


class Stage(str, Enum):
    """Pipeline states of an import, plus the delete operation."""

    START = "start"
    READ_ARCHIVE = "read_archive"
    DETECT = "detect"
    PARSE = "parse"
    MERGE = "merge"
    PERSIST = "persist"
    COMMIT = "commit"
    FAILED = "failed"
    DELETE = "delete"


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class DictionaryCounts:
    """Row totals recorded for an installed dictionary."""

    terms_total: int = 0
    term_meta_total: int = 0
    kanji_total: int = 0
    kanji_meta_total: int = 0
    tag_meta_total: int = 0
    media_total: int = 0
    term_meta_modes: dict[str, int] = field(default_factory=dict)
    kanji_meta_modes: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "termsTotal": self.terms_total,
            "termMetaTotal": self.term_meta_total,
            "kanjiTotal": self.kanji_total,
            "kanjiMetaTotal": self.kanji_meta_total,
            "tagMetaTotal": self.tag_meta_total,
            "mediaTotal": self.media_total,
            "termMetaModes": dict(self.term_meta_modes),
            "kanjiMetaModes": dict(self.kanji_meta_modes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DictionaryCounts:
        data = data or {}
        return cls(
            terms_total=data.get("termsTotal", 0),
            term_meta_total=data.get("termMetaTotal", 0),
            kanji_total=data.get("kanjiTotal", 0),
            kanji_meta_total=data.get("kanjiMetaTotal", 0),
            tag_meta_total=data.get("tagMetaTotal", 0),
            media_total=data.get("mediaTotal", 0),
            term_meta_modes=dict(data.get("termMetaModes") or {}),
            kanji_meta_modes=dict(data.get("kanjiMetaModes") or {}),
        )


@dataclass(frozen=True, slots=True)
class DictionarySummary:
    """An installed dictionary (one row of the ``dictionaries`` table)."""

    title: str
    revision: str
    version: int
    sequenced: bool
    import_date: float
    format: str
    counts: DictionaryCounts
    author: str | None = None
    url: str | None = None
    description: str | None = None
    attribution: str | None = None
    source_language: str | None = None
    target_language: str | None = None
    styles: str | None = None


@dataclass(frozen=True, slots=True)
class TermRecord:
    """A headword entry with its ordered glossary fragments."""

    dictionary: str
    expression: str
    reading: str
    definition_tags: tuple[str, ...] = ()
    rules: str = ""
    score: int = 0
    glossary: tuple[str, ...] = ()
    sequence: int = 0
    term_tags: tuple[str, ...] = ()

    @property
    def key(self) -> tuple[str, str]:
        return (self.expression, self.reading)


@dataclass(frozen=True, slots=True)
class TermMetaRecord:
    """Per-expression metadata such as frequency or pitch accent."""

    dictionary: str
    expression: str
    mode: str
    data: Any


@dataclass(frozen=True, slots=True)
class KanjiRecord:
    """A single-character entry with readings and meanings."""

    dictionary: str
    character: str
    onyomi: str = ""
    kunyomi: str = ""
    tags: tuple[str, ...] = ()
    meanings: tuple[str, ...] = ()
    stats: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class KanjiMetaRecord:
    """Per-character metadata (frequency, usually)."""

    dictionary: str
    character: str
    mode: str
    data: Any


@dataclass(frozen=True, slots=True)
class TagMetaRecord:
    """Definition of a tag name used by terms and kanji."""

    dictionary: str
    name: str
    category: str = ""
    order: int = 0
    notes: str = ""
    score: int = 0


@dataclass(frozen=True, slots=True)
class MediaRecord:
    """A media file referenced from structured content."""

    dictionary: str
    path: str
    media_type: str
    width: int
    height: int
    content: bytes


@dataclass(frozen=True, slots=True)
class Progress:
    """A progress notification passed to import and delete callbacks."""

    stage: Stage
    current: int
    total: int
    message: str = ""


def format_progress(current: int, total: int, unit: str = "entries") -> str:
    """Render ``current/total unit (pct%)``."""
    pct = round(current / total * 100) if total > 0 else 0
    return f"{current}/{total} {unit} ({pct}%)"
