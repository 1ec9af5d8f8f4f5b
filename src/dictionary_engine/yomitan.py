"""Yomitan parser: ``index.json`` plus numbered term, meta, kanji and tag banks."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from html import escape
from typing import Any

from dictionary_engine.archive import Archive, basename
from dictionary_engine.exceptions import InvalidMetadataError
from dictionary_engine.models import (
    KanjiMetaRecord,
    KanjiRecord,
    MediaRecord,
    TagMetaRecord,
    TermMetaRecord,
    TermRecord,
)
from dictionary_engine.sanitizer import sanitize_html

logger = logging.getLogger(__name__)

DEFAULT_VERSION = 3

TERM_BANK = "term_bank"
TERM_META_BANK = "term_meta_bank"
KANJI_BANK = "kanji_bank"
KANJI_META_BANK = "kanji_meta_bank"
TAG_BANK = "tag_bank"

_BANK_RES = {
    kind: re.compile(rf"^{kind}_\d+\.json$")
    for kind in (TERM_BANK, TERM_META_BANK, KANJI_BANK, KANJI_META_BANK, TAG_BANK)
}
_TAG_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9-]*$")
_VOID_TAGS = frozenset({"br", "hr", "wbr", "img"})
_CLASSED_TAGS = ("div", "ol", "li", "details", "summary")
_IMAGE_STYLE = "max-width:200px;max-height:200px"

_MEDIA_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "svg": "image/svg+xml",
    "webp": "image/webp",
    "bmp": "image/bmp",
    "avif": "image/avif",
}

# path -> (width, height) as declared by the referencing node
MediaRefs = dict[str, tuple[int, int]]


@dataclass(frozen=True, slots=True)
class YomitanIndex:
    """Parsed ``index.json``."""

    title: str
    revision: str
    version: int
    sequenced: bool = False
    author: str | None = None
    url: str | None = None
    description: str | None = None
    attribution: str | None = None
    source_language: str | None = None
    target_language: str | None = None
    frequency_mode: str | None = None
    tag_meta: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# index.json and bank discovery
# ---------------------------------------------------------------------------

def load_json(data: bytes, member: str) -> Any:
    try:
        return json.loads(data.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidMetadataError(f"Malformed JSON: {e}", member=member) from e


def find_member(archive: Archive, name: str) -> str | None:
    """Find a member by basename, preferring the shallowest path."""
    matches = [n for n in archive.names() if basename(n) == name]
    if not matches:
        return None
    return min(matches, key=lambda n: (n.count("/"), n))


def parse_index(data: bytes, member: str = "index.json") -> YomitanIndex:
    index = load_json(data, member)
    if not isinstance(index, dict):
        raise InvalidMetadataError("index.json must be an object", member=member)
    title = index.get("title")
    revision = index.get("revision")
    if not title or not revision:
        raise InvalidMetadataError(
            "missing required fields 'title' and 'revision'", member=member
        )
    raw_version = index.get("version") or index.get("format") or DEFAULT_VERSION
    try:
        version = int(raw_version)
    except (TypeError, ValueError) as e:
        raise InvalidMetadataError(
            f"version is not an integer: {raw_version!r}", member=member
        ) from e

    return YomitanIndex(
        title=str(title),
        revision=str(revision),
        version=version,
        sequenced=bool(index.get("sequenced", False)),
        author=index.get("author"),
        url=index.get("url"),
        description=index.get("description"),
        attribution=index.get("attribution"),
        source_language=index.get("sourceLanguage"),
        target_language=index.get("targetLanguage"),
        frequency_mode=index.get("frequencyMode"),
        tag_meta=index.get("tagMeta") if isinstance(index.get("tagMeta"), dict) else None,
    )


def read_index(archive: Archive) -> YomitanIndex:
    member = find_member(archive, "index.json")
    if member is None:
        raise InvalidMetadataError("No index.json found in archive")
    return parse_index(archive.read(member), member)


def find_banks(archive: Archive, kind: str) -> list[str]:
    """Member names of one bank kind, in lexical filename order."""
    pattern = _BANK_RES[kind]
    return sorted(n for n in archive.names() if pattern.match(basename(n)))


def read_styles(archive: Archive) -> str | None:
    member = find_member(archive, "styles.css")
    if member is None:
        return None
    return archive.read(member).decode("utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Structured content
# ---------------------------------------------------------------------------

def structured_content_to_html(content: Any, media: MediaRefs | None = None) -> str:
    """Flatten a structured-content tree to HTML.

    Image paths met along the way are recorded in ``media``.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return escape(content)
    if isinstance(content, list):
        return "".join(structured_content_to_html(c, media) for c in content)
    if not isinstance(content, dict):
        return escape(str(content))

    tag = content.get("tag")
    if tag:
        return _render_tag(str(tag), content, media)
    if content.get("type") == "image":
        return _render_img(content, media)
    if content.get("content") is not None:
        return structured_content_to_html(content["content"], media)
    if content.get("type") == "text":
        return escape(content.get("text") or "")
    return ""


def _render_img(node: dict, media: MediaRefs | None) -> str:
    path = node.get("path") or ""
    if path and media is not None:
        media.setdefault(path, (_int(node.get("width")), _int(node.get("height"))))
    shown = path or "unknown"
    title = node.get("title") or f"Image: {shown}"
    return (
        f'<img src="{escape(shown)}" alt="{escape(str(title))}" '
        f'style="{_IMAGE_STYLE}">'
    )


def _render_tag(tag: str, node: dict, media: MediaRefs | None) -> str:
    if tag == "img":
        return _render_img(node, media)

    inner = structured_content_to_html(node.get("content"), media)

    if tag == "a":
        href = str(node.get("href") or "#")
        if node.get("content") is None:
            inner = escape(href)
        rel = ' rel="noreferrer noopener" target="_blank"' if href.startswith("http") else ""
        return f'<a href="{escape(href)}"{rel}>{inner}</a>'

    if tag in _CLASSED_TAGS:
        sc = node.get("data-sc-content")
        extra = f' data-sc-content="{escape(str(sc))}"' if sc else ""
        return f'<{tag} class="gloss-sc-{tag}"{extra}>{inner}</{tag}>'

    if not _TAG_NAME_RE.match(tag):
        return inner

    attrs = [
        f'{key}="{escape(str(value))}"'
        for key, value in node.items()
        if key not in ("tag", "content", "data-sc-content")
        and isinstance(value, (str, int, float, bool))
    ]
    attr_text = " " + " ".join(attrs) if attrs else ""
    if tag in _VOID_TAGS:
        return f"<{tag}{attr_text}>"
    return f"<{tag}{attr_text}>{inner}</{tag}>"


def glossary_item_to_html(item: Any, media: MediaRefs | None = None) -> str:
    """Render one glossary element (string, text, image or structured content)."""
    if isinstance(item, str):
        return escape(item)
    if isinstance(item, dict) and item.get("type") == "text":
        return escape(item.get("text") or "")
    return structured_content_to_html(item, media)


# ---------------------------------------------------------------------------
# Bank record conversion
# ---------------------------------------------------------------------------

def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _tags(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return tuple(value.split())
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value if v)
    return (str(value),)


def convert_term(
    row: list,
    dictionary: str,
    version: int,
    media: MediaRefs | None = None,
) -> TermRecord:
    """Map one positional term-bank row to a :class:`TermRecord`."""
    if version == 1:
        expression, reading, definition_tags, rules, score, *glossary = row
        sequence, term_tags = 1, None
    else:
        padded = list(row) + [None] * (8 - len(row))
        (expression, reading, definition_tags, rules, score,
         glossary, sequence, term_tags) = padded[:8]
        if glossary is None:
            glossary = []
        elif not isinstance(glossary, list):
            glossary = [glossary]

    expression = str(expression)
    return TermRecord(
        dictionary=dictionary,
        expression=expression,
        reading=str(reading) if reading else expression,
        definition_tags=_tags(definition_tags),
        rules=str(rules or ""),
        score=_int(score),
        glossary=tuple(
            sanitize_html(glossary_item_to_html(item, media)) for item in glossary
        ),
        sequence=_int(sequence, 1),
        term_tags=_tags(term_tags),
    )


def convert_term_bank(
    rows: Iterable[list],
    dictionary: str,
    version: int,
    member: str = TERM_BANK,
) -> tuple[list[TermRecord], MediaRefs]:
    """Convert a whole term bank, returning terms and referenced media."""
    media: MediaRefs = {}
    terms: list[TermRecord] = []
    for number, row in enumerate(rows, 1):
        if not isinstance(row, list) or len(row) < 5:
            raise InvalidMetadataError(f"record {number} is not a term row", member=member)
        terms.append(convert_term(row, dictionary, version, media))
    return terms, media


def convert_term_meta(rows: Iterable[list], dictionary: str) -> list[TermMetaRecord]:
    return [
        TermMetaRecord(dictionary, str(expression), str(mode), data)
        for expression, mode, data in (_triple(r) for r in rows)
    ]


def convert_kanji_meta(rows: Iterable[list], dictionary: str) -> list[KanjiMetaRecord]:
    return [
        KanjiMetaRecord(dictionary, str(character), str(mode), data)
        for character, mode, data in (_triple(r) for r in rows)
    ]


def _triple(row: list) -> tuple[Any, Any, Any]:
    padded = list(row) + [None] * (3 - len(row))
    return padded[0], padded[1], padded[2]


def convert_kanji(rows: Iterable[list], dictionary: str, version: int) -> list[KanjiRecord]:
    records = []
    for row in rows:
        if version == 1:
            character, onyomi, kunyomi, tags, *meanings = row
            stats: Any = {}
        else:
            padded = list(row) + [None] * (6 - len(row))
            character, onyomi, kunyomi, tags, meanings, stats = padded[:6]
        records.append(
            KanjiRecord(
                dictionary=dictionary,
                character=str(character),
                onyomi=str(onyomi or ""),
                kunyomi=str(kunyomi or ""),
                tags=_tags(tags),
                meanings=tuple(str(m) for m in (meanings or ())),
                stats=dict(stats or {}),
            )
        )
    return records


def convert_tags(rows: Iterable[list], dictionary: str) -> list[TagMetaRecord]:
    records = []
    for row in rows:
        padded = list(row) + [None] * (5 - len(row))
        name, category, order, notes, score = padded[:5]
        records.append(
            TagMetaRecord(
                dictionary=dictionary,
                name=str(name),
                category=str(category or ""),
                order=_int(order),
                notes=str(notes or ""),
                score=_int(score),
            )
        )
    return records


def convert_index_tag_meta(tag_meta: dict[str, Any], dictionary: str) -> list[TagMetaRecord]:
    """Version 1 dictionaries declare tags inside ``index.json``."""
    return [
        TagMetaRecord(
            dictionary=dictionary,
            name=name,
            category=str(meta.get("category") or ""),
            order=_int(meta.get("order")),
            notes=str(meta.get("notes") or ""),
            score=_int(meta.get("score")),
        )
        for name, meta in tag_meta.items()
        if isinstance(meta, dict)
    ]


def load_bank(data: bytes, member: str) -> list:
    rows = load_json(data, member)
    if not isinstance(rows, list):
        raise InvalidMetadataError("bank must be a JSON array", member=member)
    return rows


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------

def media_type(path: str) -> str:
    ext = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    return _MEDIA_TYPES.get(ext, "application/octet-stream")


def collect_media(
    archive: Archive,
    refs: MediaRefs,
    dictionary: str,
) -> list[MediaRecord]:
    """Build media rows for referenced paths that exist in the archive."""
    records = []
    for path, (width, height) in refs.items():
        member = archive.get(path)
        if member is None:
            logger.warning(f"{dictionary}: media file {path!r} not found in archive")
            continue
        records.append(
            MediaRecord(
                dictionary=dictionary,
                path=path,
                media_type=media_type(path),
                width=width,
                height=height,
                content=member.read(),
            )
        )
    return records
