"""StarDict parser: ``.ifo`` metadata, ``.idx`` word table, ``.dict`` payload
and the optional ``.syn`` synonym table.

All multi-byte integers in ``.idx`` and ``.syn`` are big-endian.  Parsed
terms are yielded in bounded chunks so the persistence stage never has to
hold a whole dictionary in memory.
"""

from __future__ import annotations

import gzip
import html
import logging
import struct
import zlib
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from dictionary_engine.archive import Archive, basename
from dictionary_engine.exceptions import (
    ArchiveReadError,
    CorruptIndexError,
    DecompressError,
    InvalidMetadataError,
)
from dictionary_engine.models import TermRecord
from dictionary_engine.sanitizer import sanitize_html

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 5000

_IGNORED_SUFFIXES = (".xoft", ".oft")
# sametypesequence markers whose payload is markup rather than plain text
_MARKUP_TYPES = frozenset("hgx")


@dataclass(frozen=True, slots=True)
class StarDictInfo:
    """Parsed ``.ifo`` metadata."""

    wordcount: int
    idxfilesize: int
    dictfilesize: int = 0
    sametypesequence: str = "h"
    version: str = "3.0.0"
    bookname: str = ""
    author: str = ""
    website: str = ""
    description: str = ""
    date: str = ""
    synwordcount: int = 0
    idxoffsetbits: int = 32


@dataclass(frozen=True, slots=True)
class IdxEntry:
    """One ``.idx`` record: a headword and where its definition lives."""

    word: str
    offset: int
    size: int


@dataclass(frozen=True, slots=True)
class SynEntry:
    """One ``.syn`` record: an alternate headword for an ``.idx`` entry."""

    word: str
    index: int


@dataclass(slots=True)
class StarDictFiles:
    """Member names of one StarDict dictionary inside an archive."""

    ifo: str
    idx: str
    dict: str
    syn: str | None = None
    res: str | None = None

    @property
    def name(self) -> str:
        return basename(self.ifo)[: -len(".ifo")]


# ---------------------------------------------------------------------------
# Member discovery and decompression
# ---------------------------------------------------------------------------

def find_files(archive: Archive) -> StarDictFiles:
    """Locate the ``.ifo``/``.idx``/``.dict`` (and optional) members."""
    found: dict[str, str] = {}
    for name in archive.names():
        if any(s in name for s in _IGNORED_SUFFIXES):
            continue
        if name.endswith(".ifo"):
            found.setdefault("ifo", name)
        elif name.endswith((".idx", ".idx.gz")):
            found.setdefault("idx", name)
        elif name.endswith((".dict", ".dict.gz", ".dict.dz")):
            found.setdefault("dict", name)
        elif name.endswith(".syn"):
            found.setdefault("syn", name)
        elif name.endswith(".res.zip"):
            found.setdefault("res", name)

    for required in ("ifo", "idx", "dict"):
        if required not in found:
            raise InvalidMetadataError(f"No .{required} file found in archive")
    return StarDictFiles(**found)


def decompress_member(data: bytes, name: str) -> bytes:
    """Inflate ``.gz``/``.dz`` members, pass everything else through.

    dictzip is gzip with an extra header field, so whole-stream gzip
    inflation reads it.
    """
    if not name.endswith((".gz", ".dz")):
        return data
    try:
        return gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as e:
        raise DecompressError(f"Failed to inflate: {e}", member=name) from e


def read_styles(archive: Archive, res_name: str | None) -> str | None:
    """Lift ``styles.css`` out of a nested ``*.res.zip`` resource archive."""
    if res_name is None:
        return None
    try:
        res = archive.open_nested(res_name)
    except ArchiveReadError as e:
        logger.warning(f"Ignoring unreadable resource archive {res_name!r}: {e}")
        return None
    for name, member in res.entries():
        if basename(name) == "styles.css":
            return member.read().decode("utf-8", errors="replace")
    return None


# ---------------------------------------------------------------------------
# .ifo
# ---------------------------------------------------------------------------

def parse_ifo(data: bytes, member: str = ".ifo") -> StarDictInfo:
    """Parse ``key=value`` lines of an ``.ifo`` file."""
    text = data.decode("utf-8-sig", errors="replace")
    values: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if not sep:
            continue
        values[key.strip()] = value.strip()

    def _int(key: str, default: int = 0) -> int:
        raw = values.get(key)
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError as e:
            raise InvalidMetadataError(
                f"{key} is not an integer: {raw!r}", member=member
            ) from e

    info = StarDictInfo(
        wordcount=_int("wordcount"),
        idxfilesize=_int("idxfilesize"),
        dictfilesize=_int("dictfilesize"),
        sametypesequence=values.get("sametypesequence") or "h",
        version=values.get("version") or "3.0.0",
        bookname=values.get("bookname", ""),
        author=values.get("author", ""),
        website=values.get("website", ""),
        description=values.get("description", ""),
        date=values.get("date", ""),
        synwordcount=_int("synwordcount"),
        idxoffsetbits=_int("idxoffsetbits", 32),
    )
    if info.wordcount == 0:
        raise InvalidMetadataError("wordcount is missing or zero", member=member)
    if info.idxfilesize == 0:
        raise InvalidMetadataError("idxfilesize is missing or zero", member=member)
    if info.idxoffsetbits not in (32, 64):
        raise InvalidMetadataError(
            f"unsupported idxoffsetbits={info.idxoffsetbits}", member=member
        )
    return info


# ---------------------------------------------------------------------------
# .idx / .syn
# ---------------------------------------------------------------------------

def parse_idx(
    data: bytes,
    info: StarDictInfo,
    member: str = ".idx",
) -> list[IdxEntry]:
    """Parse the word table, enforcing size, terminator and order invariants."""
    if len(data) != info.idxfilesize:
        raise CorruptIndexError(
            f"size {len(data)} does not match idxfilesize={info.idxfilesize}",
            member=member,
            position=len(data),
        )

    offset_fmt = ">Q" if info.idxoffsetbits == 64 else ">I"
    offset_len = struct.calcsize(offset_fmt)
    record_tail = offset_len + 4

    entries: list[IdxEntry] = []
    pos = 0
    prev_word: bytes | None = None
    for number in range(1, info.wordcount + 1):
        if pos >= len(data):
            raise CorruptIndexError(
                f"reached end of file after {number - 1}/{info.wordcount} words",
                member=member, word_number=number, position=pos,
            )
        end = data.find(b"\x00", pos)
        if end == -1:
            raise CorruptIndexError(
                "no null terminator", member=member, word_number=number, position=pos,
            )
        if end + 1 + record_tail > len(data):
            raise CorruptIndexError(
                "offsets run past end of file",
                member=member, word_number=number, position=end + 1,
            )
        word_bytes = data[pos:end]
        if prev_word is not None and word_bytes < prev_word:
            raise CorruptIndexError(
                "words are not in ascending order",
                member=member, word_number=number, position=pos,
            )
        (offset,) = struct.unpack_from(offset_fmt, data, end + 1)
        (size,) = struct.unpack_from(">I", data, end + 1 + offset_len)
        entries.append(IdxEntry(_decode(word_bytes), offset, size))
        prev_word = word_bytes
        pos = end + 1 + record_tail

    if pos != info.idxfilesize:
        raise CorruptIndexError(
            f"consumed {pos} bytes but idxfilesize={info.idxfilesize}",
            member=member, word_number=info.wordcount, position=pos,
        )
    return entries


def parse_syn(data: bytes, member: str = ".syn") -> list[SynEntry]:
    """Parse ``word\\0 uint32_be`` records until end of file."""
    entries: list[SynEntry] = []
    pos = 0
    while pos < len(data):
        end = data.find(b"\x00", pos)
        if end == -1 or end + 5 > len(data):
            logger.warning(f"{member}: truncated synonym record at byte {pos}, ignoring the rest")
            break
        (index,) = struct.unpack_from(">I", data, end + 1)
        entries.append(SynEntry(_decode(data[pos:end]), index))
        pos = end + 5
    return entries


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def render_definition(raw: bytes, sametypesequence: str = "h") -> str:
    """Decode one ``.dict`` slice and sanitize it into a glossary fragment."""
    text = raw.decode("utf-8", errors="replace")
    kind = sametypesequence[:1] or "h"
    if kind not in _MARKUP_TYPES:
        text = html.escape(text, quote=False).replace("\n", "<br>")
    return sanitize_html(text)


def extract_terms(
    entries: Sequence[IdxEntry],
    dict_data: bytes,
    dictionary: str,
    sametypesequence: str = "h",
) -> list[TermRecord]:
    """Build terms for one slice of parsed ``.idx`` entries."""
    terms: list[TermRecord] = []
    for entry in entries:
        end = entry.offset + entry.size
        if end > len(dict_data):
            logger.warning(
                f"{dictionary}: definition of {entry.word!r} runs past end of "
                f".dict ({end} > {len(dict_data)}), skipping"
            )
            continue
        definition = render_definition(dict_data[entry.offset:end], sametypesequence)
        terms.append(
            TermRecord(
                dictionary=dictionary,
                expression=entry.word,
                reading=entry.word,
                glossary=(definition,),
            )
        )
    return terms


def extract_synonyms(
    synonyms: Sequence[SynEntry],
    entries: Sequence[IdxEntry],
    dict_data: bytes,
    dictionary: str,
    sametypesequence: str = "h",
) -> list[TermRecord]:
    """Build terms for synonyms, sharing the main entry's definition."""
    terms: list[TermRecord] = []
    for syn in synonyms:
        if syn.index >= len(entries):
            logger.warning(
                f"{dictionary}: synonym {syn.word!r} points at word "
                f"{syn.index} of {len(entries)}, skipping"
            )
            continue
        main = entries[syn.index]
        end = main.offset + main.size
        if end > len(dict_data):
            continue
        definition = render_definition(dict_data[main.offset:end], sametypesequence)
        terms.append(
            TermRecord(
                dictionary=dictionary,
                expression=syn.word,
                reading=syn.word,
                glossary=(definition,),
            )
        )
    return terms


def dictionary_title(info: StarDictInfo, files: StarDictFiles) -> str:
    """The installed title: ``bookname``, else the ``.ifo`` file stem."""
    return info.bookname.strip() or files.name


def chunked(items: Sequence, size: int = DEFAULT_CHUNK_SIZE) -> Iterator[Sequence]:
    """Slice a sequence into consecutive chunks of at most ``size`` items."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield items[start:start + size]
