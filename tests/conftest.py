"""Shared test fixtures for dictionary-engine."""

import gzip
import io
import json
import struct
import zipfile

import pytest

from dictionary_engine import DictionaryEngine


def make_zip(files):
    """Pack ``{name: bytes|str}`` into an in-memory ZIP archive."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, content in files.items():
            if isinstance(content, str):
                content = content.encode("utf-8")
            zf.writestr(name, content)
    return buf.getvalue()


def build_idx(entries, offset_bits=32):
    """Encode ``(word, offset, size)`` triples as a StarDict ``.idx`` table."""
    fmt = ">QI" if offset_bits == 64 else ">II"
    return b"".join(
        word.encode("utf-8") + b"\x00" + struct.pack(fmt, offset, size)
        for word, offset, size in entries
    )


def build_stardict(
    words,
    *,
    name="test",
    bookname="Test Dict",
    idx_suffix=".idx",
    dict_suffix=".dict",
    synonyms=None,
    sametypesequence="h",
    ifo_extra=None,
    extra_files=None,
):
    """Member files of a StarDict dictionary built from ``(word, definition)``."""
    dict_data = b""
    idx_entries = []
    for word, definition in words:
        raw = definition.encode("utf-8")
        idx_entries.append((word, len(dict_data), len(raw)))
        dict_data += raw
    idx = build_idx(idx_entries)

    ifo_lines = [
        "StarDict's dict ifo file",
        "version=3.0.0",
        f"wordcount={len(words)}",
        f"idxfilesize={len(idx)}",
        f"sametypesequence={sametypesequence}",
    ]
    if bookname:
        ifo_lines.append(f"bookname={bookname}")
    for key, value in (ifo_extra or {}).items():
        ifo_lines.append(f"{key}={value}")

    files = {
        f"{name}.ifo": "\n".join(ifo_lines) + "\n",
        f"{name}{idx_suffix}": gzip.compress(idx) if idx_suffix.endswith(".gz") else idx,
        f"{name}{dict_suffix}": (
            gzip.compress(dict_data)
            if dict_suffix.endswith((".gz", ".dz")) else dict_data
        ),
    }
    if synonyms:
        files[f"{name}.syn"] = b"".join(
            word.encode("utf-8") + b"\x00" + struct.pack(">I", index)
            for word, index in synonyms
        )
    files.update(extra_files or {})
    return files


def build_yomitan(
    *,
    title="Test Yomitan",
    revision="rev1",
    version=3,
    term_banks=(),
    term_meta_banks=(),
    kanji_banks=(),
    kanji_meta_banks=(),
    tag_banks=(),
    index_extra=None,
    extra_files=None,
):
    """Member files of a Yomitan dictionary; each bank is a list of rows."""
    index = {"title": title, "revision": revision, "format": version}
    index.update(index_extra or {})
    files = {"index.json": json.dumps(index, ensure_ascii=False)}
    for prefix, banks in (
        ("term_bank", term_banks),
        ("term_meta_bank", term_meta_banks),
        ("kanji_bank", kanji_banks),
        ("kanji_meta_bank", kanji_meta_banks),
        ("tag_bank", tag_banks),
    ):
        for number, rows in enumerate(banks, 1):
            files[f"{prefix}_{number}.json"] = json.dumps(rows, ensure_ascii=False)
    files.update(extra_files or {})
    return files


# Words sorted in byte order, as StarDict tools emit them.
FRUIT_WORDS = [
    ("apple", "a red fruit"),
    ("bee", "an insect"),
    ("cat", "a small feline"),
]


@pytest.fixture
def engine():
    """Create an in-memory engine for testing."""
    with DictionaryEngine(":memory:") as eng:
        yield eng


@pytest.fixture
def stardict_zip():
    """Factory: ZIP bytes of a StarDict dictionary (see ``build_stardict``)."""
    def factory(words=FRUIT_WORDS, **kwargs):
        return make_zip(build_stardict(words, **kwargs))
    return factory


@pytest.fixture
def yomitan_zip():
    """Factory: ZIP bytes of a Yomitan dictionary (see ``build_yomitan``)."""
    def factory(**kwargs):
        return make_zip(build_yomitan(**kwargs))
    return factory


@pytest.fixture
def engine_with_fruit(engine, stardict_zip):
    """Engine with the three-word StarDict dictionary 'Test Dict' installed."""
    engine.import_dictionary(stardict_zip())
    return engine
