"""Tests for the import pipeline: StarDict, Yomitan, failures and cancellation."""

import io
import struct
import tarfile
import zipfile

import pytest

from conftest import build_stardict, make_zip
from dictionary_engine import DictionaryEngine, EngineConfig
from dictionary_engine.cancel import CancelToken
from dictionary_engine.exceptions import (
    CorruptIndexError,
    DictionaryAlreadyPresentError,
    DictionaryImportError,
    ErrorKind,
    OperationCancelledError,
)
from dictionary_engine.importer import (
    ENTRY_WARNING_COUNT,
    SIZE_WARNING_BYTES,
    validate_import_size,
)
from dictionary_engine.models import Stage

SCENARIO_WORDS = [("apple", "apple"), ("bee", "bee"), ("cat", "cat")]

RUN_ROW = [
    "走る", "はしる", ["v5r", "vi"], "", 12,
    [{"type": "structured-content", "content": {"tag": "div", "content": "to run"}}],
    1, [],
]


def term_row(expression, definition, sequence=1, reading=""):
    return [expression, reading, "", "", 0, [definition], sequence, ""]


def term_rows(engine, title):
    return engine.store.count_rows("terms", title)


def make_tar(files):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, content in files.items():
            if isinstance(content, str):
                content = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(content)
            tf.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def corrupt_member(data, name):
    """Overwrite the deflated payload of one ZIP member with invalid bytes."""
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        info = zf.getinfo(name)
    raw = bytearray(data)
    start = info.header_offset
    name_len, extra_len = struct.unpack_from("<HH", raw, start + 26)
    payload = start + 30 + name_len + extra_len
    raw[payload:payload + info.compress_size] = b"\xff" * info.compress_size
    return bytes(raw)


class TestStarDictImport:

    def test_happy_path(self, engine, stardict_zip):
        summary = engine.import_dictionary(stardict_zip(SCENARIO_WORDS))
        assert summary.title == "Test Dict"
        assert summary.format == "stardict"
        assert summary.counts.terms_total == 3
        assert engine.lookup("bee") == "bee"
        assert engine.lookup("apple") == "apple"

    def test_gzip_index(self, engine, stardict_zip):
        engine.import_dictionary(
            stardict_zip(SCENARIO_WORDS, idx_suffix=".idx.gz", dict_suffix=".dict.dz")
        )
        assert engine.lookup("bee") == "bee"
        assert engine.lookup("cat") == "cat"

    def test_synonym(self, engine, stardict_zip):
        summary = engine.import_dictionary(
            stardict_zip(SCENARIO_WORDS, synonyms=[("hornet", 1)])
        )
        assert summary.counts.terms_total == 4
        assert engine.lookup("hornet") == "bee"

    def test_metadata_carried(self, engine, stardict_zip):
        summary = engine.import_dictionary(stardict_zip(ifo_extra={
            "author": "Ann", "website": "http://example.com",
            "description": "Fruit words", "date": "2024.01.01",
        }))
        assert summary.author == "Ann"
        assert summary.url == "http://example.com"
        assert summary.description == "Fruit words"
        assert summary.revision == "2024.01.01"
        assert summary.sequenced is True

    def test_default_revision(self, engine_with_fruit):
        (summary,) = engine_with_fruit.list_dictionaries()
        assert summary.revision == "1.0"

    def test_duplicate_headwords_merge(self, engine, stardict_zip):
        summary = engine.import_dictionary(
            stardict_zip([("bank", "river side"), ("bank", "money house")])
        )
        assert summary.counts.terms_total == 1
        assert engine.lookup("bank") == "river side<hr>money house"

    def test_tar_archive(self, engine):
        data = make_tar(build_stardict(SCENARIO_WORDS))
        engine.import_dictionary(data)
        assert engine.lookup("cat") == "cat"

    def test_nested_archive(self, engine, stardict_zip):
        data = make_zip({"inner.zip": stardict_zip(SCENARIO_WORDS)})
        engine.import_dictionary(data)
        assert engine.lookup("bee") == "bee"

    def test_styles_stored(self, engine, stardict_zip):
        res = make_zip({"styles.css": ".x{}"})
        summary = engine.import_dictionary(
            stardict_zip(extra_files={"test.res.zip": res})
        )
        assert summary.styles == ".x{}"

    def test_small_chunks_and_workers(self, stardict_zip):
        words = [(f"w{i:04d}", f"definition {i}") for i in range(250)]
        config = EngineConfig(workers=4, chunk_size=7, batch_size=11)
        with DictionaryEngine(":memory:", config=config) as engine:
            summary = engine.import_dictionary(stardict_zip(words))
            assert summary.counts.terms_total == 250
            assert engine.lookup("w0123") == "definition 123"


class TestYomitanImport:

    def test_structured_content(self, engine, yomitan_zip):
        summary = engine.import_dictionary(yomitan_zip(term_banks=[[RUN_ROW]]))
        assert summary.format == "yomitan"
        html = engine.lookup("走る", "はしる")
        assert '<div class="gloss-sc-div">to run</div>' in html

    def test_summary_fields(self, engine, yomitan_zip):
        summary = engine.import_dictionary(yomitan_zip(
            title="JMdict", revision="2024", term_banks=[[RUN_ROW]],
            index_extra={"sequenced": True, "author": "EDRDG",
                         "attribution": "CC BY-SA", "sourceLanguage": "ja"},
            extra_files={"styles.css": ".gloss{}"},
        ))
        assert summary.title == "JMdict"
        assert summary.revision == "2024"
        assert summary.version == 3
        assert summary.sequenced is True
        assert summary.author == "EDRDG"
        assert summary.attribution == "CC BY-SA"
        assert summary.source_language == "ja"
        assert summary.styles == ".gloss{}"

    def test_all_banks_counted(self, engine, yomitan_zip):
        summary = engine.import_dictionary(yomitan_zip(
            term_banks=[[term_row("猫", "cat", 1, "ねこ")],
                        [term_row("犬", "dog", 2, "いぬ")]],
            term_meta_banks=[[["猫", "freq", 100], ["犬", "freq", 50],
                              ["猫", "pitch", {"reading": "ねこ", "pitches": []}]]],
            kanji_banks=[[["猫", "ビョウ", "ねこ", "", ["cat"], {}]]],
            kanji_meta_banks=[[["猫", "freq", 9]]],
            tag_banks=[[["n", "partOfSpeech", 0, "noun", 0]]],
            index_extra={"tagMeta": {"P": {"category": "popular", "order": 1}}},
        ))
        counts = summary.counts
        assert counts.terms_total == 2
        assert counts.term_meta_total == 3
        assert counts.term_meta_modes == {"freq": 2, "pitch": 1}
        assert counts.kanji_total == 1
        assert counts.kanji_meta_total == 1
        assert counts.kanji_meta_modes == {"freq": 1}
        assert counts.tag_meta_total == 2

    def test_media_stored(self, engine, yomitan_zip):
        row = ["猫", "ねこ", "", "", 0,
               [{"type": "image", "path": "img/cat.png", "width": 4, "height": 3}],
               1, ""]
        summary = engine.import_dictionary(yomitan_zip(
            term_banks=[[row]], extra_files={"img/cat.png": b"\x89PNG"},
        ))
        assert summary.counts.media_total == 1
        (media,) = engine.store.range_scan(
            "media_path_index", ("Test Yomitan", ""), ("Test Yomitan", "\U0010ffff")
        )
        assert media.content == b"\x89PNG"
        assert media.media_type == "image/png"

    def test_version_1(self, engine, yomitan_zip):
        engine.import_dictionary(yomitan_zip(
            version=1, term_banks=[[["猫", "ねこ", "n", "", 5, "cat", "feline"]]],
        ))
        assert engine.lookup("猫") == "cat<hr>feline"

    def test_later_versions_use_current_layout(self, engine, yomitan_zip):
        summary = engine.import_dictionary(
            yomitan_zip(version=4, term_banks=[[RUN_ROW]])
        )
        assert summary.version == 4
        assert "to run" in engine.lookup("走る")

    def test_banks_merge_across_files(self, engine, yomitan_zip):
        summary = engine.import_dictionary(yomitan_zip(term_banks=[
            [term_row("a", "first")],
            [term_row("a", "second", 2)],
        ]))
        assert summary.counts.terms_total == 1
        assert engine.lookup("a") == "first<hr>second"


class TestProgress:

    def test_stage_sequence(self, engine, yomitan_zip):
        events = []
        engine.import_dictionary(
            yomitan_zip(term_banks=[[term_row("a", "x")]]), progress_cb=events.append
        )
        stages = [e.stage for e in events]
        assert stages[0] is Stage.START
        assert stages[-1] is Stage.COMMIT
        assert Stage.READ_ARCHIVE in stages
        assert Stage.PARSE in stages
        assert Stage.PERSIST in stages
        assert Stage.FAILED not in stages

    def test_parse_counts_rise(self, stardict_zip):
        words = [(f"w{i:02d}", "d") for i in range(10)]
        events = []
        with DictionaryEngine(":memory:", config=EngineConfig(chunk_size=3)) as engine:
            engine.import_dictionary(stardict_zip(words), progress_cb=events.append)
        parsed = [e.current for e in events if e.stage is Stage.PARSE]
        assert parsed == [3, 6, 9, 10]
        assert all(e.total == 10 for e in events if e.stage is Stage.PARSE)

    def test_commit_reports_total(self, engine, stardict_zip):
        events = []
        engine.import_dictionary(stardict_zip(), progress_cb=events.append)
        assert (events[-1].current, events[-1].total) == (3, 3)


class TestImportFailures:

    def test_unrecognized_format(self, engine):
        with pytest.raises(DictionaryImportError) as exc:
            engine.import_dictionary(make_zip({"readme.txt": "hello"}))
        assert exc.value.kind is ErrorKind.UNRECOGNIZED_FORMAT
        assert "[UnrecognizedFormat]" in str(exc.value)

    def test_not_an_archive(self, engine):
        with pytest.raises(DictionaryImportError) as exc:
            engine.import_dictionary(b"plain bytes, not an archive")
        assert exc.value.kind is ErrorKind.ARCHIVE_READ

    def test_empty_input(self, engine):
        with pytest.raises(DictionaryImportError) as exc:
            engine.import_dictionary(b"")
        assert exc.value.kind is ErrorKind.ARCHIVE_READ

    def test_corrupt_member_stream(self, engine, yomitan_zip):
        data = corrupt_member(
            yomitan_zip(term_banks=[[term_row("a", "x")]]), "term_bank_1.json"
        )
        with pytest.raises(DictionaryImportError) as exc:
            engine.import_dictionary(data)
        assert exc.value.kind is ErrorKind.ARCHIVE_READ
        assert "term_bank_1.json" in str(exc.value)
        assert engine.list_dictionaries() == []

    def test_already_present(self, engine_with_fruit, stardict_zip):
        with pytest.raises(DictionaryImportError) as exc:
            engine_with_fruit.import_dictionary(stardict_zip())
        assert exc.value.kind is ErrorKind.DICTIONARY_ALREADY_PRESENT
        assert isinstance(exc.value.__cause__, DictionaryAlreadyPresentError)
        assert term_rows(engine_with_fruit, "Test Dict") == 3

    def test_corrupt_index(self, engine):
        files = build_stardict(SCENARIO_WORDS)
        files["test.idx"] = files["test.idx"][:-3]
        with pytest.raises(DictionaryImportError) as exc:
            engine.import_dictionary(make_zip(files))
        assert exc.value.kind is ErrorKind.CORRUPT_INDEX
        assert exc.value.context == "test.idx"
        assert isinstance(exc.value.__cause__, CorruptIndexError)

    def test_bad_gzip(self, engine):
        files = build_stardict(SCENARIO_WORDS, idx_suffix=".idx.gz")
        files["test.idx.gz"] = b"\x1f\x8b broken"
        with pytest.raises(DictionaryImportError) as exc:
            engine.import_dictionary(make_zip(files))
        assert exc.value.kind is ErrorKind.DECOMPRESS

    def test_missing_wordcount(self, engine):
        files = build_stardict(SCENARIO_WORDS)
        files["test.ifo"] = "StarDict's dict ifo file\nidxfilesize=10\n"
        with pytest.raises(DictionaryImportError) as exc:
            engine.import_dictionary(make_zip(files))
        assert exc.value.kind is ErrorKind.INVALID_METADATA

    def test_bad_bank_leaves_nothing(self, engine, yomitan_zip):
        events = []
        with pytest.raises(DictionaryImportError) as exc:
            engine.import_dictionary(
                yomitan_zip(term_banks=[
                    [term_row("a", "x")],
                    [term_row("b", "y"), ["broken"]],
                ]),
                progress_cb=events.append,
            )
        assert exc.value.kind is ErrorKind.INVALID_METADATA
        assert engine.list_dictionaries() == []
        assert term_rows(engine, "Test Yomitan") == 0
        assert events[-1].stage is Stage.FAILED

    def test_failure_keeps_other_dictionaries(self, engine_with_fruit, yomitan_zip):
        with pytest.raises(DictionaryImportError):
            engine_with_fruit.import_dictionary(
                yomitan_zip(term_banks=[[["broken"]]])
            )
        assert [d.title for d in engine_with_fruit.list_dictionaries()] == ["Test Dict"]
        assert engine_with_fruit.lookup("bee") == "an insect"


class TestCancellation:

    def test_cancel_after_first_chunk(self, engine, yomitan_zip):
        banks = [[term_row(f"w{i}", f"d{i}", i + 1)] for i in range(10)]
        token = CancelToken()
        events = []

        def on_progress(progress):
            events.append(progress)
            if progress.stage is Stage.PARSE:
                token.cancel()

        with pytest.raises(OperationCancelledError):
            engine.import_dictionary(
                yomitan_zip(term_banks=banks), progress_cb=on_progress, cancel=token
            )
        assert "Test Yomitan" not in [d.title for d in engine.list_dictionaries()]
        assert term_rows(engine, "Test Yomitan") == 0
        assert events[-1].stage is Stage.FAILED

    def test_expired_deadline(self, engine, stardict_zip):
        with pytest.raises(OperationCancelledError, match="deadline"):
            engine.import_dictionary(stardict_zip(), cancel=CancelToken(timeout=0))
        assert engine.list_dictionaries() == []

    def test_engine_usable_after_cancel(self, engine, stardict_zip):
        token = CancelToken()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            engine.import_dictionary(stardict_zip(), cancel=token)
        engine.import_dictionary(stardict_zip())
        assert engine.lookup("cat") == "a small feline"


class TestValidateImportSize:

    def test_small_import(self):
        assert validate_import_size(1024, 10) == []

    def test_large_file(self):
        (warning,) = validate_import_size(SIZE_WARNING_BYTES + 1)
        assert "Large file" in warning

    def test_many_entries(self):
        (warning,) = validate_import_size(0, ENTRY_WARNING_COUNT + 1)
        assert "Huge dictionary" in warning
