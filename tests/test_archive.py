"""Tests for the archive reader and format detection."""

import io
import tarfile

import pytest

from conftest import make_zip
from dictionary_engine.archive import LazyBytes, basename, open_archive
from dictionary_engine.detect import classify, detect_format
from dictionary_engine.exceptions import ArchiveReadError, UnrecognizedFormatError
from dictionary_engine.models import DictionaryFormat


def make_tar(files, mode="w:gz"):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode=mode) as tf:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            tf.addfile(info, io.BytesIO(content))
    return buf.getvalue()


class TestOpenArchive:
    """ZIP and tar containers behind one interface."""

    def test_zip_members(self):
        archive = open_archive(make_zip({"a.txt": b"alpha", "dir/b.txt": b"beta"}))
        assert archive.kind == "zip"
        assert sorted(archive.names()) == ["a.txt", "dir/b.txt"]
        assert archive.read("dir/b.txt") == b"beta"
        assert "a.txt" in archive
        assert len(archive) == 2

    def test_entries_are_lazy(self):
        archive = open_archive(make_zip({"a.txt": b"alpha"}))
        entries = dict(archive.entries())
        assert isinstance(entries["a.txt"], LazyBytes)
        assert entries["a.txt"].size == 5
        assert entries["a.txt"].read() == b"alpha"

    def test_tar_gz(self):
        archive = open_archive(make_tar({"x.ifo": b"ifo", "x.idx": b"idx"}))
        assert archive.kind == "tar"
        assert archive.read("x.idx") == b"idx"

    def test_plain_tar(self):
        archive = open_archive(make_tar({"x.ifo": b"ifo"}, mode="w"))
        assert archive.names() == ["x.ifo"]

    def test_nested_archive_is_unwrapped(self):
        inner = make_zip({"index.json": b"{}"})
        archive = open_archive(make_zip({"dict.zip": inner}))
        assert archive.names() == ["index.json"]

    def test_nested_tar_in_zip(self):
        inner = make_tar({"d.ifo": b"x"})
        archive = open_archive(make_zip({"d.tar.gz": inner}))
        assert archive.names() == ["d.ifo"]

    def test_unwrap_disabled(self):
        inner = make_zip({"index.json": b"{}"})
        archive = open_archive(make_zip({"dict.zip": inner}), unwrap=False)
        assert archive.names() == ["dict.zip"]

    def test_open_nested(self):
        res = make_zip({"styles.css": b".x{}"})
        archive = open_archive(make_zip({"d.res.zip": res, "d.ifo": b""}))
        nested = archive.open_nested("d.res.zip")
        assert nested.read("styles.css") == b".x{}"

    def test_directories_skipped(self):
        archive = open_archive(make_zip({"dir/": b"", "dir/a": b"1"}))
        assert archive.names() == ["dir/a"]

    def test_empty_data(self):
        with pytest.raises(ArchiveReadError):
            open_archive(b"")

    def test_garbage_data(self):
        with pytest.raises(ArchiveReadError):
            open_archive(b"definitely not an archive")

    def test_missing_member(self):
        archive = open_archive(make_zip({"a": b"1"}))
        with pytest.raises(ArchiveReadError, match="No member"):
            archive.read("b")
        assert archive.get("b") is None


class TestBasename:

    def test_strips_directories(self):
        assert basename("a/b/c.json") == "c.json"
        assert basename("c.json") == "c.json"


class TestDetect:
    """Classification over flat member-name lists."""

    def test_stardict(self):
        assert classify(["x.ifo", "x.idx", "x.dict.dz"]) is DictionaryFormat.STARDICT

    def test_stardict_gz_index(self):
        assert classify(["x.ifo", "x.idx.gz", "x.dict"]) is DictionaryFormat.STARDICT

    def test_stardict_requires_all_three(self):
        assert classify(["x.ifo", "x.idx"]) is DictionaryFormat.UNKNOWN

    def test_yomitan_index(self):
        assert classify(["index.json"]) is DictionaryFormat.YOMITAN

    def test_yomitan_term_bank_in_subdir(self):
        assert classify(["jmdict/term_bank_1.json"]) is DictionaryFormat.YOMITAN

    def test_stardict_wins_over_yomitan(self):
        names = ["index.json", "x.ifo", "x.idx", "x.dict"]
        assert classify(names) is DictionaryFormat.STARDICT

    def test_unknown_raises(self):
        with pytest.raises(UnrecognizedFormatError):
            detect_format(["readme.txt"])

    def test_detect_returns_format(self):
        assert detect_format(["index.json"]) is DictionaryFormat.YOMITAN
