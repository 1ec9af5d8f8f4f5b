"""Archive format classification."""

from __future__ import annotations

import re
from collections.abc import Iterable

from dictionary_engine.archive import basename
from dictionary_engine.exceptions import UnrecognizedFormatError
from dictionary_engine.models import DictionaryFormat

_TERM_BANK_RE = re.compile(r"^term_bank_.*\.json$")


def classify(names: Iterable[str]) -> DictionaryFormat:
    """Classify a flat member-name list without raising."""
    names = list(names)
    has_ifo = any(n.endswith(".ifo") for n in names)
    has_idx = any(n.endswith((".idx", ".idx.gz")) for n in names)
    has_dict = any(n.endswith((".dict", ".dict.gz", ".dict.dz")) for n in names)
    if has_ifo and has_idx and has_dict:
        return DictionaryFormat.STARDICT

    bases = [basename(n) for n in names]
    if "index.json" in bases or any(_TERM_BANK_RE.match(b) for b in bases):
        return DictionaryFormat.YOMITAN

    return DictionaryFormat.UNKNOWN


def detect_format(names: Iterable[str]) -> DictionaryFormat:
    """Classify an archive as StarDict or Yomitan, raising otherwise."""
    fmt = classify(names)
    if fmt is DictionaryFormat.UNKNOWN:
        raise UnrecognizedFormatError(
            "Unrecognized dictionary format: archive must contain either "
            "StarDict (.ifo/.idx/.dict) or Yomitan (index.json, term_bank_*.json) files"
        )
    return fmt
