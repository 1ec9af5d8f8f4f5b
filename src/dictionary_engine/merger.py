"""Streaming term merger: coalesces records sharing ``(expression, reading)``."""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from dictionary_engine.models import TermRecord

logger = logging.getLogger(__name__)

DEFAULT_WATERMARK = 50_000


def _union(first: Iterable[str], second: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys((*first, *second)))


def merge_terms(base: TermRecord, other: TermRecord) -> TermRecord:
    """Fold ``other`` into ``base``: glossaries concatenate, tags union,
    score is the max.  ``base`` keeps its sequence and rules.
    """
    return TermRecord(
        dictionary=base.dictionary,
        expression=base.expression,
        reading=base.reading,
        definition_tags=_union(base.definition_tags, other.definition_tags),
        rules=base.rules or other.rules,
        score=max(base.score, other.score),
        glossary=base.glossary + other.glossary,
        sequence=base.sequence,
        term_tags=_union(base.term_tags, other.term_tags),
    )


@dataclass(slots=True)
class _Group:
    dictionary: str
    expression: str
    reading: str
    sequence: int
    last_seen: int
    rules: str = ""
    score: int | None = None
    definition_tags: dict[str, None] = field(default_factory=dict)
    term_tags: dict[str, None] = field(default_factory=dict)
    glossary: list[str] = field(default_factory=list)

    def add(self, term: TermRecord, position: int) -> None:
        self.last_seen = position
        self.rules = self.rules or term.rules
        self.score = term.score if self.score is None else max(self.score, term.score)
        self.definition_tags.update(dict.fromkeys(term.definition_tags))
        self.term_tags.update(dict.fromkeys(term.term_tags))
        self.glossary.extend(term.glossary)

    def to_term(self) -> TermRecord:
        return TermRecord(
            dictionary=self.dictionary,
            expression=self.expression,
            reading=self.reading,
            definition_tags=tuple(self.definition_tags),
            rules=self.rules,
            score=self.score or 0,
            glossary=tuple(self.glossary),
            sequence=self.sequence,
            term_tags=tuple(self.term_tags),
        )


class TermMerger:
    """Group terms of a single dictionary on ``(expression, reading)``.

    Groups are held in a bounded map in first-appearance order and always
    leave it in that order.  The oldest group is flushed once it has not
    been touched during the last ``window`` input records, or while the map
    holds ``watermark`` entries.  Whatever remains is flushed by
    :meth:`flush`.

    Sequence numbers are assigned monotonically at first appearance,
    starting from ``start_sequence``.
    """

    def __init__(
        self,
        *,
        watermark: int = DEFAULT_WATERMARK,
        window: int | None = None,
        start_sequence: int = 1,
    ) -> None:
        if watermark <= 0:
            raise ValueError("watermark must be positive")
        if window is not None and window <= 0:
            raise ValueError("window must be positive")
        self._watermark = watermark
        self._window = window
        self._groups: OrderedDict[tuple[str, str], _Group] = OrderedDict()
        self._position = 0
        self._next_sequence = start_sequence
        self.records_in = 0
        self.records_out = 0

    def __len__(self) -> int:
        return len(self._groups)

    def push(self, terms: Iterable[TermRecord]) -> list[TermRecord]:
        """Add records; return the groups flushed while doing so."""
        flushed: list[TermRecord] = []
        for term in terms:
            self._position += 1
            self.records_in += 1
            key = (term.expression, term.reading)
            group = self._groups.get(key)
            if group is None:
                group = _Group(
                    dictionary=term.dictionary,
                    expression=term.expression,
                    reading=term.reading,
                    sequence=self._next_sequence,
                    last_seen=self._position,
                )
                self._next_sequence += 1
                self._groups[key] = group
            group.add(term, self._position)
            self._evict(flushed)
        self.records_out += len(flushed)
        return flushed

    def _evict(self, out: list[TermRecord]) -> None:
        if self._window is not None:
            horizon = self._position - self._window
            while self._groups:
                oldest = next(iter(self._groups.values()))
                if oldest.last_seen > horizon:
                    break
                self._groups.popitem(last=False)
                out.append(oldest.to_term())
        if len(self._groups) >= self._watermark:
            logger.debug(f"Merge map reached watermark ({self._watermark}), flushing")
            while len(self._groups) >= self._watermark:
                _, oldest = self._groups.popitem(last=False)
                out.append(oldest.to_term())

    def flush(self) -> list[TermRecord]:
        """Emit every open group in first-appearance order."""
        out = [g.to_term() for g in self._groups.values()]
        self._groups.clear()
        self.records_out += len(out)
        return out

    def merge(self, chunks: Iterable[Iterable[TermRecord]]) -> Iterator[list[TermRecord]]:
        """Stream adapter: chunks in, merged chunks out."""
        for chunk in chunks:
            flushed = self.push(chunk)
            if flushed:
                yield flushed
        rest = self.flush()
        if rest:
            yield rest


def merge_all(terms: Iterable[TermRecord], **kwargs) -> list[TermRecord]:
    """Merge a finite sequence of terms in one call."""
    merger = TermMerger(**kwargs)
    out = merger.push(terms)
    out.extend(merger.flush())
    return out
