"""Import orchestrator: archive bytes in, one committed dictionary out."""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import closing
from dataclasses import dataclass, field
from itertools import chain
from typing import Any

from dictionary_engine import stardict, yomitan
from dictionary_engine.archive import Archive, open_archive
from dictionary_engine.cancel import CancelToken, check_cancelled
from dictionary_engine.config import EngineConfig
from dictionary_engine.detect import detect_format
from dictionary_engine.exceptions import (
    DictionaryAlreadyPresentError,
    DictionaryEngineError,
    DictionaryImportError,
    ErrorKind,
    OperationCancelledError,
    StorageError,
)
from dictionary_engine.merger import TermMerger
from dictionary_engine.models import (
    DictionaryCounts,
    DictionaryFormat,
    DictionarySummary,
    Progress,
    Stage,
    TermRecord,
    format_progress,
)
from dictionary_engine.store import DictionaryStore, ProgressCallback

logger = logging.getLogger(__name__)

SIZE_WARNING_BYTES = 500 * 1024 * 1024
ENTRY_WARNING_COUNT = 1_000_000

# StarDict carries no Yomitan-style format version; installed rows use this.
STARDICT_SUMMARY_VERSION = 3

# A parse job: a worker function plus the arguments it runs on.
Job = tuple[Callable[..., tuple[list[TermRecord], yomitan.MediaRefs]], tuple[Any, ...]]


def validate_import_size(size_bytes: int, estimated_entries: int = 0) -> list[str]:
    """Warnings for imports large enough to strain memory; never fatal."""
    warnings = []
    size_mb = size_bytes / (1024 * 1024)
    if size_bytes > SIZE_WARNING_BYTES:
        warnings.append(f"Large file: {size_mb:.0f}MB, expect heavy memory use")
    if estimated_entries > ENTRY_WARNING_COUNT:
        warnings.append(f"Huge dictionary: {estimated_entries:,} entries")
    return warnings


def _notify(
    progress_cb: ProgressCallback | None,
    stage: Stage,
    current: int = 0,
    total: int = 0,
    message: str = "",
) -> None:
    if progress_cb is not None:
        progress_cb(Progress(stage, current, total, message))


# ---------------------------------------------------------------------------
# Worker functions (run on pool threads, touch only their arguments)
# ---------------------------------------------------------------------------

def _stardict_entries(
    entries: list[stardict.IdxEntry],
    dict_data: bytes,
    title: str,
    sametypesequence: str,
) -> tuple[list[TermRecord], yomitan.MediaRefs]:
    return stardict.extract_terms(entries, dict_data, title, sametypesequence), {}


def _stardict_synonyms(
    synonyms: list[stardict.SynEntry],
    entries: list[stardict.IdxEntry],
    dict_data: bytes,
    title: str,
    sametypesequence: str,
) -> tuple[list[TermRecord], yomitan.MediaRefs]:
    terms = stardict.extract_synonyms(
        synonyms, entries, dict_data, title, sametypesequence
    )
    return terms, {}


def _yomitan_term_bank(
    data: bytes,
    member: str,
    title: str,
    version: int,
) -> tuple[list[TermRecord], yomitan.MediaRefs]:
    rows = yomitan.load_bank(data, member)
    return yomitan.convert_term_bank(rows, title, version, member)


# ---------------------------------------------------------------------------
# Import plans
# ---------------------------------------------------------------------------

@dataclass
class _ImportPlan:
    """Everything needed to stream one dictionary into the store."""

    summary: DictionarySummary
    jobs: Iterable[Job]
    estimated_terms: int = 0
    media_refs: yomitan.MediaRefs = field(default_factory=dict)
    extras: dict[str, Iterable[Any]] = field(default_factory=dict)


class ImportOrchestrator:
    """Drives one import: read, detect, parse in parallel, merge, persist.

    Parsing fans out to a pool of ``config.workers`` threads; results are
    consumed in submission order by a single writer, so the merger sees
    terms in source order.  Every chunk boundary is a cancellation point.
    """

    def __init__(
        self,
        store: DictionaryStore,
        config: EngineConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._config = config or EngineConfig()
        self._clock = clock

    def run(
        self,
        data: bytes,
        progress_cb: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> DictionarySummary:
        """Import one archive and return the committed summary.

        Raises:
            DictionaryImportError: If the archive cannot be imported; the
                original error is chained
            OperationCancelledError: If ``cancel`` trips or its deadline passes
            StorageError: If the database fails
        """
        title: str | None = None
        stage = Stage.START
        _notify(progress_cb, stage, message="Starting import")
        try:
            check_cancelled(cancel)
            stage = Stage.READ_ARCHIVE
            for warning in validate_import_size(len(data)):
                logger.warning(warning)
            archive = open_archive(data)
            _notify(progress_cb, stage, message=f"Read {len(archive)} archive members")

            check_cancelled(cancel)
            stage = Stage.DETECT
            fmt = detect_format(archive.names())
            logger.info(f"Detected {fmt.value} dictionary")

            stage = Stage.PARSE
            if fmt is DictionaryFormat.STARDICT:
                plan = self._plan_stardict(archive)
            else:
                plan = self._plan_yomitan(archive)
            title = plan.summary.title
            for warning in validate_import_size(0, plan.estimated_terms):
                logger.warning(warning)
            logger.info(f"Importing {title!r} ({fmt.value})")

            merger = TermMerger(
                watermark=self._config.merge_watermark,
                window=self._config.merge_window,
            )
            chunks = self._term_chunks(plan, progress_cb, cancel)
            terms = chain.from_iterable(merger.merge(chunks))

            stage = Stage.PERSIST
            with closing(chunks):
                summary = self._store.store_dictionary(
                    plan.summary,
                    terms=terms,
                    batch_size=self._config.batch_size,
                    total_terms=plan.estimated_terms,
                    progress_cb=progress_cb,
                    cancel=cancel,
                    **plan.extras,
                )
        except (OperationCancelledError, StorageError) as e:
            self._abort(title, stage, e, progress_cb)
            raise
        except DictionaryEngineError as e:
            self._abort(title, stage, e, progress_cb)
            raise DictionaryImportError(
                e.kind or ErrorKind.INVALID_METADATA,
                str(e),
                context=getattr(e, "member", None),
            ) from e
        except (ValueError, TypeError) as e:
            # malformed bank rows surface as unpacking/conversion errors
            self._abort(title, stage, e, progress_cb)
            raise DictionaryImportError(
                ErrorKind.INVALID_METADATA, f"Malformed dictionary data: {e}"
            ) from e
        except BaseException as e:
            self._abort(title, stage, e, progress_cb)
            raise

        total = summary.counts.terms_total
        _notify(
            progress_cb, Stage.COMMIT, total, total,
            f"Imported {title!r}: {total} terms",
        )
        logger.info(
            f"Committed {title!r}: {total} terms, "
            f"{merger.records_in} records parsed"
        )
        return summary

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _ensure_absent(self, title: str) -> None:
        if self._store.has_dictionary(title):
            raise DictionaryAlreadyPresentError(title)

    def _plan_stardict(self, archive: Archive) -> _ImportPlan:
        files = stardict.find_files(archive)
        info = stardict.parse_ifo(archive.read(files.ifo), files.ifo)
        title = stardict.dictionary_title(info, files)
        self._ensure_absent(title)

        idx_data = stardict.decompress_member(archive.read(files.idx), files.idx)
        dict_data = stardict.decompress_member(archive.read(files.dict), files.dict)
        entries = stardict.parse_idx(idx_data, info, files.idx)
        synonyms = (
            stardict.parse_syn(archive.read(files.syn), files.syn)
            if files.syn else []
        )

        summary = DictionarySummary(
            title=title,
            revision=info.date or "1.0",
            version=STARDICT_SUMMARY_VERSION,
            sequenced=True,
            import_date=self._clock(),
            format=DictionaryFormat.STARDICT.value,
            counts=DictionaryCounts(),
            author=info.author or None,
            url=info.website or None,
            description=info.description or None,
            styles=stardict.read_styles(archive, files.res),
        )

        chunk_size = self._config.chunk_size
        sts = info.sametypesequence
        jobs: list[Job] = [
            (_stardict_entries, (list(chunk), dict_data, title, sts))
            for chunk in stardict.chunked(entries, chunk_size)
        ]
        jobs.extend(
            (_stardict_synonyms, (list(chunk), entries, dict_data, title, sts))
            for chunk in stardict.chunked(synonyms, chunk_size)
        )
        return _ImportPlan(
            summary=summary,
            jobs=jobs,
            estimated_terms=len(entries) + len(synonyms),
        )

    def _plan_yomitan(self, archive: Archive) -> _ImportPlan:
        index = yomitan.read_index(archive)
        title = index.title
        self._ensure_absent(title)

        summary = DictionarySummary(
            title=title,
            revision=index.revision,
            version=index.version,
            sequenced=index.sequenced,
            import_date=self._clock(),
            format=DictionaryFormat.YOMITAN.value,
            counts=DictionaryCounts(),
            author=index.author,
            url=index.url,
            description=index.description,
            attribution=index.attribution,
            source_language=index.source_language,
            target_language=index.target_language,
            styles=yomitan.read_styles(archive),
        )

        term_banks = yomitan.find_banks(archive, yomitan.TERM_BANK)
        # bank bytes are read on the calling thread as each job is submitted
        jobs = (
            (_yomitan_term_bank, (archive.read(member), member, title, index.version))
            for member in term_banks
        )
        plan = _ImportPlan(summary=summary, jobs=jobs)

        def banks(kind: str) -> Iterator[tuple[str, list]]:
            for member in yomitan.find_banks(archive, kind):
                yield member, yomitan.load_bank(archive.read(member), member)

        def term_meta() -> Iterator[Any]:
            for _, rows in banks(yomitan.TERM_META_BANK):
                yield from yomitan.convert_term_meta(rows, title)

        def kanji() -> Iterator[Any]:
            for _, rows in banks(yomitan.KANJI_BANK):
                yield from yomitan.convert_kanji(rows, title, index.version)

        def kanji_meta() -> Iterator[Any]:
            for _, rows in banks(yomitan.KANJI_META_BANK):
                yield from yomitan.convert_kanji_meta(rows, title)

        def tag_meta() -> Iterator[Any]:
            if index.tag_meta:
                yield from yomitan.convert_index_tag_meta(index.tag_meta, title)
            for _, rows in banks(yomitan.TAG_BANK):
                yield from yomitan.convert_tags(rows, title)

        def media() -> Iterator[Any]:
            # runs after every term bank, so all references are known
            yield from yomitan.collect_media(archive, plan.media_refs, title)

        plan.extras = {
            "term_meta": term_meta(),
            "kanji": kanji(),
            "kanji_meta": kanji_meta(),
            "tag_meta": tag_meta(),
            "media": media(),
        }
        return plan

    # ------------------------------------------------------------------
    # Parsing pipeline
    # ------------------------------------------------------------------

    def _parse_parallel(
        self,
        jobs: Iterable[Job],
        cancel: CancelToken | None,
    ) -> Iterator[tuple[list[TermRecord], yomitan.MediaRefs]]:
        """Run jobs on the worker pool, yielding results in job order.

        At most two jobs per worker are in flight, which bounds the
        number of parsed chunks held in memory.
        """
        max_in_flight = self._config.workers * 2
        pending: deque[Future] = deque()
        job_iter = iter(jobs)
        exhausted = False
        with ThreadPoolExecutor(
            max_workers=self._config.workers,
            thread_name_prefix="dict-import",
        ) as pool:
            try:
                while True:
                    while not exhausted and len(pending) < max_in_flight:
                        check_cancelled(cancel)
                        job = next(job_iter, None)
                        if job is None:
                            exhausted = True
                            break
                        fn, args = job
                        pending.append(pool.submit(fn, *args))
                    if not pending:
                        break
                    result = pending.popleft().result()
                    check_cancelled(cancel)
                    yield result
            finally:
                for future in pending:
                    future.cancel()

    def _term_chunks(
        self,
        plan: _ImportPlan,
        progress_cb: ProgressCallback | None,
        cancel: CancelToken | None,
    ) -> Iterator[list[TermRecord]]:
        parsed = 0
        total = plan.estimated_terms
        with closing(self._parse_parallel(plan.jobs, cancel)) as results:
            for terms, refs in results:
                for path, size in refs.items():
                    plan.media_refs.setdefault(path, size)
                for chunk in stardict.chunked(terms, self._config.chunk_size):
                    parsed += len(chunk)
                    logger.debug(f"Parsed {parsed} terms")
                    _notify(
                        progress_cb, Stage.PARSE, parsed, total,
                        format_progress(parsed, total) if total else f"{parsed} entries",
                    )
                    yield list(chunk)
                    check_cancelled(cancel)

    # ------------------------------------------------------------------
    # Failure cleanup
    # ------------------------------------------------------------------

    def _abort(
        self,
        title: str | None,
        stage: Stage,
        error: BaseException,
        progress_cb: ProgressCallback | None,
    ) -> None:
        """Remove partial rows of a failed import and report the failure."""
        if isinstance(error, OperationCancelledError):
            logger.info(f"Import cancelled during {stage.value}: {error}")
        else:
            logger.error(f"Import failed during {stage.value}: {error}")

        if title is not None and not isinstance(error, DictionaryAlreadyPresentError):
            try:
                if not self._store.has_dictionary(title):
                    removed = self._store.sweep_dictionary(title)
                    if removed:
                        logger.warning(f"Removed {removed} orphaned rows of {title!r}")
            except StorageError as e:
                logger.error(f"Cleanup of {title!r} failed: {e}")

        _notify(progress_cb, Stage.FAILED, message=str(error))
