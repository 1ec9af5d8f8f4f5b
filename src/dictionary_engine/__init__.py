"""
Local dictionary engine for StarDict and Yomitan archives.

Archives are imported into an indexed SQLite store and answered by exact
lookup, prefix suggestion and "did you mean" expansion.

Example usage:
    from dictionary_engine import DictionaryEngine

    with DictionaryEngine("dictionaries.db") as engine:
        with open("jmdict.zip", "rb") as f:
            summary = engine.import_dictionary(f.read())
        print(engine.lookup("走る", "はしる"))
        print(engine.suggest_prefix("colo", max_results=10))
"""

__version__ = "0.1.0"

from .engine import (
    DictionaryEngine as DictionaryEngine,
)

from .config import (
    EngineConfig as EngineConfig,
    load_config as load_config,
)

from .cancel import (
    CancelToken as CancelToken,
)

from .models import (
    DictionaryFormat as DictionaryFormat,
    Stage as Stage,
    DictionaryCounts as DictionaryCounts,
    DictionarySummary as DictionarySummary,
    TermRecord as TermRecord,
    TermMetaRecord as TermMetaRecord,
    KanjiRecord as KanjiRecord,
    KanjiMetaRecord as KanjiMetaRecord,
    TagMetaRecord as TagMetaRecord,
    MediaRecord as MediaRecord,
    Progress as Progress,
    format_progress as format_progress,
)

from .exceptions import (
    ErrorKind as ErrorKind,
    DictionaryEngineError as DictionaryEngineError,
    UnrecognizedFormatError as UnrecognizedFormatError,
    InvalidMetadataError as InvalidMetadataError,
    CorruptIndexError as CorruptIndexError,
    DictionaryAlreadyPresentError as DictionaryAlreadyPresentError,
    DictionaryNotFoundError as DictionaryNotFoundError,
    ArchiveReadError as ArchiveReadError,
    DecompressError as DecompressError,
    OperationCancelledError as OperationCancelledError,
    StorageError as StorageError,
    ConfigError as ConfigError,
    DictionaryImportError as DictionaryImportError,
)

from .sanitizer import (
    sanitize_html as sanitize_html,
)
