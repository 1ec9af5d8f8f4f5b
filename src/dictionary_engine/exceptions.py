"""Custom exception hierarchy for dictionary-engine."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Error kinds surfaced at the import boundary."""

    UNRECOGNIZED_FORMAT = "UnrecognizedFormat"
    INVALID_METADATA = "InvalidMetadata"
    CORRUPT_INDEX = "CorruptIndex"
    DICTIONARY_ALREADY_PRESENT = "DictionaryAlreadyPresent"
    ARCHIVE_READ = "ArchiveRead"
    DECOMPRESS = "Decompress"
    CANCELLED = "Cancelled"
    STORAGE = "Storage"


class DictionaryEngineError(Exception):
    """Base exception for all dictionary-engine errors."""

    kind: ErrorKind | None = None


class UnrecognizedFormatError(DictionaryEngineError):
    """Archive contents match neither StarDict nor Yomitan."""

    kind = ErrorKind.UNRECOGNIZED_FORMAT


class InvalidMetadataError(DictionaryEngineError):
    """Required fields missing in ``.ifo`` or ``index.json``."""

    kind = ErrorKind.INVALID_METADATA

    def __init__(self, message: str, member: str | None = None) -> None:
        self.member = member
        if member:
            message = f"{member}: {message}"
        super().__init__(message)


class CorruptIndexError(DictionaryEngineError):
    """``.idx`` size, offset or terminator invariants violated."""

    kind = ErrorKind.CORRUPT_INDEX

    def __init__(
        self,
        message: str,
        *,
        member: str | None = None,
        word_number: int | None = None,
        position: int | None = None,
    ) -> None:
        self.member = member
        self.word_number = word_number
        self.position = position
        parts = [message]
        if word_number is not None:
            parts.append(f"word {word_number}")
        if position is not None:
            parts.append(f"byte {position}")
        text = ", ".join(parts)
        if member:
            text = f"{member}: {text}"
        super().__init__(text)


class DictionaryAlreadyPresentError(DictionaryEngineError):
    """A dictionary with the same title is already installed."""

    kind = ErrorKind.DICTIONARY_ALREADY_PRESENT

    def __init__(self, title: str) -> None:
        self.title = title
        super().__init__(f"Dictionary {title!r} is already imported")


class DictionaryNotFoundError(DictionaryEngineError):
    """No installed dictionary has the requested title."""


class ArchiveReadError(DictionaryEngineError):
    """The container is not a readable ZIP or tar archive."""

    kind = ErrorKind.ARCHIVE_READ


class DecompressError(DictionaryEngineError):
    """Inflating a ``.gz`` or ``.dz`` member failed."""

    kind = ErrorKind.DECOMPRESS

    def __init__(self, message: str, member: str | None = None) -> None:
        self.member = member
        if member:
            message = f"{member}: {message}"
        super().__init__(message)


class OperationCancelledError(DictionaryEngineError):
    """Cooperative cancellation tripped or the deadline expired."""

    kind = ErrorKind.CANCELLED


class StorageError(DictionaryEngineError):
    """Schema version mismatch or a failure inside the persistence layer."""

    kind = ErrorKind.STORAGE


class ConfigError(DictionaryEngineError):
    """Invalid engine configuration."""

    def __init__(self, message: str, line: int | None = None) -> None:
        self.line = line
        super().__init__(message)


class DictionaryImportError(DictionaryEngineError):
    """An import failed; ``kind`` names the cause, ``context`` the member."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        context: str | None = None,
    ) -> None:
        self.kind = kind
        self.context = context
        super().__init__(f"[{kind.value}] {message}")
