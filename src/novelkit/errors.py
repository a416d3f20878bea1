from __future__ import annotations


class NovelKitError(Exception):
    """Base class for every error raised by novelkit operations."""


class MalformedArchiveError(NovelKitError):
    """Raised when a ZIP/EPUB container is unreadable or missing required parts."""


class InvalidDocumentSchemaError(NovelKitError):
    """Raised when a backup JSON document parses but lacks required fields."""


class NoContentFoundError(NovelKitError):
    """Raised when extraction yields zero usable chapters."""


class ConfigurationError(NovelKitError, ValueError):
    """Raised when caller-supplied options are unusable (empty title, bad start number)."""


class InvalidPatternError(ConfigurationError):
    """Raised when a user-supplied regular expression fails to compile."""


class InvalidOffsetError(NovelKitError, IndexError):
    """Raised when a split offset falls outside the chapter content."""


class InvalidPermutationError(NovelKitError, ValueError):
    """Raised when a reorder request is not a permutation of the current ids."""


class NoPreviousChapterError(NovelKitError):
    """Raised when merging the first chapter upward."""


class ChapterNotFoundError(NovelKitError, KeyError):
    """Raised when a chapter id is not part of the model."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Chapter not found"
