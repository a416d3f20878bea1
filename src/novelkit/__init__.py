from .backup import (
    BackupDocument,
    MergeOptions,
    SyncOptions,
    augment,
    create_backup,
    load_backup,
    merge,
    save_backup,
    synchronize,
)
from .chapter_zip import build_chapter_zip, read_chapter_zip
from .chapters import Chapter, ChapterModel
from .epub import EpubMetadata, build_epub, extract_epub, read_epub
from .errors import (
    ChapterNotFoundError,
    ConfigurationError,
    InvalidDocumentSchemaError,
    InvalidOffsetError,
    InvalidPatternError,
    InvalidPermutationError,
    MalformedArchiveError,
    NoContentFoundError,
    NoPreviousChapterError,
    NovelKitError,
)
from .find_replace import Match, SearchOptions, apply_selected, replace_all, search
from .organize import OrganizedArchive, export_selection, organize_backups, series_name
from .segmenter import CleanupRule, segment

__all__ = [
    "Chapter",
    "ChapterModel",
    "segment",
    "CleanupRule",
    "BackupDocument",
    "SyncOptions",
    "MergeOptions",
    "synchronize",
    "create_backup",
    "augment",
    "merge",
    "load_backup",
    "save_backup",
    "EpubMetadata",
    "build_epub",
    "extract_epub",
    "read_epub",
    "build_chapter_zip",
    "read_chapter_zip",
    "SearchOptions",
    "Match",
    "search",
    "apply_selected",
    "replace_all",
    "OrganizedArchive",
    "organize_backups",
    "export_selection",
    "series_name",
    "NovelKitError",
    "MalformedArchiveError",
    "InvalidDocumentSchemaError",
    "NoContentFoundError",
    "ConfigurationError",
    "InvalidPatternError",
    "InvalidOffsetError",
    "InvalidPermutationError",
    "NoPreviousChapterError",
    "ChapterNotFoundError",
]
