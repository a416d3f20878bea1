from __future__ import annotations

import argparse
import sys
from importlib import metadata
from pathlib import Path

import tomllib
import uvicorn
from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm
from rich.table import Table

from .archive import decode_bytes
from .backup import (
    BackupDocument,
    MergeOptions,
    SyncOptions,
    augment,
    backup_filename,
    backup_to_chapters,
    collect_covers,
    create_backup,
    load_backup,
    merge,
    save_backup,
)
from .chapter_zip import build_chapter_zip, build_numbered_zip, drop_leading_lines, read_chapter_zip
from .chapters import Chapter
from .config import ToolConfig, load_config
from .cover import CoverImage
from .epub import EpubMetadata, build_epub, extract_epub
from .errors import ConfigurationError, NovelKitError
from .find_replace import Match, SearchOptions, apply_selected, match_context, search
from .logging_utils import build_uvicorn_log_config, configure_logging
from .organize import (
    FILE_ORDERS,
    SERIES_ORDERS,
    export_selection,
    filter_files,
    organize_backups,
    sort_files,
    sorted_series,
)
from .segmenter import AUTO_STRATEGY, CHAPTER_STRATEGIES, CUSTOM_STRATEGY, CleanupRule, preview_matches, segment
from .web import WebConfig, create_app

console = Console()
err_console = Console(stderr=True)


def _read_local_version() -> str | None:
    try:
        pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    except IndexError:  # pragma: no cover
        return None
    try:
        with pyproject_path.open("rb") as fh:
            data = tomllib.load(fh)
    except (FileNotFoundError, tomllib.TOMLDecodeError):
        return None
    return data.get("project", {}).get("version")


try:
    __version__ = metadata.version("novelkit")
except metadata.PackageNotFoundError:
    __version__ = _read_local_version() or "0.0.0+unknown"


def _add_common_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"novelkit {__version__}",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Show debug logging.",
    )


def _add_epub_metadata_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--title", help="Book title (defaults to the input file name).")
    parser.add_argument("--author", help="Book author.")
    parser.add_argument("--language", help="Book language code (default from config, else 'en').")
    parser.add_argument("--cover", help="Cover image (JPEG, PNG, GIF or WebP).")
    parser.add_argument(
        "--markdown",
        action="store_true",
        help="Render '#' headings, **bold** and *italic* markup.",
    )


def _add_sync_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--prefix", help="Chapter title prefix (default 'Chapter ').")
    parser.add_argument(
        "--preserve-titles",
        action="store_true",
        help="Keep existing chapter titles instead of numbering them.",
    )


def build_split_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelkit split",
        description="Split a plain-text novel into chapters and export them as ZIP, EPUB or backup JSON.",
    )
    _add_common_flags(ap)
    ap.add_argument("input_path", help="Path to the .txt file to split.")
    ap.add_argument(
        "-s",
        "--strategy",
        default=AUTO_STRATEGY,
        choices=[AUTO_STRATEGY, *CHAPTER_STRATEGIES, CUSTOM_STRATEGY],
        help="Chapter heading pattern (default: %(default)s).",
    )
    ap.add_argument("--regex", help="Custom heading regex (implies --strategy custom).")
    ap.add_argument("--template", help="Use a split template saved in the config file.")
    ap.add_argument(
        "--cleanup",
        action="append",
        default=[],
        metavar="FIND[=>REPLACE]",
        help="Regex cleanup rule applied to every chapter; repeatable.",
    )
    ap.add_argument("--encoding", default=None, help="Text encoding (default: auto-detect).")
    ap.add_argument(
        "-f",
        "--format",
        choices=["zip", "epub", "backup"],
        default="zip",
        help="Output format (default: %(default)s).",
    )
    ap.add_argument("-o", "--output", help="Output path (default: next to the input).")
    ap.add_argument(
        "--preview",
        action="store_true",
        help="Only list the detected chapter headings.",
    )
    ap.add_argument("--start-number", type=int, default=1, help="First chapter ranking for backups.")
    _add_sync_flags(ap)
    _add_epub_metadata_flags(ap)
    return ap


def build_zip2epub_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelkit zip2epub",
        description="Build an EPUB from a ZIP of per-chapter .txt files.",
    )
    _add_common_flags(ap)
    ap.add_argument("input_path", help="ZIP archive of chapter text files.")
    ap.add_argument("-o", "--output", help="Output .epub path.")
    ap.add_argument(
        "--clean-titles",
        action="store_true",
        help="Derive readable chapter titles from file names (drop numbering, underscores).",
    )
    _add_epub_metadata_flags(ap)
    return ap


def build_epub2zip_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelkit epub2zip",
        description="Extract EPUB chapters into a ZIP of .txt files.",
    )
    _add_common_flags(ap)
    ap.add_argument("input_path", help="EPUB file to extract.")
    ap.add_argument("-o", "--output", help="Output .zip path.")
    ap.add_argument(
        "--remove-lines",
        type=int,
        default=0,
        help="Drop this many leading lines from every chapter.",
    )
    ap.add_argument(
        "--numbered",
        metavar="PATTERN",
        help="Name files PATTERN01.txt, PATTERN02.txt, ... instead of using titles.",
    )
    ap.add_argument("--start-number", type=int, default=1, help="First number for --numbered.")
    ap.add_argument("--offset", type=int, default=0, help="Skip this many leading chapters.")
    ap.add_argument(
        "--group-size",
        type=int,
        default=1,
        help="Join this many chapters per file (with --numbered).",
    )
    return ap


def build_backup_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="novelkit backup", description="Create and edit novel backup JSON files.")
    _add_common_flags(ap)
    subparsers = ap.add_subparsers(dest="backup_cmd")

    create = subparsers.add_parser("create", help="Create a backup from a ZIP of chapter files.")
    create.add_argument("archive", help="ZIP archive of .txt chapters.")
    create.add_argument("--title", required=True, help="Project title.")
    create.add_argument("--description", default="", help="Project description.")
    create.add_argument("--code", help="Document code (default: random 8 hex digits).")
    create.add_argument("--start-number", type=int, default=1, help="First chapter ranking.")
    create.add_argument("--extra-chapters", type=int, default=0, help="Append this many empty chapters.")
    create.add_argument("-o", "--output", help="Output .json path.")
    _add_sync_flags(create)

    aug = subparsers.add_parser("augment", help="Append chapters from a ZIP to an existing backup.")
    aug.add_argument("backup", help="Backup JSON to extend.")
    aug.add_argument("archive", help="ZIP archive of .txt chapters.")
    aug.add_argument("--start-number", type=int, help="First new ranking (default: after the last chapter).")
    aug.add_argument("-o", "--output", help="Output path (default: overwrite the backup).")
    _add_sync_flags(aug)

    mrg = subparsers.add_parser("merge", help="Merge several backups into one.")
    mrg.add_argument("backups", nargs="+", help="Backup JSON files, in merge order.")
    mrg.add_argument("--title", required=True, help="Merged project title.")
    mrg.add_argument("--description", default="", help="Merged project description.")
    mrg.add_argument(
        "--cover-index",
        type=int,
        help="1-based index of the cover to keep (see --list-covers).",
    )
    mrg.add_argument("--list-covers", action="store_true", help="List available covers and exit.")
    mrg.add_argument("-o", "--output", help="Output .json path.")
    _add_sync_flags(mrg)

    find = subparsers.add_parser("find", help="Search (and optionally replace) text in a backup.")
    find.add_argument("backup", help="Backup JSON file.")
    find.add_argument("pattern", help="Text or regular expression to find.")
    find.add_argument("--replace", help="Replacement text; prompts for each match unless --yes.")
    find.add_argument("--regex", action="store_true", help="Treat the pattern as a regular expression.")
    find.add_argument("--case-sensitive", action="store_true", help="Match case exactly.")
    find.add_argument("--whole-word", action="store_true", help="Only match whole words.")
    find.add_argument("--yes", action="store_true", help="Replace every match without prompting.")
    find.add_argument("-o", "--output", help="Output path (default: overwrite the backup).")

    export = subparsers.add_parser("export", help="Export a backup's chapters as EPUB or ZIP.")
    export.add_argument("backup", help="Backup JSON file.")
    export.add_argument("-f", "--format", choices=["epub", "zip"], default="epub")
    export.add_argument("-o", "--output", help="Output path.")
    _add_epub_metadata_flags(export)

    org = subparsers.add_parser("organize", help="Group a ZIP of many backups by series and extract a selection.")
    org.add_argument("archive", help="ZIP archive holding .json/.nov/.nov.txt backups.")
    org.add_argument("--sort", choices=FILE_ORDERS, default="date-desc", help="File order within a series.")
    org.add_argument(
        "--series-sort",
        choices=SERIES_ORDERS,
        default="name-asc",
        help="Series order (default: %(default)s).",
    )
    org.add_argument("--folder", help="Only list files in this folder (e.g. 'old/').")
    org.add_argument("--query", help="Only list files whose name contains this text.")
    org.add_argument("--latest", action="store_true", help="Export the newest backup of every series.")
    org.add_argument(
        "--select",
        action="append",
        default=[],
        metavar="PATH",
        help="Export this archive path; repeatable.",
    )
    org.add_argument(
        "--preserve-structure",
        action="store_true",
        help="Keep folder paths in the exported ZIP.",
    )
    org.add_argument("-o", "--output", help="Output .zip path (default: organized_backup.zip).")
    return ap


def build_patterns_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="novelkit patterns", description="List chapter split patterns.")
    _add_common_flags(ap)
    ap.add_argument("input_path", nargs="?", help="Optional text file to preview matches against.")
    return ap


def build_web_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelkit web",
        description="Serve the conversion tools as a JSON API for a browser front end.",
    )
    _add_common_flags(ap)
    ap.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host interface for the web server (default: 127.0.0.1).",
    )
    ap.add_argument(
        "--port",
        type=int,
        default=2047,
        help="Port for the web server (default: 2047).",
    )
    ap.add_argument(
        "--max-upload-mb",
        type=int,
        default=200,
        help="Reject uploads larger than this many megabytes (default: 200).",
    )
    return ap


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelkit",
        description=(
            "Convert serialized novels between plain text, chapter ZIPs, EPUB and backup JSON. "
            "Commands: split, zip2epub, epub2zip, backup, patterns, web."
        ),
    )
    _add_common_flags(ap)
    return ap


def _parse_cleanup(values: list[str]) -> list[CleanupRule]:
    rules: list[CleanupRule] = []
    for value in values:
        find, sep, replace = value.partition("=>")
        rules.append(CleanupRule(find=find, replace=replace if sep else ""))
    return rules


def _load_cover(path_value: str | None) -> CoverImage | None:
    if not path_value:
        return None
    path = Path(path_value).expanduser()
    if not path.is_file():
        raise ConfigurationError(f"Cover image not found: {path}")
    return CoverImage.from_bytes(path.read_bytes(), filename=path.name)


def _epub_metadata(args: argparse.Namespace, config: ToolConfig, fallback_title: str) -> EpubMetadata:
    return EpubMetadata(
        title=(args.title or fallback_title).strip(),
        author=args.author if args.author is not None else config.author,
        language=args.language or config.language,
        cover=_load_cover(args.cover),
        markdown=bool(args.markdown or config.markdown),
    )


def _input_file(value: str, suffix: str | None = None) -> Path:
    path = Path(value).expanduser()
    if not path.is_file():
        raise ConfigurationError(f"Input file not found: {path}")
    if suffix and path.suffix.lower() != suffix:
        raise ConfigurationError(f"Expected a {suffix} file: {path}")
    return path


def _write_output(path: Path, data: bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    console.print(f"Wrote [bold]{escape(str(path))}[/bold]")
    return path


def _chapter_table(chapters: list[Chapter], title: str) -> Table:
    table = Table(title=title)
    table.add_column("#", justify="right")
    table.add_column("Title")
    table.add_column("Characters", justify="right")
    for index, chapter in enumerate(chapters, start=1):
        table.add_row(str(index), escape(chapter.title), str(len(chapter.content)))
    return table


def _run_split(args: argparse.Namespace, config: ToolConfig) -> int:
    inp_path = _input_file(args.input_path)
    text = decode_bytes(inp_path.read_bytes(), args.encoding or config.encoding)
    strategy = args.strategy
    custom_regex = args.regex
    cleanup = _parse_cleanup(args.cleanup)
    if args.template:
        template = config.template(args.template)
        custom_regex = template.regex
        cleanup = [*template.cleanup_rules, *cleanup]
    if args.preview:
        headings = preview_matches(text, strategy, custom_regex=custom_regex)
        if not headings:
            console.print("No chapter headings matched.")
        for heading in headings:
            console.print(escape(heading))
        return 0

    chapters = segment(
        text,
        strategy,
        custom_regex=custom_regex,
        cleanup_rules=cleanup,
        source_name=inp_path.name,
    )
    console.print(_chapter_table(chapters, inp_path.name))
    if args.format == "zip":
        output = Path(args.output) if args.output else inp_path.with_suffix(".zip")
        _write_output(output, build_chapter_zip(chapters))
    elif args.format == "epub":
        output = Path(args.output) if args.output else inp_path.with_suffix(".epub")
        _write_output(output, build_epub(chapters, _epub_metadata(args, config, inp_path.stem)))
    else:
        document = create_backup(
            chapters,
            args.title or inp_path.stem,
            options=SyncOptions(
                prefix=args.prefix if args.prefix is not None else config.prefix,
                start_number=args.start_number,
                preserve_titles=args.preserve_titles,
            ),
        )
        output = Path(args.output) if args.output else inp_path.with_suffix(".json")
        save_backup(document, output)
        console.print(f"Wrote [bold]{escape(str(output))}[/bold]")
    return 0


def _run_zip2epub(args: argparse.Namespace, config: ToolConfig) -> int:
    inp_path = _input_file(args.input_path, ".zip")
    with console.status("Reading chapters..."):
        chapters = read_chapter_zip(
            inp_path.read_bytes(),
            config.extension,
            encoding=config.encoding,
            clean_titles=args.clean_titles,
            max_workers=config.decode_concurrency,
        )
    metadata = _epub_metadata(args, config, inp_path.stem)
    output = Path(args.output) if args.output else inp_path.with_suffix(".epub")
    _write_output(output, build_epub(chapters, metadata))
    console.print(f"{len(chapters)} chapter(s) packed.")
    return 0


def _run_epub2zip(args: argparse.Namespace, config: ToolConfig) -> int:
    inp_path = _input_file(args.input_path, ".epub")
    with console.status("Reading EPUB..."):
        book = extract_epub(inp_path.read_bytes(), max_workers=config.decode_concurrency)
    for skipped in book.skipped:
        err_console.print(f"[yellow]Skipped[/yellow] {escape(skipped)} (no text)")
    chapters = [
        Chapter(title=chapter.title, content=drop_leading_lines(chapter.content, args.remove_lines))
        for chapter in book.chapters
    ]
    output = Path(args.output) if args.output else inp_path.with_suffix(".zip")
    if args.numbered:
        data = build_numbered_zip(
            [chapter.content for chapter in chapters],
            args.numbered,
            start_number=args.start_number,
            offset=args.offset,
            group_size=args.group_size,
        )
    else:
        if args.offset < 0:
            raise ConfigurationError("Offset cannot be negative.")
        data = build_chapter_zip(chapters[args.offset :])
    _write_output(output, data)
    return 0


def _review_matches(document: BackupDocument, matches: list[Match]) -> list[bool]:
    selection: list[bool] = []
    for index, match in enumerate(matches, start=1):
        before, hit, after = match_context(document, match)
        console.print(
            f"[dim]{index}/{len(matches)} {escape(match.scene_title or match.scene_code)}[/dim]  "
            f"…{escape(before)}[reverse]{escape(hit)}[/reverse]{escape(after)}…"
        )
        selection.append(Confirm.ask("Replace?", default=True, console=console))
    return selection


def _run_backup(args: argparse.Namespace, config: ToolConfig) -> int:
    if not args.backup_cmd:
        raise SystemExit("A backup subcommand is required. Use --help for options.")

    prefix = getattr(args, "prefix", None)
    if prefix is None:
        prefix = config.prefix

    if args.backup_cmd == "create":
        archive = _input_file(args.archive, ".zip")
        chapters = read_chapter_zip(
            archive.read_bytes(),
            config.extension,
            encoding=config.encoding,
            max_workers=config.decode_concurrency,
        )
        document = create_backup(
            chapters,
            args.title,
            args.description,
            code=args.code,
            options=SyncOptions(
                prefix=prefix,
                start_number=args.start_number,
                preserve_titles=args.preserve_titles,
                extra_empty_chapters=args.extra_chapters,
            ),
        )
        output = Path(args.output) if args.output else archive.with_name(backup_filename(args.title))
        save_backup(document, output)
        console.print(f"Created backup with {len(document.scenes)} chapter(s): [bold]{escape(str(output))}[/bold]")
        return 0

    if args.backup_cmd == "augment":
        base_path = _input_file(args.backup)
        archive = _input_file(args.archive, ".zip")
        base = load_backup(base_path)
        chapters = read_chapter_zip(
            archive.read_bytes(),
            config.extension,
            encoding=config.encoding,
            max_workers=config.decode_concurrency,
        )
        document = augment(
            base,
            chapters,
            args.start_number,
            SyncOptions(prefix=prefix, preserve_titles=args.preserve_titles),
        )
        output = Path(args.output) if args.output else base_path
        save_backup(document, output)
        added = len(document.scenes) - len(base.scenes)
        console.print(f"Appended {added} chapter(s): [bold]{escape(str(output))}[/bold]")
        return 0

    if args.backup_cmd == "merge":
        if args.cover_index is not None and args.cover_index < 1:
            raise ConfigurationError("--cover-index counts from 1 (see --list-covers).")
        documents = [load_backup(_input_file(value)) for value in args.backups]
        covers = collect_covers(documents)
        if args.list_covers:
            for index, cover in enumerate(covers, start=1):
                console.print(f"{index}: {len(cover)} base64 characters")
            if not covers:
                console.print("No covers found.")
            return 0
        document = merge(
            documents,
            MergeOptions(
                title=args.title,
                description=args.description,
                prefix=prefix,
                preserve_titles=args.preserve_titles,
                cover_index=args.cover_index - 1 if args.cover_index is not None else None,
            ),
        )
        output = Path(args.output) if args.output else Path(backup_filename(args.title, "merged_backup"))
        save_backup(document, output)
        console.print(f"Merged {len(documents)} backup(s) into [bold]{escape(str(output))}[/bold]")
        return 0

    if args.backup_cmd == "find":
        backup_path = _input_file(args.backup)
        document = load_backup(backup_path)
        options = SearchOptions(
            is_regex=args.regex,
            case_sensitive=args.case_sensitive,
            whole_word=args.whole_word,
        )
        matches = search(document, args.pattern, options)
        console.print(f"{len(matches)} match(es).")
        if args.replace is None:
            table = Table()
            table.add_column("Scene")
            table.add_column("Index", justify="right")
            table.add_column("Context")
            for match in matches:
                before, hit, after = match_context(document, match)
                table.add_row(
                    escape(match.scene_title or match.scene_code),
                    str(match.index),
                    f"{escape(before)}[reverse]{escape(hit)}[/reverse]{escape(after)}",
                )
            if matches:
                console.print(table)
            return 0
        if not matches:
            return 0
        selection = [True] * len(matches) if args.yes else _review_matches(document, matches)
        updated = apply_selected(document, matches, selection, args.replace)
        output = Path(args.output) if args.output else backup_path
        save_backup(updated, output)
        console.print(f"Replaced {sum(selection)} match(es): [bold]{escape(str(output))}[/bold]")
        return 0

    if args.backup_cmd == "export":
        backup_path = _input_file(args.backup)
        document = load_backup(backup_path)
        chapters = backup_to_chapters(document)
        if args.format == "zip":
            output = Path(args.output) if args.output else backup_path.with_suffix(".zip")
            _write_output(output, build_chapter_zip(chapters))
            return 0
        metadata = _epub_metadata(args, config, document.title or backup_path.stem)
        if metadata.cover is None and document.cover:
            stored = CoverImage.from_base64(document.cover, "image/jpeg")
            metadata.cover = CoverImage.from_bytes(stored.data, filename="cover")
        output = Path(args.output) if args.output else backup_path.with_suffix(".epub")
        _write_output(output, build_epub(chapters, metadata))
        return 0

    if args.backup_cmd == "organize":
        return _run_organize(args, config)

    raise SystemExit(f"Unknown backup subcommand: {args.backup_cmd}")


def _run_organize(args: argparse.Namespace, config: ToolConfig) -> int:
    archive = _input_file(args.archive, ".zip")
    data = archive.read_bytes()
    with console.status("Reading backups..."):
        organized = organize_backups(data, max_workers=config.decode_concurrency)

    if args.latest or args.select:
        selected = list(args.select)
        if args.latest:
            selected.extend(info.path for info in organized.latest())
        output = Path(args.output) if args.output else archive.with_name("organized_backup.zip")
        _write_output(output, export_selection(data, selected, preserve_structure=args.preserve_structure))
        return 0

    for name, infos in sorted_series(organized.series, args.series_sort).items():
        shown = sort_files(filter_files(infos, folder=args.folder, query=args.query), args.sort)
        if not shown:
            continue
        table = Table(title=f"{escape(name)} ({len(shown)})")
        table.add_column("File")
        table.add_column("Date")
        table.add_column("Size", justify="right")
        table.add_column("Words", justify="right")
        table.add_column("Folder")
        for info in shown:
            label = escape(info.name) + (" [green]latest[/green]" if info.latest else "")
            words = "" if info.word_count is None else f"{info.word_count:,}"
            table.add_row(
                label,
                info.modified.strftime("%Y-%m-%d %H:%M"),
                str(info.size),
                words,
                escape(info.folder),
            )
        console.print(table)
    others = filter_files(organized.others, folder=args.folder, query=args.query)
    if others:
        console.print(f"Other files: {escape(', '.join(info.path for info in others))}")
    return 0


def _run_patterns(args: argparse.Namespace, config: ToolConfig) -> int:
    text = None
    if args.input_path:
        text = decode_bytes(_input_file(args.input_path).read_bytes(), config.encoding)
    table = Table(title="Chapter patterns")
    table.add_column("Name")
    table.add_column("Example / regex")
    if text is not None:
        table.add_column("First matches")
    for key, strategy in CHAPTER_STRATEGIES.items():
        row = [key, escape(strategy.example)]
        if text is not None:
            row.append(escape(" | ".join(preview_matches(text, strategy))))
        table.add_row(*row)
    for template in config.templates:
        row = [f"{escape(template.name)} (template)", escape(template.regex)]
        if text is not None:
            row.append(escape(" | ".join(preview_matches(text, CUSTOM_STRATEGY, custom_regex=template.regex))))
        table.add_row(*row)
    console.print(table)
    return 0


def _run_web(args: argparse.Namespace, config: ToolConfig) -> int:
    app = create_app(WebConfig(tool_config=config, max_upload_bytes=args.max_upload_mb * 1024 * 1024))
    console.print(f"Serving novelkit API on http://{args.host}:{args.port}/")
    console.print("Press Ctrl+C to stop.\n")
    uvicorn.run(app, host=args.host, port=args.port, log_config=build_uvicorn_log_config(args.debug))
    return 0


_COMMANDS = {
    "split": (build_split_parser, _run_split),
    "zip2epub": (build_zip2epub_parser, _run_zip2epub),
    "epub2zip": (build_epub2zip_parser, _run_epub2zip),
    "backup": (build_backup_parser, _run_backup),
    "patterns": (build_patterns_parser, _run_patterns),
    "web": (build_web_parser, _run_web),
}


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] not in _COMMANDS:
        parser = build_parser()
        if not argv:
            parser.print_help()
            return 0
        parser.parse_args(argv)
        parser.error(f"unknown command: {argv[0]}")

    build, run = _COMMANDS[argv[0]]
    args = build().parse_args(argv[1:])
    configure_logging(args.debug, err_console)
    try:
        config = load_config()
        return run(args, config)
    except NovelKitError as exc:
        err_console.print(f"[red]Error:[/red] {escape(str(exc))}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
