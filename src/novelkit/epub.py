from __future__ import annotations

import html
import logging
import re
import uuid
import warnings
import xml.etree.ElementTree as ET
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Iterable, Sequence
from urllib.parse import unquote

from bs4 import BeautifulSoup, Doctype, FeatureNotFound, NavigableString, XMLParsedAsHTMLWarning

from .archive import DECODE_CONCURRENCY, build_archive, decode_bytes, open_archive
from .chapters import Chapter
from .cover import CoverImage
from .errors import ConfigurationError, MalformedArchiveError, NoContentFoundError

logger = logging.getLogger(__name__)

EPUB_MIMETYPE = "application/epub+zip"
CONTAINER_PATH = "META-INF/container.xml"
CONTAINER_NS = "urn:oasis:names:tc:opendocument:xmlns:container"
DC_NS = "http://purl.org/dc/elements/1.1/"
HTML_EXTS = (".xhtml", ".html", ".htm")
XHTML_MEDIA_TYPES = {"application/xhtml+xml", "text/html"}
NCX_MEDIA_TYPE = "application/x-dtbncx+xml"
HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]

DEFAULT_STYLESHEET = (
    "body{font-family:sans-serif;line-height:1.6;}\n"
    "h2{text-align:center;font-weight:bold;}\n"
    "p{text-indent:1.5em;margin-top:0;margin-bottom:0;text-align:justify;}\n"
    "p+p{margin-top:1em;}\n"
)

# Block elements that should start on a new line when collapsing to text.
BLOCK_LEVEL_TAGS = {
    "address",
    "article",
    "aside",
    "blockquote",
    "dd",
    "div",
    "dl",
    "dt",
    "figcaption",
    "figure",
    "footer",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "header",
    "hr",
    "li",
    "main",
    "nav",
    "ol",
    "p",
    "pre",
    "section",
    "table",
    "tr",
    "ul",
}
# Tags that should force a break even when nested inside another block.
FORCE_BREAK_TAGS = {"h1", "h2", "h3", "h4", "h5", "h6", "li", "p", "dt", "dd", "tr"}


@dataclass
class EpubMetadata:
    title: str
    author: str = ""
    language: str = "en"
    cover: CoverImage | None = None
    markdown: bool = False
    identifier: str | None = None
    stylesheet: str = DEFAULT_STYLESHEET


@dataclass
class EpubBook:
    chapters: list[Chapter]
    skipped: list[str] = field(default_factory=list)
    title: str | None = None
    author: str | None = None
    cover: CoverImage | None = None


@dataclass
class _ManifestItem:
    id: str
    path: str
    media_type: str
    properties: str = ""


@dataclass
class _Package:
    opf_path: str
    root: ET.Element
    manifest: dict[str, _ManifestItem]
    spine: list[_ManifestItem]
    toc_id: str | None


def escape(text: str) -> str:
    return html.escape(text, quote=True)


# Writing --------------------------------------------------------------------------

_STRONG_PATTERN = re.compile(r"\*\*(.+?)\*\*|__(.+?)__")
_EM_PATTERN = re.compile(r"\*(.+?)\*|_(.+?)_")
_MD_HEADING_PATTERN = re.compile(r"^(#{1,6})\s+(.*)$")


def _inline_markdown(line: str) -> str:
    marked = _STRONG_PATTERN.sub(lambda m: f"\x00S{m.group(1) or m.group(2)}\x00s", line)
    marked = _EM_PATTERN.sub(lambda m: f"\x00E{m.group(1) or m.group(2)}\x00e", marked)
    escaped = escape(marked)
    return (
        escaped.replace("\x00S", "<strong>")
        .replace("\x00s", "</strong>")
        .replace("\x00E", "<em>")
        .replace("\x00e", "</em>")
    )


def _chapter_body(content: str, markdown: bool) -> str:
    parts: list[str] = []
    for raw_line in content.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        line = raw_line.strip()
        if not line:
            continue
        if markdown:
            heading = _MD_HEADING_PATTERN.match(line)
            if heading:
                level = min(len(heading.group(1)) + 1, 6)
                parts.append(f"<h{level}>{_inline_markdown(heading.group(2))}</h{level}>")
            else:
                parts.append(f"<p>{_inline_markdown(line)}</p>")
        else:
            parts.append(f"<p>{escape(line)}</p>")
    if not parts:
        parts.append("<p>&#160;</p>")
    return "\n".join(parts)


def _chapter_document(title: str, content: str, metadata: EpubMetadata) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        "<!DOCTYPE html>\n"
        '<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops" '
        f'xml:lang="{escape(metadata.language)}" lang="{escape(metadata.language)}">\n'
        f"<head>\n<title>{escape(title)}</title>\n"
        '<link rel="stylesheet" type="text/css" href="../css/style.css"/>\n</head>\n'
        '<body>\n<section epub:type="chapter">\n'
        f"<h2>{escape(title)}</h2>\n{_chapter_body(content, metadata.markdown)}\n"
        "</section>\n</body>\n</html>\n"
    )


def _cover_document(href: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        "<!DOCTYPE html>\n"
        '<html xmlns="http://www.w3.org/1999/xhtml">\n'
        "<head><title>Cover</title></head>\n"
        '<body style="text-align:center;margin:0;padding:0;">'
        f'<img src="{escape(href)}" alt="Cover" style="max-width:100%;max-height:100vh;"/>'
        "</body>\n</html>\n"
    )


def _nav_document(titles: Sequence[str], book_title: str) -> str:
    items = "\n".join(
        f'<li><a href="text/chapter_{index}.xhtml">{escape(title)}</a></li>'
        for index, title in enumerate(titles, start=1)
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        "<!DOCTYPE html>\n"
        '<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops">\n'
        f"<head><title>{escape(book_title)}</title></head>\n"
        '<body>\n<nav epub:type="toc" id="toc">\n<h1>Contents</h1>\n'
        f"<ol>\n{items}\n</ol>\n</nav>\n</body>\n</html>\n"
    )


def _ncx_document(titles: Sequence[str], book_title: str, identifier: str) -> str:
    points = "\n".join(
        f'<navPoint id="navPoint-{index}" playOrder="{index}">'
        f"<navLabel><text>{escape(title)}</text></navLabel>"
        f'<content src="text/chapter_{index}.xhtml"/></navPoint>'
        for index, title in enumerate(titles, start=1)
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<ncx xmlns="http://www.daisy.org/z3986/2005/ncx/" version="2005-1">\n'
        "<head>\n"
        f'<meta name="dtb:uid" content="{escape(identifier)}"/>\n'
        '<meta name="dtb:depth" content="1"/>\n'
        '<meta name="dtb:totalPageCount" content="0"/>\n'
        '<meta name="dtb:maxPageNumber" content="0"/>\n'
        "</head>\n"
        f"<docTitle><text>{escape(book_title)}</text></docTitle>\n"
        f"<navMap>\n{points}\n</navMap>\n</ncx>\n"
    )


def _package_document(
    metadata: EpubMetadata,
    identifier: str,
    manifest: Sequence[tuple[str, str, str, str | None]],
    spine: Sequence[tuple[str, bool]],
) -> str:
    modified = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    meta = [
        f'<dc:identifier id="BookId">{escape(identifier)}</dc:identifier>',
        f"<dc:title>{escape(metadata.title)}</dc:title>",
        f"<dc:language>{escape(metadata.language)}</dc:language>",
    ]
    if metadata.author:
        meta.append(f"<dc:creator>{escape(metadata.author)}</dc:creator>")
    meta.append(f'<meta property="dcterms:modified">{modified}</meta>')
    if metadata.cover is not None:
        meta.append('<meta name="cover" content="cover-image"/>')
    items = []
    for item_id, href, media_type, properties in manifest:
        props = f' properties="{properties}"' if properties else ""
        items.append(f'<item id="{item_id}" href="{escape(href)}" media-type="{media_type}"{props}/>')
    refs = []
    for idref, linear in spine:
        suffix = "" if linear else ' linear="no"'
        refs.append(f'<itemref idref="{idref}"{suffix}/>')
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<package xmlns="http://www.idpf.org/2007/opf" unique-identifier="BookId" version="3.0">\n'
        f'<metadata xmlns:dc="{DC_NS}">\n' + "\n".join(meta) + "\n</metadata>\n"
        "<manifest>\n" + "\n".join(items) + "\n</manifest>\n"
        '<spine toc="ncx">\n' + "\n".join(refs) + "\n</spine>\n</package>\n"
    )


def build_epub(chapters: Iterable[Chapter], metadata: EpubMetadata) -> bytes:
    """Render ``chapters`` as an EPUB 3 archive (with an EPUB 2 NCX) and return its bytes."""
    if not metadata.title or not metadata.title.strip():
        raise ConfigurationError("An EPUB title is required.")
    items = [(chapter.title, chapter.content) for chapter in chapters]
    if not items:
        raise NoContentFoundError("Cannot build an EPUB without chapters.")
    identifier = metadata.identifier or f"urn:uuid:{uuid.uuid4()}"
    titles = [title if title.strip() else f"Chapter {index}" for index, (title, _) in enumerate(items, start=1)]

    manifest: list[tuple[str, str, str, str | None]] = [
        ("css", "css/style.css", "text/css", None),
        ("nav", "nav.xhtml", "application/xhtml+xml", "nav"),
        ("ncx", "toc.ncx", NCX_MEDIA_TYPE, None),
    ]
    spine: list[tuple[str, bool]] = []
    files: list[tuple[str, bytes | str]] = []
    cover = metadata.cover
    if cover is not None:
        image_href = f"images/cover{cover.extension}"
        manifest.append(("cover-image", image_href, cover.media_type, "cover-image"))
        manifest.append(("cover-page", "text/cover.xhtml", "application/xhtml+xml", None))
        spine.append(("cover-page", False))
        files.append((f"OEBPS/{image_href}", cover.data))
        files.append(("OEBPS/text/cover.xhtml", _cover_document(f"../{image_href}")))
    for index, ((_, content), title) in enumerate(zip(items, titles), start=1):
        href = f"text/chapter_{index}.xhtml"
        manifest.append((f"chapter-{index}", href, "application/xhtml+xml", None))
        spine.append((f"chapter-{index}", True))
        files.append((f"OEBPS/{href}", _chapter_document(title, content, metadata)))

    entries: list[tuple[str, bytes | str]] = [
        ("mimetype", EPUB_MIMETYPE),
        (
            CONTAINER_PATH,
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            f'<container version="1.0" xmlns="{CONTAINER_NS}"><rootfiles>'
            '<rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>'
            "</rootfiles></container>\n",
        ),
        ("OEBPS/content.opf", _package_document(metadata, identifier, manifest, spine)),
        ("OEBPS/css/style.css", metadata.stylesheet),
        ("OEBPS/nav.xhtml", _nav_document(titles, metadata.title)),
        ("OEBPS/toc.ncx", _ncx_document(titles, metadata.title, identifier)),
        *files,
    ]
    return build_archive(entries, stored={"mimetype"})


# Reading --------------------------------------------------------------------------


def _strip_tag(tag: str) -> str:
    return tag.split("}", 1)[-1] if "}" in tag else tag


def _get_attr(elem: ET.Element, name: str) -> str | None:
    for attr, value in elem.attrib.items():
        if _strip_tag(attr) == name:
            return value
    return None


def _resolve_relative_path(base_file: str, href: str) -> str:
    combined = PurePosixPath(base_file).parent / unquote(href)
    parts: list[str] = []
    for part in combined.parts:
        if part in ("", ".", "/"):
            continue
        if part == "..":
            if parts:
                parts.pop()
            continue
        parts.append(part)
    return "/".join(parts)


def _split_href_fragment(href: str) -> tuple[str, str | None]:
    if "#" in href:
        base, frag = href.split("#", 1)
        return base, unquote(frag)
    return href, None


def _read_xml(zf: zipfile.ZipFile, name: str) -> ET.Element:
    try:
        raw = zf.read(name)
    except KeyError as exc:
        raise MalformedArchiveError(f"{name} is missing from the EPUB") from exc
    try:
        return ET.fromstring(raw)
    except ET.ParseError as exc:
        raise MalformedArchiveError(f"{name} is not well-formed XML: {exc}") from exc


def _find_opf_path(zf: zipfile.ZipFile) -> str:
    root = _read_xml(zf, CONTAINER_PATH)
    for elem in root.iter():
        if _strip_tag(elem.tag) == "rootfile":
            full = elem.attrib.get("full-path")
            if full:
                return full
    raise MalformedArchiveError("container.xml does not name a package document")


def _read_package(zf: zipfile.ZipFile) -> _Package:
    opf_path = _find_opf_path(zf)
    root = _read_xml(zf, opf_path)
    manifest: dict[str, _ManifestItem] = {}
    spine_ids: list[str] = []
    toc_id: str | None = None
    for elem in root.iter():
        name = _strip_tag(elem.tag)
        if name == "item":
            item_id = _get_attr(elem, "id")
            href = _get_attr(elem, "href")
            if not item_id or not href:
                continue
            manifest[item_id] = _ManifestItem(
                id=item_id,
                path=_resolve_relative_path(opf_path, href),
                media_type=(_get_attr(elem, "media-type") or "").lower(),
                properties=(_get_attr(elem, "properties") or "").lower(),
            )
        elif name == "spine":
            toc_id = _get_attr(elem, "toc")
        elif name == "itemref":
            idref = _get_attr(elem, "idref")
            if idref:
                spine_ids.append(idref)
    spine: list[_ManifestItem] = []
    for idref in spine_ids:
        if idref not in manifest:
            raise MalformedArchiveError(f"Spine entry {idref!r} has no manifest item")
        spine.append(manifest[idref])
    if not spine:
        raise MalformedArchiveError("The package document has an empty spine")
    return _Package(opf_path=opf_path, root=root, manifest=manifest, spine=spine, toc_id=toc_id)


def _parse_nav_document(text: str) -> list[tuple[str, str]]:
    soup = BeautifulSoup(text, "html.parser")
    nav_tags = []
    for nav in soup.find_all("nav"):
        nav_type = (nav.get("epub:type") or "").lower()
        role = (nav.get("role") or "").lower()
        if "toc" in nav_type or role == "doc-toc":
            nav_tags.append(nav)
    if not nav_tags:
        nav_tags = soup.find_all("nav")
    entries: list[tuple[str, str]] = []
    for nav in nav_tags:
        for anchor in nav.find_all("a"):
            href = anchor.get("href")
            if href:
                entries.append((href, anchor.get_text(" ", strip=True)))
    return entries


def _parse_ncx_document(raw: bytes) -> list[tuple[str, str]]:
    try:
        root = ET.fromstring(raw)
    except ET.ParseError:
        logger.warning("Ignoring malformed NCX table of contents")
        return []
    entries: list[tuple[str, str]] = []
    for nav_point in root.iter():
        if _strip_tag(nav_point.tag) != "navPoint":
            continue
        label = ""
        src = None
        for child in nav_point:
            child_name = _strip_tag(child.tag)
            if child_name == "navLabel":
                label = " ".join("".join(child.itertext()).split())
            elif child_name == "content":
                src = child.attrib.get("src")
        if src:
            entries.append((src, label))
    return entries


def _toc_titles(zf: zipfile.ZipFile, package: _Package) -> dict[str, str]:
    """Map content document paths to their first table-of-contents label."""
    toc_path: str | None = None
    entries: list[tuple[str, str]] = []
    nav_items = [item for item in package.manifest.values() if "nav" in item.properties.split()]
    if nav_items:
        toc_path = nav_items[0].path
        try:
            entries = _parse_nav_document(decode_bytes(zf.read(toc_path)))
        except KeyError:
            logger.warning("Navigation document %s is missing", toc_path)
    if not entries and package.toc_id and package.toc_id in package.manifest:
        toc_path = package.manifest[package.toc_id].path
        try:
            entries = _parse_ncx_document(zf.read(toc_path))
        except KeyError:
            logger.warning("NCX document %s is missing", toc_path)
    titles: dict[str, str] = {}
    if toc_path is None:
        return titles
    for href, label in entries:
        base_href, _fragment = _split_href_fragment(href)
        path = _resolve_relative_path(toc_path, base_href)
        if label and path not in titles:
            titles[path] = label
    return titles


def _book_metadata(root: ET.Element) -> tuple[str | None, str | None]:
    title: str | None = None
    authors: list[str] = []
    for elem in root.iter():
        if not elem.tag.startswith(f"{{{DC_NS}}}"):
            continue
        name = _strip_tag(elem.tag)
        text = " ".join("".join(elem.itertext()).split())
        if not text:
            continue
        if name == "title" and title is None:
            title = text
        elif name == "creator":
            role = (_get_attr(elem, "role") or "").lower()
            if role and role not in {"aut", "author"}:
                continue
            if text not in authors:
                authors.append(text)
    return title, ", ".join(authors) or None


def _extract_cover_image(zf: zipfile.ZipFile, package: _Package) -> CoverImage | None:
    candidates: list[_ManifestItem] = []
    for elem in package.root.iter():
        if _strip_tag(elem.tag) != "meta":
            continue
        name = (_get_attr(elem, "name") or "").lower()
        content = _get_attr(elem, "content")
        if name == "cover" and content and content.strip() in package.manifest:
            candidates.append(package.manifest[content.strip()])
    for item in package.manifest.values():
        if "cover-image" in item.properties.split() and item.media_type.startswith("image/"):
            candidates.append(item)
    for item in candidates:
        if not item.media_type.startswith("image/"):
            continue
        try:
            data = zf.read(item.path)
        except KeyError:
            continue
        return CoverImage(data=data, media_type=item.media_type, filename=PurePosixPath(item.path).name)
    return None


def _soup_from_html(text: str) -> BeautifulSoup:
    stripped = text.lstrip()
    lower_head = stripped[:200].lower()
    xmlish = stripped.startswith("<?xml") or ("<html" in lower_head and "xmlns" in lower_head)

    if xmlish:
        try:
            return BeautifulSoup(text, "lxml-xml")
        except FeatureNotFound:
            pass

    for parser in ("lxml", "html.parser"):
        try:
            with warnings.catch_warnings():
                warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
                return BeautifulSoup(text, parser)
        except FeatureNotFound:
            continue
    return BeautifulSoup(text, "html.parser")


def _strip_html_to_text(soup: BeautifulSoup) -> str:
    for node in list(soup.contents):
        if isinstance(node, Doctype):
            node.extract()
        elif isinstance(node, NavigableString):
            stripped = str(node).strip()
            if stripped and stripped.upper().startswith("HTML PUBLIC"):
                node.extract()
    for t in soup.find_all(["head", "script", "style", "title", "rp"]):
        t.decompose()
    # Convert <br> to explicit newlines so they survive text extraction.
    for br in soup.find_all("br"):
        br.replace_with("\n")
    # Ensure block-level elements start on a new line, but avoid double-
    # counting nested blocks except for the small set that should always break.
    for tag in soup.find_all(BLOCK_LEVEL_TAGS):
        if tag.name in FORCE_BREAK_TAGS or not tag.find_parent(BLOCK_LEVEL_TAGS):
            tag.insert_before("\n")
    txt = soup.get_text(separator="")
    txt = txt.replace("\xa0", " ")
    txt = "\n".join(line.strip(" \t") for line in txt.split("\n"))
    txt = re.sub(r"\n{3,}", "\n\n", txt).strip()
    return txt


def _document_chapter(text: str) -> tuple[str | None, str]:
    soup = _soup_from_html(text)
    heading = soup.find(HEADING_TAGS)
    title = None
    if heading is not None:
        title = " ".join(heading.get_text(" ").split()) or None
        heading.decompose()
    return title, _strip_html_to_text(soup)


def extract_epub(data: bytes, *, max_workers: int = DECODE_CONCURRENCY) -> EpubBook:
    """Read an EPUB's spine into chapters, reporting the content documents that were dropped.

    Structural problems (no container, no package document, a spine entry
    without a manifest item) raise ``MalformedArchiveError``. Missing or
    empty content documents are skipped; when nothing is left
    ``NoContentFoundError`` is raised.
    """
    if max_workers < 1:
        raise ConfigurationError("max_workers must be at least 1.")
    with open_archive(data) as zf:
        package = _read_package(zf)
        toc_titles = _toc_titles(zf, package)
        book_title, book_author = _book_metadata(package.root)
        cover = _extract_cover_image(zf, package)
        documents = [
            item
            for item in package.spine
            if "nav" not in item.properties.split()
            and (item.media_type in XHTML_MEDIA_TYPES or item.path.lower().endswith(HTML_EXTS))
        ]

        def _worker(index: int) -> tuple[int, tuple[str | None, str] | None]:
            item = documents[index]
            try:
                raw = zf.read(item.path)
            except KeyError:
                logger.warning("Skipping %s: listed in the manifest but missing from the archive", item.path)
                return index, None
            return index, _document_chapter(decode_bytes(raw))

        results: list[tuple[str | None, str] | None] = [None] * len(documents)
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            for index, result in executor.map(_worker, range(len(documents))):
                results[index] = result

    chapters: list[Chapter] = []
    skipped: list[str] = []
    for item, result in zip(documents, results):
        if result is None or not result[1].strip():
            skipped.append(item.path)
            continue
        heading, content = result
        title = heading or toc_titles.get(item.path) or f"Chapter {len(chapters) + 1}"
        chapters.append(Chapter(title=title, content=content))
    if not chapters:
        raise NoContentFoundError("No chapter in the EPUB contains extractable text.")
    if skipped:
        logger.info("Dropped %d content document(s) without text: %s", len(skipped), ", ".join(skipped))
    return EpubBook(chapters=chapters, skipped=skipped, title=book_title, author=book_author, cover=cover)


def read_epub(data: bytes) -> list[Chapter]:
    return extract_epub(data).chapters
