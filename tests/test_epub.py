from __future__ import annotations

import io
import xml.etree.ElementTree as ET
import zipfile

import pytest
from PIL import Image

from novelkit.archive import build_archive
from novelkit.chapters import Chapter
from novelkit.cover import CoverImage
from novelkit.epub import EpubMetadata, build_epub, extract_epub, read_epub
from novelkit.errors import ConfigurationError, MalformedArchiveError, NoContentFoundError

OPF_NS = "{http://www.idpf.org/2007/opf}"


def _png_cover() -> CoverImage:
    buffer = io.BytesIO()
    Image.new("RGB", (4, 6), (200, 30, 30)).save(buffer, format="PNG")
    return CoverImage.from_bytes(buffer.getvalue(), filename="cover.png")


def _lines(text: str) -> list[str]:
    return [line for line in text.split("\n") if line.strip()]


def _hand_made_epub(files: dict[str, str], opf: str) -> bytes:
    container = (
        '<?xml version="1.0"?>'
        '<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">'
        '<rootfiles><rootfile full-path="OPS/package.opf" media-type="application/oebps-package+xml"/>'
        "</rootfiles></container>"
    )
    entries = [("mimetype", "application/epub+zip"), ("META-INF/container.xml", container), ("OPS/package.opf", opf)]
    entries.extend((f"OPS/{name}", body) for name, body in files.items())
    return build_archive(entries, stored={"mimetype"})


def _xhtml(body: str) -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<html xmlns="http://www.w3.org/1999/xhtml"><head><title>ignored</title></head>'
        f"<body>{body}</body></html>"
    )


def test_build_epub_layout() -> None:
    chapters = [Chapter("Opening", "First line.\nSecond line."), Chapter("Ending", "Last line.")]
    data = build_epub(chapters, EpubMetadata(title="Book", author="Writer", cover=_png_cover()))
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        infos = zf.infolist()
        assert infos[0].filename == "mimetype"
        assert infos[0].compress_type == zipfile.ZIP_STORED
        assert zf.read("mimetype") == b"application/epub+zip"
        names = set(zf.namelist())
        assert {"META-INF/container.xml", "OEBPS/content.opf", "OEBPS/nav.xhtml", "OEBPS/toc.ncx"} <= names
        assert "OEBPS/images/cover.png" in names
        opf = ET.fromstring(zf.read("OEBPS/content.opf"))
        nav = zf.read("OEBPS/nav.xhtml").decode("utf-8")
        ncx = zf.read("OEBPS/toc.ncx").decode("utf-8")
        chapter_one = zf.read("OEBPS/text/chapter_1.xhtml").decode("utf-8")

    manifest_ids = [item.get("id") for item in opf.iter(f"{OPF_NS}item")]
    assert len(manifest_ids) == len(set(manifest_ids))
    assert {"css", "nav", "ncx", "cover-image", "cover-page", "chapter-1", "chapter-2"} == set(manifest_ids)
    spine = opf.find(f"{OPF_NS}spine")
    assert spine is not None
    assert spine.get("toc") == "ncx"
    refs = [(ref.get("idref"), ref.get("linear")) for ref in spine]
    assert refs == [("cover-page", "no"), ("chapter-1", None), ("chapter-2", None)]
    assert nav.count("<li>") == 2
    assert ncx.count("<navPoint") == 2
    assert "<h2>Opening</h2>" in chapter_one
    assert "<p>First line.</p>" in chapter_one
    assert "<p>Second line.</p>" in chapter_one


def test_build_epub_escapes_text() -> None:
    title = 'Tom & "Jerry" <1>'
    data = build_epub([Chapter(title, "a < b & 'c'")], EpubMetadata(title="Cat's & Mouse"))
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        chapter = zf.read("OEBPS/text/chapter_1.xhtml").decode("utf-8")
        ET.fromstring(zf.read("OEBPS/content.opf"))
        ET.fromstring(zf.read("OEBPS/nav.xhtml"))
    assert "<h2>Tom &amp; &quot;Jerry&quot; &lt;1&gt;</h2>" in chapter
    assert "<p>a &lt; b &amp; &#x27;c&#x27;</p>" in chapter
    assert read_epub(data)[0].title == title


def test_build_epub_markdown() -> None:
    data = build_epub(
        [Chapter("One", "# Part\nSome **bold** and *soft* words.")],
        EpubMetadata(title="Book", markdown=True),
    )
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        chapter = zf.read("OEBPS/text/chapter_1.xhtml").decode("utf-8")
    assert "<h2>Part</h2>" in chapter
    assert "<p>Some <strong>bold</strong> and <em>soft</em> words.</p>" in chapter


def test_build_epub_requires_title_and_chapters() -> None:
    with pytest.raises(ConfigurationError):
        build_epub([Chapter("One", "x")], EpubMetadata(title="  "))
    with pytest.raises(NoContentFoundError):
        build_epub([], EpubMetadata(title="Book"))


def test_epub_round_trip_keeps_titles_and_text() -> None:
    chapters = [
        Chapter("第一章 开始", "他走了进来。\n然后坐下。"),
        Chapter("Chapter 2", "Plain text\nwith two lines."),
        Chapter("Blank", ""),
    ]
    cover = _png_cover()
    data = build_epub(chapters, EpubMetadata(title="Round Trip", author="A. Writer", language="zh", cover=cover))
    book = extract_epub(data)
    assert [chapter.title for chapter in book.chapters] == ["第一章 开始", "Chapter 2"]
    assert _lines(book.chapters[0].content) == ["他走了进来。", "然后坐下。"]
    assert _lines(book.chapters[1].content) == ["Plain text", "with two lines."]
    assert book.skipped == ["OEBPS/text/cover.xhtml", "OEBPS/text/chapter_3.xhtml"]
    assert book.title == "Round Trip"
    assert book.author == "A. Writer"
    assert book.cover is not None
    assert book.cover.data == cover.data
    assert book.cover.media_type == "image/png"


def test_extract_epub_uses_nav_label_without_heading() -> None:
    opf = (
        '<?xml version="1.0"?>'
        '<package xmlns="http://www.idpf.org/2007/opf" version="3.0">'
        '<metadata xmlns:dc="http://purl.org/dc/elements/1.1/"><dc:title>Nav Book</dc:title></metadata>'
        "<manifest>"
        '<item id="nav" href="nav.xhtml" media-type="application/xhtml+xml" properties="nav"/>'
        '<item id="c1" href="text/one.xhtml" media-type="application/xhtml+xml"/>'
        '<item id="c2" href="text/two.xhtml" media-type="application/xhtml+xml"/>'
        "</manifest>"
        '<spine><itemref idref="c1"/><itemref idref="c2"/></spine>'
        "</package>"
    )
    nav = _xhtml(
        '<nav xmlns:epub="http://www.idpf.org/2007/ops" epub:type="toc"><ol>'
        '<li><a href="text/one.xhtml#start">The Opening</a></li>'
        "</ol></nav>"
    )
    data = _hand_made_epub(
        {
            "nav.xhtml": nav,
            "text/one.xhtml": _xhtml("<p>First body.</p>"),
            "text/two.xhtml": _xhtml("<div>Second<br/>body</div>"),
        },
        opf,
    )
    chapters = read_epub(data)
    assert [chapter.title for chapter in chapters] == ["The Opening", "Chapter 2"]
    assert chapters[0].content == "First body."
    assert _lines(chapters[1].content) == ["Second", "body"]


def test_extract_epub_falls_back_to_ncx() -> None:
    opf = (
        '<?xml version="1.0"?>'
        '<package xmlns="http://www.idpf.org/2007/opf" version="2.0">'
        "<metadata/>"
        "<manifest>"
        '<item id="ncx" href="toc.ncx" media-type="application/x-dtbncx+xml"/>'
        '<item id="c1" href="one.html" media-type="application/xhtml+xml"/>'
        "</manifest>"
        '<spine toc="ncx"><itemref idref="c1"/></spine>'
        "</package>"
    )
    ncx = (
        '<?xml version="1.0"?>'
        '<ncx xmlns="http://www.daisy.org/z3986/2005/ncx/" version="2005-1"><navMap>'
        '<navPoint id="p1" playOrder="1"><navLabel><text>From NCX</text></navLabel>'
        '<content src="one.html"/></navPoint>'
        "</navMap></ncx>"
    )
    data = _hand_made_epub({"toc.ncx": ncx, "one.html": _xhtml("<p>Body</p>")}, opf)
    assert read_epub(data)[0].title == "From NCX"


def test_extract_epub_rejects_structural_problems() -> None:
    with pytest.raises(MalformedArchiveError):
        read_epub(build_archive([("mimetype", "application/epub+zip")]))
    opf = (
        '<?xml version="1.0"?>'
        '<package xmlns="http://www.idpf.org/2007/opf"><manifest/>'
        '<spine><itemref idref="ghost"/></spine></package>'
    )
    with pytest.raises(MalformedArchiveError):
        read_epub(_hand_made_epub({}, opf))
    with pytest.raises(MalformedArchiveError):
        read_epub(b"not a zip at all")


def test_extract_epub_without_text_raises() -> None:
    data = build_epub([Chapter("Empty", "   ")], EpubMetadata(title="Nothing"))
    with pytest.raises(NoContentFoundError):
        extract_epub(data)
