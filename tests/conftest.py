"""测试夹具：在 tmp_path 中现场生成 EPUB 文件。

sample：EPUB3，23 个 manifest 条目、17 个 spine 条目，带 NCX 目录与 refinement。
legacy：EPUB2，OPF 为 UTF-16 编码，含若干残缺的 manifest / spine / 目录条目。
"""

from __future__ import annotations

import itertools
import zipfile
from pathlib import Path

import pytest

from epubnav.epub.document import EpubDocument

UUID = "urn:uuid:09132750-3601-4d19-b3a4-55fdf8639849"
MODIFIED = "2015-08-10T18:12:03Z"

CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""

CHAPTER_IDS = [f"{i:03d}.xhtml" for i in range(16)]

XHTML_HEAD = """<?xml version="1.0" encoding="utf-8"?>
<!DOCTYPE html PUBLIC "-//W3C//DTD XHTML 1.1//EN" "http://www.w3.org/TR/xhtml11/DTD/xhtml11.dtd">
"""

TITLEPAGE_XHTML = XHTML_HEAD + """<html xmlns="http://www.w3.org/1999/xhtml">
<head>
  <title>Portada</title>
</head>
<body>
  <div class="cover"><img src="../Images/portada.png" alt="portada"/></div>
  <p><a href="http://example.org">example</a>&nbsp;&copy; 2015</p>
</body>
</html>
"""

FIRST_CHAPTER_XHTML = XHTML_HEAD + """<html xmlns="http://www.w3.org/1999/xhtml" xmlns:xlink="http://www.w3.org/1999/xlink">
<head>
  <title>Capítulo 1</title>
  <link href="../Styles/stylesheet.css" rel="stylesheet" type="text/css"/>
</head>
<body>
  <!-- licencia -->
  <p>Licencia <a href="http://creativecommons.org/licenses/by-sa/3.0/">CC BY-SA</a></p>
  <p><a href="001.xhtml#nota" id="ref1">nota</a></p>
  <svg xmlns="http://www.w3.org/2000/svg" width="10" height="10">
    <image xlink:href="../Images/logo.png" width="10" height="10"/>
  </svg>
</body>
</html>
"""

CHAPTER_XHTML = XHTML_HEAD + """<html xmlns="http://www.w3.org/1999/xhtml">
<head>
  <title>{title}</title>
</head>
<body>
  <h1 id="sec">{title}</h1>
  <p>Texto del capítulo.</p>
</body>
</html>
"""


def _sample_opf() -> str:
    chapter_items = "\n".join(
        f'    <item id="{cid}" href="Text/{cid}" media-type="application/xhtml+xml"/>'
        for cid in CHAPTER_IDS
    )
    non_linear = ' linear="no"'
    chapter_refs = "\n".join(
        f'    <itemref idref="{cid}"{non_linear if cid == "015.xhtml" else ""}/>'
        for cid in CHAPTER_IDS
    )
    return f"""<?xml version="1.0" encoding="utf-8"?>
<package version="3.0" unique-identifier="BookId" xmlns="http://www.idpf.org/2007/opf">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/" xmlns:opf="http://www.idpf.org/2007/opf">
    <dc:identifier id="isbn">978-84-000-0000-0</dc:identifier>
    <dc:identifier id="BookId">{UUID}</dc:identifier>
    <dc:title id="title">Todo es mío</dc:title>
    <meta refines="#title" property="title-type">main</meta>
    <dc:creator id="creator" xml:lang="es">Daniel García</dc:creator>
    <meta refines="#creator" property="role" scheme="marc:relators">aut</meta>
    <meta refines="#creator" property="file-as">García, Daniel</meta>
    <meta refines="#nobody" property="file-as">Nadie</meta>
    <dc:language>es</dc:language>
    <meta property="dcterms:modified">{MODIFIED}</meta>
    <meta name="cover" content="portada.png"/>
  </metadata>
  <manifest>
    <item id="ncx" href="toc.ncx" media-type="application/x-dtbncx+xml"/>
    <item id="stylesheet.css" href="Styles/stylesheet.css" media-type="text/css"/>
    <item id="portada.png" href="Images/portada.png" media-type="image/png" properties="cover-image"/>
    <item id="logo.png" href="Images/logo.png" media-type="image/png"/>
    <item id="separador.png" href="Images/separador.png" media-type="image/png"/>
    <item id="font.otf" href="Fonts/font.otf" media-type="application/vnd.ms-opentype"/>
    <item id="titlepage.xhtml" href="Text/titlepage.xhtml" media-type="application/xhtml+xml"/>
{chapter_items}
    <item id="broken" href="Text/broken.xhtml"/>
  </manifest>
  <spine toc="ncx" page-progression-direction="ltr">
    <itemref idref="titlepage.xhtml"/>
{chapter_refs}
    <itemref linear="no"/>
  </spine>
</package>
"""


def _navpoint(order: int, children: str = "", src: str | None = None) -> str:
    src = src or f"Text/{order - 1:03d}.xhtml"
    return f"""<navPoint id="np-{order}" playOrder="{order}">
  <navLabel><text>Capítulo {order}</text></navLabel>
  <content src="{src}"/>
  {children}
</navPoint>"""


def _sample_ncx() -> str:
    nested = _navpoint(4, src="Text/003.xhtml#sec") + _navpoint(3)
    points = [_navpoint(2, children=nested), _navpoint(1)]
    points += [_navpoint(i) for i in range(5, 17)]
    points.append("""<navPoint id="sin-orden">
  <navLabel><text>Sin orden</text></navLabel>
  <content src="Text/000.xhtml"/>
</navPoint>""")
    body = "\n".join(points)
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<ncx xmlns="http://www.daisy.org/z3986/2005/ncx/" version="2005-1">
  <head>
    <meta name="dtb:uid" content="{UUID}"/>
  </head>
  <docTitle>
    <text>Todo es mío</text>
  </docTitle>
  <navMap>
{body}
  </navMap>
</ncx>
"""


def build_sample_files() -> dict[str, bytes]:
    files = {
        "META-INF/container.xml": CONTAINER_XML,
        "OEBPS/content.opf": _sample_opf(),
        "OEBPS/toc.ncx": _sample_ncx(),
        "OEBPS/Styles/stylesheet.css": "body { margin: 0 }\n",
        "OEBPS/Text/titlepage.xhtml": TITLEPAGE_XHTML,
        "OEBPS/Text/000.xhtml": FIRST_CHAPTER_XHTML,
    }
    for i, cid in enumerate(CHAPTER_IDS[1:], start=2):
        files[f"OEBPS/Text/{cid}"] = CHAPTER_XHTML.format(title=f"Capítulo {i}")
    encoded = {name: text.encode("utf-8") for name, text in files.items()}
    encoded["OEBPS/Images/portada.png"] = b"\x89PNG\r\n\x1a\nportada"
    encoded["OEBPS/Images/logo.png"] = b"\x89PNG\r\n\x1a\nlogo"
    encoded["OEBPS/Images/separador.png"] = b"\x89PNG\r\n\x1a\nseparador"
    encoded["OEBPS/Fonts/font.otf"] = b"OTTO\x00\x01"
    return encoded


LEGACY_OPF = """<?xml version="1.0" encoding="UTF-16"?>
<package xmlns="http://www.idpf.org/2007/opf" version="2.0" unique-identifier="not-there">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/" xmlns:opf="http://www.idpf.org/2007/opf">
    <dc:title>Metamorphosis </dc:title>
    <dc:title>Metamorphosis2 </dc:title>
    <dc:creator opf:role="aut" opf:file-as="Kafka, Franz">Franz Kafka</dc:creator>
    <dc:identifier id="uid" opf:scheme="URI">http://www.gutenberg.org/5200</dc:identifier>
    <dc:identifier id="other">second-identifier</dc:identifier>
    <dc:language>en</dc:language>
    <meta name="cover" content="cover-img"/>
    <meta content="sin nombre"/>
  </metadata>
  <manifest>
    <item id="cover-img" href="images/cover.jpg" media-type="image/jpeg"/>
    <item id="chapter1" href="chapter1.html" media-type="application/xhtml+xml"/>
    <item id="chapter2" href="./text/../chapter2.html" media-type="application/xhtml+xml"/>
    <item href="orphan.html" media-type="application/xhtml+xml"/>
    <item id="no-href" media-type="application/xhtml+xml"/>
  </manifest>
  <spine toc="missing-ncx">
    <itemref idref="chapter1"/>
    <itemref/>
    <itemref idref="chapter2" linear="no"/>
  </spine>
  <guide>
    <reference type="cover" title="Cover"/>
  </guide>
</package>
"""


def build_legacy_files() -> dict[str, bytes]:
    container = CONTAINER_XML.replace("OEBPS/content.opf", "content.opf")
    chapter = CHAPTER_XHTML.format(title="One")
    return {
        "META-INF/container.xml": container.encode("utf-8"),
        "content.opf": b"\xff\xfe" + LEGACY_OPF.encode("utf-16-le"),
        "chapter1.html": chapter.encode("utf-8"),
        "chapter2.html": "<html><body>caf\xe9</body></html>".encode("latin-1"),
        "images/cover.jpg": b"\xff\xd8\xff\xe0jpeg",
    }


def write_epub(path: Path, files: dict[str, bytes]) -> Path:
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(zipfile.ZipInfo("mimetype"), "application/epub+zip")
        for name, content in files.items():
            zf.writestr(name, content)
    return path


@pytest.fixture
def sample_files() -> dict[str, bytes]:
    return build_sample_files()


@pytest.fixture
def legacy_files() -> dict[str, bytes]:
    return build_legacy_files()


@pytest.fixture
def make_epub(tmp_path):
    counter = itertools.count()

    def _make(files: dict[str, bytes]) -> Path:
        return write_epub(tmp_path / f"book{next(counter)}.epub", files)

    return _make


@pytest.fixture
def sample_epub(make_epub, sample_files) -> Path:
    return make_epub(sample_files)


@pytest.fixture
def doc(sample_epub):
    with EpubDocument.open(sample_epub) as d:
        yield d


@pytest.fixture
def legacy_doc(make_epub, legacy_files):
    with EpubDocument.open(make_epub(legacy_files)) as d:
        yield d
