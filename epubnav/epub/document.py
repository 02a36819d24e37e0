"""EpubDocument：打开 EPUB，按 spine 顺序浏览章节并读取资源。

打开流程（严格按顺序，任何一步都不重试）：
  1. container.xml → rootfile 路径
  2. OPF → 版本、unique-identifier
  3. manifest（必须最先完成，spine / toc 都要通过它解析 id）
  4. spine
  5. NCX 目录（可选，失败不影响打开）
  6. page-progression-direction
  7. metadata 与 refinement
  8. unique identifier

实例不是线程安全的：current 游标是可变状态，多线程共用时需由调用方加锁。
"""

from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import BinaryIO

from loguru import logger

from epubnav.config import ReaderConfig
from epubnav.epub import parser
from epubnav.epub.archive import EpubArchive
from epubnav.epub.parser import EpubVersion, ManifestItem, MetadataItem, NavPoint, SpineItem
from epubnav.epub.rewriter import replace_attrs
from epubnav.epub.xmlutils import parse_xml
from epubnav.errors import EncodingError, EntryNotFoundError, EpubError, InvalidEpubError


class EpubDocument:
    def __init__(self, archive: EpubArchive, config: ReaderConfig | None = None) -> None:
        self.archive = archive
        self.config = config or ReaderConfig()

        self.version = EpubVersion.UNKNOWN
        self.raw_version = "Unknown"
        self.spine: list[SpineItem] = []
        self.resources: dict[str, ManifestItem] = {}   # id -> item
        self.toc: list[NavPoint] = []
        self.toc_title = ""
        self.metadata: list[MetadataItem] = []
        self.extra_css: list[str] = []
        self.unique_identifier: str | None = None
        self.cover_id: str | None = None
        self.page_progression_direction: str | None = None
        self._current = 0

        container = archive.get_container_file(self.config.container_path)
        self.root_file = parser.find_root_file(container, self.config.xml)
        self.root_base = parser.parent_dir(self.root_file)
        self._fill_resources()

        logger.info(
            "opened {}  version={} resources={} spine={} toc={}",
            self.root_file, self.raw_version, len(self.resources), len(self.spine), len(self.toc),
        )

    @classmethod
    def open(cls, path: str | Path, config: ReaderConfig | None = None) -> EpubDocument:
        """打开磁盘上的 EPUB 文件。"""
        archive = EpubArchive.open(path)
        try:
            return cls(archive, config)
        except Exception:
            archive.close()
            raise

    @classmethod
    def from_reader(cls, reader: BinaryIO, config: ReaderConfig | None = None) -> EpubDocument:
        """从可 seek 的二进制流打开 EPUB。"""
        archive = EpubArchive.from_reader(reader)
        try:
            return cls(archive, config)
        except Exception:
            archive.close()
            raise

    def close(self) -> None:
        self.archive.close()

    def __enter__(self) -> EpubDocument:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ── 元数据 ──────────────────────────────────────────────────────────────

    def mdata(self, property: str) -> MetadataItem | None:
        """返回第一个该 property 的元数据条目。"""
        return next((m for m in self.metadata if m.property == property), None)

    def metadata_values(self, property: str) -> list[str]:
        """按出现顺序返回该 property 的全部取值。"""
        return [m.value for m in self.metadata if m.property == property]

    def get_title(self) -> str | None:
        item = self.mdata("title")
        return item.value if item else None

    def get_cover_id(self) -> str | None:
        """封面 id，不保证在 manifest 中存在。"""
        return self.cover_id

    def get_cover(self) -> tuple[bytes, str] | None:
        """返回 (封面内容, mime)。"""
        if self.cover_id is None:
            return None
        return self.get_resource(self.cover_id)

    def get_release_identifier(self) -> str | None:
        """Release Identifier：unique identifier 与 dcterms:modified 以 @ 连接。"""
        modified = self.mdata("dcterms:modified")
        if self.unique_identifier is None or modified is None:
            return None
        return f"{self.unique_identifier}@{modified.value}"

    # ── 资源 ────────────────────────────────────────────────────────────────

    def get_resource_by_path(self, path: str) -> bytes | None:
        """按 ZIP 内完整路径读取资源，不存在时返回 None。"""
        try:
            return self.archive.get_entry(path)
        except EntryNotFoundError:
            return None
        except EncodingError as e:
            # 原名找不到且百分号解码失败，同样视为不存在
            logger.debug("resource {} not found: {}", path, e)
            return None

    def get_resource(self, id: str) -> tuple[bytes, str] | None:
        """按 manifest id 读取资源，返回 (内容, mime)。"""
        item = self.resources.get(id)
        if item is None:
            return None
        content = self.get_resource_by_path(item.path)
        if content is None:
            return None
        return content, item.media_type

    def get_resource_str_by_path(self, path: str) -> str | None:
        """同 get_resource_by_path，但要求内容为 UTF-8；否则抛出 EncodingError。"""
        content = self.get_resource_by_path(path)
        if content is None:
            return None
        try:
            return content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EncodingError(f"{path} 不是合法的 UTF-8：{e}") from e

    def get_resource_str(self, id: str) -> tuple[str, str] | None:
        item = self.resources.get(id)
        if item is None:
            return None
        content = self.get_resource_str_by_path(item.path)
        if content is None:
            return None
        return content, item.media_type

    def get_resource_mime(self, id: str) -> str | None:
        item = self.resources.get(id)
        return item.media_type if item else None

    def get_resource_mime_by_path(self, path: str) -> str | None:
        item = self._item_by_path(path)
        return item.media_type if item else None

    # ── 当前章节 ────────────────────────────────────────────────────────────

    def get_current_id(self) -> str | None:
        if self._current >= len(self.spine):
            return None
        return self.spine[self._current].idref

    def get_current_path(self) -> str | None:
        current_id = self.get_current_id()
        item = self.resources.get(current_id) if current_id else None
        return item.path if item else None

    def get_current_mime(self) -> str | None:
        current_id = self.get_current_id()
        return self.get_resource_mime(current_id) if current_id else None

    def get_current(self) -> tuple[bytes, str] | None:
        current_id = self.get_current_id()
        return self.get_resource(current_id) if current_id else None

    def get_current_str(self) -> tuple[str, str] | None:
        current_id = self.get_current_id()
        return self.get_resource_str(current_id) if current_id else None

    def get_current_with_epub_uris(self) -> bytes:
        """返回当前章节内容，资源链接改写为 epub:// 地址，并注入 extra_css。

        渲染引擎拿到结果后，应通过 get_resource_by_path 响应 epub:// 请求。
        """
        path = self.get_current_path()
        current = self.get_current()
        if path is None or current is None:
            raise InvalidEpubError(f"当前章节无法读取：page={self._current}")
        content, _mime = current

        def substitute(element: str, attr: str, value: str) -> str:
            if self.config.should_relink(element, attr):
                return build_epub_uri(
                    path, value,
                    scheme=self.config.uri_scheme,
                    external_prefix=self.config.external_prefix,
                )
            return value

        return replace_attrs(content, substitute, self.extra_css, self.config.xml)

    def add_extra_css(self, css: str) -> None:
        """追加样式，之后每次 get_current_with_epub_uris 都会注入。"""
        self.extra_css.append(css)

    # ── 导航 ────────────────────────────────────────────────────────────────

    def get_num_pages(self) -> int:
        return len(self.spine)

    def get_current_page(self) -> int:
        return self._current

    def go_next(self) -> bool:
        """前进一章；已是最后一章时返回 False，位置不变。"""
        if self._current + 1 >= len(self.spine):
            return False
        self._current += 1
        return True

    def go_prev(self) -> bool:
        """后退一章；已是第一章时返回 False，位置不变。"""
        if self._current < 1:
            return False
        self._current -= 1
        return True

    def set_current_page(self, n: int) -> bool:
        """跳到第 n 章（从 0 开始）；越界时返回 False，位置不变。"""
        if n < 0 or n >= len(self.spine):
            return False
        self._current = n
        return True

    def resource_id_to_chapter(self, id: str) -> int | None:
        """资源 id 在 spine 中的位置，不在 spine 中返回 None。"""
        return next((i for i, item in enumerate(self.spine) if item.idref == id), None)

    def resource_uri_to_chapter(self, path: str) -> int | None:
        """资源路径（可带 #片段，如目录中的 content）对应的章节号。"""
        item = self._item_by_path(path.split("#", 1)[0])
        return self.resource_id_to_chapter(item.id) if item else None

    # ── 内部 ────────────────────────────────────────────────────────────────

    def _item_by_path(self, path: str) -> ManifestItem | None:
        return next((item for item in self.resources.values() if item.path == path), None)

    def _fill_resources(self) -> None:
        opf = self.archive.get_entry(self.root_file)
        root = parse_xml(opf, self.config.xml)

        self.raw_version = root.get_attr("version") or "Unknown"
        self.version = EpubVersion.parse(root.get_attr("version"))
        unique_identifier_id = root.get_attr("unique-identifier")

        # manifest 必须先于 spine / toc 处理
        manifest = root.find("manifest")
        if manifest is None:
            raise InvalidEpubError("OPF 中未找到 manifest 元素")
        self.resources, self.cover_id = parser.parse_manifest(manifest, self.root_base)
        logger.debug("manifest: {} items, cover={}", len(self.resources), self.cover_id)

        spine = root.find("spine")
        if spine is None:
            raise InvalidEpubError("OPF 中未找到 spine 元素")
        self.spine = parser.parse_spine(spine)
        logger.debug("spine: {} items", len(self.spine))

        toc_id = spine.get_attr("toc")
        if toc_id is not None:
            self._fill_toc(toc_id)

        self.page_progression_direction = spine.get_attr("page-progression-direction")

        metadata = root.find("metadata")
        if metadata is None:
            raise InvalidEpubError("OPF 中未找到 metadata 元素")
        self.metadata, legacy_cover = parser.parse_metadata(metadata, self.version)
        if legacy_cover is not None:
            self.cover_id = legacy_cover

        logger.debug("metadata: {} items", len(self.metadata))

        self.unique_identifier = parser.resolve_unique_identifier(self.metadata, unique_identifier_id)

    def _fill_toc(self, toc_id: str) -> None:
        item = self.resources.get(toc_id)
        if item is None:
            logger.warning("toc {} not found in manifest", toc_id)
            return
        try:
            ncx = self.archive.get_entry(item.path)
            self.toc_title, self.toc = parser.parse_ncx(ncx, self.root_base, self.config.xml)
        except EpubError as e:
            logger.warning("failed to load toc {}: {}", item.path, e)
            self.toc_title, self.toc = "", []


def build_epub_uri(
    path: str,
    append: str,
    scheme: str = "epub://",
    external_prefix: str = "http",
) -> str:
    """把 path 所在文档里的相对链接 append 解析为 epub:// 地址，外链原样返回。"""
    if append.startswith(external_prefix):
        return append

    parts = list(PurePosixPath(path).parent.parts)
    for part in PurePosixPath(append.replace("\\", "/")).parts:
        if part == "..":
            if parts:
                parts.pop()
        elif part not in (".", "/"):
            parts.append(part)
    return scheme + "/".join(parts)
