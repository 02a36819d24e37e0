"""EPUB 包文档解析：container.xml、OPF（manifest / spine / metadata）与 NCX 目录。

这里的函数只处理已解析好的 XMLNode 树，读取 ZIP 的工作由 EpubDocument 负责。
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath

from loguru import logger

from epubnav.config import XmlConfig
from epubnav.epub.xmlutils import XMLNode, parse_xml
from epubnav.errors import AttrNotFoundError

OPF_NS = "http://www.idpf.org/2007/opf"
DC_NS = "http://purl.org/dc/elements/1.1/"

# spine 中 linear 取这些值时表示非线性内容
_FALSY = frozenset({"no", "false"})


class EpubVersion(Enum):
    """OPF package 的 version 属性。

    UNKNOWN 不保留原始字符串，原值见 EpubDocument.raw_version。
    """

    V2 = "2.0"
    V3 = "3.0"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: str | None) -> EpubVersion:
        if raw == "2.0":
            return cls.V2
        if raw == "3.0":
            return cls.V3
        return cls.UNKNOWN


@dataclass
class ManifestItem:
    id: str
    path: str          # ZIP 内完整路径
    media_type: str
    properties: str | None = None


@dataclass
class SpineItem:
    idref: str
    id: str | None = None
    properties: str | None = None
    linear: bool = True


@dataclass
class MetadataRefinement:
    property: str
    value: str
    lang: str | None = None
    scheme: str | None = None


@dataclass
class MetadataItem:
    property: str
    value: str
    id: str | None = None
    lang: str | None = None
    refinements: list[MetadataRefinement] = field(default_factory=list)

    def refinement(self, property: str) -> MetadataRefinement | None:
        return next((r for r in self.refinements if r.property == property), None)


@dataclass(order=True)
class NavPoint:
    """目录节点；排序与相等只看 play_order。"""

    label: str = field(compare=False)
    content: str = field(compare=False)       # 资源在 ZIP 内的完整路径
    children: list[NavPoint] = field(default_factory=list, compare=False)
    play_order: int = 0


# ── container.xml ───────────────────────────────────────────────────────────


def find_root_file(container_xml: bytes, config: XmlConfig | None = None) -> str:
    """返回 container.xml 中 rootfile 的 full-path。"""
    root = parse_xml(container_xml, config)
    rootfile = root.find("rootfile")
    if rootfile is None:
        raise AttrNotFoundError("rootfile")
    full_path = rootfile.get_attr("full-path")
    if full_path is None:
        raise AttrNotFoundError("full-path")
    return full_path


def parent_dir(path: str) -> str:
    opf_dir = str(PurePosixPath(path).parent)
    return "" if opf_dir == "." else opf_dir


def join_path(base_dir: str, href: str) -> str:
    """将 OPF 目录和相对 href 拼成 ZIP 内路径，统一使用正斜杠。"""
    href = href.replace("\\", "/")
    if not base_dir:
        return posixpath.normpath(href)
    return posixpath.normpath(str(PurePosixPath(base_dir) / href))


# ── manifest / spine ────────────────────────────────────────────────────────


def parse_manifest(manifest: XMLNode, base_dir: str) -> tuple[dict[str, ManifestItem], str | None]:
    """返回 (id -> ManifestItem, 封面 id)。

    缺少 id / href / media-type 的条目直接跳过；
    封面取第一个 properties 含 cover-image 的条目。
    """
    items: dict[str, ManifestItem] = {}
    cover_id: str | None = None

    for node in manifest.children:
        item_id = node.get_attr("id")
        properties = node.get_attr("properties")
        if cover_id is None and item_id and properties and "cover-image" in properties.split():
            cover_id = item_id

        try:
            item = _manifest_item(node, base_dir)
        except AttrNotFoundError as e:
            logger.debug("skip manifest item {}: {}", item_id, e)
            continue
        items[item.id] = item

    return items, cover_id


def _manifest_item(node: XMLNode, base_dir: str) -> ManifestItem:
    values = {}
    for attr in ("id", "href", "media-type"):
        value = node.get_attr(attr)
        if value is None:
            raise AttrNotFoundError(attr)
        values[attr] = value
    return ManifestItem(
        id=values["id"],
        path=join_path(base_dir, values["href"]),
        media_type=values["media-type"],
        properties=node.get_attr("properties"),
    )


def parse_spine(spine: XMLNode) -> list[SpineItem]:
    items: list[SpineItem] = []
    for node in spine.children:
        idref = node.get_attr("idref")
        if idref is None:
            logger.debug("skip spine item without idref: {}", node.name.local_name)
            continue
        linear = node.get_attr("linear")
        items.append(SpineItem(
            idref=idref,
            id=node.get_attr("id"),
            properties=node.get_attr("properties"),
            linear=linear is None or linear.strip().lower() not in _FALSY,
        ))
    return items


# ── NCX 目录 ────────────────────────────────────────────────────────────────


def parse_ncx(
    ncx_content: bytes, base_dir: str, config: XmlConfig | None = None
) -> tuple[str, list[NavPoint]]:
    """返回 (目录标题, 顶层 NavPoint 列表)。缺少 navMap 时抛出 AttrNotFoundError。"""
    root = parse_xml(ncx_content, config)

    title = ""
    doc_title = root.find("docTitle")
    if doc_title is not None and doc_title.children:
        title = doc_title.children[0].text or ""

    nav_map = root.find("navMap")
    if nav_map is None:
        raise AttrNotFoundError("navMap")
    return title, _navpoints(nav_map, base_dir)


def _navpoints(parent: XMLNode, base_dir: str) -> list[NavPoint]:
    """递归提取 navPoint；缺少 playOrder / content / navLabel 的节点被丢弃。"""
    navpoints: list[NavPoint] = []

    for node in parent.children:
        if node.name.local_name != "navPoint":
            continue
        children = _navpoints(node, base_dir)

        play_order = _play_order(node.get_attr("playOrder"))
        content = node.find("content")
        src = content.get_attr("src") if content is not None else None
        label_node = node.find("navLabel")
        label = None
        if label_node is not None and label_node.children:
            label = label_node.children[0].text

        if play_order is None or src is None or label is None:
            logger.debug("drop navPoint id={}", node.get_attr("id"))
            continue
        navpoints.append(NavPoint(
            label=label,
            content=join_path(base_dir, src),
            children=children,
            play_order=play_order,
        ))

    navpoints.sort()
    return navpoints


def _play_order(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    return value if value >= 0 else None


# ── metadata ────────────────────────────────────────────────────────────────


def parse_metadata(metadata: XMLNode, version: EpubVersion) -> tuple[list[MetadataItem], str | None]:
    """返回 (元数据列表, <meta name="cover"> 指定的封面 id)。

    - DC 元素：property 为本地名；非 EPUB3 文档中 opf: 属性记作 refinement
    - <meta property>：EPUB3 写法；带 refines="#id" 的先挂起，全部读完后再挂到对应条目
    - <meta name content>：EPUB2 写法
    """
    items: list[MetadataItem] = []
    pending: list[tuple[str, MetadataRefinement]] = []
    cover_id: str | None = None

    for node in metadata.children:
        ns = node.namespace
        local = node.name.local_name

        if ns == DC_NS:
            item = MetadataItem(
                property=local,
                value=node.text or "",
                id=node.get_attr("id"),
                lang=node.get_attr("lang"),
            )
            if version != EpubVersion.V3:
                item.refinements = [
                    MetadataRefinement(property=a.name.local_name, value=a.value)
                    for a in node.attrs
                    if a.name.namespace == OPF_NS
                ]
            items.append(item)

        elif ns == OPF_NS and local == "meta":
            prop = node.get_attr("property")
            if prop is not None:
                value = node.text or ""
                lang = node.get_attr("lang")
                refines = node.get_attr("refines")
                if refines is not None:
                    pending.append((refines.removeprefix("#"), MetadataRefinement(
                        property=prop, value=value, lang=lang, scheme=node.get_attr("scheme"),
                    )))
                else:
                    items.append(MetadataItem(property=prop, value=value, id=node.get_attr("id"), lang=lang))
                continue

            name, content = node.get_attr("name"), node.get_attr("content")
            if name is not None and content is not None:
                if name == "cover":
                    cover_id = content
                items.append(MetadataItem(property=name, value=content))

    # id 重复时挂到第一个条目上
    by_id: dict[str, MetadataItem] = {}
    for item in items:
        if item.id is not None:
            by_id.setdefault(item.id, item)
    for target, refinement in pending:
        owner = by_id.get(target)
        if owner is None:
            logger.debug("drop refinement {} for unknown id #{}", refinement.property, target)
            continue
        owner.refinements.append(refinement)

    return items, cover_id


def resolve_unique_identifier(items: list[MetadataItem], declared_id: str | None) -> str | None:
    """优先取 id 与 unique-identifier 匹配的 identifier，否则取第一个 identifier。"""
    identifiers = [i for i in items if i.property == "identifier"]
    if declared_id is not None:
        for item in identifiers:
            if item.id == declared_id:
                return item.value
    return identifiers[0].value if identifiers else None
