"""XML 工具：把 container.xml / OPF / NCX 解析成一棵轻量节点树。

lxml 以 parser target 方式逐个投递 start / end / data / comment / pi 事件，
这里用一个显式的“当前打开元素”栈边读边建树，不依赖递归，
嵌套深度只受内存限制。

文本语义：两个结构事件之间的连续字符数据算作一段文本，
同一节点上后出现的非空白文本段会覆盖前一段（不拼接）。
"""

from __future__ import annotations

import codecs
import re
from dataclasses import dataclass, field

from lxml import etree

from epubnav.config import XmlConfig
from epubnav.errors import NoContentError, NoElementsError, XmlError

MIN_CONTENT_LEN = 4

_XML_SPACE = " \t\r\n"

# CDATA 段在交给 lxml 前替换成这个目标名的处理指令，以便在事件流里单独识别
_CDATA_PI = "epubnav-cdata"

# XML 预定义实体交给 lxml 处理
_PREDEFINED_ENTITIES = frozenset({"amp", "lt", "gt", "quot", "apos"})

# 注释与 CDATA 段原样跳过，只展开其余位置的命名实体
_TOKEN_RE = re.compile(
    rb"<!--.*?-->|<!\[CDATA\[(.*?)\]\]>|&([A-Za-z_][\w.-]*);|(<\?"
    + _CDATA_PI.encode("ascii")
    + rb")(?=[\s?])",
    re.DOTALL,
)


@dataclass(frozen=True)
class QName:
    local_name: str
    namespace: str | None = None

    @classmethod
    def from_clark(cls, name: str) -> QName:
        """由 lxml 的 {uri}local 形式构造。"""
        qname = etree.QName(name)
        return cls(qname.localname, qname.namespace)


@dataclass
class XMLAttribute:
    name: QName
    value: str


@dataclass
class XMLNode:
    name: QName
    attrs: list[XMLAttribute] = field(default_factory=list)
    text: str | None = None
    cdata: str | None = None
    children: list[XMLNode] = field(default_factory=list, repr=False)
    # 父节点只用于向上遍历，不参与比较
    parent: XMLNode | None = field(default=None, repr=False, compare=False)

    @property
    def namespace(self) -> str | None:
        return self.name.namespace

    def get_attr(self, name: str) -> str | None:
        """返回第一个本地名匹配的属性值，忽略命名空间。"""
        for attr in self.attrs:
            if attr.name.local_name == name:
                return attr.value
        return None

    def find(self, tag: str) -> XMLNode | None:
        """深度优先（先序）查找第一个本地名为 tag 的后代节点，不含自身。"""
        pending = list(reversed(self.children))
        while pending:
            node = pending.pop()
            if node.name.local_name == tag:
                return node
            pending.extend(reversed(node.children))
        return None


def decode_content(content: bytes) -> bytes:
    """检查长度并处理 BOM，返回交给 lxml 的 UTF-8 字节。"""
    if len(content) < MIN_CONTENT_LEN:
        raise NoContentError("content too short")

    if content.startswith(codecs.BOM_UTF8):
        return content[len(codecs.BOM_UTF8):]

    for bom, encoding in ((codecs.BOM_UTF16_BE, "utf-16-be"), (codecs.BOM_UTF16_LE, "utf-16-le")):
        if content.startswith(bom):
            try:
                return content[len(bom):].decode(encoding).encode("utf-8")
            except UnicodeDecodeError as e:
                raise XmlError(f"invalid {encoding} content: {e}") from e

    return content


def expand_entities(
    content: bytes,
    entities: dict[str, str],
    cdata: list[str] | None = None,
) -> bytes:
    """把白名单实体展开成数字字符引用。

    白名单与 XML 预定义实体之外的命名实体一律抛出 XmlError：
    带外部 DOCTYPE 的文档里 libxml2 只把它们当作警告并丢掉文本。
    传入 cdata 列表时，CDATA 段会被收集进列表并替换为占位处理指令，
    文档中原有的同名处理指令视为非法输入。
    """

    def replace(m: re.Match[bytes]) -> bytes:
        name = m.group(2)
        if name is not None:
            key = name.decode("ascii", errors="replace")
            if key in _PREDEFINED_ENTITIES:
                return m.group(0)
            value = entities.get(key)
            if value is None:
                raise XmlError(f"undefined entity: &{key};")
            return "".join(f"&#{ord(c)};" for c in value).encode("ascii")
        if m.group(3) is not None:
            if cdata is None:
                return m.group(0)
            raise XmlError(f"reserved processing instruction target: {_CDATA_PI}")
        if m.group(1) is not None and cdata is not None:
            cdata.append(m.group(1).decode("utf-8"))
            return f"<?{_CDATA_PI} {len(cdata) - 1}?>".encode("ascii")
        return m.group(0)

    return _TOKEN_RE.sub(replace, content)


class _TreeBuilder:
    """lxml parser target：维护打开元素栈并建树。"""

    def __init__(self, cdata: list[str]) -> None:
        self.root: XMLNode | None = None
        self._stack: list[XMLNode] = []
        self._text: list[str] = []
        self._cdata = cdata

    def start(self, tag: str, attrib: dict[str, str]) -> None:
        self._flush_text()
        node = XMLNode(
            name=QName.from_clark(tag),
            attrs=[XMLAttribute(QName.from_clark(k), v) for k, v in attrib.items()],
        )
        if self._stack:
            parent = self._stack[-1]
            node.parent = parent
            parent.children.append(node)
        self._stack.append(node)
        if self.root is None:
            self.root = node

    def end(self, tag: str) -> None:
        self._flush_text()
        if self._stack:
            self._stack.pop()

    def data(self, data: str) -> None:
        self._text.append(data)

    def comment(self, text: str) -> None:
        self._flush_text()

    def pi(self, target: str, data: str | None) -> None:
        self._flush_text()
        if target == _CDATA_PI and self._stack:
            self._stack[-1].cdata = self._cdata[int(data or 0)]

    def close(self) -> XMLNode | None:
        self._flush_text()
        return self.root

    def _flush_text(self) -> None:
        if not self._text:
            return
        text = "".join(self._text)
        self._text.clear()
        # 纯空白段不计入文本
        if self._stack and text.strip(_XML_SPACE):
            self._stack[-1].text = text


def parse_xml(content: bytes, config: XmlConfig | None = None) -> XMLNode:
    """解析 XML 字节串，返回根节点。"""
    config = config or XmlConfig()
    content = decode_content(content)

    cdata: list[str] = []
    try:
        prepared = expand_entities(content, config.entities, cdata)
    except UnicodeDecodeError as e:
        raise XmlError(f"invalid UTF-8 in CDATA section: {e}") from e

    builder = _TreeBuilder(cdata)
    parser = etree.XMLParser(
        target=builder,
        encoding="utf-8",
        resolve_entities=False,
        load_dtd=False,
        no_network=True,
        huge_tree=True,
    )
    try:
        parser.feed(prepared)
        parser.close()
    except etree.XMLSyntaxError as e:
        if builder.root is None:
            raise NoElementsError(f"no elements found: {e}") from e
        raise XmlError(f"malformed XML: {e}") from e

    if builder.root is None:
        raise NoElementsError("no elements found")
    return builder.root
