"""XHTML 属性改写：逐个替换属性值，并在 </head> 前注入额外样式。

除被替换的属性值与注入的 <style> 之外，注释、处理指令、CDATA、
DOCTYPE 等内容全部保留，最后以缩进格式重新序列化。
"""

from __future__ import annotations

from typing import Callable, Sequence

from lxml import etree

from epubnav.config import XmlConfig
from epubnav.epub.xmlutils import decode_content, expand_entities
from epubnav.errors import XmlError

# (元素本地名, 属性本地名, 原值) -> 新值
Substitute = Callable[[str, str, str], str]


def replace_attrs(
    content: bytes,
    substitute: Substitute,
    extra_css: Sequence[str],
    config: XmlConfig | None = None,
) -> bytes:
    """改写所有元素的属性值，返回新的 XHTML 字节串。

    Args:
        content: 原始 XHTML
        substitute: 对每个属性调用一次，返回值无条件替换原值
        extra_css: 非空时在每个 head 末尾注入一个 <style>

    Raises:
        XmlError: 解析或序列化失败，此时不返回任何部分结果
    """
    config = config or XmlConfig()
    content = decode_content(content)

    parser = etree.XMLParser(
        encoding="utf-8",
        strip_cdata=False,
        resolve_entities=False,
        load_dtd=False,
        no_network=True,
        huge_tree=True,
    )
    try:
        root = etree.fromstring(expand_entities(content, config.entities), parser)
    except etree.XMLSyntaxError as e:
        raise XmlError(f"malformed XHTML: {e}") from e

    heads: list[etree._Element] = []
    for el in root.iter(etree.Element):
        tag = etree.QName(el).localname
        for key, value in el.attrib.items():
            el.set(key, substitute(tag, etree.QName(key).localname, value))
        if tag.lower() == "head":
            heads.append(el)

    # 注入的 <style> 不经过 substitute
    if extra_css:
        for head in heads:
            head.append(_style_element(head, extra_css))

    try:
        return etree.tostring(
            root.getroottree(),
            xml_declaration=True,
            encoding="utf-8",
            pretty_print=True,
        )
    except (etree.LxmlError, ValueError) as e:
        raise XmlError(f"failed to serialize XHTML: {e}") from e


def _style_element(head: etree._Element, extra_css: Sequence[str]) -> etree._Element:
    """构造注入用的 <style>，命名空间与 head 一致。

    内容形如 /*<![CDATA[*/ ... /*]]>*/，CDATA 标记被当作普通文本时也只是 CSS 注释。
    """
    css = "\n".join(extra_css).replace("]]>", "]]]]><![CDATA[>")
    namespace = etree.QName(head).namespace
    xmlns = f' xmlns="{namespace}"' if namespace else ""
    # 外层包一个 head，命名空间声明留在包装元素上，移入原文档后复用原有声明
    fragment = (
        f"<head{xmlns}>"
        f'<style type="text/css">/*<![CDATA[*/\n{css}\n/*]]>*/</style>'
        f"</head>"
    )
    try:
        wrapper = etree.fromstring(fragment.encode("utf-8"), etree.XMLParser(strip_cdata=False))
    except etree.XMLSyntaxError as e:
        raise XmlError(f"extra css cannot be embedded: {e}") from e
    return wrapper[0]
