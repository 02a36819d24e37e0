"""异常定义。

所有异常都派生自 EpubError，调用方可以只捕获这一个基类。
"""

from __future__ import annotations


class EpubError(Exception):
    """epubnav 异常基类。"""


# ── 压缩包 ──────────────────────────────────────────────────────────────────


class ArchiveError(EpubError):
    """ZIP 结构损坏或读取失败。"""


class EntryNotFoundError(ArchiveError):
    """ZIP 内不存在该文件（原样名与百分号解码名都找不到）。"""

    def __init__(self, name: str) -> None:
        super().__init__(f"entry not found: {name}")
        self.name = name


class EncodingError(ArchiveError):
    """内容或文件名不是合法的 UTF-8。"""


# ── XML ─────────────────────────────────────────────────────────────────────


class XmlError(EpubError):
    """XML 无法解析或无法重新序列化。"""


class NoContentError(XmlError):
    """输入内容过短（少于 4 字节）。"""


class NoElementsError(XmlError):
    """输入中没有任何元素。"""


class AttrNotFoundError(XmlError):
    """调用方要求的属性或元素不存在。"""

    def __init__(self, name: str) -> None:
        super().__init__(f"attribute not found: {name}")
        self.name = name


# ── 文档 ────────────────────────────────────────────────────────────────────


class DocError(EpubError):
    """文档层面的错误。"""


class InvalidEpubError(DocError):
    """EPUB 结构不完整：缺少 manifest / spine / metadata，或当前章节无法读取。"""
