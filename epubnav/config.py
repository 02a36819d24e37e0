"""全局配置模型。"""

from __future__ import annotations

from dataclasses import dataclass, field

# 解析器只认这三个命名实体，其余未声明实体一律视为语法错误
DEFAULT_ENTITIES: dict[str, str] = {
    "nbsp": "\u00a0",
    "copy": "©",
    "reg": "®",
}

# 需要改写为 epub:// 地址的 (标签, 属性) 组合
RELINK_ATTRS: frozenset[tuple[str, str]] = frozenset({
    ("link", "href"),
    ("image", "href"),
    ("a", "href"),
    ("img", "src"),
})


@dataclass
class XmlConfig:
    entities: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ENTITIES))


@dataclass
class ReaderConfig:
    container_path: str = "META-INF/container.xml"
    uri_scheme: str = "epub://"
    external_prefix: str = "http"   # 以此开头的链接视为外链，原样保留
    relink_attrs: frozenset[tuple[str, str]] = RELINK_ATTRS

    xml: XmlConfig = field(default_factory=XmlConfig)

    def should_relink(self, element: str, attr: str) -> bool:
        return (element, attr) in self.relink_attrs
