"""EPUB 压缩包访问：按路径读取 ZIP 内文件。

OPF 中声明的 href 有时与 ZIP 内实际文件名的百分号编码不一致，
因此读取失败时会再用百分号解码后的名字重试一次。
"""

from __future__ import annotations

import zipfile
import zlib
from pathlib import Path
from typing import BinaryIO
from urllib.parse import unquote

from epubnav.errors import ArchiveError, EncodingError, EntryNotFoundError


class EpubArchive:
    def __init__(self, zf: zipfile.ZipFile, path: Path | None = None) -> None:
        self._zip = zf
        self.path = path
        self.files: list[str] = zf.namelist()

    @classmethod
    def open(cls, path: str | Path) -> EpubArchive:
        """打开磁盘上的 EPUB 文件。"""
        path = Path(path)
        try:
            zf = zipfile.ZipFile(path, "r")
        except (OSError, zipfile.BadZipFile) as e:
            raise ArchiveError(f"无法打开 EPUB：{path}：{e}") from e
        return cls(zf, path)

    @classmethod
    def from_reader(cls, reader: BinaryIO) -> EpubArchive:
        """从可 seek 的二进制流打开 EPUB。"""
        try:
            zf = zipfile.ZipFile(reader, "r")
        except (OSError, zipfile.BadZipFile) as e:
            raise ArchiveError(f"无法读取 ZIP：{e}") from e
        return cls(zf)

    def get_entry(self, name: str) -> bytes:
        """返回 ZIP 内文件内容；先按原名查找，找不到再按百分号解码后的名字查找。"""
        try:
            return self._read(name)
        except KeyError:
            pass

        try:
            decoded = unquote(name, errors="strict")
        except UnicodeDecodeError as e:
            raise EncodingError(f"路径百分号解码后不是合法 UTF-8：{name}") from e
        if decoded != name:
            try:
                return self._read(decoded)
            except KeyError:
                pass
        raise EntryNotFoundError(name)

    def get_entry_as_str(self, name: str) -> str:
        content = self.get_entry(name)
        try:
            return content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EncodingError(f"{name} 不是合法的 UTF-8：{e}") from e

    def get_container_file(self, container_path: str) -> bytes:
        """读取 container.xml，路径取自 ReaderConfig.container_path。"""
        return self.get_entry(container_path)

    def close(self) -> None:
        self._zip.close()

    def __enter__(self) -> EpubArchive:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _read(self, name: str) -> bytes:
        # KeyError 留给调用方判断“文件不存在”，其余读取错误统一转成 ArchiveError
        try:
            return self._zip.read(name)
        except KeyError:
            raise
        except (OSError, RuntimeError, ValueError, zipfile.BadZipFile, zlib.error) as e:
            raise ArchiveError(f"读取 {name} 失败：{e}") from e
