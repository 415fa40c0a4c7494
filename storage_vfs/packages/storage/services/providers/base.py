"""存储适配器抽象：统一封装本地磁盘、S3、OSS、COS 与 OneDrive 的文件操作。

路径类参数（``virtual_path``）会按策略的 ``base_path`` 拼接为后端对象键；
``source`` 类参数是上传时返回并存入 Entity 的对象键或文件路径，直接使用。
"""

from __future__ import annotations

import io
import mimetypes
import posixpath
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import BinaryIO, Iterable, List, Optional

import httpx

from storage_vfs.packages.storage.core.constants import DEFAULT_URL_EXPIRES_IN
from storage_vfs.packages.storage.core.exceptions import (
    ExtensionNotAllowed,
    FeatureNotSupported,
    FileTooLarge,
    InvalidThumbnailSize,
    ProviderError,
)
from storage_vfs.packages.storage.core.logger import provider_logger as logger
from storage_vfs.packages.storage.services.policy_settings import StoragePolicyInfo

STREAM_CHUNK_SIZE = 64 * 1024


def guess_mime(name: str) -> str:
    mime, _ = mimetypes.guess_type(name)
    return mime or "application/octet-stream"


@dataclass
class FileInfo:
    name: str
    size: int
    mod_time: Optional[datetime]
    is_dir: bool


@dataclass
class UploadResult:
    source: str
    size: int
    mime_type: str


@dataclass
class ThumbnailResult:
    content_type: str
    data: bytes


@dataclass
class DownloadURLOptions:
    expires_in: int = DEFAULT_URL_EXPIRES_IN
    query_params: dict[str, str] = field(default_factory=dict)
    image_process: str = ""

    @property
    def effective_expires_in(self) -> int:
        return self.expires_in if self.expires_in and self.expires_in > 0 else DEFAULT_URL_EXPIRES_IN


@dataclass
class PresignedUpload:
    url: str
    method: str
    source: str
    headers: dict[str, str] = field(default_factory=dict)


class CountingReader:
    """包装可读对象，统计实际读出的字节数，并在超过上限时中止。"""

    def __init__(self, reader: BinaryIO, limit: int = 0) -> None:
        self._reader = reader
        self._limit = limit
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        chunk = self._reader.read(size)
        self.bytes_read += len(chunk)
        if self._limit and self.bytes_read > self._limit:
            raise FileTooLarge()
        return chunk

    def __iter__(self):
        while True:
            chunk = self.read(STREAM_CHUNK_SIZE)
            if not chunk:
                return
            yield chunk


def check_upload_allowed(policy: StoragePolicyInfo, virtual_path: str, reader: BinaryIO) -> None:
    """上传前校验扩展名白名单；可定位的流顺带校验大小上限。"""
    filename = posixpath.basename(virtual_path)
    if not policy.settings.allows_extension(filename):
        raise ExtensionNotAllowed(f"存储策略不允许上传该类型的文件: {filename}")
    if policy.max_size <= 0:
        return
    seekable = getattr(reader, "seekable", None)
    if seekable is not None and seekable():
        current = reader.tell()
        total = reader.seek(0, io.SEEK_END)
        reader.seek(current)
        if total - current > policy.max_size:
            raise FileTooLarge()


def parse_thumbnail_size(size: str) -> tuple[int, int]:
    """解析 ``宽x高`` 形式的尺寸字符串。"""
    width, sep, height = (size or "").lower().partition("x")
    if not sep or not width.isdigit() or not height.isdigit():
        raise InvalidThumbnailSize()
    w, h = int(width), int(height)
    if w <= 0 or h <= 0:
        raise InvalidThumbnailSize()
    return w, h


# 图片处理接口返回这些状态时视为当前对象不支持处理，降级为直接下载原图
FALLBACK_STATUS_CODES = {401, 403, 404}


def fetch_processed_image(http_client: httpx.Client, url: str) -> Optional[ThumbnailResult]:
    """请求图片处理 URL；返回 ``None`` 表示应降级为下载原图。"""
    try:
        response = http_client.get(url, follow_redirects=True)
    except httpx.HTTPError as exc:
        raise ProviderError(f"图片处理请求失败: {exc}") from exc
    if response.status_code in FALLBACK_STATUS_CODES:
        logger.info("Image process returned %s, falling back to raw download", response.status_code)
        return None
    if response.status_code >= 400:
        raise ProviderError(f"图片处理请求失败: HTTP {response.status_code}")
    content_type = response.headers.get("content-type", "image/jpeg").split(";")[0].strip()
    return ThumbnailResult(content_type=content_type or "image/jpeg", data=response.content)


def read_all(reader) -> bytes:
    try:
        return reader.read()
    finally:
        close = getattr(reader, "close", None)
        if close is not None:
            close()


class StorageProvider(ABC):
    """存储适配器接口。"""

    type: str = ""

    @abstractmethod
    def upload(self, reader: BinaryIO, policy: StoragePolicyInfo, virtual_path: str) -> UploadResult:
        raise NotImplementedError

    @abstractmethod
    def get(self, policy: StoragePolicyInfo, source: str) -> BinaryIO:
        raise NotImplementedError

    def stream(self, policy: StoragePolicyInfo, source: str, writer: BinaryIO) -> int:
        """把对象内容写入 ``writer``，返回写入的字节数。"""
        reader = self.get(policy, source)
        written = 0
        try:
            while True:
                chunk = reader.read(STREAM_CHUNK_SIZE)
                if not chunk:
                    break
                writer.write(chunk)
                written += len(chunk)
        finally:
            close = getattr(reader, "close", None)
            if close is not None:
                close()
        return written

    @abstractmethod
    def list(self, policy: StoragePolicyInfo, virtual_path: str) -> List[FileInfo]:
        raise NotImplementedError

    @abstractmethod
    def delete(self, policy: StoragePolicyInfo, sources: Iterable[str]) -> None:
        raise NotImplementedError

    @abstractmethod
    def rename(self, policy: StoragePolicyInfo, old_virtual_path: str, new_virtual_path: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def exists(self, policy: StoragePolicyInfo, source: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def get_download_url(
        self,
        policy: StoragePolicyInfo,
        source: str,
        options: Optional[DownloadURLOptions] = None,
    ) -> str:
        raise NotImplementedError

    @abstractmethod
    def create_directory(self, policy: StoragePolicyInfo, virtual_path: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_directory(self, policy: StoragePolicyInfo, virtual_path: str) -> None:
        raise NotImplementedError

    def get_thumbnail(self, policy: StoragePolicyInfo, source: str, size: str) -> ThumbnailResult:
        raise FeatureNotSupported(f"{self.type} 存储不支持生成缩略图")

    def create_presigned_upload_url(
        self,
        policy: StoragePolicyInfo,
        virtual_path: str,
        expires_in: int,
    ) -> PresignedUpload:
        raise FeatureNotSupported(f"{self.type} 存储不支持客户端直传")
