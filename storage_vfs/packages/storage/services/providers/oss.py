"""阿里云 OSS 存储适配器（oss2）。"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, BinaryIO, Callable, Iterable, List, Optional
from urllib.parse import urlsplit

import httpx
import oss2
from oss2.exceptions import NoSuchKey, NotFound, OssError

from storage_vfs.packages.storage.core.constants import OBJECT_DELETE_BATCH_SIZE
from storage_vfs.packages.storage.core.enums import PolicyTypeEnum
from storage_vfs.packages.storage.core.exceptions import ObjectNotFound, PartialRenameError, ProviderError
from storage_vfs.packages.storage.core.logger import provider_logger as logger
from storage_vfs.packages.storage.services.policy_settings import StoragePolicyInfo
from storage_vfs.packages.storage.services.providers.base import (
    CountingReader,
    DownloadURLOptions,
    FileInfo,
    PresignedUpload,
    StorageProvider,
    ThumbnailResult,
    UploadResult,
    check_upload_allowed,
    fetch_processed_image,
    guess_mime,
    parse_thumbnail_size,
    read_all,
)
from storage_vfs.packages.storage.services.providers.keys import (
    apply_style,
    build_object_key,
    build_object_prefix,
    ensure_scheme,
    join_url,
    merge_query,
)

PROCESS_PARAM = "x-oss-process"


def normalize_endpoint(server: Optional[str]) -> str:
    return ensure_scheme(server or "")


def public_base_url(policy: StoragePolicyInfo) -> str:
    cdn = ensure_scheme(policy.settings.cdn_domain)
    if cdn:
        return cdn
    parts = urlsplit(normalize_endpoint(policy.server))
    return f"{parts.scheme}://{policy.bucket_name}.{parts.netloc}"


class OSSStorageProvider(StorageProvider):
    type = PolicyTypeEnum.OSS.value

    def __init__(
        self,
        *,
        http_client: httpx.Client,
        timeout: float = 30.0,
        bucket_factory: Optional[Callable[[StoragePolicyInfo], Any]] = None,
    ) -> None:
        self.http_client = http_client
        self.timeout = timeout
        self._bucket_factory = bucket_factory or self._build_bucket
        self._buckets: dict[tuple, Any] = {}
        self._lock = threading.Lock()

    def _build_bucket(self, policy: StoragePolicyInfo):
        auth = oss2.Auth(policy.access_key or "", policy.secret_key or "")
        return oss2.Bucket(
            auth,
            normalize_endpoint(policy.server),
            policy.bucket_name,
            connect_timeout=self.timeout,
        )

    def bucket(self, policy: StoragePolicyInfo):
        cache_key = (policy.id, policy.server, policy.bucket_name, policy.access_key, policy.secret_key)
        with self._lock:
            bucket = self._buckets.get(cache_key)
            if bucket is None:
                bucket = self._bucket_factory(policy)
                self._buckets[cache_key] = bucket
            return bucket

    def _key(self, policy: StoragePolicyInfo, virtual_path: str) -> str:
        return build_object_key(policy.base_path, virtual_path, policy.virtual_path)

    def upload(self, reader: BinaryIO, policy: StoragePolicyInfo, virtual_path: str) -> UploadResult:
        check_upload_allowed(policy, virtual_path, reader)
        key = self._key(policy, virtual_path)
        mime_type = guess_mime(key)
        counter = CountingReader(reader, policy.max_size)
        try:
            self.bucket(policy).put_object(key, counter, headers={"Content-Type": mime_type})
        except OssError as exc:
            raise ProviderError(f"OSS 上传失败: {exc}") from exc
        return UploadResult(source=key, size=counter.bytes_read, mime_type=mime_type)

    def get(self, policy: StoragePolicyInfo, source: str) -> BinaryIO:
        try:
            return self.bucket(policy).get_object(source)
        except (NoSuchKey, NotFound) as exc:
            raise ObjectNotFound(f"对象不存在: {source}") from exc
        except OssError as exc:
            raise ProviderError(f"OSS 读取失败: {exc}") from exc

    def list(self, policy: StoragePolicyInfo, virtual_path: str) -> List[FileInfo]:
        prefix = build_object_prefix(policy.base_path, virtual_path, policy.virtual_path)
        items: list[FileInfo] = []
        try:
            for obj in oss2.ObjectIterator(self.bucket(policy), prefix=prefix, delimiter="/"):
                if obj.is_prefix():
                    name = obj.key[len(prefix):].rstrip("/")
                    if name:
                        items.append(FileInfo(name=name, size=0, mod_time=None, is_dir=True))
                    continue
                if obj.key == prefix or obj.key.endswith("/"):
                    continue
                mod_time = datetime.fromtimestamp(obj.last_modified, tz=timezone.utc) if obj.last_modified else None
                items.append(FileInfo(name=obj.key[len(prefix):], size=int(obj.size or 0), mod_time=mod_time, is_dir=False))
        except OssError as exc:
            raise ProviderError(f"OSS 列举失败: {exc}") from exc
        return items

    def delete(self, policy: StoragePolicyInfo, sources: Iterable[str]) -> None:
        keys = [key for key in sources if key]
        bucket = self.bucket(policy)
        for i in range(0, len(keys), OBJECT_DELETE_BATCH_SIZE):
            try:
                bucket.batch_delete_objects(keys[i : i + OBJECT_DELETE_BATCH_SIZE])
            except OssError as exc:
                raise ProviderError(f"OSS 删除失败: {exc}") from exc

    def rename(self, policy: StoragePolicyInfo, old_virtual_path: str, new_virtual_path: str) -> None:
        src_key = self._key(policy, old_virtual_path)
        dst_key = self._key(policy, new_virtual_path)
        bucket = self.bucket(policy)
        try:
            bucket.copy_object(policy.bucket_name, src_key, dst_key)
        except (NoSuchKey, NotFound) as exc:
            raise ObjectNotFound(f"源对象不存在: {src_key}") from exc
        except OssError as exc:
            raise ProviderError(f"OSS 复制失败: {exc}") from exc
        try:
            bucket.delete_object(src_key)
        except OssError as exc:
            logger.warning("OSS rename left both %s and %s in bucket %s: %s", src_key, dst_key, policy.bucket_name, exc)
            raise PartialRenameError(src_key, dst_key) from exc

    def exists(self, policy: StoragePolicyInfo, source: str) -> bool:
        try:
            return bool(self.bucket(policy).object_exists(source))
        except OssError as exc:
            raise ProviderError(f"OSS 查询失败: {exc}") from exc

    def _process_params(self, policy: StoragePolicyInfo, options: DownloadURLOptions) -> dict[str, str]:
        params = dict(options.query_params)
        if options.image_process and not policy.settings.style_separator:
            params.setdefault(PROCESS_PARAM, options.image_process)
        return params

    def _sign_get(self, policy: StoragePolicyInfo, source: str, expires_in: int, params: dict[str, str]) -> str:
        try:
            return self.bucket(policy).sign_url("GET", source, expires_in, params=params or None, slash_safe=True)
        except OssError as exc:
            raise ProviderError(f"预签名 URL 生成失败: {exc}") from exc

    def get_download_url(
        self,
        policy: StoragePolicyInfo,
        source: str,
        options: Optional[DownloadURLOptions] = None,
    ) -> str:
        options = options or DownloadURLOptions()
        params = self._process_params(policy, options)
        if policy.is_private and not policy.settings.source_auth:
            # 图片处理参数需要参与签名
            if options.image_process and policy.settings.style_separator:
                params.setdefault(PROCESS_PARAM, f"style/{options.image_process}")
            return self._sign_get(policy, source, options.effective_expires_in, params)

        url = join_url(public_base_url(policy), source)
        url = apply_style(url, policy.settings.style_separator, options.image_process)
        return merge_query(url, params)

    def create_directory(self, policy: StoragePolicyInfo, virtual_path: str) -> None:
        prefix = build_object_prefix(policy.base_path, virtual_path, policy.virtual_path)
        if not prefix:
            return
        try:
            self.bucket(policy).put_object(prefix, b"")
        except OssError as exc:
            raise ProviderError(f"OSS 创建目录失败: {exc}") from exc

    def delete_directory(self, policy: StoragePolicyInfo, virtual_path: str) -> None:
        prefix = build_object_prefix(policy.base_path, virtual_path, policy.virtual_path)
        if not prefix:
            return
        try:
            self.bucket(policy).delete_object(prefix)
        except OssError as exc:
            raise ProviderError(f"OSS 删除目录失败: {exc}") from exc

    def get_thumbnail(self, policy: StoragePolicyInfo, source: str, size: str) -> ThumbnailResult:
        width, height = parse_thumbnail_size(size)
        options = DownloadURLOptions(image_process=f"image/resize,m_lfit,w_{width},h_{height}")
        # 缩略图固定走处理参数，不使用样式分隔符
        params = {PROCESS_PARAM: options.image_process}
        if policy.is_private and not policy.settings.source_auth:
            url = self._sign_get(policy, source, options.effective_expires_in, params)
        else:
            url = merge_query(join_url(public_base_url(policy), source), params)
        result = fetch_processed_image(self.http_client, url)
        if result is not None:
            return result
        return ThumbnailResult(content_type=guess_mime(source), data=read_all(self.get(policy, source)))

    def create_presigned_upload_url(
        self,
        policy: StoragePolicyInfo,
        virtual_path: str,
        expires_in: int,
    ) -> PresignedUpload:
        key = self._key(policy, virtual_path)
        headers = {"Content-Type": guess_mime(key)}
        try:
            url = self.bucket(policy).sign_url("PUT", key, expires_in, headers=headers, slash_safe=True)
        except OssError as exc:
            raise ProviderError(f"预签名上传 URL 生成失败: {exc}") from exc
        return PresignedUpload(url=url, method="PUT", source=key, headers=headers)

    def forget_client(self, policy_id: int) -> None:
        with self._lock:
            for cache_key in [k for k in self._buckets if k[0] == policy_id]:
                self._buckets.pop(cache_key, None)
