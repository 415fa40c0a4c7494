"""腾讯云 COS 存储适配器（cos-python-sdk-v5）。

COS 策略的 ``server`` 保存存储桶访问域名，例如
``https://examplebucket-1250000000.cos.ap-guangzhou.myqcloud.com``，
存储桶名与地域都从该域名中解析。
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, BinaryIO, Callable, Iterable, List, Optional
from urllib.parse import urlsplit

import httpx
from qcloud_cos import CosConfig, CosS3Client
from qcloud_cos.cos_exception import CosClientError, CosServiceError

from storage_vfs.packages.storage.core.constants import DEFAULT_URL_EXPIRES_IN, OBJECT_DELETE_BATCH_SIZE
from storage_vfs.packages.storage.core.enums import PolicyTypeEnum
from storage_vfs.packages.storage.core.exceptions import (
    InvalidPolicySettings,
    ObjectNotFound,
    PartialRenameError,
    ProviderError,
)
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

COSError = (CosClientError, CosServiceError)


def parse_bucket_url(server: Optional[str]) -> tuple[str, str, str]:
    """解析存储桶域名，返回 ``(scheme, bucket, region)``。"""
    parts = urlsplit(ensure_scheme(server or ""))
    labels = parts.netloc.split(".")
    # <bucket>.cos.<region>.myqcloud.com
    if len(labels) < 5 or labels[1] != "cos":
        raise InvalidPolicySettings(f"COS 存储桶地址格式无效: {server}")
    return parts.scheme, labels[0], labels[2]


def public_base_url(policy: StoragePolicyInfo) -> str:
    cdn = ensure_scheme(policy.settings.cdn_domain)
    if cdn:
        return cdn
    return ensure_scheme(policy.server or "")


def _is_not_found(exc: CosServiceError) -> bool:
    return exc.get_status_code() == 404 or exc.get_error_code() in {"NoSuchKey", "NoSuchResource"}


class COSStorageProvider(StorageProvider):
    type = PolicyTypeEnum.COS.value

    def __init__(
        self,
        *,
        http_client: httpx.Client,
        timeout: float = 30.0,
        client_factory: Optional[Callable[[StoragePolicyInfo], Any]] = None,
    ) -> None:
        self.http_client = http_client
        self.timeout = timeout
        self._client_factory = client_factory or self._build_client
        self._clients: dict[tuple, Any] = {}
        self._lock = threading.Lock()

    def _build_client(self, policy: StoragePolicyInfo):
        scheme, _, region = parse_bucket_url(policy.server)
        config = CosConfig(
            Region=region,
            SecretId=policy.access_key,
            SecretKey=policy.secret_key,
            Scheme=scheme,
            Timeout=int(self.timeout),
        )
        return CosS3Client(config)

    def client(self, policy: StoragePolicyInfo):
        cache_key = (policy.id, policy.server, policy.access_key, policy.secret_key)
        with self._lock:
            client = self._clients.get(cache_key)
            if client is None:
                client = self._client_factory(policy)
                self._clients[cache_key] = client
            return client

    @staticmethod
    def bucket_name(policy: StoragePolicyInfo) -> str:
        if policy.bucket_name:
            return policy.bucket_name
        return parse_bucket_url(policy.server)[1]

    def _key(self, policy: StoragePolicyInfo, virtual_path: str) -> str:
        return build_object_key(policy.base_path, virtual_path, policy.virtual_path)

    def upload(self, reader: BinaryIO, policy: StoragePolicyInfo, virtual_path: str) -> UploadResult:
        check_upload_allowed(policy, virtual_path, reader)
        key = self._key(policy, virtual_path)
        mime_type = guess_mime(key)
        counter = CountingReader(reader, policy.max_size)
        try:
            self.client(policy).put_object(
                Bucket=self.bucket_name(policy), Body=counter, Key=key, ContentType=mime_type
            )
        except COSError as exc:
            raise ProviderError(f"COS 上传失败: {exc}") from exc
        return UploadResult(source=key, size=counter.bytes_read, mime_type=mime_type)

    def get(self, policy: StoragePolicyInfo, source: str) -> BinaryIO:
        try:
            response = self.client(policy).get_object(Bucket=self.bucket_name(policy), Key=source)
        except CosServiceError as exc:
            if _is_not_found(exc):
                raise ObjectNotFound(f"对象不存在: {source}") from exc
            raise ProviderError(f"COS 读取失败: {exc}") from exc
        except CosClientError as exc:
            raise ProviderError(f"COS 读取失败: {exc}") from exc
        return response["Body"].get_raw_stream()

    def list(self, policy: StoragePolicyInfo, virtual_path: str) -> List[FileInfo]:
        prefix = build_object_prefix(policy.base_path, virtual_path, policy.virtual_path)
        client = self.client(policy)
        items: list[FileInfo] = []
        marker = ""
        while True:
            try:
                response = client.list_objects(
                    Bucket=self.bucket_name(policy), Prefix=prefix, Delimiter="/", Marker=marker, MaxKeys=1000
                )
            except COSError as exc:
                raise ProviderError(f"COS 列举失败: {exc}") from exc
            for common in response.get("CommonPrefixes", []):
                name = common.get("Prefix", "")[len(prefix):].rstrip("/")
                if name:
                    items.append(FileInfo(name=name, size=0, mod_time=None, is_dir=True))
            for content in response.get("Contents", []):
                key = content.get("Key") or ""
                if not key or key == prefix or key.endswith("/"):
                    continue
                items.append(
                    FileInfo(
                        name=key[len(prefix):],
                        size=int(content.get("Size") or 0),
                        mod_time=_parse_time(content.get("LastModified")),
                        is_dir=False,
                    )
                )
            if response.get("IsTruncated") != "true":
                break
            marker = response.get("NextMarker") or ""
            if not marker:
                break
        return items

    def delete(self, policy: StoragePolicyInfo, sources: Iterable[str]) -> None:
        objects = [{"Key": key} for key in sources if key]
        client = self.client(policy)
        for i in range(0, len(objects), OBJECT_DELETE_BATCH_SIZE):
            batch = objects[i : i + OBJECT_DELETE_BATCH_SIZE]
            try:
                response = client.delete_objects(
                    Bucket=self.bucket_name(policy), Delete={"Object": batch, "Quiet": "true"}
                )
            except COSError as exc:
                raise ProviderError(f"COS 删除失败: {exc}") from exc
            errors = (response or {}).get("Error") or []
            if errors:
                first = errors[0]
                raise ProviderError(f"COS 删除失败: {first.get('Key')} {first.get('Code')}")

    def rename(self, policy: StoragePolicyInfo, old_virtual_path: str, new_virtual_path: str) -> None:
        src_key = self._key(policy, old_virtual_path)
        dst_key = self._key(policy, new_virtual_path)
        client = self.client(policy)
        bucket = self.bucket_name(policy)
        _, _, region = parse_bucket_url(policy.server)
        try:
            client.copy_object(
                Bucket=bucket,
                Key=dst_key,
                CopySource={"Bucket": bucket, "Key": src_key, "Region": region},
            )
        except CosServiceError as exc:
            if _is_not_found(exc):
                raise ObjectNotFound(f"源对象不存在: {src_key}") from exc
            raise ProviderError(f"COS 复制失败: {exc}") from exc
        except CosClientError as exc:
            raise ProviderError(f"COS 复制失败: {exc}") from exc
        try:
            client.delete_object(Bucket=bucket, Key=src_key)
        except COSError as exc:
            logger.warning("COS rename left both %s and %s in bucket %s: %s", src_key, dst_key, bucket, exc)
            raise PartialRenameError(src_key, dst_key) from exc

    def exists(self, policy: StoragePolicyInfo, source: str) -> bool:
        try:
            return bool(self.client(policy).object_exists(Bucket=self.bucket_name(policy), Key=source))
        except COSError as exc:
            raise ProviderError(f"COS 查询失败: {exc}") from exc

    def _presigned_get(self, policy: StoragePolicyInfo, source: str, expires_in: int, params: dict[str, str]) -> str:
        try:
            return self.client(policy).get_presigned_download_url(
                Bucket=self.bucket_name(policy), Key=source, Expired=expires_in, Params=params
            )
        except COSError as exc:
            raise ProviderError(f"预签名 URL 生成失败: {exc}") from exc

    def get_download_url(
        self,
        policy: StoragePolicyInfo,
        source: str,
        options: Optional[DownloadURLOptions] = None,
    ) -> str:
        options = options or DownloadURLOptions()
        separator = policy.settings.style_separator
        if policy.is_private and not policy.settings.source_auth:
            params = dict(options.query_params)
            if options.image_process:
                # COS 的处理指令是无值参数，签名时以空值参与
                directive = options.image_process if not separator else f"style/{options.image_process}"
                params.setdefault(directive, "")
            return self._presigned_get(policy, source, options.effective_expires_in, params)

        url = join_url(public_base_url(policy), source)
        if separator:
            url = apply_style(url, separator, options.image_process)
            return merge_query(url, options.query_params)
        return merge_query(url, options.query_params, options.image_process)

    def create_directory(self, policy: StoragePolicyInfo, virtual_path: str) -> None:
        prefix = build_object_prefix(policy.base_path, virtual_path, policy.virtual_path)
        if not prefix:
            return
        try:
            self.client(policy).put_object(Bucket=self.bucket_name(policy), Body=b"", Key=prefix)
        except COSError as exc:
            raise ProviderError(f"COS 创建目录失败: {exc}") from exc

    def delete_directory(self, policy: StoragePolicyInfo, virtual_path: str) -> None:
        prefix = build_object_prefix(policy.base_path, virtual_path, policy.virtual_path)
        if not prefix:
            return
        try:
            self.client(policy).delete_object(Bucket=self.bucket_name(policy), Key=prefix)
        except COSError as exc:
            raise ProviderError(f"COS 删除目录失败: {exc}") from exc

    def get_thumbnail(self, policy: StoragePolicyInfo, source: str, size: str) -> ThumbnailResult:
        width, height = parse_thumbnail_size(size)
        directive = f"imageMogr2/thumbnail/{width}x{height}"
        if policy.is_private and not policy.settings.source_auth:
            url = self._presigned_get(policy, source, DEFAULT_URL_EXPIRES_IN, {directive: ""})
        else:
            url = merge_query(join_url(public_base_url(policy), source), directive=directive)
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
        try:
            url = self.client(policy).get_presigned_url(
                Method="PUT", Bucket=self.bucket_name(policy), Key=key, Expired=expires_in
            )
        except COSError as exc:
            raise ProviderError(f"预签名上传 URL 生成失败: {exc}") from exc
        return PresignedUpload(url=url, method="PUT", source=key, headers={"Content-Type": guess_mime(key)})

    def forget_client(self, policy_id: int) -> None:
        with self._lock:
            for cache_key in [k for k in self._clients if k[0] == policy_id]:
                self._clients.pop(cache_key, None)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
