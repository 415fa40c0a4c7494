"""S3 存储适配器（boto3），同时兼容自定义端点的 S3 协议服务。"""

from __future__ import annotations

import threading
from typing import Any, BinaryIO, Callable, Iterable, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

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
    UploadResult,
    check_upload_allowed,
    guess_mime,
)
from storage_vfs.packages.storage.services.providers.keys import (
    apply_style,
    build_object_key,
    build_object_prefix,
    ensure_scheme,
    join_url,
    merge_query,
)

DEFAULT_REGION = "us-east-1"
_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}

# 预签名 URL 只能携带 S3 认可的响应头覆盖参数
_RESPONSE_PARAMS = {
    "response-content-type": "ResponseContentType",
    "response-content-disposition": "ResponseContentDisposition",
    "response-content-language": "ResponseContentLanguage",
    "response-content-encoding": "ResponseContentEncoding",
    "response-cache-control": "ResponseCacheControl",
    "response-expires": "ResponseExpires",
}


def resolve_region_and_endpoint(server: Optional[str]) -> tuple[str, Optional[str]]:
    """``server`` 为完整 URL 时视为自定义端点，否则视为区域名。"""
    server = (server or "").strip()
    if server.startswith("http://") or server.startswith("https://"):
        return DEFAULT_REGION, server.rstrip("/")
    return server or DEFAULT_REGION, None


def public_base_url(policy: StoragePolicyInfo) -> str:
    cdn = ensure_scheme(policy.settings.cdn_domain)
    if cdn:
        return cdn
    region, endpoint = resolve_region_and_endpoint(policy.server)
    if endpoint:
        return f"{endpoint}/{policy.bucket_name}"
    return f"https://s3.{region}.amazonaws.com/{policy.bucket_name}"


def _error_code(exc: Exception) -> str:
    # BotoCoreError（连接、凭据等）没有响应体
    response = getattr(exc, "response", None) or {}
    return str(response.get("Error", {}).get("Code", ""))


class S3StorageProvider(StorageProvider):
    type = PolicyTypeEnum.S3.value

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        client_factory: Optional[Callable[[StoragePolicyInfo], Any]] = None,
    ) -> None:
        self.timeout = timeout
        self._client_factory = client_factory or self._build_client
        self._clients: dict[tuple, Any] = {}
        self._lock = threading.Lock()

    def _build_client(self, policy: StoragePolicyInfo):
        region, endpoint = resolve_region_and_endpoint(policy.server)
        path_style = bool(endpoint) or policy.settings.force_path_style
        config = Config(
            signature_version="s3v4",
            connect_timeout=self.timeout,
            read_timeout=self.timeout,
            s3={"addressing_style": "path" if path_style else "auto"},
        )
        return boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint,
            aws_access_key_id=policy.access_key,
            aws_secret_access_key=policy.secret_key,
            config=config,
        )

    def client(self, policy: StoragePolicyInfo):
        cache_key = (policy.id, policy.server, policy.bucket_name, policy.access_key, policy.secret_key)
        with self._lock:
            client = self._clients.get(cache_key)
            if client is None:
                client = self._client_factory(policy)
                self._clients[cache_key] = client
            return client

    def _key(self, policy: StoragePolicyInfo, virtual_path: str) -> str:
        return build_object_key(policy.base_path, virtual_path, policy.virtual_path)

    def upload(self, reader: BinaryIO, policy: StoragePolicyInfo, virtual_path: str) -> UploadResult:
        check_upload_allowed(policy, virtual_path, reader)
        key = self._key(policy, virtual_path)
        mime_type = guess_mime(key)
        counter = CountingReader(reader, policy.max_size)
        try:
            self.client(policy).upload_fileobj(
                counter, policy.bucket_name, key, ExtraArgs={"ContentType": mime_type}
            )
        except (ClientError, BotoCoreError) as exc:
            raise ProviderError(f"S3 上传失败: {exc}") from exc
        return UploadResult(source=key, size=counter.bytes_read, mime_type=mime_type)

    def get(self, policy: StoragePolicyInfo, source: str) -> BinaryIO:
        try:
            response = self.client(policy).get_object(Bucket=policy.bucket_name, Key=source)
        except (ClientError, BotoCoreError) as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                raise ObjectNotFound(f"对象不存在: {source}") from exc
            raise ProviderError(f"S3 读取失败: {exc}") from exc
        return response["Body"]

    def list(self, policy: StoragePolicyInfo, virtual_path: str) -> List[FileInfo]:
        prefix = build_object_prefix(policy.base_path, virtual_path, policy.virtual_path)
        paginator = self.client(policy).get_paginator("list_objects_v2")
        items: list[FileInfo] = []
        try:
            for page in paginator.paginate(Bucket=policy.bucket_name, Prefix=prefix, Delimiter="/"):
                for common in page.get("CommonPrefixes", []):
                    name = common.get("Prefix", "")[len(prefix):].rstrip("/")
                    if name:
                        items.append(FileInfo(name=name, size=0, mod_time=None, is_dir=True))
                for content in page.get("Contents", []):
                    key = content.get("Key") or ""
                    # 跳过目录占位对象
                    if not key or key == prefix or key.endswith("/"):
                        continue
                    items.append(
                        FileInfo(
                            name=key[len(prefix):],
                            size=int(content.get("Size") or 0),
                            mod_time=content.get("LastModified"),
                            is_dir=False,
                        )
                    )
        except (ClientError, BotoCoreError) as exc:
            raise ProviderError(f"S3 列举失败: {exc}") from exc
        return items

    def delete(self, policy: StoragePolicyInfo, sources: Iterable[str]) -> None:
        objects = [{"Key": key} for key in sources if key]
        client = self.client(policy)
        for i in range(0, len(objects), OBJECT_DELETE_BATCH_SIZE):
            batch = objects[i : i + OBJECT_DELETE_BATCH_SIZE]
            try:
                response = client.delete_objects(
                    Bucket=policy.bucket_name, Delete={"Objects": batch, "Quiet": True}
                )
            except (ClientError, BotoCoreError) as exc:
                raise ProviderError(f"S3 删除失败: {exc}") from exc
            errors = response.get("Errors") or []
            if errors:
                first = errors[0]
                raise ProviderError(f"S3 删除失败: {first.get('Key')} {first.get('Code')}")

    def rename(self, policy: StoragePolicyInfo, old_virtual_path: str, new_virtual_path: str) -> None:
        src_key = self._key(policy, old_virtual_path)
        dst_key = self._key(policy, new_virtual_path)
        client = self.client(policy)
        try:
            client.copy_object(
                Bucket=policy.bucket_name,
                Key=dst_key,
                CopySource={"Bucket": policy.bucket_name, "Key": src_key},
            )
        except (ClientError, BotoCoreError) as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                raise ObjectNotFound(f"源对象不存在: {src_key}") from exc
            raise ProviderError(f"S3 复制失败: {exc}") from exc
        try:
            client.delete_object(Bucket=policy.bucket_name, Key=src_key)
        except (ClientError, BotoCoreError) as exc:
            logger.warning("S3 rename left both %s and %s in bucket %s: %s", src_key, dst_key, policy.bucket_name, exc)
            raise PartialRenameError(src_key, dst_key) from exc

    def exists(self, policy: StoragePolicyInfo, source: str) -> bool:
        try:
            self.client(policy).head_object(Bucket=policy.bucket_name, Key=source)
        except (ClientError, BotoCoreError) as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                return False
            raise ProviderError(f"S3 查询失败: {exc}") from exc
        return True

    def get_download_url(
        self,
        policy: StoragePolicyInfo,
        source: str,
        options: Optional[DownloadURLOptions] = None,
    ) -> str:
        options = options or DownloadURLOptions()
        if policy.is_private and not policy.settings.source_auth:
            params = {"Bucket": policy.bucket_name, "Key": source}
            for name, value in options.query_params.items():
                mapped = _RESPONSE_PARAMS.get(name.lower())
                if mapped:
                    params[mapped] = value
            try:
                return self.client(policy).generate_presigned_url(
                    "get_object", Params=params, ExpiresIn=options.effective_expires_in
                )
            except (ClientError, BotoCoreError) as exc:
                raise ProviderError(f"预签名 URL 生成失败: {exc}") from exc

        url = join_url(public_base_url(policy), source)
        url = apply_style(url, policy.settings.style_separator, options.image_process)
        return merge_query(url, options.query_params)

    def create_directory(self, policy: StoragePolicyInfo, virtual_path: str) -> None:
        prefix = build_object_prefix(policy.base_path, virtual_path, policy.virtual_path)
        if not prefix:
            return
        try:
            self.client(policy).put_object(Bucket=policy.bucket_name, Key=prefix, Body=b"")
        except (ClientError, BotoCoreError) as exc:
            raise ProviderError(f"S3 创建目录失败: {exc}") from exc

    def delete_directory(self, policy: StoragePolicyInfo, virtual_path: str) -> None:
        prefix = build_object_prefix(policy.base_path, virtual_path, policy.virtual_path)
        if not prefix:
            return
        try:
            self.client(policy).delete_object(Bucket=policy.bucket_name, Key=prefix)
        except (ClientError, BotoCoreError) as exc:
            raise ProviderError(f"S3 删除目录失败: {exc}") from exc

    def create_presigned_upload_url(
        self,
        policy: StoragePolicyInfo,
        virtual_path: str,
        expires_in: int,
    ) -> PresignedUpload:
        key = self._key(policy, virtual_path)
        mime_type = guess_mime(key)
        try:
            url = self.client(policy).generate_presigned_url(
                "put_object",
                Params={"Bucket": policy.bucket_name, "Key": key, "ContentType": mime_type},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as exc:
            raise ProviderError(f"预签名上传 URL 生成失败: {exc}") from exc
        return PresignedUpload(url=url, method="PUT", source=key, headers={"Content-Type": mime_type})

    def forget_client(self, policy_id: int) -> None:
        """策略删除后丢弃缓存的客户端。"""
        with self._lock:
            for cache_key in [k for k in self._clients if k[0] == policy_id]:
                self._clients.pop(cache_key, None)
