"""OneDrive 存储适配器：通过 Microsoft Graph 接口读写文件。

应用凭据复用策略的 ``access_key``（client_id）与 ``secret_key``（client_secret），
授权完成后 refresh_token 保存在策略 ``settings`` 中，访问令牌缓存在缓存服务里。
"""

from __future__ import annotations

import io
import posixpath
import shutil
import tempfile
from datetime import datetime
from typing import Any, BinaryIO, Iterable, List, Optional
from urllib.parse import quote, urlencode

import httpx

from storage_vfs.packages.storage.core.cache import CacheService
from storage_vfs.packages.storage.core.config import Settings
from storage_vfs.packages.storage.core.constants import ONEDRIVE_TOKEN_CACHE_KEY
from storage_vfs.packages.storage.core.enums import PolicyTypeEnum
from storage_vfs.packages.storage.core.exceptions import (
    FileTooLarge,
    InvalidPolicySettings,
    ObjectNotFound,
    ProviderError,
)
from storage_vfs.packages.storage.core.logger import provider_logger as logger
from storage_vfs.packages.storage.services.policy_settings import StoragePolicyInfo
from storage_vfs.packages.storage.services.providers.base import (
    STREAM_CHUNK_SIZE,
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
    build_object_key,
    build_object_prefix,
    ensure_scheme,
    join_url,
    merge_query,
)

# Graph 简单上传接口的大小上限
SIMPLE_UPLOAD_LIMIT = 4 * 1024 * 1024
# 分片上传要求分片大小为 320 KiB 的整数倍
UPLOAD_CHUNK_ALIGN = 320 * 1024
DOWNLOAD_URL_FIELD = "@microsoft.graph.downloadUrl"


class OneDriveOAuthClient:
    """OneDrive 授权处理：生成授权链接、用授权码换取令牌、刷新访问令牌。"""

    def __init__(self, *, http_client: httpx.Client, cache: CacheService, settings: Settings) -> None:
        self.http_client = http_client
        self.cache = cache
        self.settings = settings

    def redirect_uri(self, policy: StoragePolicyInfo) -> str:
        return policy.settings.redirect_uri or self.settings.onedrive_redirect_uri

    def generate_auth_url(self, policy: StoragePolicyInfo, state: str) -> str:
        if not policy.access_key:
            raise InvalidPolicySettings("OneDrive 策略缺少 client_id（access_key）")
        query = urlencode(
            {
                "client_id": policy.access_key,
                "response_type": "code",
                "redirect_uri": self.redirect_uri(policy),
                "response_mode": "query",
                "scope": self.settings.onedrive_scopes,
                "state": state,
            }
        )
        return f"{self.settings.onedrive_authorize_url}?{query}"

    def exchange_code(self, policy: StoragePolicyInfo, code: str) -> dict[str, Any]:
        """用授权码换取令牌，返回包含 refresh_token 的令牌响应。"""
        token = self._request_token(
            policy,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri(policy),
            },
        )
        self._cache_access_token(policy.id, token)
        return token

    def get_access_token(self, policy: StoragePolicyInfo) -> str:
        cached = self.cache.get(ONEDRIVE_TOKEN_CACHE_KEY.format(policy.id))
        if cached:
            return cached
        refresh_token = policy.settings.refresh_token
        if not refresh_token:
            raise ProviderError("OneDrive 策略尚未完成授权")
        token = self._request_token(policy, {"grant_type": "refresh_token", "refresh_token": refresh_token})
        self._cache_access_token(policy.id, token)
        return token["access_token"]

    def purge(self, policy_id: int) -> None:
        self.cache.delete(ONEDRIVE_TOKEN_CACHE_KEY.format(policy_id))

    def _request_token(self, policy: StoragePolicyInfo, payload: dict[str, str]) -> dict[str, Any]:
        data = {
            "client_id": policy.access_key or "",
            "client_secret": policy.secret_key or "",
            "scope": self.settings.onedrive_scopes,
            **payload,
        }
        try:
            response = self.http_client.post(self.settings.onedrive_token_url, data=data)
        except httpx.HTTPError as exc:
            raise ProviderError(f"OneDrive 令牌请求失败: {exc}") from exc
        if response.status_code >= 400:
            raise ProviderError(f"OneDrive 令牌请求失败: HTTP {response.status_code} {response.text}")
        token = response.json()
        if "access_token" not in token:
            raise ProviderError("OneDrive 令牌响应缺少 access_token")
        return token

    def _cache_access_token(self, policy_id: int, token: dict[str, Any]) -> None:
        # 提前一分钟过期，避免临界时刻使用失效令牌
        ttl = max(int(token.get("expires_in") or 3600) - 60, 60)
        self.cache.set(ONEDRIVE_TOKEN_CACHE_KEY.format(policy_id), token["access_token"], ttl)


class OneDriveStorageProvider(StorageProvider):
    type = PolicyTypeEnum.ONEDRIVE.value

    def __init__(self, *, http_client: httpx.Client, oauth: OneDriveOAuthClient, graph_url: str) -> None:
        self.http_client = http_client
        self.oauth = oauth
        self.graph_url = graph_url.rstrip("/")

    # ------------------------------------------
    # Graph 请求辅助
    # ------------------------------------------

    def _drive(self, policy: StoragePolicyInfo) -> str:
        if policy.settings.drive_id:
            return f"{self.graph_url}/drives/{policy.settings.drive_id}"
        return f"{self.graph_url}/me/drive"

    def _drive_path(self, policy: StoragePolicyInfo) -> str:
        """``parentReference.path`` 使用的驱动器相对路径。"""
        if policy.settings.drive_id:
            return f"/drives/{policy.settings.drive_id}/root:"
        return "/drive/root:"

    def _item(self, policy: StoragePolicyInfo, key: str) -> str:
        key = key.strip("/")
        if not key:
            return f"{self._drive(policy)}/root"
        return f"{self._drive(policy)}/root:/{quote(key, safe='/')}:"

    def _request(self, policy: StoragePolicyInfo, method: str, url: str, **kwargs) -> httpx.Response:
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {self.oauth.get_access_token(policy)}"
        try:
            response = self.http_client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(f"OneDrive 请求失败: {exc}") from exc
        if response.status_code == 401:
            # 令牌可能已被吊销，丢弃缓存以便下次重新刷新
            self.oauth.purge(policy.id)
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str, target: str) -> None:
        if response.status_code == 404:
            raise ObjectNotFound(f"对象不存在: {target}")
        if response.status_code >= 400:
            raise ProviderError(f"OneDrive {action}失败: HTTP {response.status_code}")

    def _key(self, policy: StoragePolicyInfo, virtual_path: str) -> str:
        return build_object_key(policy.base_path, virtual_path, policy.virtual_path)

    # ------------------------------------------
    # 适配器接口
    # ------------------------------------------

    def upload(self, reader: BinaryIO, policy: StoragePolicyInfo, virtual_path: str) -> UploadResult:
        check_upload_allowed(policy, virtual_path, reader)
        key = self._key(policy, virtual_path)
        mime_type = guess_mime(key)
        with tempfile.SpooledTemporaryFile(max_size=SIMPLE_UPLOAD_LIMIT) as spool:
            # 分片上传需要预先知道总大小，先落到临时文件
            shutil.copyfileobj(reader, spool, STREAM_CHUNK_SIZE)
            size = spool.tell()
            if policy.max_size and size > policy.max_size:
                raise FileTooLarge()
            spool.seek(0)
            if size <= SIMPLE_UPLOAD_LIMIT:
                response = self._request(
                    policy,
                    "PUT",
                    f"{self._item(policy, key)}/content",
                    content=spool.read(),
                    headers={"Content-Type": mime_type},
                )
                self._raise_for_status(response, "上传", key)
            else:
                self._upload_in_chunks(policy, key, spool, size)
        return UploadResult(source=key, size=size, mime_type=mime_type)

    def _create_upload_session(self, policy: StoragePolicyInfo, key: str) -> str:
        response = self._request(
            policy,
            "POST",
            f"{self._item(policy, key)}/createUploadSession",
            json={"item": {"@microsoft.graph.conflictBehavior": "replace"}},
        )
        self._raise_for_status(response, "创建上传会话", key)
        return response.json()["uploadUrl"]

    def _upload_in_chunks(self, policy: StoragePolicyInfo, key: str, spool, size: int) -> None:
        upload_url = self._create_upload_session(policy, key)
        chunk_size = max(policy.settings.chunk_size // UPLOAD_CHUNK_ALIGN, 1) * UPLOAD_CHUNK_ALIGN
        offset = 0
        while offset < size:
            chunk = spool.read(chunk_size)
            end = offset + len(chunk) - 1
            try:
                # 上传会话 URL 自带鉴权，不能附加 Authorization 头
                response = self.http_client.put(
                    upload_url,
                    content=chunk,
                    headers={"Content-Range": f"bytes {offset}-{end}/{size}", "Content-Length": str(len(chunk))},
                )
            except httpx.HTTPError as exc:
                raise ProviderError(f"OneDrive 分片上传失败: {exc}") from exc
            if response.status_code >= 400:
                raise ProviderError(f"OneDrive 分片上传失败: HTTP {response.status_code}")
            offset = end + 1

    def get(self, policy: StoragePolicyInfo, source: str) -> BinaryIO:
        response = self._request(policy, "GET", f"{self._item(policy, source)}/content", follow_redirects=True)
        self._raise_for_status(response, "下载", source)
        return io.BytesIO(response.content)

    def list(self, policy: StoragePolicyInfo, virtual_path: str) -> List[FileInfo]:
        prefix = build_object_prefix(policy.base_path, virtual_path, policy.virtual_path)
        url: Optional[str] = f"{self._item(policy, prefix)}/children"
        items: list[FileInfo] = []
        while url:
            response = self._request(policy, "GET", url)
            if response.status_code == 404:
                return []
            self._raise_for_status(response, "列举", prefix)
            payload = response.json()
            for entry in payload.get("value", []):
                items.append(
                    FileInfo(
                        name=entry.get("name", ""),
                        size=int(entry.get("size") or 0) if "folder" not in entry else 0,
                        mod_time=_parse_time(entry.get("lastModifiedDateTime")),
                        is_dir="folder" in entry,
                    )
                )
            url = payload.get("@odata.nextLink")
        return items

    def delete(self, policy: StoragePolicyInfo, sources: Iterable[str]) -> None:
        for source in sources:
            if not source:
                continue
            response = self._request(policy, "DELETE", self._item(policy, source))
            if response.status_code == 404:
                continue
            self._raise_for_status(response, "删除", source)

    def rename(self, policy: StoragePolicyInfo, old_virtual_path: str, new_virtual_path: str) -> None:
        src_key = self._key(policy, old_virtual_path)
        dst_key = self._key(policy, new_virtual_path)
        parent, name = posixpath.split(dst_key)
        if parent:
            self._ensure_folders(policy, parent)
        parent_path = f"{self._drive_path(policy)}/{parent}" if parent else self._drive_path(policy)
        # OneDrive 原生支持移动，无需复制再删除
        response = self._request(
            policy,
            "PATCH",
            self._item(policy, src_key),
            json={"name": name, "parentReference": {"path": parent_path}},
        )
        self._raise_for_status(response, "移动", src_key)

    def exists(self, policy: StoragePolicyInfo, source: str) -> bool:
        response = self._request(policy, "GET", self._item(policy, source))
        if response.status_code == 404:
            return False
        self._raise_for_status(response, "查询", source)
        return True

    def _download_url(self, policy: StoragePolicyInfo, source: str) -> str:
        response = self._request(policy, "GET", self._item(policy, source))
        self._raise_for_status(response, "获取下载链接", source)
        url = response.json().get(DOWNLOAD_URL_FIELD)
        if not url:
            raise ProviderError(f"OneDrive 未返回下载链接: {source}")
        return url

    def get_download_url(
        self,
        policy: StoragePolicyInfo,
        source: str,
        options: Optional[DownloadURLOptions] = None,
    ) -> str:
        options = options or DownloadURLOptions()
        cdn = ensure_scheme(policy.settings.cdn_domain)
        if cdn and (not policy.is_private or policy.settings.source_auth):
            return merge_query(join_url(cdn, source), options.query_params)
        # Graph 返回的预授权链接本身就是短时有效的签名地址
        return merge_query(self._download_url(policy, source), options.query_params)

    def create_directory(self, policy: StoragePolicyInfo, virtual_path: str) -> None:
        prefix = build_object_prefix(policy.base_path, virtual_path, policy.virtual_path)
        if prefix:
            self._ensure_folders(policy, prefix.rstrip("/"))

    def _ensure_folders(self, policy: StoragePolicyInfo, path: str) -> None:
        parent = ""
        for segment in [s for s in path.split("/") if s]:
            response = self._request(
                policy,
                "POST",
                f"{self._item(policy, parent)}/children",
                json={"name": segment, "folder": {}, "@microsoft.graph.conflictBehavior": "fail"},
            )
            # 409 表示目录已存在
            if response.status_code != 409:
                self._raise_for_status(response, "创建目录", segment)
            parent = f"{parent}/{segment}" if parent else segment

    def delete_directory(self, policy: StoragePolicyInfo, virtual_path: str) -> None:
        prefix = build_object_prefix(policy.base_path, virtual_path, policy.virtual_path)
        if not prefix:
            return
        response = self._request(policy, "DELETE", self._item(policy, prefix))
        if response.status_code != 404:
            self._raise_for_status(response, "删除目录", prefix)

    def get_thumbnail(self, policy: StoragePolicyInfo, source: str, size: str) -> ThumbnailResult:
        width, height = parse_thumbnail_size(size)
        response = self._request(
            policy,
            "GET",
            f"{self._item(policy, source)}/thumbnails/0/c{width}x{height}",
        )
        if response.status_code < 400:
            url = response.json().get("url")
            if url:
                result = fetch_processed_image(self.http_client, url)
                if result is not None:
                    return result
        elif response.status_code not in {401, 403, 404}:
            raise ProviderError(f"OneDrive 缩略图获取失败: HTTP {response.status_code}")
        logger.info("OneDrive thumbnail unavailable for %s, falling back to raw download", source)
        return ThumbnailResult(content_type=guess_mime(source), data=read_all(self.get(policy, source)))

    def create_presigned_upload_url(
        self,
        policy: StoragePolicyInfo,
        virtual_path: str,
        expires_in: int,
    ) -> PresignedUpload:
        key = self._key(policy, virtual_path)
        return PresignedUpload(url=self._create_upload_session(policy, key), method="PUT", source=key)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
