"""本地磁盘存储适配器。"""

from __future__ import annotations

import base64
import hashlib
import hmac
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Iterable, List, Optional

from storage_vfs.packages.storage.core.enums import PolicyTypeEnum
from storage_vfs.packages.storage.core.exceptions import InvalidVirtualPath, ObjectNotFound, ProviderError
from storage_vfs.packages.storage.core.logger import provider_logger as logger
from storage_vfs.packages.storage.services.policy_settings import StoragePolicyInfo
from storage_vfs.packages.storage.services.providers.base import (
    CountingReader,
    DownloadURLOptions,
    FileInfo,
    StorageProvider,
    UploadResult,
    check_upload_allowed,
    guess_mime,
)
from storage_vfs.packages.storage.services.providers.keys import (
    build_object_key,
    build_object_prefix,
    ensure_scheme,
    join_url,
    merge_query,
)


def sign_local_source(secret: str, source: str, expires: int) -> str:
    digest = hmac.new(secret.encode("utf-8"), f"{source}:{expires}".encode("utf-8"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def verify_local_signature(
    secret: str,
    source: str,
    expires: int,
    sign: str,
    *,
    now: Optional[int] = None,
) -> bool:
    """校验本地私有下载链接的签名与有效期。"""
    current = int(time.time()) if now is None else now
    if expires < current:
        return False
    expected = sign_local_source(secret, source, expires)
    return hmac.compare_digest(expected, sign or "")


class LocalStorageProvider(StorageProvider):
    type = PolicyTypeEnum.LOCAL.value

    def __init__(self, root: Path, public_base_url: str, signing_secret: str) -> None:
        self.root = Path(root).resolve()
        self.public_base_url = public_base_url.rstrip("/")
        self.signing_secret = signing_secret

    # 统一的安全路径拼接，防止路径遍历
    def _resolve(self, key: str) -> Path:
        candidate = (self.root / key.lstrip("/")).resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError as exc:
            raise InvalidVirtualPath("非法路径: 越权访问") from exc
        return candidate

    def _key(self, policy: StoragePolicyInfo, virtual_path: str) -> str:
        return build_object_key(policy.base_path, virtual_path, policy.virtual_path)

    def upload(self, reader: BinaryIO, policy: StoragePolicyInfo, virtual_path: str) -> UploadResult:
        check_upload_allowed(policy, virtual_path, reader)
        key = self._key(policy, virtual_path)
        target = self._resolve(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        counter = CountingReader(reader, policy.max_size)
        try:
            with open(target, "wb") as fh:
                shutil.copyfileobj(counter, fh)
        except Exception:
            target.unlink(missing_ok=True)
            raise
        return UploadResult(source=key, size=counter.bytes_read, mime_type=guess_mime(key))

    def get(self, policy: StoragePolicyInfo, source: str) -> BinaryIO:
        target = self._resolve(source)
        if not target.is_file():
            raise ObjectNotFound(f"文件不存在: {source}")
        return open(target, "rb")

    def list(self, policy: StoragePolicyInfo, virtual_path: str) -> List[FileInfo]:
        prefix = build_object_prefix(policy.base_path, virtual_path, policy.virtual_path)
        base = self._resolve(prefix)
        if not base.is_dir():
            return []
        items: list[FileInfo] = []
        for entry in sorted(base.iterdir(), key=lambda p: (p.is_file(), p.name.lower())):
            stat = entry.stat()
            items.append(
                FileInfo(
                    name=entry.name,
                    size=0 if entry.is_dir() else int(stat.st_size),
                    mod_time=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    is_dir=entry.is_dir(),
                )
            )
        return items

    def delete(self, policy: StoragePolicyInfo, sources: Iterable[str]) -> None:
        for source in sources:
            target = self._resolve(source)
            # 不存在则忽略，保证幂等
            if target.is_dir():
                shutil.rmtree(target)
            elif target.exists():
                target.unlink()

    def rename(self, policy: StoragePolicyInfo, old_virtual_path: str, new_virtual_path: str) -> None:
        src = self._resolve(self._key(policy, old_virtual_path))
        dst = self._resolve(self._key(policy, new_virtual_path))
        if not src.exists():
            raise ObjectNotFound(f"源路径不存在: {old_virtual_path}")
        dst.parent.mkdir(parents=True, exist_ok=True)
        try:
            src.rename(dst)
        except OSError as exc:
            raise ProviderError(f"重命名失败: {exc}") from exc

    def exists(self, policy: StoragePolicyInfo, source: str) -> bool:
        return self._resolve(source).exists()

    def get_download_url(
        self,
        policy: StoragePolicyInfo,
        source: str,
        options: Optional[DownloadURLOptions] = None,
    ) -> str:
        options = options or DownloadURLOptions()
        if policy.is_private and not policy.settings.source_auth:
            expires = int(time.time()) + options.effective_expires_in
            url = join_url(self.public_base_url, source)
            signed = {"expires": str(expires), "sign": sign_local_source(self.signing_secret, source, expires)}
            return merge_query(merge_query(url, signed), options.query_params)

        base = ensure_scheme(policy.settings.cdn_domain) or self.public_base_url
        return merge_query(join_url(base, source), options.query_params)

    def create_directory(self, policy: StoragePolicyInfo, virtual_path: str) -> None:
        prefix = build_object_prefix(policy.base_path, virtual_path, policy.virtual_path)
        self._resolve(prefix).mkdir(parents=True, exist_ok=True)

    def delete_directory(self, policy: StoragePolicyInfo, virtual_path: str) -> None:
        prefix = build_object_prefix(policy.base_path, virtual_path, policy.virtual_path)
        target = self._resolve(prefix)
        if target == self.root:
            logger.warning("Refusing to delete local storage root for policy %s", policy.id)
            return
        if target.is_dir():
            shutil.rmtree(target)
