"""存储适配器注册表：按策略类型取得对应的适配器实例。"""

from __future__ import annotations

from typing import Dict, Optional

import httpx

from storage_vfs.packages.storage.core.cache import CacheService
from storage_vfs.packages.storage.core.config import Settings
from storage_vfs.packages.storage.core.exceptions import InvalidPolicyType
from storage_vfs.packages.storage.services.providers.base import StorageProvider
from storage_vfs.packages.storage.services.providers.cos import COSStorageProvider
from storage_vfs.packages.storage.services.providers.local import LocalStorageProvider
from storage_vfs.packages.storage.services.providers.onedrive import OneDriveOAuthClient, OneDriveStorageProvider
from storage_vfs.packages.storage.services.providers.oss import OSSStorageProvider
from storage_vfs.packages.storage.services.providers.s3 import S3StorageProvider


class ProviderRegistry:
    def __init__(self, providers: Optional[Dict[str, StorageProvider]] = None) -> None:
        self._providers: Dict[str, StorageProvider] = dict(providers or {})

    def register(self, provider: StorageProvider) -> None:
        self._providers[provider.type] = provider

    def get(self, policy_type: str) -> StorageProvider:
        provider = self._providers.get(policy_type)
        if provider is None:
            raise InvalidPolicyType(f"不支持的存储策略类型: {policy_type}")
        return provider

    def forget_policy(self, policy_id: int) -> None:
        """策略删除后释放各适配器为其缓存的客户端。"""
        for provider in self._providers.values():
            forget = getattr(provider, "forget_client", None)
            if forget is not None:
                forget(policy_id)


def build_provider_registry(
    *,
    settings: Settings,
    cache: CacheService,
    http_client: httpx.Client,
) -> tuple[ProviderRegistry, OneDriveOAuthClient]:
    """组装全部内置适配器，返回注册表以及 OneDrive 授权客户端。"""
    oauth = OneDriveOAuthClient(http_client=http_client, cache=cache, settings=settings)
    timeout = settings.provider_timeout_seconds
    registry = ProviderRegistry()
    registry.register(
        LocalStorageProvider(
            settings.local_storage_path,
            settings.local_public_base_url,
            settings.local_signing_secret,
        )
    )
    registry.register(S3StorageProvider(timeout=timeout))
    registry.register(OSSStorageProvider(http_client=http_client, timeout=timeout))
    registry.register(COSStorageProvider(http_client=http_client, timeout=timeout))
    registry.register(OneDriveStorageProvider(http_client=http_client, oauth=oauth, graph_url=settings.onedrive_graph_url))
    return registry, oauth
