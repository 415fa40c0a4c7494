"""依赖注入模块：数据库会话、当前 owner 以及存储策略服务的组装。"""

from collections.abc import Generator
from functools import lru_cache
from typing import Optional

import httpx
from fastapi import Header
from sqlalchemy.orm import Session

from storage_vfs.packages.storage.core.cache import get_cache_service
from storage_vfs.packages.storage.core.config import get_settings
from storage_vfs.packages.storage.core.idgen import get_public_id_codec
from storage_vfs.packages.storage.db import session as db_session
from storage_vfs.packages.storage.db.transaction import transaction_manager
from storage_vfs.packages.storage.services.providers.registry import build_provider_registry
from storage_vfs.packages.storage.services.storage_policy_service import StoragePolicyService
from storage_vfs.packages.storage.services.strategy import StrategyManager
from storage_vfs.packages.storage.services.vfs_service import vfs_service

settings = get_settings()


def get_db() -> Generator[Session, None, None]:
    """生成一个数据库会话，并在请求结束后自动关闭。"""
    db = db_session.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_owner_id(x_user_id: Optional[int] = Header(default=None, alias="X-User-Id")) -> int:
    """认证由上游网关负责，这里只读取其透传的用户 ID。"""
    return x_user_id or settings.default_owner_id


@lru_cache
def get_provider_http_client() -> httpx.Client:
    return httpx.Client(timeout=settings.provider_timeout_seconds)


@lru_cache
def get_policy_service() -> StoragePolicyService:
    """进程内单例：共享 HTTP 连接池、缓存与适配器注册表。"""
    cache = get_cache_service()
    http_client = get_provider_http_client()
    registry, oauth = build_provider_registry(settings=settings, cache=cache, http_client=http_client)
    return StoragePolicyService(
        cache=cache,
        registry=registry,
        strategies=StrategyManager(registry, oauth),
        codec=get_public_id_codec(),
        vfs=vfs_service,
        tx=transaction_manager,
        cache_ttl_seconds=settings.policy_cache_ttl_seconds,
        default_owner_id=settings.default_owner_id,
    )


def close_provider_clients() -> None:
    """关闭共享的 HTTP 连接池，下次取用服务时重新组装。"""
    if get_provider_http_client.cache_info().currsize:
        get_provider_http_client().close()
    get_provider_http_client.cache_clear()
    get_policy_service.cache_clear()
