"""存储策略服务：策略的增删改查、挂载目录维护、缓存与 OneDrive 授权。"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from pydantic import TypeAdapter
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storage_vfs.packages.storage.core.cache import CacheService
from storage_vfs.packages.storage.core.constants import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    POLICY_CACHE_KEY_BY_ID,
    POLICY_CACHE_KEY_BY_PUBLIC_ID,
    POLICY_CACHE_KEY_LIST,
    ROOT_POLICY_ID,
    ROOT_VIRTUAL_PATH,
)
from storage_vfs.packages.storage.core.enums import EntityTypeEnum
from storage_vfs.packages.storage.core.exceptions import (
    FlagConflict,
    InvalidPolicySettings,
    InvalidVirtualPath,
    MountPointNotEmpty,
    PolicyNameConflict,
    PolicyNotFound,
    PolicyNotSupportAuth,
    PolicyOperationForbidden,
    ProviderError,
    VirtualPathConflict,
)
from storage_vfs.packages.storage.core.idgen import PublicIdCodec
from storage_vfs.packages.storage.core.logger import bind_policy, logger
from storage_vfs.packages.storage.crud.storage_policy import storage_policy_crud
from storage_vfs.packages.storage.db.transaction import Repositories, TransactionManager
from storage_vfs.packages.storage.models.storage_policy import StoragePolicy
from storage_vfs.packages.storage.services.policy_deletion import DeletionContext, PolicyDeletion
from storage_vfs.packages.storage.services.policy_settings import StoragePolicyInfo, dump_policy_settings
from storage_vfs.packages.storage.services.providers.base import StorageProvider
from storage_vfs.packages.storage.services.providers.registry import ProviderRegistry
from storage_vfs.packages.storage.services.strategy import StrategyManager
from storage_vfs.packages.storage.services.vfs_service import VfsService, split_virtual_path

_POLICY_LIST_ADAPTER = TypeAdapter(List[StoragePolicyInfo])

# 可直接写入策略行的字段，settings 单独处理
_COLUMN_FIELDS = (
    "name",
    "server",
    "bucket_name",
    "is_private",
    "access_key",
    "secret_key",
    "max_size",
    "base_path",
)

# 对外输出时隐藏的配置项
_HIDDEN_SETTINGS = {"refresh_token"}


class StoragePolicyService:
    def __init__(
        self,
        *,
        cache: CacheService,
        registry: ProviderRegistry,
        strategies: StrategyManager,
        codec: PublicIdCodec,
        vfs: VfsService,
        tx: TransactionManager,
        cache_ttl_seconds: int,
        default_owner_id: int = 1,
    ) -> None:
        self.cache = cache
        self.registry = registry
        self.strategies = strategies
        self.codec = codec
        self.vfs = vfs
        self.tx = tx
        self.cache_ttl_seconds = cache_ttl_seconds
        self.default_owner_id = default_owner_id
        self.deletion = PolicyDeletion(
            strategies=strategies,
            vfs=vfs,
            tx=tx,
            invalidate_cache=lambda policy: self._invalidate(policy.id),
        )

    # ------------------------------------------
    # 公共 ID
    # ------------------------------------------

    def encode_id(self, policy_id: int) -> str:
        return self.codec.encode(policy_id, EntityTypeEnum.STORAGE_POLICY)

    def decode_id(self, public_id: str) -> int:
        return self.codec.decode(public_id, EntityTypeEnum.STORAGE_POLICY)

    # ------------------------------------------
    # 查询
    # ------------------------------------------

    def get_policy_by_id(self, db: Session, public_id: str) -> StoragePolicyInfo:
        cached = self.cache.get(POLICY_CACHE_KEY_BY_PUBLIC_ID.format(public_id))
        if cached:
            return StoragePolicyInfo.model_validate_json(cached)
        return self.get_policy_by_database_id(db, self.decode_id(public_id))

    def get_policy_by_database_id(self, db: Session, policy_id: int) -> StoragePolicyInfo:
        cached = self.cache.get(POLICY_CACHE_KEY_BY_ID.format(policy_id))
        if cached:
            return StoragePolicyInfo.model_validate_json(cached)
        row = storage_policy_crud.get(db, policy_id)
        if row is None:
            raise PolicyNotFound()
        info = StoragePolicyInfo.model_validate(row)
        self._cache_policy(info)
        return info

    def list_all(self, db: Session) -> List[StoragePolicyInfo]:
        cached = self.cache.get(POLICY_CACHE_KEY_LIST)
        if cached:
            return _POLICY_LIST_ADAPTER.validate_json(cached)
        items = [StoragePolicyInfo.model_validate(row) for row in storage_policy_crud.list_all(db)]
        self.cache.set(POLICY_CACHE_KEY_LIST, _POLICY_LIST_ADAPTER.dump_json(items).decode("utf-8"), self.cache_ttl_seconds)
        return items

    def list_policies(
        self,
        db: Session,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Tuple[List[StoragePolicyInfo], int]:
        page = max(page, 1)
        if page_size <= 0:
            page_size = DEFAULT_PAGE_SIZE
        page_size = min(page_size, MAX_PAGE_SIZE)
        items = self.list_all(db)
        start = (page - 1) * page_size
        return items[start : start + page_size], len(items)

    def get_policy_by_flag(self, db: Session, flag: str) -> Optional[StoragePolicyInfo]:
        for policy in self.list_all(db):
            if policy.flag == flag:
                return policy
        return None

    def get_provider(self, policy: StoragePolicyInfo) -> StorageProvider:
        return self.registry.get(policy.type)

    # ------------------------------------------
    # 新增
    # ------------------------------------------

    def create_policy(self, db: Session, owner_id: Optional[int], payload: Dict[str, Any]) -> StoragePolicyInfo:
        owner_id = owner_id or self.default_owner_id
        policy_type = (payload.get("type") or "").strip().lower()
        strategy = self.strategies.get(policy_type)

        name = (payload.get("name") or "").strip()
        if not name:
            raise InvalidPolicySettings("存储策略名称不能为空")
        virtual_path = (payload.get("virtual_path") or "").strip()
        split_virtual_path(virtual_path)
        if virtual_path == ROOT_VIRTUAL_PATH:
            raise VirtualPathConflict("根路径保留给根存储策略")

        fields = {key: payload.get(key) for key in _COLUMN_FIELDS}
        fields["name"] = name
        strategy.validate_fields(fields)
        settings = strategy.validate_settings(payload.get("settings"))
        flag = (payload.get("flag") or "").strip() or None

        if storage_policy_crud.get_by_name(db, name) is not None:
            raise PolicyNameConflict()
        if storage_policy_crud.get_by_virtual_path(db, virtual_path) is not None:
            raise VirtualPathConflict()
        if flag and storage_policy_crud.get_by_flag(db, flag) is not None:
            raise FlagConflict()

        def work(repos: Repositories) -> int:
            policy = repos.policies.create(
                repos.db,
                {
                    **fields,
                    "type": policy_type,
                    "is_private": bool(fields.get("is_private")),
                    "max_size": int(fields.get("max_size") or 0),
                    "virtual_path": virtual_path,
                    "flag": flag,
                    "settings": dump_policy_settings(settings),
                },
                auto_commit=False,
            )
            node = self.vfs.ensure_path(repos.db, owner_id, virtual_path)
            policy.node_id = node.id
            repos.policies.save(repos.db, policy, auto_commit=False)
            return policy.id

        try:
            policy_id = self.tx.run(db, work)
        except IntegrityError as exc:
            raise VirtualPathConflict("存储策略名称或挂载路径已存在") from exc

        logger.info("Created storage policy %s (%s) mounted at %s", policy_id, name, virtual_path)
        return self._refresh(db, policy_id)

    # ------------------------------------------
    # 更新
    # ------------------------------------------

    def update_policy(self, db: Session, public_id: str, payload: Dict[str, Any]) -> StoragePolicyInfo:
        policy_id = self.decode_id(public_id)
        row = storage_policy_crud.get(db, policy_id)
        if row is None:
            raise PolicyNotFound()

        if "type" in payload and payload["type"] and payload["type"] != row.type:
            raise PolicyOperationForbidden("不允许修改存储策略类型")
        strategy = self.strategies.get(row.type)

        fields = {key: getattr(row, key) for key in _COLUMN_FIELDS}
        for key in _COLUMN_FIELDS:
            if key in payload and payload[key] is not None:
                fields[key] = payload[key]
        fields["name"] = (fields.get("name") or "").strip()
        if not fields["name"]:
            raise InvalidPolicySettings("存储策略名称不能为空")
        strategy.validate_fields(fields)

        settings_payload = None
        if payload.get("settings") is not None:
            # 局部更新 settings，未提交的键（例如授权得到的 refresh_token）保持不变
            merged = {**(row.settings or {}), **payload["settings"]}
            settings_payload = dump_policy_settings(strategy.validate_settings(merged))

        if fields["name"] != row.name:
            holder = storage_policy_crud.get_by_name(db, fields["name"])
            if holder is not None and holder.id != row.id:
                raise PolicyNameConflict()

        flag_changed = "flag" in payload and ((payload.get("flag") or "").strip() or None) != row.flag
        new_flag = ((payload.get("flag") or "").strip() or None) if flag_changed else row.flag
        previous_holder_id: Optional[int] = None
        if flag_changed and new_flag:
            holder = storage_policy_crud.get_by_flag(db, new_flag)
            if holder is not None and holder.id != row.id:
                previous_holder_id = holder.id

        new_path = (payload.get("virtual_path") or "").strip() or row.virtual_path
        path_changed = new_path != row.virtual_path
        if path_changed:
            self._check_relocation(db, row, new_path)

        def work(repos: Repositories) -> None:
            db_ = repos.db
            policy = repos.policies.get(db_, policy_id)
            if policy is None:
                raise PolicyNotFound()
            for key, value in fields.items():
                setattr(policy, key, value)
            policy.is_private = bool(policy.is_private)
            policy.max_size = int(policy.max_size or 0)
            if settings_payload is not None:
                policy.settings = settings_payload
            if flag_changed:
                if new_flag:
                    repos.policies.clear_flag(db_, new_flag, exclude_id=policy.id)
                policy.flag = new_flag
            if path_changed:
                node = repos.files.get(db_, policy.node_id, include_deleted=True) if policy.node_id else None
                if node is None:
                    node = self.vfs.ensure_path(db_, self._fallback_owner(repos), new_path)
                else:
                    node = self.vfs.relocate(db_, node, node.owner_id, new_path)
                policy.virtual_path = new_path
                policy.node_id = node.id
            repos.policies.save(db_, policy, auto_commit=False)

        try:
            self.tx.run(db, work)
        except IntegrityError as exc:
            raise VirtualPathConflict("存储策略名称或挂载路径已存在") from exc

        if previous_holder_id is not None:
            logger.info("Moved flag %s from policy %s to %s", new_flag, previous_holder_id, policy_id)
            self._invalidate(previous_holder_id)
            self._refresh(db, previous_holder_id)
        return self._refresh(db, policy_id)

    def _check_relocation(self, db: Session, row: StoragePolicy, new_path: str) -> None:
        if row.id == ROOT_POLICY_ID or row.virtual_path == ROOT_VIRTUAL_PATH:
            raise PolicyOperationForbidden("根存储策略的挂载路径不可修改")
        split_virtual_path(new_path)
        if new_path == ROOT_VIRTUAL_PATH:
            raise VirtualPathConflict("根路径保留给根存储策略")
        if new_path.startswith(row.virtual_path + "/"):
            raise InvalidVirtualPath("挂载目录不能迁移到自身的子目录下")
        holder = storage_policy_crud.get_by_virtual_path(db, new_path)
        if holder is not None and holder.id != row.id:
            raise VirtualPathConflict()
        if row.node_id and self.vfs.count_children(db, row.node_id) > 0:
            raise MountPointNotEmpty()

    def _fallback_owner(self, repos: Repositories) -> int:
        """挂载目录丢失时沿用根存储策略挂载目录的 owner。"""
        root = repos.policies.get(repos.db, ROOT_POLICY_ID)
        if root is not None and root.node_id:
            node = repos.files.get(repos.db, root.node_id, include_deleted=True)
            if node is not None:
                return node.owner_id
        return self.default_owner_id

    # ------------------------------------------
    # 删除
    # ------------------------------------------

    def delete_policy(self, db: Session, public_id: str) -> DeletionContext:
        policy_id = self.decode_id(public_id)
        row = storage_policy_crud.get(db, policy_id)
        if row is None:
            raise PolicyNotFound()
        return self.deletion.run(db, StoragePolicyInfo.model_validate(row))

    # ------------------------------------------
    # OneDrive 授权
    # ------------------------------------------

    def generate_auth_url(self, db: Session, public_id: str) -> str:
        policy = self.get_policy_by_id(db, public_id)
        handler = self.strategies.get(policy.type).get_auth_handler()
        if handler is None:
            raise PolicyNotSupportAuth()
        # state 携带策略公共 ID，回调时据此找回策略
        return handler.generate_auth_url(policy, state=self.encode_id(policy.id))

    def finalize_auth(self, db: Session, code: str, state: str) -> StoragePolicyInfo:
        policy = self.get_policy_by_id(db, state)
        handler = self.strategies.get(policy.type).get_auth_handler()
        if handler is None:
            raise PolicyNotSupportAuth()
        with bind_policy(policy.id):
            token = handler.exchange_code(policy, code)
        refresh_token = token.get("refresh_token")
        if not refresh_token:
            raise ProviderError("授权响应缺少 refresh_token，请确认申请了 offline_access 权限")

        def work(repos: Repositories) -> None:
            row = repos.policies.get(repos.db, policy.id)
            if row is None:
                raise PolicyNotFound()
            # JSON 列需要整体赋值才能被识别为变更
            row.settings = {**(row.settings or {}), "refresh_token": refresh_token}
            repos.policies.save(repos.db, row, auto_commit=False)

        self.tx.run(db, work)
        logger.info("OneDrive authorization completed for policy %s", policy.id)
        return self._refresh(db, policy.id)

    # ------------------------------------------
    # 序列化与缓存
    # ------------------------------------------

    def to_public_dict(self, policy: StoragePolicyInfo) -> Dict[str, Any]:
        settings = policy.settings.model_dump(exclude={"type"} | _HIDDEN_SETTINGS)
        return {
            "id": self.encode_id(policy.id),
            "name": policy.name,
            "type": policy.type,
            "server": policy.server,
            "bucket_name": policy.bucket_name,
            "is_private": policy.is_private,
            "access_key": policy.access_key,
            "max_size": policy.max_size,
            "base_path": policy.base_path,
            "virtual_path": policy.virtual_path,
            "flag": policy.flag,
            "settings": settings,
            "create_time": policy.create_time.isoformat() if policy.create_time else None,
            "update_time": policy.update_time.isoformat() if policy.update_time else None,
        }

    def _cache_policy(self, info: StoragePolicyInfo) -> None:
        payload = info.model_dump_json()
        self.cache.set(POLICY_CACHE_KEY_BY_ID.format(info.id), payload, self.cache_ttl_seconds)
        self.cache.set(POLICY_CACHE_KEY_BY_PUBLIC_ID.format(self.encode_id(info.id)), payload, self.cache_ttl_seconds)

    def _invalidate(self, policy_id: int) -> None:
        self.cache.delete(
            POLICY_CACHE_KEY_BY_ID.format(policy_id),
            POLICY_CACHE_KEY_BY_PUBLIC_ID.format(self.encode_id(policy_id)),
            POLICY_CACHE_KEY_LIST,
        )

    def _refresh(self, db: Session, policy_id: int) -> StoragePolicyInfo:
        """写操作提交后先失效缓存，再从数据库重新加载并回填。"""
        self._invalidate(policy_id)
        db.expire_all()
        info = self.get_policy_by_database_id(db, policy_id)
        self.list_all(db)
        return info
