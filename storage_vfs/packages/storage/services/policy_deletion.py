"""存储策略删除编排：按固定阶段推进的状态机。

阶段顺序::

    VALIDATE -> COLLECT_ENTITIES -> COLLECT_FILES_LEAF_FIRST -> DELETE_LINKS
    -> DELETE_ENTITIES -> DELETE_FILES_REVERSE_ORDER -> PROVIDER_PRE_DELETE_HOOK
    -> DELETE_POLICY_ROW -> INVALIDATE_CACHE -> PURGE_CREDENTIALS

从 COLLECT_ENTITIES 到 DELETE_POLICY_ROW 在同一个事务内执行，任一阶段失败整体回滚；
事务提交即视为删除成功，之后的缓存失效与凭据清理只记录日志，不影响结果。
后端中的物理对象不会被删除。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List

from sqlalchemy.orm import Session

from storage_vfs.packages.storage.core.constants import ROOT_POLICY_ID, ROOT_VIRTUAL_PATH
from storage_vfs.packages.storage.core.enums import FileTypeEnum
from storage_vfs.packages.storage.core.exceptions import PolicyNotFound, PolicyOperationForbidden
from storage_vfs.packages.storage.core.logger import bind_policy, logger
from storage_vfs.packages.storage.db.transaction import Repositories, TransactionManager
from storage_vfs.packages.storage.models.file import File
from storage_vfs.packages.storage.services.policy_settings import StoragePolicyInfo
from storage_vfs.packages.storage.services.strategy import StrategyManager
from storage_vfs.packages.storage.services.vfs_service import VfsService


class DeletionStage(str, Enum):
    VALIDATE = "validate"
    COLLECT_ENTITIES = "collect_entities"
    COLLECT_FILES_LEAF_FIRST = "collect_files_leaf_first"
    DELETE_LINKS = "delete_links"
    DELETE_ENTITIES = "delete_entities"
    DELETE_FILES_REVERSE_ORDER = "delete_files_reverse_order"
    PROVIDER_PRE_DELETE_HOOK = "provider_pre_delete_hook"
    DELETE_POLICY_ROW = "delete_policy_row"
    INVALIDATE_CACHE = "invalidate_cache"
    PURGE_CREDENTIALS = "purge_credentials"
    DONE = "done"


@dataclass
class DeletionContext:
    policy: StoragePolicyInfo
    stage: DeletionStage = DeletionStage.VALIDATE
    entity_ids: List[int] = field(default_factory=list)
    files: List[File] = field(default_factory=list)
    deleted_links: int = 0
    deleted_entities: int = 0
    deleted_files: int = 0

    def summary(self) -> dict:
        return {
            "entities": self.deleted_entities,
            "files": self.deleted_files,
            "links": self.deleted_links,
        }


class PolicyDeletion:
    def __init__(
        self,
        *,
        strategies: StrategyManager,
        vfs: VfsService,
        tx: TransactionManager,
        invalidate_cache: Callable[[StoragePolicyInfo], None],
    ) -> None:
        self.strategies = strategies
        self.vfs = vfs
        self.tx = tx
        self.invalidate_cache = invalidate_cache

    def run(self, db: Session, policy: StoragePolicyInfo) -> DeletionContext:
        with bind_policy(policy.id):
            return self._run(db, policy)

    def _run(self, db: Session, policy: StoragePolicyInfo) -> DeletionContext:
        ctx = DeletionContext(policy=policy)
        self._validate(ctx)
        self.tx.run(db, lambda repos: self._transactional_stages(repos, ctx))
        logger.info("Deleted storage policy %s (%s): %s", policy.id, policy.name, ctx.summary())

        self._enter(ctx, DeletionStage.INVALIDATE_CACHE)
        try:
            self.invalidate_cache(policy)
        except Exception:
            logger.warning("Failed to invalidate cache for deleted policy %s", policy.id, exc_info=True)

        self._enter(ctx, DeletionStage.PURGE_CREDENTIALS)
        try:
            self.strategies.get(policy.type).purge_credentials(policy)
        except Exception:
            logger.warning("Failed to purge credentials for deleted policy %s", policy.id, exc_info=True)

        self._enter(ctx, DeletionStage.DONE)
        return ctx

    @staticmethod
    def _enter(ctx: DeletionContext, stage: DeletionStage) -> None:
        ctx.stage = stage
        logger.debug("Policy %s deletion stage: %s", ctx.policy.id, stage.value)

    def _validate(self, ctx: DeletionContext) -> None:
        self._enter(ctx, DeletionStage.VALIDATE)
        policy = ctx.policy
        if policy.id == ROOT_POLICY_ID or policy.virtual_path == ROOT_VIRTUAL_PATH:
            raise PolicyOperationForbidden("根存储策略不允许删除")
        if policy.flag:
            raise PolicyOperationForbidden(f"系统存储策略（{policy.flag}）不允许删除")
        # 确认类型仍受支持，钩子阶段需要用到
        self.strategies.get(policy.type)

    def _transactional_stages(self, repos: Repositories, ctx: DeletionContext) -> None:
        db = repos.db
        policy = ctx.policy

        self._enter(ctx, DeletionStage.COLLECT_ENTITIES)
        ctx.entity_ids = [entity.id for entity in repos.entities.list_by_policy(db, policy.id)]

        self._enter(ctx, DeletionStage.COLLECT_FILES_LEAF_FIRST)
        ctx.files = self._collect_files(repos, ctx)

        self._enter(ctx, DeletionStage.DELETE_LINKS)
        file_ids = [node.id for node in ctx.files]
        ctx.deleted_links = repos.file_entities.delete_by_entity_ids(db, ctx.entity_ids)
        ctx.deleted_links += repos.file_entities.delete_by_file_ids(db, file_ids)

        self._enter(ctx, DeletionStage.DELETE_ENTITIES)
        ctx.deleted_entities = repos.entities.delete_by_ids(db, ctx.entity_ids)

        self._enter(ctx, DeletionStage.DELETE_FILES_REVERSE_ORDER)
        doomed = set(file_ids)
        for node in ctx.files:
            if node.parent_id is not None and node.parent_id not in doomed:
                # 子树之外的父目录需要同步子节点计数
                self.vfs.remove_node(db, node)
            else:
                repos.files.hard_delete(db, node, auto_commit=False)
            ctx.deleted_files += 1

        self._enter(ctx, DeletionStage.PROVIDER_PRE_DELETE_HOOK)
        self.strategies.get(policy.type).before_delete(policy)

        self._enter(ctx, DeletionStage.DELETE_POLICY_ROW)
        row = repos.policies.get(db, policy.id)
        if row is None:
            raise PolicyNotFound()
        repos.policies.hard_delete(db, row, auto_commit=False)

    def _collect_files(self, repos: Repositories, ctx: DeletionContext) -> List[File]:
        """先收集引用本策略实体的文件，再收集挂载目录子树，整体保持子节点在前。"""
        db = repos.db
        ordered: list[File] = []
        seen: set[int] = set()

        subtree = self.vfs.collect_subtree_leaf_first(db, ctx.policy.node_id) if ctx.policy.node_id else []
        subtree_ids = {node.id for node in subtree}

        linked_file_ids = {link.file_id for link in repos.file_entities.list_by_entity_ids(db, ctx.entity_ids)}
        referencing = repos.files.list_by_entity_ids(db, ctx.entity_ids, include_deleted=True)
        for node in referencing:
            linked_file_ids.add(node.id)
        for file_id in sorted(linked_file_ids - subtree_ids):
            node = repos.files.get(db, file_id, include_deleted=True)
            # 子树外引用了本策略实体的目录节点不删除，只删除文件
            if node is not None and node.type == FileTypeEnum.FILE.value and node.id not in seen:
                ordered.append(node)
                seen.add(node.id)

        for node in subtree:
            if node.id not in seen:
                ordered.append(node)
                seen.add(node.id)
        return ordered
