"""目录树映射服务：维护按 owner 隔离的虚拟目录结构。

所有方法都在调用方的事务内执行，只 flush 不提交。
目录的幂等创建依赖 ``(owner_id, parent_id, name)`` 唯一约束：并发插入冲突时
在 SAVEPOINT 内回滚，再读取胜出方创建的目录。
"""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storage_vfs.packages.storage.core.enums import FileTypeEnum
from storage_vfs.packages.storage.core.exceptions import InvalidVirtualPath, VfsConflict
from storage_vfs.packages.storage.core.logger import logger
from storage_vfs.packages.storage.crud.entity import file_entity_crud
from storage_vfs.packages.storage.crud.file import file_crud
from storage_vfs.packages.storage.models.file import File


def split_virtual_path(virtual_path: str) -> List[str]:
    """校验并拆分挂载路径，``/`` 返回空列表。"""
    if not virtual_path or not virtual_path.startswith("/"):
        raise InvalidVirtualPath("挂载路径必须以 / 开头")
    if virtual_path == "/":
        return []
    if virtual_path.endswith("/"):
        raise InvalidVirtualPath("挂载路径不能以 / 结尾")
    segments = virtual_path[1:].split("/")
    for segment in segments:
        if segment in {"", ".", ".."}:
            raise InvalidVirtualPath(f"挂载路径包含非法片段: {virtual_path}")
    return segments


class VfsService:
    def get_or_create_root(self, db: Session, owner_id: int) -> File:
        root = file_crud.get_root(db, owner_id)
        if root is not None:
            return root
        root = File(owner_id=owner_id, parent_id=None, name="", type=FileTypeEnum.DIR.value, size=0, children_count=0)
        db.add(root)
        db.flush()
        logger.info("Created VFS root %s for owner %s", root.id, owner_id)
        return root

    def find_or_create_directory(self, db: Session, parent_id: int, name: str, owner_id: int) -> File:
        existing = file_crud.get_child(db, owner_id=owner_id, parent_id=parent_id, name=name, include_deleted=True)
        if existing is not None:
            return self._reuse_directory(db, existing)

        node = File(owner_id=owner_id, parent_id=parent_id, name=name, type=FileTypeEnum.DIR.value, size=0, children_count=0)
        try:
            with db.begin_nested():
                db.add(node)
                db.flush()
        except IntegrityError:
            # 并发创建时唯一约束冲突，读取已存在的同名目录
            winner = file_crud.get_child(db, owner_id=owner_id, parent_id=parent_id, name=name, include_deleted=True)
            if winner is None:
                raise
            return self._reuse_directory(db, winner)

        self._adjust_children(db, parent_id, 1)
        return node

    def _reuse_directory(self, db: Session, node: File) -> File:
        if node.type != FileTypeEnum.DIR.value:
            raise VfsConflict(f"目录树中已存在同名文件: {node.name}")
        if node.is_deleted:
            node.is_deleted = False
            db.add(node)
            db.flush()
            self._adjust_children(db, node.parent_id, 1)
        return node

    def ensure_path(self, db: Session, owner_id: int, virtual_path: str) -> File:
        """逐级查找或创建目录，返回最深一级目录。"""
        node = self.get_or_create_root(db, owner_id)
        for segment in split_virtual_path(virtual_path):
            node = self.find_or_create_directory(db, node.id, segment, owner_id)
        return node

    def resolve_path(self, db: Session, owner_id: int, virtual_path: str) -> Optional[File]:
        node = file_crud.get_root(db, owner_id)
        for segment in split_virtual_path(virtual_path):
            if node is None:
                return None
            node = file_crud.get_child(db, owner_id=owner_id, parent_id=node.id, name=segment)
        return node

    def build_path(self, db: Session, node: File) -> str:
        segments: list[str] = []
        current: Optional[File] = node
        while current is not None and current.parent_id is not None:
            segments.append(current.name)
            current = file_crud.get(db, current.parent_id, include_deleted=True)
        return "/" + "/".join(reversed(segments))

    def count_children(self, db: Session, node_id: int) -> int:
        return file_crud.count_children(db, node_id)

    def relocate(self, db: Session, node: File, owner_id: int, new_virtual_path: str) -> File:
        """把挂载目录迁移到新路径。目标位置已有同名目录时直接复用，并删除旧目录。"""
        segments = split_virtual_path(new_virtual_path)
        if not segments:
            raise InvalidVirtualPath("不能迁移到根目录")
        parent = self.ensure_path(db, owner_id, "/" + "/".join(segments[:-1]) if len(segments) > 1 else "/")
        if self._is_within(db, parent, node.id):
            raise VfsConflict("不能把目录迁移到自身或其子目录下")
        name = segments[-1]

        target = file_crud.get_child(db, owner_id=owner_id, parent_id=parent.id, name=name)
        if target is not None and target.id != node.id:
            if target.type != FileTypeEnum.DIR.value:
                raise VfsConflict(f"目录树中已存在同名文件: {name}")
            self._discard_directory(db, node)
            return target

        if node.parent_id != parent.id:
            self._adjust_children(db, node.parent_id, -1)
            self._adjust_children(db, parent.id, 1)
        node.parent_id = parent.id
        node.name = name
        db.add(node)
        db.flush()
        return node

    def _is_within(self, db: Session, candidate: File, ancestor_id: int) -> bool:
        """``candidate`` 是否就是 ``ancestor_id`` 或位于其子树中。"""
        current: Optional[File] = candidate
        while current is not None:
            if current.id == ancestor_id:
                return True
            if current.parent_id is None:
                return False
            current = file_crud.get(db, current.parent_id, include_deleted=True)
        return False

    def _discard_directory(self, db: Session, node: File) -> None:
        # 只剩软删除的后代时才能丢弃，连同其文件关联一起物理删除
        if self.count_children(db, node.id) > 0:
            raise VfsConflict(f"目录 {node.name} 非空，无法合并到已存在的目录")
        stale = self.collect_subtree_leaf_first(db, node.id)[:-1]
        file_entity_crud.delete_by_file_ids(db, [item.id for item in stale])
        for item in stale:
            file_crud.hard_delete(db, item, auto_commit=False)
        self.remove_node(db, node)

    def remove_node(self, db: Session, node: File) -> None:
        parent_id = node.parent_id
        file_crud.hard_delete(db, node, auto_commit=False)
        self._adjust_children(db, parent_id, -1)

    def collect_subtree_leaf_first(self, db: Session, node_id: int) -> List[File]:
        """后序遍历子树（含已软删除节点），子节点总在父节点之前，最后一个是起始节点本身。"""
        start = file_crud.get(db, node_id, include_deleted=True)
        if start is None:
            return []
        ordered: list[File] = []
        stack: list[tuple[File, bool]] = [(start, False)]
        while stack:
            node, expanded = stack.pop()
            if expanded:
                ordered.append(node)
                continue
            stack.append((node, True))
            for child in reversed(file_crud.list_children(db, node.id, include_deleted=True)):
                stack.append((child, False))
        return ordered

    @staticmethod
    def _adjust_children(db: Session, parent_id: Optional[int], delta: int) -> None:
        if parent_id is None:
            return
        parent = file_crud.get(db, parent_id, include_deleted=True)
        if parent is None:
            return
        # 以 SQL 表达式更新，避免并发事务之间的读-改-写覆盖
        if delta >= 0:
            parent.children_count = File.children_count + delta
        else:
            parent.children_count = case(
                (File.children_count + delta > 0, File.children_count + delta),
                else_=0,
            )
        db.add(parent)
        db.flush()


vfs_service = VfsService()
