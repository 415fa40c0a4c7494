"""事务管理：把多个仓储调用组合为一个全有或全无的工作单元。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, TypeVar

from sqlalchemy.orm import Session

from storage_vfs.packages.storage.core.logger import logger
from storage_vfs.packages.storage.crud.entity import CRUDEntity, CRUDFileEntity, entity_crud, file_entity_crud
from storage_vfs.packages.storage.crud.file import CRUDFile, file_crud
from storage_vfs.packages.storage.crud.storage_policy import CRUDStoragePolicy, storage_policy_crud

T = TypeVar("T")


@dataclass
class Repositories:
    """事务内可用的仓储集合，所有写操作都应传入 ``auto_commit=False``。"""

    db: Session
    policies: CRUDStoragePolicy = field(default=storage_policy_crud)
    files: CRUDFile = field(default=file_crud)
    entities: CRUDEntity = field(default=entity_crud)
    file_entities: CRUDFileEntity = field(default=file_entity_crud)


class TransactionManager:
    """执行 ``fn(repos)``，成功则提交，任何异常都回滚并原样抛出。"""

    def run(self, db: Session, fn: Callable[[Repositories], T]) -> T:
        repos = Repositories(db=db)
        try:
            result = fn(repos)
            db.commit()
        except Exception:
            db.rollback()
            logger.warning("Transaction rolled back", exc_info=True)
            raise
        return result


transaction_manager = TransactionManager()
