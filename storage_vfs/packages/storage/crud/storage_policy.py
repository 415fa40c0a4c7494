"""存储策略 CRUD 封装。"""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy.orm import Session

from storage_vfs.packages.storage.crud.base import CRUDBase
from storage_vfs.packages.storage.models.storage_policy import StoragePolicy


class CRUDStoragePolicy(CRUDBase[StoragePolicy]):
    def get_by_name(self, db: Session, name: str) -> Optional[StoragePolicy]:
        return self.query(db).filter(self.model.name == name).first()

    def get_by_virtual_path(self, db: Session, virtual_path: str) -> Optional[StoragePolicy]:
        return self.query(db).filter(self.model.virtual_path == virtual_path).first()

    def get_by_flag(self, db: Session, flag: str) -> Optional[StoragePolicy]:
        return self.query(db).filter(self.model.flag == flag).first()

    def list_all(self, db: Session) -> List[StoragePolicy]:
        return self.query(db).order_by(self.model.id.asc()).all()

    def clear_flag(self, db: Session, flag: str, *, exclude_id: Optional[int] = None) -> int:
        """清除其它策略上的同名标识，返回受影响的行数。"""
        query = self.query(db).filter(self.model.flag == flag)
        if exclude_id is not None:
            query = query.filter(self.model.id != exclude_id)
        affected = 0
        for policy in query.all():
            policy.flag = None
            db.add(policy)
            affected += 1
        db.flush()
        return affected


storage_policy_crud = CRUDStoragePolicy(StoragePolicy)
