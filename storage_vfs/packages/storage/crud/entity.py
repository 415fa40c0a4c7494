"""物理实体与文件-实体关联 CRUD 封装。"""

from __future__ import annotations

from typing import List

from sqlalchemy.orm import Session

from storage_vfs.packages.storage.crud.base import CRUDBase
from storage_vfs.packages.storage.models.file import Entity, FileEntity


class CRUDEntity(CRUDBase[Entity]):
    def list_by_policy(self, db: Session, policy_id: int) -> List[Entity]:
        return self.query(db).filter(self.model.policy_id == policy_id).order_by(self.model.id.asc()).all()

    def delete_by_ids(self, db: Session, ids: List[int]) -> int:
        if not ids:
            return 0
        return self.query(db).filter(self.model.id.in_(ids)).delete(synchronize_session=False)


class CRUDFileEntity(CRUDBase[FileEntity]):
    def list_by_entity_ids(self, db: Session, entity_ids: List[int]) -> List[FileEntity]:
        if not entity_ids:
            return []
        return self.query(db).filter(self.model.entity_id.in_(entity_ids)).all()

    def delete_by_entity_ids(self, db: Session, entity_ids: List[int]) -> int:
        if not entity_ids:
            return 0
        return self.query(db).filter(self.model.entity_id.in_(entity_ids)).delete(synchronize_session=False)

    def delete_by_file_ids(self, db: Session, file_ids: List[int]) -> int:
        if not file_ids:
            return 0
        return self.query(db).filter(self.model.file_id.in_(file_ids)).delete(synchronize_session=False)


entity_crud = CRUDEntity(Entity)
file_entity_crud = CRUDFileEntity(FileEntity)
