"""目录树节点 CRUD 封装。"""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy.orm import Session

from storage_vfs.packages.storage.crud.base import CRUDBase
from storage_vfs.packages.storage.models.file import File


class CRUDFile(CRUDBase[File]):
    def get_root(self, db: Session, owner_id: int) -> Optional[File]:
        return (
            self.query(db)
            .filter(self.model.owner_id == owner_id, self.model.parent_id.is_(None))
            .order_by(self.model.id.asc())
            .first()
        )

    def get_child(
        self,
        db: Session,
        *,
        owner_id: int,
        parent_id: int,
        name: str,
        include_deleted: bool = False,
    ) -> Optional[File]:
        return (
            self.query(db, include_deleted=include_deleted)
            .filter(
                self.model.owner_id == owner_id,
                self.model.parent_id == parent_id,
                self.model.name == name,
            )
            .first()
        )

    def list_children(self, db: Session, parent_id: int, *, include_deleted: bool = False) -> List[File]:
        return (
            self.query(db, include_deleted=include_deleted)
            .filter(self.model.parent_id == parent_id)
            .order_by(self.model.id.asc())
            .all()
        )

    def count_children(self, db: Session, parent_id: int) -> int:
        return self.query(db).filter(self.model.parent_id == parent_id).count()

    def list_by_entity_ids(self, db: Session, entity_ids: List[int], *, include_deleted: bool = False) -> List[File]:
        if not entity_ids:
            return []
        return (
            self.query(db, include_deleted=include_deleted)
            .filter(self.model.primary_entity_id.in_(entity_ids))
            .all()
        )


file_crud = CRUDFile(File)
