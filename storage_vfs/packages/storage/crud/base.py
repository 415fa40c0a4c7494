"""CRUD 基类：为各实体提供通用的数据访问方法。"""

from typing import Any, Dict, Generic, Optional, Type, TypeVar

from sqlalchemy.orm import Session

from storage_vfs.packages.storage.models.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class CRUDBase(Generic[ModelType]):
    """所有写操作都支持 ``auto_commit=False``，以便在同一个事务中组合多个仓储调用。

    服务层的多步写入统一交给 ``TransactionManager`` 提交，仓储只负责 flush。
    """

    def __init__(self, model: Type[ModelType]):
        self.model = model

    @property
    def soft_deletable(self) -> bool:
        return hasattr(self.model, "is_deleted")

    def query(self, db: Session, *, include_deleted: bool = False):
        query = db.query(self.model)
        if self.soft_deletable and not include_deleted:
            query = query.filter(self.model.is_deleted.is_(False))
        return query

    def get(self, db: Session, id: Any, *, include_deleted: bool = False) -> Optional[ModelType]:
        return self.query(db, include_deleted=include_deleted).filter(self.model.id == id).first()

    def create(self, db: Session, obj_in: Dict[str, Any], *, auto_commit: bool = True) -> ModelType:
        return self.save(db, self.model(**obj_in), auto_commit=auto_commit)

    def save(self, db: Session, db_obj: ModelType, *, auto_commit: bool = True) -> ModelType:
        db.add(db_obj)
        self._finish(db, auto_commit)
        if auto_commit:
            db.refresh(db_obj)
        return db_obj

    def soft_delete(self, db: Session, db_obj: ModelType, *, auto_commit: bool = True) -> ModelType:
        """标记删除；模型没有 ``is_deleted`` 字段时退化为物理删除。"""
        if self.soft_deletable:
            db_obj.is_deleted = True
            db.add(db_obj)
        else:
            db.delete(db_obj)
        self._finish(db, auto_commit)
        return db_obj

    def hard_delete(self, db: Session, db_obj: ModelType, *, auto_commit: bool = True) -> None:
        db.delete(db_obj)
        self._finish(db, auto_commit)

    @staticmethod
    def _finish(db: Session, auto_commit: bool) -> None:
        if not auto_commit:
            db.flush()
            return
        try:
            db.commit()
        except Exception:
            db.rollback()
            raise
