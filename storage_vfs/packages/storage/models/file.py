"""目录树与物理实体模型。

- File：目录树节点（目录或文件），按 owner_id 隔离；
- Entity：物理存储定位信息，归属唯一的存储策略；
- FileEntity：文件与实体的关联（版本、缩略图等多种表示）。
"""

from typing import Optional

from sqlalchemy import BigInteger, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from storage_vfs.packages.storage.models.base import Base, IdMixin, SoftDeleteMixin, TimestampMixin


class File(IdMixin, TimestampMixin, SoftDeleteMixin, Base):
    """目录树节点。每个 owner 有且仅有一个根节点（``parent_id`` 为空、``name`` 为空串）。"""

    __tablename__ = "files"
    __table_args__ = (
        UniqueConstraint("owner_id", "parent_id", "name", name="uq_files_owner_parent_name"),
    )

    owner_id: Mapped[int] = mapped_column(Integer, index=True)
    parent_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    type: Mapped[str] = mapped_column(String(8))  # "dir" | "file"
    size: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    primary_entity_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    children_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class Entity(IdMixin, TimestampMixin, Base):
    __tablename__ = "entities"

    policy_id: Mapped[int] = mapped_column(Integer, index=True)
    source: Mapped[str] = mapped_column(String(1024))
    mime_type: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    size: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)


class FileEntity(Base):
    __tablename__ = "file_entities"

    file_id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    entity_id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
