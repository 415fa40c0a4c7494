"""存储策略模型：描述一个物理存储后端及其在目录树中的挂载位置。"""

from typing import Any, Optional

from sqlalchemy import JSON, BigInteger, Boolean, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import expression

from storage_vfs.packages.storage.models.base import Base, IdMixin, TimestampMixin


class StoragePolicy(IdMixin, TimestampMixin, Base):
    """存储策略。

    说明：
    - ``type`` 取值 local / s3 / oss / cos / onedrive；
    - ``server`` 的含义随类型变化：S3 为区域或自定义端点，OSS 为 endpoint，COS 为存储桶访问域名；
    - ``virtual_path`` 全局唯一，"/" 保留给根策略；
    - ``flag`` 为系统级单例标识，同一时间最多一个策略持有；
    - ``node_id`` 指向目录树中的挂载目录；
    - ``settings`` 以 JSON 持久化，读取时按类型解析为强类型配置。
    """

    __tablename__ = "storage_policies"
    __table_args__ = (
        UniqueConstraint("name", name="uq_storage_policies_name"),
        UniqueConstraint("virtual_path", name="uq_storage_policies_virtual_path"),
    )

    name: Mapped[str] = mapped_column(String(100), index=True)
    type: Mapped[str] = mapped_column(String(16))
    server: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    bucket_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    is_private: Mapped[bool] = mapped_column(Boolean, server_default=expression.false(), nullable=False)
    access_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    secret_key: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    max_size: Mapped[int] = mapped_column(BigInteger, server_default="0", nullable=False)
    base_path: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    virtual_path: Mapped[str] = mapped_column(String(512))
    flag: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    node_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    settings: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
