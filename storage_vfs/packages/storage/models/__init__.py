"""模型汇总，确保建表时所有模型都已注册到元数据。"""

from .base import Base
from .file import Entity, File, FileEntity
from .storage_policy import StoragePolicy

__all__ = ["Base", "Entity", "File", "FileEntity", "StoragePolicy"]
