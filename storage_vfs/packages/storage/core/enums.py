"""枚举定义：约束存储策略类型、目录节点类型等可选值。"""

from enum import Enum


class PolicyTypeEnum(str, Enum):
    LOCAL = "local"
    S3 = "s3"
    OSS = "oss"
    COS = "cos"
    ONEDRIVE = "onedrive"


class FileTypeEnum(str, Enum):
    """目录树节点类型。"""

    DIR = "dir"
    FILE = "file"


class PolicyFlagEnum(str, Enum):
    """系统级单例标识，同一时间只允许一个存储策略持有。"""

    ARTICLE_IMAGE = "article_image"
    COMMENT_IMAGE = "comment_image"


class EntityTypeEnum(int, Enum):
    """公共 ID 编码时附带的实体类型，防止不同实体的 ID 互相冒用。"""

    STORAGE_POLICY = 5
