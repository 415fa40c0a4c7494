"""异常处理模块：定义存储领域异常，并在 HTTP 边界统一转换响应格式。

领域异常不携带 HTTP 语义，服务层与存储适配器只抛出 ``StorageError`` 子类；
状态码映射集中在 ``storage_error_handler`` 中完成。
"""

from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from .logger import logger


class StorageError(Exception):
    """存储领域异常基类。"""

    default_message = "存储操作失败"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class PolicyNotFound(StorageError):
    default_message = "存储策略不存在"


class InvalidPolicyType(StorageError):
    default_message = "不支持的存储策略类型"


class InvalidPolicySettings(StorageError):
    default_message = "存储策略配置无效"


class PolicyNameConflict(StorageError):
    default_message = "存储策略名称已存在"


class VirtualPathConflict(StorageError):
    default_message = "挂载路径已被其他存储策略占用"


class InvalidVirtualPath(StorageError):
    default_message = "挂载路径格式无效"


class FlagConflict(StorageError):
    default_message = "系统标识已被其他存储策略占用"


class PolicyOperationForbidden(StorageError):
    default_message = "该存储策略不允许执行此操作"


class MountPointNotEmpty(StorageError):
    default_message = "挂载目录非空，无法迁移"


class PolicyNotSupportAuth(StorageError):
    default_message = "该存储策略类型不支持授权"


class InvalidPublicID(StorageError):
    default_message = "无效的公共 ID"


class FeatureNotSupported(StorageError):
    default_message = "当前存储类型不支持该功能"


class VfsConflict(StorageError):
    default_message = "目录树中存在同名节点"


class ObjectNotFound(StorageError):
    default_message = "对象不存在"


class FileTooLarge(StorageError):
    default_message = "文件大小超过存储策略限制"


class ExtensionNotAllowed(StorageError):
    default_message = "存储策略不允许上传该类型的文件"


class InvalidThumbnailSize(StorageError):
    default_message = "缩略图尺寸格式应为 宽x高"


class ProviderError(StorageError):
    """包装 SDK、网络或鉴权失败。"""

    default_message = "存储后端调用失败"


class PartialRenameError(ProviderError):
    """复制成功但删除源对象失败，新旧两个对象同时存在。"""

    def __init__(self, source_key: str, target_key: str, message: Optional[str] = None) -> None:
        self.source_key = source_key
        self.target_key = target_key
        super().__init__(message or f"对象已复制到 {target_key}，但删除 {source_key} 失败")


_STATUS_MAP: list[tuple[type[StorageError], int]] = [
    (PolicyNotFound, status.HTTP_404_NOT_FOUND),
    (ObjectNotFound, status.HTTP_404_NOT_FOUND),
    (FileTooLarge, status.HTTP_413_REQUEST_ENTITY_TOO_LARGE),
    (PolicyNameConflict, status.HTTP_409_CONFLICT),
    (VirtualPathConflict, status.HTTP_409_CONFLICT),
    (FlagConflict, status.HTTP_409_CONFLICT),
    (MountPointNotEmpty, status.HTTP_409_CONFLICT),
    (VfsConflict, status.HTTP_409_CONFLICT),
    (PolicyOperationForbidden, status.HTTP_403_FORBIDDEN),
    (FeatureNotSupported, status.HTTP_501_NOT_IMPLEMENTED),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
]


def status_code_for(exc: StorageError) -> int:
    for exc_type, code in _STATUS_MAP:
        if isinstance(exc, exc_type):
            return code
    return status.HTTP_400_BAD_REQUEST


async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:  # pragma: no cover - framework glue
    """将领域异常转换为统一响应结构。"""
    code = status_code_for(exc)
    if code >= 500:
        logger.warning("Storage operation failed on %s: %s", request.url.path, exc.message)
    return JSONResponse(status_code=code, content={"msg": exc.message, "data": None, "code": code})


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:  # pragma: no cover - framework glue
    """将 FastAPI 的 ``HTTPException`` 转换为统一响应格式。"""
    payload = {"msg": exc.detail, "data": getattr(exc, "data", None), "code": exc.status_code}
    return JSONResponse(status_code=exc.status_code, content=payload)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # pragma: no cover - framework glue
    """兜底处理：将未捕获异常转换为标准的 500 响应结构。"""
    logger.exception("Unhandled error on %s", request.url.path)
    payload = {
        "msg": "服务器内部错误",
        "data": None,
        "code": status.HTTP_500_INTERNAL_SERVER_ERROR,
    }
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=payload)
