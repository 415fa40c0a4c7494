"""通用响应封装模型。"""

from typing import Any, Dict, Generic, Optional, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ResponseEnvelope(BaseModel, Generic[T]):
    msg: str
    data: Optional[T] = None
    code: int
    meta: Optional[Dict[str, Any]] = None
