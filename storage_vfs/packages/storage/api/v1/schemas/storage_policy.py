"""存储策略接口的请求/响应模型。"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from storage_vfs.packages.storage.api.v1.schemas.common import ResponseEnvelope

PolicyType = Literal["local", "s3", "oss", "cos", "onedrive"]


class StoragePolicyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: PolicyType
    virtual_path: str = Field(..., min_length=1, max_length=512)
    server: Optional[str] = None
    bucket_name: Optional[str] = None
    is_private: bool = False
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    max_size: int = Field(0, ge=0)
    base_path: Optional[str] = None
    flag: Optional[str] = None
    settings: Optional[dict[str, Any]] = None


class StoragePolicyUpdate(BaseModel):
    """局部更新：只有显式提交的字段会被处理。"""

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    type: Optional[PolicyType] = None
    virtual_path: Optional[str] = Field(None, min_length=1, max_length=512)
    server: Optional[str] = None
    bucket_name: Optional[str] = None
    is_private: Optional[bool] = None
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    max_size: Optional[int] = Field(None, ge=0)
    base_path: Optional[str] = None
    # 显式传 null 或空串表示清除标识
    flag: Optional[str] = None
    settings: Optional[dict[str, Any]] = None


class StoragePolicyAuthorizeRequest(BaseModel):
    code: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)


class StoragePolicyItem(BaseModel):
    id: str
    name: str
    type: PolicyType
    server: Optional[str] = None
    bucket_name: Optional[str] = None
    is_private: bool = False
    access_key: Optional[str] = None
    max_size: int = 0
    base_path: Optional[str] = None
    virtual_path: str
    flag: Optional[str] = None
    settings: dict[str, Any] = Field(default_factory=dict)
    create_time: Optional[str] = None
    update_time: Optional[str] = None


class StoragePolicyPage(BaseModel):
    total: int
    page: int
    page_size: int
    items: list[StoragePolicyItem]


class StoragePolicyDeletionData(BaseModel):
    id: str
    entities: int
    files: int
    links: int


class AuthorizeUrlData(BaseModel):
    url: str


StoragePolicyListResponse = ResponseEnvelope[StoragePolicyPage]
StoragePolicyMutationResponse = ResponseEnvelope[StoragePolicyItem]
StoragePolicyDeletionResponse = ResponseEnvelope[StoragePolicyDeletionData]
AuthorizeUrlResponse = ResponseEnvelope[AuthorizeUrlData]
