"""存储策略相关路由。

认证由上游负责，owner 通过 ``X-User-Id`` 头透传；未携带时使用默认 owner。
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from storage_vfs.packages.storage.api.v1.schemas.storage_policy import (
    AuthorizeUrlResponse,
    StoragePolicyAuthorizeRequest,
    StoragePolicyCreate,
    StoragePolicyDeletionResponse,
    StoragePolicyListResponse,
    StoragePolicyMutationResponse,
    StoragePolicyUpdate,
)
from storage_vfs.packages.storage.core.constants import DEFAULT_PAGE_SIZE
from storage_vfs.packages.storage.core.dependencies import get_db, get_owner_id, get_policy_service
from storage_vfs.packages.storage.core.logger import logger
from storage_vfs.packages.storage.core.responses import create_response
from storage_vfs.packages.storage.services.storage_policy_service import StoragePolicyService

router = APIRouter(prefix="/storage-policies", tags=["storage-policies"])


@router.get("", response_model=StoragePolicyListResponse)
def list_policies(
    page: int = Query(1, ge=1, description="页码，从 1 开始"),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, description="每页数量，超过上限时按上限返回"),
    db: Session = Depends(get_db),
    service: StoragePolicyService = Depends(get_policy_service),
):
    items, total = service.list_policies(db, page=page, page_size=page_size)
    data = {
        "total": total,
        "page": page,
        "page_size": page_size,
        "items": [service.to_public_dict(item) for item in items],
    }
    return create_response("获取存储策略列表成功", data)


@router.get("/authorize", response_model=StoragePolicyMutationResponse)
def authorize_callback(
    code: str = Query(..., min_length=1),
    state: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
    service: StoragePolicyService = Depends(get_policy_service),
):
    """OAuth 回调：浏览器重定向时以查询参数携带 code 与 state。"""
    policy = service.finalize_auth(db, code=code, state=state)
    return create_response("授权成功", service.to_public_dict(policy))


@router.post("/authorize", response_model=StoragePolicyMutationResponse)
def authorize(
    payload: StoragePolicyAuthorizeRequest,
    db: Session = Depends(get_db),
    service: StoragePolicyService = Depends(get_policy_service),
):
    policy = service.finalize_auth(db, code=payload.code, state=payload.state)
    return create_response("授权成功", service.to_public_dict(policy))


@router.get("/{policy_id}", response_model=StoragePolicyMutationResponse)
def get_policy(
    policy_id: str,
    db: Session = Depends(get_db),
    service: StoragePolicyService = Depends(get_policy_service),
):
    policy = service.get_policy_by_id(db, policy_id)
    return create_response("获取存储策略成功", service.to_public_dict(policy))


@router.post("", response_model=StoragePolicyMutationResponse)
def create_policy(
    payload: StoragePolicyCreate,
    db: Session = Depends(get_db),
    owner_id: int = Depends(get_owner_id),
    service: StoragePolicyService = Depends(get_policy_service),
):
    policy = service.create_policy(db, owner_id, payload.model_dump())
    return create_response("创建存储策略成功", service.to_public_dict(policy))


@router.put("/{policy_id}", response_model=StoragePolicyMutationResponse)
def update_policy(
    policy_id: str,
    payload: StoragePolicyUpdate,
    db: Session = Depends(get_db),
    service: StoragePolicyService = Depends(get_policy_service),
):
    policy = service.update_policy(db, policy_id, payload.model_dump(exclude_unset=True))
    return create_response("更新存储策略成功", service.to_public_dict(policy))


@router.delete("/{policy_id}", response_model=StoragePolicyDeletionResponse)
def delete_policy(
    policy_id: str,
    db: Session = Depends(get_db),
    service: StoragePolicyService = Depends(get_policy_service),
):
    ctx = service.delete_policy(db, policy_id)
    logger.info("Storage policy %s removed via API", policy_id)
    return create_response("删除存储策略成功", {"id": policy_id, **ctx.summary()})


@router.get("/{policy_id}/connect", response_model=AuthorizeUrlResponse)
def connect_policy(
    policy_id: str,
    db: Session = Depends(get_db),
    service: StoragePolicyService = Depends(get_policy_service),
):
    """返回授权跳转地址，前端据此打开服务商的登录页面。"""
    url = service.generate_auth_url(db, policy_id)
    return create_response("获取授权地址成功", {"url": url})
