"""API v1 汇总路由。"""

from fastapi import APIRouter

from storage_vfs.packages.storage.api.v1.endpoints import storage_policies

api_router = APIRouter()
api_router.include_router(storage_policies.router)
