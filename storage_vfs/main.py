"""应用入口：组装当前业务包的路由、异常处理与生命周期钩子。"""

from typing import Any

from fastapi import FastAPI, HTTPException, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storage_vfs.middleware.request_id import RequestIdMiddleware
from storage_vfs.packages import get_active_package
from storage_vfs.packages.storage.core.exceptions import StorageError
from storage_vfs.packages.types import AppPackage


def _jsonable_errors(obj: Any) -> Any:
    # pydantic 的错误上下文里可能带有异常对象
    if isinstance(obj, Exception):
        return str(obj)
    if isinstance(obj, dict):
        return {key: _jsonable_errors(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [_jsonable_errors(item) for item in obj]
    return obj


def _register_exception_handlers(app: FastAPI, package: AppPackage) -> None:
    async def on_domain_error(request, exc):  # pragma: no cover - framework glue
        return await package.domain_exception_handler(request, exc)

    async def on_http_error(request, exc):  # pragma: no cover - framework glue
        return await package.http_exception_handler(request, exc)

    async def on_unhandled_error(request, exc):  # pragma: no cover - framework glue
        return await package.generic_exception_handler(request, exc)

    async def on_validation_error(request, exc):  # pragma: no cover - framework glue
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
        return JSONResponse(
            status_code=code,
            content=package.create_response("请求参数验证失败", _jsonable_errors(exc.errors()), code),
        )

    app.add_exception_handler(StorageError, on_domain_error)
    app.add_exception_handler(HTTPException, on_http_error)
    app.add_exception_handler(RequestValidationError, on_validation_error)
    app.add_exception_handler(Exception, on_unhandled_error)


def create_app(package: AppPackage) -> FastAPI:
    package.setup_logging()
    settings = package.get_settings()
    logger = package.logger

    app = FastAPI(title=settings.project_name, debug=settings.debug)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    app.add_middleware(RequestIdMiddleware)
    _register_exception_handlers(app, package)

    @app.on_event("startup")
    async def startup_event() -> None:
        """建表并写入内置存储策略。"""
        package.init_db()
        logger.info("SUCCESS - %s running at http://127.0.0.1:%s", settings.project_name, settings.app_port)

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        package.shutdown()
        logger.info("Released storage provider clients")

    @app.get("/health")
    async def health_check() -> dict:
        return package.create_response("OK", {"status": "healthy"})

    app.include_router(package.api_router, prefix=settings.api_v1_str)
    return app


app = create_app(get_active_package())
