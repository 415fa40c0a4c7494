"""存储策略业务包：存储后端适配、目录挂载与策略管理。"""

from storage_vfs.packages.types import AppPackage

from .api.v1 import api_router
from .core.config import get_settings
from .core.dependencies import close_provider_clients
from .core.exceptions import generic_exception_handler, http_exception_handler, storage_error_handler
from .core.logger import logger, setup_logging
from .core.responses import create_response
from .db.init_db import init_db

package = AppPackage(
    name="storage",
    api_router=api_router,
    get_settings=get_settings,
    setup_logging=setup_logging,
    logger=logger,
    init_db=init_db,
    shutdown=close_provider_clients,
    create_response=create_response,
    http_exception_handler=http_exception_handler,
    domain_exception_handler=storage_error_handler,
    generic_exception_handler=generic_exception_handler,
)

__all__ = ["package", "api_router", "get_settings"]
