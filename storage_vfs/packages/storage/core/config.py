"""配置模块：负责加载和缓存基于环境变量的应用设置。

加载顺序：项目根目录的 ``.env`` 作为基础值，``ENVIRONMENT`` 指定的 ``.env.<环境名>`` 覆盖其上；
设置 ``ENV_FILE`` 时只加载该文件。已经存在于进程环境中的变量不会被 ``.env`` 覆盖。
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Iterator, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# storage_vfs/packages/storage/core/config.py -> 项目根
BASE_DIR = Path(__file__).resolve().parents[4]


def _env_files() -> Iterator[Path]:
    override = os.getenv("ENV_FILE")
    if override:
        yield BASE_DIR / override
        return
    yield BASE_DIR / ".env"
    environment = os.getenv("ENVIRONMENT")
    if not environment and os.getenv("DEBUG", "").strip().lower() in {"1", "true", "yes", "on"}:
        environment = "development"
    if environment:
        yield BASE_DIR / (environment if environment.startswith(".env") else f".env.{environment}")


def load_environment() -> None:
    for index, path in enumerate(_env_files()):
        if path.is_file():
            # 基础文件不覆盖进程环境，环境专属文件覆盖基础文件
            load_dotenv(path, override=index > 0 or bool(os.getenv("ENV_FILE")), encoding="utf-8")


load_environment()


class Settings(BaseSettings):
    """存储策略服务的全部配置项，每个字段都可以通过同名环境变量重写。"""

    project_name: str = Field(default="Storage VFS API", alias="PROJECT_NAME")
    api_v1_str: str = Field(default="/api/v1", alias="API_V1_STR")
    debug: bool = Field(default=False, alias="DEBUG")

    database_url_override: Optional[str] = Field(default=None, alias="DATABASE_URL")
    database_host: str = Field(default="localhost", alias="DATABASE_HOST")
    database_port: int = Field(default=5432, alias="DATABASE_PORT")
    database_user: str = Field(default="postgres", alias="DATABASE_USER")
    database_password: str = Field(default="postgres", alias="DATABASE_PASSWORD")
    database_name: str = Field(default="storage_vfs", alias="DATABASE_NAME")
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_db: int = Field(default=0, alias="REDIS_DB")

    # redis | memory
    cache_backend: str = Field(default="redis", alias="CACHE_BACKEND")
    policy_cache_ttl_seconds: int = Field(default=3600, alias="POLICY_CACHE_TTL_SECONDS")

    public_id_alphabet: str = Field(
        default="abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789",
        alias="PUBLIC_ID_ALPHABET",
    )
    public_id_min_length: int = Field(default=4, alias="PUBLIC_ID_MIN_LENGTH")

    local_storage_root: str = Field(default=".", alias="LOCAL_STORAGE_ROOT")
    local_public_base_url: str = Field(default="http://127.0.0.1:8000/files", alias="LOCAL_PUBLIC_BASE_URL")
    local_signing_secret: str = Field(default="changeme", alias="LOCAL_SIGNING_SECRET")

    provider_timeout_seconds: float = Field(default=30.0, alias="PROVIDER_TIMEOUT_SECONDS")

    onedrive_authorize_url: str = Field(
        default="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        alias="ONEDRIVE_AUTHORIZE_URL",
    )
    onedrive_token_url: str = Field(
        default="https://login.microsoftonline.com/common/oauth2/v2.0/token",
        alias="ONEDRIVE_TOKEN_URL",
    )
    onedrive_graph_url: str = Field(default="https://graph.microsoft.com/v1.0", alias="ONEDRIVE_GRAPH_URL")
    onedrive_redirect_uri: str = Field(
        default="http://127.0.0.1:8000/api/v1/storage-policies/authorize",
        alias="ONEDRIVE_REDIRECT_URI",
    )
    onedrive_scopes: str = Field(default="offline_access Files.ReadWrite.All", alias="ONEDRIVE_SCOPES")

    default_owner_id: int = Field(default=1, alias="DEFAULT_OWNER_ID")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: str = Field(default="log", alias="LOG_DIR")
    log_file_name: str = Field(default="storage.log", alias="LOG_FILE_NAME")
    log_json: bool = Field(default=False, alias="LOG_JSON")
    log_backup_count: int = Field(default=14, alias="LOG_BACKUP_COUNT")
    # 存储适配器与云厂商 SDK 的日志级别
    provider_log_level: str = Field(default="INFO", alias="PROVIDER_LOG_LEVEL")
    sdk_log_level: str = Field(default="WARNING", alias="SDK_LOG_LEVEL")
    app_port: int = Field(default=8000, alias="APP_PORT")
    timezone: str = Field(default="Asia/Shanghai", alias="TIMEZONE")

    model_config = SettingsConfigDict(extra="ignore")

    @property
    def sql_database_url(self) -> str:
        """优先使用 ``DATABASE_URL``，否则拼接 PostgreSQL 连接串。"""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+psycopg2://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def redis_url(self) -> str:
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    def _resolve_path(self, raw: str) -> Path:
        path = Path(raw)
        if not path.is_absolute():
            path = BASE_DIR / path
        return path

    @property
    def local_storage_path(self) -> Path:
        """本地存储策略的根目录，相对路径基于项目根解析。"""
        return self._resolve_path(self.local_storage_root)

    @property
    def log_directory(self) -> Path:
        return self._resolve_path(self.log_dir)

    @property
    def log_file_path(self) -> Path:
        return self.log_directory / self.log_file_name

    @property
    def timezone_info(self) -> ZoneInfo:
        """返回当前配置对应的时区信息，无法解析时回退到 UTC。"""
        try:
            return ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError:
            return ZoneInfo("UTC")


@lru_cache
def get_settings() -> Settings:
    """返回单例化的配置对象，避免重复解析环境变量。"""
    return Settings()
