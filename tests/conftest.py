"""测试夹具：为 pytest 提供数据库、缓存与客户端的共享配置。"""

import os
import shutil
import tempfile
import uuid
from typing import Generator

TEST_DB_PATH = os.path.join(os.path.dirname(__file__), "test.db")
TEST_DATABASE_URL = f"sqlite:///{TEST_DB_PATH}"
TEST_STORAGE_ROOT = tempfile.mkdtemp(prefix="storage_vfs_test_")

# 必须在导入应用模块之前设置，配置对象会被 lru_cache 缓存
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["CACHE_BACKEND"] = "memory"
os.environ["LOCAL_STORAGE_ROOT"] = TEST_STORAGE_ROOT
os.environ["LOCAL_PUBLIC_BASE_URL"] = "http://testserver/files"
os.environ["LOCAL_SIGNING_SECRET"] = "test-secret"
os.environ["LOG_DIR"] = os.path.join(TEST_STORAGE_ROOT, "log")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from storage_vfs.main import app  # noqa: E402
from storage_vfs.packages.storage.core.cache import InMemoryCacheService, get_cache_service  # noqa: E402
from storage_vfs.packages.storage.core.dependencies import get_db, get_policy_service  # noqa: E402
from storage_vfs.packages.storage.db import session as db_session  # noqa: E402
from storage_vfs.packages.storage.db.init_db import init_db  # noqa: E402
from storage_vfs.packages.storage.services.storage_policy_service import StoragePolicyService  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def setup_test_database() -> Generator[None, None, None]:
    """创建隔离的 SQLite 测试数据库，并在会话结束后清理。"""
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)

    engine = db_session.build_engine(TEST_DATABASE_URL)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    db_session.engine = engine
    db_session.SessionLocal = TestingSessionLocal

    init_db()
    yield

    engine.dispose()
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)
    shutil.rmtree(TEST_STORAGE_ROOT, ignore_errors=True)


@pytest.fixture(autouse=True)
def clear_cache() -> Generator[None, None, None]:
    cache = get_cache_service()
    if isinstance(cache, InMemoryCacheService):
        cache.clear()
    yield


@pytest.fixture()
def db_session_fixture() -> Generator[Session, None, None]:
    """提供给测试用例使用的数据库会话。"""
    session = db_session.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def policy_service() -> StoragePolicyService:
    return get_policy_service()


@pytest.fixture()
def owner_id() -> int:
    """每个用例使用独立的 owner，目录树互不干扰。"""
    return 10_000 + uuid.uuid4().int % 1_000_000


@pytest.fixture()
def unique_name():
    def _make(prefix: str = "policy") -> str:
        return f"{prefix}_{uuid.uuid4().hex[:8]}"

    return _make


@pytest.fixture()
def client(db_session_fixture):
    """构建 FastAPI TestClient，并注入测试专用的数据库依赖。"""
    def override_get_db() -> Generator[Session, None, None]:
        session = db_session.SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
