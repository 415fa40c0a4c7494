"""存储策略服务测试：挂载目录、标识迁移、缓存与删除编排。"""

from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from sqlalchemy.orm import Session

from storage_vfs.packages.storage.core.cache import get_cache_service
from storage_vfs.packages.storage.core.config import get_settings
from storage_vfs.packages.storage.core.constants import POLICY_CACHE_KEY_BY_ID, ROOT_POLICY_ID
from storage_vfs.packages.storage.core.enums import FileTypeEnum, PolicyFlagEnum
from storage_vfs.packages.storage.core.exceptions import (
    FlagConflict,
    InvalidPolicySettings,
    InvalidVirtualPath,
    MountPointNotEmpty,
    PolicyNameConflict,
    PolicyNotFound,
    PolicyNotSupportAuth,
    PolicyOperationForbidden,
    VirtualPathConflict,
)
from storage_vfs.packages.storage.core.idgen import get_public_id_codec
from storage_vfs.packages.storage.crud.entity import entity_crud, file_entity_crud
from storage_vfs.packages.storage.crud.file import file_crud
from storage_vfs.packages.storage.crud.storage_policy import storage_policy_crud
from storage_vfs.packages.storage.db.transaction import transaction_manager
from storage_vfs.packages.storage.models.file import Entity, File, FileEntity
from storage_vfs.packages.storage.services.providers.local import LocalStorageProvider
from storage_vfs.packages.storage.services.providers.registry import build_provider_registry
from storage_vfs.packages.storage.services.storage_policy_service import StoragePolicyService
from storage_vfs.packages.storage.services.strategy import StrategyManager
from storage_vfs.packages.storage.services.vfs_service import vfs_service


def _create_local(service: StoragePolicyService, db: Session, owner_id: int, name: str, path: str, **extra):
    payload = {"name": name, "type": "local", "virtual_path": path, "base_path": f"data/{name}", "settings": {}}
    payload.update(extra)
    return service.create_policy(db, owner_id, payload)


def test_create_policy_mounts_nested_path(policy_service, db_session_fixture, owner_id, unique_name):
    db = db_session_fixture
    name = unique_name()

    info = _create_local(policy_service, db, owner_id, name, f"/{name}/inner")

    leaf = vfs_service.resolve_path(db, owner_id, f"/{name}/inner")
    assert leaf is not None
    assert info.node_id == leaf.id
    assert info.virtual_path == f"/{name}/inner"
    assert policy_service.get_policy_by_id(db, policy_service.encode_id(info.id)).name == name


def test_create_policy_conflicts(policy_service, db_session_fixture, owner_id, unique_name):
    db = db_session_fixture
    name = unique_name()
    _create_local(policy_service, db, owner_id, name, f"/{name}")

    with pytest.raises(PolicyNameConflict):
        _create_local(policy_service, db, owner_id, name, f"/{unique_name()}")
    with pytest.raises(VirtualPathConflict):
        _create_local(policy_service, db, owner_id, unique_name(), f"/{name}")
    with pytest.raises(VirtualPathConflict):
        _create_local(policy_service, db, owner_id, unique_name(), "/")
    with pytest.raises(InvalidVirtualPath):
        _create_local(policy_service, db, owner_id, unique_name(), "relative/path")
    with pytest.raises(FlagConflict):
        _create_local(policy_service, db, owner_id, unique_name(), f"/{unique_name()}", flag=PolicyFlagEnum.ARTICLE_IMAGE.value)


def test_create_policy_validates_required_fields(policy_service, db_session_fixture, owner_id, unique_name):
    payload = {"name": unique_name(), "type": "oss", "virtual_path": f"/{unique_name()}", "settings": {}}

    with pytest.raises(InvalidPolicySettings):
        policy_service.create_policy(db_session_fixture, owner_id, payload)


def test_flag_moves_to_new_holder(policy_service, db_session_fixture, owner_id, unique_name):
    db = db_session_fixture
    flag = unique_name("flag")
    first = _create_local(policy_service, db, owner_id, unique_name(), f"/{unique_name()}", flag=flag)
    second = _create_local(policy_service, db, owner_id, unique_name(), f"/{unique_name()}")

    updated = policy_service.update_policy(db, policy_service.encode_id(second.id), {"flag": flag})

    assert updated.flag == flag
    assert policy_service.get_policy_by_id(db, policy_service.encode_id(first.id)).flag is None
    assert policy_service.get_policy_by_flag(db, flag).id == second.id


def test_update_refreshes_cache(policy_service, db_session_fixture, owner_id, unique_name):
    db = db_session_fixture
    info = _create_local(policy_service, db, owner_id, unique_name(), f"/{unique_name()}")
    public_id = policy_service.encode_id(info.id)
    assert get_cache_service().get(POLICY_CACHE_KEY_BY_ID.format(info.id)) is not None

    new_name = unique_name("renamed")
    policy_service.update_policy(db, public_id, {"name": new_name, "settings": {"allowed_extensions": [".JPG"]}})

    cached = policy_service.get_policy_by_id(db, public_id)
    assert cached.name == new_name
    assert cached.settings.allowed_extensions == ["jpg"]
    assert any(item.name == new_name for item in policy_service.list_all(db))


def test_update_rejects_type_change(policy_service, db_session_fixture, owner_id, unique_name):
    db = db_session_fixture
    info = _create_local(policy_service, db, owner_id, unique_name(), f"/{unique_name()}")

    with pytest.raises(PolicyOperationForbidden):
        policy_service.update_policy(db, policy_service.encode_id(info.id), {"type": "s3"})


def test_root_policy_is_protected(policy_service, db_session_fixture):
    db = db_session_fixture
    root_id = policy_service.encode_id(ROOT_POLICY_ID)

    with pytest.raises(PolicyOperationForbidden):
        policy_service.update_policy(db, root_id, {"virtual_path": "/elsewhere"})
    with pytest.raises(PolicyOperationForbidden):
        policy_service.delete_policy(db, root_id)


def test_flagged_policy_cannot_be_deleted(policy_service, db_session_fixture):
    db = db_session_fixture
    flagged = policy_service.get_policy_by_flag(db, PolicyFlagEnum.COMMENT_IMAGE.value)
    assert flagged is not None

    with pytest.raises(PolicyOperationForbidden):
        policy_service.delete_policy(db, policy_service.encode_id(flagged.id))


def test_relocation_requires_empty_mount(policy_service, db_session_fixture, owner_id, unique_name):
    db = db_session_fixture
    info = _create_local(policy_service, db, owner_id, unique_name(), f"/{unique_name()}")
    vfs_service.find_or_create_directory(db, info.node_id, "occupied", owner_id)
    db.commit()

    with pytest.raises(MountPointNotEmpty):
        policy_service.update_policy(db, policy_service.encode_id(info.id), {"virtual_path": f"/{unique_name()}"})


def test_relocation_moves_mount_node(policy_service, db_session_fixture, owner_id, unique_name):
    db = db_session_fixture
    old_path = f"/{unique_name()}"
    info = _create_local(policy_service, db, owner_id, unique_name(), old_path)
    new_path = f"/{unique_name()}/moved"

    updated = policy_service.update_policy(db, policy_service.encode_id(info.id), {"virtual_path": new_path})

    assert updated.virtual_path == new_path
    assert updated.node_id == info.node_id
    assert vfs_service.resolve_path(db, owner_id, new_path).id == info.node_id
    assert vfs_service.resolve_path(db, owner_id, old_path) is None


def test_list_policies_clamps_page_size(policy_service, db_session_fixture):
    items, total = policy_service.list_policies(db_session_fixture, page=1, page_size=1000)

    assert total >= 3
    assert len(items) == min(total, 100)
    assert items[0].id == ROOT_POLICY_ID


def test_delete_policy_removes_entities_files_and_links(policy_service, db_session_fixture, owner_id, unique_name):
    db = db_session_fixture
    mount = f"/{unique_name()}"
    info = _create_local(policy_service, db, owner_id, unique_name(), mount)
    root = file_crud.get_root(db, owner_id)

    inner_entity = Entity(policy_id=info.id, source="data/inner.txt", size=3)
    outer_entity = Entity(policy_id=info.id, source="data/outer.txt", size=4)
    db.add_all([inner_entity, outer_entity])
    db.flush()
    sub = vfs_service.find_or_create_directory(db, info.node_id, "sub", owner_id)
    inner = File(
        owner_id=owner_id,
        parent_id=sub.id,
        name="inner.txt",
        type=FileTypeEnum.FILE.value,
        size=3,
        primary_entity_id=inner_entity.id,
        children_count=0,
    )
    outer = File(
        owner_id=owner_id,
        parent_id=root.id,
        name=f"{unique_name('outer')}.txt",
        type=FileTypeEnum.FILE.value,
        size=4,
        primary_entity_id=outer_entity.id,
        children_count=0,
    )
    db.add_all([inner, outer])
    db.flush()
    db.add_all([FileEntity(file_id=inner.id, entity_id=inner_entity.id), FileEntity(file_id=outer.id, entity_id=outer_entity.id)])
    db.commit()
    entity_ids = [inner_entity.id, outer_entity.id]
    outer_id = outer.id
    public_id = policy_service.encode_id(info.id)

    ctx = policy_service.delete_policy(db, public_id)

    assert ctx.summary() == {"entities": 2, "files": 4, "links": 2}
    assert ctx.stage.value == "done"
    assert entity_crud.list_by_policy(db, info.id) == []
    assert file_entity_crud.list_by_entity_ids(db, entity_ids) == []
    assert file_crud.get(db, outer_id, include_deleted=True) is None
    assert vfs_service.resolve_path(db, owner_id, mount) is None
    with pytest.raises(PolicyNotFound):
        policy_service.get_policy_by_id(db, public_id)


def test_delete_unknown_policy(policy_service, db_session_fixture):
    with pytest.raises(PolicyNotFound):
        policy_service.delete_policy(db_session_fixture, policy_service.encode_id(987654))


def test_lookup_by_database_id_uses_cache(policy_service, db_session_fixture):
    db = db_session_fixture
    cache = get_cache_service()

    root = policy_service.get_policy_by_database_id(db, ROOT_POLICY_ID)

    assert root.virtual_path == "/"
    assert cache.get(POLICY_CACHE_KEY_BY_ID.format(ROOT_POLICY_ID)) is not None
    assert isinstance(policy_service.get_provider(root), LocalStorageProvider)
    with pytest.raises(PolicyNotFound):
        policy_service.get_policy_by_database_id(db, 987654)


def test_local_policy_does_not_support_auth(policy_service, db_session_fixture):
    with pytest.raises(PolicyNotSupportAuth):
        policy_service.generate_auth_url(db_session_fixture, policy_service.encode_id(ROOT_POLICY_ID))


def _service_with_transport(handler) -> StoragePolicyService:
    settings = get_settings()
    cache = get_cache_service()
    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    registry, oauth = build_provider_registry(settings=settings, cache=cache, http_client=http_client)
    return StoragePolicyService(
        cache=cache,
        registry=registry,
        strategies=StrategyManager(registry, oauth),
        codec=get_public_id_codec(),
        vfs=vfs_service,
        tx=transaction_manager,
        cache_ttl_seconds=60,
    )


def test_onedrive_authorization_flow(db_session_fixture, owner_id, unique_name):
    db = db_session_fixture

    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == get_settings().onedrive_token_url
        return httpx.Response(200, json={"access_token": "at", "refresh_token": "rt-new", "expires_in": 3600})

    service = _service_with_transport(handler)
    info = service.create_policy(
        db,
        owner_id,
        {
            "name": unique_name(),
            "type": "onedrive",
            "virtual_path": f"/{unique_name()}",
            "access_key": "client-id",
            "secret_key": "client-secret",
            "settings": {"redirect_uri": "https://app.test/callback"},
        },
    )
    public_id = service.encode_id(info.id)

    url = service.generate_auth_url(db, public_id)
    assert parse_qs(urlsplit(url).query)["state"] == [public_id]

    authorized = service.finalize_auth(db, code="auth-code", state=public_id)

    assert authorized.settings.refresh_token == "rt-new"
    assert authorized.settings.redirect_uri == "https://app.test/callback"
    public = service.to_public_dict(authorized)
    assert public["id"] == public_id
    assert "refresh_token" not in public["settings"]
    assert "secret_key" not in public


def test_partial_settings_update_keeps_refresh_token(db_session_fixture, owner_id, unique_name):
    db = db_session_fixture
    service = _service_with_transport(
        lambda request: httpx.Response(200, json={"access_token": "at", "refresh_token": "rt-keep", "expires_in": 3600})
    )
    info = service.create_policy(
        db,
        owner_id,
        {
            "name": unique_name(),
            "type": "onedrive",
            "virtual_path": f"/{unique_name()}",
            "access_key": "client-id",
            "secret_key": "client-secret",
        },
    )
    public_id = service.encode_id(info.id)
    service.finalize_auth(db, code="c", state=public_id)

    updated = service.update_policy(db, public_id, {"settings": {"chunk_size": 327680}})

    assert updated.settings.chunk_size == 327680
    assert updated.settings.refresh_token == "rt-keep"


def test_relocation_into_own_subtree_is_rejected(policy_service, db_session_fixture, owner_id, unique_name):
    db = db_session_fixture
    path = f"/{unique_name()}"
    info = _create_local(policy_service, db, owner_id, unique_name(), path)

    with pytest.raises(InvalidVirtualPath):
        policy_service.update_policy(db, policy_service.encode_id(info.id), {"virtual_path": f"{path}/sub"})

    node = file_crud.get(db, info.node_id)
    assert node.parent_id != node.id
    assert vfs_service.build_path(db, node) == path
    assert vfs_service.resolve_path(db, owner_id, path).id == info.node_id


def test_relocation_without_mount_node_uses_root_owner(policy_service, db_session_fixture, owner_id, unique_name):
    db = db_session_fixture
    info = _create_local(policy_service, db, owner_id, unique_name(), f"/{unique_name()}")
    row = storage_policy_crud.get(db, info.id)
    row.node_id = None
    db.commit()
    root_node = file_crud.get(db, policy_service.get_policy_by_database_id(db, ROOT_POLICY_ID).node_id)

    updated = policy_service.update_policy(db, policy_service.encode_id(info.id), {"virtual_path": f"/{unique_name()}"})

    assert file_crud.get(db, updated.node_id).owner_id == root_node.owner_id


def _mount_with_file(policy_service, db, owner_id, unique_name):
    info = _create_local(policy_service, db, owner_id, unique_name(), f"/{unique_name()}")
    entity = Entity(policy_id=info.id, source="data/keep.txt", size=1)
    db.add(entity)
    db.flush()
    node = File(
        owner_id=owner_id,
        parent_id=info.node_id,
        name="keep.txt",
        type=FileTypeEnum.FILE.value,
        size=1,
        primary_entity_id=entity.id,
        children_count=0,
    )
    db.add(node)
    db.flush()
    db.add(FileEntity(file_id=node.id, entity_id=entity.id))
    db.commit()
    return info, entity.id, node.id


def test_failed_pre_delete_hook_rolls_back_deletion(policy_service, db_session_fixture, owner_id, unique_name, monkeypatch):
    db = db_session_fixture
    info, entity_id, file_id = _mount_with_file(policy_service, db, owner_id, unique_name)

    def refuse(policy):
        raise RuntimeError("backend refused")

    monkeypatch.setattr(policy_service.strategies.get("local"), "before_delete", refuse)

    with pytest.raises(RuntimeError):
        policy_service.delete_policy(db, policy_service.encode_id(info.id))

    db.expire_all()
    assert storage_policy_crud.get(db, info.id) is not None
    assert [entity.id for entity in entity_crud.list_by_policy(db, info.id)] == [entity_id]
    assert [link.file_id for link in file_entity_crud.list_by_entity_ids(db, [entity_id])] == [file_id]
    assert file_crud.get(db, file_id) is not None
    assert file_crud.get(db, info.node_id) is not None


def test_cleanup_failures_after_commit_keep_deletion(policy_service, db_session_fixture, owner_id, unique_name, monkeypatch):
    db = db_session_fixture
    info, entity_id, file_id = _mount_with_file(policy_service, db, owner_id, unique_name)

    def fail(policy):
        raise RuntimeError("cleanup failed")

    monkeypatch.setattr(policy_service.deletion, "invalidate_cache", fail)
    monkeypatch.setattr(policy_service.strategies.get("local"), "purge_credentials", fail)

    ctx = policy_service.delete_policy(db, policy_service.encode_id(info.id))

    assert ctx.stage.value == "done"
    assert ctx.summary() == {"entities": 1, "files": 2, "links": 1}
    assert storage_policy_crud.get(db, info.id) is None
    assert entity_crud.list_by_policy(db, info.id) == []
    assert file_crud.get(db, file_id, include_deleted=True) is None
