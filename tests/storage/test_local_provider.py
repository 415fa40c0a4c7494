"""本地存储适配器测试。"""

from __future__ import annotations

import io
from urllib.parse import parse_qs, urlsplit

import pytest

from storage_vfs.packages.storage.core.exceptions import (
    ExtensionNotAllowed,
    FileTooLarge,
    InvalidVirtualPath,
    ObjectNotFound,
)
from storage_vfs.packages.storage.services.policy_settings import StoragePolicyInfo
from storage_vfs.packages.storage.services.providers.base import DownloadURLOptions
from storage_vfs.packages.storage.services.providers.local import (
    LocalStorageProvider,
    sign_local_source,
    verify_local_signature,
)

SECRET = "unit-secret"


def _policy(**overrides) -> StoragePolicyInfo:
    data = {
        "id": 7,
        "name": "local",
        "type": "local",
        "base_path": "uploads",
        "virtual_path": "/docs",
        "settings": {},
    }
    data.update(overrides)
    return StoragePolicyInfo.model_validate(data)


@pytest.fixture()
def provider(tmp_path) -> LocalStorageProvider:
    return LocalStorageProvider(tmp_path, "http://files.local/", SECRET)


def test_upload_then_get_returns_identical_bytes(provider, tmp_path):
    policy = _policy()
    payload = b"hello storage" * 1000

    result = provider.upload(io.BytesIO(payload), policy, "/docs/2024/report.txt")

    assert result.source == "uploads/2024/report.txt"
    assert result.size == len(payload)
    assert result.mime_type == "text/plain"
    assert (tmp_path / "uploads" / "2024" / "report.txt").read_bytes() == payload
    with provider.get(policy, result.source) as fh:
        assert fh.read() == payload


def test_stream_writes_all_bytes(provider):
    policy = _policy()
    payload = bytes(range(256)) * 600
    source = provider.upload(io.BytesIO(payload), policy, "/docs/blob.bin").source

    sink = io.BytesIO()
    written = provider.stream(policy, source, sink)

    assert written == len(payload)
    assert sink.getvalue() == payload


def test_get_missing_object_raises(provider):
    with pytest.raises(ObjectNotFound):
        provider.get(_policy(), "uploads/missing.txt")


def test_path_traversal_is_rejected(provider):
    with pytest.raises(InvalidVirtualPath):
        provider.get(_policy(), "../../etc/passwd")


def test_upload_respects_max_size_and_extensions(provider, tmp_path):
    limited = _policy(max_size=4)
    with pytest.raises(FileTooLarge):
        provider.upload(io.BytesIO(b"too large"), limited, "/docs/a.txt")
    assert not (tmp_path / "uploads" / "a.txt").exists()

    images_only = _policy(settings={"allowed_extensions": [".JPG", "png"]})
    with pytest.raises(ExtensionNotAllowed):
        provider.upload(io.BytesIO(b"x"), images_only, "/docs/a.txt")
    assert provider.upload(io.BytesIO(b"x"), images_only, "/docs/a.jpg").source == "uploads/a.jpg"


def test_list_rename_and_delete(provider):
    policy = _policy()
    provider.upload(io.BytesIO(b"1"), policy, "/docs/a.txt")
    provider.create_directory(policy, "/docs/sub")

    names = {(item.name, item.is_dir) for item in provider.list(policy, "/docs")}
    assert names == {("a.txt", False), ("sub", True)}

    provider.rename(policy, "/docs/a.txt", "/docs/sub/b.txt")
    assert not provider.exists(policy, "uploads/a.txt")
    assert provider.exists(policy, "uploads/sub/b.txt")

    provider.delete(policy, ["uploads/sub/b.txt", "uploads/never-existed.txt"])
    assert not provider.exists(policy, "uploads/sub/b.txt")

    provider.delete_directory(policy, "/docs/sub")
    assert provider.list(policy, "/docs") == []


def test_rename_missing_source_raises(provider):
    with pytest.raises(ObjectNotFound):
        provider.rename(_policy(), "/docs/ghost.txt", "/docs/other.txt")


def test_public_policy_url_uses_cdn_when_configured(provider):
    public = _policy()
    assert provider.get_download_url(public, "uploads/a b.txt") == "http://files.local/uploads/a%20b.txt"

    cdn = _policy(settings={"cdn_domain": "cdn.example.com/"})
    url = provider.get_download_url(cdn, "uploads/a.txt", DownloadURLOptions(query_params={"download": "1"}))
    assert url == "https://cdn.example.com/uploads/a.txt?download=1"


def test_private_policy_url_is_signed(provider):
    private = _policy(is_private=True)

    url = provider.get_download_url(private, "uploads/a.txt", DownloadURLOptions(expires_in=120))
    query = parse_qs(urlsplit(url).query)

    assert url.startswith("http://files.local/uploads/a.txt?")
    expires = int(query["expires"][0])
    assert verify_local_signature(SECRET, "uploads/a.txt", expires, query["sign"][0])
    assert not verify_local_signature(SECRET, "uploads/b.txt", expires, query["sign"][0])


def test_source_auth_policy_is_never_signed(provider):
    policy = _policy(is_private=True, settings={"source_auth": True, "cdn_domain": "https://cdn.example.com"})

    url = provider.get_download_url(policy, "uploads/a.txt")

    assert url == "https://cdn.example.com/uploads/a.txt"
    assert "sign=" not in url


def test_expired_signature_is_rejected():
    sign = sign_local_source(SECRET, "uploads/a.txt", 1000)

    assert verify_local_signature(SECRET, "uploads/a.txt", 1000, sign, now=999)
    assert not verify_local_signature(SECRET, "uploads/a.txt", 1000, sign, now=1001)
