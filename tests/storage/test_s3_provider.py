"""S3 适配器测试：使用 botocore Stubber 校验实际发出的 API 调用。"""

from __future__ import annotations

import boto3
import pytest
from botocore.config import Config
from botocore.exceptions import EndpointConnectionError
from botocore.stub import ANY, Stubber

from storage_vfs.packages.storage.core.exceptions import ObjectNotFound, PartialRenameError, ProviderError
from storage_vfs.packages.storage.services.policy_settings import StoragePolicyInfo
from storage_vfs.packages.storage.services.providers.base import DownloadURLOptions
from storage_vfs.packages.storage.services.providers.s3 import (
    S3StorageProvider,
    public_base_url,
    resolve_region_and_endpoint,
)


def _policy(**overrides) -> StoragePolicyInfo:
    data = {
        "id": 11,
        "name": "s3",
        "type": "s3",
        "server": "us-east-1",
        "bucket_name": "bucket",
        "access_key": "AKIDEXAMPLE",
        "secret_key": "secret",
        "base_path": "art",
        "virtual_path": "/pics",
        "settings": {},
    }
    data.update(overrides)
    return StoragePolicyInfo.model_validate(data)


@pytest.fixture()
def s3_client():
    return boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="AKIDEXAMPLE",
        aws_secret_access_key="secret",
        config=Config(signature_version="s3v4"),
    )


@pytest.fixture()
def provider(s3_client) -> S3StorageProvider:
    return S3StorageProvider(client_factory=lambda policy: s3_client)


def test_rename_copies_then_deletes(provider, s3_client):
    with Stubber(s3_client) as stubber:
        stubber.add_response(
            "copy_object",
            {},
            {"Bucket": "bucket", "Key": "art/2024/b.jpg", "CopySource": {"Bucket": "bucket", "Key": "art/a.jpg"}},
        )
        stubber.add_response("delete_object", {}, {"Bucket": "bucket", "Key": "art/a.jpg"})

        provider.rename(_policy(), "/pics/a.jpg", "/pics/2024/b.jpg")

        stubber.assert_no_pending_responses()


def test_failed_copy_never_deletes(provider, s3_client):
    with Stubber(s3_client) as stubber:
        stubber.add_client_error("copy_object", service_error_code="NoSuchKey", http_status_code=404)

        with pytest.raises(ObjectNotFound):
            provider.rename(_policy(), "/pics/a.jpg", "/pics/b.jpg")

        # 没有为 delete_object 准备响应，若被调用 Stubber 会直接报错
        stubber.assert_no_pending_responses()


def test_copy_failure_other_than_not_found_is_provider_error(provider, s3_client):
    with Stubber(s3_client) as stubber:
        stubber.add_client_error("copy_object", service_error_code="AccessDenied", http_status_code=403)

        with pytest.raises(ProviderError) as exc_info:
            provider.rename(_policy(), "/pics/a.jpg", "/pics/b.jpg")

    assert not isinstance(exc_info.value, PartialRenameError)


def test_failed_delete_after_copy_reports_both_keys(provider, s3_client):
    with Stubber(s3_client) as stubber:
        stubber.add_response("copy_object", {}, None)
        stubber.add_client_error("delete_object", service_error_code="AccessDenied", http_status_code=403)

        with pytest.raises(PartialRenameError) as exc_info:
            provider.rename(_policy(), "/pics/a.jpg", "/pics/b.jpg")

    assert exc_info.value.source_key == "art/a.jpg"
    assert exc_info.value.target_key == "art/b.jpg"


def test_delete_is_batched(provider, s3_client):
    keys = [f"art/{i}.jpg" for i in range(1001)]
    with Stubber(s3_client) as stubber:
        stubber.add_response("delete_objects", {"Deleted": []}, {"Bucket": "bucket", "Delete": ANY})
        stubber.add_response("delete_objects", {"Deleted": []}, {"Bucket": "bucket", "Delete": ANY})

        provider.delete(_policy(), keys)

        stubber.assert_no_pending_responses()


def test_delete_reports_per_key_errors(provider, s3_client):
    with Stubber(s3_client) as stubber:
        stubber.add_response(
            "delete_objects",
            {"Errors": [{"Key": "art/a.jpg", "Code": "AccessDenied", "Message": "denied"}]},
            None,
        )

        with pytest.raises(ProviderError):
            provider.delete(_policy(), ["art/a.jpg"])


def test_exists_maps_not_found_to_false(provider, s3_client):
    with Stubber(s3_client) as stubber:
        stubber.add_response("head_object", {}, {"Bucket": "bucket", "Key": "art/a.jpg"})
        stubber.add_client_error("head_object", service_error_code="404", http_status_code=404)

        assert provider.exists(_policy(), "art/a.jpg") is True
        assert provider.exists(_policy(), "art/missing.jpg") is False


def test_list_splits_prefixes_and_objects(provider, s3_client):
    with Stubber(s3_client) as stubber:
        stubber.add_response(
            "list_objects_v2",
            {
                "IsTruncated": False,
                "CommonPrefixes": [{"Prefix": "art/2024/"}],
                "Contents": [{"Key": "art/", "Size": 0}, {"Key": "art/a.jpg", "Size": 3}],
            },
            {"Bucket": "bucket", "Prefix": "art/", "Delimiter": "/"},
        )

        items = provider.list(_policy(), "/pics")

    assert [(item.name, item.is_dir, item.size) for item in items] == [("2024", True, 0), ("a.jpg", False, 3)]


def test_private_policy_gets_presigned_url(provider):
    options = DownloadURLOptions(
        expires_in=60,
        query_params={"response-content-disposition": "attachment", "download": "1"},
    )

    url = provider.get_download_url(_policy(is_private=True), "art/a.jpg", options)

    assert "X-Amz-Signature=" in url
    assert "response-content-disposition=attachment" in url
    # 非 response-* 参数无法参与 S3 签名
    assert "download=1" not in url


def test_public_policy_url_applies_style_and_query(provider):
    policy = _policy(settings={"style_separator": "!"})
    options = DownloadURLOptions(query_params={"download": "1"}, image_process="thumb")

    url = provider.get_download_url(policy, "art/a.jpg", options)

    assert url == "https://s3.us-east-1.amazonaws.com/bucket/art/a.jpg!thumb?download=1"
    assert "X-Amz-Signature" not in url


def test_source_auth_policy_uses_cdn_without_signing(provider):
    policy = _policy(is_private=True, settings={"source_auth": True, "cdn_domain": "cdn.example.com"})

    assert provider.get_download_url(policy, "art/a.jpg") == "https://cdn.example.com/art/a.jpg"


def test_custom_endpoint_resolution():
    assert resolve_region_and_endpoint("https://minio.local:9000/") == ("us-east-1", "https://minio.local:9000")
    assert resolve_region_and_endpoint("ap-east-1") == ("ap-east-1", None)
    assert resolve_region_and_endpoint(None) == ("us-east-1", None)
    assert public_base_url(_policy(server="https://minio.local:9000")) == "https://minio.local:9000/bucket"


def test_forget_client_drops_cached_instance():
    built = []
    provider = S3StorageProvider(client_factory=lambda policy: built.append(policy.id) or object())
    policy = _policy()

    first = provider.client(policy)
    assert provider.client(policy) is first
    provider.forget_client(policy.id)
    assert provider.client(policy) is not first
    assert built == [11, 11]


class _UnreachableClient:
    """每个调用都抛出连接错误的客户端。"""

    def __getattr__(self, name):
        def _call(**kwargs):
            raise EndpointConnectionError(endpoint_url="https://s3.unreachable.test")

        return _call


@pytest.mark.parametrize(
    "call",
    [
        lambda p: p.get(_policy(), "art/a.jpg"),
        lambda p: p.exists(_policy(), "art/a.jpg"),
        lambda p: p.rename(_policy(), "/pics/a.jpg", "/pics/b.jpg"),
    ],
)
def test_connection_errors_are_wrapped(call):
    provider = S3StorageProvider(client_factory=lambda policy: _UnreachableClient())

    with pytest.raises(ProviderError) as exc_info:
        call(provider)

    assert not isinstance(exc_info.value, (ObjectNotFound, PartialRenameError))
