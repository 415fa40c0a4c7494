"""腾讯云 COS 适配器测试。"""

from __future__ import annotations

import io

import httpx
import pytest
from qcloud_cos.cos_exception import CosServiceError

from storage_vfs.packages.storage.core.constants import DEFAULT_URL_EXPIRES_IN
from storage_vfs.packages.storage.core.exceptions import (
    InvalidPolicySettings,
    ObjectNotFound,
    PartialRenameError,
    ProviderError,
)
from storage_vfs.packages.storage.services.policy_settings import StoragePolicyInfo
from storage_vfs.packages.storage.services.providers.base import DownloadURLOptions
from storage_vfs.packages.storage.services.providers.cos import COSStorageProvider, parse_bucket_url

SERVER = "https://examplebucket-1250000000.cos.ap-guangzhou.myqcloud.com"


def _service_error(code: str, status: int) -> CosServiceError:
    digest = {"code": code, "message": code, "resource": "", "requestid": "", "traceid": ""}
    return CosServiceError("GET", digest, status)


class FakeStream:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def get_raw_stream(self):
        return io.BytesIO(self._data)


class FakeCosClient:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.calls: list[tuple] = []
        self.fail_delete = False

    def put_object(self, Bucket, Body, Key, **kwargs):
        self.objects[Key] = Body if isinstance(Body, bytes) else Body.read()
        self.calls.append(("put_object", Bucket, Key, kwargs.get("ContentType")))

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise _service_error("NoSuchKey", 404)
        return {"Body": FakeStream(self.objects[Key])}

    def copy_object(self, Bucket, Key, CopySource):
        self.calls.append(("copy_object", Bucket, Key, CopySource))
        if CopySource["Key"] not in self.objects:
            raise _service_error("NoSuchKey", 404)
        self.objects[Key] = self.objects[CopySource["Key"]]

    def delete_object(self, Bucket, Key):
        self.calls.append(("delete_object", Bucket, Key))
        if self.fail_delete:
            raise _service_error("AccessDenied", 403)
        self.objects.pop(Key, None)

    def delete_objects(self, Bucket, Delete):
        self.calls.append(("delete_objects", Bucket, len(Delete["Object"]), Delete["Quiet"]))
        return {}

    def object_exists(self, Bucket, Key):
        return Key in self.objects

    def list_objects(self, Bucket, Prefix, Delimiter, Marker, MaxKeys):
        self.calls.append(("list_objects", Prefix, Marker))
        if not Marker:
            return {
                "CommonPrefixes": [{"Prefix": "art/2024/"}],
                "Contents": [{"Key": "art/a.jpg", "Size": "3", "LastModified": "2024-05-01T10:00:00.000Z"}],
                "IsTruncated": "true",
                "NextMarker": "art/a.jpg",
            }
        return {"Contents": [{"Key": "art/b.jpg", "Size": "5"}], "IsTruncated": "false"}

    def get_presigned_download_url(self, Bucket, Key, Expired, Params):
        self.calls.append(("get_presigned_download_url", Bucket, Key, Expired, dict(Params)))
        return f"{SERVER}/{Key}?q-signature=fake"

    def get_presigned_url(self, Method, Bucket, Key, Expired):
        self.calls.append(("get_presigned_url", Method, Bucket, Key, Expired))
        return f"{SERVER}/{Key}?q-signature=put"


def _policy(**overrides) -> StoragePolicyInfo:
    data = {
        "id": 31,
        "name": "cos",
        "type": "cos",
        "server": SERVER,
        "access_key": "secret-id",
        "secret_key": "secret-key",
        "base_path": "art",
        "virtual_path": "/cos",
        "settings": {},
    }
    data.update(overrides)
    return StoragePolicyInfo.model_validate(data)


def _provider(client: FakeCosClient, handler=None) -> COSStorageProvider:
    transport = httpx.MockTransport(handler or (lambda request: httpx.Response(403)))
    return COSStorageProvider(http_client=httpx.Client(transport=transport), client_factory=lambda policy: client)


def test_parse_bucket_url():
    assert parse_bucket_url(SERVER) == ("https", "examplebucket-1250000000", "ap-guangzhou")
    assert parse_bucket_url("examplebucket-1250000000.cos.ap-beijing.myqcloud.com")[2] == "ap-beijing"
    with pytest.raises(InvalidPolicySettings):
        parse_bucket_url("https://example.com")


def test_upload_and_get_round_trip():
    client = FakeCosClient()
    provider = _provider(client)

    result = provider.upload(io.BytesIO(b"hello"), _policy(), "/cos/docs/a.txt")

    assert result.source == "art/docs/a.txt"
    assert client.calls[0] == ("put_object", "examplebucket-1250000000", "art/docs/a.txt", "text/plain")
    assert provider.get(_policy(), result.source).read() == b"hello"


def test_get_missing_object_raises():
    with pytest.raises(ObjectNotFound):
        _provider(FakeCosClient()).get(_policy(), "art/missing.txt")


def test_list_follows_markers():
    client = FakeCosClient()

    items = _provider(client).list(_policy(), "/cos")

    assert [(item.name, item.is_dir, item.size) for item in items] == [
        ("2024", True, 0),
        ("a.jpg", False, 3),
        ("b.jpg", False, 5),
    ]
    assert items[1].mod_time is not None
    assert [call[2] for call in client.calls if call[0] == "list_objects"] == ["", "art/a.jpg"]


def test_rename_passes_region_in_copy_source():
    client = FakeCosClient()
    client.objects["art/a.jpg"] = b"1"

    _provider(client).rename(_policy(), "/cos/a.jpg", "/cos/b.jpg")

    assert client.calls[0] == (
        "copy_object",
        "examplebucket-1250000000",
        "art/b.jpg",
        {"Bucket": "examplebucket-1250000000", "Key": "art/a.jpg", "Region": "ap-guangzhou"},
    )
    assert client.calls[1] == ("delete_object", "examplebucket-1250000000", "art/a.jpg")


def test_rename_failures():
    client = FakeCosClient()
    with pytest.raises(ObjectNotFound):
        _provider(client).rename(_policy(), "/cos/a.jpg", "/cos/b.jpg")
    assert [call[0] for call in client.calls] == ["copy_object"]

    client = FakeCosClient()
    client.objects["art/a.jpg"] = b"1"
    client.fail_delete = True
    with pytest.raises(PartialRenameError):
        _provider(client).rename(_policy(), "/cos/a.jpg", "/cos/b.jpg")
    assert set(client.objects) == {"art/a.jpg", "art/b.jpg"}


def test_delete_is_quiet_and_batched():
    client = FakeCosClient()

    _provider(client).delete(_policy(), [f"art/{i}" for i in range(1200)])

    assert client.calls == [
        ("delete_objects", "examplebucket-1250000000", 1000, "true"),
        ("delete_objects", "examplebucket-1250000000", 200, "true"),
    ]


def test_public_url_appends_bare_directive():
    url = _provider(FakeCosClient()).get_download_url(
        _policy(), "art/a.jpg", DownloadURLOptions(image_process="imageMogr2/thumbnail/100x")
    )

    assert url == f"{SERVER}/art/a.jpg?imageMogr2/thumbnail/100x"


def test_public_url_with_style_and_cdn():
    policy = _policy(settings={"style_separator": "-", "cdn_domain": "img.example.com/"})

    url = _provider(FakeCosClient()).get_download_url(policy, "art/a.jpg", DownloadURLOptions(image_process="small"))

    assert url == "https://img.example.com/art/a.jpg-small"


def test_private_url_signs_directive_as_empty_param():
    client = FakeCosClient()
    provider = _provider(client)

    provider.get_download_url(
        _policy(is_private=True),
        "art/a.jpg",
        DownloadURLOptions(expires_in=300, query_params={"download": "1"}, image_process="imageMogr2/thumbnail/100x"),
    )

    assert client.calls[-1] == (
        "get_presigned_download_url",
        "examplebucket-1250000000",
        "art/a.jpg",
        300,
        {"download": "1", "imageMogr2/thumbnail/100x": ""},
    )


def test_thumbnail_falls_back_on_forbidden():
    client = FakeCosClient()
    client.objects["art/a.jpg"] = b"raw"

    result = _provider(client).get_thumbnail(_policy(), "art/a.jpg", "64x64")

    assert (result.content_type, result.data) == ("image/jpeg", b"raw")


def test_thumbnail_server_error_is_raised():
    provider = _provider(FakeCosClient(), lambda request: httpx.Response(500))

    with pytest.raises(ProviderError):
        provider.get_thumbnail(_policy(), "art/a.jpg", "64x64")


def test_presigned_upload_uses_put():
    client = FakeCosClient()

    upload = _provider(client).create_presigned_upload_url(_policy(), "/cos/new.png", 900)

    assert upload.method == "PUT"
    assert upload.source == "art/new.png"
    assert upload.headers == {"Content-Type": "image/png"}
    assert client.calls[-1] == ("get_presigned_url", "PUT", "examplebucket-1250000000", "art/new.png", 900)


def test_private_thumbnail_uses_default_expiry():
    client = FakeCosClient()
    client.objects["art/a.jpg"] = b"raw"

    _provider(client).get_thumbnail(_policy(is_private=True), "art/a.jpg", "64x64")

    signed = [call for call in client.calls if call[0] == "get_presigned_download_url"]
    assert signed == [
        ("get_presigned_download_url", "examplebucket-1250000000", "art/a.jpg", DEFAULT_URL_EXPIRES_IN, {"imageMogr2/thumbnail/64x64": ""})
    ]
