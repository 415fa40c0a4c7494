"""存储策略配置：把数据库中的 JSON ``settings`` 解析为按类型区分的强类型模型。

``StoragePolicyInfo`` 是存储策略的只读快照，既用于服务层在各组件之间传递，
也用于写入缓存时的 JSON 序列化。
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from storage_vfs.packages.storage.core.constants import DEFAULT_ONEDRIVE_CHUNK_SIZE, STYLE_SEPARATORS
from storage_vfs.packages.storage.core.enums import PolicyTypeEnum
from storage_vfs.packages.storage.core.exceptions import InvalidPolicySettings, InvalidPolicyType


class BasePolicySettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    upload_method: Literal["server", "client"] = "server"
    allowed_extensions: list[str] = Field(default_factory=list)
    chunk_size: int = Field(default=0, ge=0)

    @field_validator("allowed_extensions")
    @classmethod
    def _normalize_extensions(cls, value: list[str]) -> list[str]:
        normalized = []
        for item in value:
            ext = (item or "").strip().lstrip(".").lower()
            if ext and ext not in normalized:
                normalized.append(ext)
        return normalized

    def allows_extension(self, filename: str) -> bool:
        """未配置白名单时放行所有扩展名。"""
        if not self.allowed_extensions:
            return True
        _, _, ext = filename.rpartition(".")
        return bool(ext) and ext.lower() in self.allowed_extensions


class CdnSettingsMixin(BaseModel):
    cdn_domain: str = ""
    source_auth: bool = False

    @field_validator("cdn_domain")
    @classmethod
    def _strip_cdn_domain(cls, value: str) -> str:
        return (value or "").strip().rstrip("/")


class LocalSettings(BasePolicySettings, CdnSettingsMixin):
    type: Literal["local"] = "local"


class ObjectStoreSettings(BasePolicySettings, CdnSettingsMixin):
    style_separator: str = ""

    @field_validator("style_separator")
    @classmethod
    def _check_separator(cls, value: str) -> str:
        value = value or ""
        if value not in STYLE_SEPARATORS:
            raise ValueError("style_separator 仅支持 '!'、'/'、'|'、'-' 或留空")
        return value


class S3Settings(ObjectStoreSettings):
    type: Literal["s3"] = "s3"
    force_path_style: bool = False


class OSSSettings(ObjectStoreSettings):
    type: Literal["oss"] = "oss"


class COSSettings(ObjectStoreSettings):
    type: Literal["cos"] = "cos"


class OneDriveSettings(BasePolicySettings, CdnSettingsMixin):
    type: Literal["onedrive"] = "onedrive"
    # 默认由客户端直传到上传会话
    upload_method: Literal["server", "client"] = "client"
    drive_id: str = ""
    chunk_size: int = Field(default=DEFAULT_ONEDRIVE_CHUNK_SIZE, ge=0)
    redirect_uri: str = ""
    refresh_token: str = ""

    @model_validator(mode="after")
    def _source_auth_requires_cdn(self) -> "OneDriveSettings":
        # OneDrive 没有可直接访问的公共域名，开启源站鉴权必须配合 CDN
        if self.source_auth and not self.cdn_domain:
            raise ValueError("开启 source_auth 时必须配置 cdn_domain")
        return self


PolicySettings = Annotated[
    Union[LocalSettings, S3Settings, OSSSettings, COSSettings, OneDriveSettings],
    Field(discriminator="type"),
]

SETTINGS_MODELS: dict[str, type[BasePolicySettings]] = {
    PolicyTypeEnum.LOCAL.value: LocalSettings,
    PolicyTypeEnum.S3.value: S3Settings,
    PolicyTypeEnum.OSS.value: OSSSettings,
    PolicyTypeEnum.COS.value: COSSettings,
    PolicyTypeEnum.ONEDRIVE.value: OneDriveSettings,
}


def parse_policy_settings(policy_type: str, raw: Optional[dict[str, Any]]) -> BasePolicySettings:
    """按策略类型解析配置，类型未知抛 ``InvalidPolicyType``，字段非法抛 ``InvalidPolicySettings``。"""
    model = SETTINGS_MODELS.get(policy_type)
    if model is None:
        raise InvalidPolicyType(f"不支持的存储策略类型: {policy_type}")
    payload = dict(raw or {})
    payload["type"] = policy_type
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "settings"
        raise InvalidPolicySettings(f"存储策略配置无效（{field}）：{first.get('msg')}") from exc


def dump_policy_settings(settings: BasePolicySettings) -> dict[str, Any]:
    """序列化为可持久化的 JSON 对象，类型标签由策略行自身的 ``type`` 承载。"""
    return settings.model_dump(exclude={"type"})


class StoragePolicyInfo(BaseModel):
    """存储策略只读快照。"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: str
    server: Optional[str] = None
    bucket_name: Optional[str] = None
    is_private: bool = False
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    max_size: int = 0
    base_path: Optional[str] = None
    virtual_path: str
    flag: Optional[str] = None
    node_id: Optional[int] = None
    settings: PolicySettings
    create_time: Optional[datetime] = None
    update_time: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _tag_settings(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            data = {name: getattr(data, name, None) for name in cls.model_fields}
        settings = data.get("settings")
        if settings is None:
            settings = {}
        if isinstance(settings, dict):
            data = {**data, "settings": {**settings, "type": data.get("type")}}
        return data
