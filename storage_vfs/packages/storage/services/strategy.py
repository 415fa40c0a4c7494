"""存储策略类型策略：按类型校验配置、提供授权处理器以及删除前钩子。"""

from __future__ import annotations

from typing import Any, Dict, Optional

from storage_vfs.packages.storage.core.enums import PolicyTypeEnum
from storage_vfs.packages.storage.core.exceptions import InvalidPolicySettings, InvalidPolicyType
from storage_vfs.packages.storage.core.logger import logger
from storage_vfs.packages.storage.services.policy_settings import (
    BasePolicySettings,
    StoragePolicyInfo,
    parse_policy_settings,
)
from storage_vfs.packages.storage.services.providers.cos import parse_bucket_url
from storage_vfs.packages.storage.services.providers.onedrive import OneDriveOAuthClient
from storage_vfs.packages.storage.services.providers.registry import ProviderRegistry

_FIELD_LABELS = {
    "server": "服务端点",
    "bucket_name": "存储桶名称",
    "access_key": "AccessKey",
    "secret_key": "SecretKey",
}


class PolicyStrategy:
    """默认策略：只做通用的必填字段与 settings 校验。"""

    required_fields: tuple[str, ...] = ()

    def __init__(self, policy_type: str, registry: ProviderRegistry) -> None:
        self.policy_type = policy_type
        self.registry = registry

    def validate_fields(self, fields: Dict[str, Any]) -> None:
        for name in self.required_fields:
            value = fields.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise InvalidPolicySettings(f"{self.policy_type} 存储策略缺少必填字段：{_FIELD_LABELS.get(name, name)}")

    def validate_settings(self, raw: Optional[Dict[str, Any]]) -> BasePolicySettings:
        return parse_policy_settings(self.policy_type, raw)

    def get_auth_handler(self) -> Optional[OneDriveOAuthClient]:
        return None

    def before_delete(self, policy: StoragePolicyInfo) -> None:
        """删除策略行之前的钩子，在删除事务内执行，抛出异常会回滚整个删除。"""

    def purge_credentials(self, policy: StoragePolicyInfo) -> None:
        """删除提交后释放缓存的 SDK 客户端与凭据。"""
        self.registry.forget_policy(policy.id)


class S3Strategy(PolicyStrategy):
    required_fields = ("bucket_name", "access_key", "secret_key")


class OSSStrategy(PolicyStrategy):
    required_fields = ("server", "bucket_name", "access_key", "secret_key")


class COSStrategy(PolicyStrategy):
    required_fields = ("server", "access_key", "secret_key")

    def validate_fields(self, fields: Dict[str, Any]) -> None:
        super().validate_fields(fields)
        parse_bucket_url(fields.get("server"))


class OneDriveStrategy(PolicyStrategy):
    required_fields = ("access_key", "secret_key")

    def __init__(self, policy_type: str, registry: ProviderRegistry, oauth: OneDriveOAuthClient) -> None:
        super().__init__(policy_type, registry)
        self.oauth = oauth

    def get_auth_handler(self) -> Optional[OneDriveOAuthClient]:
        return self.oauth

    def before_delete(self, policy: StoragePolicyInfo) -> None:
        # 删除期间不再复用缓存的访问令牌
        self.oauth.purge(policy.id)

    def purge_credentials(self, policy: StoragePolicyInfo) -> None:
        super().purge_credentials(policy)
        self.oauth.purge(policy.id)
        logger.info("Dropped cached OneDrive token for policy %s", policy.id)


class StrategyManager:
    def __init__(self, registry: ProviderRegistry, oauth: OneDriveOAuthClient) -> None:
        self._strategies: Dict[str, PolicyStrategy] = {
            PolicyTypeEnum.LOCAL.value: PolicyStrategy(PolicyTypeEnum.LOCAL.value, registry),
            PolicyTypeEnum.S3.value: S3Strategy(PolicyTypeEnum.S3.value, registry),
            PolicyTypeEnum.OSS.value: OSSStrategy(PolicyTypeEnum.OSS.value, registry),
            PolicyTypeEnum.COS.value: COSStrategy(PolicyTypeEnum.COS.value, registry),
            PolicyTypeEnum.ONEDRIVE.value: OneDriveStrategy(PolicyTypeEnum.ONEDRIVE.value, registry, oauth),
        }

    def get(self, policy_type: str) -> PolicyStrategy:
        strategy = self._strategies.get(policy_type)
        if strategy is None:
            raise InvalidPolicyType(f"不支持的存储策略类型: {policy_type}")
        return strategy
