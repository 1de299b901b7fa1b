"""
プロバイダドライバのディスパッチテーブル

ProviderTypeの全メンバーに対応するドライバがあることをインポート時に検査する
"""

from typing import Dict, Mapping, Optional, Type

from agentlink.catalog.resolver import ModelResolver
from agentlink.config.settings import AgentLinkSettings
from agentlink.core.probe import ProbeEngine
from agentlink.drivers.base import ProviderDriver
from agentlink.drivers.builtin import (
    CustomCompatibleDriver,
    DeviceOAuthDriver,
    KeyAuthDriver,
    LocalDriver,
    OAuthSubscriptionDriver,
)
from agentlink.models import ProviderType

DRIVERS: Dict[ProviderType, Type[ProviderDriver]] = {
    ProviderType.KEY_AUTH: KeyAuthDriver,
    ProviderType.OAUTH_SUBSCRIPTION: OAuthSubscriptionDriver,
    ProviderType.DEVICE_OAUTH: DeviceOAuthDriver,
    ProviderType.LOCAL: LocalDriver,
    ProviderType.CUSTOM_COMPATIBLE: CustomCompatibleDriver,
}


def _check_exhaustive(table: Mapping[ProviderType, Type[ProviderDriver]]) -> None:
    missing = [member.value for member in ProviderType if member not in table]
    if missing:
        raise RuntimeError(f"No driver registered for provider types: {', '.join(missing)}")
    for provider_type, driver_cls in table.items():
        if driver_cls.provider_type is not provider_type:
            raise RuntimeError(
                f"Driver {driver_cls.__name__} is registered for {provider_type.value} "
                f"but declares {driver_cls.provider_type.value}"
            )


_check_exhaustive(DRIVERS)


def get_driver(
    provider_type: ProviderType,
    settings: Optional[AgentLinkSettings] = None,
    *,
    probe: Optional[ProbeEngine] = None,
    resolver: Optional[ModelResolver] = None,
) -> ProviderDriver:
    """プロバイダ種別に対応するドライバを生成する"""
    return DRIVERS[provider_type](settings, probe=probe, resolver=resolver)


__all__ = [
    "CustomCompatibleDriver",
    "DRIVERS",
    "DeviceOAuthDriver",
    "KeyAuthDriver",
    "LocalDriver",
    "OAuthSubscriptionDriver",
    "ProviderDriver",
    "get_driver",
]
