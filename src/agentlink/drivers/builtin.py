"""
組み込みプロバイダドライバ
"""

from __future__ import annotations

import asyncio
from typing import Optional

from agentlink.drivers.base import ProviderDriver
from agentlink.errors import ErrorCode
from agentlink.models import Credential, ProviderType, ValidationResult

TOKEN_NOT_FOUND_MESSAGE = "OAuthトークンが見つかりません。もう一度サインインしてください。"


class KeyAuthDriver(ProviderDriver):
    """APIキーで直接接続するプロバイダ"""

    provider_type = ProviderType.KEY_AUTH

    async def test_connection(
        self,
        credential: Optional[Credential],
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ValidationResult:
        # 完全なハンドシェイクではなく軽量なプローブで確認する
        return await self._probe_key(credential, endpoint, timeout, cancel_event)


class CustomCompatibleDriver(KeyAuthDriver):
    """互換APIを持つ任意エンドポイント"""

    provider_type = ProviderType.CUSTOM_COMPATIBLE


class _StoredTokenDriver(ProviderDriver):
    """保存済みトークンの有無だけを高速チェックとするOAuthドライバ"""

    async def test_connection(
        self,
        credential: Optional[Credential],
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ValidationResult:
        if credential is None or not credential.oauth_access_token:
            return ValidationResult.fail(
                TOKEN_NOT_FOUND_MESSAGE,
                code=ErrorCode.AUTH_CREDENTIAL_NOT_FOUND.value,
            )
        return ValidationResult.ok()


class OAuthSubscriptionDriver(_StoredTokenDriver):
    """ブラウザOAuthで認証するサブスクリプション"""

    provider_type = ProviderType.OAUTH_SUBSCRIPTION


class DeviceOAuthDriver(_StoredTokenDriver):
    """デバイスコードOAuthで認証するプロバイダ"""

    provider_type = ProviderType.DEVICE_OAUTH


class LocalDriver(ProviderDriver):
    """認証不要のローカルモデルサーバー"""

    provider_type = ProviderType.LOCAL

    async def test_connection(
        self,
        credential: Optional[Credential],
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ValidationResult:
        return ValidationResult.ok()
