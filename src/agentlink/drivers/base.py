"""
プロバイダドライバ共通インターフェース

接続検証・モデル取得・保存済み接続の再検証・起動時設定の組み立てを
プロバイダ種別ごとに差し替え可能にする
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Dict, List, Optional

from agentlink.auth.storage import CredentialStore
from agentlink.catalog.resolver import ModelResolver
from agentlink.config.settings import AgentLinkSettings
from agentlink.core.probe import ProbeEngine
from agentlink.errors import ErrorCode
from agentlink.models import (
    Connection,
    Credential,
    ModelDescriptor,
    ProviderType,
    ResolvedPaths,
    RuntimeConfig,
    ValidationResult,
)

logger = logging.getLogger(__name__)

API_KEY_NOT_FOUND_MESSAGE = "APIキーが見つかりません。"


class ProviderDriver(ABC):
    """プロバイダドライバの基底クラス

    ネットワーク処理はProbeEngineとModelResolverに委譲する。
    """

    provider_type: ClassVar[ProviderType]

    def __init__(
        self,
        settings: Optional[AgentLinkSettings] = None,
        *,
        probe: Optional[ProbeEngine] = None,
        resolver: Optional[ModelResolver] = None,
    ) -> None:
        self.settings = settings or AgentLinkSettings()
        self._probe = probe or ProbeEngine(self.settings)
        self._resolver = resolver or ModelResolver()

    def build_runtime(
        self,
        connection: Optional[Connection] = None,
        options: Optional[Dict[str, Any]] = None,
        paths: Optional[ResolvedPaths] = None,
    ) -> RuntimeConfig:
        """起動時設定を組み立てる（I/Oなし）"""
        resolved = paths or ResolvedPaths()
        sub_provider = (options or {}).get("sub_provider") or (
            connection.sub_provider if connection else None
        )
        return RuntimeConfig(
            paths={
                "server": resolved.server_path,
                "interceptor": resolved.interceptor_bundle_path,
                "node": resolved.node_runtime_path,
            },
            sub_provider=sub_provider,
        )

    @abstractmethod
    async def test_connection(
        self,
        credential: Optional[Credential],
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ValidationResult:
        """入力された認証情報で接続を検証する"""

    async def fetch_models(
        self,
        connection: Connection,
        credential: Optional[Credential],
        paths: Optional[ResolvedPaths] = None,
        timeout: Optional[float] = None,
    ) -> List[ModelDescriptor]:
        """接続のモデル一覧を取得する

        Raises:
            NoModelsFound: モデルが解決できない場合
        """
        return await self._resolver.fetch_models(
            connection,
            credential,
            paths,
            timeout if timeout is not None else self.settings.model_list_timeout,
        )

    async def validate_stored_connection(
        self,
        connection: Connection,
        credential_store: CredentialStore,
    ) -> ValidationResult:
        """保存済み接続を再検証する

        キー認証は保存済みキーで短いタイムアウトのプローブを行う。
        OAuth接続のトークン鮮度はセッション開始時に確認するため、ここでは成功とする。
        """
        if not connection.auth_type.is_key_style:
            return ValidationResult.ok()

        credential = credential_store.get_credential(connection.slug)
        api_key = credential.api_key if credential else None
        if not api_key:
            logger.info("No stored API key for connection %s", connection.slug)
            return ValidationResult.fail(
                API_KEY_NOT_FOUND_MESSAGE,
                code=ErrorCode.AUTH_CREDENTIAL_NOT_FOUND.value,
            )

        return await self._probe.probe(
            api_key,
            endpoint_override=connection.base_url,
            timeout=self.settings.stored_probe_timeout,
        )

    async def _probe_key(
        self,
        credential: Optional[Credential],
        endpoint: Optional[str],
        timeout: Optional[float],
        cancel_event: Optional[asyncio.Event],
    ) -> ValidationResult:
        api_key = credential.api_key if credential else None
        if not api_key:
            return ValidationResult.fail(
                API_KEY_NOT_FOUND_MESSAGE,
                code=ErrorCode.AUTH_CREDENTIAL_NOT_FOUND.value,
            )
        return await self._probe.probe(
            api_key,
            endpoint_override=endpoint,
            timeout=timeout if timeout is not None else self.settings.probe_timeout,
            cancel_event=cancel_event,
        )
