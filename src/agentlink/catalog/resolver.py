"""
モデル解決

検証済み接続のモデルカタログを、動的一覧・ユーザー定義・静的レジストリの
いずれかから解決する（最初に一致した規則が優先）
"""

import logging
from typing import List, Optional

from agentlink.catalog import registry
from agentlink.catalog.copilot import ClientFactory, default_client_factory, fetch_copilot_models
from agentlink.errors import NoModelsFound
from agentlink.models import (
    SUB_PROVIDER_COPILOT,
    Connection,
    Credential,
    ModelDescriptor,
    ResolvedPaths,
)

logger = logging.getLogger(__name__)

CUSTOM_CONTEXT_WINDOW = 128_000


class ModelResolver:
    """接続の形に応じてモデル解決戦略を選ぶ"""

    def __init__(self, client_factory: ClientFactory = default_client_factory) -> None:
        self._client_factory = client_factory

    async def fetch_models(
        self,
        connection: Connection,
        credential: Optional[Credential],
        paths: Optional[ResolvedPaths] = None,
        timeout: float = 30.0,
    ) -> List[ModelDescriptor]:
        """接続のモデル一覧を返す

        Raises:
            NoModelsFound: 解決結果が空の場合
        """
        access_token = credential.oauth_access_token if credential else None
        if connection.sub_provider == SUB_PROVIDER_COPILOT and access_token:
            logger.debug("Resolving models dynamically for %s", connection.slug)
            return await fetch_copilot_models(
                access_token,
                paths or ResolvedPaths(),
                timeout,
                client_factory=self._client_factory,
            )

        if connection.base_url:
            # ユーザー定義のモデルは上書きしない
            custom = self.upgrade_custom_models(connection)
            if not custom:
                raise NoModelsFound.from_message(
                    f"{connection.base_url} にモデルが登録されていません。モデル名を入力してください。",
                    {"endpoint": connection.base_url},
                )
            return custom

        models = registry.lookup(connection.sub_provider)
        if not models:
            raise NoModelsFound.from_message(
                f"プロバイダ {connection.sub_provider or 'all'} のモデルが見つかりません。",
                {"sub_provider": connection.sub_provider},
            )
        return models

    @staticmethod
    def upgrade_custom_models(connection: Connection) -> List[ModelDescriptor]:
        """文字列だけのモデルを記述子へ昇格する（ネットワークは使わない）"""
        return [
            ModelDescriptor.from_id(m, context_window=CUSTOM_CONTEXT_WINDOW) if isinstance(m, str) else m
            for m in connection.models
        ]
