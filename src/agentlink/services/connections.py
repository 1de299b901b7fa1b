"""
接続管理サービス

保存済み接続の再検証・モデル再取得・デフォルト切り替え・名前変更・削除と、
編集／再認証のためのウィザード入力値を提供する
"""

import logging
from typing import Callable, List, Optional, Set

from agentlink.auth.storage import CredentialStore
from agentlink.config.connections import ConnectionRepository, SaveResult
from agentlink.config.settings import AgentLinkSettings
from agentlink.drivers import ProviderDriver, get_driver
from agentlink.errors import ErrorCode, PersistenceFailed
from agentlink.models import (
    SUB_PROVIDER_ANTHROPIC,
    SUB_PROVIDER_CODEX,
    SUB_PROVIDER_COPILOT,
    AuthType,
    Connection,
    ModelDescriptor,
    ProviderType,
    ResolvedPaths,
    ValidationResult,
    mask_secret,
    model_entry_id,
)
from agentlink.onboarding.state import ApiSetupMethod, EditValues

logger = logging.getLogger(__name__)


class ConnectionManager:
    """保存済み接続に対する操作"""

    def __init__(
        self,
        repository: ConnectionRepository,
        credential_store: CredentialStore,
        settings: Optional[AgentLinkSettings] = None,
        *,
        driver_factory: Optional[Callable[[ProviderType], ProviderDriver]] = None,
        paths: Optional[ResolvedPaths] = None,
    ) -> None:
        self.settings = settings or AgentLinkSettings()
        self._repository = repository
        self._credential_store = credential_store
        self._driver_factory = driver_factory or (lambda provider_type: get_driver(provider_type, self.settings))
        self._paths = paths or ResolvedPaths()

    def list(self) -> List[Connection]:
        return self._repository.list()

    def get(self, slug: str) -> Optional[Connection]:
        return self._repository.get(slug)

    def existing_slugs(self) -> Set[str]:
        return {c.slug for c in self._repository.list()}

    async def validate(self, slug: str) -> ValidationResult:
        """保存済み接続を再検証する。例外は送出しない。"""
        connection = self._repository.get(slug)
        if connection is None:
            return ValidationResult.fail(
                f"接続 '{slug}' が見つかりません。",
                code=ErrorCode.CONFIG_INVALID_VALUE.value,
            )
        driver = self._driver_factory(connection.provider_type)
        result = await driver.validate_stored_connection(connection, self._credential_store)
        logger.info("Validated connection %s: success=%s", slug, result.success)
        return result

    async def refresh_models(self, slug: str) -> List[ModelDescriptor]:
        """モデル一覧を再取得して保存する

        Raises:
            KeyError: 接続が存在しない場合
            NoModelsFound: モデルが解決できない場合
            PersistenceFailed: 保存に失敗した場合
        """
        connection = self._require(slug)
        driver = self._driver_factory(connection.provider_type)
        credential = self._credential_store.get_credential(slug)
        models = await driver.fetch_models(connection, credential, self._paths)

        # カスタムエンドポイントのユーザー定義モデルは置き換えない
        if not connection.base_url:
            connection.models = list(models)
            ids = [m.id for m in models]
            if connection.default_model not in ids:
                connection.default_model = ids[0]
            self._save(connection)
        return models

    def set_default(self, slug: str) -> SaveResult:
        return self._repository.set_default(slug)

    def rename(self, slug: str, name: str) -> SaveResult:
        """表示名を変更する。空白のみや変更なしの場合は何もしない。"""
        connection = self._require(slug)
        trimmed = name.strip()
        if not trimmed or trimmed == connection.name:
            return SaveResult(success=True)
        connection.name = trimmed
        return self._repository.save(connection)

    def delete(self, slug: str) -> SaveResult:
        """接続と認証情報を削除する。最後の1件は削除できない。"""
        connections = self._repository.list()
        if not any(c.slug == slug for c in connections):
            return SaveResult(success=False, error=f"接続 '{slug}' が見つかりません。")
        if len(connections) <= 1:
            return SaveResult(success=False, error="最後の接続は削除できません。")

        result = self._repository.delete(slug)
        if result.success:
            self._credential_store.delete_credential(slug)
            logger.info("Deleted connection %s", slug)
        return result

    def edit_initial_values(self, slug: str) -> EditValues:
        """編集ウィザードに流し込む値（キーはマスク済み）"""
        connection = self._require(slug)
        credential = self._credential_store.get_credential(slug)
        api_key = mask_secret(credential.api_key) if credential and credential.api_key else None
        models = ", ".join(model_entry_id(m) for m in connection.models) or (connection.default_model or "")
        return EditValues(
            api_key=api_key,
            name=connection.name,
            base_url=connection.base_url,
            default_model=models,
            preset=connection.sub_provider,
        )

    @staticmethod
    def api_key_method_for(connection: Connection) -> ApiSetupMethod:
        if connection.provider_type is ProviderType.CUSTOM_COMPATIBLE:
            return ApiSetupMethod.PI_API_KEY
        if connection.sub_provider and connection.sub_provider != SUB_PROVIDER_ANTHROPIC:
            return ApiSetupMethod.PI_API_KEY
        return ApiSetupMethod.ANTHROPIC_API_KEY

    @classmethod
    def reauth_method_for(cls, connection: Connection) -> Optional[ApiSetupMethod]:
        """再認証に使う接続方法。ローカル接続はNone。"""
        if connection.auth_type is AuthType.OAUTH:
            if connection.sub_provider == SUB_PROVIDER_COPILOT:
                return ApiSetupMethod.PI_COPILOT_OAUTH
            if connection.sub_provider == SUB_PROVIDER_CODEX:
                return ApiSetupMethod.PI_CHATGPT_OAUTH
            return ApiSetupMethod.CLAUDE_OAUTH
        if connection.auth_type.is_key_style:
            return cls.api_key_method_for(connection)
        return None

    def _require(self, slug: str) -> Connection:
        connection = self._repository.get(slug)
        if connection is None:
            raise KeyError(slug)
        return connection

    def _save(self, connection: Connection) -> None:
        result = self._repository.save(connection)
        if not result.success:
            raise PersistenceFailed.from_message(
                result.error or "接続設定の保存に失敗しました。",
                {"slug": connection.slug},
            )
