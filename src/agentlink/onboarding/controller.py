"""
オンボーディングコントローラ

遷移関数で状態を更新しつつ、ドライバ・OAuthフロー・永続化を呼び出す。
失敗時は現在のステップに留まり、エラーステータスとメッセージを保持する。
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Iterable, List, Optional, Set, Union

from agentlink.auth.browser import BrowserOAuthFlow, claude_context, codex_context
from agentlink.auth.device import DeviceCodeFlow, copilot_context
from agentlink.auth.storage import CredentialStore
from agentlink.catalog.copilot import default_client_factory
from agentlink.config.connections import ConnectionRepository
from agentlink.config.settings import AgentLinkSettings
from agentlink.drivers import ProviderDriver, get_driver
from agentlink.errors import (
    AgentLinkException,
    CredentialNotFound,
    InvalidCredential,
    InvalidTransition,
    PersistenceFailed,
)
from agentlink.models import (
    AuthType,
    Connection,
    Credential,
    ModelEntry,
    ProviderType,
    ResolvedPaths,
    is_masked_placeholder,
    model_entry_id,
)
from agentlink.onboarding.events import (
    Back,
    ClearError,
    Completed,
    Continue,
    DeviceCodeIssued,
    Event,
    JumpToCredentials,
    OAuthCancelled,
    Reset,
    SavingStarted,
    SelectApiSetupMethod,
    SelectProvider,
    ValidationFailed,
    ValidationStarted,
    ValidationSucceeded,
    WaitingForCode,
)
from agentlink.onboarding.reducer import ENTRY_STEPS, OAUTH_VARIANTS, transition
from agentlink.onboarding.slugs import unique_slug
from agentlink.onboarding.state import (
    DEFAULT_CONNECTION_NAMES,
    LOCAL_CONNECTION_NAME,
    ApiSetupMethod,
    CompletionStatus,
    CredentialVariant,
    Draft,
    EditValues,
    OnboardingState,
    ProviderChoice,
    Step,
    method_to_connection_types,
)

logger = logging.getLogger(__name__)

Callback = Callable[..., Any]


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class OnboardingController:
    """1つのウィザードにつき1つのフローを実行するコントローラ"""

    def __init__(
        self,
        repository: ConnectionRepository,
        credential_store: CredentialStore,
        settings: Optional[AgentLinkSettings] = None,
        *,
        initial_step: Step = Step.PREFERENCES,
        editing_slug: Optional[str] = None,
        existing_slugs: Optional[Iterable[str]] = None,
        on_config_saved: Optional[Callback] = None,
        on_complete: Optional[Callback] = None,
        on_state_change: Optional[Callable[[OnboardingState], None]] = None,
        driver_factory: Optional[Callable[[ProviderType], ProviderDriver]] = None,
        browser_flow_factory: Optional[Callable[[ApiSetupMethod], BrowserOAuthFlow]] = None,
        device_flow_factory: Optional[Callable[[], DeviceCodeFlow]] = None,
        paths: Optional[ResolvedPaths] = None,
    ) -> None:
        """OnboardingControllerを初期化する

        Args:
            repository: 接続設定の永続化先
            credential_store: 認証情報ストア
            settings: 設定（タイムアウトやOAuthクライアントID）
            initial_step: 開始ステップ（設定画面からは PROVIDER_SELECT）
            editing_slug: 編集中の既存接続のslug
            existing_slugs: slug衝突判定に使う既存slug（省略時はリポジトリから取得）
            on_config_saved: 接続の保存後に呼ばれるコールバック
            on_complete: 完了画面を閉じたときに呼ばれるコールバック
            on_state_change: 状態が変わるたびに呼ばれるリスナー
            driver_factory: プロバイダ種別からドライバを生成する関数
            browser_flow_factory: ブラウザOAuthフローの生成関数
            device_flow_factory: デバイスコードフローの生成関数
            paths: 補助バイナリのパス
        """
        self.settings = settings or AgentLinkSettings()
        self._repository = repository
        self._credential_store = credential_store
        self._existing_slugs: Optional[Set[str]] = set(existing_slugs) if existing_slugs is not None else None
        self._on_config_saved = on_config_saved
        self._on_complete = on_complete
        self._on_state_change = on_state_change
        self._driver_factory = driver_factory or (lambda provider_type: get_driver(provider_type, self.settings))
        self._browser_flow_factory = browser_flow_factory or self._default_browser_flow
        self._device_flow_factory = device_flow_factory or self._default_device_flow
        self._paths = paths or ResolvedPaths()

        self._state = OnboardingState.initial(initial_step, editing_slug=editing_slug)
        self._browser_flow: Optional[BrowserOAuthFlow] = None
        self._device_flow: Optional[DeviceCodeFlow] = None
        self._oauth_slug: Optional[str] = None
        self._cancel_event: Optional[asyncio.Event] = None

    @property
    def state(self) -> OnboardingState:
        return self._state

    def dispatch(self, event: Event) -> OnboardingState:
        """イベントを適用して状態を更新する"""
        previous = self._state
        self._state = transition(previous, event)
        logger.debug(
            "Onboarding %s: %s/%s -> %s/%s",
            type(event).__name__,
            previous.step.value,
            previous.status.value,
            self._state.step.value,
            self._state.status.value,
        )
        if self._on_state_change is not None and self._state is not previous:
            self._on_state_change(self._state)
        return self._state

    # ------------------------------------------------------------------
    # ステップ選択
    # ------------------------------------------------------------------

    def advance(self) -> OnboardingState:
        return self.dispatch(Continue())

    def select_provider(self, choice: Union[ProviderChoice, str]) -> OnboardingState:
        return self.dispatch(SelectProvider(ProviderChoice(choice)))

    def select_api_setup_method(self, method: Union[ApiSetupMethod, str]) -> OnboardingState:
        return self.dispatch(SelectApiSetupMethod(ApiSetupMethod(method)))

    def begin_edit(self, slug: str) -> OnboardingState:
        """既存接続の編集・再認証を開始する"""
        return self.dispatch(Reset(step=self._state.initial_step, editing_slug=slug))

    def jump_to_credentials(
        self,
        method: Union[ApiSetupMethod, str],
        initial_values: Optional[EditValues] = None,
    ) -> OnboardingState:
        """編集モードで認証情報ステップへ直接移動する"""
        if self._state.editing_slug is None:
            raise InvalidTransition.from_message(
                "認証情報ステップへの直接移動は既存接続の編集時のみ可能です。",
                {"step": self._state.step.value},
            )
        return self.dispatch(JumpToCredentials(ApiSetupMethod(method), initial_values))

    async def back(self) -> OnboardingState:
        await self._cancel_in_flight()
        return self.dispatch(Back())

    def clear_error(self) -> OnboardingState:
        return self.dispatch(ClearError())

    def reset(self) -> OnboardingState:
        self._oauth_slug = None
        return self.dispatch(Reset())

    async def close(self) -> OnboardingState:
        """ウィザードを閉じる。進行中のOAuthを中断し、状態を初期化する。"""
        await self._cancel_in_flight()
        return self.reset()

    async def finish(self) -> OnboardingState:
        """完了画面を閉じる"""
        if self._state.completion is not CompletionStatus.COMPLETE:
            raise InvalidTransition.from_message("接続の保存が完了していません。")
        if self._on_complete is not None:
            await _maybe_await(self._on_complete())
        return self.reset()

    # ------------------------------------------------------------------
    # APIキー
    # ------------------------------------------------------------------

    async def submit_credential(self, data: Draft) -> OnboardingState:
        """APIキーを検証し、成功したら接続を保存して完了へ進む

        検証中に back() や close() で中断された場合は、その時点の状態を返す。
        """
        state = self._state
        if (
            state.step is not Step.CREDENTIALS
            or state.variant is not CredentialVariant.API_KEY
            or state.method is None
        ):
            raise InvalidTransition.from_message(
                "APIキーはこのステップでは送信できません。",
                {"step": state.step.value},
            )
        method = state.method
        self.dispatch(ValidationStarted(draft=data))
        cancel_event = asyncio.Event()
        self._cancel_event = cancel_event

        try:
            api_key = self._resolve_api_key(data.api_key)
            base_url = data.base_url.strip() or None
            provider_type, auth_type, sub_provider = method_to_connection_types(method, base_url, data.preset)
            driver = self._driver_factory(provider_type)
            credential = Credential(api_key=api_key)

            result = await driver.test_connection(credential, base_url, cancel_event=cancel_event)
            if self._superseded(cancel_event):
                return self._state
            if not result.success:
                return self._fail(result.error or "接続テストに失敗しました。")

            name = self._connection_name(data.name, DEFAULT_CONNECTION_NAMES[method])
            connection = self._new_connection(
                name,
                provider_type,
                auth_type,
                base_url=base_url,
                sub_provider=sub_provider,
            )
            await self._assign_models(connection, driver, credential, list(data.models))
        except AgentLinkException as exc:
            if self._superseded(cancel_event):
                return self._state
            logger.log(exc.log_level, "API key validation failed: %s", exc.error.code)
            return self._fail(exc.message)
        finally:
            if self._cancel_event is cancel_event:
                self._cancel_event = None

        if self._superseded(cancel_event):
            return self._state
        return await self._save_and_complete(connection, credential)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def start_oauth(self, method: Union[ApiSetupMethod, str, None] = None) -> OnboardingState:
        """OAuthを開始する

        ブラウザ型はコード待ちに入った時点で戻る。デバイスコード型は
        外部での承認・タイムアウト・キャンセルのいずれかまで待つ。
        """
        if method is not None:
            override = ApiSetupMethod(method)
            if self._state.step is not Step.CREDENTIALS or self._state.method is not override:
                self.dispatch(JumpToCredentials(override, self._state.edit_values))

        state = self._state
        if state.step is not Step.CREDENTIALS or state.variant not in OAUTH_VARIANTS or state.method is None:
            raise InvalidTransition.from_message(
                "OAuthはこのステップでは開始できません。",
                {"step": state.step.value},
            )

        await self._cancel_in_flight()
        name = self._connection_name(state.draft.name, DEFAULT_CONNECTION_NAMES[state.method])
        slug = self._target_slug(name)
        self._oauth_slug = slug

        if state.variant is CredentialVariant.OAUTH_BROWSER:
            return await self._start_browser(state.method)
        return await self._start_device(state.method, name, slug)

    async def submit_auth_code(self, code: str) -> OnboardingState:
        """ブラウザで取得した認可コードを送信する"""
        flow = self._browser_flow
        method = self._state.method
        slug = self._oauth_slug
        if flow is None or not self._state.is_waiting_for_code or slug is None or method is None:
            raise InvalidTransition.from_message("認可コードの入力待ちではありません。")

        self.dispatch(ValidationStarted())
        result = await flow.submit_code(code, slug)
        if self._browser_flow is not flow:
            # 交換中にキャンセルされた
            self._discard_credential(slug)
            return self._state
        if not result.success:
            return self._fail(result.error or "認可コードの交換に失敗しました。")

        self._browser_flow = None
        return await self._complete_oauth(method, slug)

    async def cancel_oauth(self) -> OnboardingState:
        """進行中のOAuthを中断する。何も保存しない。"""
        await self._cancel_in_flight()
        state = self._state
        if state.step is Step.CREDENTIALS and state.variant in OAUTH_VARIANTS:
            return self.dispatch(OAuthCancelled())
        return state

    async def _start_browser(self, method: ApiSetupMethod) -> OnboardingState:
        flow = self._browser_flow_factory(method)
        self._browser_flow = flow
        self.dispatch(ValidationStarted())
        try:
            await flow.start_authorization()
        except AgentLinkException as exc:
            self._browser_flow = None
            return self._fail(exc.message)
        if self._browser_flow is not flow:
            return self._state
        return self.dispatch(WaitingForCode())

    async def _start_device(self, method: ApiSetupMethod, name: str, slug: str) -> OnboardingState:
        flow = self._device_flow_factory()
        self._device_flow = flow

        self.dispatch(ValidationStarted())
        try:
            device = await flow.start_authorization()
        except AgentLinkException as exc:
            if self._device_flow is not flow:
                return self._state
            self._device_flow = None
            return self._fail(exc.message)
        if self._device_flow is not flow:
            return self._state

        self.dispatch(DeviceCodeIssued(device))
        logger.info("Waiting for device authorization at %s", device.verification_uri)
        result = await flow.wait_for_confirmation(slug, self.settings.device_flow_timeout)
        if self._device_flow is not flow:
            # 待機中にキャンセルされた
            return self._state
        self._device_flow = None
        if not result.success:
            return self._fail(result.error or "デバイス認証に失敗しました。")
        return await self._complete_oauth(method, slug, name)

    async def _complete_oauth(
        self,
        method: ApiSetupMethod,
        slug: str,
        name: Optional[str] = None,
    ) -> OnboardingState:
        provider_type, auth_type, sub_provider = method_to_connection_types(method)
        connection_name = name or self._connection_name(self._state.draft.name, DEFAULT_CONNECTION_NAMES[method])
        connection = self._new_connection(
            connection_name,
            provider_type,
            auth_type,
            sub_provider=sub_provider,
            slug=slug,
        )
        driver = self._driver_factory(provider_type)
        try:
            await self._assign_models(connection, driver, self._credential_store.get_credential(slug), [])
        except AgentLinkException as exc:
            if self._superseded():
                self._discard_credential(slug)
                return self._state
            logger.log(exc.log_level, "Model resolution after OAuth failed: %s", exc.error.code)
            return self._fail(exc.message)
        if self._superseded():
            self._discard_credential(slug)
            return self._state
        return await self._save_and_complete(connection, None)

    async def _cancel_in_flight(self) -> None:
        if self._cancel_event is not None:
            self._cancel_event.set()
        browser, self._browser_flow = self._browser_flow, None
        if browser is not None:
            browser.cancel()
        device, self._device_flow = self._device_flow, None
        if device is not None:
            await device.cancel()

    def _default_browser_flow(self, method: ApiSetupMethod) -> BrowserOAuthFlow:
        if method is ApiSetupMethod.CLAUDE_OAUTH:
            context = claude_context(self.settings.claude_oauth_client_id)
        else:
            context = codex_context(self.settings.chatgpt_oauth_client_id)
        return BrowserOAuthFlow(context, self._credential_store)

    def _default_device_flow(self) -> DeviceCodeFlow:
        return DeviceCodeFlow(
            copilot_context(self.settings.copilot_oauth_client_id),
            self._credential_store,
            client_factory=default_client_factory,
            paths=self._paths,
            timeout_seconds=self.settings.device_flow_timeout,
        )

    # ------------------------------------------------------------------
    # ローカルモデル
    # ------------------------------------------------------------------

    async def submit_local_model(self, data: Draft) -> OnboardingState:
        """ローカルモデルを登録する（認証情報の検証なし）"""
        if self._state.step is not Step.LOCAL_MODEL:
            raise InvalidTransition.from_message(
                "ローカルモデルはこのステップでは登録できません。",
                {"step": self._state.step.value},
            )
        self.dispatch(ValidationStarted(draft=data))

        base_url = data.base_url.strip()
        models = data.models
        if not base_url:
            return self._fail("エンドポイントURLを入力してください。")
        if not models:
            return self._fail("モデル名を1つ以上入力してください。")

        name = self._connection_name(data.name, LOCAL_CONNECTION_NAME)
        connection = self._new_connection(
            name,
            ProviderType.LOCAL,
            AuthType.NONE,
            base_url=base_url,
        )
        connection.models = list(models)
        connection.default_model = models[0]
        return await self._save_and_complete(connection, None)

    # ------------------------------------------------------------------
    # 共通処理
    # ------------------------------------------------------------------

    def _fail(self, message: str) -> OnboardingState:
        return self.dispatch(ValidationFailed(message))

    def _superseded(self, cancel_event: Optional[asyncio.Event] = None) -> bool:
        """待機中に back() や close() でこの検証が打ち切られたか"""
        if cancel_event is not None and cancel_event.is_set():
            return True
        return self._state.step not in ENTRY_STEPS or not self._state.is_busy

    def _discard_credential(self, slug: str) -> None:
        """接続が保存されなかった認証情報を削除する"""
        if self._repository.get(slug) is not None:
            return
        try:
            self._credential_store.delete_credential(slug)
        except OSError as exc:
            logger.warning("Failed to discard credential for %s: %s", slug, exc)

    def _slugs(self) -> Set[str]:
        if self._existing_slugs is None:
            self._existing_slugs = {c.slug for c in self._repository.list()}
        return self._existing_slugs

    def _target_slug(self, name: str) -> str:
        # 編集時は既存のslugを使い回す
        if self._state.editing_slug is not None:
            return self._state.editing_slug
        return unique_slug(name, self._slugs())

    def _existing_connection(self) -> Optional[Connection]:
        if self._state.editing_slug is None:
            return None
        return self._repository.get(self._state.editing_slug)

    def _connection_name(self, entered: str, fallback: str) -> str:
        name = entered.strip()
        if name:
            return name
        existing = self._existing_connection()
        return existing.name if existing else fallback

    def _resolve_api_key(self, entered: str) -> str:
        api_key = entered.strip()
        if is_masked_placeholder(api_key):
            # マスク済みのまま再送信された場合は保存済みのキーを使う
            stored = None
            if self._state.editing_slug is not None:
                stored = self._credential_store.get_credential(self._state.editing_slug)
            if stored is None or not stored.api_key:
                raise CredentialNotFound.from_message("保存済みのAPIキーが見つかりません。APIキーを入力してください。")
            return stored.api_key
        if not api_key:
            raise InvalidCredential.from_message("APIキーを入力してください。")
        return api_key

    def _new_connection(
        self,
        name: str,
        provider_type: ProviderType,
        auth_type: AuthType,
        *,
        base_url: Optional[str] = None,
        sub_provider: Optional[str] = None,
        slug: Optional[str] = None,
    ) -> Connection:
        connection = Connection(
            slug=slug or self._target_slug(name),
            name=name,
            provider_type=provider_type,
            auth_type=auth_type,
            base_url=base_url,
            sub_provider=sub_provider,
            is_authenticated=True,
        )
        existing = self._existing_connection()
        if existing is not None:
            connection.created_at = existing.created_at
            connection.is_default = existing.is_default
        return connection

    async def _assign_models(
        self,
        connection: Connection,
        driver: ProviderDriver,
        credential: Optional[Credential],
        entered: List[str],
    ) -> None:
        # 既存のモデル定義と既定モデルは、入力に残っている限り引き継ぐ
        existing = self._existing_connection()
        models: List[ModelEntry]
        if entered:
            previous = {model_entry_id(m): m for m in existing.models} if existing else {}
            models = [previous.get(model_id, model_id) for model_id in entered]
        else:
            models = list(await driver.fetch_models(connection, credential, self._paths))
        ids = [model_entry_id(m) for m in models]
        if existing is not None and existing.default_model in ids:
            default_model = existing.default_model
        else:
            default_model = ids[0]
        connection.models = models
        connection.default_model = default_model

    async def _save_and_complete(
        self,
        connection: Connection,
        credential: Optional[Credential],
    ) -> OnboardingState:
        self.dispatch(ValidationSucceeded())
        self.dispatch(SavingStarted())
        try:
            if credential is not None:
                self._credential_store.set_credential(connection.slug, credential)
            saved = self._repository.save(connection)
            if not saved.success:
                raise PersistenceFailed.from_message(
                    saved.error or "接続設定の保存に失敗しました。",
                    {"slug": connection.slug},
                )
        except PersistenceFailed as exc:
            logger.error("Failed to persist connection %s: %s", connection.slug, exc.message)
            self._discard_credential(connection.slug)
            return self._fail(exc.message)
        except OSError as exc:
            logger.error("Failed to store credential for %s: %s", connection.slug, exc)
            return self._fail(f"認証情報の保存に失敗しました: {exc}")

        self._slugs().add(connection.slug)
        logger.info("Saved connection %s (%s)", connection.slug, connection.provider_type.value)
        if self._on_config_saved is not None:
            await _maybe_await(self._on_config_saved(connection))
        return self.dispatch(Completed())
