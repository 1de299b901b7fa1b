"""
agentlink CLIメインモジュール

接続一覧・再検証・モデル取得・管理操作と、対話式の接続セットアップを提供する
"""

from __future__ import annotations

import asyncio
import getpass
import json
import sys
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from agentlink import __version__
from agentlink.cli.parser import VALID_COMMANDS
from agentlink.config.connections import ConnectionRepository
from agentlink.auth.storage import CredentialStore
from agentlink.config.settings import AgentLinkSettings
from agentlink.errors import AgentLinkException, InvalidTransition
from agentlink.models import AuthType, Connection
from agentlink.onboarding import (
    CompletionStatus,
    CredentialVariant,
    Draft,
    OnboardingController,
    OnboardingState,
    ProviderChoice,
    Status,
    Step,
    methods_for_choice,
)
from agentlink.onboarding.state import ApiSetupMethod
from agentlink.services.connections import ConnectionManager

PROVIDER_LABELS = {
    ProviderChoice.CLAUDE: "Claude（Pro/Max サブスクリプションまたは Anthropic APIキー）",
    ProviderChoice.CHATGPT: "ChatGPT Plus / Pro",
    ProviderChoice.COPILOT: "GitHub Copilot",
    ProviderChoice.API_KEY: "APIキー（互換エンドポイント）",
    ProviderChoice.LOCAL: "ローカルモデル（Ollama など）",
}

METHOD_LABELS = {
    ApiSetupMethod.CLAUDE_OAUTH: "Claude Pro/Max でサインイン",
    ApiSetupMethod.ANTHROPIC_API_KEY: "Anthropic APIキー",
    ApiSetupMethod.PI_CHATGPT_OAUTH: "ChatGPT でサインイン",
    ApiSetupMethod.PI_COPILOT_OAUTH: "GitHub Copilot でサインイン",
    ApiSetupMethod.PI_API_KEY: "APIキー",
}

BACK = object()


class WizardAborted(Exception):
    """ユーザーがウィザードを中断した"""


class AgentLinkCLI:
    """agentlinkのコマンド実行"""

    def __init__(
        self,
        settings: AgentLinkSettings,
        repository: ConnectionRepository,
        credential_store: CredentialStore,
        *,
        manager: Optional[ConnectionManager] = None,
        controller_factory: Optional[Callable[..., OnboardingController]] = None,
        input_func: Callable[[str], str] = input,
        secret_func: Callable[[str], str] = getpass.getpass,
    ) -> None:
        """初期化

        Args:
            settings: 設定
            repository: 接続設定の永続化先
            credential_store: 認証情報ストア
            manager: 接続管理サービス
            controller_factory: ウィザード用コントローラの生成関数
            input_func: 入力関数
            secret_func: 秘密情報の入力関数（エコーしない）
        """
        self.settings = settings
        self.repository = repository
        self.credential_store = credential_store
        self.manager = manager or ConnectionManager(repository, credential_store, settings)
        self._controller_factory = controller_factory or self._default_controller
        self._input = input_func
        self._secret = secret_func

    def run(self, command: str, args: List[str], options: Dict[str, Any] | None = None) -> int:
        """コマンドを実行し、Exit Codeを返す

        Args:
            command: コマンド名
            args: コマンド引数
            options: 解析済みオプション辞書

        Returns:
            int: 終了コード（0: 成功、非0: エラー）
        """
        options = options or {}

        if command == "help":
            self.show_help()
            return 0

        if command == "version":
            self.show_version()
            return 0

        if command not in VALID_COMMANDS:
            print(
                f"Unknown command: '{command}'. "
                f"Available commands: {', '.join(sorted(VALID_COMMANDS))}",
                file=sys.stderr,
            )
            return 1

        try:
            if command == "list":
                return self._run_list(options)
            if command == "validate":
                return asyncio.run(self._run_validate(args[0]))
            if command == "models":
                return asyncio.run(self._run_models(args[0], options))
            if command == "default":
                return self._report(self.manager.set_default(args[0]).error, f"{args[0]} をデフォルトに設定しました。")
            if command == "rename":
                return self._run_rename(args[0], " ".join(args[1:]))
            if command == "delete":
                return self._run_delete(args[0], options)
            if command == "add":
                return asyncio.run(self._run_add())
            if command == "edit":
                return asyncio.run(self._run_edit(args[0]))
        except KeyError as exc:
            print(f"接続 '{exc.args[0]}' が見つかりません。", file=sys.stderr)
            return 1
        except AgentLinkException as exc:
            print(f"Error: {exc.error.message}", file=sys.stderr)
            return 1

        print(f"Command '{command}' is not yet implemented.", file=sys.stderr)
        return 1

    # ------------------------------------------------------------------
    # 管理コマンド
    # ------------------------------------------------------------------

    def _run_list(self, options: Dict[str, Any]) -> int:
        connections = self.manager.list()
        if options.get("json"):
            print(json.dumps([c.to_dict() for c in connections], ensure_ascii=False, indent=2))
            return 0
        if not connections:
            print("接続がありません。`agentlink add` で追加してください。")
            return 0
        for connection in connections:
            print(self._format_connection(connection))
        return 0

    def _format_connection(self, connection: Connection) -> str:
        marker = "*" if connection.is_default else " "
        model = connection.default_model or "-"
        endpoint = f" {connection.base_url}" if connection.base_url else ""
        return f"{marker} {connection.slug:<24} {connection.name:<24} {connection.provider_label:<20} {model}{endpoint}"

    async def _run_validate(self, slug: str) -> int:
        result = await self.manager.validate(slug)
        if result.success:
            print(f"✓ {slug}: 接続を確認しました。")
            return 0
        print(f"✗ {slug}: {result.error}", file=sys.stderr)
        return 1

    async def _run_models(self, slug: str, options: Dict[str, Any]) -> int:
        models = await self.manager.refresh_models(slug)
        if options.get("json"):
            print(json.dumps([m.to_dict() for m in models], ensure_ascii=False, indent=2))
            return 0
        for model in models:
            thinking = " (thinking)" if model.supports_thinking else ""
            print(f"{model.id:<40} {model.context_window:>9}{thinking}")
        return 0

    def _run_rename(self, slug: str, name: str) -> int:
        result = self.manager.rename(slug, name)
        return self._report(result.error if not result.success else None, f"{slug} の名前を変更しました。")

    def _run_delete(self, slug: str, options: Dict[str, Any]) -> int:
        if not options.get("yes"):
            answer = self._input(f"接続 '{slug}' を削除しますか? [y/N]: ").strip().lower()
            if answer not in ("y", "yes"):
                print("キャンセルしました。")
                return 1
        result = self.manager.delete(slug)
        return self._report(result.error if not result.success else None, f"{slug} を削除しました。")

    def _report(self, error: Optional[str], message: str) -> int:
        if error:
            print(f"Error: {error}", file=sys.stderr)
            return 1
        print(message)
        return 0

    # ------------------------------------------------------------------
    # 対話式セットアップ
    # ------------------------------------------------------------------

    def _default_controller(self, **kwargs: Any) -> OnboardingController:
        return OnboardingController(
            self.repository,
            self.credential_store,
            self.settings,
            initial_step=Step.PROVIDER_SELECT,
            **kwargs,
        )

    async def _run_add(self) -> int:
        controller = self._controller_factory(on_state_change=self._show_progress)
        return await self._run_wizard(controller)

    async def _run_edit(self, slug: str) -> int:
        connection = self.manager.get(slug)
        if connection is None:
            raise KeyError(slug)
        method = self.manager.reauth_method_for(connection)
        if method is None:
            print("ローカル接続は `agentlink add` で作り直してください。", file=sys.stderr)
            return 1

        controller = self._controller_factory(on_state_change=self._show_progress, editing_slug=slug)
        values = self.manager.edit_initial_values(slug) if connection.auth_type is not AuthType.OAUTH else None
        controller.jump_to_credentials(method, values)
        return await self._run_wizard(controller)

    async def _run_wizard(self, controller: OnboardingController) -> int:
        try:
            while True:
                state = controller.state
                if state.step is Step.COMPLETION and state.completion is CompletionStatus.COMPLETE:
                    await controller.finish()
                    return 0
                await self._wizard_step(controller, state)
        except (WizardAborted, EOFError, KeyboardInterrupt):
            await controller.close()
            print("\nセットアップを中断しました。", file=sys.stderr)
            return 1

    async def _wizard_step(self, controller: OnboardingController, state: OnboardingState) -> None:
        if state.status is Status.ERROR and state.error:
            print(f"✗ {state.error}", file=sys.stderr)
            controller.clear_error()

        if state.step is Step.PREFERENCES:
            controller.advance()
            return

        if state.step is Step.PROVIDER_SELECT:
            choice = self._prompt_choice("接続先を選択してください", list(PROVIDER_LABELS.items()), allow_back=False)
            controller.select_provider(choice)
            return

        if state.step is Step.API_SETUP:
            if state.choice is None:
                raise InvalidTransition.from_message("接続先が選択されていません。", {"step": state.step.value})
            options = [(m, METHOD_LABELS[m]) for m in methods_for_choice(state.choice)]
            method = self._prompt_choice("接続方法を選択してください", options)
            if method is BACK:
                await controller.back()
                return
            controller.select_api_setup_method(method)
            return

        if state.step is Step.LOCAL_MODEL:
            draft = state.draft
            base_url = self._prompt("エンドポイントURL", draft.base_url)
            models = self._prompt("モデル（カンマ区切り）", draft.default_model)
            name = self._prompt("接続名", draft.name)
            await controller.submit_local_model(
                Draft(base_url=base_url, default_model=models, name=name)
            )
            return

        if state.step is Step.CREDENTIALS:
            if state.variant is CredentialVariant.API_KEY:
                await controller.submit_credential(self._prompt_api_key(state))
            elif state.variant is CredentialVariant.OAUTH_BROWSER:
                await self._browser_oauth(controller, state)
            elif state.variant is CredentialVariant.OAUTH_DEVICE:
                await controller.start_oauth()
                if controller.state.status is Status.ERROR and not self._confirm("もう一度試しますか?"):
                    raise WizardAborted()
            return

        raise WizardAborted()

    async def _browser_oauth(self, controller: OnboardingController, state: OnboardingState) -> None:
        if not state.is_waiting_for_code:
            await controller.start_oauth()
            if not controller.state.is_waiting_for_code:
                if not self._confirm("もう一度試しますか?"):
                    raise WizardAborted()
                return
            print("ブラウザで認可したあと、表示されたコードを貼り付けてください。")

        code = self._input("認可コード: ").strip()
        if not code:
            await controller.cancel_oauth()
            raise WizardAborted()
        await controller.submit_auth_code(code)

    def _prompt_api_key(self, state: OnboardingState) -> Draft:
        draft = state.draft
        if draft.api_key:
            entered = self._secret(f"APIキー [{draft.api_key}]: ").strip()
            api_key = entered or draft.api_key
        else:
            api_key = self._secret("APIキー: ").strip()
        base_url = self._prompt("エンドポイント（空欄で既定）", draft.base_url)
        models = self._prompt("モデル（カンマ区切り、空欄で自動）", draft.default_model)
        name = self._prompt("接続名", draft.name)
        return Draft(
            api_key=api_key,
            name=name,
            base_url=base_url,
            default_model=models,
            preset=draft.preset,
        )

    def _prompt(self, label: str, default: str = "") -> str:
        suffix = f" [{default}]" if default else ""
        value = self._input(f"{label}{suffix}: ").strip()
        return value or default

    def _prompt_choice(self, title: str, options: Sequence[Tuple[Any, str]], allow_back: bool = True) -> Any:
        print(title)
        for index, (_, label) in enumerate(options, start=1):
            print(f"  {index}) {label}")
        if allow_back:
            print("  b) 戻る")
        while True:
            raw = self._input("> ").strip().lower()
            if allow_back and raw == "b":
                return BACK
            if raw == "q":
                raise WizardAborted()
            if raw.isdigit() and 1 <= int(raw) <= len(options):
                return options[int(raw) - 1][0]
            print("番号を入力してください（q で中断）。")

    def _confirm(self, question: str) -> bool:
        return self._input(f"{question} [Y/n]: ").strip().lower() in ("", "y", "yes")

    def _show_progress(self, state: OnboardingState) -> None:
        if state.device_code is not None and state.status is Status.VALIDATING:
            device = state.device_code
            print(f"{device.verification_uri} を開き、コード {device.user_code} を入力してください。")
            print("（コードはクリップボードにコピーされています）")
        elif state.step is Step.COMPLETION and state.completion is CompletionStatus.COMPLETE:
            print("✓ 接続を保存しました。")

    # ------------------------------------------------------------------
    # ヘルプ
    # ------------------------------------------------------------------

    def show_help(self) -> None:
        """ヘルプメッセージを表示"""
        print(help_text())

    def show_version(self) -> None:
        """バージョン情報を表示"""
        print(f"agentlink {__version__}")


def help_text() -> str:
    return f"""agentlink v{__version__} - LLMバックエンドへの接続を検証・管理するCLIツール

Usage:
    agentlink <command> [args] [options]

Commands:
    list                    保存済みの接続を一覧表示
    add                     対話式で接続を追加
    edit <slug>             接続の認証情報を編集・再認証
    validate <slug>         保存済み接続を再検証
    models <slug>           モデル一覧を再取得
    default <slug>          デフォルト接続を変更
    rename <slug> <name>    接続名を変更
    delete <slug>           接続を削除
    help                    このヘルプメッセージを表示
    version                 バージョン情報を表示

Options:
    -h, --help              ヘルプメッセージを表示
    -v, --version           バージョン情報を表示
    --json                  JSON形式で出力（list, models）
    --config-dir <path>     設定ディレクトリを指定
    -y, --yes               確認を省略（delete）
    --verbose               デバッグログを表示

Examples:
    agentlink add
    agentlink validate anthropic-api
    agentlink rename anthropic-api "Work key"
"""
