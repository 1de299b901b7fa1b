"""
オンボーディングの状態定義

ステップ・選択肢・入力中の下書き・検証ステータスを不変データとして保持する
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Tuple

from agentlink.auth.device import DeviceCode
from agentlink.models import (
    SUB_PROVIDER_ANTHROPIC,
    SUB_PROVIDER_CODEX,
    SUB_PROVIDER_COPILOT,
    AuthType,
    ProviderType,
)

DEFAULT_LOCAL_BASE_URL = "http://localhost:11434"
DEFAULT_LOCAL_MODEL = "qwen3-coder"


class Step(Enum):
    """ウィザードのステップ"""
    PREFERENCES = "preferences"
    PROVIDER_SELECT = "provider_select"
    API_SETUP = "api_setup"
    CREDENTIALS = "credentials"
    LOCAL_MODEL = "local_model"
    COMPLETION = "completion"


class ProviderChoice(Enum):
    """プロバイダ選択画面の選択肢"""
    CLAUDE = "claude"
    CHATGPT = "chatgpt"
    COPILOT = "copilot"
    API_KEY = "api_key"
    LOCAL = "local"


class ApiSetupMethod(Enum):
    """接続方法"""
    ANTHROPIC_API_KEY = "anthropic_api_key"
    CLAUDE_OAUTH = "claude_oauth"
    PI_CHATGPT_OAUTH = "pi_chatgpt_oauth"
    PI_COPILOT_OAUTH = "pi_copilot_oauth"
    PI_API_KEY = "pi_api_key"


class CredentialVariant(Enum):
    """認証情報入力ステップの種類"""
    API_KEY = "api_key"
    OAUTH_BROWSER = "oauth_browser"
    OAUTH_DEVICE = "oauth_device"
    LOCAL_MODEL = "local_model"


class Status(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    SUCCESS = "success"
    ERROR = "error"


class CompletionStatus(Enum):
    SAVING = "saving"
    COMPLETE = "complete"


# 選択肢ごとに提示する接続方法（1つだけなら方法選択を飛ばす）
CHOICE_METHODS = {
    ProviderChoice.CLAUDE: (ApiSetupMethod.CLAUDE_OAUTH, ApiSetupMethod.ANTHROPIC_API_KEY),
    ProviderChoice.CHATGPT: (ApiSetupMethod.PI_CHATGPT_OAUTH,),
    ProviderChoice.COPILOT: (ApiSetupMethod.PI_COPILOT_OAUTH,),
    ProviderChoice.API_KEY: (ApiSetupMethod.PI_API_KEY, ApiSetupMethod.ANTHROPIC_API_KEY),
    ProviderChoice.LOCAL: (),
}

DEFAULT_CONNECTION_NAMES = {
    ApiSetupMethod.ANTHROPIC_API_KEY: "Anthropic API",
    ApiSetupMethod.CLAUDE_OAUTH: "Claude Pro/Max",
    ApiSetupMethod.PI_CHATGPT_OAUTH: "ChatGPT Plus",
    ApiSetupMethod.PI_COPILOT_OAUTH: "GitHub Copilot",
    ApiSetupMethod.PI_API_KEY: "API Key",
}

LOCAL_CONNECTION_NAME = "Local model"


def methods_for_choice(choice: ProviderChoice) -> Tuple[ApiSetupMethod, ...]:
    return CHOICE_METHODS[choice]


def credential_variant(method: ApiSetupMethod) -> CredentialVariant:
    """接続方法に対応する入力ステップの種類"""
    if method in (ApiSetupMethod.CLAUDE_OAUTH, ApiSetupMethod.PI_CHATGPT_OAUTH):
        return CredentialVariant.OAUTH_BROWSER
    if method is ApiSetupMethod.PI_COPILOT_OAUTH:
        return CredentialVariant.OAUTH_DEVICE
    return CredentialVariant.API_KEY


def method_to_connection_types(
    method: ApiSetupMethod,
    base_url: Optional[str] = None,
    preset: Optional[str] = None,
) -> Tuple[ProviderType, AuthType, Optional[str]]:
    """接続方法を (プロバイダ種別, 認証方式, サブプロバイダ) に変換する

    エンドポイントが指定されたキー認証は互換エンドポイントとして扱う。
    """
    if method is ApiSetupMethod.CLAUDE_OAUTH:
        return ProviderType.OAUTH_SUBSCRIPTION, AuthType.OAUTH, SUB_PROVIDER_ANTHROPIC
    if method is ApiSetupMethod.PI_CHATGPT_OAUTH:
        return ProviderType.OAUTH_SUBSCRIPTION, AuthType.OAUTH, SUB_PROVIDER_CODEX
    if method is ApiSetupMethod.PI_COPILOT_OAUTH:
        return ProviderType.DEVICE_OAUTH, AuthType.OAUTH, SUB_PROVIDER_COPILOT

    sub_provider = SUB_PROVIDER_ANTHROPIC if method is ApiSetupMethod.ANTHROPIC_API_KEY else (preset or None)
    if base_url:
        if method is ApiSetupMethod.ANTHROPIC_API_KEY:
            return ProviderType.KEY_AUTH, AuthType.API_KEY_WITH_ENDPOINT, sub_provider
        return ProviderType.CUSTOM_COMPATIBLE, AuthType.API_KEY_WITH_ENDPOINT, sub_provider
    return ProviderType.KEY_AUTH, AuthType.API_KEY, sub_provider


def parse_model_list(value: str) -> Tuple[str, ...]:
    """カンマ区切りのモデル名を分割する（空要素と重複は除く）"""
    seen = []
    for entry in value.split(","):
        name = entry.strip()
        if name and name not in seen:
            seen.append(name)
    return tuple(seen)


@dataclass(frozen=True)
class Draft:
    """入力中のフィールド値

    Attributes:
        api_key: APIキー（編集時はマスク済みプレースホルダ）
        name: 接続名
        base_url: エンドポイントの上書き
        default_model: 既定モデル（カンマ区切りで複数指定可）
        preset: サブプロバイダのプリセット
    """
    api_key: str = ""
    name: str = ""
    base_url: str = ""
    default_model: str = ""
    preset: Optional[str] = None

    @property
    def models(self) -> Tuple[str, ...]:
        return parse_model_list(self.default_model)


@dataclass(frozen=True)
class EditValues:
    """既存接続の編集時に入力欄へ流し込む値（キーはマスク済み）"""
    api_key: Optional[str] = None
    name: Optional[str] = None
    base_url: Optional[str] = None
    default_model: Optional[str] = None
    preset: Optional[str] = None

    def to_draft(self) -> Draft:
        return Draft(
            api_key=self.api_key or "",
            name=self.name or "",
            base_url=self.base_url or "",
            default_model=self.default_model or "",
            preset=self.preset,
        )


@dataclass(frozen=True)
class OnboardingState:
    """ウィザードの状態。遷移関数によってのみ更新される。"""
    step: Step = Step.PREFERENCES
    initial_step: Step = Step.PREFERENCES
    history: Tuple[Step, ...] = ()
    choice: Optional[ProviderChoice] = None
    method: Optional[ApiSetupMethod] = None
    variant: Optional[CredentialVariant] = None
    draft: Draft = field(default_factory=Draft)
    status: Status = Status.IDLE
    error: Optional[str] = None
    device_code: Optional[DeviceCode] = None
    is_waiting_for_code: bool = False
    completion: Optional[CompletionStatus] = None
    editing_slug: Optional[str] = None
    edit_values: Optional[EditValues] = None

    @classmethod
    def initial(cls, step: Step = Step.PREFERENCES, editing_slug: Optional[str] = None) -> "OnboardingState":
        return cls(step=step, initial_step=step, editing_slug=editing_slug)

    @property
    def is_editing(self) -> bool:
        return self.editing_slug is not None

    @property
    def is_busy(self) -> bool:
        return self.status is Status.VALIDATING

    def evolve(self, **changes) -> "OnboardingState":
        return replace(self, **changes)
