"""
共通データモデル

接続・認証情報・モデル定義・検証結果などのデータ構造を定義
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class ProviderType(Enum):
    """接続先プロバイダの種別"""
    KEY_AUTH = "key_auth"
    OAUTH_SUBSCRIPTION = "oauth_subscription"
    DEVICE_OAUTH = "device_oauth"
    LOCAL = "local"
    CUSTOM_COMPATIBLE = "custom_compatible"


class AuthType(Enum):
    """接続の認証方式"""
    API_KEY = "api_key"
    API_KEY_WITH_ENDPOINT = "api_key_with_endpoint"
    OAUTH = "oauth"
    NONE = "none"

    @property
    def is_key_style(self) -> bool:
        return self in (AuthType.API_KEY, AuthType.API_KEY_WITH_ENDPOINT)


# サブプロバイダタグ（同じプロバイダ種別を共有するOAuthバックエンドの識別子）
SUB_PROVIDER_COPILOT = "github-copilot"
SUB_PROVIDER_CODEX = "openai-codex"
SUB_PROVIDER_ANTHROPIC = "anthropic"

SUB_PROVIDER_LABELS: Dict[str, str] = {
    "anthropic": "Anthropic API",
    "openai": "OpenAI API",
    "openai-codex": "OpenAI API",
    "google": "Google AI Studio",
    "openrouter": "OpenRouter",
    "azure-openai-responses": "Azure OpenAI",
    "amazon-bedrock": "Amazon Bedrock",
    "groq": "Groq",
    "mistral": "Mistral",
    "xai": "xAI",
    "cerebras": "Cerebras",
    "zai": "z.ai",
    "huggingface": "Hugging Face",
    "vercel-ai-gateway": "Vercel AI Gateway",
    "github-copilot": "GitHub Copilot",
}


def mask_secret(value: Optional[str]) -> str:
    """鍵やトークンをマスクしてログ出力を避ける"""
    if not value:
        return "***"
    if len(value) <= 4:
        return "*" * len(value)
    return f"***{value[-4:]}"


def is_masked_placeholder(value: Optional[str]) -> bool:
    """mask_secretで生成されたプレースホルダかどうか"""
    if not value:
        return False
    return value.startswith("***") or set(value) == {"*"}


@dataclass
class ModelDescriptor:
    """モデル定義

    Attributes:
        id: モデル識別子
        name: 表示名
        short_name: 短縮名
        provider: プロバイダタグ
        context_window: コンテキストウィンドウ（トークン数）
        supports_thinking: 拡張推論に対応するか
        description: 説明
    """
    id: str
    name: str
    short_name: str = ""
    provider: str = "pi"
    context_window: int = 128_000
    supports_thinking: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        if not self.short_name:
            self.short_name = self.name

    @classmethod
    def from_id(
        cls,
        model_id: str,
        context_window: int = 128_000,
        description: str = "Custom model",
    ) -> "ModelDescriptor":
        """識別子だけのモデルを記述子に昇格する"""
        return cls(
            id=model_id,
            name=model_id,
            short_name=model_id,
            description=description,
            context_window=context_window,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelDescriptor":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            short_name=str(data.get("short_name") or data.get("shortName") or ""),
            provider=str(data.get("provider") or "pi"),
            context_window=int(data.get("context_window") or data.get("contextWindow") or 128_000),
            supports_thinking=bool(data.get("supports_thinking") or data.get("supportsThinking")),
            description=str(data.get("description") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "short_name": self.short_name,
            "provider": self.provider,
            "context_window": self.context_window,
            "supports_thinking": self.supports_thinking,
            "description": self.description,
        }


ModelEntry = Union[str, ModelDescriptor]


def model_entry_id(entry: ModelEntry) -> str:
    return entry if isinstance(entry, str) else entry.id


@dataclass
class Connection:
    """外部LLMバックエンドとの接続設定

    slugは作成後に変更されず、コレクション内で一意である。
    """
    slug: str
    name: str
    provider_type: ProviderType
    auth_type: AuthType
    base_url: Optional[str] = None
    sub_provider: Optional[str] = None
    models: List[ModelEntry] = field(default_factory=list)
    default_model: Optional[str] = None
    is_default: bool = False
    is_authenticated: bool = False
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def __post_init__(self) -> None:
        ids = self.model_ids()
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate model ids in connection '{self.slug}'")

    def model_ids(self) -> List[str]:
        return [model_entry_id(m) for m in self.models]

    @property
    def provider_label(self) -> str:
        """一覧表示用のプロバイダ名"""
        if self.auth_type is not AuthType.OAUTH and self.sub_provider:
            label = SUB_PROVIDER_LABELS.get(self.sub_provider)
            if label:
                return label
        return {
            ProviderType.KEY_AUTH: "Anthropic API",
            ProviderType.OAUTH_SUBSCRIPTION: "Subscription",
            ProviderType.DEVICE_OAUTH: "GitHub Copilot",
            ProviderType.LOCAL: "Local model",
            ProviderType.CUSTOM_COMPATIBLE: "Compatible endpoint",
        }[self.provider_type]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "name": self.name,
            "provider_type": self.provider_type.value,
            "auth_type": self.auth_type.value,
            "base_url": self.base_url,
            "sub_provider": self.sub_provider,
            "models": [m if isinstance(m, str) else m.to_dict() for m in self.models],
            "default_model": self.default_model,
            "is_default": self.is_default,
            "is_authenticated": self.is_authenticated,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Connection":
        models: List[ModelEntry] = []
        for raw in data.get("models") or []:
            if isinstance(raw, dict):
                models.append(ModelDescriptor.from_dict(raw))
            else:
                models.append(str(raw))
        kwargs: Dict[str, Any] = {}
        if data.get("created_at"):
            kwargs["created_at"] = str(data["created_at"])
        return cls(
            slug=str(data["slug"]),
            name=str(data.get("name") or data["slug"]),
            provider_type=ProviderType(data["provider_type"]),
            auth_type=AuthType(data.get("auth_type") or AuthType.API_KEY.value),
            base_url=data.get("base_url") or None,
            sub_provider=data.get("sub_provider") or None,
            models=models,
            default_model=data.get("default_model") or None,
            is_default=bool(data.get("is_default", False)),
            is_authenticated=bool(data.get("is_authenticated", False)),
            **kwargs,
        )


@dataclass
class Credential:
    """認証情報（APIキーまたはOAuthトークン）

    保存は認証情報ストアのみが行う。
    """
    api_key: Optional[str] = None
    oauth_access_token: Optional[str] = None
    oauth_refresh_token: Optional[str] = None
    expires_at: Optional[int] = None

    def __repr__(self) -> str:
        return (
            f"Credential(api_key={mask_secret(self.api_key) if self.api_key else None}, "
            f"oauth_access_token={'<redacted>' if self.oauth_access_token else None}, "
            f"oauth_refresh_token={'<redacted>' if self.oauth_refresh_token else None}, "
            f"expires_at={self.expires_at})"
        )

    @property
    def is_empty(self) -> bool:
        return not (self.api_key or self.oauth_access_token)

    def to_json(self) -> str:
        payload = {
            "api_key": self.api_key,
            "oauth_access_token": self.oauth_access_token,
            "oauth_refresh_token": self.oauth_refresh_token,
            "expires_at": self.expires_at,
        }
        return json.dumps({k: v for k, v in payload.items() if v is not None}, ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> "Credential":
        """保存文字列から復元する。JSONでない値はAPIキーとして扱う。"""
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return cls(api_key=raw)
        if not isinstance(payload, dict):
            return cls(api_key=raw)
        expires_at = payload.get("expires_at")
        return cls(
            api_key=payload.get("api_key"),
            oauth_access_token=payload.get("oauth_access_token"),
            oauth_refresh_token=payload.get("oauth_refresh_token"),
            expires_at=int(expires_at) if isinstance(expires_at, (int, float)) else None,
        )


@dataclass(frozen=True)
class ValidationResult:
    """接続検証の結果。例外として送出されることはない。"""
    success: bool
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(success=True)

    @classmethod
    def fail(cls, error: str, code: Optional[str] = None) -> "ValidationResult":
        return cls(success=False, error=error, error_code=code)


@dataclass
class ResolvedPaths:
    """補助バイナリやバンドルの解決済みパス"""
    server_path: Optional[str] = None
    interceptor_bundle_path: Optional[str] = None
    node_runtime_path: Optional[str] = None
    copilot_cli_path: Optional[str] = None


@dataclass
class RuntimeConfig:
    """起動時設定"""
    paths: Dict[str, Optional[str]] = field(default_factory=dict)
    sub_provider: Optional[str] = None
