"""Pydantic V2 ベースの統合設定モデル"""

import logging
from pathlib import Path
from typing import Any, Optional, Tuple

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://api.pi-ai.workers.dev"
DEFAULT_CONFIG_DIR = Path.home() / ".agentlink"


class AgentLinkSettings(BaseSettings):
    """agentlink の統合設定"""

    model_config = SettingsConfigDict(
        env_prefix="AGENTLINK_",
        env_file=".env",
        extra="ignore",
    )

    # 保存先（MENGKO_CONFIG_DIR / CRAFT_CONFIG_DIR は旧来の名前）
    config_dir: Path = Field(
        default=DEFAULT_CONFIG_DIR,
        validation_alias=AliasChoices(
            "config_dir",
            "AGENTLINK_CONFIG_DIR",
            "MENGKO_CONFIG_DIR",
            "CRAFT_CONFIG_DIR",
        ),
    )
    keyring_service: str = Field(default="agentlink")

    # プローブ設定
    default_endpoint: str = Field(default=DEFAULT_ENDPOINT)
    probe_model: str = Field(default="claude-sonnet-4-6")
    probe_timeout: float = Field(default=20.0, gt=0)
    stored_probe_timeout: float = Field(default=10.0, gt=0)

    # OAuth / モデル一覧
    device_flow_timeout: float = Field(default=300.0, gt=0)
    model_list_timeout: float = Field(default=30.0, gt=0)
    claude_oauth_client_id: Optional[str] = Field(default=None)
    chatgpt_oauth_client_id: Optional[str] = Field(default=None)
    copilot_oauth_client_id: Optional[str] = Field(default=None)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[Any, ...]:
        """設定ソースの優先順位をカスタマイズ（init > env > dotenv）"""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    @field_validator("default_endpoint")
    @classmethod
    def strip_endpoint(cls, value: str) -> str:
        """末尾のスラッシュを除去する"""
        cleaned = value.strip().rstrip("/")
        if not cleaned:
            raise ValueError("default_endpoint must not be empty")
        return cleaned

    @property
    def connections_path(self) -> Path:
        return self.config_dir / "connections.yaml"

    @property
    def credentials_fallback_path(self) -> Path:
        return self.config_dir / "credentials.json"
