"""設定管理 - 設定と接続設定の読み込み"""

from agentlink.config.connections import (
    ConnectionRepository,
    SaveResult,
    YamlConnectionRepository,
)
from agentlink.config.settings import DEFAULT_ENDPOINT, AgentLinkSettings

__all__ = [
    "AgentLinkSettings",
    "ConnectionRepository",
    "DEFAULT_ENDPOINT",
    "SaveResult",
    "YamlConnectionRepository",
]
