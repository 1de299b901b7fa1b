"""アプリケーションサービス"""

from agentlink.services.connections import ConnectionManager

__all__ = ["ConnectionManager"]
