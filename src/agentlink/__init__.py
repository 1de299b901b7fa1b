"""agentlink - LLMバックエンドへの接続を検証・保存するツールキット"""

__version__ = "0.1.0"
