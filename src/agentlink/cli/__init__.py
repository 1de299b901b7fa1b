"""CLI - コマンド解析と実行"""

from agentlink.cli.main import AgentLinkCLI
from agentlink.cli.parser import ArgumentParser, ParsedCommand, ValidationResult

__all__ = ["AgentLinkCLI", "ArgumentParser", "ParsedCommand", "ValidationResult"]
