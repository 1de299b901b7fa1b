"""
コマンドライン引数の解析

コマンド解析とバリデーション機能を提供
"""

from dataclasses import dataclass
from typing import Any, Dict, List


# 有効なコマンドと必要な引数の数
COMMAND_ARITY = {
    "list": 0,
    "validate": 1,
    "models": 1,
    "default": 1,
    "rename": 2,
    "delete": 1,
    "add": 0,
    "edit": 1,
    "help": 0,
    "version": 0,
}

VALID_COMMANDS = set(COMMAND_ARITY)

COMMAND_USAGE = {
    "validate": "agentlink validate <slug>",
    "models": "agentlink models <slug>",
    "default": "agentlink default <slug>",
    "rename": "agentlink rename <slug> <name>",
    "delete": "agentlink delete <slug>",
    "edit": "agentlink edit <slug>",
}


@dataclass
class ParsedCommand:
    """解析済みコマンド

    Attributes:
        command: コマンド名
        args: コマンド引数
        options: オプション辞書
    """

    command: str
    args: List[str]
    options: Dict[str, Any]


@dataclass
class ValidationResult:
    """バリデーション結果

    Attributes:
        is_valid: 有効かどうか
        errors: エラーメッセージのリスト
    """

    is_valid: bool
    errors: List[str]


class ArgumentParser:
    """コマンドライン引数の解析"""

    def parse(self, argv: List[str]) -> ParsedCommand:
        """引数を解析してParsedCommandを返す

        Args:
            argv: コマンドライン引数リスト

        Returns:
            ParsedCommand: 解析結果
        """
        options: Dict[str, Any] = {}
        args: List[str] = []
        command: str = ""

        i = 0
        while i < len(argv):
            arg = argv[i]

            # ヘルプオプション
            if arg in ("-h", "--help"):
                options["help"] = True
                i += 1
                continue

            # バージョンオプション
            if arg in ("-v", "--version"):
                options["version"] = True
                i += 1
                continue

            if arg == "--verbose":
                options["verbose"] = True
                i += 1
                continue

            # 出力形式
            if arg == "--json":
                options["json"] = True
                i += 1
                continue

            # 設定ディレクトリ
            if arg == "--config-dir":
                if i + 1 < len(argv) and not argv[i + 1].startswith("-"):
                    options["config_dir"] = argv[i + 1]
                    i += 2
                    continue
                i += 1
                continue

            if arg in ("-y", "--yes"):
                options["yes"] = True
                i += 1
                continue

            # コマンドまたは引数
            if not command and not arg.startswith("-"):
                command = arg
            elif not arg.startswith("-"):
                args.append(arg)

            i += 1

        return ParsedCommand(command=command, args=args, options=options)

    def validate(self, parsed: ParsedCommand) -> ValidationResult:
        """解析結果の妥当性を検証

        Args:
            parsed: 解析済みコマンド

        Returns:
            ValidationResult: バリデーション結果
        """
        errors: List[str] = []

        # ヘルプ・バージョンオプションは常に有効
        if parsed.options.get("help") or parsed.options.get("version"):
            return ValidationResult(is_valid=True, errors=[])

        if not parsed.command:
            errors.append("Command is required. Use --help for usage information.")
            return ValidationResult(is_valid=False, errors=errors)

        if parsed.command not in VALID_COMMANDS:
            errors.append(
                f"Unknown command: '{parsed.command}'. "
                f"Available commands: {', '.join(sorted(VALID_COMMANDS))}"
            )
            return ValidationResult(is_valid=False, errors=errors)

        expected = COMMAND_ARITY[parsed.command]
        if parsed.command == "rename" and len(parsed.args) > expected:
            # 空白を含む名前は残りの引数を連結する
            return ValidationResult(is_valid=True, errors=[])
        if len(parsed.args) != expected:
            errors.append(f"Usage: {COMMAND_USAGE.get(parsed.command, 'agentlink ' + parsed.command)}")
            return ValidationResult(is_valid=False, errors=errors)

        return ValidationResult(is_valid=True, errors=[])
