"""agentlinkのCLIエントリーポイント"""

import logging
import sys
from typing import List

from pydantic import ValidationError

from agentlink import __version__
from agentlink.auth.storage import KeyringCredentialStore
from agentlink.cli.main import AgentLinkCLI, help_text
from agentlink.cli.parser import ArgumentParser
from agentlink.config.connections import YamlConnectionRepository
from agentlink.config.settings import AgentLinkSettings


def main(args: List[str] | None = None) -> int:
    """
    agentlinkのメインエントリーポイント

    Args:
        args: コマンドライン引数（Noneの場合はsys.argvを使用）

    Returns:
        終了コード（0: 成功、非0: エラー）
    """
    if args is None:
        args = sys.argv[1:]

    # 引数解析
    parser = ArgumentParser()
    parsed = parser.parse(args)

    # バージョン表示
    if parsed.options.get("version"):
        print(f"agentlink {__version__}")
        return 0

    # ヘルプ表示
    if parsed.options.get("help") or (not parsed.command and not args):
        _print_help()
        return 0

    # バリデーション
    validation = parser.validate(parsed)
    if not validation.is_valid:
        for error in validation.errors:
            print(error, file=sys.stderr)
        return 1

    if parsed.options.get("verbose"):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

    # 設定読み込み
    overrides = {}
    if parsed.options.get("config_dir"):
        overrides["config_dir"] = parsed.options["config_dir"]
    try:
        settings = AgentLinkSettings(**overrides)
    except ValidationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    repository = YamlConnectionRepository(settings.connections_path)
    credential_store = KeyringCredentialStore(
        settings.keyring_service,
        fallback_path=settings.credentials_fallback_path,
    )

    # CLI実行
    cli = AgentLinkCLI(settings, repository, credential_store)
    return cli.run(parsed.command, parsed.args, options=parsed.options)


def _print_help() -> None:
    """ヘルプメッセージを表示"""
    print(help_text())


if __name__ == "__main__":
    sys.exit(main())
