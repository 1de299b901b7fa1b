"""
コマンド解析のプロパティテスト

有効なコマンドは必要な引数の数だけ受け付け、無効なコマンドはエラーになる
"""

import unittest
from hypothesis import given, settings, assume
from hypothesis import strategies as st

from agentlink.cli.parser import (
    COMMAND_ARITY,
    ArgumentParser,
    VALID_COMMANDS,
)

plain_args = st.text(min_size=1, max_size=20).filter(lambda x: not x.startswith("-") and x.strip())


class TestCommandParsingProperty(unittest.TestCase):
    """
    For any コマンド文字列に対して、有効なコマンドであれば必要な引数の数で
    バリデーションを通過し、無効なコマンドであればエラーメッセージが生成される
    """

    def setUp(self):
        """テストの準備"""
        self.parser = ArgumentParser()

    @given(command=st.sampled_from(sorted(VALID_COMMANDS)), data=st.data())
    @settings(max_examples=100)
    def test_valid_commands_with_required_args(self, command: str, data):
        """必要な数の引数を与えた有効なコマンドは常にバリデーションを通過する"""
        args = data.draw(st.lists(plain_args, min_size=COMMAND_ARITY[command], max_size=COMMAND_ARITY[command]))
        result = self.parser.parse([command] + args)
        validation = self.parser.validate(result)
        self.assertTrue(validation.is_valid)
        self.assertEqual(result.command, command)
        self.assertEqual(result.args, args)

    @given(command=st.sampled_from(sorted(c for c, n in COMMAND_ARITY.items() if n > 0)))
    @settings(max_examples=100)
    def test_missing_args_show_usage(self, command: str):
        """引数が足りない場合は使い方が表示される"""
        validation = self.parser.validate(self.parser.parse([command]))
        self.assertFalse(validation.is_valid)
        self.assertTrue(validation.errors[0].startswith("Usage: agentlink "))

    @given(command=st.text(min_size=1, max_size=50))
    @settings(max_examples=100)
    def test_unknown_commands_are_rejected(self, command: str):
        """不明なコマンドはバリデーションで拒否される"""
        # 有効なコマンドでなく、オプションでもないことを仮定
        assume(command not in VALID_COMMANDS)
        assume(not command.startswith("-"))
        assume(command.strip() == command)  # 前後に空白がない

        result = self.parser.parse([command])
        validation = self.parser.validate(result)

        self.assertFalse(validation.is_valid)
        self.assertTrue(len(validation.errors) > 0)
        self.assertIn("unknown", validation.errors[0].lower())

    @given(words=st.lists(plain_args, min_size=1, max_size=6))
    @settings(max_examples=100)
    def test_rename_accepts_any_word_count(self, words: list):
        """renameの名前は空白区切りで複数語を受け付ける"""
        result = self.parser.parse(["rename", "work"] + words)
        self.assertTrue(self.parser.validate(result).is_valid)
        self.assertEqual(result.args[1:], words)

    @given(st.booleans())
    @settings(max_examples=100)
    def test_help_option_always_works(self, use_short: bool):
        """--helpまたは-hオプションは常に機能する"""
        option = "-h" if use_short else "--help"
        result = self.parser.parse([option])

        self.assertTrue(result.options.get("help"))
        validation = self.parser.validate(result)
        self.assertTrue(validation.is_valid)

    @given(st.booleans())
    @settings(max_examples=100)
    def test_version_option_always_works(self, use_short: bool):
        """--versionまたは-vオプションは常に機能する"""
        option = "-v" if use_short else "--version"
        result = self.parser.parse([option])

        self.assertTrue(result.options.get("version"))
        validation = self.parser.validate(result)
        self.assertTrue(validation.is_valid)

    @given(path=plain_args, command=st.sampled_from(sorted(VALID_COMMANDS)))
    @settings(max_examples=100)
    def test_config_dir_option_preserved(self, path: str, command: str):
        """--config-dirの値は位置に関係なく保存される"""
        result = self.parser.parse(["--config-dir", path, command])

        self.assertEqual(result.options["config_dir"], path)
        self.assertEqual(result.command, command)
        self.assertEqual(result.args, [])


if __name__ == "__main__":
    unittest.main()
