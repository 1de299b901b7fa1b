"""OAuthフロー基盤。

ブラウザリダイレクト型とデバイスコード型のフローが共通で利用する
設定コンテナと外部コラボレータ（ブラウザ起動・クリップボード）を定義する。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol
import webbrowser

import pyperclip

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OAuthContext:
    """OAuthに必要な設定情報。

    個別のフローが必要とする値を保持するための共通コンテナ。
    """

    client_id: str | None = None
    client_secret: str | None = None
    scopes: list[str] = field(default_factory=list)
    auth_url: str | None = None
    token_url: str | None = None
    device_code_url: str | None = None
    redirect_uri: str | None = None
    extras: dict[str, str] = field(default_factory=dict)


class BrowserOpener(Protocol):
    """認可URLを既定ブラウザで開く。結果は待たない。"""

    async def open(self, url: str) -> None: ...


class Clipboard(Protocol):
    """ユーザーコードをクリップボードへコピーする。"""

    async def copy(self, text: str) -> bool: ...


class SystemBrowserOpener:
    """webbrowserモジュールでURLを開く。"""

    async def open(self, url: str) -> None:
        opened = await asyncio.to_thread(webbrowser.open, url)
        if not opened:
            logger.info("Could not open a browser; visit %s manually", url)


class PyperclipClipboard:
    """pyperclipでコピーする。失敗は致命的ではない。"""

    async def copy(self, text: str) -> bool:
        return await asyncio.to_thread(self._copy, text)

    def _copy(self, text: str) -> bool:
        try:
            pyperclip.copy(text)
        except Exception:
            logger.debug("Clipboard copy failed; ignoring", exc_info=True)
            return False
        return True
