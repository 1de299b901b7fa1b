"""キャンセル可能なタイムアウト合成子と環境変数ガード."""

import asyncio
import logging
import os
import weakref
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional, Type, TypeVar

from agentlink.errors import AgentLinkException, ConnectionTimeout, OperationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_with_timeout(
    awaitable: Awaitable[T],
    timeout: Optional[float],
    *,
    message: str,
    cancel_event: Optional[asyncio.Event] = None,
    error_cls: Type[AgentLinkException] = ConnectionTimeout,
    details: Optional[Dict[str, Any]] = None,
) -> T:
    """awaitable をタイマーとキャンセルトークンと競争させる.

    Args:
        awaitable: 実行する処理
        timeout: タイムアウト秒数（Noneなら無制限）
        message: タイムアウト時のエラーメッセージ
        cancel_event: セットされると処理を中断するイベント
        error_cls: タイムアウト時に送出する例外クラス
        details: 例外に付与する詳細

    Returns:
        awaitable の結果

    Raises:
        ConnectionTimeout: タイムアウトした場合（error_cls で変更可能）
        OperationCancelled: cancel_event がセットされた場合
    """
    task = asyncio.ensure_future(awaitable)
    waiters = {task}
    cancel_waiter: Optional[asyncio.Future] = None
    if cancel_event is not None:
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(
            waiters,
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if task in done:
            return task.result()
        if cancel_waiter is not None and cancel_waiter in done:
            raise OperationCancelled.from_message("操作がキャンセルされました。", details)
        logger.debug("Operation timed out after %s seconds: %s", timeout, message)
        raise error_cls.from_message(message, details)
    finally:
        # 成功・失敗どちらの経路でもタイマー側の待機を必ず解放する
        for waiter in waiters:
            if not waiter.done():
                waiter.cancel()


async def best_effort(operation: Callable[[], Awaitable[Any]], description: str) -> None:
    """後片付けを実行し、失敗しても元のエラーを置き換えない."""
    try:
        await operation()
    except Exception:
        logger.debug("%s failed; ignoring", description, exc_info=True)


@dataclass(frozen=True)
class EnvSnapshot:
    """単一の環境変数の状態を保存・復元する."""

    name: str
    value: Optional[str]

    @classmethod
    def capture(cls, name: str) -> "EnvSnapshot":
        return cls(name=name, value=os.environ.get(name))

    def restore(self) -> None:
        """取得時の状態へ戻す。元々未設定なら削除する."""
        if self.value is None:
            os.environ.pop(self.name, None)
        else:
            os.environ[self.name] = self.value


@contextmanager
def scoped_env(name: str, value: str) -> Iterator[EnvSnapshot]:
    """環境変数を一時的に設定し、抜けるときに必ず復元する."""
    snapshot = EnvSnapshot.capture(name)
    os.environ[name] = value
    try:
        yield snapshot
    finally:
        snapshot.restore()


_ENV_LOCKS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = (
    weakref.WeakKeyDictionary()
)


def env_handoff_lock() -> asyncio.Lock:
    """実行中のイベントループ単位で共有される環境変数受け渡し用ロック."""
    loop = asyncio.get_running_loop()
    lock = _ENV_LOCKS.get(loop)
    if lock is None:
        lock = asyncio.Lock()
        _ENV_LOCKS[loop] = lock
    return lock
