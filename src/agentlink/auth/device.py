"""GitHub Copilot Device Flow。

ユーザーコードを表示して外部での承認をポーリングで待ち、
取得したトークンを認証情報ストアへ保存する。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from agentlink.auth.base import BrowserOpener, Clipboard, OAuthContext, PyperclipClipboard, SystemBrowserOpener
from agentlink.auth.storage import CredentialStore
from agentlink.catalog.copilot import TOKEN_ENV_VAR, AuxiliaryClient, ClientFactory
from agentlink.core.timeouts import (
    EnvSnapshot,
    best_effort,
    env_handoff_lock,
    run_with_timeout,
    scoped_env,
)
from agentlink.errors import (
    AgentLinkException,
    ErrorCode,
    OAuthExchangeFailed,
    OAuthTimedOut,
)
from agentlink.models import Credential, ResolvedPaths, ValidationResult

logger = logging.getLogger(__name__)

GITHUB_DEVICE_CODE_URL = "https://github.com/login/device/code"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"

DEFAULT_CLIENT_ID = "Iv1.b507a08c87ecfe98"
DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"

DEFAULT_HEADERS = {
    "User-Agent": "agentlink/device-flow",
    "Accept": "application/json",
}


def copilot_context(client_id: str | None = None) -> OAuthContext:
    """GitHub Copilot向けの設定。"""

    return OAuthContext(
        client_id=client_id or DEFAULT_CLIENT_ID,
        scopes=["read:user"],
        device_code_url=GITHUB_DEVICE_CODE_URL,
        token_url=GITHUB_TOKEN_URL,
    )


def _parse_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise OAuthExchangeFailed.from_message("GitHubの応答を解析できませんでした。") from exc


@dataclass(frozen=True)
class DeviceCode:
    """デバイスコード要求の結果"""

    user_code: str
    verification_uri: str
    device_code: str
    interval: int = 5
    expires_in: int = 900


class DeviceCodeFlow:
    """デバイスコード型のOAuthフロー。

    開始時点のトークン環境変数を保存し、失敗・タイムアウト・キャンセル時には
    起動済みのクライアントを停止したうえで、その状態へ正確に戻す。
    """

    def __init__(
        self,
        context: OAuthContext,
        credential_store: CredentialStore,
        *,
        opener: BrowserOpener | None = None,
        clipboard: Clipboard | None = None,
        client_factory: ClientFactory | None = None,
        paths: ResolvedPaths | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 300.0,
        request_timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """DeviceCodeFlowを初期化する。

        Args:
            context: OAuth設定。
            credential_store: トークンの保存先。
            opener: 検証URLを開くブラウザ起動コラボレータ。
            clipboard: ユーザーコードのコピー先。
            client_factory: 承認後にトークンを検証するクライアントの生成関数（任意）。
            paths: クライアントに渡す補助バイナリのパス。
            http_client: デバイスコード要求とポーリングに使うHTTPクライアント。
            timeout_seconds: 承認待ちの上限。
            request_timeout: 個々のHTTPリクエストのタイムアウト。
            sleep: ポーリング間隔の待機関数。
        """

        self._context = context
        self._credential_store = credential_store
        self._opener = opener or SystemBrowserOpener()
        self._clipboard = clipboard or PyperclipClipboard()
        self._client_factory = client_factory
        self._paths = paths or ResolvedPaths()
        self._http_client = http_client
        self._timeout_seconds = timeout_seconds
        self._request_timeout = request_timeout
        self._sleep = sleep

        self._snapshot: EnvSnapshot | None = None
        self._client: AuxiliaryClient | None = None
        self._cancel_event: asyncio.Event | None = None
        self._device: DeviceCode | None = None

    @property
    def device_code(self) -> DeviceCode | None:
        return self._device

    async def start_authorization(self) -> DeviceCode:
        """デバイスコードを要求し、ユーザーコードを提示する。

        Raises:
            OAuthExchangeFailed: デバイスコードが取得できない場合。
        """

        await self._cleanup()
        async with env_handoff_lock():
            # 他の接続へのトークン受け渡し中の値は記録しない
            self._snapshot = EnvSnapshot.capture(TOKEN_ENV_VAR)
        self._cancel_event = asyncio.Event()

        try:
            payload = await run_with_timeout(
                self._request_device_code(),
                self._request_timeout,
                message="デバイスコードの取得がタイムアウトしました。",
                cancel_event=self._cancel_event,
            )
            device = self._parse_device_code(payload)
        except BaseException:
            await self._cleanup()
            raise

        self._device = device
        await best_effort(lambda: self._clipboard.copy(device.user_code), "Copying user code")
        logger.debug("Device user code issued")
        await best_effort(lambda: self._opener.open(device.verification_uri), "Opening verification URI")
        return device

    async def wait_for_confirmation(self, slug: str, timeout: float | None = None) -> ValidationResult:
        """外部での承認を待ち、トークンを保存する。例外は送出しない。

        Args:
            slug: トークンを保存する接続のslug。
            timeout: 承認待ちの上限（既定はコンストラクタの値）。
        """

        device = self._device
        if device is None or self._cancel_event is None:
            return ValidationResult.fail(
                "デバイス認証が開始されていません。",
                code=ErrorCode.OAUTH_EXCHANGE_FAILED.value,
            )

        budget = min(timeout if timeout is not None else self._timeout_seconds, float(device.expires_in))
        try:
            github_token = await run_with_timeout(
                self._poll_for_token(device),
                budget,
                message="デバイス認証がタイムアウトしました。もう一度お試しください。",
                cancel_event=self._cancel_event,
                error_cls=OAuthTimedOut,
            )
            if self._client_factory is not None:
                await self._verify_with_client(self._client_factory, github_token, budget)
        except AgentLinkException as exc:
            logger.info("Device flow did not complete: %s", exc.error.code)
            await self._cleanup()
            return exc.to_validation_result()
        except asyncio.CancelledError:
            await self._cleanup()
            raise

        self._credential_store.set_credential(slug, Credential(oauth_access_token=github_token))
        await self._cleanup()
        return ValidationResult.ok()

    async def cancel(self) -> None:
        """承認待ちを中断し、起動済みのクライアントと環境変数を元に戻す。"""

        if self._cancel_event is not None:
            self._cancel_event.set()
        await self._cleanup()

    async def _verify_with_client(self, client_factory: ClientFactory, github_token: str, timeout: float) -> None:
        async with env_handoff_lock():
            with scoped_env(TOKEN_ENV_VAR, github_token):
                self._client = client_factory(self._paths)
                await run_with_timeout(
                    self._client.start(),
                    timeout,
                    message="Copilotクライアントが時間内に起動しませんでした。",
                    cancel_event=self._cancel_event,
                )
                client, self._client = self._client, None
                await best_effort(client.stop, "Stopping Copilot client")

    async def _cleanup(self) -> None:
        # 後片付けの失敗は元のエラーを隠さない
        client, self._client = self._client, None
        if client is not None:
            await best_effort(client.stop, "Stopping Copilot client")
        snapshot, self._snapshot = self._snapshot, None
        if snapshot is not None:
            async with env_handoff_lock():
                snapshot.restore()
        self._device = None

    async def _request_device_code(self) -> dict[str, Any]:
        data = {
            "client_id": self._context.client_id or DEFAULT_CLIENT_ID,
            "scope": " ".join(self._context.scopes or ["read:user"]),
        }
        response = await self._post(self._context.device_code_url or GITHUB_DEVICE_CODE_URL, data)
        payload = _parse_json(response)
        if not isinstance(payload, dict) or "device_code" not in payload:
            raise OAuthExchangeFailed.from_message("device_codeが取得できませんでした。")
        return payload

    def _parse_device_code(self, payload: dict[str, Any]) -> DeviceCode:
        user_code = payload.get("user_code")
        verification_uri = payload.get("verification_uri")
        if not user_code or not verification_uri:
            raise OAuthExchangeFailed.from_message("認証コード情報が不足しています。")
        return DeviceCode(
            user_code=str(user_code),
            verification_uri=str(verification_uri),
            device_code=str(payload["device_code"]),
            interval=int(payload.get("interval", 5)),
            expires_in=int(payload.get("expires_in", self._timeout_seconds)),
        )

    async def _poll_for_token(self, device: DeviceCode) -> str:
        interval = device.interval
        data = {
            "client_id": self._context.client_id or DEFAULT_CLIENT_ID,
            "device_code": device.device_code,
            "grant_type": DEVICE_GRANT_TYPE,
        }
        token_url = self._context.token_url or GITHUB_TOKEN_URL

        while True:
            response = await self._post(token_url, data)
            payload = _parse_json(response)
            if not isinstance(payload, dict):
                raise OAuthExchangeFailed.from_message("トークン応答を解析できませんでした。")

            if payload.get("access_token"):
                return str(payload["access_token"])

            error = payload.get("error")
            if error == "authorization_pending":
                await self._sleep(interval)
                continue
            if error == "slow_down":
                interval += 5
                await self._sleep(interval)
                continue
            if error in {"expired_token", "access_denied"}:
                raise OAuthExchangeFailed.from_message("デバイス認証が拒否されたか、期限切れになりました。")

            raise OAuthExchangeFailed.from_message(f"デバイス認証に失敗しました: {error}")

    async def _post(self, url: str, data: dict[str, str]) -> httpx.Response:
        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, data=data, headers=DEFAULT_HEADERS)
            else:
                async with httpx.AsyncClient(timeout=self._request_timeout) as client:
                    response = await client.post(url, data=data, headers=DEFAULT_HEADERS)
        except httpx.HTTPError as exc:
            raise OAuthExchangeFailed.from_message(
                f"GitHubに接続できません: {exc}",
                {"endpoint": url},
            ) from exc

        if response.status_code >= 400:
            raise OAuthExchangeFailed.from_message(
                f"GitHubがエラーを返しました (HTTP {response.status_code})。",
                {"endpoint": url, "status": response.status_code},
            )
        return response
