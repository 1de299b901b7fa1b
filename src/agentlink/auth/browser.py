"""ブラウザリダイレクト型 OAuth 2.1 (PKCE) フロー。

認可URLをブラウザで開き、ユーザーが貼り付けた認可コードを1回だけ交換する。
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import secrets
import time
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx
import jwt

from agentlink.auth.base import BrowserOpener, OAuthContext, SystemBrowserOpener
from agentlink.auth.storage import CredentialStore
from agentlink.core.timeouts import run_with_timeout
from agentlink.errors import (
    AgentLinkException,
    ErrorCode,
    OAuthExchangeFailed,
    OperationCancelled,
)
from agentlink.models import Credential, ValidationResult

logger = logging.getLogger(__name__)

CLAUDE_AUTH_URL = "https://claude.ai/oauth/authorize"
CLAUDE_TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"
CLAUDE_REDIRECT_URI = "https://console.anthropic.com/oauth/code/callback"
CLAUDE_SCOPES = ["org:create_api_key", "user:profile", "user:inference"]

CODEX_AUTH_URL = "https://auth.openai.com/oauth/authorize"
CODEX_TOKEN_URL = "https://auth.openai.com/oauth/token"
CODEX_CLIENT_ID = "app_EMoamEEZ73f0CkXaXp7hrann"
CODEX_SCOPES = ["openid", "profile", "email", "offline_access"]
CODEX_REDIRECT_URI = "http://localhost:1455/auth/callback"


def claude_context(client_id: str | None = None) -> OAuthContext:
    """Claudeサブスクリプション向けの設定。"""

    return OAuthContext(
        client_id=client_id,
        scopes=list(CLAUDE_SCOPES),
        auth_url=CLAUDE_AUTH_URL,
        token_url=CLAUDE_TOKEN_URL,
        redirect_uri=CLAUDE_REDIRECT_URI,
        extras={"code": "true"},
    )


def codex_context(client_id: str | None = None) -> OAuthContext:
    """ChatGPT (OpenAI Codex) サブスクリプション向けの設定。"""

    return OAuthContext(
        client_id=client_id or CODEX_CLIENT_ID,
        scopes=list(CODEX_SCOPES),
        auth_url=CODEX_AUTH_URL,
        token_url=CODEX_TOKEN_URL,
        redirect_uri=CODEX_REDIRECT_URI,
    )


def _decode_claims(token: str) -> dict[str, Any]:
    """署名を検証せずにJWTのクレームを読む。JWTでなければ空辞書。"""
    try:
        decoded = jwt.decode(token, options={"verify_signature": False, "verify_aud": False})
    except jwt.PyJWTError:
        return {}
    return decoded if isinstance(decoded, dict) else {}


def extract_code(text: str) -> tuple[str, str | None] | None:
    """貼り付けられた文字列から認可コードとstateを取り出す。

    生のコード、``code#state`` 形式、コールバックURLのいずれも受け付ける。
    """

    value = text.strip()
    if not value:
        return None

    if value.startswith(("http://", "https://")):
        query = parse_qs(urlparse(value).query)
        code = query.get("code", [None])[0]
        if not code:
            return None
        return code, query.get("state", [None])[0]

    if "#" in value:
        code, state = value.split("#", 1)
        if not code:
            return None
        return code, state or None

    return value, None


class BrowserOAuthFlow:
    """認可コードを1回送信するブラウザOAuthフロー。"""

    def __init__(
        self,
        context: OAuthContext,
        credential_store: CredentialStore,
        *,
        opener: BrowserOpener | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        """BrowserOAuthFlowを初期化する。

        Args:
            context: OAuth設定。
            credential_store: 交換したトークンの保存先。
            opener: ブラウザ起動用コラボレータ。
            http_client: トークン交換に使うHTTPクライアント。
            timeout_seconds: トークン交換のタイムアウト。
        """

        self._context = context
        self._credential_store = credential_store
        self._opener = opener or SystemBrowserOpener()
        self._http_client = http_client
        self._timeout_seconds = timeout_seconds
        self._verifier: str | None = None
        self._state: str | None = None
        self._cancel_event: asyncio.Event | None = None

    @property
    def is_waiting_for_code(self) -> bool:
        return self._verifier is not None

    async def start_authorization(self) -> str:
        """認可URLを生成してブラウザで開き、コード待ちに入る。

        Returns:
            str: 認可URL。
        """

        client_id = self._require_client_id()
        self._verifier = self._generate_verifier()
        self._state = secrets.token_urlsafe(16)
        self._cancel_event = asyncio.Event()
        auth_url = self._build_auth_url(client_id, self._generate_challenge(self._verifier), self._state)
        await self._opener.open(auth_url)
        logger.info("Waiting for authorization code")
        return auth_url

    async def submit_code(self, code: str, slug: str) -> ValidationResult:
        """認可コードをトークンに交換して保存する。例外は送出しない。

        Args:
            code: ユーザーが貼り付けた認可コード。
            slug: トークンを保存する接続のslug。
        """

        verifier, cancel_event = self._verifier, self._cancel_event
        if verifier is None or cancel_event is None:
            return ValidationResult.fail(
                "認可フローが開始されていません。もう一度サインインしてください。",
                code=ErrorCode.OAUTH_EXCHANGE_FAILED.value,
            )

        parsed = extract_code(code)
        if parsed is None:
            return ValidationResult.fail(
                "認可コードが入力されていません。",
                code=ErrorCode.OAUTH_EXCHANGE_FAILED.value,
            )
        auth_code, state = parsed
        if state is not None and state != self._state:
            return ValidationResult.fail(
                "認可コードが現在のサインインと一致しません。もう一度サインインしてください。",
                code=ErrorCode.OAUTH_EXCHANGE_FAILED.value,
            )

        try:
            payload = await run_with_timeout(
                self._exchange_code_for_token(auth_code, state, verifier),
                self._timeout_seconds,
                message="トークン交換がタイムアウトしました。",
                cancel_event=cancel_event,
            )
            credential = self._to_credential(payload)
        except AgentLinkException as exc:
            logger.warning("Authorization code exchange failed: %s", exc.error.code)
            return exc.to_validation_result()

        if cancel_event.is_set():
            # 交換中に中断された場合は保存しない
            return OperationCancelled.from_message("サインインがキャンセルされました。").to_validation_result()
        self._credential_store.set_credential(slug, credential)
        self._reset()
        return ValidationResult.ok()

    def cancel(self) -> None:
        """コード待ちと進行中のトークン交換を中断する。何も保存しない。"""

        if self._cancel_event is not None:
            self._cancel_event.set()
        self._reset()

    def _reset(self) -> None:
        self._verifier = None
        self._state = None
        self._cancel_event = None

    def _build_auth_url(self, client_id: str, challenge: str, state: str) -> str:
        params = {
            **self._context.extras,
            "response_type": "code",
            "client_id": client_id,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
            "state": state,
        }
        if self._context.redirect_uri:
            params["redirect_uri"] = self._context.redirect_uri
        if self._context.scopes:
            params["scope"] = " ".join(self._context.scopes)

        query = httpx.QueryParams(params)
        return f"{self._context.auth_url}?{query}"

    async def _exchange_code_for_token(self, code: str, state: str | None, verifier: str) -> dict[str, Any]:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self._require_client_id(),
            "code_verifier": verifier,
        }
        if self._context.redirect_uri:
            data["redirect_uri"] = self._context.redirect_uri
        if state:
            data["state"] = state
        if self._context.client_secret:
            data["client_secret"] = self._context.client_secret

        token_url = self._context.token_url or ""
        try:
            if self._http_client is not None:
                response = await self._http_client.post(token_url, data=data, headers={"Accept": "application/json"})
            else:
                async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                    response = await client.post(token_url, data=data, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            raise OAuthExchangeFailed.from_message(
                f"トークン交換に失敗しました: {exc}",
                {"token_url": token_url},
            ) from exc

        if response.status_code >= 400:
            logger.error("Token exchange failed: status=%s", response.status_code)
            raise OAuthExchangeFailed.from_message(
                f"認可コードの交換に失敗しました (HTTP {response.status_code})。",
                {"status": response.status_code},
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise OAuthExchangeFailed.from_message("トークン応答を解析できませんでした。") from exc
        if not isinstance(payload, dict):
            raise OAuthExchangeFailed.from_message("トークン応答を解析できませんでした。")
        return payload

    def _to_credential(self, payload: dict[str, Any]) -> Credential:
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise OAuthExchangeFailed.from_message("アクセストークンがレスポンスに含まれていません。")

        expires_at = None
        expires_in = payload.get("expires_in")
        if isinstance(expires_in, (int, float)):
            expires_at = int(time.time() + float(expires_in))
        else:
            # expires_in が無い場合はJWTのexpクレームを使う
            exp = _decode_claims(access_token).get("exp")
            if isinstance(exp, (int, float)):
                expires_at = int(exp)

        refresh_token = payload.get("refresh_token")
        return Credential(
            oauth_access_token=access_token,
            oauth_refresh_token=refresh_token if isinstance(refresh_token, str) else None,
            expires_at=expires_at,
        )

    def _require_client_id(self) -> str:
        if not self._context.client_id:
            raise OAuthExchangeFailed.from_message("client_idが未設定です。")
        return self._context.client_id

    def _generate_verifier(self) -> str:
        return self._base64_url_encode(secrets.token_bytes(32))

    def _generate_challenge(self, verifier: str) -> str:
        digest = hashlib.sha256(verifier.encode("utf-8")).digest()
        return self._base64_url_encode(digest)

    def _base64_url_encode(self, raw: bytes) -> str:
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")
