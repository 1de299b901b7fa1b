"""
接続プローブ

最小限のメッセージ送信リクエストを1回だけ発行し、
エンドポイントと認証情報の組が到達可能かつ認可済みかを判定する
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from agentlink.config.settings import DEFAULT_ENDPOINT, AgentLinkSettings
from agentlink.errors import (
    ConnectionTimeout,
    ErrorCode,
    OperationCancelled,
)
from agentlink.core.timeouts import run_with_timeout
from agentlink.models import ValidationResult, mask_secret

logger = logging.getLogger(__name__)

# 認証評価より前に返されるボットチャレンジページの目印（ベストエフォートの判定）
CHALLENGE_MARKERS = ("Just a moment", "challenge-platform", "cf-")

ANTHROPIC_VERSION = "2023-06-01"

INVALID_CREDENTIAL_MESSAGE = "無効なAPIキー、または認証されていません。APIキーを確認してください。"


def build_probe_url(endpoint_override: Optional[str], default_endpoint: str = DEFAULT_ENDPOINT) -> Tuple[str, str]:
    """実効エンドポイントとプローブURLを組み立てる

    Returns:
        (実効ベースURL, メッセージ送信URL)
    """
    effective = (endpoint_override or "").strip() or default_endpoint
    clean = effective.rstrip("/")
    if clean.endswith("/v1"):
        return effective, f"{clean}/messages"
    return effective, f"{clean}/v1/messages"


def is_challenge_body(body: str) -> bool:
    return any(marker in body for marker in CHALLENGE_MARKERS)


class ProbeEngine:
    """単発のHTTPリクエストで接続性を分類する"""

    def __init__(
        self,
        settings: Optional[AgentLinkSettings] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings or AgentLinkSettings()
        self._http_client = http_client

    async def probe(
        self,
        api_key: str,
        endpoint_override: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ValidationResult:
        """APIキーとエンドポイントを検証する。例外は送出しない。

        Args:
            api_key: 検証するAPIキー
            endpoint_override: 既定エンドポイントの上書き
            timeout: タイムアウト秒数（既定は設定値）
            cancel_event: 中断用イベント

        Returns:
            ValidationResult: 検証結果
        """
        budget = timeout if timeout is not None else self._settings.probe_timeout
        effective_base, url = build_probe_url(endpoint_override, self._settings.default_endpoint)
        logger.debug(
            "Probing endpoint: url=%s key=%s timeout=%s",
            url,
            mask_secret(api_key),
            budget,
        )

        try:
            response = await run_with_timeout(
                self._post(url, api_key, budget),
                budget,
                message=self._timeout_message(effective_base),
                cancel_event=cancel_event,
                details={"endpoint": effective_base},
            )
        except ConnectionTimeout as exc:
            return exc.to_validation_result()
        except OperationCancelled as exc:
            return exc.to_validation_result()
        except httpx.TimeoutException:
            return ValidationResult.fail(
                self._timeout_message(effective_base),
                code=ErrorCode.CONN_TIMEOUT.value,
            )
        except httpx.HTTPError as exc:
            logger.debug("Probe transport error: url=%s error=%s", url, exc)
            return ValidationResult.fail(
                f"{effective_base} に接続できません: {exc}",
                code=ErrorCode.CONN_TRANSPORT.value,
            )

        return self._classify(response)

    def _classify(self, response: httpx.Response) -> ValidationResult:
        status = response.status_code
        if status == 401:
            return ValidationResult.fail(
                INVALID_CREDENTIAL_MESSAGE,
                code=ErrorCode.AUTH_INVALID_CREDENTIAL.value,
            )

        if status == 403:
            if is_challenge_body(response.text):
                # チャレンジは認証評価より前に発生するため到達可能とみなす
                logger.debug("403 with challenge page; treating endpoint as reachable")
                return ValidationResult.ok()
            return ValidationResult.fail(
                INVALID_CREDENTIAL_MESSAGE,
                code=ErrorCode.AUTH_INVALID_CREDENTIAL.value,
            )

        # 2xx / その他の4xx / 5xx はサーバーが応答した時点で到達可能
        return ValidationResult.ok()

    async def _post(self, url: str, api_key: str, timeout: float) -> httpx.Response:
        payload = self._payload()
        headers = self._headers(api_key)
        if self._http_client is not None:
            return await self._http_client.post(url, headers=headers, json=payload, timeout=timeout)
        async with httpx.AsyncClient() as client:
            return await client.post(url, headers=headers, json=payload, timeout=timeout)

    def _payload(self) -> Dict[str, Any]:
        return {
            "model": self._settings.probe_model,
            "max_tokens": 1,
            "messages": [{"role": "user", "content": "Hi"}],
        }

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _timeout_message(self, effective_base: str) -> str:
        return f"接続テストがタイムアウトしました。{effective_base} にアクセスできるか、プロキシ設定を確認してください。"
