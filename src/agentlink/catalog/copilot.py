"""GitHub Copilot の動的モデル一覧取得。

バックエンドクライアントはプロセス環境変数からGitHubトークンを読むため、
トークンの受け渡しは scoped_env で1回の呼び出しに閉じ込める。
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import httpx

from agentlink.core.timeouts import best_effort, env_handoff_lock, run_with_timeout, scoped_env
from agentlink.errors import InvalidCredential, NoModelsFound, TransportError
from agentlink.models import ModelDescriptor, ResolvedPaths

logger = logging.getLogger(__name__)

TOKEN_ENV_VAR = "COPILOT_GITHUB_TOKEN"

COPILOT_TOKEN_URL = "https://api.github.com/copilot_internal/v2/token"
COPILOT_MODELS_URL = "https://api.githubcopilot.com/models"

DEFAULT_HEADERS = {
    "User-Agent": "agentlink/copilot",
    "Editor-Version": "vscode/1.85.0",
    "Copilot-Integration-Id": "vscode-chat",
    "Editor-Plugin-Version": "copilot-chat/0.12.0",
}

COPILOT_CONTEXT_WINDOW = 200_000


@dataclass
class RemoteModel:
    """Copilot APIが返すモデル情報"""

    id: str
    name: str
    supported_reasoning_efforts: list[str] | None = None
    policy_state: str | None = None


class AuxiliaryClient(Protocol):
    """モデル一覧取得に使うバックエンドクライアント。"""

    async def start(self) -> None: ...

    async def list_models(self) -> list[RemoteModel]: ...

    async def stop(self) -> None: ...


ClientFactory = Callable[[ResolvedPaths], AuxiliaryClient]


class HttpCopilotClient:
    """HTTPS経由でCopilotのモデル一覧を取得するクライアント。

    start() の時点で環境変数 COPILOT_GITHUB_TOKEN を読み取る。
    """

    def __init__(self, *, http_client: httpx.AsyncClient | None = None) -> None:
        self._owns_client = http_client is None
        self._client = http_client
        self._copilot_token: str | None = None

    async def start(self) -> None:
        github_token = os.environ.get(TOKEN_ENV_VAR)
        if not github_token:
            raise InvalidCredential.from_message("GitHubトークンが設定されていません。")

        if self._client is None:
            self._client = httpx.AsyncClient()
        response = await self._request(
            "GET",
            COPILOT_TOKEN_URL,
            headers={"Authorization": f"token {github_token}", **DEFAULT_HEADERS},
        )
        payload = response.json()
        token = payload.get("token") if isinstance(payload, dict) else None
        if not isinstance(token, str):
            raise InvalidCredential.from_message("Copilotトークンが取得できませんでした。")
        self._copilot_token = token

    async def list_models(self) -> list[RemoteModel]:
        if self._copilot_token is None:
            raise TransportError.from_message("Copilotクライアントが起動していません。")

        response = await self._request(
            "GET",
            COPILOT_MODELS_URL,
            headers={"Authorization": f"Bearer {self._copilot_token}", **DEFAULT_HEADERS},
        )
        data = response.json()
        entries = data.get("data", []) if isinstance(data, dict) else data
        return [model for model in (parse_remote_model(entry) for entry in entries or []) if model]

    async def stop(self) -> None:
        self._copilot_token = None
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, url: str, headers: dict[str, str]) -> httpx.Response:
        if self._client is None:
            raise TransportError.from_message("Copilotクライアントが起動していません。", {"endpoint": url})
        try:
            response = await self._client.request(method, url, headers=headers)
        except httpx.HTTPError as exc:
            raise TransportError.from_message(
                f"Copilot APIに接続できません: {exc}",
                {"endpoint": url},
            ) from exc
        if response.status_code in (401, 403):
            raise InvalidCredential.from_message(
                "GitHubトークンが無効か、Copilotのサブスクリプションがありません。"
            )
        if response.status_code >= 400:
            raise TransportError.from_message(
                f"Copilot APIがエラーを返しました (HTTP {response.status_code})。",
                {"endpoint": url, "status": response.status_code},
            )
        return response


def parse_remote_model(entry: Any) -> RemoteModel | None:
    """APIのモデルエントリを正規化する。"""

    if not isinstance(entry, dict) or not isinstance(entry.get("id"), str):
        return None

    efforts = entry.get("supportedReasoningEfforts")
    if efforts is None:
        supports = (entry.get("capabilities") or {}).get("supports") or {}
        efforts = supports.get("reasoning_effort")
    policy = entry.get("policy")
    policy_state = policy.get("state") if isinstance(policy, dict) else None

    return RemoteModel(
        id=entry["id"],
        name=str(entry.get("name") or entry["id"]),
        supported_reasoning_efforts=list(efforts) if isinstance(efforts, list) else None,
        policy_state=policy_state,
    )


def default_client_factory(paths: ResolvedPaths) -> AuxiliaryClient:
    return HttpCopilotClient()


def to_descriptors(models: list[RemoteModel]) -> list[ModelDescriptor]:
    """有効なモデルだけを記述子に変換する。

    ポリシー情報のないモデルは残す（情報がないことは拒否を意味しない）。
    """

    if not models:
        raise NoModelsFound.from_message("Copilot APIからモデルが返されませんでした。")

    enabled = [m for m in models if m.policy_state is None or m.policy_state == "enabled"]
    if not enabled:
        raise NoModelsFound.from_message(
            "有効なモデルがありません。GitHub Copilotの設定でモデルを有効にしてください。"
        )

    return [
        ModelDescriptor(
            id=m.id,
            name=m.name,
            short_name=m.name,
            description="",
            provider="pi",
            context_window=COPILOT_CONTEXT_WINDOW,
            supports_thinking=bool(m.supported_reasoning_efforts),
        )
        for m in enabled
    ]


async def fetch_copilot_models(
    access_token: str,
    paths: ResolvedPaths,
    timeout: float,
    *,
    client_factory: ClientFactory = default_client_factory,
) -> list[ModelDescriptor]:
    """OAuthアクセストークンを使ってCopilotのモデル一覧を取得する。

    Args:
        access_token: デバイスフローで取得したGitHubトークン
        paths: 補助バイナリのパス
        timeout: 起動と一覧取得それぞれのタイムアウト秒数
        client_factory: クライアント生成関数

    Raises:
        ConnectionTimeout: 起動または一覧取得がタイムアウトした場合
        NoModelsFound: 有効なモデルがない場合
    """

    async with env_handoff_lock():
        with scoped_env(TOKEN_ENV_VAR, access_token):
            client = client_factory(paths)
            try:
                await run_with_timeout(
                    client.start(),
                    timeout,
                    message=(
                        "Copilotクライアントが時間内に起動しませんでした。"
                        "ネットワーク接続とGitHub Copilotのサブスクリプションを確認してください。"
                    ),
                )
                models = await run_with_timeout(
                    client.list_models(),
                    timeout,
                    message="Copilotのモデル一覧取得がタイムアウトしました。GitHubトークンが無効か期限切れの可能性があります。",
                )
            finally:
                await best_effort(client.stop, "Stopping Copilot client")

    logger.debug("Copilot returned %d models", len(models))
    return to_descriptors(models)
