"""認証情報の安全な保存を提供する。"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Protocol
import warnings

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from agentlink.models import Credential

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    """接続slug単位で認証情報を読み書きするストア。"""

    def get_credential(self, slug: str) -> Credential | None: ...

    def set_credential(self, slug: str, credential: Credential) -> None: ...

    def delete_credential(self, slug: str) -> None: ...


class KeyringCredentialStore:
    """認証情報をOSのkeyringへ保存し、使えなければローカルファイルへ退避する。"""

    def __init__(self, keyring_service: str = "agentlink", fallback_path: Path | None = None) -> None:
        """KeyringCredentialStoreを初期化する。

        Args:
            keyring_service: keyringに保存する際のサービス名。
            fallback_path: keyringが使えない場合の保存先。
        """

        self._keyring_service = keyring_service
        self._fallback_path = fallback_path or Path.home() / ".agentlink" / "credentials.json"
        self._use_keyring = True

    def get_credential(self, slug: str) -> Credential | None:
        """認証情報を取得する。

        Args:
            slug: 接続のslug。

        Returns:
            認証情報。存在しない場合はNone。
        """

        raw = self._get(self._key(slug))
        if not raw:
            return None
        credential = Credential.from_json(raw)
        if credential.is_empty:
            return None
        return credential

    def set_credential(self, slug: str, credential: Credential) -> None:
        """認証情報を保存する。

        Args:
            slug: 接続のslug。
            credential: 保存する認証情報。
        """

        key = self._key(slug)
        payload = credential.to_json()
        if self._use_keyring:
            try:
                keyring.set_password(self._keyring_service, key, payload)
                return
            except KeyringError as exc:
                self._switch_to_fallback(exc)

        tokens = self._read_fallback()
        tokens[key] = payload
        self._write_fallback(tokens)

    def delete_credential(self, slug: str) -> None:
        """認証情報を削除する。存在しない場合は何もしない。"""

        key = self._key(slug)
        if self._use_keyring:
            try:
                keyring.delete_password(self._keyring_service, key)
                return
            except PasswordDeleteError:
                return
            except KeyringError as exc:
                self._switch_to_fallback(exc)

        tokens = self._read_fallback()
        if key in tokens:
            tokens.pop(key)
            self._write_fallback(tokens)

    def _key(self, slug: str) -> str:
        return f"llm.{slug}"

    def _get(self, key: str) -> str | None:
        if self._use_keyring:
            try:
                return keyring.get_password(self._keyring_service, key)
            except KeyringError as exc:
                self._switch_to_fallback(exc)

        return self._read_fallback().get(key)

    def _switch_to_fallback(self, exc: Exception) -> None:
        if self._use_keyring:
            logger.debug("keyring unavailable: %s", exc)
            warnings.warn(
                "keyringが利用できないため、ローカルファイルに保存します。",
                RuntimeWarning,
                stacklevel=3,
            )
            self._use_keyring = False

    def _read_fallback(self) -> dict[str, str]:
        if not self._fallback_path.exists():
            return {}

        self._ensure_permissions(self._fallback_path)
        try:
            with self._fallback_path.open("r", encoding="utf-8") as file:
                data = json.load(file)
        except json.JSONDecodeError:
            warnings.warn(
                "認証情報ファイルの形式が不正です。空として扱います。",
                RuntimeWarning,
                stacklevel=3,
            )
            return {}

        if not isinstance(data, dict):
            return {}

        return {str(key): str(value) for key, value in data.items()}

    def _write_fallback(self, tokens: dict[str, str]) -> None:
        self._fallback_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        with self._fallback_path.open("w", encoding="utf-8") as file:
            json.dump(tokens, file, ensure_ascii=False, indent=2)
        self._ensure_permissions(self._fallback_path)

    def _ensure_permissions(self, path: Path) -> None:
        if path.exists():
            os.chmod(path, 0o600)
