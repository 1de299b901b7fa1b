"""
接続設定の永続化

connections.yaml への保存・削除・デフォルト切り替えを行う
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import yaml

from agentlink.models import Connection

logger = logging.getLogger(__name__)


@dataclass
class SaveResult:
    """保存結果"""

    success: bool
    error: Optional[str] = None


class ConnectionRepository(Protocol):
    """接続設定の永続化インターフェース"""

    def save(self, connection: Connection) -> SaveResult: ...

    def delete(self, slug: str) -> SaveResult: ...

    def set_default(self, slug: str) -> SaveResult: ...

    def get(self, slug: str) -> Optional[Connection]: ...

    def list(self) -> List[Connection]: ...


class YamlConnectionRepository:
    """YAMLファイルに接続設定を保存するリポジトリ

    コレクションが空でない限り、デフォルト接続は常にちょうど1件。
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def list(self) -> List[Connection]:
        """保存済みの接続一覧"""
        return self._load()

    def get(self, slug: str) -> Optional[Connection]:
        for connection in self._load():
            if connection.slug == slug:
                return connection
        return None

    def save(self, connection: Connection) -> SaveResult:
        """slugをキーに追加または更新する"""
        connections = self._load()
        replaced = False
        for index, existing in enumerate(connections):
            if existing.slug == connection.slug:
                # 既存接続のデフォルト状態は保存経由では変更しない
                connection.is_default = existing.is_default or connection.is_default
                connections[index] = connection
                replaced = True
                break
        if not replaced:
            connections.append(connection)

        if connection.is_default:
            for other in connections:
                if other.slug != connection.slug:
                    other.is_default = False
        self._ensure_single_default(connections)
        return self._write(connections)

    def delete(self, slug: str) -> SaveResult:
        connections = self._load()
        remaining = [c for c in connections if c.slug != slug]
        if len(remaining) == len(connections):
            return SaveResult(success=False, error=f"Connection '{slug}' not found")
        self._ensure_single_default(remaining)
        return self._write(remaining)

    def set_default(self, slug: str) -> SaveResult:
        connections = self._load()
        if not any(c.slug == slug for c in connections):
            return SaveResult(success=False, error=f"Connection '{slug}' not found")
        for connection in connections:
            connection.is_default = connection.slug == slug
        return self._write(connections)

    def _ensure_single_default(self, connections: List[Connection]) -> None:
        defaults = [c for c in connections if c.is_default]
        if not connections:
            return
        if not defaults:
            connections[0].is_default = True
            return
        for extra in defaults[1:]:
            extra.is_default = False

    def _load(self) -> List[Connection]:
        if not self._path.exists():
            return []

        try:
            with self._path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.error(
                "Failed to load connections file: path=%s error=%s",
                self._path,
                e,
                exc_info=True,
            )
            return []

        if not isinstance(data, dict):
            logger.error(
                "Invalid connections structure: expected mapping but got %s at %s",
                type(data).__name__,
                self._path,
            )
            return []

        connections: List[Connection] = []
        for raw in data.get("connections") or []:
            if not isinstance(raw, dict):
                continue
            try:
                connections.append(Connection.from_dict(raw))
            except (KeyError, ValueError) as e:
                logger.warning("Skipping invalid connection entry: %s", e)
        return connections

    def _write(self, connections: List[Connection]) -> SaveResult:
        payload: Dict[str, Any] = {
            "connections": [c.to_dict() for c in connections],
        }
        try:
            self._path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            with self._path.open("w", encoding="utf-8") as f:
                yaml.safe_dump(payload, f, allow_unicode=True, sort_keys=False)
        except (OSError, yaml.YAMLError) as e:
            logger.error("Failed to write connections file: path=%s error=%s", self._path, e)
            return SaveResult(success=False, error=str(e))
        return SaveResult(success=True)
