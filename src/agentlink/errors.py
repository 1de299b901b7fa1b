"""
エラー定義

接続検証・認証・モデル解決・オンボーディングで使用されるエラーコードと例外クラス
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from agentlink.models import ValidationResult


class ErrorCode(Enum):
    """エラーコード

    カテゴリ別にエラーコードを定義:
    - AUTH_xxx: 認証情報エラー
    - CONN_xxx: 接続エラー
    - MODELS_xxx: モデル解決エラー
    - OAUTH_xxx: OAuthフローエラー
    - STORE_xxx: 永続化エラー
    - CONFIG_xxx: 設定エラー
    - ONBOARDING_xxx: ウィザード遷移エラー
    """
    # 認証情報エラー
    AUTH_INVALID_CREDENTIAL = "AUTH_001"
    AUTH_CREDENTIAL_NOT_FOUND = "AUTH_002"

    # 接続エラー
    CONN_TIMEOUT = "CONN_001"
    CONN_TRANSPORT = "CONN_002"
    CONN_CANCELLED = "CONN_003"

    # モデル解決エラー
    MODELS_NOT_FOUND = "MODELS_001"

    # OAuthエラー
    OAUTH_EXCHANGE_FAILED = "OAUTH_001"
    OAUTH_TIMED_OUT = "OAUTH_002"

    # 永続化エラー
    PERSISTENCE_FAILED = "STORE_001"

    # 設定エラー
    CONFIG_INVALID_VALUE = "CONFIG_001"

    # ウィザード遷移エラー
    ONBOARDING_INVALID_TRANSITION = "ONBOARDING_001"


@dataclass
class LinkError:
    """エラー情報

    Attributes:
        code: エラーコード文字列
        message: エラーメッセージ（ユーザー表示用）
        details: 追加のエラー詳細情報
        recoverable: 復旧可能かどうか
    """
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None
    recoverable: bool = True
    log_level: int = logging.ERROR


class AgentLinkException(Exception):
    """agentlink例外クラス

    LinkErrorをラップする例外クラス
    """

    default_code: ErrorCode = ErrorCode.CONFIG_INVALID_VALUE

    def __init__(self, error: LinkError):
        """AgentLinkExceptionを初期化

        Args:
            error: LinkErrorインスタンス
        """
        self.error = error
        self.log_level = error.log_level
        super().__init__(f"[{error.code}] {error.message}")

    @classmethod
    def from_message(
        cls,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> "AgentLinkException":
        """クラス既定のエラーコードで例外を生成する"""
        return cls(
            LinkError(
                code=cls.default_code.value,
                message=message,
                details=details,
                recoverable=True,
                log_level=ERROR_CODE_LOG_LEVEL.get(cls.default_code, logging.ERROR),
            )
        )

    @property
    def message(self) -> str:
        return self.error.message

    def to_validation_result(self) -> "ValidationResult":
        """失敗のValidationResultへ変換する"""
        from agentlink.models import ValidationResult

        return ValidationResult.fail(self.error.message, code=self.error.code)


class InvalidCredential(AgentLinkException):
    """APIキーやトークンが拒否された"""

    default_code = ErrorCode.AUTH_INVALID_CREDENTIAL


class CredentialNotFound(AgentLinkException):
    """保存済みの認証情報が存在しない"""

    default_code = ErrorCode.AUTH_CREDENTIAL_NOT_FOUND


class ConnectionTimeout(AgentLinkException):
    """ネットワークまたはサブプロセス待機のタイムアウト"""

    default_code = ErrorCode.CONN_TIMEOUT


class TransportError(AgentLinkException):
    """エンドポイントへの到達に失敗した"""

    default_code = ErrorCode.CONN_TRANSPORT


class OperationCancelled(AgentLinkException):
    """キャンセルトークンにより中断された"""

    default_code = ErrorCode.CONN_CANCELLED


class NoModelsFound(AgentLinkException):
    """利用可能なモデルが解決できなかった"""

    default_code = ErrorCode.MODELS_NOT_FOUND


class OAuthExchangeFailed(AgentLinkException):
    """認可コードやデバイスコードのトークン交換に失敗した"""

    default_code = ErrorCode.OAUTH_EXCHANGE_FAILED


class OAuthTimedOut(ConnectionTimeout):
    """OAuth確認待ちのタイムアウト"""

    default_code = ErrorCode.OAUTH_TIMED_OUT


class PersistenceFailed(AgentLinkException):
    """接続設定の保存に失敗した"""

    default_code = ErrorCode.PERSISTENCE_FAILED


class InvalidTransition(AgentLinkException):
    """現在のステップで受け付けられないイベント"""

    default_code = ErrorCode.ONBOARDING_INVALID_TRANSITION


ERROR_CODE_LOG_LEVEL: Dict[ErrorCode, int] = {
    ErrorCode.AUTH_INVALID_CREDENTIAL: logging.WARNING,
    ErrorCode.AUTH_CREDENTIAL_NOT_FOUND: logging.WARNING,
    ErrorCode.CONN_TIMEOUT: logging.WARNING,
    ErrorCode.CONN_CANCELLED: logging.INFO,
    ErrorCode.OAUTH_TIMED_OUT: logging.WARNING,
    ErrorCode.ONBOARDING_INVALID_TRANSITION: logging.DEBUG,
}


# よく使用されるエラーのファクトリ関数
def create_connection_error(
    code: ErrorCode,
    message: str,
    endpoint: Optional[str] = None,
    cause: Optional[BaseException] = None,
) -> LinkError:
    """接続エラーを作成

    Args:
        code: エラーコード
        message: エラーメッセージ
        endpoint: 対象エンドポイント
        cause: 元の例外

    Returns:
        LinkError: 接続エラー
    """
    details: Dict[str, Any] = {}
    if endpoint is not None:
        details["endpoint"] = endpoint
    if cause is not None:
        details["error"] = str(cause)
    return LinkError(
        code=code.value,
        message=message,
        details=details or None,
        recoverable=True,
        log_level=ERROR_CODE_LOG_LEVEL.get(code, logging.ERROR),
    )


def create_auth_error(
    code: ErrorCode,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> LinkError:
    """認証エラーを作成

    Args:
        code: エラーコード
        message: エラーメッセージ
        details: 追加詳細

    Returns:
        LinkError: 認証エラー
    """
    return LinkError(
        code=code.value,
        message=message,
        details=details,
        recoverable=True,
        log_level=ERROR_CODE_LOG_LEVEL.get(code, logging.ERROR),
    )


def create_persistence_error(
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> LinkError:
    """永続化エラーを作成"""
    return LinkError(
        code=ErrorCode.PERSISTENCE_FAILED.value,
        message=message,
        details=details,
        recoverable=True,
        log_level=logging.ERROR,
    )
