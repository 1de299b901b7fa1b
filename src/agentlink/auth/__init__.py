"""OAuth認証と認証情報ストア"""

from agentlink.auth.base import (
    BrowserOpener,
    Clipboard,
    OAuthContext,
    PyperclipClipboard,
    SystemBrowserOpener,
)
from agentlink.auth.browser import BrowserOAuthFlow, claude_context, codex_context, extract_code
from agentlink.auth.device import DeviceCode, DeviceCodeFlow, copilot_context
from agentlink.auth.storage import CredentialStore, KeyringCredentialStore

__all__ = [
    "BrowserOAuthFlow",
    "BrowserOpener",
    "Clipboard",
    "CredentialStore",
    "DeviceCode",
    "DeviceCodeFlow",
    "KeyringCredentialStore",
    "OAuthContext",
    "PyperclipClipboard",
    "SystemBrowserOpener",
    "claude_context",
    "codex_context",
    "copilot_context",
    "extract_code",
]
