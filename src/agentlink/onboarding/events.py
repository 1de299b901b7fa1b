"""オンボーディングのイベント"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from agentlink.auth.device import DeviceCode
from agentlink.onboarding.state import ApiSetupMethod, Draft, EditValues, ProviderChoice, Step


@dataclass(frozen=True)
class Continue:
    pass


@dataclass(frozen=True)
class SelectProvider:
    choice: ProviderChoice


@dataclass(frozen=True)
class SelectApiSetupMethod:
    method: ApiSetupMethod


@dataclass(frozen=True)
class Back:
    pass


@dataclass(frozen=True)
class JumpToCredentials:
    method: ApiSetupMethod
    values: Optional[EditValues] = None


@dataclass(frozen=True)
class ValidationStarted:
    draft: Optional[Draft] = None


@dataclass(frozen=True)
class ValidationFailed:
    error: str


@dataclass(frozen=True)
class ValidationSucceeded:
    pass


@dataclass(frozen=True)
class DeviceCodeIssued:
    device_code: DeviceCode


@dataclass(frozen=True)
class WaitingForCode:
    pass


@dataclass(frozen=True)
class OAuthCancelled:
    pass


@dataclass(frozen=True)
class SavingStarted:
    pass


@dataclass(frozen=True)
class Completed:
    pass


@dataclass(frozen=True)
class ClearError:
    pass


@dataclass(frozen=True)
class Reset:
    step: Optional[Step] = None
    editing_slug: Optional[str] = None


Event = Union[
    Continue,
    SelectProvider,
    SelectApiSetupMethod,
    Back,
    JumpToCredentials,
    ValidationStarted,
    ValidationFailed,
    ValidationSucceeded,
    DeviceCodeIssued,
    WaitingForCode,
    OAuthCancelled,
    SavingStarted,
    Completed,
    ClearError,
    Reset,
]
