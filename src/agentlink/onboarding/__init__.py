"""接続セットアップウィザードの状態機械"""

from agentlink.onboarding.controller import OnboardingController
from agentlink.onboarding.events import (
    Back,
    ClearError,
    Completed,
    Continue,
    DeviceCodeIssued,
    Event,
    JumpToCredentials,
    OAuthCancelled,
    Reset,
    SavingStarted,
    SelectApiSetupMethod,
    SelectProvider,
    ValidationFailed,
    ValidationStarted,
    ValidationSucceeded,
    WaitingForCode,
)
from agentlink.onboarding.reducer import transition
from agentlink.onboarding.slugs import slugify, unique_slug
from agentlink.onboarding.state import (
    ApiSetupMethod,
    CompletionStatus,
    CredentialVariant,
    Draft,
    EditValues,
    OnboardingState,
    ProviderChoice,
    Status,
    Step,
    credential_variant,
    method_to_connection_types,
    methods_for_choice,
    parse_model_list,
)

__all__ = [
    "ApiSetupMethod",
    "Back",
    "ClearError",
    "Completed",
    "CompletionStatus",
    "Continue",
    "CredentialVariant",
    "DeviceCodeIssued",
    "Draft",
    "EditValues",
    "Event",
    "JumpToCredentials",
    "OAuthCancelled",
    "OnboardingController",
    "OnboardingState",
    "ProviderChoice",
    "Reset",
    "SavingStarted",
    "SelectApiSetupMethod",
    "SelectProvider",
    "Status",
    "Step",
    "ValidationFailed",
    "ValidationStarted",
    "ValidationSucceeded",
    "WaitingForCode",
    "credential_variant",
    "method_to_connection_types",
    "methods_for_choice",
    "parse_model_list",
    "slugify",
    "transition",
    "unique_slug",
]
