"""
オンボーディングの遷移関数

transition(state, event) は副作用を持たず、新しい状態を返す。
現在のステップで受け付けないイベントは InvalidTransition を送出する。
"""

from __future__ import annotations

from dataclasses import replace

from agentlink.errors import InvalidTransition
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
from agentlink.onboarding.state import (
    DEFAULT_LOCAL_BASE_URL,
    DEFAULT_LOCAL_MODEL,
    ApiSetupMethod,
    CompletionStatus,
    CredentialVariant,
    OnboardingState,
    ProviderChoice,
    Status,
    Step,
    credential_variant,
    methods_for_choice,
)

ENTRY_STEPS = (Step.CREDENTIALS, Step.LOCAL_MODEL)
OAUTH_VARIANTS = (CredentialVariant.OAUTH_BROWSER, CredentialVariant.OAUTH_DEVICE)


def _invalid(state: OnboardingState, event: Event) -> InvalidTransition:
    return InvalidTransition.from_message(
        f"{type(event).__name__} はステップ {state.step.value} では受け付けられません。",
        {"step": state.step.value, "event": type(event).__name__},
    )


def _advance(state: OnboardingState, step: Step) -> OnboardingState:
    return state.evolve(
        step=step,
        history=state.history + (state.step,),
        status=Status.IDLE,
        error=None,
    )


def _enter_credentials(state: OnboardingState, method: ApiSetupMethod) -> OnboardingState:
    return _advance(
        state.evolve(method=method, variant=credential_variant(method)),
        Step.CREDENTIALS,
    )


def _enter_local_model(state: OnboardingState) -> OnboardingState:
    draft = state.draft
    if not draft.base_url:
        draft = replace(draft, base_url=DEFAULT_LOCAL_BASE_URL)
    if not draft.default_model:
        draft = replace(draft, default_model=DEFAULT_LOCAL_MODEL)
    return _advance(
        state.evolve(method=None, variant=CredentialVariant.LOCAL_MODEL, draft=draft),
        Step.LOCAL_MODEL,
    )


def _require(condition: bool, state: OnboardingState, event: Event) -> None:
    if not condition:
        raise _invalid(state, event)


def transition(state: OnboardingState, event: Event) -> OnboardingState:
    """イベントを適用した新しい状態を返す

    Raises:
        InvalidTransition: 現在のステップで受け付けられないイベントの場合
    """
    if isinstance(event, Reset):
        return OnboardingState.initial(event.step or state.initial_step, editing_slug=event.editing_slug)

    if isinstance(event, ClearError):
        status = Status.IDLE if state.status is Status.ERROR else state.status
        return state.evolve(status=status, error=None)

    if isinstance(event, Continue):
        if state.step is Step.PREFERENCES:
            return _advance(state, Step.PROVIDER_SELECT)
        if state.step is Step.API_SETUP and state.method is not None:
            return _enter_credentials(state, state.method)
        raise _invalid(state, event)

    if isinstance(event, SelectProvider):
        _require(state.step is Step.PROVIDER_SELECT, state, event)
        chosen = state.evolve(choice=event.choice)
        if event.choice is ProviderChoice.LOCAL:
            return _enter_local_model(chosen)
        methods = methods_for_choice(event.choice)
        if len(methods) == 1:
            return _enter_credentials(chosen, methods[0])
        return _advance(chosen.evolve(method=None, variant=None), Step.API_SETUP)

    if isinstance(event, SelectApiSetupMethod):
        _require(state.step is Step.API_SETUP, state, event)
        if state.choice is not None:
            _require(event.method in methods_for_choice(state.choice), state, event)
        return _enter_credentials(state, event.method)

    if isinstance(event, Back):
        terminal = state.step is Step.COMPLETION and state.completion is CompletionStatus.COMPLETE
        _require(bool(state.history) and not terminal, state, event)
        # 入力済みの値(draft)は再表示のために残す
        return state.evolve(
            step=state.history[-1],
            history=state.history[:-1],
            status=Status.IDLE,
            error=None,
            device_code=None,
            is_waiting_for_code=False,
            completion=None,
        )

    if isinstance(event, JumpToCredentials):
        _require(state.step is not Step.COMPLETION, state, event)
        values = event.values
        return state.evolve(
            step=Step.CREDENTIALS,
            history=(Step.PROVIDER_SELECT,),
            choice=None,
            method=event.method,
            variant=credential_variant(event.method),
            draft=values.to_draft() if values is not None else state.draft,
            status=Status.IDLE,
            error=None,
            device_code=None,
            is_waiting_for_code=False,
            completion=None,
            edit_values=values,
        )

    if isinstance(event, ValidationStarted):
        _require(state.step in ENTRY_STEPS, state, event)
        return state.evolve(
            status=Status.VALIDATING,
            error=None,
            draft=event.draft if event.draft is not None else state.draft,
        )

    if isinstance(event, ValidationFailed):
        if state.step is Step.COMPLETION and state.completion is CompletionStatus.SAVING:
            # 保存に失敗したら入力ステップへ戻してエラーを表示する
            return state.evolve(
                step=state.history[-1],
                history=state.history[:-1],
                completion=None,
                status=Status.ERROR,
                error=event.error,
            )
        _require(state.step in ENTRY_STEPS, state, event)
        return state.evolve(status=Status.ERROR, error=event.error, device_code=None)

    if isinstance(event, ValidationSucceeded):
        _require(state.step in ENTRY_STEPS, state, event)
        return state.evolve(
            status=Status.SUCCESS,
            error=None,
            device_code=None,
            is_waiting_for_code=False,
        )

    if isinstance(event, DeviceCodeIssued):
        _require(
            state.step is Step.CREDENTIALS and state.variant is CredentialVariant.OAUTH_DEVICE,
            state,
            event,
        )
        return state.evolve(device_code=event.device_code, status=Status.VALIDATING, error=None)

    if isinstance(event, WaitingForCode):
        _require(
            state.step is Step.CREDENTIALS and state.variant is CredentialVariant.OAUTH_BROWSER,
            state,
            event,
        )
        return state.evolve(is_waiting_for_code=True, status=Status.IDLE, error=None)

    if isinstance(event, OAuthCancelled):
        _require(state.step is Step.CREDENTIALS and state.variant in OAUTH_VARIANTS, state, event)
        return state.evolve(
            is_waiting_for_code=False,
            device_code=None,
            status=Status.IDLE,
            error=None,
        )

    if isinstance(event, SavingStarted):
        _require(state.step in ENTRY_STEPS and state.status is Status.SUCCESS, state, event)
        return _advance(state, Step.COMPLETION).evolve(
            status=Status.SUCCESS,
            completion=CompletionStatus.SAVING,
        )

    if isinstance(event, Completed):
        _require(
            state.step is Step.COMPLETION and state.completion is CompletionStatus.SAVING,
            state,
            event,
        )
        return state.evolve(completion=CompletionStatus.COMPLETE)

    raise _invalid(state, event)
