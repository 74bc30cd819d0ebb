"""
Withdrawal state machine.

A pure reducer: state_machine(state, action) -> next state. States and actions
are immutable values; the reducer performs no I/O and keeps nothing between calls.
The caller (core.orchestrator) makes the network calls and feeds their outcome
back in as actions.
"""
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Dict, Mapping, Optional, Union

from anchor_withdraw.core.details import (
    Asset,
    PartialWithdrawalDetails,
    WebauthChallenge,
    WithdrawalDetails,
)
from anchor_withdraw.core.errors import IllegalTransitionError, InvalidStateError, UnexpectedActionError
from anchor_withdraw.transfer.responses import (
    KYCInteractiveResponse,
    KYCStatusResponse,
    WithdrawalSuccessResponse,
)


def _require_details(state) -> None:
    if not isinstance(state.details, WithdrawalDetails):
        raise InvalidStateError(f"{state.step} requires withdrawal details, got {type(state.details).__name__}")


def _require_kyc_status(state, value, expected: str) -> None:
    if not isinstance(value, KYCStatusResponse) or value.status != expected:
        got = getattr(value, "status", type(value).__name__)
        raise InvalidStateError(f"{state.step} requires a '{expected}' KYC status, got {got!r}")


# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InitialState:
    # Nothing submitted yet, or back at the start with prior input kept for the form
    step: ClassVar[str] = "initial"
    details: Optional[Union[PartialWithdrawalDetails, WithdrawalDetails]] = None


@dataclass(frozen=True)
class BeforeWebauthState:
    # Form submitted; auth challenge obtained but not completed yet
    step: ClassVar[str] = "before-webauth"
    details: WithdrawalDetails
    webauth: Optional[WebauthChallenge] = None

    def __post_init__(self):
        _require_details(self)


@dataclass(frozen=True)
class AfterWebauthState:
    # Auth completed (token set) or not needed (token None)
    step: ClassVar[str] = "after-webauth"
    details: WithdrawalDetails
    auth_token: Optional[str] = None

    def __post_init__(self):
        _require_details(self)


@dataclass(frozen=True)
class BeforeInteractiveKYCState:
    step: ClassVar[str] = "before-interactive-kyc"
    details: WithdrawalDetails
    kyc: KYCInteractiveResponse

    def __post_init__(self):
        _require_details(self)
        if not isinstance(self.kyc, KYCInteractiveResponse):
            raise InvalidStateError(f"{self.step} requires an interactive KYC response")


@dataclass(frozen=True)
class PendingKYCState:
    step: ClassVar[str] = "pending-kyc"
    details: WithdrawalDetails
    kyc_status: KYCStatusResponse

    def __post_init__(self):
        _require_details(self)
        _require_kyc_status(self, self.kyc_status, "pending")


@dataclass(frozen=True)
class AfterDeniedKYCState:
    # Terminal for this attempt; back-to-start retries with the same details
    step: ClassVar[str] = "after-denied-kyc"
    details: WithdrawalDetails
    rejection: KYCStatusResponse

    def __post_init__(self):
        _require_details(self)
        _require_kyc_status(self, self.rejection, "denied")


@dataclass(frozen=True)
class AfterSuccessfulKYCState:
    step: ClassVar[str] = "after-successful-kyc"
    details: WithdrawalDetails
    withdrawal: WithdrawalSuccessResponse
    auth_token: Optional[str] = None

    def __post_init__(self):
        _require_details(self)
        if not isinstance(self.withdrawal, WithdrawalSuccessResponse):
            raise InvalidStateError(f"{self.step} requires withdrawal instructions")


@dataclass(frozen=True)
class AfterTransactionState:
    # Terminal. Carries nothing so no per-attempt data leaks into the next attempt.
    step: ClassVar[str] = "after-tx-submission"


State = Union[
    InitialState,
    BeforeWebauthState,
    AfterWebauthState,
    BeforeInteractiveKYCState,
    PendingKYCState,
    AfterDeniedKYCState,
    AfterSuccessfulKYCState,
    AfterTransactionState,
]

DETAIL_STATES = (
    BeforeWebauthState,
    AfterWebauthState,
    BeforeInteractiveKYCState,
    PendingKYCState,
    AfterDeniedKYCState,
    AfterSuccessfulKYCState,
)

TERMINAL_STEPS = frozenset({AfterDeniedKYCState.step, AfterTransactionState.step})

initial_state: State = InitialState()


def has_details(state: State) -> bool:
    return isinstance(state, DETAIL_STATES)


def is_terminal(state: State) -> bool:
    return state.step in TERMINAL_STEPS


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BackToStart:
    type: ClassVar[str] = "back-to-start"


@dataclass(frozen=True)
class SaveInitForm:
    type: ClassVar[str] = "save-init-form"
    transfer_server: Any
    asset: Asset
    method: str
    form_values: Mapping[str, str]
    webauth: Optional[WebauthChallenge] = None


@dataclass(frozen=True)
class SetAuthToken:
    type: ClassVar[str] = "set-auth-token"
    token: Optional[str]


@dataclass(frozen=True)
class StartInteractiveKYC:
    type: ClassVar[str] = "start-interactive-kyc"
    response: KYCInteractiveResponse


@dataclass(frozen=True)
class KYCPending:
    type: ClassVar[str] = "kyc-pending"
    response: KYCStatusResponse


@dataclass(frozen=True)
class KYCDenied:
    type: ClassVar[str] = "kyc-denied"
    response: KYCStatusResponse


@dataclass(frozen=True)
class KYCSuccessful:
    type: ClassVar[str] = "kyc-successful"
    response: WithdrawalSuccessResponse


@dataclass(frozen=True)
class TransactionSubmitted:
    type: ClassVar[str] = "after-tx-submission"


ActionType = Union[
    BackToStart,
    SaveInitForm,
    SetAuthToken,
    StartInteractiveKYC,
    KYCPending,
    KYCDenied,
    KYCSuccessful,
    TransactionSubmitted,
]


class Action:
    """Action constructors. No legality checks here; the reducer does those."""

    @staticmethod
    def back_to_start() -> BackToStart:
        return BackToStart()

    @staticmethod
    def save_init_form_data(
        transfer_server: Any,
        asset: Asset,
        method: str,
        form_values: Mapping[str, str],
        webauth: Optional[WebauthChallenge] = None,
    ) -> SaveInitForm:
        return SaveInitForm(
            transfer_server=transfer_server,
            asset=asset,
            method=method,
            form_values=form_values,
            webauth=webauth,
        )

    @staticmethod
    def set_auth_token(token: Optional[str]) -> SetAuthToken:
        return SetAuthToken(token=token)

    @staticmethod
    def start_interactive_kyc(response: KYCInteractiveResponse) -> StartInteractiveKYC:
        return StartInteractiveKYC(response=response)

    @staticmethod
    def pending_kyc(response: KYCStatusResponse) -> KYCPending:
        return KYCPending(response=response)

    @staticmethod
    def failed_kyc(response: KYCStatusResponse) -> KYCDenied:
        return KYCDenied(response=response)

    @staticmethod
    def successful_kyc(response: WithdrawalSuccessResponse) -> KYCSuccessful:
        return KYCSuccessful(response=response)

    @staticmethod
    def transaction_submitted() -> TransactionSubmitted:
        return TransactionSubmitted()


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------

def _details_from_form(action: SaveInitForm) -> WithdrawalDetails:
    return WithdrawalDetails(
        asset=action.asset,
        withdrawal_form_values=action.form_values,
        method=action.method,
        transfer_server=action.transfer_server,
    )


def _details_or_fail(state: State, action_type: str) -> WithdrawalDetails:
    if not has_details(state):
        raise IllegalTransitionError(action_type, state.step)
    return state.details


def state_machine(state: State, action: ActionType) -> State:
    action_type = getattr(action, "type", None)

    if action_type == BackToStart.type:
        return InitialState(details=getattr(state, "details", None))

    if action_type == SaveInitForm.type:
        details = _details_from_form(action)
        if action.webauth:
            return BeforeWebauthState(details=details, webauth=action.webauth)
        return AfterWebauthState(details=details, auth_token=None)

    if action_type == SetAuthToken.type:
        if not isinstance(state, BeforeWebauthState):
            raise IllegalTransitionError(action_type, state.step, "Cannot set auth token at this time.")
        return AfterWebauthState(details=state.details, auth_token=action.token)

    if action_type == StartInteractiveKYC.type:
        details = _details_or_fail(state, action_type)
        return BeforeInteractiveKYCState(details=details, kyc=action.response)

    if action_type == KYCPending.type:
        details = _details_or_fail(state, action_type)
        return PendingKYCState(details=details, kyc_status=action.response)

    if action_type == KYCDenied.type:
        details = _details_or_fail(state, action_type)
        return AfterDeniedKYCState(details=details, rejection=action.response)

    if action_type == KYCSuccessful.type:
        details = _details_or_fail(state, action_type)
        return AfterSuccessfulKYCState(
            details=details,
            withdrawal=action.response,
            auth_token=getattr(state, "auth_token", None),
        )

    if action_type == TransactionSubmitted.type:
        return AfterTransactionState()

    raise UnexpectedActionError(action_type if action_type is not None else action)


# ---------------------------------------------------------------------------
# Persistence helpers (used by store.attempt_repo)
# ---------------------------------------------------------------------------

_STATE_BY_STEP = {
    cls.step: cls
    for cls in (InitialState,) + DETAIL_STATES + (AfterTransactionState,)
}


def _details_to_dict(details) -> Optional[Dict[str, Any]]:
    if details is None:
        return None
    server = details.transfer_server
    values = details.withdrawal_form_values
    return {
        "asset": details.asset.to_dict() if details.asset else None,
        "withdrawalFormValues": dict(values) if values is not None else None,
        "method": details.method,
        "transferServer": getattr(server, "url", server),
    }


def _details_from_dict(data: Optional[Dict[str, Any]], transfer_server_factory: Callable[[str], Any], partial: bool):
    if data is None:
        return None
    url = data.get("transferServer")
    kwargs = dict(
        asset=Asset.from_dict(data["asset"]) if data.get("asset") else None,
        withdrawal_form_values=data.get("withdrawalFormValues"),
        method=data.get("method"),
        transfer_server=transfer_server_factory(url) if url else None,
    )
    complete = all(v is not None for v in kwargs.values())
    if partial and not complete:
        return PartialWithdrawalDetails(**kwargs)
    return WithdrawalDetails(**kwargs)


def state_to_dict(state: State) -> Dict[str, Any]:
    # Bearer tokens are never serialized; store.attempt_repo keeps the only copy.
    out: Dict[str, Any] = {"step": state.step}
    if isinstance(state, AfterTransactionState):
        return out
    if isinstance(state, InitialState):
        if state.details is not None:
            out["details"] = _details_to_dict(state.details)
        return out

    out["details"] = _details_to_dict(state.details)
    if isinstance(state, BeforeWebauthState):
        out["webauth"] = state.webauth.to_dict() if state.webauth else None
    elif isinstance(state, BeforeInteractiveKYCState):
        out["kyc"] = state.kyc.model_dump(mode="json")
    elif isinstance(state, PendingKYCState):
        out["kycStatus"] = state.kyc_status.model_dump(mode="json")
    elif isinstance(state, AfterDeniedKYCState):
        out["rejection"] = state.rejection.model_dump(mode="json")
    elif isinstance(state, AfterSuccessfulKYCState):
        out["withdrawal"] = state.withdrawal.model_dump(mode="json")
    return out


def state_from_dict(data: Dict[str, Any], transfer_server_factory: Callable[[str], Any]) -> State:
    step = data.get("step")
    cls = _STATE_BY_STEP.get(step)
    if cls is None:
        raise InvalidStateError(f"Unknown step: {step!r}")
    if cls is AfterTransactionState:
        return AfterTransactionState()

    details = _details_from_dict(data.get("details"), transfer_server_factory, partial=cls is InitialState)
    if cls is InitialState:
        return InitialState(details=details)
    if cls is BeforeWebauthState:
        webauth = data.get("webauth")
        return BeforeWebauthState(details=details, webauth=WebauthChallenge.from_dict(webauth) if webauth else None)
    if cls is AfterWebauthState:
        return AfterWebauthState(details=details)
    if cls is BeforeInteractiveKYCState:
        return BeforeInteractiveKYCState(details=details, kyc=KYCInteractiveResponse.model_validate(data["kyc"]))
    if cls is PendingKYCState:
        return PendingKYCState(details=details, kyc_status=KYCStatusResponse.model_validate(data["kycStatus"]))
    if cls is AfterDeniedKYCState:
        return AfterDeniedKYCState(details=details, rejection=KYCStatusResponse.model_validate(data["rejection"]))
    return AfterSuccessfulKYCState(
        details=details,
        withdrawal=WithdrawalSuccessResponse.model_validate(data["withdrawal"]),
    )
