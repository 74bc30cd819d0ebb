from typing import Mapping, Optional, Tuple, Union

from anchor_withdraw.core.details import Asset, WebauthChallenge
from anchor_withdraw.core.errors import IllegalTransitionError
from anchor_withdraw.core.state_machine import (
    Action,
    ActionType,
    AfterWebauthState,
    BeforeInteractiveKYCState,
    PendingKYCState,
    State,
    state_machine,
)
from anchor_withdraw.observability.logging import log
from anchor_withdraw.settings import settings
from anchor_withdraw.store import attempt_repo
from anchor_withdraw.transfer.client import WithdrawalOptions, WithdrawalRequestSuccess
from anchor_withdraw.transfer.responses import (
    KYCInteractiveResponse,
    KYCNonInteractiveResponse,
    KYCStatusResponse,
    TransactionRecord,
    WithdrawalSuccessResponse,
)
from anchor_withdraw.utils.lock import attempt_lock

# Interactive flow finished and the anchor waits for the user's payment
READY_STATUSES = ("pending_user_transfer_start",)
FAILED_STATUSES = ("error", "expired", "refunded", "no_market", "too_small", "too_large")

# How often a 403 "customer_info_status: success" is answered by re-requesting /withdraw
MAX_WITHDRAW_REQUESTS = 2

# Actions after which the attempt's bearer token must not be used again
TOKEN_CLEARING_ACTIONS = ("save-init-form", "back-to-start", "after-tx-submission")

# httpx applies the timeout to connect, write, read and pool acquisition separately
_HTTPX_TIMEOUT_PHASES = 4
_CALL_LOCK_MARGIN_MS = 5000


def call_lock_ttl_ms(requests: int) -> int:
    """Call lock TTL that outlives `requests` sequential anchor calls at worst-case timeouts."""
    worst_case_ms = settings.TRANSFER_TIMEOUT_SEC * _HTTPX_TIMEOUT_PHASES * int(requests) * 1000
    return max(int(settings.ATTEMPT_LOCK_TTL_MS), int(worst_case_ms) + _CALL_LOCK_MARGIN_MS)


def _apply(attempt_id: str, action: ActionType) -> State:
    # Caller holds the state lock
    state = attempt_repo.load_attempt(attempt_id)
    next_state = state_machine(state, action)
    attempt_repo.save_attempt(attempt_id, next_state)
    attempt_repo.bump_generation(attempt_id)

    if action.type == "set-auth-token":
        attempt_repo.save_auth_token(attempt_id, action.token)
    elif action.type in TOKEN_CLEARING_ACTIONS:
        attempt_repo.clear_auth_token(attempt_id)

    try:
        log(
            event="withdrawal_transition",
            attemptId=attempt_id,
            action=action.type,
            fromStep=state.step,
            toStep=next_state.step,
        )
    except Exception:
        pass
    return next_state


def dispatch(attempt_id: str, action: ActionType) -> State:
    """Load the attempt, apply one action, persist the result."""
    with attempt_lock(attempt_id, scope="state"):
        return _apply(attempt_id, action)


def _snapshot(attempt_id: str) -> Tuple[State, int]:
    with attempt_lock(attempt_id, scope="state"):
        return attempt_repo.load_attempt(attempt_id), attempt_repo.load_generation(attempt_id)


def _dispatch_if_unchanged(attempt_id: str, expected_step: str, generation: int, action: ActionType) -> State:
    """
    Apply an action produced by a network call only if the attempt has not moved
    since the call started. Any transition in between (back-to-start, a
    re-submitted form) bumps the generation and cancels the stale result.
    """
    with attempt_lock(attempt_id, scope="state"):
        current = attempt_repo.load_attempt(attempt_id)
        current_generation = attempt_repo.load_generation(attempt_id)
        if current.step != expected_step or current_generation != generation:
            try:
                log(
                    event="withdrawal_stale_result_dropped",
                    attemptId=attempt_id,
                    action=action.type,
                    expectedStep=expected_step,
                    currentStep=current.step,
                    expectedGeneration=generation,
                    currentGeneration=current_generation,
                )
            except Exception:
                pass
            return current
        return _apply(attempt_id, action)


def submit_form(
    attempt_id: str,
    transfer_server_url: str,
    asset: Asset,
    method: str,
    form_values: Mapping[str, str],
    webauth: Optional[WebauthChallenge] = None,
) -> State:
    transfer_server = attempt_repo.get_transfer_server(transfer_server_url)
    return dispatch(
        attempt_id,
        Action.save_init_form_data(transfer_server, asset, method, dict(form_values), webauth),
    )


def complete_webauth(attempt_id: str, token: Optional[str]) -> State:
    return dispatch(attempt_id, Action.set_auth_token(token))


def back_to_start(attempt_id: str) -> State:
    return dispatch(attempt_id, Action.back_to_start())


def mark_submitted(attempt_id: str) -> State:
    return dispatch(attempt_id, Action.transaction_submitted())


def _withdrawal_options(details, account: str) -> WithdrawalOptions:
    values = details.withdrawal_form_values
    return WithdrawalOptions(
        account=account,
        dest=values.get("dest", ""),
        dest_extra=values.get("dest_extra", ""),
        memo=values.get("memo") or None,
        memo_type=values.get("memo_type") or None,
        wallet_name=settings.WALLET_NAME or None,
        wallet_url=settings.WALLET_URL or None,
    )


def _action_for_kyc(response) -> Optional[ActionType]:
    if isinstance(response, KYCInteractiveResponse):
        return Action.start_interactive_kyc(response)
    if isinstance(response, KYCStatusResponse):
        if response.status == "pending":
            return Action.pending_kyc(response)
        if response.status == "denied":
            return Action.failed_kyc(response)
    return None


def request_withdrawal(attempt_id: str, account: str) -> Union[State, KYCNonInteractiveResponse]:
    """
    Call /withdraw for the attempt and feed the outcome into the state machine.

    Allowed from after-webauth (first request) and pending-kyc (re-poll).
    A non-interactive KYC request is handed back to the caller untouched: it names
    extra form fields the user has to fill in before the form is submitted again.
    """
    with attempt_lock(attempt_id, ttl_ms=call_lock_ttl_ms(MAX_WITHDRAW_REQUESTS)):
        state, generation = _snapshot(attempt_id)
        if not isinstance(state, (AfterWebauthState, PendingKYCState)):
            raise IllegalTransitionError("request-withdrawal", state.step)

        details = state.details
        server = details.transfer_server
        options = _withdrawal_options(details, account)
        auth_token = attempt_repo.load_auth_token(attempt_id)

        result = None
        for _ in range(MAX_WITHDRAW_REQUESTS):
            result = server.withdraw(details.method, details.asset.code, auth_token, options)
            if isinstance(result, WithdrawalRequestSuccess):
                break
            data = result.data
            # KYC got approved in the meantime; the next request yields instructions
            if not (isinstance(data, KYCStatusResponse) and data.status == "success"):
                break

        try:
            log(
                event="withdraw_request_result",
                attemptId=attempt_id,
                resultType=result.type,
                kycType=getattr(result.data, "type", None) if result.type == "kyc" else None,
            )
        except Exception:
            pass

        if isinstance(result, WithdrawalRequestSuccess):
            return _dispatch_if_unchanged(attempt_id, state.step, generation, Action.successful_kyc(result.data))

        data = result.data
        if isinstance(data, KYCNonInteractiveResponse):
            return data

        action = _action_for_kyc(data)
        if action is None:
            # status "success" on every request: nothing new to report yet
            return attempt_repo.load_attempt(attempt_id)
        return _dispatch_if_unchanged(attempt_id, state.step, generation, action)


def _instructions_from_transaction(tx: TransactionRecord) -> WithdrawalSuccessResponse:
    return WithdrawalSuccessResponse(
        account_id=tx.withdraw_anchor_account or "",
        memo=tx.withdraw_memo,
        memo_type=tx.withdraw_memo_type,
        eta=tx.status_eta,
    )


def poll_interactive_kyc(attempt_id: str) -> State:
    """
    Check on an interactive KYC session through /transaction?id=<kyc id>.
    Unchanged state means the user has not finished the hosted flow yet.
    """
    with attempt_lock(attempt_id, ttl_ms=call_lock_ttl_ms(1)):
        state, generation = _snapshot(attempt_id)
        if not isinstance(state, BeforeInteractiveKYCState):
            raise IllegalTransitionError("poll-interactive-kyc", state.step)
        if not state.kyc.id:
            # Nothing to correlate with; the caller has to re-request /withdraw
            return state

        server = state.details.transfer_server
        auth_token = attempt_repo.load_auth_token(attempt_id)

        tx = server.fetch_transaction(id=state.kyc.id, auth_token=auth_token)
        try:
            log(event="interactive_kyc_polled", attemptId=attempt_id, txStatus=tx.status)
        except Exception:
            pass

        if tx.status in READY_STATUSES and tx.withdraw_anchor_account:
            action = Action.successful_kyc(_instructions_from_transaction(tx))
        elif tx.status in FAILED_STATUSES:
            action = Action.failed_kyc(
                KYCStatusResponse(status="denied", more_info_url=tx.more_info_url, message=tx.message)
            )
        else:
            return state
        return _dispatch_if_unchanged(attempt_id, state.step, generation, action)
