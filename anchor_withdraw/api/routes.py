from fastapi import APIRouter, Depends, HTTPException, Query
from starlette.concurrency import run_in_threadpool

from anchor_withdraw.api.auth import require_api_key
from anchor_withdraw.api.schemas import (
    AuthTokenRequest,
    KYCFieldsResponse,
    StateResponse,
    SubmitFormRequest,
    WithdrawRequest,
)
from anchor_withdraw.core import orchestrator
from anchor_withdraw.core.details import Asset, WebauthChallenge
from anchor_withdraw.core.state_machine import BeforeInteractiveKYCState, PendingKYCState, state_to_dict
from anchor_withdraw.queue.jobs import enqueue_kyc_poll
from anchor_withdraw.observability.logging import log
from anchor_withdraw.store import attempt_repo
from anchor_withdraw.transfer.client import TransferServer
from anchor_withdraw.transfer.responses import KYCNonInteractiveResponse

router = APIRouter(dependencies=[Depends(require_api_key)])


def _state_response(attempt_id: str, state) -> StateResponse:
    return StateResponse(attemptId=attempt_id, state=state_to_dict(state))


@router.get("/withdrawals/{attempt_id}")
def get_attempt(attempt_id: str):
    if not attempt_repo.exists(attempt_id):
        raise HTTPException(status_code=404, detail="Unknown withdrawal attempt")
    return _state_response(attempt_id, attempt_repo.load_attempt(attempt_id))


@router.post("/withdrawals/{attempt_id}/form")
def submit_form(attempt_id: str, body: SubmitFormRequest):
    webauth = WebauthChallenge(**body.webauth.model_dump()) if body.webauth else None
    state = orchestrator.submit_form(
        attempt_id,
        body.transferServer,
        Asset(code=body.asset.code, issuer=body.asset.issuer),
        body.method,
        body.formValues,
        webauth,
    )
    return _state_response(attempt_id, state)


@router.post("/withdrawals/{attempt_id}/auth-token")
def set_auth_token(attempt_id: str, body: AuthTokenRequest):
    return _state_response(attempt_id, orchestrator.complete_webauth(attempt_id, body.token))


@router.post("/withdrawals/{attempt_id}/request")
async def request_withdrawal(attempt_id: str, body: WithdrawRequest):
    result = await run_in_threadpool(orchestrator.request_withdrawal, attempt_id, body.account)

    if isinstance(result, KYCNonInteractiveResponse):
        return KYCFieldsResponse(attemptId=attempt_id, fields=list(result.fields))

    if body.pollKyc and isinstance(result, (PendingKYCState, BeforeInteractiveKYCState)):
        try:
            enqueue_kyc_poll(attempt_id, body.account)
        except Exception as e:
            # Polling is an optimisation; the UI can still poll via /request
            log(event="kyc_poll_enqueue_failed", attemptId=attempt_id, error=str(e)[:300])
    return _state_response(attempt_id, result)


@router.post("/withdrawals/{attempt_id}/back-to-start")
def back_to_start(attempt_id: str):
    return _state_response(attempt_id, orchestrator.back_to_start(attempt_id))


@router.post("/withdrawals/{attempt_id}/tx-submitted")
def tx_submitted(attempt_id: str):
    return _state_response(attempt_id, orchestrator.mark_submitted(attempt_id))


@router.get("/info")
async def transfer_info(transfer_server: str = Query(..., alias="transfer_server")):
    # Caller-supplied URL: use a throwaway client instead of the pooled ones
    with TransferServer(transfer_server) as server:
        info = await run_in_threadpool(server.fetch_info)
    return info.model_dump(mode="json", exclude_none=True)
