from datetime import timedelta
from typing import Optional

from anchor_withdraw.core import orchestrator
from anchor_withdraw.core.errors import AttemptBusyError
from anchor_withdraw.core.state_machine import BeforeInteractiveKYCState, PendingKYCState
from anchor_withdraw.observability.logging import log
from anchor_withdraw.queue.rq_conn import get_queue
from anchor_withdraw.settings import settings
from anchor_withdraw.store import attempt_repo

POLLED_STEPS = (PendingKYCState.step, BeforeInteractiveKYCState.step)


def enqueue_kyc_poll(attempt_id: str, account: str, attempt: int = 1, delay_sec: Optional[int] = None):
    """Schedule the next KYC status poll for an attempt."""
    delay = int(settings.KYC_POLL_INTERVAL_SEC if delay_sec is None else delay_sec)
    q = get_queue()
    job = q.enqueue_in(timedelta(seconds=delay), poll_kyc_status_job, attempt_id, account, attempt)
    try:
        log(
            event="kyc_poll_enqueued",
            attemptId=attempt_id,
            pollAttempt=int(attempt),
            delaySec=delay,
            rq_job_id=getattr(job, "id", "") or "",
        )
    except Exception:
        pass
    return job


def poll_kyc_status_job(attempt_id: str, account: str, attempt: int = 1) -> Optional[str]:
    """
    Background job: poll the anchor once for a pending/interactive KYC attempt
    and reschedule itself while the attempt stays in the polled step.
    Returns the step the attempt is in after this poll (None if polling stopped early).
    """
    state = attempt_repo.load_attempt(attempt_id)
    if state.step not in POLLED_STEPS:
        # back-to-start (or any other transition) ended the polling loop
        log(event="kyc_poll_stopped", attemptId=attempt_id, step=state.step, pollAttempt=int(attempt))
        return None

    log(event="kyc_poll_start", attemptId=attempt_id, step=state.step, pollAttempt=int(attempt))
    try:
        if isinstance(state, PendingKYCState):
            result = orchestrator.request_withdrawal(attempt_id, account)
        else:
            result = orchestrator.poll_interactive_kyc(attempt_id)
    except AttemptBusyError:
        # Someone else is talking to the anchor for this attempt; try again later
        result = state
    except Exception as e:
        log(event="kyc_poll_exception", attemptId=attempt_id, errorType=type(e).__name__, error=str(e)[:500])
        raise

    step = getattr(result, "step", None)
    if step == state.step:
        if attempt < int(settings.KYC_POLL_MAX_ATTEMPTS):
            enqueue_kyc_poll(attempt_id, account, attempt=attempt + 1)
        else:
            log(event="kyc_poll_exhausted", attemptId=attempt_id, step=step, pollAttempt=int(attempt))
    return step
