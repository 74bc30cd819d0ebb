import pytest
from unittest.mock import patch, MagicMock

from anchor_withdraw.core.details import Asset, WithdrawalDetails
from anchor_withdraw.core.errors import AttemptBusyError
from anchor_withdraw.core.state_machine import (
    AfterSuccessfulKYCState,
    BeforeInteractiveKYCState,
    InitialState,
    PendingKYCState,
)
from anchor_withdraw.queue.jobs import enqueue_kyc_poll, poll_kyc_status_job
from anchor_withdraw.transfer.responses import KYCInteractiveResponse, KYCStatusResponse, WithdrawalSuccessResponse

DETAILS = WithdrawalDetails(asset=Asset(code="USD", issuer="GISSUER"), withdrawal_form_values={}, method="cash", transfer_server=object())
PENDING = PendingKYCState(details=DETAILS, kyc_status=KYCStatusResponse(status="pending"))
INTERACTIVE = BeforeInteractiveKYCState(details=DETAILS, kyc=KYCInteractiveResponse(url="u", id="tx1"))
DONE = AfterSuccessfulKYCState(details=DETAILS, withdrawal=WithdrawalSuccessResponse(account_id="GANCHOR"))


@pytest.fixture(autouse=True)
def mock_log():
    with patch("anchor_withdraw.queue.jobs.log") as m:
        yield m


@patch("anchor_withdraw.queue.jobs.enqueue_kyc_poll")
@patch("anchor_withdraw.queue.jobs.orchestrator")
@patch("anchor_withdraw.queue.jobs.attempt_repo")
def test_poll_stops_when_attempt_left_polled_step(mock_repo, mock_orch, mock_enqueue, mock_log):
    mock_repo.load_attempt.return_value = InitialState(details=DETAILS)

    assert poll_kyc_status_job("a1", "GUSER") is None
    mock_orch.request_withdrawal.assert_not_called()
    mock_enqueue.assert_not_called()
    assert mock_log.call_args.kwargs["event"] == "kyc_poll_stopped"


@patch("anchor_withdraw.queue.jobs.enqueue_kyc_poll")
@patch("anchor_withdraw.queue.jobs.orchestrator")
@patch("anchor_withdraw.queue.jobs.attempt_repo")
def test_poll_pending_reschedules(mock_repo, mock_orch, mock_enqueue):
    mock_repo.load_attempt.return_value = PENDING
    mock_orch.request_withdrawal.return_value = PENDING

    assert poll_kyc_status_job("a1", "GUSER", attempt=3) == "pending-kyc"
    mock_orch.request_withdrawal.assert_called_with("a1", "GUSER")
    mock_enqueue.assert_called_with("a1", "GUSER", attempt=4)


@patch("anchor_withdraw.queue.jobs.enqueue_kyc_poll")
@patch("anchor_withdraw.queue.jobs.orchestrator")
@patch("anchor_withdraw.queue.jobs.attempt_repo")
def test_poll_interactive_done(mock_repo, mock_orch, mock_enqueue):
    mock_repo.load_attempt.return_value = INTERACTIVE
    mock_orch.poll_interactive_kyc.return_value = DONE

    assert poll_kyc_status_job("a1", "GUSER") == "after-successful-kyc"
    mock_orch.poll_interactive_kyc.assert_called_with("a1")
    mock_enqueue.assert_not_called()


@patch("anchor_withdraw.queue.jobs.settings")
@patch("anchor_withdraw.queue.jobs.enqueue_kyc_poll")
@patch("anchor_withdraw.queue.jobs.orchestrator")
@patch("anchor_withdraw.queue.jobs.attempt_repo")
def test_poll_exhausted(mock_repo, mock_orch, mock_enqueue, mock_settings, mock_log):
    mock_settings.KYC_POLL_MAX_ATTEMPTS = 5
    mock_repo.load_attempt.return_value = PENDING
    mock_orch.request_withdrawal.return_value = PENDING

    poll_kyc_status_job("a1", "GUSER", attempt=5)
    mock_enqueue.assert_not_called()
    assert mock_log.call_args.kwargs["event"] == "kyc_poll_exhausted"


@patch("anchor_withdraw.queue.jobs.enqueue_kyc_poll")
@patch("anchor_withdraw.queue.jobs.orchestrator")
@patch("anchor_withdraw.queue.jobs.attempt_repo")
def test_poll_busy_retries_later(mock_repo, mock_orch, mock_enqueue):
    mock_repo.load_attempt.return_value = PENDING
    mock_orch.request_withdrawal.side_effect = AttemptBusyError("busy")

    assert poll_kyc_status_job("a1", "GUSER") == "pending-kyc"
    mock_enqueue.assert_called_with("a1", "GUSER", attempt=2)


@patch("anchor_withdraw.queue.jobs.orchestrator")
@patch("anchor_withdraw.queue.jobs.attempt_repo")
def test_poll_anchor_error_propagates(mock_repo, mock_orch, mock_log):
    mock_repo.load_attempt.return_value = PENDING
    mock_orch.request_withdrawal.side_effect = RuntimeError("boom")

    with pytest.raises(RuntimeError):
        poll_kyc_status_job("a1", "GUSER")
    assert mock_log.call_args.kwargs["event"] == "kyc_poll_exception"


@patch("anchor_withdraw.queue.jobs.get_queue")
def test_enqueue_kyc_poll(mock_get_queue):
    q = MagicMock()
    mock_get_queue.return_value = q

    enqueue_kyc_poll("a1", "GUSER", attempt=2, delay_sec=7)

    delay, func, *args = q.enqueue_in.call_args.args
    assert delay.total_seconds() == 7
    assert func is poll_kyc_status_job
    assert args == ["a1", "GUSER", 2]
