import pytest
from fastapi.testclient import TestClient
from unittest.mock import patch, MagicMock

from anchor_withdraw.main import app
from anchor_withdraw.api.auth import require_api_key
from anchor_withdraw.core.details import Asset, WithdrawalDetails
from anchor_withdraw.core.errors import AnchorResponseError, IllegalTransitionError
from anchor_withdraw.core.state_machine import (
    AfterWebauthState,
    BeforeWebauthState,
    InitialState,
    PendingKYCState,
)
from anchor_withdraw.settings import settings
from anchor_withdraw.transfer.responses import KYCNonInteractiveResponse, KYCStatusResponse, TransferInfo

client = TestClient(app)

SERVER = MagicMock(url="https://anchor.example/sep6")
DETAILS = WithdrawalDetails(asset=Asset(code="USD", issuer="GISSUER"), withdrawal_form_values={"dest": "1"}, method="cash", transfer_server=SERVER)


@pytest.fixture(autouse=True)
def skip_auth():
    app.dependency_overrides[require_api_key] = lambda: None
    yield
    app.dependency_overrides = {}


def test_health():
    assert client.get("/health").json() == {"status": "ok"}


@patch("anchor_withdraw.api.routes.orchestrator")
def test_submit_form(mock_orch):
    mock_orch.submit_form.return_value = BeforeWebauthState(details=DETAILS)
    body = {
        "transferServer": SERVER.url,
        "asset": {"code": "USD", "issuer": "GISSUER"},
        "method": "cash",
        "formValues": {"dest": "1"},
        "webauth": {"endpoint": "https://anchor.example/auth", "transaction": "AAAA"},
    }
    resp = client.post("/withdrawals/a1/form", json=body)

    assert resp.status_code == 200
    data = resp.json()
    assert data["attemptId"] == "a1"
    assert data["state"]["step"] == "before-webauth"
    assert data["state"]["details"]["transferServer"] == SERVER.url

    args = mock_orch.submit_form.call_args.args
    assert args[0] == "a1"
    assert args[2] == Asset(code="USD", issuer="GISSUER")
    assert args[5].transaction == "AAAA"


@patch("anchor_withdraw.api.routes.orchestrator")
def test_illegal_transition_maps_to_409(mock_orch):
    mock_orch.complete_webauth.side_effect = IllegalTransitionError(
        "set-auth-token", "after-webauth", "Cannot set auth token at this time."
    )
    resp = client.post("/withdrawals/a1/auth-token", json={"token": "tok"})
    assert resp.status_code == 409
    assert resp.json()["step"] == "after-webauth"
    assert resp.json()["message"] == "Cannot set auth token at this time."


@patch("anchor_withdraw.api.routes.enqueue_kyc_poll")
@patch("anchor_withdraw.api.routes.orchestrator")
def test_request_pending_schedules_poll(mock_orch, mock_enqueue):
    mock_orch.request_withdrawal.return_value = PendingKYCState(details=DETAILS, kyc_status=KYCStatusResponse(status="pending"))
    resp = client.post("/withdrawals/a1/request", json={"account": "GUSER"})

    assert resp.status_code == 200
    assert resp.json()["state"]["step"] == "pending-kyc"
    assert resp.json()["state"]["kycStatus"]["status"] == "pending"
    mock_enqueue.assert_called_once_with("a1", "GUSER")


@patch("anchor_withdraw.api.routes.enqueue_kyc_poll")
@patch("anchor_withdraw.api.routes.orchestrator")
def test_request_without_poll(mock_orch, mock_enqueue):
    mock_orch.request_withdrawal.return_value = PendingKYCState(details=DETAILS, kyc_status=KYCStatusResponse(status="pending"))
    client.post("/withdrawals/a1/request", json={"account": "GUSER", "pollKyc": False})
    mock_enqueue.assert_not_called()


@patch("anchor_withdraw.api.routes.orchestrator")
def test_request_non_interactive_fields(mock_orch):
    mock_orch.request_withdrawal.return_value = KYCNonInteractiveResponse(fields=["first_name"])
    resp = client.post("/withdrawals/a1/request", json={"account": "GUSER"})
    assert resp.json() == {"attemptId": "a1", "status": "kyc_fields_needed", "fields": ["first_name"]}


@patch("anchor_withdraw.api.routes.orchestrator")
def test_anchor_error_maps_to_502(mock_orch):
    mock_orch.request_withdrawal.side_effect = AnchorResponseError(500)
    resp = client.post("/withdrawals/a1/request", json={"account": "GUSER"})
    assert resp.status_code == 502
    assert resp.json()["anchorStatus"] == 500


@patch("anchor_withdraw.api.routes.orchestrator")
def test_back_to_start_and_tx_submitted(mock_orch):
    mock_orch.back_to_start.return_value = InitialState(details=DETAILS)
    resp = client.post("/withdrawals/a1/back-to-start")
    assert resp.json()["state"]["step"] == "initial"
    assert resp.json()["state"]["details"]["method"] == "cash"

    from anchor_withdraw.core.state_machine import AfterTransactionState
    mock_orch.mark_submitted.return_value = AfterTransactionState()
    resp = client.post("/withdrawals/a1/tx-submitted")
    assert resp.json()["state"] == {"step": "after-tx-submission"}


@patch("anchor_withdraw.api.routes.attempt_repo")
def test_get_attempt(mock_repo):
    mock_repo.exists.return_value = True
    mock_repo.load_attempt.return_value = AfterWebauthState(details=DETAILS, auth_token="tok")
    resp = client.get("/withdrawals/a1")
    assert resp.json()["state"]["step"] == "after-webauth"
    # bearer tokens never leave the server
    assert "authToken" not in resp.json()["state"]

    mock_repo.exists.return_value = False
    assert client.get("/withdrawals/zz").status_code == 404


@patch("anchor_withdraw.api.routes.attempt_repo")
@patch("anchor_withdraw.api.routes.TransferServer")
def test_transfer_info_uses_throwaway_client(mock_server_cls, mock_repo):
    server = mock_server_cls.return_value.__enter__.return_value
    server.fetch_info.return_value = TransferInfo.model_validate({"withdraw": {"USD": {"enabled": True}}})

    resp = client.get("/info", params={"transfer_server": "https://anchor.example/sep6"})
    assert resp.status_code == 200
    assert resp.json()["withdraw"]["USD"]["enabled"] is True
    mock_server_cls.assert_called_once_with("https://anchor.example/sep6")
    mock_server_cls.return_value.__exit__.assert_called_once()
    mock_repo.get_transfer_server.assert_not_called()


def test_api_key_enforced():
    app.dependency_overrides = {}
    with patch.object(settings, "API_KEY", "secret"):
        assert client.get("/withdrawals/a1").status_code == 401
