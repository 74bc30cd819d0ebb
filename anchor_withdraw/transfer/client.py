import time
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

import httpx
from pydantic import BaseModel, ValidationError

from anchor_withdraw.core.errors import AnchorResponseError
from anchor_withdraw.observability.logging import log
from anchor_withdraw.settings import settings
from anchor_withdraw.transfer.responses import (
    KYCResponse,
    TransactionRecord,
    TransferInfo,
    WithdrawalSuccessResponse,
    parse_kyc_response,
)
from anchor_withdraw.transfer.util import join_url


class WithdrawalType(str, Enum):
    bank_account = "bank_account"
    cash = "cash"
    crypto = "crypto"
    mobile = "mobile"
    bill_payment = "bill_payment"


class WithdrawalOptions(BaseModel):
    # Stellar account of the user; lets the anchor look up existing KYC info
    account: str
    # Bank account number, IBAN, crypto address, mobile number or email
    dest: str
    # Routing number, BIC, crypto memo... whatever locates `dest` further
    dest_extra: str = ""
    # Identifies a user when several share one Stellar account
    memo: Optional[str] = None
    memo_type: Optional[Literal["hash", "id", "text"]] = None
    wallet_name: Optional[str] = None
    wallet_url: Optional[str] = None


class WithdrawalRequestSuccess(BaseModel):
    type: Literal["success"] = "success"
    data: WithdrawalSuccessResponse


class WithdrawalRequestKYC(BaseModel):
    type: Literal["kyc"] = "kyc"
    data: KYCResponse


WithdrawalResult = Union[WithdrawalRequestSuccess, WithdrawalRequestKYC]

# 201 is sent by some anchors (TEMPO) for a successful withdraw request
_SUCCESS_STATUSES = (200, 201)


def _auth_headers(auth_token: Optional[str]) -> Dict[str, str]:
    if auth_token:
        return {"Authorization": f"Bearer {auth_token}"}
    return {}


def _anchor_message(resp: httpx.Response) -> Optional[str]:
    try:
        data = resp.json()
    except ValueError:
        return None
    if isinstance(data, dict):
        return data.get("message") or data.get("error") or None
    return None


def _json_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError as e:
        raise AnchorResponseError(resp.status_code, "Response is not valid JSON") from e


def _validate(model, data: Any, status_code: int, what: str):
    if not isinstance(data, dict):
        raise AnchorResponseError(status_code, f"Malformed {what}: expected a JSON object")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise AnchorResponseError(status_code, f"Malformed {what}: {e.error_count()} invalid field(s)") from e


class TransferServer:
    """
    Client for one anchor's transfer server (/info, /withdraw, /transaction(s)).
    Instances are shared, read-only references; the flow only ever reads `url`.
    """

    def __init__(self, url: str, client: Optional[httpx.Client] = None):
        self._url = url
        self._client = client or httpx.Client(timeout=settings.TRANSFER_TIMEOUT_SEC)

    @property
    def url(self) -> str:
        return self._url

    def __repr__(self) -> str:
        return f"TransferServer({self._url!r})"

    def __eq__(self, other) -> bool:
        return isinstance(other, TransferServer) and other.url == self.url

    def __hash__(self) -> int:
        return hash(self._url)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "TransferServer":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None, auth_token: Optional[str] = None) -> httpx.Response:
        url = join_url(self._url, path)
        start = time.time()
        resp = self._client.get(url, params=params or None, headers=_auth_headers(auth_token))
        try:
            log(
                event="anchor_request",
                url=url,
                statusCode=int(resp.status_code),
                elapsedMs=int((time.time() - start) * 1000),
                authenticated=bool(auth_token),
            )
        except Exception:
            pass
        return resp

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None, auth_token: Optional[str] = None) -> Any:
        resp = self._get(path, params=params, auth_token=auth_token)
        if resp.status_code != 200:
            raise AnchorResponseError(resp.status_code, _anchor_message(resp))
        return _json_body(resp)

    def fetch_info(self) -> TransferInfo:
        return _validate(TransferInfo, self._get_json("/info"), 200, "/info response")

    def withdraw(
        self,
        type: Union[WithdrawalType, str],
        asset_code: str,
        auth_token: Optional[str],
        options: WithdrawalOptions,
    ) -> WithdrawalResult:
        """
        GET /withdraw.

        200 -> WithdrawalRequestSuccess, 403 -> WithdrawalRequestKYC,
        anything else -> AnchorResponseError (with the anchor's message if it sent one).
        """
        params = options.model_dump(exclude_none=True)
        params["type"] = type.value if isinstance(type, WithdrawalType) else type
        params["asset_code"] = asset_code

        resp = self._get("/withdraw", params=params, auth_token=auth_token)

        if resp.status_code in _SUCCESS_STATUSES:
            data = _validate(WithdrawalSuccessResponse, _json_body(resp), resp.status_code, "withdrawal instructions")
            return WithdrawalRequestSuccess(data=data)
        if resp.status_code == 403:
            return WithdrawalRequestKYC(data=parse_kyc_response(_json_body(resp)))
        raise AnchorResponseError(resp.status_code, _anchor_message(resp))

    def fetch_transaction(
        self,
        id: Optional[str] = None,
        stellar_transaction_id: Optional[str] = None,
        external_transaction_id: Optional[str] = None,
        auth_token: Optional[str] = None,
    ) -> TransactionRecord:
        lookup = {
            "id": id,
            "stellar_transaction_id": stellar_transaction_id,
            "external_transaction_id": external_transaction_id,
        }
        lookup = {k: v for k, v in lookup.items() if v}
        if len(lookup) != 1:
            raise ValueError("Exactly one of id, stellar_transaction_id or external_transaction_id is required")

        data = self._get_json("/transaction", params=lookup, auth_token=auth_token)
        if not isinstance(data, dict):
            raise AnchorResponseError(200, "Malformed /transaction response: expected a JSON object")
        return _validate(TransactionRecord, data.get("transaction"), 200, "transaction")

    def fetch_transactions(
        self,
        asset_code: str,
        auth_token: Optional[str] = None,
        kind: Optional[Literal["deposit", "withdrawal"]] = None,
        limit: Optional[int] = None,
        paging_id: Optional[str] = None,
        no_older_than: Optional[str] = None,
    ) -> List[TransactionRecord]:
        params: Dict[str, Any] = {"asset_code": asset_code}
        if kind:
            params["kind"] = kind
        if limit is not None:
            params["limit"] = int(limit)
        if paging_id:
            params["paging_id"] = paging_id
        if no_older_than:
            params["no_older_than"] = no_older_than

        data = self._get_json("/transactions", params=params, auth_token=auth_token)
        if not isinstance(data, dict):
            raise AnchorResponseError(200, "Malformed /transactions response: expected a JSON object")
        records = data.get("transactions") or []
        if not isinstance(records, list):
            raise AnchorResponseError(200, "Malformed /transactions response: expected a list")
        return [_validate(TransactionRecord, t, 200, "transaction") for t in records]
