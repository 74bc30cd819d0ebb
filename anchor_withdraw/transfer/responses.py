"""
Response shapes returned by an anchor's transfer server.

The /withdraw endpoint answers with exactly one of:
- 200: WithdrawalSuccessResponse (where and how to send the funds)
- 403: one of the KYC descriptors below, told apart by their `type` field
"""
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from anchor_withdraw.core.errors import AnchorResponseError

KYCStatus = Literal["pending", "denied", "success"]


class _AnchorModel(BaseModel):
    # Anchors routinely add vendor-specific keys; keep them instead of failing.
    model_config = ConfigDict(extra="allow", frozen=True)


class WithdrawalSuccessResponse(_AnchorModel):
    account_id: str
    memo_type: Optional[Literal["text", "id", "hash"]] = None
    memo: Optional[str] = None
    eta: Optional[int] = None
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None
    fee_fixed: Optional[float] = None
    fee_percent: Optional[float] = None
    extra_info: Optional[Dict[str, Any]] = None


class KYCInteractiveResponse(_AnchorModel):
    type: Literal["interactive_customer_info_needed"] = "interactive_customer_info_needed"
    url: str
    # Correlates later /transaction polls with this interactive session
    id: Optional[str] = None
    interactive_deposit: Optional[bool] = None


class KYCNonInteractiveResponse(_AnchorModel):
    type: Literal["non_interactive_customer_info_needed"] = "non_interactive_customer_info_needed"
    fields: List[str] = Field(default_factory=list)


class KYCStatusResponse(_AnchorModel):
    type: Literal["customer_info_status"] = "customer_info_status"
    status: KYCStatus
    more_info_url: Optional[str] = None
    eta: Optional[int] = None
    message: Optional[str] = None


KYCResponse = Union[KYCInteractiveResponse, KYCNonInteractiveResponse, KYCStatusResponse]

_KYC_BY_TYPE = {
    "interactive_customer_info_needed": KYCInteractiveResponse,
    "non_interactive_customer_info_needed": KYCNonInteractiveResponse,
    "customer_info_status": KYCStatusResponse,
}


def parse_kyc_response(data: Any) -> KYCResponse:
    """
    Disambiguate a 403 payload. Prefer the declared `type`; fall back to the
    payload's shape for anchors that omit it.
    """
    if not isinstance(data, dict):
        raise AnchorResponseError(403, "KYC response is not a JSON object")

    model = _KYC_BY_TYPE.get(data.get("type") or "")
    if model is None:
        if "url" in data:
            model = KYCInteractiveResponse
        elif "fields" in data:
            model = KYCNonInteractiveResponse
        elif "status" in data:
            model = KYCStatusResponse
        else:
            raise AnchorResponseError(403, data.get("message") or data.get("error") or "Unrecognized KYC response")

    payload = {k: v for k, v in data.items() if k != "type"}
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise AnchorResponseError(403, f"Malformed KYC response: {e.error_count()} invalid field(s)") from e


# --- /info ---

class FieldInfo(_AnchorModel):
    description: Optional[str] = None
    optional: bool = False
    choices: Optional[List[str]] = None


class WithdrawTypeInfo(_AnchorModel):
    fields: Dict[str, FieldInfo] = Field(default_factory=dict)


class AssetWithdrawInfo(_AnchorModel):
    enabled: bool = False
    authentication_required: bool = False
    fee_fixed: Optional[float] = None
    fee_percent: Optional[float] = None
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None
    # method identifier (e.g. "bank_account") -> extra fields it needs
    types: Dict[str, WithdrawTypeInfo] = Field(default_factory=dict)


class AssetDepositInfo(_AnchorModel):
    enabled: bool = False
    authentication_required: bool = False
    fee_fixed: Optional[float] = None
    fee_percent: Optional[float] = None
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None
    fields: Dict[str, FieldInfo] = Field(default_factory=dict)


class FeeInfo(_AnchorModel):
    enabled: bool = False
    authentication_required: bool = False


class TransactionsInfo(_AnchorModel):
    enabled: bool = False
    authentication_required: bool = False


class TransferInfo(_AnchorModel):
    deposit: Dict[str, AssetDepositInfo] = Field(default_factory=dict)
    withdraw: Dict[str, AssetWithdrawInfo] = Field(default_factory=dict)
    fee: Optional[FeeInfo] = None
    transactions: Optional[TransactionsInfo] = None
    transaction: Optional[TransactionsInfo] = None

    def withdrawable_assets(self) -> List[str]:
        return [code for code, info in self.withdraw.items() if info.enabled]


# --- /transaction, /transactions ---

class TransactionRecord(_AnchorModel):
    model_config = ConfigDict(extra="allow", frozen=True, populate_by_name=True)

    id: str
    kind: Optional[Literal["deposit", "withdrawal"]] = None
    status: str
    status_eta: Optional[int] = None
    more_info_url: Optional[str] = None
    amount_in: Optional[str] = None
    amount_out: Optional[str] = None
    amount_fee: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    stellar_transaction_id: Optional[str] = None
    external_transaction_id: Optional[str] = None
    message: Optional[str] = None
    withdraw_anchor_account: Optional[str] = None
    withdraw_memo: Optional[str] = None
    withdraw_memo_type: Optional[Literal["text", "id", "hash"]] = None
    to: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
