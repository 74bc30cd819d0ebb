from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field

class AssetIn(BaseModel):
    code: str
    issuer: Optional[str] = None  # None for the native asset

class WebauthIn(BaseModel):
    endpoint: str
    transaction: str
    network_passphrase: str = ""

class SubmitFormRequest(BaseModel):
    transferServer: str
    asset: AssetIn
    method: str
    formValues: Dict[str, str] = Field(default_factory=dict)
    # Present when the anchor requires web auth before /withdraw
    webauth: Optional[WebauthIn] = None

class AuthTokenRequest(BaseModel):
    token: Optional[str] = None

class WithdrawRequest(BaseModel):
    account: str
    # Schedule background status polls when the anchor reports pending/interactive KYC
    pollKyc: bool = True

class StateResponse(BaseModel):
    attemptId: str
    state: Dict[str, Any]

class KYCFieldsResponse(BaseModel):
    attemptId: str
    status: Literal["kyc_fields_needed"] = "kyc_fields_needed"
    fields: List[str]
