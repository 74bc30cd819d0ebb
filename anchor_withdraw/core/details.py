from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class Asset:
    code: str
    issuer: Optional[str] = None

    @property
    def is_native(self) -> bool:
        return self.issuer is None

    def to_dict(self) -> dict:
        return {"code": self.code, "issuer": self.issuer}

    @classmethod
    def from_dict(cls, data: dict) -> "Asset":
        return cls(code=data["code"], issuer=data.get("issuer"))


@dataclass(frozen=True)
class WebauthChallenge:
    """
    Authentication challenge obtained from the anchor's web auth endpoint.
    Opaque to the flow: it is stored and handed back to the caller, never signed here.
    """
    endpoint: str
    transaction: str  # base64 XDR envelope to be signed by the account keypair
    network_passphrase: str = ""

    def to_dict(self) -> dict:
        return {
            "endpoint": self.endpoint,
            "transaction": self.transaction,
            "network_passphrase": self.network_passphrase,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WebauthChallenge":
        return cls(
            endpoint=data["endpoint"],
            transaction=data["transaction"],
            network_passphrase=data.get("network_passphrase") or "",
        )


def _freeze(values: Optional[Mapping[str, str]]) -> Mapping[str, str]:
    if isinstance(values, MappingProxyType):
        return values
    return MappingProxyType(dict(values or {}))


@dataclass(frozen=True)
class WithdrawalDetails:
    """
    Everything the user entered on the initial withdrawal form.
    Created once on form submission and carried forward by reference afterwards.
    The transfer server is borrowed from the caller and never touched here.
    """
    asset: Asset
    withdrawal_form_values: Mapping[str, str]
    method: str
    transfer_server: Any

    def __post_init__(self):
        object.__setattr__(self, "withdrawal_form_values", _freeze(self.withdrawal_form_values))


@dataclass(frozen=True)
class PartialWithdrawalDetails:
    asset: Optional[Asset] = None
    withdrawal_form_values: Optional[Mapping[str, str]] = field(default=None)
    method: Optional[str] = None
    transfer_server: Any = None

    def __post_init__(self):
        if self.withdrawal_form_values is not None:
            object.__setattr__(self, "withdrawal_form_values", _freeze(self.withdrawal_form_values))
