"""Charge request and normalized provider response shapes."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CreditChargeRequest(BaseModel):
    """Card charge payload; serialized with the provider's camelCase names."""

    model_config = ConfigDict(populate_by_name=True)

    amount: int = Field(gt=0)
    reference: str
    installments: int = 1
    card_holder_name: str = Field(alias="cardHolderName")
    card_number: str = Field(alias="cardNumber", repr=False)
    expiration_month: str = Field(alias="expirationMonth")
    expiration_year: str = Field(alias="expirationYear")
    security_code: str = Field(alias="securityCode", repr=False)
    kind: str = "credit"
    capture: bool = True
    soft_descriptor: str | None = Field(default=None, alias="softDescriptor")

    def provider_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def _clean(value: Any, max_len: int) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return text[:max_len]


class GatewayResponse(BaseModel):
    """Provider answer reduced to the fields the checkout flow acts on."""

    tid: str | None = None
    reference: str | None = None
    return_code: str = ""
    return_message: str = ""
    authorization_code: str | None = None
    brand: str | None = None
    three_d_secure_url: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "GatewayResponse":
        brand_raw = payload.get("brand")
        if isinstance(brand_raw, dict):
            brand = _clean(brand_raw.get("name"), 80)
        else:
            brand = _clean(brand_raw, 80)
        three_ds = payload.get("threeDSecure")
        three_ds_url = _clean(three_ds.get("url"), 500) if isinstance(three_ds, dict) else None
        return cls(
            tid=_clean(payload.get("tid"), 120),
            reference=_clean(payload.get("reference"), 120),
            return_code=_clean(payload.get("returnCode"), 20) or "",
            return_message=_clean(payload.get("returnMessage"), 240) or "",
            authorization_code=_clean(payload.get("authorizationCode"), 40),
            brand=brand,
            three_d_secure_url=three_ds_url,
            raw=payload,
        )


class ProviderResult(BaseModel):
    ok: bool
    http_status: int
    data: GatewayResponse
