"""
Request/response models for the HTTP API and validated shapes for Daraja bodies.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from zetech.errors import UpstreamSchemaError

Duration = Literal["1_week", "30_days", "60_days", "forever", "trial_7_days"]


# ─── API requests ────────────────────────────────────────────────────

class PaymentRequest(BaseModel):
    phone_number: str = Field(..., min_length=9)
    amount: int = Field(..., gt=0)
    duration: Duration
    api_key_name: str = Field(..., min_length=1)
    transaction_id: Optional[str] = None


class StatusQueryRequest(BaseModel):
    checkout_request_id: str = Field(..., min_length=1)


class ApiKeyRequest(BaseModel):
    api_key: Optional[str] = None


# ─── API responses ───────────────────────────────────────────────────

class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    transaction_id: str
    type: str
    status: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    description: Optional[str] = None
    payment_method: Optional[str] = None
    payment_provider: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    error_message: Optional[str] = None
    success_message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("meta", "metadata"))
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    message: str
    type: str
    priority: str
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime


class PaymentInitResponse(BaseModel):
    success: bool = True
    message: str = "STK push sent successfully"
    checkout_request_id: str
    transaction_id: str
    payment_id: Optional[str] = None
    api_key_id: Optional[str] = None


class StatusQueryResponse(BaseModel):
    success: bool = True
    transaction: TransactionOut
    mpesa_response: Dict[str, Any]


class TransactionListResponse(BaseModel):
    success: bool = True
    transactions: List[TransactionOut]
    total: int


# ─── Daraja bodies ───────────────────────────────────────────────────

class GatewayModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def raw(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class OAuthTokenResponse(GatewayModel):
    access_token: str
    expires_in: Any = None


class StkPushResponse(GatewayModel):
    merchant_request_id: Optional[str] = Field(None, alias="MerchantRequestID")
    checkout_request_id: Optional[str] = Field(None, alias="CheckoutRequestID")
    response_code: Optional[str] = Field(None, alias="ResponseCode")
    response_description: Optional[str] = Field(None, alias="ResponseDescription")
    customer_message: Optional[str] = Field(None, alias="CustomerMessage")
    error_code: Optional[str] = Field(None, alias="errorCode")
    error_message: Optional[str] = Field(None, alias="errorMessage")

    @field_validator("response_code", "error_code", mode="before")
    @classmethod
    def _code_as_text(cls, value):
        return None if value is None else str(value)

    @property
    def accepted(self) -> bool:
        return self.response_code == "0" and bool(self.checkout_request_id)


class StkQueryResponse(GatewayModel):
    merchant_request_id: Optional[str] = Field(None, alias="MerchantRequestID")
    checkout_request_id: Optional[str] = Field(None, alias="CheckoutRequestID")
    response_code: Optional[str] = Field(None, alias="ResponseCode")
    response_description: Optional[str] = Field(None, alias="ResponseDescription")
    result_code: Optional[int] = Field(None, alias="ResultCode")
    result_desc: Optional[str] = Field(None, alias="ResultDesc")
    error_code: Optional[str] = Field(None, alias="errorCode")
    error_message: Optional[str] = Field(None, alias="errorMessage")

    @field_validator("response_code", "error_code", mode="before")
    @classmethod
    def _code_as_text(cls, value):
        return None if value is None else str(value)

    @property
    def has_result(self) -> bool:
        """The query call succeeded and the payment has a final result."""
        return self.response_code == "0" and self.result_code is not None


class CallbackItem(GatewayModel):
    name: str = Field(..., alias="Name")
    value: Any = Field(None, alias="Value")


class CallbackMetadata(GatewayModel):
    items: List[CallbackItem] = Field(default_factory=list, alias="Item")


class StkCallback(GatewayModel):
    merchant_request_id: Optional[str] = Field(None, alias="MerchantRequestID")
    checkout_request_id: str = Field(..., alias="CheckoutRequestID")
    result_code: int = Field(..., alias="ResultCode")
    result_desc: str = Field("", alias="ResultDesc")
    callback_metadata: Optional[CallbackMetadata] = Field(None, alias="CallbackMetadata")

    def metadata_value(self, name: str) -> Any:
        if self.callback_metadata is None:
            return None
        for item in self.callback_metadata.items:
            if item.name == name:
                return item.value
        return None


class CallbackBody(GatewayModel):
    stk_callback: StkCallback = Field(..., alias="stkCallback")


class CallbackEnvelope(GatewayModel):
    body: CallbackBody = Field(..., alias="Body")


def parse_gateway(model, payload: Any, what: str, status_code: Optional[int] = None):
    """Validate a gateway body, raising UpstreamSchemaError on mismatch."""
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise UpstreamSchemaError(
            f"Unexpected {what} shape from M-Pesa",
            details={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
            status_code=status_code,
        ) from exc
