from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter, field_validator, model_validator

PaymentStatus = Literal["pending", "completed", "failed"]
ProcessingStatus = Literal["processed", "duplicate", "failed"]

# widths of the payment and audit columns these values land in
MAX_REQUEST_ID_LENGTH = 64
MAX_RECEIPT_LENGTH = 32
MAX_PHONE_LENGTH = 16

class CallbackItem(BaseModel):
    Name: str
    # Daraja omits Value for some items (e.g. Balance)
    Value: Optional[Union[int, float, str]] = None

class StkCallbackMetadata(BaseModel):
    Item: List[CallbackItem]

    def as_dict(self) -> Dict[str, Any]:
        return {item.Name: item.Value for item in self.Item}

class _StkCallbackBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    MerchantRequestID: str = Field(min_length=1, max_length=MAX_REQUEST_ID_LENGTH)
    CheckoutRequestID: str = Field(min_length=1, max_length=MAX_REQUEST_ID_LENGTH)
    ResultCode: int
    ResultDesc: str

class SuccessfulStkCallback(_StkCallbackBase):
    outcome: Literal["success"] = "success"
    CallbackMetadata: StkCallbackMetadata

    @field_validator("ResultCode")
    @classmethod
    def _zero(cls, v: int) -> int:
        if v != 0:
            raise ValueError("successful callback must carry ResultCode 0")
        return v

    @model_validator(mode="after")
    def _required_items(self):
        items = self.CallbackMetadata.as_dict()
        if not items.get("MpesaReceiptNumber"):
            raise ValueError("CallbackMetadata is missing MpesaReceiptNumber")
        if len(str(items["MpesaReceiptNumber"])) > MAX_RECEIPT_LENGTH:
            raise ValueError("CallbackMetadata MpesaReceiptNumber is too long")
        if items.get("PhoneNumber") is not None and len(str(items["PhoneNumber"])) > MAX_PHONE_LENGTH:
            raise ValueError("CallbackMetadata PhoneNumber is too long")
        try:
            amount = Decimal(str(items.get("Amount")))
        except InvalidOperation:
            raise ValueError("CallbackMetadata Amount is not a number")
        if not amount.is_finite() or amount <= 0:
            raise ValueError("CallbackMetadata Amount must be positive")
        return self

    @property
    def receipt_number(self) -> str:
        return str(self.CallbackMetadata.as_dict()["MpesaReceiptNumber"])

    @property
    def amount(self) -> Decimal:
        return Decimal(str(self.CallbackMetadata.as_dict()["Amount"]))

    @property
    def phone_number(self) -> Optional[str]:
        phone = self.CallbackMetadata.as_dict().get("PhoneNumber")
        return str(phone) if phone is not None else None

    @property
    def transaction_date(self) -> Optional[str]:
        value = self.CallbackMetadata.as_dict().get("TransactionDate")
        return str(value) if value is not None else None

class FailedStkCallback(_StkCallbackBase):
    outcome: Literal["failure"] = "failure"
    CallbackMetadata: Optional[StkCallbackMetadata] = None

    @field_validator("ResultCode")
    @classmethod
    def _nonzero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("failed callback must carry a non-zero ResultCode")
        return v

def _callback_outcome(value: Any) -> str:
    code = value.get("ResultCode") if isinstance(value, dict) else getattr(value, "ResultCode", None)
    try:
        return "success" if int(code) == 0 else "failure"
    except (TypeError, ValueError):
        return "failure"

StkCallback = Annotated[
    Union[
        Annotated[SuccessfulStkCallback, Tag("success")],
        Annotated[FailedStkCallback, Tag("failure")],
    ],
    Discriminator(_callback_outcome),
]

class StkCallbackBody(BaseModel):
    stkCallback: StkCallback

class CallbackEnvelope(BaseModel):
    """Daraja STK callback: {"Body": {"stkCallback": {...}}}"""
    Body: StkCallbackBody

_flat_callback = TypeAdapter(StkCallback)

def decode_envelope_callback(payload: Any) -> Union[SuccessfulStkCallback, FailedStkCallback]:
    return CallbackEnvelope.model_validate(payload).Body.stkCallback

def decode_flat_callback(payload: Any) -> Union[SuccessfulStkCallback, FailedStkCallback]:
    """Legacy shape with the stkCallback fields at the top level"""
    return _flat_callback.validate_python(payload)

class StkPushRequest(BaseModel):
    phone_number: str = Field(min_length=9, max_length=MAX_PHONE_LENGTH)
    amount: Decimal = Field(ge=1)
    tier: str = Field(min_length=1, max_length=32)
    account_reference: Optional[str] = None

class StkPushResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    MerchantRequestID: str
    CheckoutRequestID: str
    ResponseCode: str
    ResponseDescription: str = ""
    CustomerMessage: str = ""
