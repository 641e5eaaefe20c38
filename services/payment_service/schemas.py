"""Request/response models for the payment service API."""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from .payout_gateway import BankAccountInfo


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in code."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class CreatePaymentRequest(ApiModel):
    invoice_id: int
    renter_id: int


class RefundRequest(ApiModel):
    invoice_id: int
    amount: Decimal = Field(gt=0)
    reason: str
    staff_id: Optional[int] = None
    note: Optional[str] = None


class ProcessRefundRequest(ApiModel):
    account_number: str
    account_name: Optional[str] = None
    bank_code: str

    def to_bank_info(self) -> BankAccountInfo:
        return BankAccountInfo(
            account_number=self.account_number,
            account_name=self.account_name,
            bank_code=self.bank_code,
        )


class RejectRefundRequest(ApiModel):
    reason: str


class RetryRefundRequest(ApiModel):
    staff_id: Optional[int] = None


class RefundResponse(ApiModel):
    id: int
    invoice_id: int
    amount: Decimal
    reason: Optional[str] = None
    status: str
    staff_id: Optional[int] = None
    requested_at: datetime
    processed_at: Optional[datetime] = None
    payout_transaction_id: Optional[str] = None
    note: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


def api_body(result: BaseModel) -> dict:
    """Dump a flat result model with the same camelCase keys as the API models."""
    body = result.model_dump(mode="json", exclude={"not_found"})
    return {to_camel(key): value for key, value in body.items()}
