# app/models/transaction.py

from datetime import date
from typing import Optional, Literal
from pydantic import BaseModel, Field

from app.core.errors import MalformedRecordError

SourceDomain = Literal["bank", "gateway", "invoice"]


class Transaction(BaseModel):
    """One monetary event from a single source domain."""

    id: str
    source_domain: SourceDomain
    source: str = ""  # feed name: bank account, gateway, invoicing system
    transaction_date: Optional[date] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    description: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    annotation: dict = Field(default_factory=dict)

    class Config:
        from_attributes = True

    # ============================================
    # Required-field access for strategies
    # ============================================

    def require_amount(self) -> float:
        if self.amount is None:
            raise MalformedRecordError(self.id, "amount")
        return self.amount

    def require_date(self) -> date:
        if self.transaction_date is None:
            raise MalformedRecordError(self.id, "date")
        return self.transaction_date

    # ============================================
    # Domain helpers
    # ============================================

    @property
    def is_inflow(self) -> bool:
        return self.source_domain != "invoice" and (self.amount or 0) > 0

    @property
    def is_payable(self) -> bool:
        return self.source_domain == "invoice" and self.metadata.get("kind") == "payable"

    @property
    def is_payout(self) -> bool:
        return self.source_domain == "gateway" and self.metadata.get("record_type") == "payout"

    @property
    def invoice_number(self) -> Optional[str]:
        value = self.metadata.get("invoice_number")
        return str(value) if value else None

    @property
    def order_number(self) -> Optional[str]:
        value = self.metadata.get("order_number") or self.metadata.get("order_id")
        return str(value) if value else None

    @property
    def category(self) -> Optional[str]:
        value = self.metadata.get("financial_account_code")
        return str(value) if value else None

    @property
    def gateway(self) -> Optional[str]:
        value = self.metadata.get("gateway") or (self.source if self.source_domain == "gateway" else None)
        return str(value).lower() if value else None


class DisbursementAggregate(BaseModel):
    """Gateway transactions paid out together as one settlement batch.

    Derived each run from gateway records; never persisted.
    """

    reference: str
    disbursement_date: date
    merchant_account_id: str
    gateway: str
    currency: Optional[str] = None
    total_amount: float
    fee_total: float = 0.0
    member_record_ids: list[str] = Field(default_factory=list)
    member_transaction_ids: list[str] = Field(default_factory=list)
    settlement_batch_ids: list[str] = Field(default_factory=list)
    payout_id: Optional[str] = None

    class Config:
        frozen = True

    @property
    def member_count(self) -> int:
        return len(self.member_record_ids)
