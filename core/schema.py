"""
Pydantic models for sessions, candidate transactions and the cheque ledger.
"""
from datetime import date as Date
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(str, Enum):
    """Lifecycle states of a conversational intake session."""
    IDLE = "idle"
    AWAITING_MATERIAL = "awaiting_material"
    EXTRACTING = "extracting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMMITTED = "committed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMMITTED, SessionState.CANCELLED)


class TransactionStatus(str, Enum):
    """Persisted status values of a cheque transaction."""
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    BOUNCED = "bounced"

    def can_transition_to(self, new_status: "TransactionStatus") -> bool:
        return new_status in ALLOWED_STATUS_TRANSITIONS.get(self, frozenset())


ALLOWED_STATUS_TRANSITIONS = {
    TransactionStatus.PENDING: frozenset({
        TransactionStatus.COMPLETED,
        TransactionStatus.CANCELLED,
        TransactionStatus.BOUNCED,
    }),
}


class Actor(str, Enum):
    CALLER = "caller"
    SYSTEM = "system"


class NormalizedImage(BaseModel):
    """A single canonical PNG raster produced from an upload."""
    content: bytes = Field(..., repr=False)
    mime_type: str = "image/png"
    width: int
    height: int
    source_mime_type: str
    page_count: int = 1
    digest: str


class Turn(BaseModel):
    """One immutable message exchange within a session."""
    model_config = ConfigDict(frozen=True)

    actor: Actor
    text: Optional[str] = None
    image_ref: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class FieldValue(BaseModel):
    """A candidate field value with its confidence and provenance."""
    model_config = ConfigDict(frozen=True)

    value: Union[Decimal, Date, int, str]
    confidence: float = Field(..., ge=0.0, le=1.0)
    turn_index: int = Field(default=0, ge=0)
    corrected: bool = False


CANDIDATE_FIELDS = (
    "cheque_number",
    "date",
    "amount",
    "customer_name",
    "vendor_name",
    "customer_id",
    "vendor_id",
    "bank_name",
)


class CandidateTransaction(BaseModel):
    """Partially filled, unconfirmed draft of cheque fields."""
    cheque_number: Optional[FieldValue] = None
    date: Optional[FieldValue] = None
    amount: Optional[FieldValue] = None
    customer_name: Optional[FieldValue] = None
    vendor_name: Optional[FieldValue] = None
    customer_id: Optional[FieldValue] = None
    vendor_id: Optional[FieldValue] = None
    bank_name: Optional[FieldValue] = None

    def value_of(self, name: str) -> Any:
        field = getattr(self, name)
        return field.value if field is not None else None

    def set_fields(self) -> Dict[str, FieldValue]:
        return {
            name: getattr(self, name)
            for name in CANDIDATE_FIELDS
            if getattr(self, name) is not None
        }

    def is_empty(self) -> bool:
        return not self.set_fields()

    def redacted(self) -> Dict[str, Any]:
        """Field values only, without confidence and provenance."""
        return {
            name: (str(field.value) if isinstance(field.value, (Decimal, Date)) else field.value)
            for name, field in self.set_fields().items()
        }

    def detailed(self) -> Dict[str, Any]:
        return {
            name: field.model_dump(mode="json")
            for name, field in self.set_fields().items()
        }


class CustomerRef(BaseModel):
    """Read-only view of a customer."""
    id: int
    name: str
    fee_percentage: Decimal


class VendorRef(BaseModel):
    """Read-only view of a vendor (cheque clearing counterparty)."""
    id: str
    name: str
    fee_percentage: Decimal
    high_risk: bool = False


class MatchCandidate(BaseModel):
    id: Union[int, str]
    name: str
    score: float


class ReconciliationOutcome(str, Enum):
    RESOLVED = "resolved"
    NEEDS_INPUT = "needs_input"
    AMBIGUOUS = "ambiguous"


class TransactionDraft(BaseModel):
    """A fully reconciled transaction awaiting commit."""
    cheque_number: str
    date: Date
    cheque_amount: Decimal = Field(..., gt=0)
    customer_id: int
    customer_name: str
    vendor_id: str
    vendor_name: str
    customer_fee_percentage: Decimal
    vendor_fee_percentage: Decimal
    customer_fee: Decimal = Field(..., ge=0)
    net_payable_to_customer: Decimal
    vendor_fee: Decimal
    amount_to_receive_from_vendor: Decimal
    profit: Decimal
    status: TransactionStatus = TransactionStatus.PENDING
    requires_review: bool = False
    review_reasons: List[str] = Field(default_factory=list)

    def idempotency_key(self) -> str:
        number = "".join(self.cheque_number.split()).upper()
        return f"{self.customer_id}:{number}"


class ReconciliationResult(BaseModel):
    outcome: ReconciliationOutcome
    draft: Optional[TransactionDraft] = None
    missing_fields: List[str] = Field(default_factory=list)
    ambiguities: Dict[str, List[MatchCandidate]] = Field(default_factory=dict)
    low_confidence_fields: List[str] = Field(default_factory=list)


class Transaction(BaseModel):
    """A committed cheque ledger entry."""
    transaction_id: int
    cheque_number: str
    date: Date
    cheque_amount: Decimal
    customer_id: int
    vendor_id: str
    customer_fee_percentage: Decimal
    vendor_fee_percentage: Decimal
    customer_fee: Decimal
    net_payable_to_customer: Decimal
    vendor_fee: Decimal
    amount_to_receive_from_vendor: Decimal
    profit: Decimal
    paid_to_customer: Decimal = Decimal("0.00")
    received_from_vendor: Decimal = Decimal("0.00")
    status: TransactionStatus
    requires_review: bool = False
    idempotency_key: str
    created_at: datetime
    updated_at: datetime


class CommitResult(BaseModel):
    transaction: Transaction
    duplicate: bool = False


class BusinessSummary(BaseModel):
    total_transactions: int = 0
    total_amount: Decimal = Decimal("0.00")
    total_profit: Decimal = Decimal("0.00")
    outstanding_balance: Decimal = Decimal("0.00")
    pending_transactions: int = 0
    completed_transactions: int = 0
    updated_at: Optional[datetime] = None


class Session(BaseModel):
    """Conversation state for one intake attempt."""
    key: str
    state: SessionState = SessionState.IDLE
    turns: List[Turn] = Field(default_factory=list)
    candidate: CandidateTransaction = Field(default_factory=CandidateTransaction)
    reconciliation: Optional[ReconciliationResult] = None
    last_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    last_activity: datetime = Field(default_factory=utc_now)

    @property
    def draft(self) -> Optional[TransactionDraft]:
        return self.reconciliation.draft if self.reconciliation else None


class TurnResponse(BaseModel):
    """What the caller sees after every turn, confirm or cancel."""
    session_key: str
    state: SessionState
    message: Optional[str] = None
    candidate: Dict[str, Any] = Field(default_factory=dict)
    draft: Optional[TransactionDraft] = None
    missing_fields: List[str] = Field(default_factory=list)
    ambiguities: Dict[str, List[MatchCandidate]] = Field(default_factory=dict)
    requires_review: bool = False
    transaction: Optional[Transaction] = None


class ConfirmRequest(BaseModel):
    corrections: Dict[str, str] = Field(default_factory=dict)
    acknowledge_review: bool = False


class StatusChangeRequest(BaseModel):
    status: TransactionStatus
