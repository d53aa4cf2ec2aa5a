"""
Reconciliation of candidate cheque fields against known counterparties.

Pure and deterministic: the same candidate and counterparty lists always
yield the same outcome and the same matched ids.
"""
from typing import Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel, Field

from core.config import Settings, get_settings
from core.fees import compute_financials, to_money
from core.logger import setup_logger
from core.matching import CounterpartyMatch, MatchStatus, match_counterparty
from core.schema import (
    CandidateTransaction,
    CustomerRef,
    MatchCandidate,
    ReconciliationOutcome,
    ReconciliationResult,
    TransactionDraft,
    TransactionStatus,
    VendorRef,
)

logger = setup_logger(__name__)

REQUIRED_FIELDS = ("cheque_number", "date", "amount")


class CounterpartyDirectory(Protocol):
    """Read access to customers and vendors owned by the CRUD layer."""

    def list_customers(self) -> List[CustomerRef]:
        ...

    def list_vendors(self) -> List[VendorRef]:
        ...


class ReconciliationContext(BaseModel):
    """Known counterparties a session reconciles against."""
    customers: List[CustomerRef] = Field(default_factory=list)
    vendors: List[VendorRef] = Field(default_factory=list)

    @classmethod
    def from_directory(cls, directory: CounterpartyDirectory) -> "ReconciliationContext":
        return cls(customers=directory.list_customers(), vendors=directory.list_vendors())


class ReconciliationEngine:
    """Matches counterparties, derives money fields and decides the outcome."""

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.match_threshold = settings.match_threshold
        self.tie_margin = settings.match_tie_margin
        self.acceptance_threshold = settings.confidence_acceptance_threshold

    def _resolve(
        self,
        known: Sequence[BaseModel],
        id_hint: Optional[str],
        name_hint: Optional[str],
        kind: str,
    ) -> CounterpartyMatch:
        return match_counterparty(
            known,
            id_hint=id_hint,
            name_hint=name_hint,
            threshold=self.match_threshold,
            tie_margin=self.tie_margin,
            kind=kind,
        )

    def reconcile(self, candidate: CandidateTransaction, context: ReconciliationContext) -> ReconciliationResult:
        """
        Reconcile a candidate transaction.

        Args:
            candidate: Accumulated candidate fields
            context: Known customers and vendors

        Returns:
            ReconciliationResult with outcome resolved, needs_input or ambiguous
        """
        missing: List[str] = [name for name in REQUIRED_FIELDS if candidate.value_of(name) is None]
        ambiguities: Dict[str, List[MatchCandidate]] = {}

        customer_match = self._resolve(
            context.customers,
            candidate.value_of("customer_id"),
            candidate.value_of("customer_name"),
            "customer",
        )
        vendor_match = self._resolve(
            context.vendors,
            candidate.value_of("vendor_id"),
            candidate.value_of("vendor_name"),
            "vendor",
        )

        for kind, match in (("customer", customer_match), ("vendor", vendor_match)):
            if match.status == MatchStatus.AMBIGUOUS:
                ambiguities[kind] = match.candidates
            elif match.status == MatchStatus.UNMATCHED:
                missing.append(kind)

        low_confidence = sorted(
            name for name, field in candidate.set_fields().items()
            if not field.corrected and field.confidence < self.acceptance_threshold
        )

        if ambiguities:
            logger.info(f"Reconciliation ambiguous for: {', '.join(sorted(ambiguities))}")
            return ReconciliationResult(
                outcome=ReconciliationOutcome.AMBIGUOUS,
                missing_fields=missing,
                ambiguities=ambiguities,
                low_confidence_fields=low_confidence,
            )

        if missing:
            logger.info(f"Reconciliation needs input: {', '.join(missing)}")
            return ReconciliationResult(
                outcome=ReconciliationOutcome.NEEDS_INPUT,
                missing_fields=missing,
                low_confidence_fields=low_confidence,
            )

        customer = next(c for c in context.customers if c.id == customer_match.match.id)
        vendor = next(v for v in context.vendors if v.id == vendor_match.match.id)
        draft = self.build_draft(candidate, customer, vendor)

        logger.info(
            f"Reconciliation resolved cheque {draft.cheque_number}: customer={customer.id}, "
            f"vendor={vendor.id}, amount={draft.cheque_amount}, profit={draft.profit}"
        )
        return ReconciliationResult(
            outcome=ReconciliationOutcome.RESOLVED,
            draft=draft,
            low_confidence_fields=low_confidence,
        )

    @staticmethod
    def build_draft(candidate: CandidateTransaction, customer: CustomerRef, vendor: VendorRef) -> TransactionDraft:
        amount = to_money(candidate.value_of("amount"))
        financials = compute_financials(
            amount,
            customer.fee_percentage,
            vendor.fee_percentage,
            TransactionStatus.PENDING,
        )

        review_reasons = []
        if vendor.high_risk:
            review_reasons.append(f"Vendor {vendor.name} ({vendor.id}) is flagged high-risk")

        return TransactionDraft(
            cheque_number=candidate.value_of("cheque_number"),
            date=candidate.value_of("date"),
            cheque_amount=amount,
            customer_id=customer.id,
            customer_name=customer.name,
            vendor_id=vendor.id,
            vendor_name=vendor.name,
            customer_fee_percentage=customer.fee_percentage,
            vendor_fee_percentage=vendor.fee_percentage,
            status=TransactionStatus.PENDING,
            requires_review=bool(review_reasons),
            review_reasons=review_reasons,
            **financials,
        )
