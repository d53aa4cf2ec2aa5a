"""
Fee and profit arithmetic for cheque transactions.

All derived money fields are pure functions of the cheque amount, the two fee
percentages and the transaction status, so they can be recomputed from stored
inputs at any time.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Union

from core.schema import TransactionStatus

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

Number = Union[Decimal, int, str]


def to_money(value: Number) -> Decimal:
    """Quantize to cents, rounding half up."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def percentage_of(amount: Number, percentage: Number) -> Decimal:
    return to_money(Decimal(amount) * Decimal(percentage) / HUNDRED)


def compute_profit(customer_fee: Decimal, vendor_fee: Decimal, status: TransactionStatus) -> Decimal:
    """
    Profit earned on a cheque.

    pending/completed: customer fee minus vendor cost basis.
    cancelled: nothing was earned or paid.
    bounced: the customer fee is reversed while the vendor cost is still borne.
    """
    if status == TransactionStatus.CANCELLED:
        return ZERO
    if status == TransactionStatus.BOUNCED:
        return to_money(-vendor_fee)
    return to_money(customer_fee - vendor_fee)


def compute_financials(
    cheque_amount: Number,
    customer_fee_percentage: Number,
    vendor_fee_percentage: Number,
    status: TransactionStatus = TransactionStatus.PENDING,
) -> Dict[str, Any]:
    """
    Derive every money field of a transaction.

    Returns:
        Dictionary with customer_fee, net_payable_to_customer, vendor_fee,
        amount_to_receive_from_vendor and profit
    """
    amount = to_money(cheque_amount)
    customer_fee = percentage_of(amount, customer_fee_percentage)
    vendor_fee = percentage_of(amount, vendor_fee_percentage)
    return {
        "customer_fee": customer_fee,
        "net_payable_to_customer": to_money(amount - customer_fee),
        "vendor_fee": vendor_fee,
        "amount_to_receive_from_vendor": to_money(amount - vendor_fee),
        "profit": compute_profit(customer_fee, vendor_fee, status),
    }
