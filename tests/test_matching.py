"""
Unit tests for counterparty matching.
"""
from decimal import Decimal

from core.matching import MatchStatus, calculate_similarity, match_counterparty, normalize_string
from core.schema import CustomerRef, VendorRef

CUSTOMERS = [
    CustomerRef(id=1, name="Acme Co", fee_percentage=Decimal("2.5")),
    CustomerRef(id=2, name="J. Smith", fee_percentage=Decimal("3")),
    CustomerRef(id=3, name="J Smith", fee_percentage=Decimal("3")),
    CustomerRef(id=4, name="Globex Corporation", fee_percentage=Decimal("2")),
]


def test_normalize_string():
    assert normalize_string("  J. Smith, Jr. ") == "j smith jr"
    assert normalize_string(None) == ""


def test_similarity_ignores_token_order():
    assert calculate_similarity("Smith John", "John Smith") == 1.0


def test_similarity_empty_is_zero():
    assert calculate_similarity("", "Acme") == 0.0


def test_exact_id_hint_wins():
    result = match_counterparty(CUSTOMERS, id_hint="4", name_hint="Acme Co")
    assert result.status == MatchStatus.MATCHED
    assert result.exact_id is True
    assert result.match.id == 4


def test_name_hint_equal_to_id_is_exact():
    vendors = [VendorRef(id="NOR1", name="Northline Clearing", fee_percentage=Decimal("1"))]
    result = match_counterparty(vendors, name_hint="nor1")
    assert result.exact_id is True
    assert result.match.id == "NOR1"


def test_fuzzy_name_match():
    result = match_counterparty(CUSTOMERS, name_hint="ACME CO.")
    assert result.status == MatchStatus.MATCHED
    assert result.match.id == 1


def test_close_names_are_ambiguous():
    result = match_counterparty(CUSTOMERS, name_hint="J. Smith")
    assert result.status == MatchStatus.AMBIGUOUS
    assert [c.id for c in result.candidates] == [2, 3]


def test_unknown_name_is_unmatched():
    result = match_counterparty(CUSTOMERS, name_hint="Initech")
    assert result.status == MatchStatus.UNMATCHED
    assert result.match is None


def test_unknown_id_falls_back_to_name():
    result = match_counterparty(CUSTOMERS, id_hint="99", name_hint="Globex Corporation")
    assert result.status == MatchStatus.MATCHED
    assert result.exact_id is False
    assert result.match.id == 4


def test_no_hints_is_unmatched():
    assert match_counterparty(CUSTOMERS).status == MatchStatus.UNMATCHED


def test_matching_is_deterministic():
    results = {
        tuple(c.id for c in match_counterparty(list(order), name_hint="J Smith").candidates)
        for order in (CUSTOMERS, list(reversed(CUSTOMERS)))
    }
    assert results == {(2, 3)}
