from datetime import date

from reconciliation import (
    ClaimRow,
    MatchMethod,
    MatchStatus,
    MatchType,
    RemittanceRow,
    claim_key,
    classify_payment,
    match_claims,
    remittance_key_variants,
    summarize,
)

SERVICE_DAY = date(2025, 5, 14)


def test_claim_key_normalises_member_number() -> None:
    assert claim_key(" ab 123 ", SERVICE_DAY, 4500) == "AB123|2025-05-14|4500"


def test_remittance_variants_cover_two_unit_tolerance() -> None:
    variants = remittance_key_variants("ab123", SERVICE_DAY, 4500)
    assert [v.rsplit("|", 1)[1] for v in variants] == ["4500", "4600", "4400", "4700", "4300"]


def test_classify_payment() -> None:
    assert classify_payment(100, 100) == (MatchType.exact, MatchStatus.paid)
    assert classify_payment(100, 120) == (MatchType.partial, MatchStatus.paid)
    assert classify_payment(100, 40) == (MatchType.partial, MatchStatus.partially_paid)
    assert classify_payment(100, 0) == (MatchType.partial, MatchStatus.manual_review)


def test_invoice_match_wins_over_composite_key() -> None:
    claims = [
        ClaimRow("M1", 1000, SERVICE_DAY, invoice_number="A-1"),
        ClaimRow("M1", 1000, SERVICE_DAY, invoice_number="A-2"),
    ]
    remittances = [RemittanceRow("M1", 1000, 1000, SERVICE_DAY, bill_no="a-2")]

    outcome = match_claims(claims, remittances)

    assert outcome.results[1].remittance_index == 0
    assert outcome.results[1].match_method == MatchMethod.invoice
    assert outcome.results[0].status == MatchStatus.awaiting_remittance


def test_identical_claims_each_take_one_remittance() -> None:
    claims = [
        ClaimRow("M1", 1000, SERVICE_DAY),
        ClaimRow("M1", 1000, SERVICE_DAY),
    ]
    remittances = [
        RemittanceRow("M1", 1000, 1000, SERVICE_DAY),
        RemittanceRow("M1", 1000, 600, SERVICE_DAY),
    ]

    outcome = match_claims(claims, remittances)

    assert [r.remittance_index for r in outcome.results] == [0, 1]
    assert outcome.results[1].status == MatchStatus.partially_paid
    assert outcome.orphan_remittances == []


def test_composite_key_match_within_tolerance() -> None:
    claims = [ClaimRow("m 7", 5000, SERVICE_DAY)]
    remittances = [RemittanceRow("M7", 5200, 3000, SERVICE_DAY)]

    outcome = match_claims(claims, remittances)
    result = outcome.results[0]

    assert result.match_method == MatchMethod.date_amount
    assert result.status == MatchStatus.partially_paid
    assert result.amount_paid_cents == 3000
    assert outcome.orphan_remittances == []


def test_amount_outside_tolerance_is_orphaned() -> None:
    claims = [ClaimRow("M7", 5000, SERVICE_DAY)]
    remittances = [RemittanceRow("M7", 5300, 5300, SERVICE_DAY)]

    outcome = match_claims(claims, remittances)

    assert outcome.results[0].match_type == MatchType.none
    assert outcome.orphan_remittances == [0]


def test_each_claim_is_matched_once() -> None:
    claims = [ClaimRow("M1", 1000, SERVICE_DAY)]
    remittances = [
        RemittanceRow("M1", 1000, 1000, SERVICE_DAY),
        RemittanceRow("M1", 1000, 1000, SERVICE_DAY),
    ]

    outcome = match_claims(claims, remittances)

    assert outcome.results[0].remittance_index == 0
    assert outcome.orphan_remittances == [1]


def test_summary_counts() -> None:
    claims = [
        ClaimRow("A", 100, SERVICE_DAY),
        ClaimRow("B", 100, SERVICE_DAY),
        ClaimRow("C", 100, SERVICE_DAY),
        ClaimRow("D", 100, SERVICE_DAY),
    ]
    remittances = [
        RemittanceRow("A", 100, 100, SERVICE_DAY),
        RemittanceRow("B", 100, 60, SERVICE_DAY),
        RemittanceRow("C", 100, 0, SERVICE_DAY),
        RemittanceRow("Z", 100, 100, SERVICE_DAY),
    ]

    outcome = match_claims(claims, remittances)

    assert summarize(outcome.results, outcome.orphan_remittances) == {
        "total_claims": 4,
        "auto_matched": 1,
        "partial_matched": 1,
        "manual_review": 1,
        "unmatched_claims": 1,
        "orphan_remittances": 1,
    }
    assert outcome.summary() == summarize(outcome.results, outcome.orphan_remittances)
