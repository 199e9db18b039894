"""Match insurer remittance lines against submitted claim rows.

Invoice numbers are tried first. Rows without a usable invoice fall back to a
composite key of member number, service date and amount in cents, where the
remittance side tolerates a difference of up to two currency units.
"""

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional, Sequence

AMOUNT_TOLERANCE_CENTS = (0, 100, -100, 200, -200)


class MatchType(str, Enum):
    exact = "exact"
    partial = "partial"
    none = "none"


class MatchStatus(str, Enum):
    awaiting_remittance = "awaiting_remittance"
    paid = "paid"
    partially_paid = "partially_paid"
    manual_review = "manual_review"


class MatchMethod(str, Enum):
    invoice = "invoice"
    date_amount = "date_amount"


@dataclass(frozen=True)
class ClaimRow:
    member_number: str
    billed_amount_cents: int
    service_date: Optional[date] = None
    invoice_number: Optional[str] = None
    patient_name: Optional[str] = None


@dataclass(frozen=True)
class RemittanceRow:
    member_number: str
    claim_amount_cents: int
    paid_amount_cents: int
    service_date: Optional[date] = None
    bill_no: Optional[str] = None
    patient_name: Optional[str] = None


@dataclass(frozen=True)
class MatchResult:
    claim_index: int
    remittance_index: Optional[int]
    match_type: MatchType
    status: MatchStatus
    amount_paid_cents: int
    match_method: Optional[MatchMethod] = None


@dataclass(frozen=True)
class ReconciliationOutcome:
    results: list[MatchResult]
    orphan_remittances: list[int]

    def summary(self) -> dict[str, int]:
        return summarize(self.results, self.orphan_remittances)


def normalize_member(member_number: str) -> str:
    return "".join(member_number.split()).upper()


def normalize_invoice(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    clean = "".join(value.split()).upper()
    return clean or None


def claim_key(member_number: str, service_date: date, amount_cents: int) -> str:
    return "|".join(
        [normalize_member(member_number), service_date.isoformat(), str(amount_cents)]
    )


def remittance_key_variants(
    member_number: str, service_date: date, amount_cents: int
) -> list[str]:
    return [
        claim_key(member_number, service_date, amount_cents + delta)
        for delta in AMOUNT_TOLERANCE_CENTS
    ]


def classify_payment(
    billed_cents: int, paid_cents: int
) -> tuple[MatchType, MatchStatus]:
    if paid_cents == billed_cents:
        return MatchType.exact, MatchStatus.paid
    if paid_cents > billed_cents:
        return MatchType.partial, MatchStatus.paid
    if paid_cents > 0:
        return MatchType.partial, MatchStatus.partially_paid
    return MatchType.partial, MatchStatus.manual_review


def _first_unmatched(
    candidates: Optional[list[int]], matched: dict[int, MatchResult]
) -> Optional[int]:
    for idx in candidates or ():
        if idx not in matched:
            return idx
    return None


def match_claims(
    claims: Sequence[ClaimRow], remittances: Sequence[RemittanceRow]
) -> ReconciliationOutcome:
    by_invoice: dict[str, list[int]] = {}
    by_key: dict[str, list[int]] = {}
    for idx, claim in enumerate(claims):
        invoice = normalize_invoice(claim.invoice_number)
        if invoice:
            by_invoice.setdefault(invoice, []).append(idx)
        if claim.service_date is not None:
            key = claim_key(
                claim.member_number, claim.service_date, claim.billed_amount_cents
            )
            by_key.setdefault(key, []).append(idx)

    matched: dict[int, MatchResult] = {}
    orphans: list[int] = []
    for rem_idx, rem in enumerate(remittances):
        claim_idx: Optional[int] = None
        method: Optional[MatchMethod] = None

        bill_no = normalize_invoice(rem.bill_no)
        if bill_no is not None:
            claim_idx = _first_unmatched(by_invoice.get(bill_no), matched)
            if claim_idx is not None:
                method = MatchMethod.invoice

        if claim_idx is None and rem.service_date is not None:
            for key in remittance_key_variants(
                rem.member_number, rem.service_date, rem.claim_amount_cents
            ):
                claim_idx = _first_unmatched(by_key.get(key), matched)
                if claim_idx is not None:
                    method = MatchMethod.date_amount
                    break

        if claim_idx is None:
            orphans.append(rem_idx)
            continue

        match_type, status = classify_payment(
            claims[claim_idx].billed_amount_cents, rem.paid_amount_cents
        )
        matched[claim_idx] = MatchResult(
            claim_index=claim_idx,
            remittance_index=rem_idx,
            match_type=match_type,
            status=status,
            amount_paid_cents=rem.paid_amount_cents,
            match_method=method,
        )

    results: list[MatchResult] = []
    for idx in range(len(claims)):
        if idx in matched:
            results.append(matched[idx])
        else:
            results.append(
                MatchResult(
                    claim_index=idx,
                    remittance_index=None,
                    match_type=MatchType.none,
                    status=MatchStatus.awaiting_remittance,
                    amount_paid_cents=0,
                )
            )
    return ReconciliationOutcome(results=results, orphan_remittances=orphans)


def summarize(
    results: Sequence[MatchResult], orphan_remittances: Sequence[int] = ()
) -> dict[str, int]:
    return {
        "total_claims": len(results),
        "auto_matched": sum(1 for r in results if r.match_type == MatchType.exact),
        "partial_matched": sum(
            1
            for r in results
            if r.match_type == MatchType.partial
            and r.status != MatchStatus.manual_review
        ),
        "manual_review": sum(
            1 for r in results if r.status == MatchStatus.manual_review
        ),
        "unmatched_claims": sum(1 for r in results if r.remittance_index is None),
        "orphan_remittances": len(orphan_remittances),
    }
