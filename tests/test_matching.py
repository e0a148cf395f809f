from __future__ import annotations

import unittest
from datetime import date
from decimal import Decimal

from claimrecon.errors import NotFoundError
from claimrecon.matching import MatchContext, rank_candidates
from claimrecon.models import Claim, ClaimStatus
from recon_fixtures import ReconTestCase


def make_claim(claim_id: str, outstanding: str, service_date: date, payer_id: str = "payer-x") -> Claim:
    return Claim(
        id=claim_id,
        claim_number=claim_id.upper(),
        payer_id=payer_id,
        program_id=None,
        service_date=service_date,
        total_amount=Decimal(outstanding),
        outstanding_amount=Decimal(outstanding),
        status=ClaimStatus.SUBMITTED,
    )


class RankCandidatesTests(unittest.TestCase):
    def setUp(self) -> None:
        self.ctx = MatchContext(
            payment_date=date(2024, 3, 15),
            unallocated=Decimal("500.00"),
            remittance_claim_ids={"c-remit"},
        )

    def test_scoring_components(self) -> None:
        candidates = [
            make_claim("c-remit", "500.00", date(2024, 3, 15)),
            make_claim("c-exact", "500.00", date(2024, 3, 15)),
            make_claim("c-near", "120.00", date(2024, 1, 30)),
            make_claim("c-old", "120.00", date(2023, 1, 1)),
        ]
        ranked = {m.claim_id: m for m in rank_candidates(candidates, self.ctx, payer_id="payer-x")}
        self.assertEqual(ranked["c-remit"].confidence, 100)
        self.assertEqual(ranked["c-exact"].confidence, 60)
        self.assertEqual(ranked["c-near"].confidence, 23)
        self.assertEqual(ranked["c-old"].confidence, 15)
        self.assertEqual(ranked["c-old"].reasons, ["same_payer"])
        self.assertEqual(ranked["c-remit"].amount, Decimal("500.00"))

    def test_ordering_is_confidence_then_claim_id(self) -> None:
        candidates = [
            make_claim("c-3", "10.00", date(2023, 1, 1)),
            make_claim("c-1", "10.00", date(2023, 1, 1)),
            make_claim("c-2", "500.00", date(2024, 3, 15)),
        ]
        ranked = rank_candidates(candidates, self.ctx, payer_id="payer-x")
        self.assertEqual([m.claim_id for m in ranked], ["c-2", "c-1", "c-3"])
        self.assertEqual(ranked, rank_candidates(list(reversed(candidates)), self.ctx, payer_id="payer-x"))

    def test_filters_other_payers_settled_claims_and_threshold(self) -> None:
        candidates = [
            make_claim("c-other", "500.00", date(2024, 3, 15), payer_id="payer-y"),
            make_claim("c-settled", "0.00", date(2024, 3, 15)),
            make_claim("c-low", "10.00", date(2023, 1, 1)),
            make_claim("c-high", "500.00", date(2024, 3, 15)),
        ]
        ranked = rank_candidates(candidates, self.ctx, payer_id="payer-x", min_confidence=50)
        self.assertEqual([m.claim_id for m in ranked], ["c-high"])


class ClaimMatcherTests(ReconTestCase):
    def test_suggestions_exclude_allocated_claims_and_are_stable(self) -> None:
        self.add_claim("clm-a", "600.00", service_date=date(2024, 3, 10))
        self.add_claim("clm-b", "400.00", service_date=date(2024, 3, 10))
        self.add_claim("clm-y", "400.00", payer_id="payer-y")
        payment = self.add_payment("1000.00")
        self.service.reconcile_payment(payment.id, [self.alloc("clm-a", "600.00")])

        first = self.service.get_suggested_matches(payment.id)
        second = self.service.get_suggested_matches(payment.id)
        self.assertEqual(first["suggested_matches"], second["suggested_matches"])
        self.assertEqual([m.claim_id for m in first["suggested_matches"]], ["clm-b"])
        # Remaining 400.00 equals clm-b's balance.
        self.assertIn("exact_amount", first["suggested_matches"][0].reasons)

    def test_unknown_payment(self) -> None:
        with self.assertRaises(NotFoundError):
            self.service.get_suggested_matches("pay-missing")


if __name__ == "__main__":
    unittest.main()
