#!/usr/bin/env python3
"""Seed a demo claims database and write sample remittance files.

Creates:
- <db>: payers, programs and submitted claims with service dates spread over ~150 days
- data/remittances/<payer>-835.txt: an EDI 835 paying part of the first payer's claims
- data/remittances/<payer>-remit.csv: a CSV remittance for the second payer
"""

from __future__ import annotations

import argparse
import csv
import random
import sys
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from claimrecon import persistence
from claimrecon.collaborators import LocalClaimsService, LocalPayerRegistry
from claimrecon.models import Claim, Payer

PAYERS = [
    Payer(id="payer-bcbs", name="Blue Cross Blue Shield", payer_identifier="00390"),
    Payer(id="payer-aetna", name="Aetna", payer_identifier="60054"),
    Payer(id="payer-medicaid", name="State Medicaid", payer_identifier="SKMD0"),
]
PROGRAMS = {
    "prog-bh": "Behavioral Health",
    "prog-pc": "Primary Care",
    "prog-dental": "Dental",
}
ADJUSTMENT_REASONS = ["45", "1", "2", "3"]


def cents(rng: random.Random, low: int, high: int) -> Decimal:
    return Decimal(rng.randint(low * 100, high * 100)) / 100


def seed_claims(db_path: Path, rng: random.Random, claims_per_payer: int) -> list[Claim]:
    persistence.init_db(db_path)
    payers = LocalPayerRegistry(db_path)
    claims = LocalClaimsService(db_path)
    for payer in PAYERS:
        payers.register(payer)
    for program_id, name in PROGRAMS.items():
        persistence.upsert_program(db_path, program_id, name)

    today = date.today()
    created: list[Claim] = []
    for p_idx, payer in enumerate(PAYERS):
        for i in range(1, claims_per_payer + 1):
            service_date = today - timedelta(days=rng.randint(0, 150))
            created.append(
                claims.register_claim(
                    claim_number=f"CLM-{p_idx + 1}{i:04d}",
                    claim_id=f"clm-{p_idx + 1}{i:04d}",
                    payer_id=payer.id,
                    program_id=rng.choice(list(PROGRAMS)),
                    service_date=service_date,
                    submission_date=service_date + timedelta(days=rng.randint(1, 10)),
                    total_amount=cents(rng, 80, 2500),
                )
            )
    return created


def edi_835(payer: Payer, claims: list[Claim], rng: random.Random, trace: str) -> str:
    today = date.today()
    segments = [
        "ISA*00*          *00*          *ZZ*SENDER         *ZZ*RECEIVER       "
        f"*{today:%y%m%d}*1200*^*00501*000000001*0*P*:",
        f"GS*HP*SENDER*RECEIVER*{today:%Y%m%d}*1200*1*X*005010X221A1",
        "ST*835*0001",
    ]
    body: list[str] = []
    total = Decimal("0.00")
    for claim in claims:
        paid = (claim.total_amount * Decimal(rng.choice(["1", "0.8", "0.65"]))).quantize(Decimal("0.01"))
        adjustment = claim.total_amount - paid
        total += paid
        body.append(f"CLP*{claim.claim_number}*1*{claim.total_amount}*{paid}**MC*{claim.id.upper()}")
        if adjustment:
            body.append(f"CAS*CO*{rng.choice(ADJUSTMENT_REASONS)}*{adjustment}")
        body.append(f"DTM*472*{claim.service_date:%Y%m%d}")
    segments += [
        f"BPR*I*{total}*C*ACH*CCP*01*999999999*DA*123456*1512345678**01*999988880*DA*98765*{today:%Y%m%d}",
        f"TRN*1*{trace}*1{payer.payer_identifier}",
        f"DTM*405*{today:%Y%m%d}",
        f"N1*PR*{payer.name}*XV*{payer.payer_identifier}",
        *body,
        f"SE*{len(body) + 6}*0001",
        "GE*1*1",
        "IEA*1*000000001",
    ]
    return "~\n".join(segments) + "~\n"


def write_csv_remittance(path: Path, claims: list[Claim], rng: random.Random, remittance_number: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(
            f,
            fieldnames=["remittance_number", "remittance_date", "claim_number", "service_date",
                        "billed_amount", "paid_amount", "adjustment_codes"],
        )
        writer.writeheader()
        for claim in claims:
            paid = (claim.total_amount * Decimal(rng.choice(["1", "0.9"]))).quantize(Decimal("0.01"))
            writer.writerow(
                {
                    "remittance_number": remittance_number,
                    "remittance_date": date.today().isoformat(),
                    "claim_number": claim.claim_number,
                    "service_date": claim.service_date.isoformat(),
                    "billed_amount": str(claim.total_amount),
                    "paid_amount": str(paid),
                    "adjustment_codes": "" if paid == claim.total_amount else "CO-45",
                }
            )


def generate(args: argparse.Namespace) -> None:
    rng = random.Random(args.seed)
    claims = seed_claims(args.db, rng, args.claims_per_payer)
    remit_dir = args.output / "remittances"
    remit_dir.mkdir(parents=True, exist_ok=True)

    first, second = PAYERS[0], PAYERS[1]
    first_claims = [c for c in claims if c.payer_id == first.id][: args.claims_per_payer // 2]
    second_claims = [c for c in claims if c.payer_id == second.id][: args.claims_per_payer // 3]

    edi_path = remit_dir / f"{first.id}-835.txt"
    edi_path.write_text(edi_835(first, first_claims, rng, trace=f"EFT{args.seed:06d}"), encoding="utf-8")
    csv_path = remit_dir / f"{second.id}-remit.csv"
    write_csv_remittance(csv_path, second_claims, rng, remittance_number=f"RA-{args.seed:06d}")

    print(f"Seeded {len(PAYERS)} payers and {len(claims)} claims into {args.db}")
    print(f"  EDI 835: {edi_path} ({len(first_claims)} claims)")
    print(f"  CSV:     {csv_path} ({len(second_claims)} claims)")


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Generate demo claims and remittance files.")
    p.add_argument("--seed", type=int, default=42)
    p.add_argument("--claims-per-payer", type=int, default=24)
    p.add_argument("--db", type=Path, default=Path("data/claimrecon.db"))
    p.add_argument("--output", type=Path, default=Path("data"))
    return p.parse_args()


if __name__ == "__main__":
    generate(parse_args())
