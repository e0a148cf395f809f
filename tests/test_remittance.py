from __future__ import annotations

import unittest
from datetime import date
from decimal import Decimal

from claimrecon import persistence
from claimrecon.errors import DuplicateImportError, NotFoundError, ParsingError, PaymentLockedError, ValidationError
from claimrecon.models import PaymentMethod, ReconciliationStatus, RemittanceFileType
from claimrecon.remittance import ParsedLine, ParsedRemittance, RemittanceHeader, parse_edi_835
from recon_fixtures import ReconTestCase

EDI_835 = "~\n".join(
    [
        "ST*835*0001",
        "BPR*I*1150.00*C*ACH*CCP*01*999999999*DA*123456*1512345678**01*999988880*DA*98765*20240315",
        "TRN*1*EFT0001234*1512345678",
        "DTM*405*20240314",
        "N1*PR*PAYER X HEALTH*XV*PX001",
        "CLP*CLM-A*1*700.00*600.00**MC*A1",
        "CAS*CO*45*100.00",
        "DTM*472*20240301",
        "CLP*CLM-B*1*400.00*350.00**MC*B1",
        "CAS*PR*1*30.00*1*2*20.00",
        "DTM*472*20240302",
        "CLP*CLM-ZZZ*1*250.00*200.00**MC*Z1",
        "SE*12*0001",
    ]
) + "~"

CSV_REMIT = """Claim No,Date of Service,Billed,Paid,Adj Codes,Remittance Number,Remit Date
CLM-A,2024-03-01,700.00,600.00,CO-45,RA-77,2024-03-20
CLM-B,03/02/2024,400.00,400.00,,RA-77,2024-03-20
CLM-C,2024-03-05,90.00,not-a-number,,RA-77,2024-03-20
"""


class EdiParserTests(unittest.TestCase):
    def test_header_and_claim_lines(self) -> None:
        parsed = parse_edi_835(EDI_835)
        self.assertEqual(parsed.errors, [])
        header = parsed.header
        self.assertEqual(header.remittance_number, "EFT0001234")
        self.assertEqual(header.payment_method, PaymentMethod.EFT)
        self.assertEqual(header.payment_date, date(2024, 3, 15))
        self.assertEqual(header.remittance_date, date(2024, 3, 14))
        self.assertEqual(header.payer_name, "PAYER X HEALTH")
        self.assertEqual(header.payer_identifier, "PX001")
        self.assertEqual(header.declared_total, Decimal("1150.00"))

        self.assertEqual([line.claim_number for line in parsed.lines], ["CLM-A", "CLM-B", "CLM-ZZZ"])
        second = parsed.lines[1]
        self.assertEqual(second.adjustment_amount, Decimal("50.00"))
        self.assertEqual(sorted(second.adjustment_codes), ["PR-1", "PR-2"])
        self.assertEqual(second.service_date, date(2024, 3, 2))
        # No CAS segment: adjustment falls back to billed minus paid.
        self.assertEqual(parsed.lines[2].adjustment_amount, Decimal("50.00"))

    def test_bad_segment_is_reported_and_skipped(self) -> None:
        text = EDI_835.replace("CLP*CLM-B*1*400.00*350.00", "CLP*CLM-B*1*400.00*abc")
        parsed = parse_edi_835(text)
        self.assertEqual([line.claim_number for line in parsed.lines], ["CLM-A", "CLM-ZZZ"])
        self.assertEqual(len(parsed.errors), 1)
        self.assertTrue(parsed.errors[0]["message"].startswith("CLP"))

    def test_service_date_from_svc_when_no_dtm(self) -> None:
        text = EDI_835.replace(
            "CLP*CLM-ZZZ*1*250.00*200.00**MC*Z1",
            "CLP*CLM-ZZZ*1*250.00*200.00**MC*Z1~\nSVC*HC:99213*250.00*200.00**20240305",
        ).replace(
            "DTM*472*20240302",
            "SVC*HC:99214*400.00*350.00**20240309~\nDTM*472*20240302",
        )
        parsed = parse_edi_835(text)
        self.assertEqual(parsed.errors, [])
        self.assertEqual(parsed.lines[2].service_date, date(2024, 3, 5))
        # An explicit DTM*472 overrides the SVC date.
        self.assertEqual(parsed.lines[1].service_date, date(2024, 3, 2))

    def test_missing_trace_has_no_header(self) -> None:
        parsed = parse_edi_835(EDI_835.replace("TRN*1*EFT0001234*1512345678~\n", ""))
        self.assertIsNone(parsed.header)


class ImportRemittanceTests(ReconTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.add_claim("clm-a", "700.00")
        self.add_claim("clm-b", "400.00")

    def test_edi_import_resolves_claims_and_creates_payment(self) -> None:
        progress: list[int] = []
        result = self.service.import_remittance(
            "payer-x", "edi_835", EDI_835.encode("utf-8"), filename="era.835", progress=progress.append
        )
        self.assertEqual(result.details_processed, 3)
        self.assertEqual(result.claims_matched, 2)
        self.assertEqual(result.claims_unmatched, 1)
        self.assertEqual(result.total_amount, Decimal("1150.00"))
        self.assertEqual(result.matched_amount, Decimal("950.00"))
        self.assertEqual(result.unmatched_amount, Decimal("200.00"))

        payment = result.payment
        self.assertEqual(payment.payment_amount, Decimal("1150.00"))
        self.assertEqual(payment.reconciliation_status, ReconciliationStatus.UNRECONCILED)
        self.assertEqual(payment.remittance_id, result.remittance_info.id)
        self.assertEqual(result.remittance_info.claim_count, 3)
        self.assertEqual(result.remittance_info.file_type, RemittanceFileType.EDI_835)
        self.assertEqual(progress[0], 0)
        self.assertEqual(progress[-1], 100)
        self.assertEqual(progress, sorted(progress))

        stored = persistence.list_remittance_details(self.db, result.remittance_info.id)
        self.assertEqual([d.claim_id for d in stored], ["clm-a", "clm-b", None])

        # Remittance-backed payments rank their named claims first.
        matches = self.service.get_suggested_matches(payment.id)["suggested_matches"]
        self.assertEqual({m.claim_id for m in matches[:2]}, {"clm-a", "clm-b"})
        self.assertIn("remittance_detail", matches[0].reasons)

    def test_reimport_is_rejected(self) -> None:
        self.service.import_remittance("payer-x", "edi_835", EDI_835)
        with self.assertRaises(DuplicateImportError):
            self.service.import_remittance("payer-x", "edi_835", EDI_835)
        self.assertEqual(len(self.service.list_payments(payer_id="payer-x")), 1)

    def test_remittance_payment_cannot_be_deleted(self) -> None:
        result = self.service.import_remittance("payer-x", "edi_835", EDI_835)
        with self.assertRaises(PaymentLockedError):
            self.service.delete_payment(result.payment.id)

    def test_claim_of_another_payer_stays_unmatched(self) -> None:
        self.add_claim("clm-zzz", "250.00", payer_id="payer-y")
        result = self.service.import_remittance("payer-x", "edi_835", EDI_835)
        self.assertEqual(result.claims_unmatched, 1)
        self.assertTrue(any("another payer" in e["message"] for e in result.errors))

    def test_csv_import_reports_bad_lines(self) -> None:
        result = self.service.import_remittance("payer-x", "csv", CSV_REMIT, filename="remit.csv")
        self.assertEqual(result.details_processed, 2)
        self.assertEqual(result.claims_matched, 2)
        self.assertEqual(result.total_amount, Decimal("1000.00"))
        self.assertEqual(result.remittance_info.remittance_number, "RA-77")
        self.assertEqual(result.errors[0]["line"], 4)
        self.assertEqual(result.details[0].adjustment_codes["CO-45"], "Charge exceeds fee schedule/maximum allowable")
        self.assertEqual(result.details[1].service_date, date(2024, 3, 2))

    def test_custom_mapping(self) -> None:
        text = "ref|amt|svc\nCLM-A|125.50|20240301\n"
        mapping = {"claim_number": "ref", "paid_amount": "amt", "service_date": "svc", "delimiter": "|"}
        result = self.service.import_remittance("payer-x", "custom", text, mapping_config=mapping)
        self.assertEqual(result.total_amount, Decimal("125.50"))
        self.assertEqual(result.claims_matched, 1)

        with self.assertRaises(ValidationError):
            self.service.import_remittance("payer-x", "custom", text)
        with self.assertRaises(ValidationError):
            self.service.import_remittance("payer-x", "custom", text, mapping_config={"claim_number": "ref"})

    def test_unparseable_file_commits_nothing(self) -> None:
        with self.assertRaises(ParsingError) as ctx:
            self.service.import_remittance("payer-x", "csv", "claim_number,paid_amount\nCLM-A,abc\n")
        self.assertEqual(ctx.exception.errors[0]["line"], 2)
        self.assertEqual(self.service.list_payments(), [])

    def test_negative_net_payment_is_rejected(self) -> None:
        text = "claim_number,paid_amount,remittance_number\nCLM-A,-50.00,RA-REV\n"
        with self.assertRaises(ParsingError) as ctx:
            self.service.import_remittance("payer-x", "csv", text)
        self.assertIn("negative", ctx.exception.errors[-1]["message"])
        self.assertEqual(self.service.list_payments(), [])
        self.assertFalse(persistence.remittance_exists(self.db, "payer-x", "RA-REV"))

        # A reversal offset by other lines still imports.
        mixed = "claim_number,paid_amount,remittance_number\nCLM-A,-50.00,RA-MIX\nCLM-B,80.00,RA-MIX\n"
        result = self.service.import_remittance("payer-x", "csv", mixed)
        self.assertEqual(result.payment.payment_amount, Decimal("30.00"))

    def test_input_validation(self) -> None:
        with self.assertRaises(NotFoundError):
            self.service.import_remittance("payer-missing", "edi_835", EDI_835)
        with self.assertRaises(ValidationError):
            self.service.import_remittance("payer-x", "pdf", b"%PDF-1.4")
        with self.assertRaises(ValidationError):
            self.service.import_remittance("payer-x", "xml", EDI_835)

    def test_registered_parser_handles_new_file_type(self) -> None:
        def excel_parser(text: str, mapping: dict[str, str] | None) -> ParsedRemittance:
            return ParsedRemittance(
                header=RemittanceHeader(remittance_number="XL-1"),
                lines=[
                    ParsedLine(
                        line=1,
                        claim_number="CLM-B",
                        service_date=None,
                        billed_amount=Decimal("400.00"),
                        paid_amount=Decimal("400.00"),
                        adjustment_amount=Decimal("0.00"),
                    )
                ],
            )

        self.service.ingestor.register_parser(RemittanceFileType.EXCEL, excel_parser)
        result = self.service.import_remittance("payer-x", "excel", b"binary-ish")
        self.assertEqual(result.remittance_info.remittance_number, "XL-1")
        self.assertEqual(result.claims_matched, 1)


if __name__ == "__main__":
    unittest.main()
