"""
Tests for the verification orchestrator and the on-site code gate.
"""

import unittest

from visitproof.geo import Coordinates
from visitproof.receipt import ReceiptFailure, ReceiptOutcome, ReceiptVerificationResult
from visitproof.replay import InMemoryUsedTokenStore, KeyValueUsedTokenStore, ReplayGuard
from visitproof.totp import generate_totp
from visitproof.verification import (
    PASS_THRESHOLD,
    GpsData,
    OnSiteCodeGate,
    QrData,
    ReceiptData,
    VerificationOrchestrator,
    VerificationRequest,
    method_status,
    score_qr,
    verification_summary,
)

from tests.helpers import FakeClock, FakeKeyValueClient, StubReceiptScorer

POPUP = Coordinates(37.5665, 126.978)
SECRET = "venue-secret-for-store-001"
T0 = 1_700_000_010.0

VERIFIED = ReceiptOutcome(result=ReceiptVerificationResult(True, 20, True, True, "ACME"))
DOWN = ReceiptOutcome.failed(ReceiptFailure.CIRCUIT_OPEN, "circuit open")


def request(gps=False, qr=None, receipt=False):
    return VerificationRequest(
        popup_id="store-001",
        user_id="user-1",
        popup_location=POPUP,
        brand_name="Acme",
        gps_data=GpsData(user_location=POPUP) if gps else None,
        qr_data=qr,
        receipt_data=ReceiptData("aGVsbG8=", "2024-05-01") if receipt else None,
    )


class TestOrchestrator(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock(T0)
        self.receipts = StubReceiptScorer(VERIFIED)
        self.orchestrator = VerificationOrchestrator(self.receipts, clock=self.clock)
        self.valid_qr = QrData(input_code="123456", valid_code="123456", generated_at=T0)

    async def test_gps_only_fails(self):
        result = await self.orchestrator.verify(request(gps=True))
        self.assertEqual(result.total_score, 40)
        self.assertFalse(result.passed)
        self.assertEqual(result.methods, ("gps",))

    async def test_gps_and_qr_pass(self):
        result = await self.orchestrator.verify(request(gps=True, qr=self.valid_qr))
        self.assertEqual(result.total_score, 80)
        self.assertTrue(result.passed)
        self.assertEqual(result.methods, ("gps", "qr"))

    async def test_qr_and_receipt_pass_at_threshold(self):
        result = await self.orchestrator.verify(request(qr=self.valid_qr, receipt=True))
        self.assertEqual(result.total_score, PASS_THRESHOLD)
        self.assertTrue(result.passed)
        self.assertEqual(result.methods, ("qr", "receipt"))

    async def test_all_signals(self):
        result = await self.orchestrator.verify(request(gps=True, qr=self.valid_qr, receipt=True))
        self.assertEqual(result.total_score, 100)
        self.assertEqual(result.methods, ("gps", "qr", "receipt"))
        self.assertEqual(self.receipts.calls, [("aGVsbG8=", "Acme", "2024-05-01", "store-001")])

    async def test_no_signals_is_a_valid_failing_result(self):
        result = await self.orchestrator.verify(request())
        self.assertEqual(result.total_score, 0)
        self.assertFalse(result.passed)
        self.assertEqual(result.methods, ())
        self.assertIsNone(result.gps)
        self.assertIsNone(result.qr)
        self.assertIsNone(result.receipt)

    async def test_receipt_outage_degrades_to_zero(self):
        orchestrator = VerificationOrchestrator(StubReceiptScorer(DOWN), clock=self.clock)
        result = await orchestrator.verify(request(gps=True, qr=self.valid_qr, receipt=True))

        self.assertEqual(result.total_score, 80)
        self.assertTrue(result.passed)
        self.assertFalse(result.receipt.verified)
        self.assertIn("receipt", result.methods)

    async def test_receipt_score_is_capped(self):
        generous = ReceiptOutcome(result=ReceiptVerificationResult(True, 55, True, True))
        orchestrator = VerificationOrchestrator(StubReceiptScorer(generous), clock=self.clock)
        result = await orchestrator.verify(request(receipt=True))
        self.assertEqual(result.total_score, 20)
        self.assertEqual(result.receipt.score, 20)
        self.assertEqual(result.to_dict()["receipt"]["score"], 20)
        self.assertEqual(method_status("receipt", result).score, 20)
        self.assertTrue(result.receipt.brand_matched)

    async def test_missing_receipt_scorer(self):
        result = await VerificationOrchestrator(clock=self.clock).verify(request(receipt=True))
        self.assertEqual(result.total_score, 0)
        self.assertEqual(result.receipt, ReceiptVerificationResult.not_verified())

    async def test_result_serialization(self):
        result = await self.orchestrator.verify(request(gps=True, qr=self.valid_qr))
        data = result.to_dict()
        self.assertEqual(data["methods"], ["gps", "qr"])
        self.assertTrue(data["verified_at"].endswith("Z"))
        self.assertIsNone(data["receipt"])
        self.assertEqual(data["qr"]["score"], 40)

    async def test_result_is_immutable(self):
        result = await self.orchestrator.verify(request(gps=True))
        with self.assertRaises(AttributeError):
            result.total_score = 100


class TestQrScoring(unittest.TestCase):

    def test_match(self):
        result = score_qr(QrData("123456", "123456", T0), T0 + 10)
        self.assertTrue(result.matched)
        self.assertEqual(result.score, 40)
        self.assertFalse(result.expired)
        self.assertEqual(result.remaining_seconds, 50)

    def test_mismatch(self):
        result = score_qr(QrData("123456", "654321", T0), T0)
        self.assertFalse(result.matched)
        self.assertEqual(result.score, 0)

    def test_missing_valid_code_never_matches(self):
        self.assertEqual(score_qr(QrData("123456", None, T0), T0).score, 0)

    def test_expired_after_two_windows(self):
        self.assertFalse(score_qr(QrData("123456", "123456", T0), T0 + 60).expired)

        result = score_qr(QrData("123456", "123456", T0), T0 + 61)
        self.assertTrue(result.expired)
        self.assertFalse(result.matched)
        self.assertEqual(result.score, 0)


class TestOnSiteCodeGate(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock(T0 + 5)
        self.gate = OnSiteCodeGate(ReplayGuard(InMemoryUsedTokenStore(clock=self.clock)), clock=self.clock)
        self.code = generate_totp(SECRET, T0)

    async def test_first_use_is_scoreable(self):
        qr = await self.gate.check(self.code, SECRET, "store-001", "user-1")
        self.assertEqual(qr.valid_code, self.code)
        self.assertEqual(qr.generated_at, T0)
        self.assertEqual(score_qr(qr, self.clock()).score, 40)

    async def test_replay_scores_like_wrong_code(self):
        await self.gate.check(self.code, SECRET, "store-001", "user-1")
        replay = await self.gate.check(self.code, SECRET, "store-001", "user-1")
        wrong = await self.gate.check("000000" if self.code != "000000" else "111111",
                                      SECRET, "store-001", "user-1")

        self.assertIsNone(replay.valid_code)
        self.assertEqual(score_qr(replay, self.clock()), score_qr(wrong, self.clock()))

    async def test_replay_is_audit_logged(self):
        await self.gate.check(self.code, SECRET, "store-001", "user-1")
        with self.assertLogs("visitproof.audit", level="WARNING") as logs:
            await self.gate.check(self.code, SECRET, "store-001", "user-1")
        self.assertTrue(any("REPLAY_DETECTED" in line for line in logs.output))

    async def test_other_user_may_use_same_code(self):
        await self.gate.check(self.code, SECRET, "store-001", "user-1")
        qr = await self.gate.check(self.code, SECRET, "store-001", "user-2")
        self.assertEqual(qr.valid_code, self.code)

    async def test_previous_window_code(self):
        self.clock.advance(30)
        qr = await self.gate.check(self.code, SECRET, "store-001", "user-1")
        self.assertEqual(qr.valid_code, self.code)
        self.assertEqual(qr.generated_at, T0)
        self.assertEqual(score_qr(qr, self.clock()).score, 40)

    async def test_stale_code_rejected(self):
        self.clock.advance(60)
        qr = await self.gate.check(self.code, SECRET, "store-001", "user-1")
        self.assertIsNone(qr.valid_code)

    async def test_replay_store_outage_fails_closed(self):
        gate = OnSiteCodeGate(ReplayGuard(KeyValueUsedTokenStore(FakeKeyValueClient(fail=True))), clock=self.clock)
        qr = await gate.check(self.code, SECRET, "store-001", "user-1")
        self.assertIsNone(qr.valid_code)

    async def test_gate_feeds_orchestrator(self):
        orchestrator = VerificationOrchestrator(clock=self.clock)
        first = await orchestrator.verify(request(gps=True, qr=await self.gate.check(
            self.code, SECRET, "store-001", "user-1")))
        second = await orchestrator.verify(request(gps=True, qr=await self.gate.check(
            self.code, SECRET, "store-001", "user-1")))

        self.assertTrue(first.passed)
        self.assertEqual(second.total_score, 40)
        self.assertFalse(second.passed)


class TestPresentation(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        orchestrator = VerificationOrchestrator(StubReceiptScorer(VERIFIED), clock=FakeClock(T0))
        qr = QrData("123456", "123456", T0)
        self.full = await orchestrator.verify(request(gps=True, qr=qr))
        self.threshold = await orchestrator.verify(request(qr=qr, receipt=True))
        self.failing = await orchestrator.verify(request(gps=True))
        self.wrong_qr = await orchestrator.verify(request(qr=QrData("123456", None, T0)))

    def test_summary_badges(self):
        self.assertEqual(verification_summary(self.full).badge, "success")
        self.assertEqual(verification_summary(self.threshold).badge, "partial")
        self.assertEqual(verification_summary(self.failing).badge, "fail")
        self.assertIn("40", verification_summary(self.failing).message)

    def test_method_status(self):
        gps = method_status("gps", self.full)
        self.assertEqual((gps.score, gps.max_score, gps.status), (40, 40, "success"))
        self.assertEqual(method_status("receipt", self.full).status, "pending")
        self.assertEqual(method_status("receipt", self.threshold).max_score, 20)
        self.assertEqual(method_status("qr", self.wrong_qr).status, "fail")

    def test_unknown_method(self):
        with self.assertRaises(ValueError):
            method_status("fingerprint", self.full)


if __name__ == "__main__":
    unittest.main()
