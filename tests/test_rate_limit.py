"""
Tests for the window limiters and the outbound admission limiters.
"""

import asyncio
import unittest

from visitproof.rate_limit import (
    RATE_LIMITS,
    AdmissionLimiter,
    ConcurrencyGate,
    DistributedRateLimiter,
    InMemoryRateLimiter,
    build_rate_limiter,
    get_client_ip,
    rate_limiter_status,
    validate_production_rate_limiting,
)

from tests.helpers import FakeClock, FakeKeyValueClient, RecordingSleep


async def drain():
    for _ in range(5):
        await asyncio.sleep(0)


class TestPresets(unittest.TestCase):

    def test_preset_values(self):
        self.assertEqual((RATE_LIMITS["strict"].limit, RATE_LIMITS["strict"].window), (10, 60.0))
        self.assertEqual(RATE_LIMITS["normal"].limit, 60)
        self.assertEqual(RATE_LIMITS["relaxed"].limit, 120)


class TestInMemoryRateLimiter(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.limiter = InMemoryRateLimiter(max_entries=10, clock=self.clock)

    def test_limit_plus_one_is_rejected(self):
        results = [self.limiter.check("1.2.3.4", 3, 60) for _ in range(4)]

        self.assertEqual([r.success for r in results], [True, True, True, False])
        self.assertEqual([r.remaining for r in results], [2, 1, 0, 0])

    def test_rejection_does_not_increment(self):
        for _ in range(5):
            self.limiter.check("1.2.3.4", 2, 60)
        self.assertEqual(self.limiter._entries["1.2.3.4"].count, 2)

    def test_fresh_window_after_reset(self):
        for _ in range(3):
            self.limiter.check("1.2.3.4", 2, 60)
        rejected = self.limiter.check("1.2.3.4", 2, 60)
        self.assertFalse(rejected.success)

        self.clock.advance(rejected.reset_in)
        result = self.limiter.check("1.2.3.4", 2, 60)
        self.assertTrue(result.success)
        self.assertEqual(result.remaining, 1)
        self.assertEqual(result.reset_in, 60)

    def test_keys_are_independent(self):
        self.limiter.check("a", 1, 60)
        self.assertFalse(self.limiter.check("a", 1, 60).success)
        self.assertTrue(self.limiter.check("b", 1, 60).success)

    def test_reset_in_counts_down(self):
        self.limiter.check("a", 5, 60)
        self.clock.advance(15)
        self.assertAlmostEqual(self.limiter.check("a", 5, 60).reset_in, 45)

    def test_lru_eviction_keeps_recently_touched_keys(self):
        for i in range(10):
            self.limiter.check(f"k{i}", 5, 600)
        self.limiter.check("k0", 5, 600)

        self.limiter.check("k10", 5, 600)

        self.assertEqual(len(self.limiter), 10)
        self.assertIn("k0", self.limiter)
        self.assertNotIn("k1", self.limiter)
        self.assertIn("k10", self.limiter)

    def test_size_never_exceeds_max_entries(self):
        for i in range(100):
            self.limiter.check(f"flood-{i}", 5, 600)
        self.assertLessEqual(len(self.limiter), 10)

    def test_periodic_cleanup_removes_expired(self):
        self.limiter.check("a", 5, 10)
        self.limiter.check("b", 5, 600)
        self.clock.advance(61)
        self.limiter.check("c", 5, 600)

        self.assertNotIn("a", self.limiter)
        self.assertIn("b", self.limiter)

    def test_reset(self):
        self.limiter.check("a", 1, 60)
        self.limiter.reset("a")
        self.assertTrue(self.limiter.check("a", 1, 60).success)
        self.limiter.reset()
        self.assertEqual(len(self.limiter), 0)


class TestDistributedRateLimiter(unittest.IsolatedAsyncioTestCase):

    async def test_shared_counter_with_expiry(self):
        client = FakeKeyValueClient()
        limiter = DistributedRateLimiter(client)

        first = await limiter.check_limit("1.2.3.4", 2, 60)
        second = await limiter.check_limit("1.2.3.4", 2, 60)
        third = await limiter.check_limit("1.2.3.4", 2, 60)

        self.assertEqual((first.success, first.remaining, first.reset_in), (True, 1, 60.0))
        self.assertEqual((second.success, second.remaining), (True, 0))
        self.assertEqual((third.success, third.remaining, third.reset_in), (False, 0, 60.0))
        self.assertEqual(client.data["ratelimit:api:1.2.3.4"], "2")

        expires = [c for c in client.commands if c[0] == "EXPIRE"]
        self.assertEqual(expires, [("EXPIRE", "ratelimit:api:1.2.3.4", 60)])

    async def test_store_failure_falls_back_to_memory(self):
        fallback = InMemoryRateLimiter()
        limiter = DistributedRateLimiter(FakeKeyValueClient(fail=True), fallback=fallback)

        result = await limiter.check_limit("1.2.3.4", 1, 60)
        self.assertTrue(result.success)
        self.assertIn("1.2.3.4", fallback)

        self.assertFalse((await limiter.check_limit("1.2.3.4", 1, 60)).success)

    async def test_concurrent_checks_never_exceed_limit(self):
        client = FakeKeyValueClient(interleave=True)
        limiter = DistributedRateLimiter(client)

        results = await asyncio.gather(*(limiter.check_limit("1.2.3.4", 10, 60) for _ in range(11)))

        admitted = [r for r in results if r.success]
        rejected = [r for r in results if not r.success]
        self.assertEqual(len(admitted), 10)
        self.assertEqual(len(rejected), 1)
        self.assertEqual(rejected[0].remaining, 0)
        self.assertEqual(client.data["ratelimit:api:1.2.3.4"], "11")
        self.assertEqual(client.ttls["ratelimit:api:1.2.3.4"], 60)

    async def test_lost_expiry_is_restored(self):
        client = FakeKeyValueClient(fail_once={"EXPIRE"})
        fallback = InMemoryRateLimiter()
        limiter = DistributedRateLimiter(client, fallback=fallback)

        with self.assertLogs("visitproof.rate_limit", level="ERROR"):
            first = await limiter.check_limit("1.2.3.4", 10, 60)
        self.assertTrue(first.success)
        self.assertIn("1.2.3.4", fallback)
        self.assertNotIn("ratelimit:api:1.2.3.4", client.ttls)

        second = await limiter.check_limit("1.2.3.4", 10, 60)
        self.assertEqual((second.success, second.remaining, second.reset_in), (True, 8, 60.0))
        self.assertEqual(client.ttls["ratelimit:api:1.2.3.4"], 60)

    async def test_counter_at_limit_without_expiry_gets_a_window(self):
        client = FakeKeyValueClient()
        client.data["ratelimit:api:1.2.3.4"] = "10"
        limiter = DistributedRateLimiter(client)

        result = await limiter.check_limit("1.2.3.4", 10, 60)
        self.assertEqual((result.success, result.reset_in), (False, 60.0))
        self.assertEqual(client.ttls["ratelimit:api:1.2.3.4"], 60)
        self.assertNotIn(("INCR", "ratelimit:api:1.2.3.4"), client.commands)


class TestFactoryAndStatus(unittest.TestCase):

    def test_build_without_store_is_in_memory(self):
        limiter = build_rate_limiter(None)
        self.assertIsInstance(limiter, InMemoryRateLimiter)
        self.assertEqual(rate_limiter_status(limiter), {"type": "memory", "configured": True})

    def test_build_with_store_is_distributed(self):
        limiter = build_rate_limiter(FakeKeyValueClient())
        self.assertIsInstance(limiter, DistributedRateLimiter)
        self.assertEqual(rate_limiter_status(limiter)["provider"], "upstash")

    def test_production_check(self):
        memory = InMemoryRateLimiter()
        dev = validate_production_rate_limiting(memory, production=False)
        self.assertTrue(dev["valid"])
        self.assertEqual(len(dev["warnings"]), 1)

        with self.assertLogs("visitproof.rate_limit", level="CRITICAL"):
            prod = validate_production_rate_limiting(memory, production=True)
        self.assertFalse(prod["valid"])
        self.assertEqual(len(prod["warnings"]), 2)

        distributed = DistributedRateLimiter(FakeKeyValueClient())
        self.assertEqual(validate_production_rate_limiting(distributed, production=True),
                         {"valid": True, "warnings": []})


class TestClientIp(unittest.TestCase):

    def test_forwarded_for_first_entry(self):
        headers = {"x-forwarded-for": "203.0.113.7, 10.0.0.1", "x-real-ip": "10.0.0.2"}
        self.assertEqual(get_client_ip(headers), "203.0.113.7")

    def test_priority_order(self):
        self.assertEqual(get_client_ip({"x-real-ip": "198.51.100.1", "cf-connecting-ip": "1.1.1.1"}),
                         "198.51.100.1")
        self.assertEqual(get_client_ip({"cf-connecting-ip": "1.1.1.1"}), "1.1.1.1")

    def test_unknown_sentinel(self):
        self.assertEqual(get_client_ip({}), "unknown")


class TestConcurrencyGate(unittest.IsolatedAsyncioTestCase):

    async def test_waiters_released_in_arrival_order(self):
        gate = ConcurrencyGate(max_concurrent=1)
        await gate.acquire()
        order = []

        async def waiter(i):
            await gate.acquire()
            order.append(i)

        tasks = [asyncio.create_task(waiter(i)) for i in range(3)]
        await drain()
        self.assertEqual(gate.waiting, 3)
        self.assertEqual(order, [])

        for expected in ([0], [0, 1], [0, 1, 2]):
            gate.release()
            await drain()
            self.assertEqual(order, expected)

        await asyncio.gather(*tasks)
        self.assertEqual(gate.active, 1)

    async def test_caps_in_flight_calls(self):
        gate = ConcurrencyGate(max_concurrent=2)
        in_flight = 0
        peak = 0

        async def work():
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return "done"

        results = await asyncio.gather(*(gate.run(work) for _ in range(6)))
        self.assertEqual(results, ["done"] * 6)
        self.assertEqual(peak, 2)
        self.assertEqual(gate.active, 0)

    async def test_cancelled_waiter_leaves_queue(self):
        gate = ConcurrencyGate(max_concurrent=1)
        await gate.acquire()

        task = asyncio.create_task(gate.acquire())
        await drain()
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        self.assertEqual(gate.waiting, 0)
        gate.release()
        self.assertEqual(gate.active, 0)

    async def test_context_manager_releases_on_error(self):
        gate = ConcurrencyGate(max_concurrent=1)
        with self.assertRaises(RuntimeError):
            async with gate:
                raise RuntimeError("boom")
        self.assertEqual(gate.active, 0)


class TestAdmissionLimiter(unittest.IsolatedAsyncioTestCase):

    async def test_waits_for_window_when_full(self):
        clock = FakeClock()
        sleep = RecordingSleep(clock)
        limiter = AdmissionLimiter(max_requests=2, window=60.0, max_concurrent=5, clock=clock, sleep=sleep)

        async def call():
            return "ok"

        for _ in range(3):
            self.assertEqual(await limiter.execute(call), "ok")

        self.assertEqual(sleep.delays, [60.0])
        status = limiter.status()
        self.assertEqual(status["current_requests"], 1)
        self.assertEqual(status["concurrent"], 0)

    async def test_slot_released_when_call_fails(self):
        limiter = AdmissionLimiter(max_requests=10, max_concurrent=1)

        async def failing():
            raise ConnectionError("down")

        with self.assertRaises(ConnectionError):
            await limiter.execute(failing)
        self.assertEqual(limiter.gate.active, 0)


if __name__ == "__main__":
    unittest.main()
