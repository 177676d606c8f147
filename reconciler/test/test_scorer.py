import unittest
from datetime import datetime, timedelta, timezone

from reconciler.config import MatchPolicy
from reconciler.scorer import (
    MatchScorer,
    amount_signal,
    amount_tolerance,
    identity_signal,
    time_signal,
)
from reconciler.types import CollectionRecord, PaymentEvent

T = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
PHONE_X = "+254712000001"


def make_event(amount_minor=150000, phone=PHONE_X, occurred_at=T) -> PaymentEvent:
    return PaymentEvent(
        tenant_id="tenant-1",
        external_reference="RKT001",
        amount_minor=amount_minor,
        payer_phone=phone,
        occurred_at=occurred_at,
    )


def make_collection(cid="c-1", amount_minor=150000, driver_id="driver-x", recorded_at=T) -> CollectionRecord:
    return CollectionRecord(
        id=cid,
        tenant_id="tenant-1",
        amount_minor=amount_minor,
        driver_id=driver_id,
        vehicle_id="KDA 123A",
        recorded_at=recorded_at,
    )


class CountingDirectory:
    def __init__(self, owners):
        self.owners = frozenset(owners)
        self.calls = 0

    async def drivers_for_phone(self, tenant_id, phone):
        self.calls += 1
        return self.owners if phone == PHONE_X else frozenset()


class SignalTest(unittest.TestCase):
    def setUp(self) -> None:
        self.policy = MatchPolicy()

    def test_tolerance_uses_floor_for_small_amounts(self) -> None:
        self.assertEqual(amount_tolerance(150000, self.policy), 10000)
        self.assertEqual(amount_tolerance(5_000_000, self.policy), 50000)

    def test_amount_signal_decays_linearly(self) -> None:
        self.assertEqual(amount_signal(150000, 150000, self.policy), 1.0)
        self.assertAlmostEqual(amount_signal(150000, 149000, self.policy), 0.9)
        self.assertAlmostEqual(amount_signal(150000, 155000, self.policy), 0.5)
        self.assertEqual(amount_signal(150000, 140000, self.policy), 0.0)
        self.assertEqual(amount_signal(150000, 90000, self.policy), 0.0)

    def test_identity_signal(self) -> None:
        self.assertEqual(identity_signal("driver-x", frozenset({"driver-x"})), 1.0)
        self.assertEqual(identity_signal("driver-y", frozenset({"driver-x"})), 0.0)
        self.assertEqual(identity_signal("driver-x", frozenset()), 0.5)
        self.assertEqual(identity_signal("driver-x", None), 0.5)

    def test_time_signal_uses_window_on_each_side(self) -> None:
        self.assertEqual(time_signal(timedelta(0), self.policy), 1.0)
        self.assertAlmostEqual(time_signal(timedelta(minutes=-60), self.policy), 0.5)
        self.assertAlmostEqual(time_signal(timedelta(minutes=15), self.policy), 0.5)
        self.assertEqual(time_signal(timedelta(minutes=30), self.policy), 0.0)
        self.assertEqual(time_signal(timedelta(minutes=-120), self.policy), 0.0)
        self.assertEqual(time_signal(timedelta(minutes=-500), self.policy), 0.0)

    def test_time_signal_with_zero_window(self) -> None:
        policy = MatchPolicy(window_after_minutes=0)
        self.assertEqual(time_signal(timedelta(minutes=1), policy), 0.0)
        self.assertEqual(time_signal(timedelta(0), policy), 1.0)


class MatchScorerTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.policy = MatchPolicy()

    def test_exact_payment_from_driver_scores_high(self) -> None:
        scorer = MatchScorer(CountingDirectory({"driver-x"}), lookup_timeout_seconds=1)
        result = scorer.score(
            make_event(),
            make_collection(recorded_at=T - timedelta(minutes=5)),
            self.policy,
            frozenset({"driver-x"}),
        )
        self.assertGreaterEqual(result.value, 0.9)
        self.assertAlmostEqual(result.value, 0.99375)
        self.assertEqual(result.breakdown["amount"], 1.0)
        self.assertEqual(result.breakdown["identity"], 1.0)

    def test_score_is_deterministic(self) -> None:
        scorer = MatchScorer(CountingDirectory({"driver-x"}), lookup_timeout_seconds=1)
        event = make_event(amount_minor=150700)
        candidate = make_collection(recorded_at=T - timedelta(minutes=47))
        first = scorer.score(event, candidate, self.policy, frozenset({"driver-x"}))
        second = scorer.score(event, candidate, self.policy, frozenset({"driver-x"}))
        self.assertEqual(first, second)

    async def test_score_all_resolves_phone_once(self) -> None:
        directory = CountingDirectory({"driver-x"})
        scorer = MatchScorer(directory, lookup_timeout_seconds=1)
        results = await scorer.score_all(
            make_event(),
            [make_collection("c-1", driver_id="driver-x"), make_collection("c-2", driver_id="driver-y")],
            self.policy,
        )
        self.assertEqual(directory.calls, 1)
        by_id = {r.collection_id: r for r in results}
        self.assertEqual(by_id["c-1"].breakdown["identity"], 1.0)
        self.assertEqual(by_id["c-2"].breakdown["identity"], 0.0)
        self.assertGreater(by_id["c-1"].value, by_id["c-2"].value)

    async def test_score_all_without_candidates_skips_lookup(self) -> None:
        directory = CountingDirectory({"driver-x"})
        scorer = MatchScorer(directory, lookup_timeout_seconds=1)
        self.assertEqual(await scorer.score_all(make_event(), [], self.policy), [])
        self.assertEqual(directory.calls, 0)

    async def test_unknown_payer_is_neutral(self) -> None:
        scorer = MatchScorer(CountingDirectory({"driver-x"}), lookup_timeout_seconds=1)
        [result] = await scorer.score_all(make_event(phone="+254799999999"), [make_collection()], self.policy)
        self.assertEqual(result.breakdown["identity"], 0.5)
        self.assertAlmostEqual(result.value, 0.5 + 0.175 + 0.15)


if __name__ == "__main__":
    unittest.main()
