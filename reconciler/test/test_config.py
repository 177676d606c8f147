import os
import unittest
from unittest import mock

from reconciler.config import MatchPolicy, load_config, load_policy


class LoadConfigTest(unittest.TestCase):
    def test_database_url_is_required(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(RuntimeError):
                load_config()

    def test_defaults(self) -> None:
        with mock.patch.dict(os.environ, {"DATABASE_URL": "sqlite+aiosqlite:///x.db"}, clear=True):
            cfg = load_config()

        self.assertEqual(cfg.policy, MatchPolicy())
        self.assertEqual(cfg.policy.accept_threshold, 0.7)
        self.assertEqual(cfg.policy.ambiguity_margin, 0.1)
        self.assertEqual(cfg.policy.window_before_minutes, 120)
        self.assertEqual(cfg.policy.window_after_minutes, 30)
        self.assertEqual(cfg.tenant_policies, {})
        self.assertEqual(cfg.lookup_timeout_seconds, 5.0)
        self.assertEqual(cfg.mpesa_timezone, "Africa/Nairobi")
        self.assertEqual(cfg.http_port, 8080)

    def test_env_overrides(self) -> None:
        env = {
            "DATABASE_URL": "postgresql+asyncpg://fleet@localhost/fleet",
            "ACCEPT_THRESHOLD": "0.8",
            "AMBIGUITY_MARGIN": "0.05",
            "WINDOW_BEFORE_MINUTES": "60",
            "LOOKUP_TIMEOUT_SECONDS": "2.5",
            "RETRY_MAX_ATTEMPTS": "3",
            "HTTP_PORT": "9000",
            "TENANT_POLICIES": '{"tenant-a": {"accept_threshold": 0.9, "eligible_methods": ["mpesa"]}}',
        }
        with mock.patch.dict(os.environ, env, clear=True):
            cfg = load_config()

        self.assertEqual(cfg.policy.accept_threshold, 0.8)
        self.assertEqual(cfg.policy.ambiguity_margin, 0.05)
        self.assertEqual(cfg.policy.window_before_minutes, 60)
        self.assertEqual(cfg.lookup_timeout_seconds, 2.5)
        self.assertEqual(cfg.retry_max_attempts, 3)
        self.assertEqual(cfg.http_port, 9000)

        tenant = cfg.policy_for("tenant-a")
        self.assertEqual(tenant.accept_threshold, 0.9)
        self.assertEqual(tenant.ambiguity_margin, 0.05)
        self.assertEqual(tenant.eligible_methods, ("mpesa",))
        self.assertIs(cfg.policy_for("tenant-b"), cfg.policy)

    def test_bad_tenant_policy(self) -> None:
        for raw in (
            '{"t": {"threshold": 1}}',
            '{"t": {"accept_threshold": 1.5}}',
            '{"t": {"ambiguity_margin": 0.9}}',
            '{"t": {"accept_threshold": "high"}}',
            '{"t": {"accept_threshold": true}}',
            '{"t": {"window_before_minutes": 12.5}}',
            '{"t": {"eligible_methods": "mpesa"}}',
            '{"t": {"eligible_methods": []}}',
            '{"t": 0.8}',
        ):
            with self.subTest(raw=raw):
                env = {"DATABASE_URL": "sqlite+aiosqlite:///x.db", "TENANT_POLICIES": raw}
                with mock.patch.dict(os.environ, env, clear=True):
                    with self.assertRaises(ValueError):
                        load_config()

    def test_tenant_policy_values_are_coerced(self) -> None:
        env = {
            "DATABASE_URL": "sqlite+aiosqlite:///x.db",
            "TENANT_POLICIES": '{"t": {"accept_threshold": "0.8", "window_after_minutes": "45"}}',
        }
        with mock.patch.dict(os.environ, env, clear=True):
            policy = load_config().policy_for("t")

        self.assertEqual(policy.accept_threshold, 0.8)
        self.assertIsInstance(policy.accept_threshold, float)
        self.assertEqual(policy.window_after_minutes, 45)
        self.assertIsInstance(policy.window_after_minutes, int)

    def test_policy_rejects_out_of_range_values(self) -> None:
        with self.assertRaises(ValueError):
            MatchPolicy(accept_threshold=1.5)
        with self.assertRaises(ValueError):
            MatchPolicy().with_overrides({"ambiguity_margin": 0.9})
        with self.assertRaises(ValueError):
            MatchPolicy(amount_tolerance_floor_minor=-1)

    def test_policy_bounds(self) -> None:
        for env in (
            {"ACCEPT_THRESHOLD": "0"},
            {"ACCEPT_THRESHOLD": "1.5"},
            {"AMBIGUITY_MARGIN": "0.7"},
            {"WINDOW_AFTER_MINUTES": "-1"},
        ):
            with self.subTest(env=env):
                with mock.patch.dict(os.environ, env, clear=True):
                    with self.assertRaises(RuntimeError):
                        load_policy()


if __name__ == "__main__":
    unittest.main()
