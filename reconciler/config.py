from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
import json
import os
from typing import Any, Mapping

POLICY_VERSION = "v1"

# веса сигналов фиксированы и версионируются вместе с POLICY_VERSION
AMOUNT_WEIGHT = 0.5
IDENTITY_WEIGHT = 0.35
TIME_WEIGHT = 0.15

MOBILE_MONEY_METHODS = ("mpesa", "pochi")


def _get_str(name: str, default: str) -> str:
    value = os.environ.get(name, "").strip()
    return value or default


def _get_int(name: str, default: int) -> int:
    value = os.environ.get(name, "").strip()
    if not value:
        return default
    return int(value)


def _get_float(name: str, default: float) -> float:
    value = os.environ.get(name, "").strip()
    if not value:
        return default
    return float(value)


def _as_float(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def _as_int(name: str, value: Any) -> int:
    number = _as_float(name, value)
    if not number.is_integer():
        raise ValueError(f"{name} must be a whole number, got {value!r}")
    return int(number)


@dataclass(frozen=True)
class MatchPolicy:
    accept_threshold: float = 0.7
    ambiguity_margin: float = 0.1
    window_before_minutes: int = 120
    window_after_minutes: int = 30
    amount_tolerance_percent: float = 1.0
    amount_tolerance_floor_minor: int = 10_000
    eligible_methods: tuple[str, ...] = MOBILE_MONEY_METHODS
    version: str = POLICY_VERSION

    def __post_init__(self) -> None:
        # значения из JSON/env приходят строками; приводим и проверяем один раз здесь
        for name in ("accept_threshold", "ambiguity_margin", "amount_tolerance_percent"):
            object.__setattr__(self, name, _as_float(name, getattr(self, name)))
        for name in ("window_before_minutes", "window_after_minutes", "amount_tolerance_floor_minor"):
            object.__setattr__(self, name, _as_int(name, getattr(self, name)))

        methods = self.eligible_methods
        if isinstance(methods, str) or not all(isinstance(m, str) and m for m in methods):
            raise ValueError(f"eligible_methods must be a list of method names, got {methods!r}")
        object.__setattr__(self, "eligible_methods", tuple(methods))
        if not self.eligible_methods:
            raise ValueError("eligible_methods must not be empty")

        if not 0.0 < self.accept_threshold <= 1.0:
            raise ValueError(f"accept_threshold must be in (0, 1], got {self.accept_threshold}")
        if not 0.0 <= self.ambiguity_margin < self.accept_threshold:
            raise ValueError(
                f"ambiguity_margin must be in [0, accept_threshold), got {self.ambiguity_margin}"
            )
        if self.window_before_minutes < 0 or self.window_after_minutes < 0:
            raise ValueError("match windows must not be negative")
        if self.amount_tolerance_percent < 0 or self.amount_tolerance_floor_minor < 0:
            raise ValueError("amount tolerance must not be negative")


    @property
    def window_before(self) -> timedelta:
        return timedelta(minutes=self.window_before_minutes)

    @property
    def window_after(self) -> timedelta:
        return timedelta(minutes=self.window_after_minutes)

    def with_overrides(self, overrides: Mapping[str, Any]) -> MatchPolicy:
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"unknown policy fields: {sorted(unknown)}")
        return replace(self, **overrides)


@dataclass(frozen=True)
class ReconcilerConfig:
    database_url: str
    policy: MatchPolicy
    tenant_policies: dict[str, MatchPolicy] = field(default_factory=dict)
    lookup_timeout_seconds: float = 5.0
    retry_interval_seconds: int = 30
    retry_base_delay_seconds: int = 30
    retry_max_delay_seconds: int = 3600
    retry_max_attempts: int = 8
    mpesa_timezone: str = "Africa/Nairobi"
    default_country_code: str = "254"
    http_host: str = "0.0.0.0"
    http_port: int = 8080

    def policy_for(self, tenant_id: str) -> MatchPolicy:
        return self.tenant_policies.get(tenant_id, self.policy)


def _parse_tenant_policies(raw: str, base: MatchPolicy) -> dict[str, MatchPolicy]:
    """
    TENANT_POLICIES='{"tenant-a": {"accept_threshold": 0.8}}'
    """
    if not raw:
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("TENANT_POLICIES must be a JSON object")

    policies = {}
    for tenant, overrides in data.items():
        if not isinstance(overrides, dict):
            raise ValueError(f"TENANT_POLICIES[{tenant!r}] must be a JSON object")
        try:
            policies[str(tenant)] = base.with_overrides(overrides)
        except ValueError as exc:
            raise ValueError(f"TENANT_POLICIES[{tenant!r}]: {exc}") from exc
    return policies


def load_policy() -> MatchPolicy:
    try:
        return MatchPolicy(
            accept_threshold=_get_float("ACCEPT_THRESHOLD", 0.7),
            ambiguity_margin=_get_float("AMBIGUITY_MARGIN", 0.1),
            window_before_minutes=_get_int("WINDOW_BEFORE_MINUTES", 120),
            window_after_minutes=_get_int("WINDOW_AFTER_MINUTES", 30),
            amount_tolerance_percent=_get_float("AMOUNT_TOLERANCE_PERCENT", 1.0),
            amount_tolerance_floor_minor=_get_int("AMOUNT_TOLERANCE_FLOOR_MINOR", 10_000),
        )
    except ValueError as exc:
        raise RuntimeError(f"invalid match policy: {exc}") from exc


def load_config() -> ReconcilerConfig:
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if not database_url:
        raise RuntimeError("DATABASE_URL is required")

    policy = load_policy()
    return ReconcilerConfig(
        database_url=database_url,
        policy=policy,
        tenant_policies=_parse_tenant_policies(os.environ.get("TENANT_POLICIES", "").strip(), policy),
        lookup_timeout_seconds=_get_float("LOOKUP_TIMEOUT_SECONDS", 5.0),
        retry_interval_seconds=_get_int("RETRY_INTERVAL_SECONDS", 30),
        retry_base_delay_seconds=_get_int("RETRY_BASE_DELAY_SECONDS", 30),
        retry_max_delay_seconds=_get_int("RETRY_MAX_DELAY_SECONDS", 3600),
        retry_max_attempts=_get_int("RETRY_MAX_ATTEMPTS", 8),
        mpesa_timezone=_get_str("MPESA_TIMEZONE", "Africa/Nairobi"),
        default_country_code=_get_str("DEFAULT_COUNTRY_CODE", "254"),
        http_host=_get_str("HTTP_HOST", "0.0.0.0"),
        http_port=_get_int("HTTP_PORT", 8080),
    )
