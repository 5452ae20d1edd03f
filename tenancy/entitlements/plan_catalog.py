"""
Plan Catalog - Load plan reference data from config/plans.json.

Provides:
- Plan: frozen dataclass describing one sellable plan
- RateLimits: per-tier request limits
- PlanCatalog: singleton loader for the plan configuration

CRITICAL: This is the source of truth for which modules a plan enables and
which modules a trial tenant may use. Do NOT hardcode module access elsewhere.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional, FrozenSet

from dateutil.relativedelta import relativedelta

logger = logging.getLogger(__name__)

BILLING_CYCLE_DELTAS = {
    "monthly": relativedelta(months=1),
    "quarterly": relativedelta(months=3),
    "annually": relativedelta(years=1),
}


@dataclass(frozen=True)
class PlanLimits:
    """Usage limits for a plan. -1 means unlimited."""

    max_users: int = 0
    max_storage_gb: int = 0
    api_calls_per_month: int = 0


@dataclass(frozen=True)
class RateLimits:
    requests_per_minute: int
    requests_per_hour: int
    requests_per_day: int


@dataclass(frozen=True)
class Plan:
    """A sellable plan. Immutable at runtime."""

    code: str
    name: str
    billing_cycle: str
    enabled_modules: tuple[str, ...]
    limits: PlanLimits = field(default_factory=PlanLimits)
    rate_limit_tier: str = "basic"
    marketplace_plan_id: Optional[str] = None
    currency: str = "AED"
    base_price: float = 0

    def has_module(self, module_code: str) -> bool:
        return module_code in self.enabled_modules

    @property
    def cycle_delta(self) -> relativedelta:
        return BILLING_CYCLE_DELTAS[self.billing_cycle]


class PlanCatalog:
    """
    Singleton loader for the plan catalog.

    Thread-safe with lazy loading.

    Usage:
        catalog = PlanCatalog()
        plan = catalog.get_plan("professional")
        if plan and plan.has_module("recruitment"):
            ...
    """

    _instance: Optional["PlanCatalog"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path
        self._plans: Dict[str, Plan] = {}
        self._plans_by_marketplace_id: Dict[str, Plan] = {}
        self._trial_modules: FrozenSet[str] = frozenset()
        self._trial_days = 7
        self._rate_limit_tiers: Dict[str, RateLimits] = {}
        self._default_tier = "trial"

        self._load_config()
        self._initialized = True

    def _resolve_config_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        env_path = os.getenv("PLAN_CATALOG_PATH")
        possible_paths = [
            Path(env_path) if env_path else None,
            Path(__file__).parent.parent / "config" / "plans.json",
            Path(os.getcwd()) / "tenancy" / "config" / "plans.json",
        ]

        for path in possible_paths:
            if path is not None and path.exists():
                return path

        raise FileNotFoundError(
            f"plans.json not found in any of: {[str(p) for p in possible_paths if p]}"
        )

    def _load_config(self) -> None:
        config_path = self._resolve_config_path()
        logger.info("Loading plan catalog", extra={"path": str(config_path)})

        with open(config_path, "r") as f:
            raw = json.load(f)

        for plan_data in raw.get("plans", []):
            cycle = plan_data.get("billing_cycle", "monthly")
            if cycle not in BILLING_CYCLE_DELTAS:
                raise ValueError(f"Plan {plan_data.get('code')}: unknown billing_cycle '{cycle}'")

            limits_data = plan_data.get("limits", {})
            plan = Plan(
                code=plan_data["code"],
                name=plan_data.get("name", plan_data["code"]),
                billing_cycle=cycle,
                enabled_modules=tuple(plan_data.get("enabled_modules", [])),
                limits=PlanLimits(
                    max_users=limits_data.get("max_users", 0),
                    max_storage_gb=limits_data.get("max_storage_gb", 0),
                    api_calls_per_month=limits_data.get("api_calls_per_month", 0),
                ),
                rate_limit_tier=plan_data.get("rate_limit_tier", "basic"),
                marketplace_plan_id=plan_data.get("marketplace_plan_id"),
                currency=plan_data.get("currency", "AED"),
                base_price=plan_data.get("base_price", 0),
            )
            self._plans[plan.code] = plan
            if plan.marketplace_plan_id:
                self._plans_by_marketplace_id[plan.marketplace_plan_id] = plan

        trial = raw.get("trial", {})
        self._trial_modules = frozenset(trial.get("modules", []))
        self._trial_days = trial.get("days", 7)

        for tier, limits in raw.get("rate_limit_tiers", {}).items():
            self._rate_limit_tiers[tier] = RateLimits(**limits)
        self._default_tier = raw.get("default_rate_limit_tier", "trial")

        logger.info(
            "Plan catalog loaded",
            extra={"plan_count": len(self._plans), "trial_modules": sorted(self._trial_modules)},
        )

    def get_plan(self, plan_code: str) -> Optional[Plan]:
        return self._plans.get(plan_code)

    def get_plan_by_marketplace_id(self, marketplace_plan_id: str) -> Optional[Plan]:
        """Map a marketplace plan id to the catalog plan it sells."""
        return self._plans_by_marketplace_id.get(marketplace_plan_id)

    def get_all_plans(self) -> List[Plan]:
        return list(self._plans.values())

    @property
    def trial_modules(self) -> FrozenSet[str]:
        """Modules available to trial / pending_setup tenants without a subscription."""
        return self._trial_modules

    @property
    def trial_days(self) -> int:
        return self._trial_days

    def get_rate_limits(self, tier: Optional[str]) -> RateLimits:
        """Rate limits for a tier, falling back to the default (trial) tier."""
        if tier and tier in self._rate_limit_tiers:
            return self._rate_limit_tiers[tier]
        return self._rate_limit_tiers[self._default_tier]


def get_plan_catalog(config_path: Optional[str] = None) -> PlanCatalog:
    """Get the singleton PlanCatalog instance."""
    return PlanCatalog(config_path)


def reset_plan_catalog() -> None:
    """
    Reset the singleton instance (for testing).

    WARNING: Only use in tests!
    """
    PlanCatalog._instance = None
