"""Pharmaceutical KPI engine.

Twelve KPIs computed from prescription, call, HCP, sample and formulary
data. Each calculation carries a confidence reflecting how reliable its
source data is. A zero denominator yields 0 rather than an error.
Results are cached per filter set in the organization's Redis namespace.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta, timezone
from typing import Any

import structlog
from redis.exceptions import RedisError

from src.fulqrun.config import get_settings
from src.fulqrun.core.errors import NotFoundError, ValidationFailedError
from src.fulqrun.core.redis import OrganizationRedis
from src.fulqrun.kpi.definitions import KPI_DEFINITIONS
from src.fulqrun.kpi.schemas import KPICalculation, KPICalculationParams

logger = structlog.get_logger(__name__)

CONFIDENCE = {
    "trx": 1.0,
    "nrx": 1.0,
    "market_share": 0.9,
    "growth": 0.8,
    "call_effectiveness": 0.7,
    "reach": 0.9,
    "frequency": 0.95,
    "sample_to_script_ratio": 0.8,
    "formulary_access": 0.7,
    "kol_engagement": 0.92,
    "formulary_win_rate": 0.88,
    "sample_efficiency": 0.85,
}

FAVOURABLE_COVERAGE = frozenset({"preferred", "standard"})


def ratio(numerator: float, denominator: float, scale: float = 1.0) -> float:
    """numerator / denominator * scale, or 0 when the denominator is 0."""
    return numerator / denominator * scale if denominator else 0.0


def previous_period(params: KPICalculationParams) -> tuple[date, date]:
    """Equal-length period ending the day before ``period_start``."""
    length = params.period_end - params.period_start
    previous_end = params.period_start - timedelta(days=1)
    return previous_end - length, previous_end


def kpi_cache_key(kpi_id: str, params: KPICalculationParams) -> str:
    return f"kpi:{kpi_id}:{params.cache_suffix()}"


def formulary_win(row: dict[str, Any]) -> bool:
    return row.get("status") == "approved" or row.get("coverage_level") == "preferred" or row.get("tier") == "tier1"


class KPIEngine:
    """Calculates pharmaceutical KPIs.

    Args:
        repository: KPIRepository (or double).
        redis_client: Raw Redis client; None disables caching.
    """

    def __init__(self, repository: Any, redis_client: Any = None, cache_ttl: int | None = None) -> None:
        self._repo = repository
        self._redis = redis_client
        self._cache_ttl = cache_ttl if cache_ttl is not None else get_settings().KPI_CACHE_TTL
        self._calculators: dict[str, Callable[[KPICalculationParams], Awaitable[KPICalculation]]] = {
            "trx": self.calculate_trx,
            "nrx": self.calculate_nrx,
            "market_share": self.calculate_market_share,
            "growth": self.calculate_growth,
            "call_effectiveness": self.calculate_call_effectiveness,
            "reach": self.calculate_reach,
            "frequency": self.calculate_frequency,
            "sample_to_script_ratio": self.calculate_sample_to_script_ratio,
            "formulary_access": self.calculate_formulary_access,
            "kol_engagement": self.calculate_kol_engagement,
            "formulary_win_rate": self.calculate_formulary_win_rate,
            "sample_efficiency": self.calculate_sample_efficiency,
        }

    @property
    def kpi_ids(self) -> list[str]:
        return list(self._calculators)

    def _result(
        self, kpi_id: str, value: float, params: KPICalculationParams, **metadata: Any
    ) -> KPICalculation:
        return KPICalculation(
            kpi_id=kpi_id,
            kpi_name=KPI_DEFINITIONS[kpi_id].name,
            value=value,
            confidence=CONFIDENCE[kpi_id],
            calculated_at=datetime.now(timezone.utc),
            metadata={
                "period_start": params.period_start.isoformat(),
                "period_end": params.period_end.isoformat(),
                "territory_id": params.territory_id,
                "product_id": params.product_id,
                "rep_id": params.rep_id,
                **metadata,
            },
        )

    # ── Prescriptions ───────────────────────────────────────────────────────

    async def calculate_trx(self, params: KPICalculationParams) -> KPICalculation:
        total = await self._repo.sum_prescriptions(params)
        return self._result("trx", float(total), params)

    async def calculate_nrx(self, params: KPICalculationParams) -> KPICalculation:
        total = await self._repo.sum_prescriptions(params, prescription_type="nrx")
        return self._result("nrx", float(total), params)

    async def calculate_market_share(self, params: KPICalculationParams) -> KPICalculation:
        if not params.product_id:
            raise ValidationFailedError("Product ID is required for market share calculation")
        product_trx = await self._repo.sum_prescriptions(params)
        market_trx = await self._repo.sum_prescriptions(params, include_product=False)
        return self._result(
            "market_share",
            ratio(product_trx, market_trx, 100),
            params,
            product_trx=product_trx,
            market_trx=market_trx,
        )

    async def calculate_growth(self, params: KPICalculationParams) -> KPICalculation:
        previous_start, previous_end = previous_period(params)
        current = await self._repo.sum_prescriptions(params)
        previous = await self._repo.sum_prescriptions(params, start=previous_start, end=previous_end)
        return self._result(
            "growth",
            ratio(current - previous, previous, 100),
            params,
            current_period=current,
            previous_period=previous,
        )

    # ── Engagement ──────────────────────────────────────────────────────────

    async def calculate_call_effectiveness(self, params: KPICalculationParams) -> KPICalculation:
        total, positive, _ = await self._repo.call_stats(params)
        return self._result(
            "call_effectiveness", ratio(positive, total, 100), params, total_calls=total, positive_calls=positive
        )

    async def calculate_reach(self, params: KPICalculationParams) -> KPICalculation:
        _, _, engaged = await self._repo.call_stats(params)
        active = await self._repo.count_active_hcps(params)
        return self._result(
            "reach", ratio(engaged, active, 100), params, engaged_hcps=engaged, total_hcps=active
        )

    async def calculate_frequency(self, params: KPICalculationParams) -> KPICalculation:
        total, _, engaged = await self._repo.call_stats(params)
        return self._result(
            "frequency", ratio(total, engaged), params, total_calls=total, unique_hcps=engaged
        )

    async def calculate_kol_engagement(self, params: KPICalculationParams) -> KPICalculation:
        engaged = await self._repo.count_engaged_kols(params)
        total = await self._repo.count_active_hcps(params, kol_only=True)
        return self._result(
            "kol_engagement", ratio(engaged, total, 100), params, engaged_kols=engaged, total_kols=total
        )

    # ── Samples ─────────────────────────────────────────────────────────────

    async def calculate_sample_to_script_ratio(self, params: KPICalculationParams) -> KPICalculation:
        samples = await self._repo.sum_samples(params)
        nrx = await self._repo.sum_prescriptions(params, prescription_type="nrx")
        return self._result(
            "sample_to_script_ratio", ratio(samples, nrx), params, total_samples=samples, total_nrx=nrx
        )

    async def calculate_sample_efficiency(self, params: KPICalculationParams) -> KPICalculation:
        samples = await self._repo.sum_samples(params)
        trx = await self._repo.sum_prescriptions(params)
        return self._result(
            "sample_efficiency",
            ratio(trx, samples, 100),
            params,
            total_samples=samples,
            total_trx=trx,
            unit="Rx per 100 samples",
        )

    # ── Market access ───────────────────────────────────────────────────────

    async def calculate_formulary_access(self, params: KPICalculationParams) -> KPICalculation:
        if not params.product_id:
            raise ValidationFailedError("Product ID is required for formulary access calculation")
        rows = await self._repo.formulary_rows(params.organization_id, params.product_id)
        covered = sum(1 for r in rows if r.get("coverage_level") in FAVOURABLE_COVERAGE)
        return self._result(
            "formulary_access", ratio(covered, len(rows), 100), params, covered=covered, total=len(rows)
        )

    async def calculate_formulary_win_rate(self, params: KPICalculationParams) -> KPICalculation:
        rows = await self._repo.formulary_rows(params.organization_id, params.product_id)
        wins = sum(1 for r in rows if formulary_win(r))
        return self._result(
            "formulary_win_rate", ratio(wins, len(rows), 100), params, wins=wins, total=len(rows)
        )

    # ── Cache ───────────────────────────────────────────────────────────────

    async def _cached(self, kpi_id: str, params: KPICalculationParams) -> KPICalculation | None:
        if self._redis is None:
            return None
        cache = OrganizationRedis(self._redis, params.organization_id)
        try:
            raw = await cache.get(kpi_cache_key(kpi_id, params))
        except RedisError as e:
            logger.warning("kpi.cache_read_failed", kpi_id=kpi_id, error=str(e))
            return None
        return KPICalculation.model_validate_json(raw) if raw else None

    async def _store(self, calculation: KPICalculation, params: KPICalculationParams) -> None:
        if self._redis is None:
            return
        cache = OrganizationRedis(self._redis, params.organization_id)
        try:
            await cache.set(
                kpi_cache_key(calculation.kpi_id, params),
                calculation.model_dump_json(),
                ex=self._cache_ttl,
            )
        except RedisError as e:
            logger.warning("kpi.cache_write_failed", kpi_id=calculation.kpi_id, error=str(e))

    # ── Entry points ────────────────────────────────────────────────────────

    async def calculate(self, kpi_id: str, params: KPICalculationParams) -> KPICalculation:
        """One KPI, served from cache when fresh.

        Raises:
            NotFoundError: Unknown kpi_id.
            ValidationFailedError: A required filter is missing.
        """
        calculator = self._calculators.get(kpi_id)
        if calculator is None:
            raise NotFoundError(f"Unknown KPI: {kpi_id}")
        cached = await self._cached(kpi_id, params)
        if cached is not None:
            return cached
        calculation = await calculator(params)
        await self._store(calculation, params)
        return calculation

    async def calculate_all_kpis(self, params: KPICalculationParams) -> list[KPICalculation]:
        """Every KPI; failed calculations are logged and left out."""
        results = await asyncio.gather(
            *(self.calculate(kpi_id, params) for kpi_id in self._calculators),
            return_exceptions=True,
        )
        calculations: list[KPICalculation] = []
        for kpi_id, result in zip(self._calculators, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "kpi.calculation_failed",
                    organization_id=params.organization_id,
                    kpi_id=kpi_id,
                    error=str(result),
                )
                continue
            calculations.append(result)
        return calculations
