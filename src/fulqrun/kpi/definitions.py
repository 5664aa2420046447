"""Catalogue of the pharmaceutical KPIs the engine can calculate."""

from __future__ import annotations

from src.fulqrun.kpi.schemas import KPIDefinition, KPIThresholds

PRESCRIPTIONS = "prescriptions"
ENGAGEMENT = "engagement"
ACCESS = "market_access"
SAMPLES = "samples"


def _definition(
    kpi_id: str,
    name: str,
    description: str,
    formula: str,
    unit: str,
    category: str,
    thresholds: tuple[float, float, float],
) -> KPIDefinition:
    critical, warning, target = thresholds
    return KPIDefinition(
        id=kpi_id,
        name=name,
        description=description,
        formula=formula,
        unit=unit,
        category=category,
        thresholds=KPIThresholds(critical=critical, warning=warning, target=target),
    )


KPI_DEFINITIONS: dict[str, KPIDefinition] = {
    d.id: d
    for d in (
        _definition(
            "trx", "Total Prescriptions (TRx)",
            "Total prescription volume for a product",
            "SUM(volume)", "prescriptions", PRESCRIPTIONS, (100, 500, 1000),
        ),
        _definition(
            "nrx", "New Prescriptions (NRx)",
            "New prescription volume, excluding refills",
            "SUM(volume) WHERE type = nrx", "prescriptions", PRESCRIPTIONS, (50, 200, 500),
        ),
        _definition(
            "market_share", "Market Share",
            "Product share of all prescriptions in the period",
            "(Product TRx / Total TRx) x 100", "%", PRESCRIPTIONS, (5, 10, 20),
        ),
        _definition(
            "growth", "Growth",
            "Period-over-period prescription growth",
            "((Current TRx - Previous TRx) / Previous TRx) x 100", "%", PRESCRIPTIONS, (-10, 5, 15),
        ),
        _definition(
            "call_effectiveness", "Call Effectiveness Index",
            "Share of calls with a positive outcome",
            "(Positive calls / Total calls) x 100", "%", ENGAGEMENT, (0, 10, 25),
        ),
        _definition(
            "reach", "HCP Reach",
            "Share of active HCPs called in the period",
            "(Unique HCPs called / Active HCPs) x 100", "%", ENGAGEMENT, (50, 70, 85),
        ),
        _definition(
            "frequency", "Call Frequency",
            "Average calls per HCP called",
            "Total calls / Unique HCPs called", "calls per HCP", ENGAGEMENT, (1, 2, 4),
        ),
        _definition(
            "sample_to_script_ratio", "Sample-to-Script Ratio",
            "Samples distributed per new prescription",
            "Samples / NRx", "ratio", SAMPLES, (5, 10, 20),
        ),
        _definition(
            "formulary_access", "Formulary Access",
            "Share of payer coverage at preferred or standard level",
            "((Preferred + Standard) / Total) x 100", "%", ACCESS, (30, 50, 70),
        ),
        _definition(
            "kol_engagement", "KOL Engagement",
            "Share of key opinion leaders called in the period",
            "(KOLs engaged / Total KOLs) x 100", "%", ENGAGEMENT, (20, 40, 60),
        ),
        _definition(
            "formulary_win_rate", "Formulary Win Rate",
            "Share of formulary decisions won",
            "(Approved, preferred or tier 1 / Total) x 100", "%", ACCESS, (30, 50, 70),
        ),
        _definition(
            "sample_efficiency", "Sample Efficiency",
            "Prescriptions per 100 samples distributed",
            "(TRx / Samples) x 100", "Rx per 100 samples", SAMPLES, (5, 10, 20),
        ),
    )
}


def get_kpi_definitions() -> list[KPIDefinition]:
    return list(KPI_DEFINITIONS.values())
