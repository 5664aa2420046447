"""Pharmaceutical BI source tables -- prescriptions, calls, HCPs, formulary,
samples and sales targets.

All tables live in the "org" placeholder schema and carry an indexed
organization_id.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, Float, Integer, String, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.fulqrun.core.database import OrganizationBase


def _pk() -> Mapped[uuid.UUID]:
    return mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )


def _org_id() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), nullable=False, index=True)


class PrescriptionEventModel(OrganizationBase):
    """One TRx or NRx record. ``prescription_type`` is "trx" or "nrx"."""

    __tablename__ = "prescription_events"
    __table_args__ = {"schema": "org"}

    id: Mapped[uuid.UUID] = _pk()
    organization_id: Mapped[uuid.UUID] = _org_id()
    hcp_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    product_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    territory_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    prescription_type: Mapped[str] = mapped_column(String(10), nullable=False)
    volume: Mapped[int] = mapped_column(Integer, default=1, server_default=text("1"))
    event_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)


class CallActivityModel(OrganizationBase):
    __tablename__ = "call_activities"
    __table_args__ = {"schema": "org"}

    id: Mapped[uuid.UUID] = _pk()
    organization_id: Mapped[uuid.UUID] = _org_id()
    hcp_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    rep_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    territory_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    product_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    call_type: Mapped[str] = mapped_column(String(50), default="detail", server_default=text("'detail'"))
    outcome: Mapped[str | None] = mapped_column(String(50), nullable=True)
    samples_distributed: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    call_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)


class HealthcareProviderModel(OrganizationBase):
    __tablename__ = "healthcare_providers"
    __table_args__ = {"schema": "org"}

    id: Mapped[uuid.UUID] = _pk()
    organization_id: Mapped[uuid.UUID] = _org_id()
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    specialty: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_kol: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    territory_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)


class FormularyAccessModel(OrganizationBase):
    """Payer coverage of a product.

    ``coverage_level``: preferred, standard, non_preferred, not_covered.
    ``status``: approved, pending, denied.
    """

    __tablename__ = "formulary_access"
    __table_args__ = {"schema": "org"}

    id: Mapped[uuid.UUID] = _pk()
    organization_id: Mapped[uuid.UUID] = _org_id()
    product_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    payer: Mapped[str] = mapped_column(String(200), nullable=False)
    coverage_level: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", server_default=text("'pending'"))
    tier: Mapped[str | None] = mapped_column(String(20), nullable=True)
    effective_date: Mapped[date | None] = mapped_column(Date, nullable=True)


class SampleDistributionModel(OrganizationBase):
    __tablename__ = "sample_distributions"
    __table_args__ = {"schema": "org"}

    id: Mapped[uuid.UUID] = _pk()
    organization_id: Mapped[uuid.UUID] = _org_id()
    hcp_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    product_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    territory_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    distributed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class SalesTargetModel(OrganizationBase):
    """Revenue target for one salesman over a weekly, monthly or annual period."""

    __tablename__ = "sales_targets"
    __table_args__ = {"schema": "org"}

    id: Mapped[uuid.UUID] = _pk()
    organization_id: Mapped[uuid.UUID] = _org_id()
    salesman_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    period_type: Mapped[str] = mapped_column(String(20), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    target_value: Mapped[float] = mapped_column(Float, default=0.0, server_default=text("0"))
