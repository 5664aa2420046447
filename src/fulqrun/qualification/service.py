"""MEDDPICC scoring service -- opportunity scores with a Redis cache.

Scores are computed from an opportunity's stored questionnaire responses,
or from its legacy single-text fields when no responses exist, against the
organization's active configuration. Results are cached per opportunity in
the organization's Redis namespace.
"""

from __future__ import annotations

from typing import Any

import structlog
from redis.exceptions import RedisError

from src.fulqrun.config import get_settings
from src.fulqrun.core.errors import NotFoundError
from src.fulqrun.core.redis import OrganizationRedis
from src.fulqrun.crm.schemas import MEDDPICCResponse, OpportunityFilter, OpportunityRead, OpportunityUpdate
from src.fulqrun.qualification.config import MEDDPICCConfig
from src.fulqrun.qualification.scoring import (
    MEDDPICCAssessment,
    calculate_meddpicc_score,
    empty_assessment,
    legacy_to_responses,
)

logger = structlog.get_logger(__name__)

RECALCULATE_PAGE_SIZE = 500


def score_cache_key(opportunity_id: str) -> str:
    return f"meddpicc:score:{opportunity_id}"


def responses_for(opportunity: OpportunityRead, config: MEDDPICCConfig) -> list[MEDDPICCResponse]:
    """Stored responses, or the legacy fields mapped onto each pillar's first question."""
    if opportunity.meddpicc_responses:
        return list(opportunity.meddpicc_responses)
    return legacy_to_responses(opportunity.legacy_fields(), config)


class MEDDPICCScoringService:
    """Scores opportunities with the organization's active configuration.

    Args:
        crm_repository: CRMRepository (or double) for opportunity reads/writes.
        configuration_service: MEDDPICCConfigurationService.
        redis_client: Raw Redis client; None disables caching.
    """

    def __init__(
        self,
        crm_repository: Any,
        configuration_service: Any,
        redis_client: Any = None,
        cache_ttl: int | None = None,
    ) -> None:
        self._crm = crm_repository
        self._configs = configuration_service
        self._redis = redis_client
        self._cache_ttl = cache_ttl if cache_ttl is not None else get_settings().MEDDPICC_SCORE_CACHE_TTL

    def _cache(self, organization_id: str) -> OrganizationRedis | None:
        if self._redis is None:
            return None
        return OrganizationRedis(self._redis, organization_id)

    async def _cached(self, organization_id: str, opportunity_id: str) -> MEDDPICCAssessment | None:
        cache = self._cache(organization_id)
        if cache is None:
            return None
        try:
            raw = await cache.get(score_cache_key(opportunity_id))
        except RedisError as e:
            logger.warning("qualification.cache_read_failed", opportunity_id=opportunity_id, error=str(e))
            return None
        return MEDDPICCAssessment.model_validate_json(raw) if raw else None

    async def _store(self, organization_id: str, opportunity_id: str, assessment: MEDDPICCAssessment) -> None:
        cache = self._cache(organization_id)
        if cache is None:
            return
        try:
            await cache.set(score_cache_key(opportunity_id), assessment.model_dump_json(), ex=self._cache_ttl)
        except RedisError as e:
            logger.warning("qualification.cache_write_failed", opportunity_id=opportunity_id, error=str(e))

    async def invalidate(self, organization_id: str, opportunity_id: str) -> None:
        cache = self._cache(organization_id)
        if cache is None:
            return
        try:
            await cache.delete(score_cache_key(opportunity_id))
        except RedisError as e:
            logger.warning("qualification.cache_invalidate_failed", opportunity_id=opportunity_id, error=str(e))

    async def score_responses(
        self, organization_id: str, responses: list[MEDDPICCResponse]
    ) -> MEDDPICCAssessment:
        config = await self._configs.get_active_configuration(organization_id)
        return calculate_meddpicc_score(responses, config)

    async def assess(self, organization_id: str, opportunity: OpportunityRead) -> MEDDPICCAssessment:
        config = await self._configs.get_active_configuration(organization_id)
        return calculate_meddpicc_score(responses_for(opportunity, config), config)

    async def get_opportunity_score(self, organization_id: str, opportunity_id: str) -> MEDDPICCAssessment:
        """Cached score for an opportunity, computed on a cache miss.

        Raises:
            NotFoundError: Unknown opportunity.
        """
        cached = await self._cached(organization_id, opportunity_id)
        if cached is not None:
            return cached

        opportunity = await self._crm.get_opportunity(organization_id, opportunity_id)
        if opportunity is None:
            raise NotFoundError("Opportunity not found", {"opportunity_id": opportunity_id})
        assessment = await self.assess(organization_id, opportunity)
        await self._store(organization_id, opportunity_id, assessment)
        return assessment

    async def update_opportunity_score(
        self,
        organization_id: str,
        opportunity_id: str,
        responses: list[MEDDPICCResponse] | None = None,
    ) -> MEDDPICCAssessment:
        """Recompute and persist ``meddpicc_score``, optionally replacing the responses."""
        opportunity = await self._crm.get_opportunity(organization_id, opportunity_id)
        if opportunity is None:
            raise NotFoundError("Opportunity not found", {"opportunity_id": opportunity_id})
        if responses is not None:
            opportunity = opportunity.model_copy(update={"meddpicc_responses": responses})

        assessment = await self.assess(organization_id, opportunity)
        await self._crm.update_opportunity(
            organization_id,
            opportunity_id,
            OpportunityUpdate(meddpicc_responses=responses, meddpicc_score=assessment.overall_score),
        )
        await self.invalidate(organization_id, opportunity_id)
        logger.info(
            "qualification.score_updated",
            organization_id=organization_id,
            opportunity_id=opportunity_id,
            score=assessment.overall_score,
        )
        return assessment

    async def get_score_with_fallback(self, organization_id: str, opportunity_id: str) -> MEDDPICCAssessment:
        try:
            return await self.get_opportunity_score(organization_id, opportunity_id)
        except Exception as e:
            logger.warning(
                "qualification.score_fallback",
                organization_id=organization_id,
                opportunity_id=opportunity_id,
                error=str(e),
            )
            return empty_assessment()

    async def recalculate_all(self, organization_id: str) -> dict[str, int]:
        """Rescore every opportunity; one failure does not stop the run."""
        updated = errors = 0
        offset = 0
        while True:
            page = await self._crm.list_opportunities(
                organization_id, OpportunityFilter(limit=RECALCULATE_PAGE_SIZE, offset=offset)
            )
            for opportunity in page:
                try:
                    await self.update_opportunity_score(organization_id, opportunity.id)
                    updated += 1
                except Exception as e:
                    errors += 1
                    logger.error(
                        "qualification.recalculate_failed",
                        organization_id=organization_id,
                        opportunity_id=opportunity.id,
                        error=str(e),
                    )
            if len(page) < RECALCULATE_PAGE_SIZE:
                break
            offset += RECALCULATE_PAGE_SIZE
        logger.info("qualification.recalculated", organization_id=organization_id, updated=updated, errors=errors)
        return {"updated": updated, "errors": errors}

    async def unmet_gate_criteria(self, organization_id: str, opportunity: OpportunityRead) -> dict[str, list[str]]:
        """Missing criteria per configured stage gate, for CRMService.advance_stage."""
        assessment = await self.assess(organization_id, opportunity)
        return assessment.unmet_gate_criteria
