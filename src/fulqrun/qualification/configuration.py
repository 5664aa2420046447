"""MEDDPICC configuration validation and versioned storage.

validate_configuration works on the raw dict an administrator submits, so
it can report every problem at once instead of stopping at the first
pydantic error. Only configurations without errors are saved; warnings
are returned to the caller but do not block the save.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import ValidationError

from src.fulqrun.core.errors import ValidationFailedError
from src.fulqrun.qualification.config import DEFAULT_MEDDPICC_CONFIG, MEDDPICCConfig, QuestionType
from src.fulqrun.qualification.schemas import (
    ConfigurationHistoryEntry,
    ConfigurationValidation,
    StoredConfiguration,
)

logger = structlog.get_logger(__name__)

DEFAULT_CONFIGURATION_NAME = "Custom MEDDPICC Configuration"
WEIGHT_TOLERANCE = 0.1
ANSWERED_TYPES = {QuestionType.SCALE.value, QuestionType.MULTIPLE_CHOICE.value}
THRESHOLD_ORDER = ("excellent", "good", "fair", "poor")


def _blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


def _number(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _validate_questions(label: str, pillar: dict[str, Any], errors: list[str], warnings: list[str]) -> None:
    questions = pillar.get("questions") or []
    if not questions:
        warnings.append(f"{label} ({pillar.get('display_name')}): No questions defined")
        return

    seen: set[str] = set()
    valid_types = {t.value for t in QuestionType}
    for q_index, question in enumerate(questions, start=1):
        q_label = f"{label}, Question {q_index}"
        qid = question.get("id")
        if _blank(qid):
            errors.append(f"{q_label}: ID is required")
        elif qid in seen:
            errors.append(f'{q_label}: Duplicate ID "{qid}"')
        else:
            seen.add(qid)

        if _blank(question.get("text")):
            errors.append(f"{q_label}: Text is required")

        qtype = question.get("type")
        if qtype not in valid_types:
            errors.append(f'{q_label}: Invalid question type "{qtype}"')
        if qtype in ANSWERED_TYPES and not question.get("answers"):
            errors.append(f"{q_label}: Answers required for {qtype} questions")


def validate_configuration(config: dict[str, Any]) -> ConfigurationValidation:
    """Check a submitted configuration, collecting errors and warnings."""
    errors: list[str] = []
    warnings: list[str] = []

    if _blank(config.get("project_name")):
        errors.append("Project name is required")
    if _blank(config.get("version")):
        errors.append("Version is required")
    if _blank(config.get("framework")):
        errors.append("Framework is required")

    pillars = config.get("pillars") or []
    total_weight: float | None = None
    if not pillars:
        errors.append("At least one pillar is required")
    else:
        total_weight = 0.0
        seen: set[str] = set()
        for index, pillar in enumerate(pillars, start=1):
            label = f"Pillar {index}"
            pid = pillar.get("id")
            if _blank(pid):
                errors.append(f"{label}: ID is required")
            elif pid in seen:
                errors.append(f'{label}: Duplicate ID "{pid}"')
            else:
                seen.add(pid)

            if _blank(pillar.get("display_name")):
                errors.append(f"{label}: Display name is required")

            weight = _number(pillar.get("weight"))
            if weight < 0 or weight > 100:
                errors.append(f"{label}: Weight must be between 0 and 100")
            total_weight += weight

            _validate_questions(label, pillar, errors, warnings)

        if abs(total_weight - 100) > WEIGHT_TOLERANCE:
            warnings.append(f"Total pillar weights sum to {total_weight:g}% instead of 100%")

    thresholds = config.get("thresholds")
    if thresholds:
        values = [_number(thresholds.get(name)) for name in THRESHOLD_ORDER]
        for (higher, lower), (hi_val, lo_val) in zip(
            zip(THRESHOLD_ORDER, THRESHOLD_ORDER[1:]), zip(values, values[1:])
        ):
            if hi_val <= lo_val:
                warnings.append(f"{higher.capitalize()} threshold should be higher than {lower} threshold")
        for name, value in zip(THRESHOLD_ORDER, values):
            if value < 0 or value > 100:
                errors.append(f"{name} threshold must be between 0 and 100")

    if not config.get("stage_gates"):
        warnings.append("No stage gates defined: PEAK stage moves will not be gated")

    return ConfigurationValidation(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        total_weight=total_weight,
    )


class MEDDPICCConfigurationService:
    """Validated, versioned access to an organization's MEDDPICC configuration.

    Args:
        repository: MEDDPICCConfigurationRepository or a test double.
    """

    def __init__(self, repository: Any) -> None:
        self._repo = repository

    async def get_active_configuration(self, organization_id: str) -> MEDDPICCConfig:
        stored = await self._repo.get_active(organization_id)
        if stored is None:
            return DEFAULT_MEDDPICC_CONFIG
        return stored.configuration

    async def get_configuration_record(self, organization_id: str) -> StoredConfiguration | None:
        return await self._repo.get_active(organization_id)

    async def save_configuration(
        self,
        organization_id: str,
        config: dict[str, Any],
        user_id: str | None = None,
        name: str | None = None,
        description: str | None = None,
        change_reason: str | None = None,
    ) -> tuple[StoredConfiguration, ConfigurationValidation]:
        """Validate and store a new active version.

        Raises:
            ValidationFailedError: The configuration has errors; details
                carry the full validation result.
        """
        validation = validate_configuration(config)
        if not validation.is_valid:
            raise ValidationFailedError(
                "Configuration validation failed", validation.model_dump()
            )
        try:
            parsed = MEDDPICCConfig.model_validate(config)
        except ValidationError as e:
            raise ValidationFailedError(
                "Configuration validation failed",
                {"errors": [err["msg"] for err in e.errors()]},
            )

        stored = await self._repo.save(
            organization_id,
            parsed,
            name=name or DEFAULT_CONFIGURATION_NAME,
            description=description,
            user_id=user_id,
            change_reason=change_reason,
        )
        logger.info(
            "qualification.config_updated",
            organization_id=organization_id,
            version=stored.version,
            warnings=len(validation.warnings),
        )
        return stored, validation

    async def reset_to_default(self, organization_id: str, user_id: str | None = None) -> MEDDPICCConfig:
        await self._repo.deactivate(organization_id, user_id=user_id)
        logger.info("qualification.config_reset", organization_id=organization_id)
        return DEFAULT_MEDDPICC_CONFIG

    async def get_configuration_history(
        self, organization_id: str, limit: int = 50
    ) -> list[ConfigurationHistoryEntry]:
        return await self._repo.history(organization_id, limit=limit)

    async def export_configuration(self, organization_id: str, exported_by: str | None = None) -> str:
        """JSON export of the active configuration with metadata."""
        stored = await self._repo.get_active(organization_id)
        if stored is None:
            return json.dumps(DEFAULT_MEDDPICC_CONFIG.model_dump(mode="json"), indent=2)
        return json.dumps(
            {
                "metadata": {
                    "name": stored.name,
                    "description": stored.description,
                    "version": stored.version,
                    "exported_at": datetime.now(timezone.utc).isoformat(),
                    "exported_by": exported_by,
                },
                "configuration": stored.configuration.model_dump(mode="json"),
            },
            indent=2,
        )

    async def import_configuration(
        self,
        organization_id: str,
        data: dict[str, Any] | str,
        user_id: str | None = None,
        name: str | None = None,
        description: str | None = None,
    ) -> tuple[StoredConfiguration, ConfigurationValidation]:
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as e:
                raise ValidationFailedError("Invalid import format: not valid JSON", {"error": str(e)})
        configuration = data.get("configuration") if isinstance(data, dict) else None
        if not configuration:
            raise ValidationFailedError("Invalid import format: missing configuration data")

        metadata = data.get("metadata") or {}
        return await self.save_configuration(
            organization_id,
            configuration,
            user_id=user_id,
            name=name or metadata.get("name") or "Imported Configuration",
            description=description or metadata.get("description") or "Imported MEDDPICC configuration",
            change_reason="Imported configuration",
        )
