"""Guardrails - Configurable protective rules evaluated against proposed changes."""

from __future__ import annotations

import threading
from enum import Enum
from typing import Any, Iterable

from pydantic import Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from common.logging import LoggerMixin
from common.models import BaseModel

from ..errors import ValidationError
from ..models import ActionStatus, ActionType, ProposedChange, QueuedAction, to_number


class GuardrailSettings(BaseModel):
    """Process-wide guardrail configuration."""

    enabled: bool = Field(default=True, description="Master switch for all guardrails")
    allow_pause_all_campaigns: bool = Field(default=False)
    warn_on_high_performer_pause: bool = Field(default=True)
    high_performer_threshold: int = Field(default=70, ge=0, le=100)
    allow_zero_budget: bool = Field(default=False)
    budget_change_threshold_percent: int = Field(
        default=20,
        ge=10,
        le=100,
        description="Budget swing (percent) that triggers a warning, in steps of 10",
    )

    @field_validator("budget_change_threshold_percent")
    @classmethod
    def _step_of_ten(cls, value: int) -> int:
        if value % 10:
            raise ValueError("budget_change_threshold_percent must be a multiple of 10")
        return value


class GuardrailDecision(str, Enum):
    """Outcome of a guardrail evaluation, in increasing severity."""

    ALLOW = "allow"
    WARN = "warn"
    BLOCK = "block"


class GuardrailVerdict(BaseModel):
    """Result of evaluating guardrails for one change or a batch."""

    decision: GuardrailDecision = Field(default=GuardrailDecision.ALLOW)
    reason: str = Field(default="", description="Most severe triggered reason")
    reasons: list[str] = Field(default_factory=list, description="All triggered reasons")

    @property
    def allowed(self) -> bool:
        return self.decision != GuardrailDecision.BLOCK

    @property
    def blocked(self) -> bool:
        return self.decision == GuardrailDecision.BLOCK


class CampaignSnapshot(BaseModel):
    """Caller-supplied view of a campaign's serving status."""

    id: str
    name: str = ""
    status: str = "ENABLED"


def _verdict(blocks: list[str], warnings: list[str]) -> GuardrailVerdict:
    blocks = list(dict.fromkeys(blocks))
    warnings = list(dict.fromkeys(warnings))
    if blocks:
        return GuardrailVerdict(
            decision=GuardrailDecision.BLOCK, reason=blocks[0], reasons=blocks + warnings
        )
    if warnings:
        return GuardrailVerdict(
            decision=GuardrailDecision.WARN, reason=warnings[0], reasons=warnings
        )
    return GuardrailVerdict()


class GuardrailPolicyEngine(LoggerMixin):
    """Stateless evaluation of proposed changes against GuardrailSettings.

    Settings are passed on every call so an update takes effect on the very
    next evaluation. Precedence is block > warn > allow.
    """

    def evaluate(
        self,
        change: ProposedChange,
        settings: GuardrailSettings,
        performance_score: float | None = None,
    ) -> GuardrailVerdict:
        """Evaluate a single proposed change.

        Args:
            change: Change to evaluate
            settings: Current guardrail settings
            performance_score: Optional 0-100 score of the target entity

        Returns:
            Guardrail verdict
        """
        if not settings.enabled:
            return GuardrailVerdict()

        blocks, warnings = self._check(change, settings, performance_score)
        verdict = _verdict(blocks, warnings)

        if verdict.decision != GuardrailDecision.ALLOW:
            self.logger.info(
                "guardrail_triggered",
                entity_id=change.entity_id,
                action_type=change.action_type,
                decision=verdict.decision,
                reason=verdict.reason,
            )
        return verdict

    def evaluate_bulk(
        self,
        changes: Iterable[ProposedChange],
        settings: GuardrailSettings,
        performance_scores: dict[str, float] | None = None,
        campaigns: list[CampaignSnapshot] | None = None,
        pending_actions: list[QueuedAction] | None = None,
    ) -> GuardrailVerdict:
        """Evaluate a batch of changes as one unit.

        When ``campaigns`` is supplied, a batch whose campaign pauses (together
        with pauses already waiting in the queue) would leave no active
        campaign is treated like "pause all campaigns".
        """
        changes = list(changes)
        if not settings.enabled:
            return GuardrailVerdict()

        scores = performance_scores or {}
        blocks: list[str] = []
        warnings: list[str] = []

        if campaigns:
            pause_all = self._pauses_every_campaign(changes, campaigns, pending_actions or [])
            if pause_all:
                message = (
                    f"Cannot pause all {pause_all} active campaigns. "
                    "At least one campaign must remain active."
                )
                if settings.allow_pause_all_campaigns:
                    warnings.append(f"This will pause all {pause_all} active campaigns.")
                else:
                    blocks.append(message)

        for change in changes:
            b, w = self._check(change, settings, scores.get(change.entity_id))
            blocks.extend(b)
            warnings.extend(w)

        verdict = _verdict(blocks, warnings)
        self.logger.info(
            "guardrail_evaluation",
            change_count=len(changes),
            decision=verdict.decision,
            reasons=len(verdict.reasons),
        )
        return verdict

    def _check(
        self,
        change: ProposedChange,
        settings: GuardrailSettings,
        performance_score: float | None,
    ) -> tuple[list[str], list[str]]:
        blocks: list[str] = []
        warnings: list[str] = []

        if change.action_type == ActionType.PAUSE_ALL_CAMPAIGNS:
            if not settings.allow_pause_all_campaigns:
                blocks.append(
                    "Cannot pause all campaigns. At least one campaign must remain active."
                )
            else:
                warnings.append("This will pause every campaign in the account.")

        if change.is_budget_change and to_number(change.new_value) == 0:
            if not settings.allow_zero_budget:
                blocks.append("Cannot set budget to $0. Pause the campaign instead.")

        if (
            settings.warn_on_high_performer_pause
            and change.is_pause
            and performance_score is not None
            and performance_score >= settings.high_performer_threshold
        ):
            warnings.append(
                f"{change.entity_name or change.entity_id} has a high performance score "
                f"({performance_score:g}). Pausing may impact performance."
            )

        if change.is_budget_change:
            percent = change.budget_change_percent
            if percent is not None and abs(percent) >= settings.budget_change_threshold_percent:
                direction = "increase" if percent > 0 else "decrease"
                warnings.append(
                    f"Large budget {direction}: {abs(percent):.0f}% change detected."
                )

        return blocks, warnings

    @staticmethod
    def _pauses_every_campaign(
        changes: list[ProposedChange],
        campaigns: list[CampaignSnapshot],
        pending_actions: list[QueuedAction],
    ) -> int:
        """Number of active campaigns if the batch pauses all of them, else 0."""
        pausing = {
            c.entity_id for c in changes if c.action_type == ActionType.PAUSE_CAMPAIGN
        }
        if not pausing:
            return 0

        already_pausing = {
            a.change.entity_id
            for a in pending_actions
            if a.change.action_type == ActionType.PAUSE_CAMPAIGN
            and a.status not in (ActionStatus.REJECTED, ActionStatus.FAILED)
        }
        active = [c for c in campaigns if c.status.upper() == "ENABLED"]
        remaining = [c for c in active if c.id not in pausing | already_pausing]
        if active and not remaining:
            return len(active)
        return 0


class GuardrailSettingsStore(LoggerMixin):
    """Holds the current GuardrailSettings; mutated only by update/reset."""

    def __init__(self, defaults: GuardrailSettings | None = None) -> None:
        self._defaults = defaults or GuardrailSettings()
        self._current = self._defaults.model_copy()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> "GuardrailSettingsStore":
        """Build a store whose defaults come from application Settings."""
        return cls(
            GuardrailSettings(
                enabled=config.guardrails_enabled,
                allow_pause_all_campaigns=config.allow_pause_all_campaigns,
                warn_on_high_performer_pause=config.warn_on_high_performer_pause,
                high_performer_threshold=config.high_performer_threshold,
                allow_zero_budget=config.allow_zero_budget,
                budget_change_threshold_percent=config.budget_change_threshold_percent,
            )
        )

    @property
    def current(self) -> GuardrailSettings:
        return self._current

    def update(self, **changes: Any) -> GuardrailSettings:
        """Apply a partial update. Unknown fields or invalid values are rejected."""
        unknown = set(changes) - set(GuardrailSettings.model_fields)
        if unknown:
            raise ValidationError(f"Unknown guardrail settings: {sorted(unknown)}")

        with self._lock:
            try:
                updated = GuardrailSettings.model_validate(
                    {**self._current.model_dump(), **changes}
                )
            except PydanticValidationError as e:
                raise ValidationError(
                    "Invalid guardrail settings",
                    errors=[err["msg"] for err in e.errors()],
                ) from e
            self._current = updated

        self.logger.info("guardrail_settings_updated", changed=sorted(changes))
        return updated

    def reset(self) -> GuardrailSettings:
        with self._lock:
            self._current = self._defaults.model_copy()
        self.logger.info("guardrail_settings_reset")
        return self._current


def evaluate(
    change: ProposedChange,
    settings: GuardrailSettings,
    performance_score: float | None = None,
) -> GuardrailVerdict:
    """Module-level shortcut for GuardrailPolicyEngine().evaluate."""
    return GuardrailPolicyEngine().evaluate(change, settings, performance_score)
