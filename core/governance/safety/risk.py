"""Risk classification of proposed changes."""

from __future__ import annotations

from pydantic import Field

from common.models import BaseModel

from ..models import ActionType, ProposedChange, RiskLevel, to_number


class RiskPolicy(BaseModel):
    """Thresholds used by the risk classifier."""

    high_performer_threshold: float = Field(default=70, ge=0, le=100)
    budget_change_threshold_percent: float = Field(default=20, gt=0)

    @classmethod
    def from_settings(cls, settings) -> "RiskPolicy":
        """Derive a policy from the current guardrail settings."""
        return cls(
            high_performer_threshold=settings.high_performer_threshold,
            budget_change_threshold_percent=settings.budget_change_threshold_percent,
        )


class RiskClassifier:
    """Deterministic, side-effect free scoring of a proposed change.

    Rules, first match wins:

    - pausing every campaign, or pausing/removing an entity whose performance
      score is at or above the high performer threshold, is high risk;
    - setting a budget to zero, or cutting it by more than the threshold, is
      high risk;
    - raising a budget by more than the threshold is medium risk;
    - bulk edits are medium risk;
    - everything else (status toggles, bid tweaks, small budget moves) is low.
    """

    def __init__(self, policy: RiskPolicy | None = None) -> None:
        self.policy = policy or RiskPolicy()

    def classify(
        self,
        change: ProposedChange,
        performance_score: float | None = None,
    ) -> RiskLevel:
        if change.action_type == ActionType.PAUSE_ALL_CAMPAIGNS:
            return RiskLevel.HIGH

        if (
            change.is_pause
            and performance_score is not None
            and performance_score >= self.policy.high_performer_threshold
        ):
            return RiskLevel.HIGH

        if change.is_budget_change:
            if to_number(change.new_value) == 0:
                return RiskLevel.HIGH

            percent = change.budget_change_percent
            if percent is not None:
                if percent < 0 and abs(percent) > self.policy.budget_change_threshold_percent:
                    return RiskLevel.HIGH
                if percent > self.policy.budget_change_threshold_percent:
                    return RiskLevel.MEDIUM

        if change.action_type == ActionType.BULK_EDIT:
            return RiskLevel.MEDIUM

        return RiskLevel.LOW


def classify(
    change: ProposedChange,
    performance_score: float | None = None,
    policy: RiskPolicy | None = None,
) -> RiskLevel:
    """Classify ``change`` with ``policy`` (defaults when omitted)."""
    return RiskClassifier(policy).classify(change, performance_score)
