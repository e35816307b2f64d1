"""Safety Module - Risk, guardrails and approval mechanisms for account changes.

This module provides safety mechanisms:
- Risk: Classification of proposed changes
- Guardrails: Protective rules with block/warn verdicts
- Approval Gate: Human sign-off workflow
- Audit: Append-only outcome log
- Rollback: Reversal of audited changes
"""

from .risk import (
    RiskClassifier,
    RiskPolicy,
    classify,
)
from .guardrails import (
    CampaignSnapshot,
    GuardrailDecision,
    GuardrailPolicyEngine,
    GuardrailSettings,
    GuardrailSettingsStore,
    GuardrailVerdict,
)
from .approval_gate import (
    ApprovalRequest,
    ApprovalStatus,
    ApprovalWorkflow,
    ChangeDetail,
    ChangeRequest,
    ImpactEstimate,
    Priority,
    PriorityPolicy,
    ReviewDecision,
)
from .audit import AuditLog
from .rollback import (
    RollbackEngine,
    RollbackResult,
    rollback_refusal,
)

__all__ = [
    # Risk
    "RiskClassifier",
    "RiskPolicy",
    "classify",
    # Guardrails
    "CampaignSnapshot",
    "GuardrailDecision",
    "GuardrailPolicyEngine",
    "GuardrailSettings",
    "GuardrailSettingsStore",
    "GuardrailVerdict",
    # Approval
    "ApprovalRequest",
    "ApprovalStatus",
    "ApprovalWorkflow",
    "ChangeDetail",
    "ChangeRequest",
    "ImpactEstimate",
    "Priority",
    "PriorityPolicy",
    "ReviewDecision",
    # Audit
    "AuditLog",
    # Rollback
    "RollbackEngine",
    "RollbackResult",
    "rollback_refusal",
]
