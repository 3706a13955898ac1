"""ORM models.  Importing this package registers every table on Base.metadata."""

from guardian_kernel.models.appeal import (
    AppealModel,
    ApprovalStepModel,
    StepDecisionModel,
)
from guardian_kernel.models.grant import GrantModel
from guardian_kernel.models.policy import PolicyModel

__all__ = [
    "AppealModel",
    "ApprovalStepModel",
    "GrantModel",
    "PolicyModel",
    "StepDecisionModel",
]
