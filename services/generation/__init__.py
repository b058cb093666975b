"""
Credit-settled generation: submission pipeline and job reconciliation.
"""

from .models import (
    Account,
    CreditGrant,
    ErrorCode,
    GenerationError,
    GenerationInputs,
    ModelSelector,
    ProviderJobHandle,
    ReconcileSummary,
    SubmissionResult,
)

__all__ = [
    "Account",
    "CreditGrant",
    "ErrorCode",
    "GenerationError",
    "GenerationInputs",
    "ModelSelector",
    "ProviderJobHandle",
    "ReconcileSummary",
    "SubmissionResult",
]
