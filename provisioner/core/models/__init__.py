"""
Domain models — Pydantic types for the provisioner.

All models are re-exported here for convenient access:

    from provisioner.core.models import StepDescriptor, ExecutionRecord
"""

from provisioner.core.models.record import (
    ExecutionRecord,
    RecordStore,
    StepStatus,
)
from provisioner.core.models.step import STEP_KINDS, StepDescriptor, StepKind, VerifySpec
from provisioner.core.models.verification import CheckOutcome, VerificationResult

__all__ = [
    "STEP_KINDS",
    "CheckOutcome",
    "ExecutionRecord",
    "RecordStore",
    "StepDescriptor",
    "StepKind",
    "StepStatus",
    "VerificationResult",
    "VerifySpec",
]
