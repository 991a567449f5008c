"""
Core Module - Shared models and error types.
"""

from funnel.core.errors import (
    FunnelError,
    GenerationError,
    InvariantViolation,
    QuestionValidationError,
    RemoteStoreError,
)
from funnel.core.models import (
    ConceptMasteryRecord,
    FunnelBatchMeta,
    FunnelState,
    GuideConcept,
    GuideContext,
    Question,
    SourceCounts,
    SourceType,
    VariantAssignment,
    load_guide,
)

__all__ = [
    # Errors
    "FunnelError",
    "QuestionValidationError",
    "GenerationError",
    "RemoteStoreError",
    "InvariantViolation",
    # Models
    "Question",
    "SourceType",
    "ConceptMasteryRecord",
    "FunnelState",
    "FunnelBatchMeta",
    "SourceCounts",
    "GuideConcept",
    "GuideContext",
    "VariantAssignment",
    "load_guide",
]
