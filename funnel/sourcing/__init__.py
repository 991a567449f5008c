"""
Tiered batch sourcing.

Modules:
- pools: ItemStore port and concept scoring for verified / bank items
- generation: Generation service port, HTTP client and payload validation
- pipeline: Concurrent per-target sourcing with shared fingerprint claims
"""

from .generation import GenerationRequest, HttpQuestionGenerator, QuestionGenerator
from .pipeline import BatchResult, BatchSourcingPipeline, PipelineConfig, TargetFill, WorkingFingerprints
from .pools import InMemoryItemStore, ItemStore

__all__ = [
    "BatchSourcingPipeline",
    "BatchResult",
    "PipelineConfig",
    "TargetFill",
    "WorkingFingerprints",
    "ItemStore",
    "InMemoryItemStore",
    "QuestionGenerator",
    "GenerationRequest",
    "HttpQuestionGenerator",
]
