"""
Mastery model and pure state updates.
"""

from .model import MasteryConfig, MasteryModel, apply_answer, record_tutor_touch

__all__ = ["MasteryConfig", "MasteryModel", "apply_answer", "record_tutor_touch"]
