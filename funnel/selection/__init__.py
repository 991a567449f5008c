from .target_selector import SelectionConfig, TargetSelection, TargetSelector

__all__ = ["SelectionConfig", "TargetSelection", "TargetSelector"]
