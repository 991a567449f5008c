from .assignment import VariantAssigner, tier_order

__all__ = ["VariantAssigner", "tier_order"]
