"""
Practice Funnel: adaptive practice scheduler.

Decides which concepts a learner practices next, sources unseen questions
for them from tiered pools, and tracks per-concept mastery.

Components:
- concepts: ConceptKey normalization and per-guide concept universe
- mastery: Beta-binomial mastery model and pure answer updates
- selection: Focus / explore target selection
- dedup: Question fingerprints and the cross-device seen index
- sourcing: Tiered batch sourcing (verified, bank, generation)
- variants: Stable tier-order assignment per (learner, guide)
- scheduler: Session entry point returning side-effect commands
"""

__version__ = "0.3.0"
