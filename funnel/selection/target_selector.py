"""
Target Selector: Focus vs Explore Slot Planning.

Splits a batch into:
- Focus slots: weakest / least certain tracked concepts (exploitation)
- Explore slots: untested or rarely tested concepts (baseline data)

Explore slots are spread evenly through the batch so a session never
front-loads all the unfamiliar material.
"""

from __future__ import annotations

import random
from collections.abc import Mapping
from dataclasses import dataclass, field

from loguru import logger

from funnel.core.models import FunnelState
from funnel.mastery.model import MasteryModel

GENERAL_TARGET = "general"


@dataclass
class SelectionConfig:
    """Configuration for target selection."""

    min_total: int = 1
    max_total: int = 20
    explore_ratio: float = 0.2
    min_explore: int = 2
    max_distinct_focus: int = 4
    focus_repeat_pool: int = 10

    @classmethod
    def from_settings(cls, settings) -> SelectionConfig:
        return cls(**settings.get_selection_config())


@dataclass
class TargetSelection:
    """Result of one target selection."""

    total: int = 0
    focus_count: int = 0
    explore_count: int = 0
    focus_targets_distinct: list[str] = field(default_factory=list)
    explore_targets: list[str] = field(default_factory=list)
    targets_per_question: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.targets_per_question


class TargetSelector:
    """
    Chooses which concepts the next batch should practice.

    Selection among equally novel concepts is randomized; pass a seeded
    random.Random for reproducible selections.
    """

    def __init__(
        self,
        model: MasteryModel | None = None,
        config: SelectionConfig | None = None,
        rng: random.Random | None = None,
    ):
        self.model = model or MasteryModel()
        self.config = config or SelectionConfig()
        self.rng = rng or random.Random()

    def clamp_total(self, total_count: int) -> int:
        """Validate and clamp a requested batch size."""
        if isinstance(total_count, bool) or not isinstance(total_count, int) or total_count < 1:
            raise ValueError(f"total_count must be a positive integer, got {total_count!r}")
        return max(self.config.min_total, min(self.config.max_total, total_count))

    def select(
        self,
        universe: Mapping[str, str],
        state: FunnelState,
        total_count: int,
    ) -> TargetSelection:
        """
        Select focus and explore targets for a batch.

        Args:
            universe: ConceptKey -> display name for the guide
            state: Learner mastery state
            total_count: Requested number of questions

        Returns:
            TargetSelection with at most total_count targets per question
        """
        total = self.clamp_total(total_count)
        if not universe:
            logger.debug("Empty concept universe - nothing to select")
            return TargetSelection()

        ranked = self.model.rank_concepts(state)

        # 1. Slot budget
        if ranked:
            explore_count = max(self.config.min_explore, round(self.config.explore_ratio * total))
            explore_count = min(explore_count, total)
        else:
            explore_count = total
        focus_count = total - explore_count

        # 2. Focus targets
        distinct_needed = min(self.config.max_distinct_focus, focus_count, len(ranked))
        focus_distinct = [r.key for r in ranked[:distinct_needed]]
        repeat_pool = [r.key for r in ranked[: min(self.config.focus_repeat_pool, len(ranked))]]

        focus_queue = list(focus_distinct)
        i = len(focus_queue)
        while len(focus_queue) < focus_count and repeat_pool:
            focus_queue.append(repeat_pool[i % len(repeat_pool)])
            i += 1

        # 3. Explore targets
        explore_targets = self._pick_explore(universe, state, explore_count, set(focus_distinct))

        # 4. Interleave
        targets = self._interleave(total, focus_queue, explore_targets, repeat_pool)

        logger.debug(
            f"Selected {len(focus_distinct)} focus / {len(explore_targets)} explore "
            f"targets for {total} slots"
        )
        return TargetSelection(
            total=total,
            focus_count=focus_count,
            explore_count=explore_count,
            focus_targets_distinct=focus_distinct,
            explore_targets=explore_targets,
            targets_per_question=targets,
        )

    def _pick_explore(
        self,
        universe: Mapping[str, str],
        state: FunnelState,
        count: int,
        avoid: set[str],
    ) -> list[str]:
        """Least-attempted universe keys, shuffled within equal attempt counts."""
        if count <= 0:
            return []

        keys = [k for k in universe if k not in avoid] or list(universe)

        by_attempts: dict[int, list[str]] = {}
        for key in keys:
            record = state.get(key)
            attempts = record.attempts if record else 0
            by_attempts.setdefault(attempts, []).append(key)

        ordered: list[str] = []
        for attempts in sorted(by_attempts):
            group = sorted(by_attempts[attempts])
            self.rng.shuffle(group)
            ordered.extend(group)

        # Small universes repeat concepts across slots
        return [ordered[i % len(ordered)] for i in range(count)]

    @staticmethod
    def _interleave(
        total: int,
        focus_queue: list[str],
        explore_targets: list[str],
        repeat_pool: list[str],
    ) -> list[str]:
        """Spread explore targets evenly among focus targets."""
        result: list[str] = []
        i_focus = 0
        i_explore = 0
        stride = max(1, total // len(explore_targets)) if explore_targets else total

        for i in range(total):
            if i_explore < len(explore_targets) and i % stride == 0:
                result.append(explore_targets[i_explore])
                i_explore += 1
            elif i_focus < len(focus_queue):
                result.append(focus_queue[i_focus])
                i_focus += 1
            elif i_explore < len(explore_targets):
                result.append(explore_targets[i_explore])
                i_explore += 1
            elif repeat_pool:
                result.append(repeat_pool[i % len(repeat_pool)])
            else:
                result.append(GENERAL_TARGET)
        return result
