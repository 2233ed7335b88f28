"""
Token budget allocation for activated knowledge entries.
"""

import math
from dataclasses import dataclass
from typing import List

from ..models.activation import ActivatedEntry, BudgetConfig
from ..models.core import ExclusionReason
from ..utils.exceptions import InputError
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

# Labels and separators added around each injected entry
FORMATTING_OVERHEAD = 10


@dataclass
class BudgetStats:
    total_budget: int
    used_budget: int
    remaining_budget: int
    percent_used: float
    total_entries: int
    included_entries: int
    excluded_entries: int
    ignore_budget_entries: int
    average_tokens_per_entry: float


class BudgetManager:
    """Greedy token budget allocation.

    Included token cost never exceeds the budget. Entries flagged ignore_budget are
    admitted first but still pay their cost.
    """

    @staticmethod
    def calculate_budget(config: BudgetConfig) -> int:
        """
        Tokens available for injected knowledge.

        floor(max(0, min(max_context * pct / 100, cap) - reserved))
        """
        if config.max_context_tokens < 0 or config.budget_cap_tokens < 0 or config.reserved_for_conversation < 0:
            raise InputError('Budget token counts must not be negative')
        if not 0 <= config.budget_percentage <= 100:
            raise InputError(f'budget_percentage must be within 0-100, got {config.budget_percentage}')

        percentage_budget = config.max_context_tokens * (config.budget_percentage / 100)
        capped = min(percentage_budget, config.budget_cap_tokens)
        return math.floor(max(0, capped - config.reserved_for_conversation))

    @staticmethod
    def estimate_tokens(text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / 4)

    def estimate_entry_tokens(self, text: str, include_formatting: bool = True) -> int:
        return self.estimate_tokens(text) + (FORMATTING_OVERHEAD if include_formatting else 0)

    def entry_cost(self, candidate: ActivatedEntry) -> int:
        configured = candidate.entry.budget.token_cost
        return configured if configured > 0 else self.estimate_entry_tokens(candidate.entry.text)

    @staticmethod
    def priority_key(candidate: ActivatedEntry):
        entry = candidate.entry
        return (not entry.budget.ignore_budget, -candidate.score, entry.positioning.order, entry.id)

    def apply_budget(self, candidates: List[ActivatedEntry], budget: int) -> int:
        """
        Admit still-included candidates greedily by priority.

        Candidates that do not fit are marked budget_exceeded; smaller ones further down
        the order may still fit.

        Args:
            candidates: Candidates with token_cost set; already-excluded ones are skipped
            budget: Token budget

        Returns:
            Tokens used by the admitted candidates
        """
        used = 0
        for candidate in sorted((c for c in candidates if c.included), key=self.priority_key):
            if used + candidate.token_cost <= budget:
                used += candidate.token_cost
            else:
                candidate.exclusion_reason = ExclusionReason.BUDGET_EXCEEDED
                logger.debug(f'Entry {candidate.entry.id} excluded: needs {candidate.token_cost} tokens, '
                             f'{budget - used} remaining')
        return used

    def get_usage_stats(self, candidates: List[ActivatedEntry], total_budget: int) -> BudgetStats:
        included = [c for c in candidates if c.included]
        used = sum(c.token_cost for c in included)
        return BudgetStats(total_budget=total_budget,
                           used_budget=used,
                           remaining_budget=max(0, total_budget - used),
                           percent_used=(used / total_budget * 100) if total_budget > 0 else 0.0,
                           total_entries=len(candidates),
                           included_entries=len(included),
                           excluded_entries=len(candidates) - len(included),
                           ignore_budget_entries=sum(1 for c in included if c.entry.budget.ignore_budget),
                           average_tokens_per_entry=(used / len(included)) if included else 0.0)

    @staticmethod
    def format_budget_stats(stats: BudgetStats) -> str:
        lines = [
            '=== Token Budget Statistics ===',
            f'Total Budget: {stats.total_budget} tokens',
            f'Used: {stats.used_budget} tokens ({stats.percent_used:.1f}%)',
            f'Remaining: {stats.remaining_budget} tokens',
            '',
            f'Total Entries: {stats.total_entries}',
            f'  Included: {stats.included_entries}',
            f'  Excluded: {stats.excluded_entries}',
            f'  Ignore Budget: {stats.ignore_budget_entries}',
            '',
            f'Average Tokens/Entry: {stats.average_tokens_per_entry:.1f}',
        ]
        return '\n'.join(lines)
