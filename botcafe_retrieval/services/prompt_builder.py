"""
Prompt assembly: inserts activated knowledge entries into the system prompt and the
message list at their configured positions.
"""

import re
from typing import Dict, List, Optional

from ..models.activation import ActivatedEntry, ChatMessage
from ..models.core import Position

AFTER_CHARACTER_PATTERNS = [
    re.compile(r'(\n\n)(?=###)'),
    re.compile(r'(\n\n)(?=---)'),
    re.compile(r'(\n\n)(?=Example:|Examples:)', re.IGNORECASE),
    re.compile(r'(\n\n)(?=\[Example)', re.IGNORECASE),
]

BEFORE_EXAMPLES_PATTERNS = [
    re.compile(r'(Example:|Examples:)', re.IGNORECASE),
    re.compile(r'(\[Example \d+\])', re.IGNORECASE),
    re.compile(r'(###\s*Examples)', re.IGNORECASE),
    re.compile(r'(---\s*Examples)', re.IGNORECASE),
]

EXAMPLE_END_PATTERNS = [
    re.compile(r'(\[Example \d+\][^\[]*?)(?=\n\n)', re.IGNORECASE),
    re.compile(r'(Example \d+:[^\n]*(?:\n(?!\n).*)*)', re.IGNORECASE),
]


def format_entry(candidate: ActivatedEntry) -> str:
    """Entry text, labelled with its first tag."""
    entry = candidate.entry
    if entry.tags:
        return f'[{entry.tags[0]}]\n{entry.text}'
    return entry.text


def group_by_position(candidates: List[ActivatedEntry]) -> Dict[Position, List[ActivatedEntry]]:
    groups: Dict[Position, List[ActivatedEntry]] = {}
    for candidate in candidates:
        groups.setdefault(candidate.entry.positioning.position, []).append(candidate)
    for members in groups.values():
        members.sort(key=lambda c: (c.entry.positioning.order, c.entry.id))
    return groups


def _join(candidates: List[ActivatedEntry]) -> str:
    return '\n\n'.join(format_entry(c) for c in candidates)


class PromptBuilder:
    """Places included entries around the character card, examples and system prompt edges."""

    def build_prompt(self, base_prompt: str, candidates: List[ActivatedEntry], bot_name: Optional[str] = None) -> str:
        """
        Build the system prompt with activated entries inserted.

        Args:
            base_prompt: System prompt with character card and examples
            candidates: Included entries
            bot_name: Bot name used to locate the character card

        Returns:
            Prompt text; at_depth entries are left for build_messages_with_depth_entries
        """
        groups = group_by_position(candidates)

        prompt = base_prompt
        prompt = self._insert_system_top(prompt, groups.get(Position.SYSTEM_TOP, []))
        prompt = self._insert_before_character(prompt, groups.get(Position.BEFORE_CHARACTER, []), bot_name)
        prompt = self._insert_after_character(prompt, groups.get(Position.AFTER_CHARACTER, []))
        prompt = self._insert_before_examples(prompt, groups.get(Position.BEFORE_EXAMPLES, []))
        prompt = self._insert_after_examples(prompt, groups.get(Position.AFTER_EXAMPLES, []))
        prompt = self._insert_system_bottom(prompt, groups.get(Position.SYSTEM_BOTTOM, []))
        return prompt

    @staticmethod
    def _insert_system_top(prompt: str, candidates: List[ActivatedEntry]) -> str:
        if not candidates:
            return prompt
        return f'{_join(candidates)}\n\n{prompt}'

    @staticmethod
    def _insert_system_bottom(prompt: str, candidates: List[ActivatedEntry]) -> str:
        if not candidates:
            return prompt
        return f'{prompt}\n\n{_join(candidates)}'

    @staticmethod
    def _insert_before_character(prompt: str, candidates: List[ActivatedEntry], bot_name: Optional[str]) -> str:
        if not candidates:
            return prompt
        text = _join(candidates)

        if bot_name:
            name = re.escape(bot_name)
            patterns = [rf'(Character:\s*{name})', rf'(Name:\s*{name})', rf'({name}:)']
            for pattern in patterns:
                match = re.search(pattern, prompt, re.IGNORECASE)
                if match:
                    return f'{prompt[:match.start()]}{text}\n\n{prompt[match.start():]}'

        first_break = prompt.find('\n')
        if first_break != -1:
            return f'{prompt[:first_break]}\n\n{text}{prompt[first_break:]}'
        return f'{text}\n\n{prompt}'

    @staticmethod
    def _insert_after_character(prompt: str, candidates: List[ActivatedEntry]) -> str:
        if not candidates:
            return prompt
        text = _join(candidates)

        for pattern in AFTER_CHARACTER_PATTERNS:
            match = pattern.search(prompt)
            if match:
                return f'{prompt[:match.end()]}{text}\n\n{prompt[match.end():]}'

        first_break = prompt.find('\n\n')
        if first_break != -1:
            second_break = prompt.find('\n\n', first_break + 2)
            split = second_break if second_break != -1 else first_break
            return f'{prompt[:split]}\n\n{text}{prompt[split:]}'
        return f'{prompt}\n\n{text}'

    @staticmethod
    def _insert_before_examples(prompt: str, candidates: List[ActivatedEntry]) -> str:
        if not candidates:
            return prompt
        text = _join(candidates)

        for pattern in BEFORE_EXAMPLES_PATTERNS:
            match = pattern.search(prompt)
            if match:
                return f'{prompt[:match.start()]}{text}\n\n{prompt[match.start():]}'
        return f'{prompt}\n\n{text}'

    @staticmethod
    def _insert_after_examples(prompt: str, candidates: List[ActivatedEntry]) -> str:
        if not candidates:
            return prompt
        text = _join(candidates)

        last_end = -1
        for pattern in EXAMPLE_END_PATTERNS:
            for match in pattern.finditer(prompt):
                last_end = max(last_end, match.end())

        if last_end != -1:
            return f'{prompt[:last_end]}\n\n{text}{prompt[last_end:]}'
        return f'{prompt}\n\n{text}'

    @staticmethod
    def build_messages_with_depth_entries(messages: List[ChatMessage], candidates: List[ActivatedEntry]) -> List[ChatMessage]:
        """Splice at_depth entries into the message list, depth counted from the end."""
        depth_entries = [c for c in candidates if c.entry.positioning.position == Position.AT_DEPTH]
        if not depth_entries:
            return list(messages)

        depth_entries.sort(key=lambda c: (c.entry.positioning.depth, c.entry.positioning.order, c.entry.id))
        result = list(messages)
        for candidate in depth_entries:
            index = max(0, len(result) - candidate.entry.positioning.depth)
            result.insert(index, ChatMessage(role=candidate.entry.positioning.role, content=format_entry(candidate)))
        return result

    @staticmethod
    def get_activation_debug_info(candidates: List[ActivatedEntry]) -> str:
        lines = ['=== Knowledge Activation Debug ===', f'Total Entries: {len(candidates)}', '']
        for position, members in group_by_position(candidates).items():
            lines.append(f'{position.value.upper()} ({len(members)}):')
            for c in members:
                lines.append(f'  - [{c.method.value}] Score: {c.score:.2f} | Order: {c.entry.positioning.order} | Tokens: {c.token_cost}')
                if c.matched_keywords:
                    lines.append(f'    Keywords: {", ".join(c.matched_keywords)}')
                if c.vector_similarity:
                    lines.append(f'    Similarity: {c.vector_similarity * 100:.1f}%')
            lines.append('')
        return '\n'.join(lines)
