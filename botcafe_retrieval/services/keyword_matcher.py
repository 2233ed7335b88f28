"""
Keyword matching of knowledge entries against recent conversation messages.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional

from ..models.activation import ChatMessage
from ..models.core import KeywordsLogic, KnowledgeEntry, MessageRole
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

PRIMARY_POINTS = 2
SECONDARY_POINTS = 1


@dataclass
class KeywordMatchResult:
    matched: bool
    score: int
    primary_matches: List[str] = field(default_factory=list)
    secondary_matches: List[str] = field(default_factory=list)

    @property
    def matched_keywords(self) -> List[str]:
        return self.primary_matches + self.secondary_matches


class KeywordMatcher:
    """Matches primary and secondary keywords with selective logic."""

    def __init__(self, default_scan_depth: int = 2):
        self.default_scan_depth = default_scan_depth

    def match_entry(self, entry: KnowledgeEntry, messages: List[ChatMessage], system_prompt: Optional[str] = None) -> KeywordMatchResult:
        """
        Match a knowledge entry against the scanned messages.

        Args:
            entry: Entry with keyword activation settings
            messages: Conversation messages, oldest first
            system_prompt: Assembled system prompt, scanned when the entry allows system sources

        Returns:
            KeywordMatchResult; score is 2 per primary and 1 per secondary keyword hit
        """
        settings = entry.activation
        primary_keys = [k for k in settings.primary_keys if k and k.strip()]
        secondary_keys = [k for k in settings.secondary_keys if k and k.strip()]

        if not primary_keys and not secondary_keys:
            return KeywordMatchResult(matched=False, score=0)

        search_text = self.build_search_text(entry, messages, system_prompt)

        primary_matches = [k for k in primary_keys if self.match_keyword(search_text, k, entry)]
        secondary_matches = [k for k in secondary_keys if self.match_keyword(search_text, k, entry)]

        matched = self.apply_logic(settings.keywords_logic, primary_matches, secondary_matches, primary_keys, secondary_keys)
        score = len(primary_matches) * PRIMARY_POINTS + len(secondary_matches) * SECONDARY_POINTS

        return KeywordMatchResult(matched=matched,
                                  score=score,
                                  primary_matches=primary_matches,
                                  secondary_matches=secondary_matches)

    def build_search_text(self, entry: KnowledgeEntry, messages: List[ChatMessage], system_prompt: Optional[str] = None) -> str:
        settings = entry.activation
        depth = settings.scan_depth if settings.scan_depth is not None else self.default_scan_depth
        scanned = messages[-depth:] if depth > 0 else []

        parts = []
        for message in scanned:
            if message.role == MessageRole.USER and settings.match_in_user_messages:
                parts.append(message.content)
            elif message.role == MessageRole.ASSISTANT and settings.match_in_bot_messages:
                parts.append(message.content)
            elif message.role == MessageRole.SYSTEM and settings.match_in_system_prompts:
                parts.append(message.content)

        if system_prompt and settings.match_in_system_prompts:
            parts.append(system_prompt)

        return '\n'.join(parts)

    @staticmethod
    def match_keyword(text: str, keyword: str, entry: KnowledgeEntry) -> bool:
        """Check a single keyword; an invalid regex is a non-match."""
        settings = entry.activation
        flags = 0 if settings.case_sensitive else re.IGNORECASE

        if settings.use_regex:
            try:
                return re.search(keyword, text, flags) is not None
            except re.error as e:
                logger.warning(f'Invalid keyword regex {keyword!r} on entry {entry.id}: {e}')
                return False

        if settings.match_whole_words:
            return re.search(rf'\b{re.escape(keyword)}\b', text, flags) is not None

        if settings.case_sensitive:
            return keyword in text
        return keyword.lower() in text.lower()

    @staticmethod
    def apply_logic(logic: KeywordsLogic, primary_matches: List[str], secondary_matches: List[str], primary_keys: List[str],
                    secondary_keys: List[str]) -> bool:
        if logic == KeywordsLogic.AND_ANY:
            return bool(primary_matches or secondary_matches)

        if logic == KeywordsLogic.AND_ALL:
            all_primary = not primary_keys or len(primary_matches) == len(primary_keys)
            all_secondary = not secondary_keys or len(secondary_matches) == len(secondary_keys)
            return all_primary and all_secondary

        if logic == KeywordsLogic.NOT_ALL:
            all_primary = bool(primary_keys) and len(primary_matches) == len(primary_keys)
            all_secondary = bool(secondary_keys) and len(secondary_matches) == len(secondary_keys)
            return not (all_primary and all_secondary)

        if logic == KeywordsLogic.NOT_ANY:
            return not primary_matches and not secondary_matches

        return False
