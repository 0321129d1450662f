"""
Moderation filter for the task assistant.

Runs upstream of the orchestrator. A message that fails moderation never
reaches classification or tool execution; the caller returns the canned
response instead.

Checks, in priority order:
1. Threats of violence
2. Abusive language aimed at people
3. Prompt injection attempts
"""

import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

logger = logging.getLogger(__name__)


class ModerationStatus(Enum):
    """Moderation check result status"""
    SAFE = "safe"
    THREAT = "threat"
    ABUSE = "abuse"
    PROMPT_INJECTION = "prompt_injection"


@dataclass
class ModerationResult:
    """Result of a moderation check"""
    status: ModerationStatus
    safe: bool
    reason: Optional[str] = None
    response: Optional[str] = None  # Override response if not safe
    matched_pattern: Optional[str] = None


class ModerationFilter:
    """
    Pattern-based content moderation.

    Usage:
        result = moderation_filter.check(user_message)
        if not result.safe:
            return result.response
    """

    THREAT_PATTERNS = [
        r"\b(i('?m| am)\s*going\s*to|i('?ll| will))\s*(kill|hurt|attack|shoot|stab)\b",
        r"\b(bomb|shoot\s*up)\s*(the|a|my)\s*(office|school|building)\b",
    ]

    ABUSE_PATTERNS = [
        r"\b(you('?re| are)\s*(an?\s*)?(idiot|moron|stupid|useless\s*piece))\b",
        r"\b(f+u+c+k+\s*(you|off))\b",
        r"\b(đồ\s*ngu|thằng\s*ngu)\b",
    ]

    PROMPT_INJECTION_PATTERNS = [
        r"\b(ignore\s*(previous|all|above|prior)\s*(instructions?|prompts?|rules?))\b",
        r"\b(disregard\s*(your|all|the)\s*(instructions?|programming|rules?))\b",
        r"\b(you\s*are\s*now\s*(a|an|acting\s*as))\b",
        r"\b(system\s*prompt|admin\s*mode|developer\s*mode)\b",
        r"\b(jailbreak|dan\s*mode|evil\s*mode)\b",
        r"\b(what\s*(are|is)\s*(your|the)\s*(instructions?|system\s*prompt))\b",
    ]

    THREAT_RESPONSE = (
        "I can't help with that. If someone is in danger, please contact your local "
        "emergency services right away."
    )

    ABUSE_RESPONSE = (
        "Let's keep things respectful. I'm happy to help you create, update or review your tasks."
    )

    PROMPT_INJECTION_RESPONSE = """I'm your task assistant. I can help you:

• Create tasks with a priority and deadline
• Update or delete existing tasks
• List your tasks and show statistics

What would you like to do?"""

    def __init__(self):
        """Initialize the filter with compiled regex patterns"""
        self._threat_patterns = [re.compile(p, re.IGNORECASE) for p in self.THREAT_PATTERNS]
        self._abuse_patterns = [re.compile(p, re.IGNORECASE) for p in self.ABUSE_PATTERNS]
        self._injection_patterns = [re.compile(p, re.IGNORECASE) for p in self.PROMPT_INJECTION_PATTERNS]

    def check(self, content: str) -> ModerationResult:
        """
        Check user content before it reaches the orchestrator.

        Args:
            content: The user's input message

        Returns:
            ModerationResult with `safe` and, when unsafe, a reason and override response
        """
        if not content or not content.strip():
            return ModerationResult(status=ModerationStatus.SAFE, safe=True)

        text = content.lower().strip()

        threat_match = self._check_patterns(text, self._threat_patterns)
        if threat_match:
            logger.warning(f"Threat detected in input: '{threat_match}'")
            return ModerationResult(
                status=ModerationStatus.THREAT,
                safe=False,
                reason="Threat of violence detected",
                response=self.THREAT_RESPONSE,
                matched_pattern=threat_match,
            )

        abuse_match = self._check_patterns(text, self._abuse_patterns)
        if abuse_match:
            logger.info(f"Abusive language detected: '{abuse_match}'")
            return ModerationResult(
                status=ModerationStatus.ABUSE,
                safe=False,
                reason="Abusive language detected",
                response=self.ABUSE_RESPONSE,
                matched_pattern=abuse_match,
            )

        injection_match = self._check_patterns(text, self._injection_patterns)
        if injection_match:
            logger.warning(f"Prompt injection attempt detected: '{injection_match}'")
            return ModerationResult(
                status=ModerationStatus.PROMPT_INJECTION,
                safe=False,
                reason="Potential prompt injection detected",
                response=self.PROMPT_INJECTION_RESPONSE,
                matched_pattern=injection_match,
            )

        return ModerationResult(status=ModerationStatus.SAFE, safe=True)

    def _check_patterns(self, text: str, patterns: List[re.Pattern]) -> Optional[str]:
        """Return the first matched text, or None"""
        for pattern in patterns:
            match = pattern.search(text)
            if match:
                return match.group(0)
        return None


# Global singleton instance
moderation_filter = ModerationFilter()
