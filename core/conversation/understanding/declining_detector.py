"""
Declining-intent detection.

Runs before classification so a refusal never reaches tool execution.
Explicit refusals ("cancel", "stop", "hủy") always count. A bare negative
("no", "không") only counts when it answers an offer or a pending flow. A
question is never a decline, whatever negation it contains.
"""

import logging
import re
from typing import Optional

from models.schemas import DecliningAnalysis

logger = logging.getLogger(__name__)


_TRAILING_PUNCT = re.compile(r"[.!,;\s]+$")
_WS = re.compile(r"\s+")


def normalize(message: str) -> str:
    text = _WS.sub(" ", message.strip().lower())
    return _TRAILING_PUNCT.sub("", text)


class DecliningIntentDetector:
    """Recognizes explicit refusals and offer-answering negatives"""

    EXPLICIT_REFUSAL_PATTERNS = [
        r"^(?:(?:no|nope|nah)[,\s]+)?(?:cancel|stop|abort|quit)(?: (?:it|that|this))?(?: please)?$",
        r"^(?:(?:no|nope)[,\s]+)?(?:never ?mind|forget (?:it|about it))$",
        r"^no,? thanks?(?: you)?$",
        r"^(?:i )?(?:don'?t|do not) (?:want|need) (?:it|that|this|to|a task|one)(?: anymore)?$",
        r"^(?:i'?m )?not interested$",
        r"^(?:don'?t|do not) (?:create|do|make) (?:it|that|this)$",
        r"^(?:decline|refuse|reject|skip(?: it)?|pass)$",
    ]

    VIETNAMESE_REFUSAL_PATTERNS = [
        r"^(?:không,? )?(?:hủy|huỷ)(?: bỏ| đi)?$",
        r"^(?:không,? )?dừng(?: lại)?$",
        r"^thôi(?: khỏi| không cần| đi)?$",
        r"^không (?:cần|muốn)(?: nữa| đâu)?$",
        r"^bỏ qua$",
        r"^không tạo(?: nữa)?$",
    ]

    BARE_NEGATIVES = {"no", "nope", "nah", "n", "không", "ko", "k", "không đâu"}

    QUESTION_STARTERS = re.compile(
        r"^(?:can|could|would|will|do|does|did|is|are|was|what|how|why|when|where|who|which|"
        r"should|may|might|have|has|bạn có thể|có thể|làm sao|tại sao)\b"
    )

    OFFER_MARKERS = re.compile(
        r"(?:\?\s*$|would you like|do you want|shall i|should i|want me to|reply |options:|"
        r"'confirm|bạn có muốn)",
        re.IGNORECASE,
    )

    def __init__(self):
        self._explicit = [re.compile(p) for p in self.EXPLICIT_REFUSAL_PATTERNS]
        self._vietnamese = [re.compile(p) for p in self.VIETNAMESE_REFUSAL_PATTERNS]

    def is_question(self, message: str) -> bool:
        text = message.strip().lower()
        return text.endswith("?") or bool(self.QUESTION_STARTERS.match(text))

    def is_offer(self, assistant_text: Optional[str]) -> bool:
        return bool(assistant_text) and bool(self.OFFER_MARKERS.search(assistant_text))

    def detect(self, message: str, previous_assistant_text: Optional[str] = None,
               flow_pending: bool = False, bare_negative_declines: bool = True) -> DecliningAnalysis:
        """
        Decide whether a message declines.

        Args:
            message: Raw user message
            previous_assistant_text: The assistant turn immediately before this message
            flow_pending: True while a task flow or confirmation is in progress
            bare_negative_declines: False while the awaited answer may itself be "no",
                e.g. an optional deadline

        Returns:
            DecliningAnalysis with the decline type used to pick a response
        """
        if not message or self.is_question(message):
            return DecliningAnalysis()

        text = normalize(message)

        for pattern in self._vietnamese:
            if pattern.match(text):
                return self._result("vietnamese", flow_pending, 0.95, pattern.pattern)

        for pattern in self._explicit:
            if pattern.match(text):
                return self._result("english", flow_pending, 0.95, pattern.pattern)

        if text in self.BARE_NEGATIVES and bare_negative_declines:
            if flow_pending or self.is_offer(previous_assistant_text):
                language = "vietnamese" if text in ("không", "ko", "k", "không đâu") else "english"
                return self._result(language, flow_pending, 0.85, "bare_negative")
            logger.debug(f"Bare negative '{text}' without a preceding offer, not a decline")

        return DecliningAnalysis()

    def _result(self, language: str, flow_pending: bool, confidence: float,
                pattern: str) -> DecliningAnalysis:
        decline_type = "task_decline" if flow_pending else f"{language}_decline"
        return DecliningAnalysis(
            is_declining=True,
            decline_type=decline_type,
            confidence=confidence,
            matched_pattern=pattern,
        )

    def analyze_context(self, conversation_context: str) -> DecliningAnalysis:
        """
        Decline analysis over a rendered conversation context.

        Looks only at the latest user line, paired with the assistant line
        before it, so yes/no questions elsewhere in the history are ignored.
        """
        last_user = None
        previous_assistant = None
        previous_assistant_for_user = None
        for line in conversation_context.splitlines():
            if line.startswith("User: "):
                last_user = line[len("User: "):]
                previous_assistant_for_user = previous_assistant
            elif line.startswith("Assistant: "):
                previous_assistant = line[len("Assistant: "):]
        if last_user is None:
            return DecliningAnalysis()
        return self.detect(last_user, previous_assistant_for_user)

    DECLINE_RESPONSES = {
        "task_decline": (
            "No problem, I've cancelled that and nothing was created. "
            "Just let me know whenever you want to set up a task."
        ),
        "vietnamese_decline": "Không sao cả. Khi nào cần tạo hay quản lý công việc, bạn cứ nói với mình nhé.",
        "english_decline": "No problem. Let me know if there's anything else I can help with.",
    }

    def build_response(self, analysis: DecliningAnalysis) -> str:
        return self.DECLINE_RESPONSES.get(
            analysis.decline_type,
            "Understood. I won't do anything for now."
        )
