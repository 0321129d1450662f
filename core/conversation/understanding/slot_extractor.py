"""
Slot extraction module.

Each slot has its own heuristic extractor that maps a raw user reply to a
normalized value: priorities to HIGH/MEDIUM/LOW, relative dates to concrete
ISO timestamps, task references to ids. English and Vietnamese phrasings
are both recognized.
"""

import calendar
import re
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from models.schemas import Priority

logger = logging.getLogger(__name__)

END_OF_DAY = "T23:59:59"

CREATION_TRIGGER = re.compile(
    r"^(?:please\s+)?(?:can you\s+|could you\s+)?"
    r"(?:create|add|make|new|set up|tạo|thêm)\s+(?:me\s+)?(?:a\s+|an\s+|one\s+)?(?:new\s+|mới\s+)?"
    r"(?:task|todo|to-do|công việc|nhiệm vụ|việc)\b[:\s]*",
    re.IGNORECASE,
)

UPDATE_TRIGGER = re.compile(
    r"^(?:please\s+)?(?:update|edit|change|modify|sửa|cập nhật)\s+(?:the\s+|my\s+)?"
    r"(?:task|công việc)\b[:\s]*",
    re.IGNORECASE,
)

DELETE_TRIGGER = re.compile(
    r"^(?:please\s+)?(?:delete|remove|xóa|xoá)\s+(?:the\s+|my\s+)?(?:task|công việc)\b[:\s]*",
    re.IGNORECASE,
)

NON_TITLE_TOKENS = {
    "no", "nope", "nah", "yes", "ok", "okay", "oke", "sure", "cancel", "stop", "không",
    "có", "ừ", "hủy", "thôi", "high", "medium", "low", "task", "a task", "it", "this", "that",
}

_INLINE_PRIORITY = re.compile(
    r"\s*,?\s*(?:with\s+)?(?:(high|medium|low|urgent)\s+priority|priority\s*[:=]?\s*(high|medium|low))\b",
    re.IGNORECASE,
)
_INLINE_DEADLINE = re.compile(
    r"\s*,?\s*(?:due\s+|by\s+|before\s+|deadline\s+)?"
    r"(tomorrow|today|next week|next month|\d{4}-\d{2}-\d{2}|ngày mai|hôm nay|tuần sau)\s*$",
    re.IGNORECASE,
)


@dataclass
class Extraction:
    """A value pulled from a message. `found` distinguishes an explicit None from no match."""
    found: bool
    value: Any = None

    @classmethod
    def none(cls) -> "Extraction":
        return cls(found=False)


class SlotExtractor:
    """
    Per-slot heuristic extractors.

    `extract(slot, message)` dispatches to the extractor registered for the
    slot. An unknown slot name yields no value rather than an error.
    """

    PRIORITY_PATTERNS = [
        (r"\b(?:not (?:important|urgent)|không (?:quan trọng|gấp))\b", Priority.LOW),
        (r"\b(?:high|urgent|critical|important|cao|quan trọng|khẩn|gấp)\b", Priority.HIGH),
        (r"\b(?:low|minor|thấp)\b", Priority.LOW),
        (r"\b(?:medium|normal|moderate|trung bình|bình thường)\b", Priority.MEDIUM),
    ]

    NO_DEADLINE_PATTERNS = [
        r"^(?:no|none|nope|không|ko)$",
        r"\bno (?:deadline|due date|rush)\b",
        r"\bwithout (?:a )?deadline\b",
        r"\bkhông có(?: hạn| deadline)?\b",
        r"\bkhông cần hạn\b",
        r"\bwhenever\b",
    ]

    FIELD_SYNONYMS = {
        "title": ["title", "name", "tên", "tiêu đề"],
        "description": ["description", "desc", "details", "mô tả"],
        "priority": ["priority", "ưu tiên"],
        "deadline": ["deadline", "due date", "due", "hạn", "thời hạn"],
        "status": ["status", "state", "trạng thái"],
    }

    WEEKDAYS = {
        "monday": 0, "tuesday": 1, "wednesday": 2, "thursday": 3,
        "friday": 4, "saturday": 5, "sunday": 6,
    }

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or datetime.now
        self._priority_patterns = [(re.compile(p, re.IGNORECASE), v) for p, v in self.PRIORITY_PATTERNS]
        self._no_deadline_patterns = [re.compile(p, re.IGNORECASE) for p in self.NO_DEADLINE_PATTERNS]
        self._extractors: Dict[str, Callable[[str], Extraction]] = {
            "title": self.extract_title,
            "priority": self.extract_priority,
            "deadline": self.extract_deadline,
            "task_id": self.extract_task_id,
            "field": self.extract_field,
            "value": self.extract_value,
            "description": self.extract_value,
        }

    def has_extractor(self, slot: str) -> bool:
        return slot in self._extractors

    def extract(self, slot: str, message: str) -> Extraction:
        extractor = self._extractors.get(slot)
        if extractor is None:
            logger.warning(f"No extractor registered for slot '{slot}'")
            return Extraction.none()
        return extractor(message)

    # Title

    def extract_title(self, message: str) -> Extraction:
        text = CREATION_TRIGGER.sub("", message.strip())
        text = re.sub(r"^(?:called|named|titled|tên là|là)\s+", "", text, flags=re.IGNORECASE)
        text = text.strip().strip("\"'“”").strip()
        text = text.rstrip(".!")
        if len(text) < 2 or len(text) >= 100:
            return Extraction.none()
        if text.lower() in NON_TITLE_TOKENS or text.endswith("?"):
            return Extraction.none()
        return Extraction(True, text)

    def split_creation_message(self, message: str) -> Tuple[Optional[str], Dict[str, Any]]:
        """
        Split a creation command into a title and inline slots.

        "create task write report high priority tomorrow" gives
        ("write report", {"priority": "HIGH", "deadline": "<tomorrow>"}).
        """
        match = CREATION_TRIGGER.match(message.strip())
        if not match:
            return None, {}
        remainder = message.strip()[match.end():]
        slots: Dict[str, Any] = {}

        priority_match = _INLINE_PRIORITY.search(remainder)
        if priority_match:
            word = (priority_match.group(1) or priority_match.group(2)).lower()
            slots["priority"] = Priority.HIGH.value if word in ("high", "urgent") else word.upper()
            remainder = (remainder[:priority_match.start()] + remainder[priority_match.end():]).strip()

        deadline_match = _INLINE_DEADLINE.search(remainder)
        if deadline_match:
            deadline = self.extract_deadline(deadline_match.group(1))
            if deadline.found:
                slots["deadline"] = deadline.value
                remainder = remainder[:deadline_match.start()].strip()

        title = self.extract_title(remainder)
        return (title.value if title.found else None), slots

    # Priority

    def extract_priority(self, message: str) -> Extraction:
        text = message.strip()
        for pattern, priority in self._priority_patterns:
            if pattern.search(text):
                return Extraction(True, priority.value)
        return Extraction.none()

    # Deadline

    def extract_deadline(self, message: str) -> Extraction:
        """Map a date expression to an ISO timestamp at end of day, or None for "no deadline" """
        text = message.strip().lower().rstrip(".!")
        for pattern in self._no_deadline_patterns:
            if pattern.search(text):
                return Extraction(True, None)

        today = self._clock().date()

        iso = re.search(r"\b(\d{4})-(\d{2})-(\d{2})\b", text)
        if iso:
            return self._date_result(*map(int, iso.groups()))

        dmy = re.search(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b", text)
        if dmy:
            day, month, year = map(int, dmy.groups())
            return self._date_result(year, month, day)

        if re.search(r"\b(?:day after tomorrow|ngày kia)\b", text):
            return self._iso(today + timedelta(days=2))
        if re.search(r"\b(?:tomorrow|tmr|ngày mai)\b", text):
            return self._iso(today + timedelta(days=1))
        if re.search(r"\b(?:today|tonight|hôm nay|end of day|eod)\b", text):
            return self._iso(today)
        if re.search(r"\b(?:next week|tuần sau|tuần tới)\b", text):
            return self._iso(today + timedelta(weeks=1))
        if re.search(r"\b(?:next month|tháng sau|tháng tới)\b", text):
            return self._iso(self._add_month(today))

        in_days = re.search(r"\bin (\d{1,3}) days?\b|\b(\d{1,3}) ngày nữa\b", text)
        if in_days:
            days = int(in_days.group(1) or in_days.group(2))
            return self._iso(today + timedelta(days=days))

        weekday = re.search(r"\b(?:next |on |this )?(monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b", text)
        if weekday:
            target = self.WEEKDAYS[weekday.group(1)]
            ahead = (target - today.weekday()) % 7 or 7
            return self._iso(today + timedelta(days=ahead))

        return Extraction.none()

    def _date_result(self, year: int, month: int, day: int) -> Extraction:
        try:
            return self._iso(date(year, month, day))
        except ValueError:
            logger.debug(f"Invalid calendar date {year}-{month}-{day}")
            return Extraction.none()

    @staticmethod
    def _iso(value: date) -> Extraction:
        return Extraction(True, f"{value.isoformat()}{END_OF_DAY}")

    @staticmethod
    def _add_month(value: date) -> date:
        year = value.year + value.month // 12
        month = value.month % 12 + 1
        day = min(value.day, calendar.monthrange(year, month)[1])
        return date(year, month, day)

    # Update / delete slots

    def extract_task_id(self, message: str) -> Extraction:
        text = message.strip()
        number = re.search(r"#?\b(\d{1,9})\b", text)
        if number:
            return Extraction(True, number.group(1))
        quoted = re.search(r"[\"'“](.+?)[\"'”]", text)
        if quoted:
            return Extraction(True, quoted.group(1).strip())
        stripped = UPDATE_TRIGGER.sub("", DELETE_TRIGGER.sub("", text)).strip().rstrip(".!")
        stripped = re.sub(r"^(?:the |task |called |named )+", "", stripped, flags=re.IGNORECASE)
        if 2 <= len(stripped) < 100 and stripped.lower() not in NON_TITLE_TOKENS and not stripped.endswith("?"):
            return Extraction(True, stripped)
        return Extraction.none()

    def extract_field(self, message: str) -> Extraction:
        text = message.strip().lower()
        for field_name, synonyms in self.FIELD_SYNONYMS.items():
            for synonym in synonyms:
                if re.search(rf"(?<!\w){re.escape(synonym)}(?!\w)", text):
                    return Extraction(True, field_name)
        return Extraction.none()

    def extract_value(self, message: str) -> Extraction:
        text = message.strip().strip("\"'“”").strip()
        if not text:
            return Extraction.none()
        return Extraction(True, text)

    def normalize_field_value(self, field_name: str, message: str) -> Extraction:
        """Value for an update, normalized by the field being changed"""
        if field_name == "priority":
            return self.extract_priority(message)
        if field_name == "deadline":
            return self.extract_deadline(message)
        if field_name == "status":
            text = message.strip().lower()
            if re.search(r"\b(?:done|complete|completed|finished|xong|hoàn thành)\b", text):
                return Extraction(True, "DONE")
            if re.search(r"\b(?:in progress|started|doing|working|đang làm)\b", text):
                return Extraction(True, "IN_PROGRESS")
            if re.search(r"\b(?:todo|to do|not started|open)\b", text):
                return Extraction(True, "TODO")
            return Extraction.none()
        return self.extract_value(message)
