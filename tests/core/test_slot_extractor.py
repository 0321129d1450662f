"""
Unit tests for `core/conversation/understanding/slot_extractor.py`.

The extractor runs against a fixed clock (Wednesday 2025-09-24) so every
relative date resolves to a known ISO timestamp.
"""

import pytest


@pytest.mark.parametrize("text, expected", [
    ("high", "HIGH"),
    ("it's urgent", "HIGH"),
    ("cao", "HIGH"),
    ("low", "LOW"),
    ("not important", "LOW"),
    ("trung bình", "MEDIUM"),
])
def test_priority_vocabulary(extractor, text, expected):
    result = extractor.extract_priority(text)
    assert result.found is True
    assert result.value == expected


def test_priority_not_found(extractor):
    assert extractor.extract_priority("banana").found is False


@pytest.mark.parametrize("text, expected", [
    ("tomorrow", "2025-09-25T23:59:59"),
    ("today", "2025-09-24T23:59:59"),
    ("ngày mai", "2025-09-25T23:59:59"),
    ("next week", "2025-10-01T23:59:59"),
    ("in 3 days", "2025-09-27T23:59:59"),
    ("friday", "2025-09-26T23:59:59"),
    ("2025-10-01", "2025-10-01T23:59:59"),
    ("15/10/2025", "2025-10-15T23:59:59"),
])
def test_relative_and_absolute_dates(extractor, text, expected):
    result = extractor.extract_deadline(text)
    assert result.found is True
    assert result.value == expected


@pytest.mark.parametrize("text", ["no", "no deadline", "không", "whenever"])
def test_no_deadline_is_an_explicit_none(extractor, text):
    """ "No deadline" is found with a None value, distinct from no match at all."""
    result = extractor.extract_deadline(text)
    assert result.found is True
    assert result.value is None


def test_invalid_calendar_date_is_not_a_deadline(extractor):
    assert extractor.extract_deadline("2025-02-30").found is False


def test_title_strips_trigger_and_quotes(extractor):
    assert extractor.extract_title('create task "write report"').value == "write report"
    assert extractor.extract_title("called weekly sync").value == "weekly sync"


@pytest.mark.parametrize("text", ["no", "ok", "?", "what is this?"])
def test_non_titles_are_rejected(extractor, text):
    assert extractor.extract_title(text).found is False


def test_split_creation_message_pulls_inline_slots(extractor):
    title, slots = extractor.split_creation_message("create task write report high priority tomorrow")

    assert title == "write report"
    assert slots == {"priority": "HIGH", "deadline": "2025-09-25T23:59:59"}


def test_split_creation_message_ignores_non_commands(extractor):
    assert extractor.split_creation_message("write report") == (None, {})


def test_task_reference_by_number_or_name(extractor):
    assert extractor.extract_task_id("task #12").value == "12"
    assert extractor.extract_task_id("the one called 'groceries'").value == "groceries"
    assert extractor.extract_task_id("weekly sync").value == "weekly sync"


def test_field_synonyms(extractor):
    assert extractor.extract_field("change the due date").value == "deadline"
    assert extractor.extract_field("mô tả").value == "description"


def test_update_values_are_normalized_by_field(extractor):
    assert extractor.normalize_field_value("status", "in progress").value == "IN_PROGRESS"
    assert extractor.normalize_field_value("priority", "urgent").value == "HIGH"
    assert extractor.normalize_field_value("title", "  New name ").value == "New name"


def test_unknown_slot_yields_nothing(extractor):
    assert extractor.has_extractor("color") is False
    assert extractor.extract("color", "blue").found is False
