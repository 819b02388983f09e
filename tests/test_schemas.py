"""Click event and stats schema tests."""

import datetime
import uuid

import pytest
from pydantic import ValidationError

from linkapp.schemas import UNKNOWN_IP, UNKNOWN_USER_AGENT, ClickEvent, LinkStats, is_valid_short_code


def test_click_event_defaults():
    event = ClickEvent(short_code="abc123")

    assert isinstance(event.event_id, uuid.UUID)
    assert event.client_ip == UNKNOWN_IP == "0.0.0.0"
    assert event.user_agent == UNKNOWN_USER_AGENT == "Unknown"
    assert event.occurred_at.tzinfo is not None


def test_click_event_blank_values_use_sentinels():
    event = ClickEvent(short_code="abc123", client_ip="", user_agent="")
    assert event.client_ip == UNKNOWN_IP
    assert event.user_agent == UNKNOWN_USER_AGENT


def test_click_event_requires_short_code():
    with pytest.raises(ValidationError):
        ClickEvent(short_code="")


def test_click_event_naive_timestamp_is_utc():
    event = ClickEvent(short_code="abc123", occurred_at=datetime.datetime(2026, 10, 18, 12, 0))
    assert event.occurred_at == datetime.datetime(2026, 10, 18, 12, 0, tzinfo=datetime.timezone.utc)


def test_click_event_offset_timestamp_is_normalized():
    plus_two = datetime.timezone(datetime.timedelta(hours=2))
    event = ClickEvent(short_code="abc123", occurred_at=datetime.datetime(2026, 10, 18, 14, 0, tzinfo=plus_two))
    assert event.occurred_at.utcoffset() == datetime.timedelta(0)
    assert event.occurred_at.hour == 12


def test_click_event_survives_kafka_payload():
    event = ClickEvent(short_code="abc123", client_ip="198.51.100.4", user_agent="Mozilla/5.0")
    payload = event.model_dump_json().encode("utf-8")

    assert ClickEvent.model_validate_json(payload) == event


def test_link_stats_accepts_snake_and_camel_names():
    by_name = LinkStats(short_code="abc123", total_clicks=3)
    by_alias = LinkStats.model_validate({"shortCode": "abc123", "totalClicks": 3})
    assert by_name == by_alias
    assert by_name.model_dump(by_alias=True)["totalClicks"] == 3


@pytest.mark.parametrize("short_code", ["stats:abc123", "abc 123", "x" * 33])
def test_click_event_rejects_malformed_short_code(short_code):
    with pytest.raises(ValidationError):
        ClickEvent(short_code=short_code)


def test_short_code_pattern():
    assert is_valid_short_code("abc123")
    assert is_valid_short_code("A-b_9")
    assert not is_valid_short_code("stats:abc123")
    assert not is_valid_short_code("abc123\n")
    assert not is_valid_short_code("")
