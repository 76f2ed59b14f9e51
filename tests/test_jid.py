from __future__ import annotations

import pytest

from wahub.config import NumberPolicy
from wahub.exceptions import ValidationError
from wahub.jid import (
    Target,
    is_group,
    jid_decode,
    jid_normalized_user,
    normalize_number,
    resolve_target,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("5511987654321", "551187654321@s.whatsapp.net"),
        ("11987654321", "551187654321@s.whatsapp.net"),
        ("+55 (11) 98765-4321", "551187654321@s.whatsapp.net"),
        ("1187654321", "551187654321@s.whatsapp.net"),
        ("551187654321", "551187654321@s.whatsapp.net"),
        ("4915112345678", "4915112345678@s.whatsapp.net"),
    ],
)
def test_normalize_number(raw: str, expected: str) -> None:
    assert normalize_number(raw) == expected


def test_normalize_number_without_mobile_collapse() -> None:
    policy = NumberPolicy(collapse_mobile_digit=False)
    assert normalize_number("11987654321", policy) == "5511987654321@s.whatsapp.net"


def test_normalize_number_other_country() -> None:
    policy = NumberPolicy(country_code="351", local_max_digits=9, collapse_mobile_digit=False)
    assert normalize_number("912 345 678", policy) == "351912345678@s.whatsapp.net"


@pytest.mark.parametrize("raw", ["", "abc", "  -- "])
def test_normalize_number_rejects_no_digits(raw: str) -> None:
    with pytest.raises(ValidationError):
        normalize_number(raw)


def test_resolve_target_prefers_conversation_id() -> None:
    t = Target(conversation_id="120363000000000000@g.us", number="11987654321")
    assert resolve_target(t) == "120363000000000000@g.us"
    assert resolve_target(Target(number="11987654321")) == "551187654321@s.whatsapp.net"

    with pytest.raises(ValidationError):
        resolve_target(Target())
    with pytest.raises(ValidationError):
        resolve_target(Target(conversation_id="no-domain"))


def test_jid_helpers() -> None:
    d = jid_decode("551187654321:12@s.whatsapp.net")
    assert d is not None
    assert (d.user, d.server, d.device) == ("551187654321", "s.whatsapp.net", 12)
    assert jid_normalized_user("551187654321:12@s.whatsapp.net") == "551187654321@s.whatsapp.net"
    assert jid_normalized_user("551187654321@c.us") == "551187654321@s.whatsapp.net"
    assert jid_decode("not-a-jid") is None
    assert is_group("120363000000000000@g.us")
    assert not is_group("551187654321@s.whatsapp.net")
