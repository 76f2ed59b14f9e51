from __future__ import annotations

import re
from dataclasses import dataclass

from .config import NumberPolicy
from .constants import G_US, STATUS_BROADCAST_JID
from .exceptions import ValidationError

_NON_DIGITS = re.compile(r"\D")


@dataclass(slots=True)
class FullJid:
    user: str
    server: str
    device: int | None = None


@dataclass(frozen=True, slots=True)
class Target:
    """Addressing for a command: an explicit conversation id or a bare number."""

    conversation_id: str | None = None
    number: str | None = None


def jid_encode(user: str | int | None, server: str, device: int | None = None) -> str:
    u = "" if user is None else str(user)
    # Omit device when falsy (device=0 => no ":0").
    d = f":{device}" if device else ""
    return f"{u}{d}@{server}"


def jid_decode(jid: str | None) -> FullJid | None:
    if not jid:
        return None
    sep = jid.find("@")
    if sep < 0:
        return None

    server = jid[sep + 1 :]
    user_combined = jid[:sep]
    user_agent, *device_parts = user_combined.split(":")
    user = user_agent.split("_")[0]
    device = int(device_parts[0]) if device_parts and device_parts[0].isdigit() else None
    return FullJid(user=user, server=server, device=device)


def jid_normalized_user(jid: str | None) -> str:
    decoded = jid_decode(jid)
    if not decoded:
        return ""
    server = "s.whatsapp.net" if decoded.server == "c.us" else decoded.server
    return jid_encode(decoded.user, server)


def is_group(jid: str | None) -> bool:
    return bool(jid and jid.endswith(G_US))


def is_status_broadcast(jid: str | None) -> bool:
    return jid == STATUS_BROADCAST_JID


def digits_only(value: str) -> str:
    return _NON_DIGITS.sub("", value)


def normalize_number(number: str, policy: NumberPolicy | None = None) -> str:
    """
    Map a bare subscriber number to a conversation id.

    - strip all non-digits
    - local numbers (<= `local_max_digits`) get the country code prepended
    - a `collapse_length`-digit number with the country code loses the digit at
      `collapse_index` when `collapse_mobile_digit` is on
    - the result always ends in `policy.suffix`
    """

    p = policy or NumberPolicy()
    digits = digits_only(number or "")
    if not digits:
        raise ValidationError(f"number {number!r} contains no digits")

    if len(digits) <= p.local_max_digits:
        digits = p.country_code + digits

    if (
        p.collapse_mobile_digit
        and len(digits) == p.collapse_length
        and digits.startswith(p.country_code)
    ):
        digits = digits[: p.collapse_index] + digits[p.collapse_index + 1 :]

    return digits + p.suffix


def resolve_target(target: Target, policy: NumberPolicy | None = None) -> str:
    """
    Resolve a `Target` into a conversation id.

    An explicit conversation id wins; a bare number is normalized. Neither
    supplied is a `ValidationError`.
    """

    conversation_id = (target.conversation_id or "").strip()
    if conversation_id:
        if "@" not in conversation_id:
            raise ValidationError(f"conversation id {conversation_id!r} has no domain")
        return conversation_id

    number = (target.number or "").strip()
    if number:
        return normalize_number(number, policy)

    raise ValidationError("either conversation_id or number is required")
