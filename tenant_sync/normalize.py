from __future__ import annotations

import re

_MESSAGING_SUFFIXES = ("@s.whatsapp.net", "@c.us", "@g.us")
_NON_DIGITS = re.compile(r"\D")

PHONE_MATCH_DIGITS = 9
NATIONAL_ID_LENGTH = 11


def digits_only(raw: object) -> str:
    return _NON_DIGITS.sub("", str(raw or ""))


def normalize_national_id(raw: object) -> str:
    digits = digits_only(raw)
    if not digits:
        return ""
    return digits.zfill(NATIONAL_ID_LENGTH)


def normalize_phone(raw: object) -> str:
    value = str(raw or "").strip()
    for suffix in _MESSAGING_SUFFIXES:
        if value.endswith(suffix):
            value = value[: -len(suffix)]
            break
    return digits_only(value)


def phone_tail(raw: object, *, digits: int = PHONE_MATCH_DIGITS) -> str:
    normalized = normalize_phone(raw)
    if len(normalized) < digits:
        return ""
    return normalized[-digits:]


def normalize_email(raw: object) -> str:
    return str(raw or "").strip().lower()


def mask(value: str, *, keep: int = 3) -> str:
    if not value:
        return ""
    return f"{value[:keep]}..."
