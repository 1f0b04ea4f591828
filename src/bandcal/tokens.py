"""Opaque tokens for bandmate links and shared calendars."""

from __future__ import annotations

from uuid import uuid4

BANDMATE_TOKEN_LENGTH = 32
SHARE_TOKEN_LENGTH = 24


def generate_bandmate_token() -> str:
    """URL-safe token that addresses one bandmate."""
    return uuid4().hex[:BANDMATE_TOKEN_LENGTH]


def generate_share_token() -> str:
    return uuid4().hex[:SHARE_TOKEN_LENGTH]


def bandmate_link(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/bandmate/{token}"
