"""Shared request parsing helpers for exchange routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from exchange_service.core.exceptions import ServiceError, ValidationError
from exchange_service.core.state import get_app_state

if TYPE_CHECKING:
    from fastapi import Request

    from exchange_service.services.identity_context import CurrentUser


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


def current_user(request: Request) -> CurrentUser:
    """Resolve the caller from the Authorization header."""
    state = get_app_state()
    if state.identity is None:
        msg = "IdentityContext not initialized"
        raise RuntimeError(msg)
    return state.identity.resolve(request.headers.get("authorization"))


def parse_int_param(request: Request, name: str, *, minimum: int) -> int | None:
    """Read an optional integer query parameter."""
    raw = request.query_params.get(name)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be an integer") from exc
    if value < minimum:
        raise ValidationError(f"{name} must be >= {minimum}")
    return value
