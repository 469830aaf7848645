"""Shared test helpers: bearer tokens, test users, and workflow shortcuts."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from joserfc import jwt
from joserfc.jwk import OctKey

from exchange_service.services.identity_context import CurrentUser
from exchange_service.services.notification_dispatcher import NotificationDispatcher, WorkflowEvent

JWT_SECRET = "test-secret-that-is-at-least-32-characters-long"

ALICE_ID = "u-alice"  # requester
DAVE_ID = "u-dave"  # requester
BOB_ID = "u-bob"  # expert
CAROL_ID = "u-carol"  # expert
EVE_ID = "u-eve"  # requester and expert
ADMIN_ID = "u-admin"

ALICE = CurrentUser(id=ALICE_ID, is_requester=True, is_expert=False, is_admin=False)
DAVE = CurrentUser(id=DAVE_ID, is_requester=True, is_expert=False, is_admin=False)
BOB = CurrentUser(id=BOB_ID, is_requester=False, is_expert=True, is_admin=False)
CAROL = CurrentUser(id=CAROL_ID, is_requester=False, is_expert=True, is_admin=False)
EVE = CurrentUser(id=EVE_ID, is_requester=True, is_expert=True, is_admin=False)
ADMIN = CurrentUser(id=ADMIN_ID, is_requester=False, is_expert=False, is_admin=True)

LIMITS: dict[str, Any] = {
    "min_title_length": 5,
    "max_title_length": 100,
    "min_description_length": 10,
    "max_description_length": 2000,
    "max_budget": 100000,
    "min_offer_message_length": 10,
    "max_offer_message_length": 1000,
    "max_proposed_price": 100000,
    "max_duration_length": 100,
    "max_message_length": 2000,
}


def make_token(
    user_id: str,
    roles: list[str],
    *,
    secret: str = JWT_SECRET,
    extra_claims: dict[str, Any] | None = None,
) -> str:
    """Sign an HS256 bearer token for ``user_id`` with the given roles."""
    claims: dict[str, Any] = {"sub": user_id, "roles": roles}
    if extra_claims is not None:
        claims.update(extra_claims)
    return jwt.encode({"alg": "HS256"}, claims, OctKey.import_key(secret))


def bearer(user_id: str, *roles: str) -> dict[str, str]:
    """Authorization header for a test user."""
    return {"Authorization": f"Bearer {make_token(user_id, list(roles))}"}


def write_config(tmp_path: Path, *, max_body_size: int = 1048576) -> Path:
    """Write a complete config file pointing at a temp database."""
    limits = "\n".join(f"  {key}: {value}" for key, value in LIMITS.items())
    config_content = f"""\
service:
  name: "exchange"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{tmp_path / "logs"}"
database:
  path: "{tmp_path / "exchange.db"}"
auth:
  jwt_secret: "{JWT_SECRET}"
  issuer: null
request:
  max_body_size: {max_body_size}
limits:
{limits}
notifications:
  queue_size: 10
  keepalive_seconds: 15
pagination:
  default_limit: 50
  max_limit: 200
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)
    return config_path


def future_deadline(days: int = 7) -> str:
    """ISO timestamp ``days`` from now."""
    return (datetime.now(UTC) + timedelta(days=days)).isoformat()


def request_fields(**overrides: Any) -> dict[str, Any]:
    """Valid fields for creating a service request."""
    fields: dict[str, Any] = {
        "title": "Fix my thesis formatting",
        "description": "The thesis template breaks on every chapter heading.",
        "budget": 500,
        "deadline": future_deadline(),
        "skills": ["latex", "writing"],
    }
    fields.update(overrides)
    return fields


def offer_fields(**overrides: Any) -> dict[str, Any]:
    """Valid fields for submitting an offer."""
    fields: dict[str, Any] = {
        "message": "I have fixed dozens of LaTeX thesis templates.",
        "proposed_price": 400,
        "estimated_duration": "3 days",
    }
    fields.update(overrides)
    return fields


class RecordingDispatcher(NotificationDispatcher):
    """Keeps every published event for inspection."""

    def __init__(self) -> None:
        self.events: list[WorkflowEvent] = []

    def publish(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [event.kind for event in self.events]

    def for_user(self, user_id: str) -> list[WorkflowEvent]:
        return [event for event in self.events if event.user_id == user_id]


class FailingDispatcher(NotificationDispatcher):
    """Raises on every publish."""

    def publish(self, event: WorkflowEvent) -> None:
        msg = f"channel down for {event.kind}"
        raise RuntimeError(msg)
