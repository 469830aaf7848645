"""Caller identity resolution from bearer JWTs."""

from __future__ import annotations

from dataclasses import dataclass

from joserfc import jwt
from joserfc.errors import JoseError
from joserfc.jwk import OctKey

from exchange_service.core.exceptions import ForbiddenActorError, UnauthorizedError

ROLE_REQUESTER = "requester"
ROLE_EXPERT = "expert"
ROLE_ADMIN = "admin"

_KNOWN_ROLES = frozenset({ROLE_REQUESTER, ROLE_EXPERT, ROLE_ADMIN})


@dataclass(frozen=True)
class CurrentUser:
    """An authenticated caller and the roles their token grants."""

    id: str
    is_requester: bool
    is_expert: bool
    is_admin: bool


def require_requester(user: CurrentUser) -> None:
    """Raise ForbiddenActorError unless the caller may post requests."""
    if not user.is_requester:
        raise ForbiddenActorError("Only requesters can perform this action")


def require_expert(user: CurrentUser) -> None:
    """Raise ForbiddenActorError unless the caller may bid."""
    if not user.is_expert:
        raise ForbiddenActorError("Only experts can perform this action")


def require_admin(user: CurrentUser) -> None:
    """Raise ForbiddenActorError unless the caller holds the admin role."""
    if not user.is_admin:
        raise ForbiddenActorError("Administrator role required")


class IdentityContext:
    """
    Resolves an ``Authorization`` header into a CurrentUser.

    Tokens are HS256 JWTs. ``sub`` is the user id and ``roles`` a list
    drawn from requester/expert/admin. Credential issuance happens elsewhere;
    this class only verifies.
    """

    def __init__(self, jwt_secret: str, issuer: str | None) -> None:
        self._key = OctKey.import_key(jwt_secret)
        self._issuer = issuer

    def resolve(self, authorization: str | None) -> CurrentUser:
        """
        Verify the bearer token and return the caller.

        Raises:
            UnauthorizedError: Missing header, wrong scheme, bad signature,
                expired token, or malformed claims.
        """
        if authorization is None:
            raise UnauthorizedError("Authorization header required")
        if not authorization.startswith("Bearer "):
            raise UnauthorizedError("Authorization header must use Bearer scheme")
        raw_token = authorization[len("Bearer ") :].strip()
        if not raw_token:
            raise UnauthorizedError("Bearer token must not be empty")

        claims_options: dict[str, dict[str, object]] = {"sub": {"essential": True}}
        if self._issuer is not None:
            claims_options["iss"] = {"essential": True, "value": self._issuer}
        registry = jwt.JWTClaimsRegistry(**claims_options)

        try:
            token = jwt.decode(raw_token, self._key, algorithms=["HS256"])
            registry.validate(token.claims)
        except (JoseError, ValueError) as exc:
            raise UnauthorizedError("Invalid or expired token") from exc

        claims = token.claims
        user_id = claims.get("sub")
        if not isinstance(user_id, str) or not user_id:
            raise UnauthorizedError("Token subject must be a non-empty string")

        roles = claims.get("roles", [])
        if not isinstance(roles, list) or not all(isinstance(role, str) for role in roles):
            raise UnauthorizedError("Token roles claim must be a list of strings")
        granted = _KNOWN_ROLES.intersection(roles)

        return CurrentUser(
            id=user_id,
            is_requester=ROLE_REQUESTER in granted,
            is_expert=ROLE_EXPERT in granted,
            is_admin=ROLE_ADMIN in granted,
        )
