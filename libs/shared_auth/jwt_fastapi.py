from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from fastapi import Depends, Header, HTTPException, WebSocket, status
from jose import JWTError, jwt

DEFAULT_SECRET_KEY = "a_very_secret_key_that_should_be_in_an_env_var"
DEFAULT_ALGORITHM = "HS256"

SUBJECT_CLAIMS = (
    "sub",
    "nameid",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/nameidentifier",
)
EMAIL_CLAIMS = (
    "email",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress",
)
ROLE_CLAIMS = (
    "role",
    "roles",
    "http://schemas.microsoft.com/ws/2008/06/identity/claims/role",
)


class TokenValidationError(Exception):
    """The bearer token is missing, malformed, expired or not issued for us."""


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: str | None = None
    roles: frozenset[str] = field(default_factory=frozenset)

    def has_any_role(self, *roles: str) -> bool:
        return any(role in self.roles for role in roles)


def _first_claim(payload: dict[str, Any], names: Iterable[str]) -> Any:
    for name in names:
        value = payload.get(name)
        if value:
            return value
    return None


def _collect_roles(payload: dict[str, Any]) -> frozenset[str]:
    roles: set[str] = set()
    for name in ROLE_CLAIMS:
        value = payload.get(name)
        if isinstance(value, str):
            roles.add(value)
        elif isinstance(value, (list, tuple)):
            roles.update(str(item) for item in value)
    return frozenset(roles)


@dataclass(frozen=True)
class JWTValidator:
    """Verifies signature, expiry, issuer and audience of bearer tokens."""

    secret_key: str = DEFAULT_SECRET_KEY
    algorithm: str = DEFAULT_ALGORITHM
    issuer: str | None = None
    audience: str | None = None

    def decode(self, token: str) -> Principal:
        options = {
            "require_exp": True,
            "verify_aud": self.audience is not None,
            "require_aud": self.audience is not None,
            "require_iss": self.issuer is not None,
        }
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options=options,
            )
        except JWTError as exc:
            raise TokenValidationError(str(exc)) from exc

        user_id = _first_claim(payload, SUBJECT_CLAIMS)
        if not user_id:
            raise TokenValidationError("Token has no subject")
        return Principal(
            user_id=str(user_id),
            email=_first_claim(payload, EMAIL_CLAIMS),
            roles=_collect_roles(payload),
        )


def build_jwt_auth_dependencies(
    validator: JWTValidator,
) -> tuple[Callable[..., str], Callable[..., Principal]]:
    """Create FastAPI dependencies for bearer token extraction and principal decoding."""

    def get_bearer_token(authorization: str | None = Header(default=None)) -> str:
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing or invalid authorization header",
            )
        return authorization.split(" ", 1)[1]

    def get_current_principal(token: str = Depends(get_bearer_token)) -> Principal:
        try:
            return validator.decode(token)
        except TokenValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authentication token",
            ) from exc

    return get_bearer_token, get_current_principal


def build_role_dependency(
    get_current_principal: Callable[..., Principal],
    *roles: str,
) -> Callable[..., Principal]:
    """Dependency that admits only principals holding one of ``roles``."""

    def require_roles(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not principal.has_any_role(*roles):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return principal

    return require_roles


def authenticate_websocket(websocket: WebSocket, validator: JWTValidator) -> Principal | None:
    """Resolve the principal of a websocket handshake.

    Browsers cannot set headers on websocket upgrades, so the token may also
    arrive as the ``access_token`` query parameter.
    """
    token = websocket.query_params.get("access_token")
    if not token:
        authorization = websocket.headers.get("authorization", "")
        if authorization.startswith("Bearer "):
            token = authorization.split(" ", 1)[1]
    if not token:
        return None
    try:
        return validator.decode(token)
    except TokenValidationError:
        return None
