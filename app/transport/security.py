# app/transport/security.py
"""
Security utilities for the dispatch API.

Identity is established by an upstream auth gateway, which forwards the
authenticated user as ``X-Actor-Id`` / ``X-Actor-Role``. When
``GATEWAY_TOKEN`` is configured, those headers are only trusted on requests
that also carry ``Authorization: Bearer <gateway token>``.

Security features:
- Constant-time token comparison (timing attack prevention)
- Token entropy validation (weak token detection)
- Role-based route guards (``require_roles``)
- OWASP security headers
- Error message sanitization in production
"""
import hmac
import secrets
from typing import Callable

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings
from app.core.dispatch.domain import Actor, Role
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Minimum token length for security (32 bytes = 256 bits)
MIN_TOKEN_LENGTH = 32
# Minimum entropy check - reject obviously weak tokens
WEAK_TOKEN_PATTERNS = [
    "password", "secret", "token", "admin", "test", "demo",
    "123456", "000000", "111111", "aaaaaa",
]

ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"

# Security scheme for OpenAPI docs - shows "Authorize" button
bearer_scheme = HTTPBearer(
    scheme_name="Gateway Token",
    description="Shared secret of the auth gateway (without 'Bearer ' prefix)",
    auto_error=False,  # We handle errors ourselves for better messages
)


def validate_token_strength(token: str, token_name: str = "token") -> list[str]:
    """
    Validate that a token meets minimum security requirements.
    Returns list of warnings (empty if token is strong).

    Checks:
    - Minimum length (32 chars)
    - Not a common weak pattern
    - Has reasonable entropy (mix of characters)
    """
    warnings = []

    if len(token) < MIN_TOKEN_LENGTH:
        warnings.append(
            f"{token_name} is too short ({len(token)} chars). "
            f"Minimum recommended: {MIN_TOKEN_LENGTH} chars"
        )

    token_lower = token.lower()
    for pattern in WEAK_TOKEN_PATTERNS:
        if pattern in token_lower:
            warnings.append(
                f"{token_name} contains weak pattern '{pattern}'. "
                "Use a cryptographically random token"
            )
            break

    has_upper = any(c.isupper() for c in token)
    has_lower = any(c.islower() for c in token)
    has_digit = any(c.isdigit() for c in token)

    if not (has_upper and has_lower and has_digit):
        warnings.append(
            f"{token_name} has low character diversity. "
            "Recommended: mix of uppercase, lowercase, and numbers"
        )

    return warnings


def generate_secure_token(length: int = 32) -> str:
    """
    Generate a cryptographically secure random token for GATEWAY_TOKEN.

    Returns URL-safe base64 string (letters, numbers, -, _)
    """
    return secrets.token_urlsafe(length)


def check_configured_tokens() -> None:
    """Log warnings for a weak gateway token. Call from app startup."""
    if settings.gateway_token:
        for warning in validate_token_strength(settings.gateway_token, "GATEWAY_TOKEN"):
            logger.warning(f"SECURITY: {warning}")


# =============================================================================
# Actor resolution
# =============================================================================

def _verify_gateway_token(credentials: HTTPAuthorizationCredentials | None) -> tuple[bool, str | None]:
    """Verify gateway Bearer token. Returns (is_valid, error_message)."""
    if not settings.gateway_token:
        return True, None

    if not credentials:
        return False, "Missing Authorization header"

    if not hmac.compare_digest(credentials.credentials, settings.gateway_token):
        return False, "Invalid token"

    return True, None


def require_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Actor:
    """
    Resolve the calling actor from gateway headers.

    Usage:
        @app.get("/jobs")
        async def list_jobs(actor: Actor = Depends(require_actor)):
            ...
    """
    valid, error = _verify_gateway_token(credentials)
    if not valid:
        logger.warning(f"Gateway auth failed: {error}", extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    actor_id = (request.headers.get(ACTOR_ID_HEADER) or "").strip()
    raw_role = (request.headers.get(ACTOR_ROLE_HEADER) or "").strip().lower()
    if not actor_id or not raw_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )

    try:
        role = Role(raw_role)
    except ValueError:
        logger.warning(f"Unknown actor role: {raw_role!r}", extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown role",
        )

    request.state.actor_id = actor_id
    return Actor(id=actor_id, role=role)


def require_roles(*roles: Role) -> Callable[..., Actor]:
    """
    Dependency factory: the actor must hold one of ``roles``.

    Usage:
        @app.get("/metrics")
        def metrics(actor: Actor = Depends(require_roles(Role.ADMIN))):
            ...
    """
    def dependency(actor: Actor = Depends(require_actor)) -> Actor:
        if actor.role not in roles:
            logger.info(
                f"Role {actor.role.value} denied (needs one of {[r.value for r in roles]})",
                extra={"actor_id": actor.id},
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Forbidden",
            )
        return actor
    return dependency


require_staff = require_roles(Role.DISPATCHER, Role.ADMIN)
require_admin = require_roles(Role.ADMIN)


class SecurityHeaders:
    """
    Adds security headers to responses.
    Implements OWASP recommended security headers.
    """

    @staticmethod
    def add_security_headers(response):
        """
        OWASP recommended headers for API security:
        https://cheatsheetseries.owasp.org/cheatsheets/REST_Security_Cheat_Sheet.html
        """
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        # Tracking pages may ask for geolocation; the API itself never does
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"

        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"

        if settings.is_production or settings.is_staging:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"

        response.headers["Cross-Origin-Opener-Policy"] = "same-origin"

        if "Server" in response.headers:
            del response.headers["Server"]

        return response


def sanitize_error_message(error: Exception, is_production: bool) -> str:
    """
    Sanitize error messages for external responses.
    In production: Generic messages
    In dev: Detailed messages
    """
    if not is_production:
        return str(error)

    error_type = type(error).__name__

    generic_messages = {
        "ValueError": "Invalid input",
        "KeyError": "Invalid request",
        "ConnectionError": "Service temporarily unavailable",
        "TimeoutError": "Request timeout",
    }

    return generic_messages.get(error_type, "An error occurred")
