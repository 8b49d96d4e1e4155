"""Bearer token authentication for the management API.

Authentication is disabled when ``Settings.api_token`` is unset (allowed
outside production only).
"""

from __future__ import annotations

import hmac

from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from hookrelay.exceptions import AuthenticationError
from hookrelay.logging import get_logger

logger = get_logger(__name__)

# Security scheme for OpenAPI docs
security = HTTPBearer(auto_error=False)


def check_token(expected: str | None, credentials: HTTPAuthorizationCredentials | None) -> None:
    """Validate bearer credentials against the configured API token.

    Args:
        expected: Configured token; None disables the check.
        credentials: Credentials parsed from the Authorization header.

    Raises:
        AuthenticationError: If credentials are missing or do not match.
    """
    if expected is None:
        return

    if credentials is None:
        raise AuthenticationError("Missing authentication credentials")

    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        raise AuthenticationError("Invalid API token")

    logger.debug("API request authenticated")
