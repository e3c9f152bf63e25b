"""
Operator authentication for the monitoring and reconciliation APIs.
Stateless HS256 bearer tokens; the role claim decides what a caller may do:
- operator:   monitoring API and manual outcome resolution
- reconciler: the reconciliation service posting outcomes
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

logger = logging.getLogger(__name__)
bearer_scheme = HTTPBearer()

ROLES = ("operator", "reconciler")


def _jwt_secret() -> str:
    from ipngate.config import get_settings
    settings = get_settings()
    return settings.dashboard_jwt_secret or settings.app_secret_key


def issue_token(subject: str, role: str = "operator", expires_hours: Optional[int] = None) -> str:
    """Mint a bearer token for an operator or service account."""
    from ipngate.config import get_settings
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")
    hours = expires_hours or get_settings().dashboard_jwt_expiry_hours
    now = datetime.now(timezone.utc)
    return jwt.encode(
        {"sub": subject, "role": role, "iat": now, "exp": now + timedelta(hours=hours)},
        _jwt_secret(),
        algorithm="HS256",
    )


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> dict:
    """Dependency to verify the bearer token. Returns {"sub", "role"}."""
    try:
        payload = jwt.decode(credentials.credentials, _jwt_secret(), algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    subject = payload.get("sub")
    role = payload.get("role")
    if not subject or role not in ROLES:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return {"sub": subject, "role": role}


def require_roles(*roles: str):
    """Dependency factory that restricts an endpoint to the given roles."""

    async def _dependency(principal: dict = Depends(get_current_principal)) -> dict:
        if principal["role"] not in roles:
            logger.warning("Forbidden: %s (%s) needs one of %s", principal["sub"], principal["role"], roles)
            raise HTTPException(status_code=403, detail="Insufficient role")
        return principal

    return _dependency


get_current_operator = require_roles("operator")
