"""
Authentication & tenant context.

- Programmatic access: Authorization: Bearer <API_KEY>
- Tenant scope: X-Tenant-Id (required) and X-Team-Id (optional) headers,
  resolved by the upstream gateway and passed through explicitly.

In development with no API_KEY set, auth is skipped for local dev.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from recon_engine.config import get_settings
from recon_engine.utils import parse_uuid

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


async def require_auth(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """Require Authorization: Bearer <API_KEY>. Returns the matched key."""
    settings = get_settings()
    api_key = settings.api_key

    # Dev convenience: skip auth when no key is configured
    if not api_key:
        if settings.is_production:
            raise HTTPException(
                status_code=500,
                detail="Server misconfiguration: API_KEY must be set in production.",
            )
        return "dev-no-auth"

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization. Include header: Authorization: Bearer <token>",
        )

    if credentials.credentials != api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return credentials.credentials


@dataclass(frozen=True)
class TenantContext:
    tenant_id: uuid.UUID
    team_id: Optional[uuid.UUID] = None


async def get_tenant_context(
    x_tenant_id: str | None = Header(None, alias="X-Tenant-Id"),
    x_team_id: str | None = Header(None, alias="X-Team-Id"),
) -> TenantContext:
    if not x_tenant_id:
        raise HTTPException(status_code=400, detail="Missing X-Tenant-Id header")
    tenant_id = parse_uuid(x_tenant_id, "X-Tenant-Id")
    team_id = parse_uuid(x_team_id, "X-Team-Id") if x_team_id else None
    return TenantContext(tenant_id=tenant_id, team_id=team_id)
