"""
Integrations Router — connection tests for source providers.

Either test credentials supplied in the request (before saving them) or a
stored ad account / shop of the tenant (decrypting its saved secret).
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from recon_engine.auth import TenantContext, get_tenant_context
from recon_engine.crypto import decrypt_credentials
from recon_engine.database import get_db
from recon_engine.errors import AuthError
from recon_engine.models import MetaAdAccount, PosStore
from recon_engine.providers.base import ProviderType
from recon_engine.providers.registry import get_provider

logger = logging.getLogger(__name__)

router = APIRouter()


class ConnectionTestRequest(BaseModel):
    entity_id: Optional[str] = None  # stored account_id / shop_id
    credentials: Optional[dict] = None


async def _stored_credentials(db: AsyncSession, provider: ProviderType, entity_id: str, ctx: TenantContext) -> dict:
    if provider == ProviderType.META_ADS:
        query = select(MetaAdAccount).where(
            MetaAdAccount.tenant_id == ctx.tenant_id, MetaAdAccount.account_id == entity_id
        )
    else:
        query = select(PosStore).where(PosStore.tenant_id == ctx.tenant_id, PosStore.shop_id == entity_id)
    entity = (await db.execute(query)).scalar_one_or_none()
    if not entity:
        raise HTTPException(status_code=404, detail=f"No stored {provider.value} entity {entity_id!r}")
    return decrypt_credentials(entity)


@router.post("/{provider}/test")
async def test_connection(
    provider: str,
    body: ConnectionTestRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        provider_type = ProviderType(provider)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")

    if body.credentials:
        credentials = body.credentials
    elif body.entity_id:
        try:
            credentials = await _stored_credentials(db, provider_type, body.entity_id, ctx)
        except AuthError as e:
            return {"success": False, "message": "Stored credentials unusable", "details": {"error": str(e)}}
    else:
        raise HTTPException(status_code=400, detail="Provide credentials or entity_id")

    client = get_provider(provider_type, credentials)
    if provider_type == ProviderType.PANCAKE_POS:
        result = await client.test_connection(shop_id=body.entity_id)
    else:
        result = await client.test_connection()
    logger.info(f"Connection test {provider_type.value} for tenant {ctx.tenant_id}: success={result.get('success')}")
    return result
