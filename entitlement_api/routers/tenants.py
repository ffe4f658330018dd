"""Tenant entitlement endpoints for internal product services.

Every route requires the ``X-Service-Token`` header.  The tenant ID comes
from the path; the calling service is trusted to have authenticated the
end user.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from sqlalchemy.exc import SQLAlchemyError

from entitlement_api.dependencies import EntitlementDep, SessionDep, verify_service_token
from entitlement_api.middleware.prometheus import record_gate_decision, record_quota_rejection, record_usage
from entitlement_api.schemas import (
    ConsumeRequest,
    ConsumeResponse,
    EntitlementResponse,
    ReleaseRequest,
    ReleaseResponse,
    TenantCreateRequest,
    UsageEventResponse,
    UsageResponse,
)
from entitlement_engine.errors import QuotaExceededError, StorageTransientError
from entitlement_engine.gate import AuthorizationGate
from entitlement_engine.metering import UsageMeter
from entitlement_engine.models.entitlement import AccessDecision, EntitlementSnapshot
from entitlement_engine.state.repository import EntitlementRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenants", tags=["tenants"], dependencies=[Depends(verify_service_token)])

TenantIdPath = Annotated[str, Path(pattern=r"^[a-zA-Z0-9_-]{1,128}$")]


@router.post("", response_model=EntitlementResponse, status_code=201)
async def create_tenant(body: TenantCreateRequest, session: SessionDep) -> EntitlementResponse:
    """Provision a tenant with ``status=none``; 409 if it already exists."""
    row = await EntitlementRepository(session).create(body.tenant_id)
    return EntitlementResponse.from_snapshot(EntitlementSnapshot.model_validate(row))


@router.get("", response_model=list[EntitlementResponse])
async def list_tenants(
    session: SessionDep,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
) -> list[EntitlementResponse]:
    rows = await EntitlementRepository(session).list_all(limit=limit, offset=offset)
    return [EntitlementResponse.from_snapshot(EntitlementSnapshot.model_validate(row)) for row in rows]


@router.get("/{tenant_id}/entitlement", response_model=EntitlementResponse)
async def get_entitlement(tenant_id: TenantIdPath, session: SessionDep) -> EntitlementResponse:
    snapshot = await AuthorizationGate(session).snapshot(tenant_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Tenant '{tenant_id}' not found")
    return EntitlementResponse.from_snapshot(snapshot)


@router.get("/{tenant_id}/access", response_model=AccessDecision)
async def check_access(tenant_id: TenantIdPath, session: SessionDep) -> AccessDecision:
    """Return the gate decision.  Denial is a normal 200 response here."""
    decision = await AuthorizationGate(session).check(tenant_id)
    record_gate_decision(decision.reason)
    return decision


@router.post("/{tenant_id}/usage/consume", response_model=ConsumeResponse)
async def consume_usage(
    tenant_id: TenantIdPath,
    body: ConsumeRequest,
    decision: EntitlementDep,
    session: SessionDep,
) -> ConsumeResponse:
    """Gate, then meter.  402 when access is denied, 429 when the quota is spent."""
    try:
        result = await UsageMeter(session).try_consume(tenant_id, body.quantity, body.action)
        await session.commit()
    except QuotaExceededError:
        record_quota_rejection()
        raise
    except SQLAlchemyError as exc:
        logger.error("Storage failure consuming usage for tenant=%s: %s", tenant_id, exc)
        raise StorageTransientError(f"Storage failure consuming usage for tenant {tenant_id}") from exc

    record_usage(body.action, body.quantity)
    return ConsumeResponse(
        tenant_id=tenant_id,
        consumed=result.consumed,
        usage_count=result.new_count,
        usage_limit=result.usage_limit,
        remaining=result.remaining,
    )


@router.post("/{tenant_id}/usage/release", response_model=ReleaseResponse)
async def release_usage(tenant_id: TenantIdPath, body: ReleaseRequest, session: SessionDep) -> ReleaseResponse:
    """Return units after a metered action failed downstream.

    Not gated: a tenant that lost access since consuming still gets its
    units back.  404 for an unknown tenant.
    """
    try:
        result = await UsageMeter(session).release(tenant_id, body.quantity, body.action)
        await session.commit()
    except SQLAlchemyError as exc:
        logger.error("Storage failure releasing usage for tenant=%s: %s", tenant_id, exc)
        raise StorageTransientError(f"Storage failure releasing usage for tenant {tenant_id}") from exc

    return ReleaseResponse(
        tenant_id=tenant_id,
        released=result.released,
        usage_count=result.new_count,
        usage_limit=result.usage_limit,
        remaining=result.remaining,
    )


@router.get("/{tenant_id}/usage", response_model=UsageResponse)
async def get_usage(
    tenant_id: TenantIdPath,
    session: SessionDep,
    limit: int = Query(default=20, ge=1, le=200),
) -> UsageResponse:
    meter = UsageMeter(session)
    snapshot = await meter.usage_snapshot(tenant_id)
    recent = await meter.recent_events(tenant_id, limit=limit)
    return UsageResponse(
        tenant_id=tenant_id,
        recent=[UsageEventResponse.model_validate(row) for row in recent],
        **snapshot,
    )
