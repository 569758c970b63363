"""Integrations API routes."""

import logging
from datetime import datetime
from typing import Annotated, Any
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from cellsync.api.deps import CurrentPrincipal, OptionalPrincipal
from cellsync.core.config import settings
from cellsync.core.exceptions import StateTokenError
from cellsync.integrations.contact_sync import get_sync_engine, sync_message
from cellsync.integrations.domain import PROVIDER_CONFIGS, Provider, resolve_provider
from cellsync.integrations.lifecycle import get_lifecycle_manager
from cellsync.integrations.store import get_integration_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations", tags=["integrations"])


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Request/Response Models
class ConnectRequest(CamelModel):
    """Request model for starting a connection."""

    api_key: str | None = None
    organization_name: str | None = None
    subdomain: str | None = None


class ConnectResponse(CamelModel):
    """Redirect-flow or immediate connection response."""

    auth_url: str | None = None
    state: str | None = None
    connection_request_id: str | None = None
    success: bool | None = None
    connection_id: str | None = None
    immediate: bool | None = None
    message: str | None = None


class CellRequest(CamelModel):
    """Request model carrying an optional target cell."""

    cell_id: str | None = None


class StatusResponse(CamelModel):
    """Reconciled connection status."""

    connected: bool
    state: str
    synced_contacts_count: int = 0
    connected_at: datetime | None = None
    last_synced_at: datetime | None = None
    connection_id: str | None = None
    connection_status: str | None = None
    error: str | None = None
    needs_linking: bool | None = None
    auto_linked: bool | None = None
    legacy: bool | None = None


class DisconnectResponse(CamelModel):
    """Disconnect outcome."""

    success: bool
    message: str
    revoke_failed: bool = False


class CellSyncResponse(CamelModel):
    cell_id: str
    synced_count: int
    updated_count: int
    error: str | None = None


class SyncResponse(CamelModel):
    """Sync outcome with per-cell detail."""

    success: bool
    synced_count: int
    updated_count: int
    total_leads: int
    cells_synced: int
    message: str
    cells: list[CellSyncResponse]


class AvailableIntegrationResponse(CamelModel):
    """Provider catalogue entry."""

    provider: str
    display_name: str
    description: str
    auth_mode: str
    connect_param: str | None = None
    is_connected: bool


def get_provider(provider: str) -> Provider:
    """Path dependency: validate the provider segment."""
    try:
        return resolve_provider(provider)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown integration provider: {provider}",
        ) from e


ProviderParam = Annotated[Provider, Depends(get_provider)]


def _ui_redirect(**params: str) -> RedirectResponse:
    base = f"{settings.APP_URL.rstrip('/')}{settings.INTEGRATIONS_REDIRECT_PATH}"
    return RedirectResponse(url=f"{base}?{urlencode(params)}", status_code=status.HTTP_302_FOUND)


@router.get("/available", response_model=list[AvailableIntegrationResponse])
async def list_available_integrations(
    principal: CurrentPrincipal,
) -> list[AvailableIntegrationResponse]:
    """List every supported provider with its connection flag."""
    records = await get_integration_store().list_global(principal)
    connected = {
        r.provider for r in records if r.connection_id or r.has_legacy_tokens
    }
    return [
        AvailableIntegrationResponse(
            provider=config.provider.value,
            display_name=config.display_name,
            description=config.description,
            auth_mode=config.auth_mode.value,
            connect_param=config.connect_param,
            is_connected=config.provider in connected,
        )
        for config in PROVIDER_CONFIGS.values()
    ]


@router.post(
    "/{provider}/connect",
    response_model=ConnectResponse,
    response_model_exclude_none=True,
)
async def connect_integration(
    provider: ProviderParam,
    principal: CurrentPrincipal,
    request: ConnectRequest | None = None,
) -> ConnectResponse:
    """Start a connection to a provider.

    OAuth providers return an authorization URL and state token. API-key
    providers connect immediately.
    """
    params: dict[str, Any] = request.model_dump(by_alias=True, exclude_none=True) if request else {}
    result = await get_lifecycle_manager().connect(principal, provider, params)

    if result.immediate:
        display = PROVIDER_CONFIGS[provider].display_name
        return ConnectResponse(
            success=True,
            connection_id=result.connection_id,
            immediate=True,
            message=f"Connected to {display} successfully",
        )
    return ConnectResponse(
        auth_url=result.auth_url,
        state=result.state,
        connection_request_id=result.connection_request_id,
    )


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: ProviderParam,
    principal: OptionalPrincipal,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
) -> RedirectResponse:
    """Complete an OAuth redirect and send the browser back to the UI."""
    if principal is None:
        return _ui_redirect(error="unauthorized")

    try:
        result = await get_lifecycle_manager().complete_callback(
            principal,
            provider,
            state,
            error=error,
            error_description=error_description,
        )
    except StateTokenError as e:
        return _ui_redirect(error=e.code)
    except Exception as e:
        logger.exception("OAuth callback failed", extra={"provider": provider.value})
        return _ui_redirect(error="callback_error", details=str(e))

    if result.success:
        return _ui_redirect(success="true", provider=provider.value)
    params = {"error": result.error_code or "connection_failed"}
    if result.details:
        params["details"] = result.details
    return _ui_redirect(**params)


@router.get(
    "/{provider}/status",
    response_model=StatusResponse,
    response_model_exclude_none=True,
)
async def get_integration_status(
    provider: ProviderParam,
    principal: CurrentPrincipal,
    cell_id: Annotated[str | None, Query(alias="cellId")] = None,
) -> StatusResponse:
    """Reconciled connection status for the provider."""
    result = await get_lifecycle_manager().get_status(principal, provider, cell_id)
    return StatusResponse(
        connected=result.connected,
        state=result.state.value,
        synced_contacts_count=result.synced_contacts_count,
        connected_at=result.connected_at,
        last_synced_at=result.last_synced_at,
        connection_id=result.connection_id,
        connection_status=result.connection_status,
        error=result.error,
        needs_linking=result.needs_linking,
        auto_linked=result.auto_linked,
        legacy=result.legacy,
    )


@router.post("/{provider}/disconnect", response_model=DisconnectResponse)
async def disconnect_integration(
    provider: ProviderParam,
    principal: CurrentPrincipal,
    request: CellRequest | None = None,
) -> DisconnectResponse:
    """Disconnect the provider. Broker revocation is best effort."""
    cell_id = request.cell_id if request else None
    result = await get_lifecycle_manager().disconnect(principal, provider, cell_id)
    return DisconnectResponse(
        success=result.success,
        message=result.message,
        revoke_failed=result.revoke_failed,
    )


@router.post("/{provider}/sync-contacts", response_model=SyncResponse)
async def sync_contacts(
    provider: ProviderParam,
    principal: CurrentPrincipal,
    request: CellRequest | None = None,
) -> SyncResponse:
    """Pull contacts from the provider into the principal's cells."""
    cell_id = request.cell_id if request else None
    result = await get_sync_engine().sync(principal, provider, cell_id)
    return SyncResponse(
        success=result.success,
        synced_count=result.synced_count,
        updated_count=result.updated_count,
        total_leads=result.total_leads_fetched,
        cells_synced=result.cells_synced,
        message=sync_message(result),
        cells=[
            CellSyncResponse(
                cell_id=c.cell_id,
                synced_count=c.synced_count,
                updated_count=c.updated_count,
                error=c.error,
            )
            for c in result.cells
        ],
    )
