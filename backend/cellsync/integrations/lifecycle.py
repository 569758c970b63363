"""Connection lifecycle: connect, OAuth callback, status, disconnect.

Local integration rows and broker connections can drift apart (a connection
made outside the app, a revoke done at the provider). Every read here
reconciles against the broker rather than trusting the local row.
"""

import logging

from cellsync.core.config import settings
from cellsync.core.exceptions import (
    BrokerUnavailable,
    ConnectionInactive,
    ConnectionNotFound,
    NotFoundError,
    ProviderMismatch,
    StateTokenError,
    ValidationError,
)
from cellsync.integrations.broker import ComposioBrokerClient, get_broker_client
from cellsync.integrations.domain import (
    PROVIDER_CONFIGS,
    AuthMode,
    CallbackResult,
    CellScope,
    ConnectionRecord,
    ConnectionState,
    ConnectResult,
    DisconnectResult,
    GlobalScope,
    IntegrationRecord,
    Principal,
    Provider,
    Scope,
    SoftFailure,
    StatusResult,
    state_for_status,
)
from cellsync.integrations.matching import get_matcher
from cellsync.integrations.state import decode_state, encode_state
from cellsync.integrations.store import CellStore, IntegrationStore, get_integration_store

logger = logging.getLogger(__name__)


class ConnectionLifecycleManager:
    """State machine for one principal's connection to one provider."""

    def __init__(
        self,
        broker: ComposioBrokerClient | None = None,
        store: IntegrationStore | None = None,
        cell_store: CellStore | None = None,
    ) -> None:
        self._broker = broker or get_broker_client()
        self._store = store or get_integration_store()
        self._cells = cell_store or CellStore()

    async def scope_for(
        self, principal: Principal, provider: Provider, cell_id: str | None = None
    ) -> Scope:
        """Scope for a request naming an optional cell.

        A named cell must belong to the principal, whatever the provider.
        Per-cell scope only applies to providers that still have per-cell rows.

        Raises:
            NotFoundError: ``cell_id`` is not one of the principal's cells.
        """
        if not cell_id:
            return GlobalScope(principal=principal, provider=provider)
        if await self._cells.get_owned(cell_id, principal) is None:
            logger.warning(
                "Cell not owned by principal",
                extra={"provider": provider.value, "user_id": principal.user_id, "cell_id": cell_id},
            )
            raise NotFoundError("Cell", cell_id)
        if PROVIDER_CONFIGS[provider].supports_cell_scope:
            return CellScope(cell_id=cell_id, provider=provider, principal=principal)
        return GlobalScope(principal=principal, provider=provider)

    @staticmethod
    def callback_url(provider: Provider) -> str:
        return f"{settings.OAUTH_CALLBACK_BASE_URL.rstrip('/')}/{provider.value}/callback"

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    async def connect(
        self,
        principal: Principal,
        provider: Provider,
        params: dict[str, object] | None = None,
    ) -> ConnectResult:
        """Start a connection.

        API-key providers are confirmed synchronously and persisted here.
        OAuth providers return an auth URL and a state token; nothing is
        persisted until the callback.

        Raises:
            ValidationError: If the provider's required parameter is missing.
            BrokerUnavailable: If the broker call fails.
        """
        config = PROVIDER_CONFIGS[provider]
        value: str | None = None
        if config.connect_param:
            raw = (params or {}).get(config.connect_param)
            value = raw.strip() if isinstance(raw, str) else None
            if not value:
                raise ValidationError(
                    f"{config.connect_param} is required. {config.connect_param_hint}".strip(),
                    field=config.connect_param,
                )

        auth_config_id = await self._broker.resolve_auth_config_id(provider)
        initiation = await self._broker.initiate_connection(
            principal,
            provider,
            auth_config_id,
            callback_url=self.callback_url(provider),
            param=value,
        )

        if config.auth_mode == AuthMode.API_KEY:
            scope = GlobalScope(principal=principal, provider=provider)
            await self._store.save_connection(scope, initiation.connection_request_id)
            return ConnectResult(
                provider=provider,
                immediate=True,
                connection_id=initiation.connection_request_id,
            )

        if not initiation.redirect_url:
            raise BrokerUnavailable("initiate", "Broker returned no authorization URL")

        return ConnectResult(
            provider=provider,
            immediate=False,
            auth_url=initiation.redirect_url,
            state=encode_state(principal, initiation.connection_request_id),
            connection_request_id=initiation.connection_request_id,
        )

    # ------------------------------------------------------------------
    # Callback
    # ------------------------------------------------------------------

    async def complete_callback(
        self,
        principal: Principal,
        provider: Provider,
        state_token: str | None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> CallbackResult:
        """Finish an OAuth redirect.

        Raises:
            StateTokenError: If the state is missing, malformed, or was
                issued to a different principal.
        """
        oauth_state = decode_state(state_token)
        if not oauth_state.belongs_to(principal):
            logger.warning(
                "OAuth state does not match principal",
                extra={"provider": provider.value, "user_id": principal.user_id},
            )
            raise StateTokenError("state_mismatch", "OAuth state does not match the current user")

        if error:
            logger.warning(
                "Provider returned an OAuth error",
                extra={"provider": provider.value, "error": error},
            )
            return CallbackResult(
                provider=provider,
                state=ConnectionState.FAILED,
                error_code=f"{provider.value}_oauth_error",
                details=error_description or error,
            )

        connection = await self._resolve_finished(principal, provider, oauth_state.connection_request_id)
        if connection is None:
            return CallbackResult(
                provider=provider,
                state=ConnectionState.FAILED,
                error_code="connection_failed",
                details="Connection was not completed. Please try again.",
            )

        await self._store.save_connection(GlobalScope(principal=principal, provider=provider), connection.id)
        logger.info(
            "OAuth connection completed",
            extra={"provider": provider.value, "user_id": principal.user_id, "connection_id": connection.id},
        )
        return CallbackResult(provider=provider, state=ConnectionState.ACTIVE, connection_id=connection.id)

    async def _resolve_finished(
        self, principal: Principal, provider: Provider, connection_request_id: str | None
    ) -> ConnectionRecord | None:
        if connection_request_id:
            try:
                connection = await self._broker.get_connection(connection_request_id)
            except BrokerUnavailable as e:
                logger.warning(
                    "Direct connection lookup failed, falling back to list",
                    extra={"provider": provider.value, "error": e.message},
                )
                connection = None
            if connection is not None and connection.is_active:
                return connection

        try:
            candidates = await self._broker.list_connections(principal)
        except BrokerUnavailable as e:
            logger.warning(
                "Listing broker connections failed",
                extra={"provider": provider.value, "error": e.message},
            )
            return None
        return get_matcher(provider).select(candidates)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def verify(self, record: IntegrationRecord) -> ConnectionRecord:
        """Re-derive a stored connection from the broker.

        Raises:
            ConnectionNotFound: The broker no longer knows the connection.
            ConnectionInactive: The connection exists but is not usable.
            BrokerUnavailable: The broker call failed.
        """
        connection = await self._broker.get_connection(record.connection_id or "")
        if connection is None:
            raise ConnectionNotFound(
                record.connection_id, "Connection no longer exists. Please reconnect."
            )
        if not connection.is_active:
            raise ConnectionInactive(connection.id, connection.status)
        return connection

    async def get_status(
        self, principal: Principal, provider: Provider, cell_id: str | None = None
    ) -> StatusResult:
        """Reconciled status; broker problems are reported, never raised.

        Raises:
            NotFoundError: ``cell_id`` is not one of the principal's cells.
        """
        scope = await self.scope_for(principal, provider, cell_id)
        record = await self._store.find(scope)
        if record is None:
            return await self._status_from_broker(principal, scope)

        if record.is_legacy:
            connected = record.has_legacy_tokens
            return StatusResult(
                connected=connected,
                state=ConnectionState.ACTIVE if connected else ConnectionState.NOT_CONNECTED,
                synced_contacts_count=record.synced_contacts_count,
                connected_at=record.connected_at,
                last_synced_at=record.last_synced_at,
                legacy=True,
            )

        base = {
            "synced_contacts_count": record.synced_contacts_count,
            "connected_at": record.connected_at,
            "last_synced_at": record.last_synced_at,
            "connection_id": record.connection_id,
        }
        try:
            connection = await self.verify(record)
        except ConnectionNotFound as e:
            return StatusResult(connected=False, state=ConnectionState.NOT_CONNECTED, error=e.message, **base)
        except ConnectionInactive as e:
            return StatusResult(
                connected=False,
                state=state_for_status(e.status),
                connection_status=e.status,
                error=e.message,
                **base,
            )
        except BrokerUnavailable as e:
            logger.warning(
                "Status check could not reach broker",
                extra={"provider": provider.value, "error": e.message},
            )
            return StatusResult(connected=False, state=ConnectionState.NOT_CONNECTED, error=e.message, **base)

        return StatusResult(
            connected=True,
            state=ConnectionState.ACTIVE,
            connection_status=connection.status,
            **base,
        )

    async def _status_from_broker(self, principal: Principal, scope: Scope) -> StatusResult:
        """No local row: look for an out-of-band connection and auto-link it."""
        try:
            candidates = await self._broker.list_connections(principal)
        except BrokerUnavailable as e:
            logger.warning(
                "Status check could not list broker connections",
                extra={"provider": scope.provider.value, "error": e.message},
            )
            return StatusResult(connected=False, state=ConnectionState.NOT_CONNECTED, error=e.message)

        matches = get_matcher(scope.provider).filter(candidates)
        active = next((m for m in matches if m.is_active), None)
        if active is not None:
            record = await self._store.save_connection(scope, active.id)
            logger.info(
                "Auto-linked existing broker connection",
                extra={"provider": scope.provider.value, "scope": scope.kind, "connection_id": active.id},
            )
            return StatusResult(
                connected=True,
                state=ConnectionState.ACTIVE,
                synced_contacts_count=record.synced_contacts_count,
                connected_at=record.connected_at,
                last_synced_at=record.last_synced_at,
                connection_id=active.id,
                connection_status=active.status,
                auto_linked=True,
            )
        if matches:
            first = matches[0]
            return StatusResult(
                connected=False,
                state=state_for_status(first.status),
                connection_id=first.id,
                connection_status=first.status,
                needs_linking=True,
            )
        return StatusResult(connected=False, state=ConnectionState.NOT_CONNECTED)

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    async def disconnect(
        self, principal: Principal, provider: Provider, cell_id: str | None = None
    ) -> DisconnectResult:
        """Revoke at the broker (best effort) and delete the local row.

        Raises:
            NotFoundError: ``cell_id`` is not one of the principal's cells.
        """
        display = PROVIDER_CONFIGS[provider].display_name
        scope = await self.scope_for(principal, provider, cell_id)
        record = await self._store.find(scope)
        if record is None:
            return DisconnectResult(success=True, message=f"{display} is not connected")

        failures: list[SoftFailure] = []
        if record.connection_id:
            try:
                await self._broker.revoke_connection(record.connection_id)
            except BrokerUnavailable as e:
                failure = SoftFailure(operation="revoke", error=e.message)
                logger.warning(
                    "Broker revoke failed, removing local record anyway",
                    extra={"provider": provider.value, "connection_id": record.connection_id, "error": e.message},
                )
                failures.append(failure)

        await self._store.delete(record.id)
        logger.info(
            "Integration disconnected",
            extra={"provider": provider.value, "scope": scope.kind, "revoke_failed": bool(failures)},
        )
        return DisconnectResult(
            success=True,
            message=f"{display} disconnected successfully",
            soft_failures=failures,
        )

    # ------------------------------------------------------------------
    # Resolution for sync
    # ------------------------------------------------------------------

    async def resolve_connection(
        self, principal: Principal, provider: Provider, cell_id: str | None = None
    ) -> tuple[IntegrationRecord, ConnectionRecord]:
        """The usable connection for a sync.

        Looks at the global row, then the per-cell row, then auto-links a
        matching active broker connection.

        Raises:
            ProviderMismatch: Nothing local and no matching broker connection.
            ConnectionNotFound: The stored connection is gone, or the row
                only holds legacy tokens.
            ConnectionInactive: The stored connection is not usable.
            BrokerUnavailable: The broker could not be reached.
            NotFoundError: ``cell_id`` is not one of the principal's cells.
        """
        display = PROVIDER_CONFIGS[provider].display_name
        scope = await self.scope_for(principal, provider, cell_id)
        global_scope = GlobalScope(principal=principal, provider=provider)
        record = await self._store.find(global_scope)
        if record is None and isinstance(scope, CellScope):
            record = await self._store.find(scope)

        if record is None:
            match = get_matcher(provider).select(await self._broker.list_connections(principal))
            if match is None:
                raise ProviderMismatch(display)
            record = await self._store.save_connection(global_scope, match.id)
            logger.info(
                "Auto-linked broker connection for sync",
                extra={"provider": provider.value, "connection_id": match.id},
            )
            return record, match

        if record.is_legacy:
            raise ConnectionNotFound(
                None, f"{display} connection uses legacy credentials. Please reconnect {display}."
            )
        return record, await self.verify(record)


_lifecycle_manager: ConnectionLifecycleManager | None = None


def get_lifecycle_manager() -> ConnectionLifecycleManager:
    """Get the singleton lifecycle manager."""
    global _lifecycle_manager
    if _lifecycle_manager is None:
        _lifecycle_manager = ConnectionLifecycleManager()
    return _lifecycle_manager
