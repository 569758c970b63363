"""Connection broker client backed by the Composio SDK.

The SDK returns loosely typed, version-dependent shapes. Everything leaving
this module is normalized into ``ConnectionRecord`` so callers never touch
broker-native structures.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from composio import Composio

from cellsync.core.config import settings
from cellsync.core.exceptions import BrokerUnavailable
from cellsync.core.resilience import (
    RETRYABLE_EXCEPTIONS,
    CircuitBreakerOpen,
    composio_circuit_breaker,
    is_not_found,
    retry,
)
from cellsync.integrations.domain import (
    PROVIDER_CONFIGS,
    AuthMode,
    ConnectionRecord,
    Principal,
    Provider,
)

logger = logging.getLogger(__name__)

_LIST_KEYS = ("data", "items", "connections", "results")
_ID_KEYS = ("id", "nanoid", "connectedAccountId", "connected_account_id")


# ---------------------------------------------------------------------------
# Shape normalization
# ---------------------------------------------------------------------------


def to_plain(obj: Any) -> Any:
    """Convert SDK models into plain dicts/lists, recursively."""
    if obj is None or isinstance(obj, str | int | float | bool):
        return obj
    if isinstance(obj, dict):
        return {k: to_plain(v) for k, v in obj.items()}
    if isinstance(obj, list | tuple):
        return [to_plain(v) for v in obj]
    if hasattr(obj, "model_dump"):
        return to_plain(obj.model_dump())
    if hasattr(obj, "__dict__"):
        return {k: to_plain(v) for k, v in vars(obj).items() if not k.startswith("_")}
    return str(obj)


def extract_connection_list(payload: Any) -> list[dict[str, Any]]:
    """Pull the list of connection records out of a list response.

    Accepts a bare list or an object carrying the list under ``data``,
    ``items``, ``connections`` or ``results``. Anything else is empty.
    """
    payload = to_plain(payload)
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if isinstance(payload, dict):
        for key in _LIST_KEYS:
            value = payload.get(key)
            if isinstance(value, list):
                return [item for item in value if isinstance(item, dict)]
    return []


def extract_status(raw: dict[str, Any]) -> str | None:
    """Read a connection status from the first field that carries one."""
    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
    for value in (raw.get("status"), data.get("status"), raw.get("state"), raw.get("connectionStatus")):
        if isinstance(value, str) and value.strip():
            return value.strip().upper()
    return None


def _toolkit_ids(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if isinstance(value, dict):
        return tuple(str(value[k]) for k in ("name", "id", "slug") if value.get(k))
    return ()


def _first(raw: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = raw.get(key)
        if value:
            return str(value)
    return None


def to_connection_record(raw: dict[str, Any]) -> ConnectionRecord | None:
    """Normalize one broker connection; None when it has no identifier."""
    connection_id = _first(raw, *_ID_KEYS)
    if not connection_id:
        return None
    auth_config = raw.get("authConfig") or raw.get("auth_config") or {}
    data = raw.get("data") or {}
    return ConnectionRecord(
        id=connection_id,
        status=extract_status(raw),
        toolkit_ids=_toolkit_ids(raw.get("toolkit")),
        app_unique_id=_first(raw, "appUniqueId", "app_unique_id"),
        app_name=_first(raw, "appName", "app_name"),
        name=_first(raw, "name"),
        auth_config=auth_config if isinstance(auth_config, dict) else {},
        data=data if isinstance(data, dict) else {},
        raw=raw,
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


@dataclass
class ConnectionInitiation:
    """What the broker returns when a connection is initiated."""

    connection_request_id: str
    redirect_url: str | None
    status: str | None


class ComposioBrokerClient:
    """Adapter over the Composio SDK.

    All SDK calls are synchronous and are wrapped with asyncio.to_thread().
    Each call goes through the ``composio`` circuit breaker and any failure
    other than "not found" surfaces as ``BrokerUnavailable``.
    """

    _composio: Composio | None = None
    _auth_config_cache: dict[str, str] = {}

    def __init__(self, composio_client: Composio | None = None) -> None:
        if composio_client is not None:
            self._composio = composio_client

    @property
    def _client(self) -> Composio:
        """Lazy initialization of the Composio SDK client."""
        if self._composio is None:
            if not settings.composio_configured:
                raise BrokerUnavailable("init", "COMPOSIO_API_KEY is not configured")
            kwargs: dict[str, Any] = {
                "api_key": settings.COMPOSIO_API_KEY.get_secret_value(),  # type: ignore[union-attr]
            }
            if settings.COMPOSIO_BASE_URL:
                kwargs["base_url"] = settings.COMPOSIO_BASE_URL
            self._composio = Composio(**kwargs)
        return self._composio

    async def _call(self, operation: str, func: Any) -> Any:
        """Run a blocking SDK call behind the circuit breaker.

        A "not found" answer leaves the breaker closed; it is re-raised for
        the caller to interpret.
        """
        try:
            with composio_circuit_breaker.protect():
                return await asyncio.to_thread(func)
        except CircuitBreakerOpen as e:
            raise BrokerUnavailable(operation, str(e)) from e

    async def resolve_auth_config_id(self, provider: Provider) -> str:
        """Auth config for a provider: env override first, then broker lookup.

        Raises:
            BrokerUnavailable: If no auth config exists for the provider.
        """
        override = settings.auth_config_override(provider.value)
        if override:
            return override

        toolkit_slug = PROVIDER_CONFIGS[provider].toolkit_slug
        if toolkit_slug in self._auth_config_cache:
            logger.debug("Auth config cache hit for %s", toolkit_slug)
            return self._auth_config_cache[toolkit_slug]

        def _list_configs() -> Any:
            return self._client.client.auth_configs.list(toolkit_slug=toolkit_slug)

        try:
            result = await self._call("auth_config_lookup", _list_configs)
        except BrokerUnavailable:
            raise
        except Exception as e:
            raise BrokerUnavailable("auth_config_lookup", str(e)) from e

        # Composio returns every config when the slug matches nothing.
        matching = [
            item for item in (getattr(result, "items", None) or [])
            if getattr(getattr(item, "toolkit", None), "slug", None) == toolkit_slug
        ]
        if not matching:
            raise BrokerUnavailable(
                "auth_config_lookup",
                f"No auth config found for '{toolkit_slug}'. Set "
                f"COMPOSIO_{provider.value.upper()}_AUTH_CONFIG_ID or create one in Composio.",
            )

        auth_config_id: str = matching[0].id
        self._auth_config_cache[toolkit_slug] = auth_config_id
        logger.debug("Resolved %s -> auth_config_id=%s", toolkit_slug, auth_config_id)
        return auth_config_id

    async def initiate_connection(
        self,
        principal: Principal,
        provider: Provider,
        auth_config_id: str,
        callback_url: str | None = None,
        param: str | None = None,
    ) -> ConnectionInitiation:
        """Start a connection at the broker.

        Args:
            principal: Tenant the connection is created for.
            provider: Provider being connected.
            auth_config_id: Broker auth config for the provider.
            callback_url: Where the broker sends the browser after OAuth.
            param: Provider-specific value (API key, subdomain, org name).
        """
        provider_config = PROVIDER_CONFIGS[provider]
        config = _connection_config(provider_config.auth_mode, provider_config.connect_param, param)

        def _initiate() -> Any:
            kwargs: dict[str, Any] = {
                "user_id": principal.user_id,
                "auth_config_id": auth_config_id,
            }
            if callback_url and provider_config.auth_mode == AuthMode.OAUTH:
                kwargs["callback_url"] = callback_url
            if config is not None:
                kwargs["config"] = config
            return self._client.connected_accounts.initiate(**kwargs)

        try:
            result = await self._call("initiate", _initiate)
        except BrokerUnavailable:
            raise
        except Exception as e:
            logger.exception(
                "Broker initiate failed",
                extra={"provider": provider.value, "user_id": principal.user_id},
            )
            raise BrokerUnavailable("initiate", str(e)) from e

        raw = to_plain(result)
        raw = raw if isinstance(raw, dict) else {}
        request_id = _first(raw, *_ID_KEYS)
        if not request_id:
            raise BrokerUnavailable("initiate", "Broker returned no connection request id")

        logger.info(
            "Connection initiated via Composio",
            extra={
                "provider": provider.value,
                "user_id": principal.user_id,
                "connection_request_id": request_id,
            },
        )
        return ConnectionInitiation(
            connection_request_id=request_id,
            redirect_url=_first(raw, "redirect_url", "redirectUrl"),
            status=extract_status(raw),
        )

    @retry(max_retries=2, retry_on=RETRYABLE_EXCEPTIONS)
    async def _retrieve(self, connection_id: str) -> Any:
        def _get() -> Any:
            return self._client.client.connected_accounts.retrieve(connection_id)

        return await self._call("get_connection", _get)

    async def get_connection(self, connection_id: str) -> ConnectionRecord | None:
        """Fetch one connection by id; None when the broker does not know it.

        Raises:
            BrokerUnavailable: On any other broker failure.
        """
        try:
            result = await self._retrieve(connection_id)
        except BrokerUnavailable:
            raise
        except Exception as e:
            if is_not_found(e):
                logger.info("Connection not found at broker", extra={"connection_id": connection_id})
                return None
            raise BrokerUnavailable("get_connection", str(e)) from e

        raw = to_plain(result)
        if not isinstance(raw, dict):
            return None
        record = to_connection_record(raw)
        if record is None:
            # Some responses omit the id on direct lookups.
            record = to_connection_record({**raw, "id": connection_id})
        return record

    @retry(max_retries=2, retry_on=RETRYABLE_EXCEPTIONS)
    async def _list(self, user_id: str) -> Any:
        def _list_accounts() -> Any:
            return self._client.client.connected_accounts.list(user_ids=[user_id])

        return await self._call("list_connections", _list_accounts)

    async def list_connections(self, principal: Principal) -> list[ConnectionRecord]:
        """All broker connections for the principal, normalized."""
        try:
            result = await self._list(principal.user_id)
        except BrokerUnavailable:
            raise
        except Exception as e:
            raise BrokerUnavailable("list_connections", str(e)) from e

        records = []
        for raw in extract_connection_list(result):
            record = to_connection_record(raw)
            if record is not None:
                records.append(record)
        logger.debug(
            "Listed broker connections",
            extra={"user_id": principal.user_id, "count": len(records)},
        )
        return records

    async def revoke_connection(self, connection_id: str) -> None:
        """Delete a connection at the broker.

        Raises:
            BrokerUnavailable: If the broker call fails.
        """

        def _delete() -> Any:
            return self._client.client.connected_accounts.delete(connection_id)

        try:
            await self._call("revoke", _delete)
        except BrokerUnavailable:
            raise
        except Exception as e:
            raise BrokerUnavailable("revoke", str(e)) from e

        logger.info("Connection revoked via Composio", extra={"connection_id": connection_id})

    async def execute_action(
        self,
        connection_id: str,
        action: str,
        params: dict[str, Any],
        user_id: str | None = None,
    ) -> dict[str, Any]:
        """Execute a provider action through the broker.

        Returns:
            Action result dict with 'successful', 'data', and 'error' keys.

        Raises:
            BrokerUnavailable: On transport or SDK failure.
        """

        def _execute() -> Any:
            return self._client.tools.execute(
                slug=action,
                connected_account_id=connection_id,
                user_id=user_id,
                arguments=params,
                dangerously_skip_version_check=True,
            )

        try:
            result = await self._call(action, _execute)
        except BrokerUnavailable:
            raise
        except Exception as e:
            raise BrokerUnavailable(action, str(e)) from e

        if isinstance(result, dict):
            return result
        plain = to_plain(result)
        if isinstance(plain, dict):
            return plain
        return {"successful": True, "data": plain}

    def close(self) -> None:
        """Drop the SDK client and the auth config cache."""
        self._composio = None
        self._auth_config_cache.clear()


def _connection_config(
    auth_mode: AuthMode, param_name: str | None, value: str | None
) -> dict[str, Any] | None:
    if auth_mode == AuthMode.API_KEY:
        return {"auth_scheme": "API_KEY", "val": {"status": "ACTIVE", "api_key": value or ""}}
    if param_name == "subdomain":
        return {"auth_scheme": "OAUTH2", "val": {"status": "INITIALIZING", "subdomain": value}}
    if param_name == "organizationName":
        return {
            "auth_scheme": "OAUTH2",
            "val": {"status": "INITIALIZING", "organization_name": value},
        }
    return None


# Singleton instance
_broker_client: ComposioBrokerClient | None = None


def get_broker_client() -> ComposioBrokerClient:
    """Get the singleton broker client instance."""
    global _broker_client
    if _broker_client is None:
        _broker_client = ComposioBrokerClient()
    return _broker_client
