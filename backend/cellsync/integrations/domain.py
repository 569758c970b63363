"""Domain models for provider integrations and contact sync."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class Provider(str, Enum):
    """Supported CRM / helpdesk providers."""

    SALESFORCE = "salesforce"
    HUBSPOT = "hubspot"
    DYNAMICS365 = "dynamics365"
    ZOHO = "zoho"
    ZOHO_BIGIN = "zoho_bigin"
    AGENCYZOOM = "agencyzoom"
    ATTIO = "attio"
    ZENDESK = "zendesk"


class AuthMode(str, Enum):
    """How the broker establishes a connection for a provider."""

    OAUTH = "oauth"  # redirect flow, completed by the callback
    API_KEY = "api_key"  # confirmed synchronously on connect


class ConnectionState(str, Enum):
    """Lifecycle state of a principal's connection to a provider."""

    NOT_CONNECTED = "not_connected"
    PENDING_OAUTH = "pending_oauth"
    ACTIVE = "active"
    FAILED = "failed"
    EXPIRED = "expired"
    REVOKED = "revoked"
    DISCONNECTING = "disconnecting"


@dataclass(frozen=True)
class ProviderConfig:
    """Static configuration for one provider."""

    provider: Provider
    display_name: str
    description: str
    toolkit_slug: str
    auth_mode: AuthMode = AuthMode.OAUTH
    connect_param: str | None = None  # request body field required by connect
    connect_param_hint: str = ""
    supports_cell_scope: bool = False  # legacy per-cell integration rows exist

    @property
    def contacts_table(self) -> str:
        return f"{self.provider.value}_contacts"


PROVIDER_CONFIGS: dict[Provider, ProviderConfig] = {
    Provider.SALESFORCE: ProviderConfig(
        provider=Provider.SALESFORCE,
        display_name="Salesforce",
        description="Sync contacts with phone numbers from Salesforce",
        toolkit_slug="salesforce",
        supports_cell_scope=True,
    ),
    Provider.HUBSPOT: ProviderConfig(
        provider=Provider.HUBSPOT,
        display_name="HubSpot",
        description="Sync contacts from HubSpot CRM",
        toolkit_slug="hubspot",
        supports_cell_scope=True,
    ),
    Provider.DYNAMICS365: ProviderConfig(
        provider=Provider.DYNAMICS365,
        display_name="Microsoft Dynamics 365",
        description="Sync leads from Dynamics 365",
        toolkit_slug="dynamics365",
        connect_param="organizationName",
        connect_param_hint="Your Dynamics 365 organization name (myorg from myorg.crm.dynamics.com)",
        supports_cell_scope=True,
    ),
    Provider.ZOHO: ProviderConfig(
        provider=Provider.ZOHO,
        display_name="Zoho CRM",
        description="Sync contacts from Zoho CRM",
        toolkit_slug="zoho",
    ),
    Provider.ZOHO_BIGIN: ProviderConfig(
        provider=Provider.ZOHO_BIGIN,
        display_name="Zoho Bigin",
        description="Sync contacts from Zoho Bigin",
        toolkit_slug="zoho_bigin",
    ),
    Provider.AGENCYZOOM: ProviderConfig(
        provider=Provider.AGENCYZOOM,
        display_name="AgencyZoom",
        description="Sync customers and leads from AgencyZoom",
        toolkit_slug="agencyzoom",
        auth_mode=AuthMode.API_KEY,
        connect_param="apiKey",
        connect_param_hint="Your AgencyZoom API key",
    ),
    Provider.ATTIO: ProviderConfig(
        provider=Provider.ATTIO,
        display_name="Attio",
        description="Sync people from Attio",
        toolkit_slug="attio",
    ),
    Provider.ZENDESK: ProviderConfig(
        provider=Provider.ZENDESK,
        display_name="Zendesk",
        description="Sync end users with phone numbers from Zendesk",
        toolkit_slug="zendesk",
        connect_param="subdomain",
        connect_param_hint='Your Zendesk subdomain ("your-company" from your-company.zendesk.com)',
    ),
}


def resolve_provider(key: str) -> Provider:
    """Map a URL path segment to a Provider.

    Hyphenated aliases such as ``zoho-bigin`` are accepted.

    Raises:
        ValueError: If the key names no supported provider.
    """
    return Provider(key.strip().lower().replace("-", "_"))


# ---------------------------------------------------------------------------
# Tenancy and scope
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Principal:
    """The authenticated tenant driving a request."""

    user_id: str
    org_id: str | None = None


@dataclass
class Cell:
    """A tenant-owned messaging endpoint; the fan-out unit for contact sync."""

    id: str
    phone_number: str | None
    name: str | None = None
    user_id: str | None = None
    org_id: str | None = None


@dataclass(frozen=True)
class GlobalScope:
    """Integration usable by every cell of the principal."""

    principal: Principal
    provider: Provider
    kind: str = field(default="global", init=False)


@dataclass(frozen=True)
class CellScope:
    """Legacy integration owned by a single cell."""

    cell_id: str
    provider: Provider
    principal: Principal | None = None
    kind: str = field(default="cell", init=False)


Scope = GlobalScope | CellScope


@dataclass
class IntegrationRecord:
    """A persisted connection record (one row of ``integrations``)."""

    id: str
    provider: Provider
    user_id: str | None = None
    org_id: str | None = None
    cell_id: str | None = None
    connection_id: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    instance_url: str | None = None
    connected_at: datetime | None = None
    last_synced_at: datetime | None = None
    synced_contacts_count: int = 0

    @property
    def is_legacy(self) -> bool:
        """Token-based record that predates the broker."""
        return not self.connection_id

    @property
    def has_legacy_tokens(self) -> bool:
        return bool(self.access_token and self.refresh_token)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "IntegrationRecord":
        return cls(
            id=str(row["id"]),
            provider=Provider(row["provider"]),
            user_id=row.get("user_id"),
            org_id=row.get("org_id"),
            cell_id=row.get("cell_id"),
            connection_id=row.get("connection_id"),
            access_token=row.get("access_token"),
            refresh_token=row.get("refresh_token"),
            instance_url=row.get("instance_url"),
            connected_at=_parse_ts(row.get("connected_at")),
            last_synced_at=_parse_ts(row.get("last_synced_at")),
            synced_contacts_count=row.get("synced_contacts_count") or 0,
        )


def _parse_ts(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable timestamp in integration row: %r", value)
        return None


# ---------------------------------------------------------------------------
# Broker connection records
# ---------------------------------------------------------------------------

ACTIVE_STATUSES = frozenset({"ACTIVE", "CONNECTED", "ENABLED", "LIVE", "READY"})
INACTIVE_STATUSES = frozenset({
    "INACTIVE",
    "DISCONNECTED",
    "DISABLED",
    "EXPIRED",
    "FAILED",
    "REVOKED",
    "PENDING",
    "INITIATED",
    "INITIALIZING",
})


def is_status_active(status: str | None) -> bool:
    """Return True iff the broker status is in the usable subset."""
    if not status:
        return False
    normalized = status.strip().upper()
    if normalized in ACTIVE_STATUSES:
        return True
    if normalized not in INACTIVE_STATUSES:
        logger.warning("Unknown connection status: %r", status)
    return False


def state_for_status(status: str | None) -> ConnectionState:
    """Derive the lifecycle state from a broker status string."""
    normalized = (status or "").strip().upper()
    if normalized in ACTIVE_STATUSES:
        return ConnectionState.ACTIVE
    if normalized == "EXPIRED":
        return ConnectionState.EXPIRED
    if normalized in {"REVOKED", "DISABLED", "DISCONNECTED", "INACTIVE"}:
        return ConnectionState.REVOKED
    if normalized in {"PENDING", "INITIATED", "INITIALIZING"}:
        return ConnectionState.PENDING_OAUTH
    if normalized == "FAILED":
        return ConnectionState.FAILED
    return ConnectionState.NOT_CONNECTED


@dataclass
class ConnectionRecord:
    """Canonical view of a broker connected account."""

    id: str
    status: str | None = None
    toolkit_ids: tuple[str, ...] = ()
    app_unique_id: str | None = None
    app_name: str | None = None
    name: str | None = None
    auth_config: dict[str, Any] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return is_status_active(self.status)


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass
class SoftFailure:
    """A best-effort step that failed without failing the operation."""

    operation: str
    error: str


@dataclass
class ConnectResult:
    """Outcome of initiating a connection."""

    provider: Provider
    immediate: bool
    connection_id: str | None = None
    auth_url: str | None = None
    state: str | None = None
    connection_request_id: str | None = None


@dataclass
class CallbackResult:
    """Outcome of completing an OAuth redirect."""

    provider: Provider
    state: ConnectionState
    connection_id: str | None = None
    error_code: str | None = None
    details: str | None = None

    @property
    def success(self) -> bool:
        return self.state == ConnectionState.ACTIVE


@dataclass
class StatusResult:
    """Reconciled connection status for a scope."""

    connected: bool
    state: ConnectionState
    synced_contacts_count: int = 0
    connected_at: datetime | None = None
    last_synced_at: datetime | None = None
    connection_id: str | None = None
    connection_status: str | None = None
    error: str | None = None
    needs_linking: bool | None = None
    auto_linked: bool | None = None
    legacy: bool | None = None


@dataclass
class DisconnectResult:
    """Outcome of tearing down a connection."""

    success: bool
    message: str
    soft_failures: list[SoftFailure] = field(default_factory=list)

    @property
    def revoke_failed(self) -> bool:
        return any(f.operation == "revoke" for f in self.soft_failures)


@dataclass
class LeadContact:
    """Provider-neutral view of one fetched lead/contact."""

    external_id: str
    phones: list[str] = field(default_factory=list)
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    company_name: str | None = None

    @property
    def display_name(self) -> str:
        parts = [p for p in (self.first_name, self.last_name) if p]
        if parts:
            return " ".join(parts)
        return self.email or "Unknown Contact"


@dataclass
class CellSyncResult:
    """Per-cell outcome of a sync pass."""

    cell_id: str
    synced_count: int = 0
    updated_count: int = 0
    error: str | None = None


@dataclass
class SyncResult:
    """Aggregate outcome of a sync across cells."""

    provider: Provider
    synced_count: int = 0
    updated_count: int = 0
    total_leads_fetched: int = 0
    cells: list[CellSyncResult] = field(default_factory=list)

    @property
    def cells_synced(self) -> int:
        return sum(1 for c in self.cells if c.error is None)

    @property
    def failed_cells(self) -> list[CellSyncResult]:
        return [c for c in self.cells if c.error is not None]

    @property
    def success(self) -> bool:
        return not self.failed_cells
