"""In-memory fakes for the broker and stores used by engine tests."""

from datetime import UTC, datetime
from typing import Any

import pytest

from cellsync.core.exceptions import BrokerUnavailable, PersistenceError
from cellsync.integrations.broker import ConnectionInitiation
from cellsync.integrations.contact_sync import ContactSyncEngine
from cellsync.integrations.domain import (
    Cell,
    CellScope,
    ConnectionRecord,
    IntegrationRecord,
    LeadContact,
    Principal,
    Provider,
    Scope,
)
from cellsync.integrations.lifecycle import ConnectionLifecycleManager
from cellsync.integrations.phone import PhoneNormalizer


class FakeBroker:
    """Broker double holding connections in a dict."""

    def __init__(self) -> None:
        self.connections: dict[str, ConnectionRecord] = {}
        self.list_error: Exception | None = None
        self.get_error: Exception | None = None
        self.revoke_error: Exception | None = None
        self.initiate_error: Exception | None = None
        self.redirect_url: str | None = "https://auth.example.com/authorize"
        self.next_request_id = "req-1"
        self.calls: list[str] = []
        self.revoked: list[str] = []
        self.initiated: list[dict[str, Any]] = []

    def add(self, connection_id: str, status: str = "ACTIVE", **fields: Any) -> ConnectionRecord:
        record = ConnectionRecord(id=connection_id, status=status, **fields)
        self.connections[connection_id] = record
        return record

    async def resolve_auth_config_id(self, provider: Provider) -> str:
        self.calls.append("resolve_auth_config_id")
        return f"ac_{provider.value}"

    async def initiate_connection(
        self,
        principal: Principal,
        provider: Provider,
        auth_config_id: str,
        callback_url: str | None = None,
        param: str | None = None,
    ) -> ConnectionInitiation:
        self.calls.append("initiate_connection")
        if self.initiate_error:
            raise self.initiate_error
        self.initiated.append(
            {"provider": provider, "auth_config_id": auth_config_id, "callback_url": callback_url, "param": param}
        )
        return ConnectionInitiation(
            connection_request_id=self.next_request_id,
            redirect_url=self.redirect_url,
            status="INITIATED",
        )

    async def get_connection(self, connection_id: str) -> ConnectionRecord | None:
        self.calls.append("get_connection")
        if self.get_error:
            raise self.get_error
        return self.connections.get(connection_id)

    async def list_connections(self, principal: Principal) -> list[ConnectionRecord]:
        self.calls.append("list_connections")
        if self.list_error:
            raise self.list_error
        return list(self.connections.values())

    async def revoke_connection(self, connection_id: str) -> None:
        self.calls.append("revoke_connection")
        if self.revoke_error:
            raise self.revoke_error
        self.revoked.append(connection_id)
        self.connections.pop(connection_id, None)


class FakeIntegrationStore:
    """IntegrationStore double keyed by record id."""

    def __init__(self) -> None:
        self.rows: dict[str, IntegrationRecord] = {}
        self.calls: list[str] = []
        self.sync_updates: list[tuple[str, int]] = []
        self._next = 1

    def _matches(self, record: IntegrationRecord, scope: Scope) -> bool:
        if record.provider != scope.provider:
            return False
        if isinstance(scope, CellScope):
            return record.cell_id == scope.cell_id
        return (
            record.cell_id is None
            and record.user_id == scope.principal.user_id
            and record.org_id == scope.principal.org_id
        )

    def add(self, provider: Provider, **fields: Any) -> IntegrationRecord:
        record_id = fields.pop("id", f"int-{self._next}")
        self._next += 1
        record = IntegrationRecord(id=record_id, provider=provider, **fields)
        self.rows[record_id] = record
        return record

    async def find(self, scope: Scope) -> IntegrationRecord | None:
        self.calls.append("find")
        return next((r for r in self.rows.values() if self._matches(r, scope)), None)

    async def list_global(self, principal: Principal) -> list[IntegrationRecord]:
        return [
            r for r in self.rows.values()
            if r.cell_id is None and r.user_id == principal.user_id and r.org_id == principal.org_id
        ]

    async def save_connection(self, scope: Scope, connection_id: str) -> IntegrationRecord:
        self.calls.append("save_connection")
        existing = await self.find(scope)
        now = datetime.now(UTC)
        if existing is not None:
            existing.connection_id = connection_id
            existing.access_token = existing.refresh_token = existing.instance_url = None
            existing.connected_at = now
            return existing
        if isinstance(scope, CellScope):
            principal = scope.principal
            return self.add(
                scope.provider,
                cell_id=scope.cell_id,
                user_id=principal.user_id if principal else None,
                org_id=principal.org_id if principal else None,
                connection_id=connection_id,
                connected_at=now,
            )
        return self.add(
            scope.provider,
            user_id=scope.principal.user_id,
            org_id=scope.principal.org_id,
            connection_id=connection_id,
            connected_at=now,
        )

    async def record_sync(self, integration_id: str, synced_contacts_count: int) -> None:
        self.sync_updates.append((integration_id, synced_contacts_count))
        record = self.rows[integration_id]
        record.synced_contacts_count = synced_contacts_count
        record.last_synced_at = datetime.now(UTC)

    async def delete(self, integration_id: str) -> None:
        self.calls.append("delete")
        self.rows.pop(integration_id, None)


class FakeCellStore:
    """Org principals own their org's cells, others their own."""

    def __init__(self, cells: list[Cell] | None = None) -> None:
        self.cells = cells or []

    @staticmethod
    def _owns(cell: Cell, principal: Principal) -> bool:
        if principal.org_id:
            return cell.org_id == principal.org_id
        return cell.user_id == principal.user_id

    async def list_for_principal(self, principal: Principal) -> list[Cell]:
        return [c for c in self.cells if self._owns(c, principal)]

    async def get_owned(self, cell_id: str, principal: Principal) -> Cell | None:
        return next((c for c in self.cells if c.id == cell_id and self._owns(c, principal)), None)


class FakeContactStore:
    """Mappings and shadows with the same uniqueness as the real tables."""

    def __init__(self) -> None:
        self.mappings: dict[tuple[str, str], dict[str, Any]] = {}
        self.shadows: dict[tuple[Provider, str, str], LeadContact] = {}
        self.failing_cells: set[str] = set()
        self.mapping_writes = 0

    def seed_mapping(self, phone_number: str, cell_id: str) -> None:
        self.mappings[(phone_number, cell_id)] = {"user_id": "seed", "created_at": "seed"}

    async def existing_numbers(self, cell_id: str) -> list[str]:
        if cell_id in self.failing_cells:
            raise PersistenceError("Database operation failed: list_phone_mappings")
        return [phone for phone, cid in self.mappings if cid == cell_id]

    async def create_mapping(self, phone_number: str, cell_id: str, user_id: str | None) -> None:
        self.mapping_writes += 1
        self.mappings.setdefault(
            (phone_number, cell_id),
            {"user_id": user_id, "created_at": datetime.now(UTC).isoformat()},
        )

    async def upsert_shadow(
        self, provider: Provider, phone_number: str, cell_id: str, contact: LeadContact
    ) -> None:
        self.shadows[(provider, phone_number, cell_id)] = contact


class FakeExtractor:
    def __init__(self, leads: list[LeadContact], error: Exception | None = None) -> None:
        self.leads = leads
        self.error = error
        self.fetches: list[str] = []

    async def fetch(self, connection_id: str, user_id: str | None = None) -> list[LeadContact]:
        self.fetches.append(connection_id)
        if self.error:
            raise self.error
        return list(self.leads)


@pytest.fixture
def principal() -> Principal:
    return Principal(user_id="user-1", org_id=None)


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def integration_store() -> FakeIntegrationStore:
    return FakeIntegrationStore()


@pytest.fixture
def contact_store() -> FakeContactStore:
    return FakeContactStore()


@pytest.fixture
def broker_down() -> BrokerUnavailable:
    return BrokerUnavailable("list_connections", "composio timed out")


@pytest.fixture
def cells() -> list[Cell]:
    return [
        Cell(id="cell-us", phone_number="+14155550000", name="Main line", user_id="user-1"),
        Cell(id="cell-uk", phone_number="+442071838000", name="London", user_id="user-1"),
        Cell(id="cell-other", phone_number="+14155559999", name="Not mine", user_id="user-2"),
    ]


@pytest.fixture
def cell_store(cells: list[Cell]) -> FakeCellStore:
    return FakeCellStore(cells)


@pytest.fixture
def lifecycle(
    broker: FakeBroker, integration_store: FakeIntegrationStore, cell_store: FakeCellStore
) -> ConnectionLifecycleManager:
    return ConnectionLifecycleManager(
        broker=broker,  # type: ignore[arg-type]
        store=integration_store,  # type: ignore[arg-type]
        cell_store=cell_store,  # type: ignore[arg-type]
    )


@pytest.fixture
def make_engine(
    lifecycle: ConnectionLifecycleManager,
    broker: FakeBroker,
    integration_store: FakeIntegrationStore,
    contact_store: FakeContactStore,
    cells: list[Cell],
):
    """Build a sync engine over the fakes with a canned lead list."""

    def _make(leads: list[LeadContact], error: Exception | None = None, cell_list: list[Cell] | None = None):
        extractor = FakeExtractor(leads, error)
        engine = ContactSyncEngine(
            lifecycle=lifecycle,
            broker=broker,  # type: ignore[arg-type]
            integration_store=integration_store,  # type: ignore[arg-type]
            cell_store=FakeCellStore(cells if cell_list is None else cell_list),  # type: ignore[arg-type]
            contact_store=contact_store,  # type: ignore[arg-type]
            normalizer=PhoneNormalizer(default_country="US"),
            extractor_factory=lambda provider, _broker: extractor,  # type: ignore[arg-type,return-value]
        )
        return engine, extractor

    return _make
