"""Supabase persistence for integrations, cells and synced contacts."""

import logging
from datetime import UTC, datetime
from typing import Any

from supabase import Client

from cellsync.core.exceptions import PersistenceError
from cellsync.core.resilience import CircuitBreakerOpen, supabase_circuit_breaker
from cellsync.db.supabase import SupabaseClient
from cellsync.integrations.domain import (
    Cell,
    CellScope,
    IntegrationRecord,
    LeadContact,
    Principal,
    Provider,
    Scope,
)

logger = logging.getLogger(__name__)

INTEGRATIONS_TABLE = "integrations"
CELLS_TABLE = "cells"
PHONE_MAPPINGS_TABLE = "phone_user_mappings"


def _now() -> str:
    return datetime.now(UTC).isoformat()


class _SupabaseStore:
    """Shared plumbing: client resolution and guarded execution."""

    def __init__(self, db_client: Client | None = None) -> None:
        self._db_client = db_client

    @property
    def _db(self) -> Client:
        if self._db_client is not None:
            return self._db_client
        return SupabaseClient.get_client()

    def _execute(self, query: Any, operation: str) -> Any:
        try:
            with supabase_circuit_breaker.protect():
                return query.execute()
        except CircuitBreakerOpen as e:
            raise PersistenceError(f"Database unavailable during {operation}") from e
        except Exception as e:
            logger.exception("Database operation failed", extra={"operation": operation})
            raise PersistenceError(f"Database operation failed: {operation}") from e


class IntegrationStore(_SupabaseStore):
    """CRUD on connection records, addressed by scope."""

    def _scoped(self, query: Any, scope: Scope) -> Any:
        query = query.eq("provider", scope.provider.value)
        if isinstance(scope, CellScope):
            return query.eq("cell_id", scope.cell_id)
        query = query.eq("user_id", scope.principal.user_id).is_("cell_id", "null")
        if scope.principal.org_id:
            return query.eq("org_id", scope.principal.org_id)
        return query.is_("org_id", "null")

    async def find(self, scope: Scope) -> IntegrationRecord | None:
        """The record for a scope, if any."""
        query = self._scoped(self._db.table(INTEGRATIONS_TABLE).select("*"), scope).limit(1)
        response = self._execute(query, "find_integration")
        rows = response.data or []
        return IntegrationRecord.from_row(rows[0]) if rows else None

    async def list_global(self, principal: Principal) -> list[IntegrationRecord]:
        """Every global record owned by the principal."""
        query = (
            self._db.table(INTEGRATIONS_TABLE)
            .select("*")
            .eq("user_id", principal.user_id)
            .is_("cell_id", "null")
        )
        if principal.org_id:
            query = query.eq("org_id", principal.org_id)
        else:
            query = query.is_("org_id", "null")
        response = self._execute(query, "list_integrations")
        return [IntegrationRecord.from_row(row) for row in response.data or []]

    async def save_connection(self, scope: Scope, connection_id: str) -> IntegrationRecord:
        """Create or update the scope's record to point at a broker connection.

        Legacy token columns are cleared so the record is broker-backed.
        """
        fields: dict[str, Any] = {
            "connection_id": connection_id,
            "access_token": None,
            "refresh_token": None,
            "instance_url": None,
            "connected_at": _now(),
        }
        existing = await self.find(scope)
        if existing is not None:
            query = self._db.table(INTEGRATIONS_TABLE).update(fields).eq("id", existing.id)
            response = self._execute(query, "update_integration")
        else:
            row = {**fields, "provider": scope.provider.value, "synced_contacts_count": 0}
            if isinstance(scope, CellScope):
                row["cell_id"] = scope.cell_id
                if scope.principal is not None:
                    row["user_id"] = scope.principal.user_id
                    row["org_id"] = scope.principal.org_id
            else:
                row.update(
                    user_id=scope.principal.user_id,
                    org_id=scope.principal.org_id,
                    cell_id=None,
                )
            query = self._db.table(INTEGRATIONS_TABLE).insert(row)
            response = self._execute(query, "insert_integration")

        rows = response.data or []
        if not rows:
            raise PersistenceError("Integration write returned no row")

        logger.info(
            "Integration connection saved",
            extra={
                "provider": scope.provider.value,
                "scope": scope.kind,
                "connection_id": connection_id,
                "created": existing is None,
            },
        )
        return IntegrationRecord.from_row(rows[0])

    async def record_sync(self, integration_id: str, synced_contacts_count: int) -> None:
        """Stamp sync metadata on a record."""
        query = (
            self._db.table(INTEGRATIONS_TABLE)
            .update({"synced_contacts_count": synced_contacts_count, "last_synced_at": _now()})
            .eq("id", integration_id)
        )
        self._execute(query, "record_sync")

    async def delete(self, integration_id: str) -> None:
        query = self._db.table(INTEGRATIONS_TABLE).delete().eq("id", integration_id)
        self._execute(query, "delete_integration")


class CellStore(_SupabaseStore):
    """Read access to the principal's cells."""

    _COLUMNS = "id, phone_number, name, user_id, org_id"

    def _owned(self, query: Any, principal: Principal) -> Any:
        if principal.org_id:
            return query.eq("org_id", principal.org_id)
        return query.eq("user_id", principal.user_id)

    @staticmethod
    def _to_cell(row: dict[str, Any]) -> Cell:
        return Cell(
            id=str(row["id"]),
            phone_number=row.get("phone_number"),
            name=row.get("name"),
            user_id=row.get("user_id"),
            org_id=row.get("org_id"),
        )

    async def list_for_principal(self, principal: Principal) -> list[Cell]:
        query = self._owned(self._db.table(CELLS_TABLE).select(self._COLUMNS), principal)
        response = self._execute(query.order("created_at"), "list_cells")
        return [self._to_cell(row) for row in response.data or []]

    async def get_owned(self, cell_id: str, principal: Principal) -> Cell | None:
        """The cell if it exists and belongs to the principal."""
        query = self._owned(
            self._db.table(CELLS_TABLE).select(self._COLUMNS).eq("id", cell_id), principal
        ).limit(1)
        response = self._execute(query, "get_cell")
        rows = response.data or []
        return self._to_cell(rows[0]) if rows else None


class ContactStore(_SupabaseStore):
    """Phone mappings and per-provider contact shadows."""

    async def existing_numbers(self, cell_id: str) -> list[str]:
        """Every mapped number for a cell, as stored."""
        query = self._db.table(PHONE_MAPPINGS_TABLE).select("phone_number").eq("cell_id", cell_id)
        response = self._execute(query, "list_phone_mappings")
        return [row["phone_number"] for row in response.data or [] if row.get("phone_number")]

    async def create_mapping(self, phone_number: str, cell_id: str, user_id: str | None) -> None:
        """Insert a mapping; an existing one for the pair is left untouched."""
        row = {
            "phone_number": phone_number,
            "cell_id": cell_id,
            "user_id": user_id,
            "created_at": _now(),
        }
        query = self._db.table(PHONE_MAPPINGS_TABLE).upsert(
            row, on_conflict="phone_number,cell_id", ignore_duplicates=True
        )
        self._execute(query, "create_phone_mapping")

    async def upsert_shadow(
        self, provider: Provider, phone_number: str, cell_id: str, contact: LeadContact
    ) -> None:
        """Write the provider's view of a contact, overwriting any previous one."""
        row = {
            "phone_number": phone_number,
            "cell_id": cell_id,
            "external_id": contact.external_id,
            "first_name": contact.first_name,
            "last_name": contact.last_name,
            "email": contact.email,
            "company_name": contact.company_name,
            "updated_at": _now(),
        }
        query = self._db.table(f"{provider.value}_contacts").upsert(
            row, on_conflict="phone_number,cell_id"
        )
        self._execute(query, "upsert_contact_shadow")


_integration_store: IntegrationStore | None = None


def get_integration_store() -> IntegrationStore:
    """Get the singleton integration store."""
    global _integration_store
    if _integration_store is None:
        _integration_store = IntegrationStore()
    return _integration_store
