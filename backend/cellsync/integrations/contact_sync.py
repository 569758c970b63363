"""Contact synchronization: provider leads -> per-cell phone mappings.

A sync pass fetches every lead once, then fans the same lead list out to
each target cell. Within a cell, numbers are compared in canonical E.164
form using the cell's own country, so a lead already mapped under a
different formatting is recognized as existing rather than duplicated.
"""

import logging
from collections.abc import Callable

from cellsync.core.exceptions import CellSyncException, NotFoundError, PersistenceError, ValidationError
from cellsync.integrations.broker import ComposioBrokerClient, get_broker_client
from cellsync.integrations.domain import (
    PROVIDER_CONFIGS,
    Cell,
    CellScope,
    CellSyncResult,
    IntegrationRecord,
    LeadContact,
    Principal,
    Provider,
    SyncResult,
)
from cellsync.integrations.extractors import LeadExtractor, get_extractor
from cellsync.integrations.lifecycle import ConnectionLifecycleManager, get_lifecycle_manager
from cellsync.integrations.phone import PhoneNormalizer, get_phone_normalizer
from cellsync.integrations.store import CellStore, ContactStore, IntegrationStore, get_integration_store

logger = logging.getLogger(__name__)


class ContactSyncEngine:
    """Pulls leads from a provider and merges them into every target cell."""

    def __init__(
        self,
        lifecycle: ConnectionLifecycleManager | None = None,
        broker: ComposioBrokerClient | None = None,
        integration_store: IntegrationStore | None = None,
        cell_store: CellStore | None = None,
        contact_store: ContactStore | None = None,
        normalizer: PhoneNormalizer | None = None,
        extractor_factory: Callable[[Provider, ComposioBrokerClient], LeadExtractor] = get_extractor,
    ) -> None:
        self._broker = broker or get_broker_client()
        self._integrations = integration_store or get_integration_store()
        self._lifecycle = lifecycle or get_lifecycle_manager()
        self._cells = cell_store or CellStore()
        self._contacts = contact_store or ContactStore()
        self._normalizer = normalizer or get_phone_normalizer()
        self._extractor_factory = extractor_factory

    async def sync(
        self, principal: Principal, provider: Provider, cell_id: str | None = None
    ) -> SyncResult:
        """Run one sync pass.

        Raises:
            ValidationError: The principal has no cells.
            NotFoundError: ``cell_id`` is not one of the principal's cells.
            ProviderMismatch, ConnectionNotFound, ConnectionInactive:
                No usable connection.
            SyncFetchError: The provider fetch failed; nothing was written.
            PersistenceError: Every target cell failed to persist.
        """
        cells = await self._target_cells(principal, cell_id)
        integration, connection = await self._lifecycle.resolve_connection(principal, provider, cell_id)

        extractor = self._extractor_factory(provider, self._broker)
        leads = await extractor.fetch(connection.id, principal.user_id)

        result = SyncResult(provider=provider, total_leads_fetched=len(leads))
        for cell in cells:
            result.cells.append(await self._sync_cell(provider, cell, leads, principal))

        result.synced_count = sum(c.synced_count for c in result.cells)
        result.updated_count = sum(c.updated_count for c in result.cells)

        if result.cells and len(result.failed_cells) == len(result.cells):
            raise PersistenceError(f"Contact sync failed for every cell: {result.cells[0].error}")

        await self._record_metadata(principal, provider, integration, result)

        log = logger.warning if result.failed_cells else logger.info
        log(
            "Contact sync finished",
            extra={
                "provider": provider.value,
                "user_id": principal.user_id,
                "leads": result.total_leads_fetched,
                "synced": result.synced_count,
                "updated": result.updated_count,
                "cells": len(result.cells),
                "failed_cells": len(result.failed_cells),
            },
        )
        return result

    async def _target_cells(self, principal: Principal, cell_id: str | None) -> list[Cell]:
        if cell_id:
            cell = await self._cells.get_owned(cell_id, principal)
            if cell is None:
                raise NotFoundError("Cell", cell_id)
            return [cell]
        cells = await self._cells.list_for_principal(principal)
        if not cells:
            raise ValidationError("No cells found. Please create a cell first.")
        return cells

    async def _sync_cell(
        self, provider: Provider, cell: Cell, leads: list[LeadContact], principal: Principal
    ) -> CellSyncResult:
        """Merge the lead list into one cell; a store failure stops this cell only."""
        outcome = CellSyncResult(cell_id=cell.id)
        country = self._normalizer.country_for_number(cell.phone_number)

        try:
            known: set[str] = set()
            for stored in await self._contacts.existing_numbers(cell.id):
                canonical = self._normalizer.normalize(stored, country)
                known.add(canonical or stored)

            seen: set[str] = set()
            for lead in leads:
                for raw_phone in lead.phones:
                    phone = self._normalizer.normalize(raw_phone, country)
                    if phone is None or phone in seen:
                        continue
                    seen.add(phone)

                    if phone in known:
                        await self._contacts.upsert_shadow(provider, phone, cell.id, lead)
                        outcome.updated_count += 1
                    else:
                        owner = cell.user_id or principal.user_id
                        await self._contacts.create_mapping(phone, cell.id, owner)
                        await self._contacts.upsert_shadow(provider, phone, cell.id, lead)
                        known.add(phone)
                        outcome.synced_count += 1
        except CellSyncException as e:
            outcome.error = e.message
            logger.warning(
                "Contact sync failed for cell",
                extra={"provider": provider.value, "cell_id": cell.id, "error": e.message},
            )
        return outcome

    async def _record_metadata(
        self,
        principal: Principal,
        provider: Provider,
        integration: IntegrationRecord,
        result: SyncResult,
    ) -> None:
        # Legacy per-cell rows track their own cell's count.
        if PROVIDER_CONFIGS[provider].supports_cell_scope:
            for cell_result in result.cells:
                if cell_result.error is not None:
                    continue
                scope = CellScope(cell_id=cell_result.cell_id, provider=provider, principal=principal)
                cell_record = await self._integrations.find(scope)
                if cell_record is not None and cell_record.id != integration.id:
                    await self._integrations.record_sync(cell_record.id, cell_result.synced_count)

        await self._integrations.record_sync(integration.id, result.synced_count)


def sync_message(result: SyncResult) -> str:
    """Human summary of a sync pass."""
    display = PROVIDER_CONFIGS[result.provider].display_name
    cells = len(result.cells)
    message = f"Synced {result.synced_count} new contacts"
    if result.updated_count:
        message += f" and updated {result.updated_count} existing contacts"
    message += f" from {display} to {cells} cell{'s' if cells != 1 else ''}"
    if result.failed_cells:
        message += f" ({len(result.failed_cells)} failed)"
    return message


_sync_engine: ContactSyncEngine | None = None


def get_sync_engine() -> ContactSyncEngine:
    """Get the singleton sync engine."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = ContactSyncEngine()
    return _sync_engine
