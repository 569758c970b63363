"""Tests for ContactSyncEngine fan-out, dedupe and partial failure."""

import pytest

from cellsync.core.exceptions import (
    NotFoundError,
    PersistenceError,
    ProviderMismatch,
    SyncFetchError,
    ValidationError,
)
from cellsync.integrations.contact_sync import sync_message
from cellsync.integrations.domain import Cell, LeadContact, Principal, Provider, SyncResult


def _lead(external_id: str, *phones: str, company: str | None = None) -> LeadContact:
    return LeadContact(external_id=external_id, phones=list(phones), first_name="Test", company_name=company)


@pytest.fixture
def connected(broker, integration_store, principal):
    """An active global HubSpot connection."""
    broker.add("ca_hs", "ACTIVE", toolkit_ids=("hubspot",))
    return integration_store.add(Provider.HUBSPOT, user_id=principal.user_id, connection_id="ca_hs")


@pytest.mark.asyncio
async def test_formats_of_one_number_sync_once(make_engine, contact_store, principal, connected) -> None:
    engine, _ = make_engine([_lead("1", "(415) 555-0100"), _lead("2", "+14155550100")])

    result = await engine.sync(principal, Provider.HUBSPOT, cell_id="cell-us")

    assert result.synced_count == 1
    assert result.updated_count == 0
    assert set(contact_store.mappings) == {("+14155550100", "cell-us")}


@pytest.mark.asyncio
async def test_second_pass_updates_shadow_only(make_engine, contact_store, principal, connected) -> None:
    engine, _ = make_engine([_lead("1", "(415) 555-0100", company="Old Co")])
    await engine.sync(principal, Provider.HUBSPOT, cell_id="cell-us")
    mapping_before = dict(contact_store.mappings)

    engine, _ = make_engine([_lead("1", "(415) 555-0100", company="New Co")])
    result = await engine.sync(principal, Provider.HUBSPOT, cell_id="cell-us")

    assert result.synced_count == 0
    assert result.updated_count == 1
    assert contact_store.mappings == mapping_before
    shadow = contact_store.shadows[(Provider.HUBSPOT, "+14155550100", "cell-us")]
    assert shadow.company_name == "New Co"


@pytest.mark.asyncio
async def test_existing_mapping_in_other_format_is_recognized(
    make_engine, contact_store, principal, connected
) -> None:
    contact_store.seed_mapping("415-555-0100", "cell-us")
    engine, _ = make_engine([_lead("1", "+1 (415) 555-0100")])

    result = await engine.sync(principal, Provider.HUBSPOT, cell_id="cell-us")

    assert result.synced_count == 0
    assert result.updated_count == 1
    assert contact_store.mapping_writes == 0


@pytest.mark.asyncio
async def test_fans_out_to_every_owned_cell(make_engine, contact_store, integration_store, principal, connected) -> None:
    engine, extractor = make_engine([_lead("1", "+14155550100", "not a number")])

    result = await engine.sync(principal, Provider.HUBSPOT)

    assert extractor.fetches == ["ca_hs"]
    assert [c.cell_id for c in result.cells] == ["cell-us", "cell-uk"]
    assert result.synced_count == 2
    assert result.total_leads_fetched == 1
    assert ("+14155550100", "cell-other") not in contact_store.mappings
    assert integration_store.sync_updates[-1] == (connected.id, 2)
    assert integration_store.rows[connected.id].last_synced_at is not None


@pytest.mark.asyncio
async def test_cell_country_decides_local_numbers(make_engine, contact_store, principal, connected) -> None:
    engine, _ = make_engine([_lead("1", "020 7183 8750")])

    await engine.sync(principal, Provider.HUBSPOT, cell_id="cell-uk")

    assert ("+442071838750", "cell-uk") in contact_store.mappings


@pytest.mark.asyncio
async def test_one_failing_cell_does_not_stop_others(make_engine, contact_store, principal, connected) -> None:
    contact_store.failing_cells.add("cell-uk")
    engine, _ = make_engine([_lead("1", "+14155550100")])

    result = await engine.sync(principal, Provider.HUBSPOT)

    assert result.success is False
    assert result.cells_synced == 1
    assert [c.cell_id for c in result.failed_cells] == ["cell-uk"]
    assert ("+14155550100", "cell-us") in contact_store.mappings
    assert "1 failed" in sync_message(result)


@pytest.mark.asyncio
async def test_every_cell_failing_raises(make_engine, contact_store, integration_store, principal, connected) -> None:
    contact_store.failing_cells.update({"cell-us", "cell-uk"})
    engine, _ = make_engine([_lead("1", "+14155550100")])

    with pytest.raises(PersistenceError):
        await engine.sync(principal, Provider.HUBSPOT)
    assert integration_store.sync_updates == []


@pytest.mark.asyncio
async def test_fetch_error_writes_nothing(make_engine, contact_store, integration_store, principal, connected) -> None:
    engine, _ = make_engine([], error=SyncFetchError("hubspot", "boom"))

    with pytest.raises(SyncFetchError):
        await engine.sync(principal, Provider.HUBSPOT)
    assert contact_store.mappings == {}
    assert integration_store.sync_updates == []


@pytest.mark.asyncio
async def test_cell_not_owned(make_engine, broker, integration_store, contact_store, principal, connected) -> None:
    integration_store.add(Provider.HUBSPOT, cell_id="cell-other", user_id="user-2", connection_id="conn-victim")
    engine, extractor = make_engine([_lead("1", "+14155550100")])
    with pytest.raises(NotFoundError):
        await engine.sync(principal, Provider.HUBSPOT, cell_id="cell-other")
    assert extractor.fetches == []
    assert broker.calls == []
    assert contact_store.mappings == {}


@pytest.mark.asyncio
async def test_principal_without_cells(make_engine, principal, connected) -> None:
    engine, _ = make_engine([_lead("1", "+14155550100")], cell_list=[])
    with pytest.raises(ValidationError):
        await engine.sync(principal, Provider.HUBSPOT)


@pytest.mark.asyncio
async def test_no_connection(make_engine, principal) -> None:
    engine, _ = make_engine([_lead("1", "+14155550100")])
    with pytest.raises(ProviderMismatch):
        await engine.sync(principal, Provider.ATTIO)


@pytest.mark.asyncio
async def test_legacy_cell_row_gets_its_own_count(
    make_engine, broker, integration_store, principal, connected
) -> None:
    broker.add("ca_cell", "ACTIVE")
    cell_row = integration_store.add(Provider.HUBSPOT, cell_id="cell-us", connection_id="ca_cell")
    engine, _ = make_engine([_lead("1", "+14155550100"), _lead("2", "+14155550101")])

    await engine.sync(principal, Provider.HUBSPOT, cell_id="cell-us")

    assert (cell_row.id, 2) in integration_store.sync_updates
    assert integration_store.sync_updates[-1] == (connected.id, 2)


@pytest.mark.asyncio
async def test_mapping_belongs_to_cell_owner(make_engine, broker, integration_store, contact_store) -> None:
    member = Principal(user_id="user-3", org_id="org-1")
    broker.add("ca_org", "ACTIVE", toolkit_ids=("hubspot",))
    integration_store.add(Provider.HUBSPOT, user_id="user-3", org_id="org-1", connection_id="ca_org")
    shared = Cell(id="cell-org", phone_number="+14155550000", user_id="user-1", org_id="org-1")
    engine, _ = make_engine([_lead("1", "+14155550100")], cell_list=[shared])

    await engine.sync(member, Provider.HUBSPOT)

    assert contact_store.mappings[("+14155550100", "cell-org")]["user_id"] == "user-1"


@pytest.mark.asyncio
async def test_rerun_is_idempotent(make_engine, contact_store, principal, connected) -> None:
    leads = [_lead("1", "+14155550100"), _lead("2", "+14155550101")]
    engine, _ = make_engine(leads)
    await engine.sync(principal, Provider.HUBSPOT, cell_id="cell-us")
    snapshot = dict(contact_store.mappings)

    engine, _ = make_engine(leads)
    result = await engine.sync(principal, Provider.HUBSPOT, cell_id="cell-us")

    assert result.synced_count == 0
    assert contact_store.mappings == snapshot


def test_sync_message() -> None:
    result = SyncResult(provider=Provider.SALESFORCE, synced_count=3, updated_count=2)
    result.cells = []
    assert sync_message(result) == (
        "Synced 3 new contacts and updated 2 existing contacts from Salesforce to 0 cells"
    )
