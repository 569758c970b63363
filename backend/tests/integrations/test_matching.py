"""Tests for provider matching over broker connection records."""

import pytest

from cellsync.integrations.broker import to_connection_record
from cellsync.integrations.domain import ConnectionRecord, Provider
from cellsync.integrations.matching import get_matcher


def _record(**raw) -> ConnectionRecord:
    record = to_connection_record({"id": "ca_1", "status": "ACTIVE", **raw})
    assert record is not None
    return record


class TestCascade:
    def test_toolkit_string(self) -> None:
        assert get_matcher(Provider.SALESFORCE).matches(_record(toolkit="salesforce"))

    def test_toolkit_object_slug(self) -> None:
        record = _record(toolkit={"slug": "attio", "logo": "x"})
        assert get_matcher(Provider.ATTIO).matches(record)

    def test_app_unique_id_exact(self) -> None:
        assert get_matcher(Provider.ZENDESK).matches(_record(appUniqueId="ZENDESK"))

    def test_app_name_substring_case_insensitive(self) -> None:
        assert get_matcher(Provider.DYNAMICS365).matches(_record(appName="microsoft_dynamics365_crm"))

    def test_nested_auth_config(self) -> None:
        record = _record(authConfig={"appName": "agencyzoom"})
        assert get_matcher(Provider.AGENCYZOOM).matches(record)

    def test_nested_data(self) -> None:
        record = _record(data={"appUniqueId": "hubspot", "status": "ACTIVE"})
        assert get_matcher(Provider.HUBSPOT).matches(record)

    def test_display_name_only_for_hubspot(self) -> None:
        record = _record(name="My HubSpot portal")
        assert get_matcher(Provider.HUBSPOT).matches(record)
        assert not get_matcher(Provider.SALESFORCE).matches(_record(name="Salesforce org"))

    def test_unrelated_record(self) -> None:
        assert not get_matcher(Provider.SALESFORCE).matches(_record(toolkit="gmail"))


class TestZohoFamily:
    def test_zoho_does_not_claim_bigin(self) -> None:
        bigin = _record(toolkit={"slug": "zoho_bigin"})
        assert not get_matcher(Provider.ZOHO).matches(bigin)
        assert get_matcher(Provider.ZOHO_BIGIN).matches(bigin)

    def test_bigin_does_not_claim_zoho(self) -> None:
        zoho = _record(appName="zoho")
        assert get_matcher(Provider.ZOHO).matches(zoho)
        assert not get_matcher(Provider.ZOHO_BIGIN).matches(zoho)

    @pytest.mark.parametrize(
        "raw",
        [{"toolkit": "ZOHO-BIGIN"}, {"appUniqueId": "zoho-bigin"}, {"appName": "Zoho Bigin"}],
    )
    def test_hyphenated_bigin_spellings(self, raw) -> None:
        record = _record(**raw)
        assert get_matcher(Provider.ZOHO_BIGIN).matches(record)
        assert not get_matcher(Provider.ZOHO).matches(record)


class TestSalesforceSubdomain:
    def test_login_subdomain_on_active_connection(self) -> None:
        record = _record(data={"status": "ACTIVE", "subdomain": "login"})
        assert get_matcher(Provider.SALESFORCE).matches(record)
        assert not get_matcher(Provider.HUBSPOT).matches(record)

    def test_salesforce_in_subdomain(self) -> None:
        record = _record(data={"status": "ACTIVE", "subdomain": "acme.my.salesforce"})
        assert get_matcher(Provider.SALESFORCE).matches(record)

    def test_subdomain_ignored_unless_active(self) -> None:
        record = _record(data={"status": "INITIATED", "subdomain": "login"})
        assert not get_matcher(Provider.SALESFORCE).matches(record)


class TestSelect:
    def test_select_skips_inactive_matches(self) -> None:
        records = [
            _record(id="ca_old", toolkit="salesforce", status="EXPIRED"),
            _record(id="ca_new", toolkit="salesforce", status="connected"),
        ]
        selected = get_matcher(Provider.SALESFORCE).select(records)
        assert selected is not None
        assert selected.id == "ca_new"

    def test_select_none_when_only_inactive(self) -> None:
        records = [_record(toolkit="salesforce", status="INITIATED")]
        assert get_matcher(Provider.SALESFORCE).select(records) is None

    def test_filter_preserves_order(self) -> None:
        records = [
            _record(id="a", toolkit="attio"),
            _record(id="b", toolkit="zendesk"),
            _record(id="c", appName="attio"),
        ]
        assert [r.id for r in get_matcher(Provider.ATTIO).filter(records)] == ["a", "c"]


@pytest.mark.parametrize("provider", list(Provider))
def test_every_provider_has_a_matcher(provider: Provider) -> None:
    assert get_matcher(provider).provider == provider
