"""Lead extraction: fetch provider records through the broker and flatten them.

Each provider has an extractor that knows which broker action(s) to run,
where the record list lives in the response, and which fields carry phone
numbers, names, email and company. Extractors only read; nothing here
writes to the store.
"""

import logging
from typing import Any

from cellsync.core.config import settings
from cellsync.core.exceptions import BrokerUnavailable, SyncFetchError
from cellsync.integrations.broker import ComposioBrokerClient
from cellsync.integrations.domain import LeadContact, Provider

logger = logging.getLogger(__name__)

_RECONNECT_MARKERS = (
    "401",
    "unauthorized",
    "unauthenticated",
    "expired",
    "invalid token",
    "invalid_token",
    "invalid_grant",
    "revoked",
)


def looks_like_auth_failure(message: str) -> bool:
    text = message.lower()
    return any(marker in text for marker in _RECONNECT_MARKERS)


def _str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _dig(record: dict[str, Any], path: str) -> Any:
    """Read a dotted path, returning None on any missing hop."""
    value: Any = record
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


class LeadExtractor:
    """Base extractor: one broker action, one list, flat field paths."""

    provider: Provider
    action: str = ""
    list_keys: tuple[str, ...] = ("data",)
    id_field: str = "id"
    phone_fields: tuple[str, ...] = ()
    first_name_field: str | None = None
    last_name_field: str | None = None
    email_field: str | None = None
    company_fields: tuple[str, ...] = ()

    def __init__(self, broker: ComposioBrokerClient) -> None:
        self._broker = broker

    def params(self) -> dict[str, Any]:
        return {}

    async def _run(
        self, action: str, params: dict[str, Any], connection_id: str, user_id: str | None
    ) -> Any:
        """Execute one action; failures become SyncFetchError."""
        provider = self.provider.value
        try:
            result = await self._broker.execute_action(connection_id, action, params, user_id=user_id)
        except BrokerUnavailable as e:
            raise SyncFetchError(
                provider,
                f"Failed to fetch from {provider}: {e.message}",
                reconnect_required=looks_like_auth_failure(e.message),
            ) from e

        if not result.get("successful", True):
            error = str(result.get("error") or f"{action} was not successful")
            logger.warning(
                "Provider action failed",
                extra={"provider": provider, "action": action, "error": error},
            )
            raise SyncFetchError(
                provider,
                f"Failed to fetch from {provider}: {error}",
                reconnect_required=looks_like_auth_failure(error),
            )

        data = result.get("data")
        if isinstance(data, dict) and "response_data" in data:
            data = data["response_data"]
        return data

    def records(self, data: Any, list_keys: tuple[str, ...] | None = None) -> list[dict[str, Any]]:
        """Find the record list in an action payload.

        A bare list is taken as-is; otherwise the first list under one of
        ``list_keys`` (also looked for one level down under ``data``). A
        single object carrying the id field counts as a one-element list.
        """
        keys = list_keys or self.list_keys
        if isinstance(data, list):
            return [r for r in data if isinstance(r, dict)]
        if not isinstance(data, dict):
            return []
        for container in (data, data.get("data")):
            if not isinstance(container, dict):
                continue
            for key in keys:
                value = container.get(key)
                if isinstance(value, list):
                    return [r for r in value if isinstance(r, dict)]
        if _dig(data, self.id_field) is not None:
            return [data]
        return []

    def phones(self, record: dict[str, Any]) -> list[str]:
        return [p for p in (_str(_dig(record, f)) for f in self.phone_fields) if p]

    def parse(self, record: dict[str, Any]) -> LeadContact | None:
        """Flatten one provider record; None when it has no id or no phone."""
        external_id = _str(_dig(record, self.id_field))
        phones = self.phones(record)
        if not external_id or not phones:
            return None
        company = None
        for path in self.company_fields:
            company = _str(_dig(record, path))
            if company:
                break
        return LeadContact(
            external_id=external_id,
            phones=phones,
            first_name=_str(_dig(record, self.first_name_field)) if self.first_name_field else None,
            last_name=_str(_dig(record, self.last_name_field)) if self.last_name_field else None,
            email=_str(_dig(record, self.email_field)) if self.email_field else None,
            company_name=company,
        )

    async def fetch_raw(self, connection_id: str, user_id: str | None) -> list[dict[str, Any]]:
        data = await self._run(self.action, self.params(), connection_id, user_id)
        return self.records(data)

    async def fetch(self, connection_id: str, user_id: str | None = None) -> list[LeadContact]:
        """Pull every record and keep those that carry a phone number."""
        raw = await self.fetch_raw(connection_id, user_id)
        leads = [lead for lead in (self.parse(r) for r in raw) if lead is not None]
        logger.info(
            "Fetched provider records",
            extra={"provider": self.provider.value, "records": len(raw), "leads": len(leads)},
        )
        return leads


class SalesforceExtractor(LeadExtractor):
    provider = Provider.SALESFORCE
    action = "SALESFORCE_QUERY"
    list_keys = ("records",)
    id_field = "Id"
    phone_fields = ("Phone", "MobilePhone")
    first_name_field = "FirstName"
    last_name_field = "LastName"
    email_field = "Email"
    company_fields = ("Account.Name",)

    SOQL = (
        "SELECT Id, FirstName, LastName, Name, Phone, MobilePhone, Email, AccountId, "
        "Account.Name FROM Contact WHERE (Phone != null OR MobilePhone != null) "
        "ORDER BY LastModifiedDate DESC LIMIT 1000"
    )

    def params(self) -> dict[str, Any]:
        return {"q": self.SOQL}


class HubSpotExtractor(LeadExtractor):
    provider = Provider.HUBSPOT
    action = "HUBSPOT_LIST_CONTACTS"
    list_keys = ("results",)
    phone_fields = ("properties.phone", "properties.mobilephone")
    first_name_field = "properties.firstname"
    last_name_field = "properties.lastname"
    email_field = "properties.email"
    company_fields = ("properties.company",)

    def params(self) -> dict[str, Any]:
        return {
            "limit": 100,
            "properties": [
                "firstname",
                "lastname",
                "email",
                "phone",
                "mobilephone",
                "company",
                "associatedcompanyid",
            ],
        }


class Dynamics365Extractor(LeadExtractor):
    provider = Provider.DYNAMICS365
    action = "DYNAMICS365_DYNAMICSCRM_GET_ALL_LEADS"
    list_keys = ("value", "results")
    id_field = "leadid"
    phone_fields = ("telephone1",)
    first_name_field = "firstname"
    last_name_field = "lastname"
    email_field = "emailaddress1"
    company_fields = ("companyname",)

    def params(self) -> dict[str, Any]:
        return {
            "select": "leadid,firstname,lastname,fullname,emailaddress1,telephone1,companyname",
            "top": 1000,
        }


class ZohoExtractor(LeadExtractor):
    provider = Provider.ZOHO
    action = "ZOHO_GET_ZOHO_RECORDS"
    phone_fields = ("Phone", "Mobile")
    first_name_field = "First_Name"
    last_name_field = "Last_Name"
    email_field = "Email"
    company_fields = ("Account_Name.name", "Company")

    FIELDS = "First_Name,Last_Name,Full_Name,Email,Phone,Mobile,Account_Name"

    def params(self) -> dict[str, Any]:
        return {
            "module_api_name": "Contacts",
            "fields": self.FIELDS,
            "per_page": 200,
            "sort_by": "Modified_Time",
            "sort_order": "desc",
        }

    def parse(self, record: dict[str, Any]) -> LeadContact | None:
        lead = super().parse(record)
        # Account_Name is usually a lookup object but some layouts return the bare name.
        if lead is not None and isinstance(record.get("Account_Name"), str):
            lead.company_name = _str(record["Account_Name"]) or lead.company_name
        return lead


class ZohoBiginExtractor(ZohoExtractor):
    provider = Provider.ZOHO_BIGIN
    action = "ZOHO_BIGIN_GET_RECORDS"

    def params(self) -> dict[str, Any]:
        return {"module_api_name": "Contacts", "fields": self.FIELDS, "per_page": 200}


class AttioExtractor(LeadExtractor):
    provider = Provider.ATTIO
    action = "ATTIO_PEOPLE_LIST_PERSONS"

    def params(self) -> dict[str, Any]:
        return {"limit": 500}

    @staticmethod
    def _first_value(record: dict[str, Any], attribute: str) -> dict[str, Any]:
        values = _dig(record, f"values.{attribute}")
        if isinstance(values, list) and values and isinstance(values[0], dict):
            return values[0]
        return {}

    def records(self, data: Any, list_keys: tuple[str, ...] | None = None) -> list[dict[str, Any]]:
        if isinstance(data, dict) and isinstance(data.get("id"), dict):
            return [data]
        return super().records(data, list_keys)

    def phones(self, record: dict[str, Any]) -> list[str]:
        entries = _dig(record, "values.phone_numbers") or []
        phones = []
        for entry in entries:
            if isinstance(entry, dict):
                phone = _str(entry.get("phone_number") or entry.get("original_phone_number"))
                if phone:
                    phones.append(phone)
        return phones

    def parse(self, record: dict[str, Any]) -> LeadContact | None:
        record_id = _dig(record, "id.record_id") or _dig(record, "id.object_id")
        if record_id is None and not isinstance(record.get("id"), dict):
            record_id = record.get("id")
        external_id = _str(record_id)
        phones = self.phones(record)
        if not external_id or not phones:
            return None

        name = self._first_value(record, "name")
        first = _str(name.get("first_name"))
        last = _str(name.get("last_name"))
        if not first and not last:
            first = _str(name.get("full_name"))
        job_title = self._first_value(record, "job_title")
        return LeadContact(
            external_id=external_id,
            phones=phones,
            first_name=first,
            last_name=last,
            email=_str(self._first_value(record, "email_addresses").get("email_address")),
            company_name=_str(job_title.get("value")),
        )


class ZendeskExtractor(LeadExtractor):
    provider = Provider.ZENDESK
    action = "ZENDESK_SEARCH_ZENDESK_USERS"
    list_keys = ("users", "data")
    phone_fields = ("phone",)
    email_field = "email"
    company_fields = ("organization_id",)
    per_page = 100

    def __init__(self, broker: ComposioBrokerClient, max_pages: int | None = None) -> None:
        super().__init__(broker)
        self.max_pages = max_pages or settings.ZENDESK_MAX_PAGES

    async def fetch_raw(self, connection_id: str, user_id: str | None) -> list[dict[str, Any]]:
        users: list[dict[str, Any]] = []
        for page in range(1, self.max_pages + 1):
            params = {"page": page, "per_page": self.per_page}
            batch = self.records(await self._run(self.action, params, connection_id, user_id))
            users.extend(batch)
            if len(batch) < self.per_page:
                break
        else:
            logger.warning(
                "Zendesk pagination stopped at page limit",
                extra={"max_pages": self.max_pages, "users": len(users)},
            )
        return users

    def parse(self, record: dict[str, Any]) -> LeadContact | None:
        lead = super().parse(record)
        if lead is None:
            return None
        first, _, last = (_str(record.get("name")) or "").partition(" ")
        lead.first_name = first or None
        lead.last_name = last.strip() or None
        return lead


class AgencyZoomExtractor(LeadExtractor):
    """Customers and leads are separate searches; both are merged."""

    provider = Provider.AGENCYZOOM
    phone_fields = ("phone", "secondaryPhone")
    first_name_field = "firstname"
    last_name_field = "lastname"
    email_field = "email"
    company_fields = ("businessName", "name")

    SEARCHES = (
        ("AGENCYZOOM_SEARCH_CUSTOMERS", ("items", "data", "customers"), "customerId"),
        ("AGENCYZOOM_SEARCH_LEADS", ("items", "data", "leads"), "leadId"),
    )

    async def fetch_raw(self, connection_id: str, user_id: str | None) -> list[dict[str, Any]]:
        merged: list[dict[str, Any]] = []
        for action, list_keys, id_field in self.SEARCHES:
            data = await self._run(action, {}, connection_id, user_id)
            for record in self.records(data, list_keys):
                record_id = record.get(id_field) or record.get("id")
                if record_id is not None:
                    merged.append({**record, "_external_id": record_id})
        return merged

    def records(self, data: Any, list_keys: tuple[str, ...] | None = None) -> list[dict[str, Any]]:
        found = super().records(data, list_keys)
        if not found and isinstance(data, dict) and any(
            data.get(k) is not None for k in ("customerId", "leadId", "id")
        ):
            return [data]
        return found

    def parse(self, record: dict[str, Any]) -> LeadContact | None:
        return super().parse({**record, "id": record.get("_external_id")})


_EXTRACTORS: dict[Provider, type[LeadExtractor]] = {
    Provider.SALESFORCE: SalesforceExtractor,
    Provider.HUBSPOT: HubSpotExtractor,
    Provider.DYNAMICS365: Dynamics365Extractor,
    Provider.ZOHO: ZohoExtractor,
    Provider.ZOHO_BIGIN: ZohoBiginExtractor,
    Provider.ATTIO: AttioExtractor,
    Provider.ZENDESK: ZendeskExtractor,
    Provider.AGENCYZOOM: AgencyZoomExtractor,
}


def get_extractor(provider: Provider, broker: ComposioBrokerClient) -> LeadExtractor:
    """Extractor instance for a provider."""
    return _EXTRACTORS[provider](broker)
