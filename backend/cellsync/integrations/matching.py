"""Heuristic matching of broker connections to providers.

Broker records identify their toolkit inconsistently across SDK versions, so
each provider gets a strategy that runs a cascade of checks, most specific
first. The cascade order is fixed; only the identifier varies per provider.
"""

import logging
from collections.abc import Iterable
from typing import Any

from cellsync.integrations.domain import ConnectionRecord, Provider

logger = logging.getLogger(__name__)


class ProviderMatcher:
    """Decides whether a broker connection belongs to one provider.

    Args:
        provider: The provider this matcher recognizes.
        identifier: Upper-case app identifier used by the broker.
        excludes: Identifiers of other providers that contain ``identifier``
            as a substring and must not be matched by it.
        match_display_name: Also accept a connection whose display name
            contains the identifier.
        subdomains: OAuth subdomains that identify an ACTIVE connection
            when nothing else does. A subdomain containing the identifier
            also counts.
    """

    def __init__(
        self,
        provider: Provider,
        identifier: str,
        excludes: tuple[str, ...] = (),
        match_display_name: bool = False,
        subdomains: tuple[str, ...] = (),
    ) -> None:
        self.provider = provider
        self.identifier = identifier.upper()
        self.excludes = tuple(e.upper() for e in excludes)
        self.match_display_name = match_display_name
        self.subdomains = tuple(s.lower() for s in subdomains)

    def _contains(self, value: Any) -> bool:
        if not value:
            return False
        # Brokers spell some toolkits with hyphens or spaces (ZOHO-BIGIN).
        text = str(value).upper().replace("-", "_").replace(" ", "_")
        if self.identifier not in text:
            return False
        return not any(ex in text for ex in self.excludes)

    def _app_fields_match(self, fields: dict[str, Any]) -> bool:
        for key in ("appUniqueId", "app_unique_id", "appName", "app_name"):
            value = fields.get(key)
            if not value:
                continue
            if self._contains(value):
                return True
        return False

    def _subdomain_matches(self, data: dict[str, Any]) -> bool:
        subdomain = data.get("subdomain")
        if not self.subdomains or not subdomain:
            return False
        if str(data.get("status") or "").upper() != "ACTIVE":
            return False
        text = str(subdomain).lower()
        return text in self.subdomains or self.identifier.lower() in text

    def matches(self, record: ConnectionRecord) -> bool:
        """Run the cascade; the first check that fires decides."""
        if any(self._contains(t) for t in record.toolkit_ids):
            return True
        if self._app_fields_match({"appUniqueId": record.app_unique_id, "appName": record.app_name}):
            return True
        if self._app_fields_match(record.auth_config):
            return True
        if self._app_fields_match(record.data):
            return True
        if self.match_display_name and self._contains(record.name):
            return True
        return self._subdomain_matches(record.data)

    def filter(self, records: Iterable[ConnectionRecord]) -> list[ConnectionRecord]:
        """Records belonging to the provider, in broker order."""
        matched = [r for r in records if self.matches(r)]
        logger.debug(
            "Matched broker connections",
            extra={"provider": self.provider.value, "count": len(matched)},
        )
        return matched

    def select(self, records: Iterable[ConnectionRecord]) -> ConnectionRecord | None:
        """First active matching record, or None."""
        for record in self.filter(records):
            if record.is_active:
                return record
        return None


_MATCHERS: dict[Provider, ProviderMatcher] = {
    Provider.SALESFORCE: ProviderMatcher(Provider.SALESFORCE, "SALESFORCE", subdomains=("login",)),
    Provider.HUBSPOT: ProviderMatcher(Provider.HUBSPOT, "HUBSPOT", match_display_name=True),
    Provider.DYNAMICS365: ProviderMatcher(Provider.DYNAMICS365, "DYNAMICS365"),
    Provider.ZOHO: ProviderMatcher(Provider.ZOHO, "ZOHO", excludes=("ZOHO_BIGIN", "BIGIN")),
    Provider.ZOHO_BIGIN: ProviderMatcher(Provider.ZOHO_BIGIN, "ZOHO_BIGIN"),
    Provider.AGENCYZOOM: ProviderMatcher(Provider.AGENCYZOOM, "AGENCYZOOM"),
    Provider.ATTIO: ProviderMatcher(Provider.ATTIO, "ATTIO"),
    Provider.ZENDESK: ProviderMatcher(Provider.ZENDESK, "ZENDESK"),
}


def get_matcher(provider: Provider) -> ProviderMatcher:
    """Matcher strategy for a provider."""
    return _MATCHERS[provider]
