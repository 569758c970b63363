"""OAuth state token codec.

The token is URL-safe base64 of a JSON object
``{userId, orgId, connectionRequestId, nonce}``. It binds an OAuth redirect
to the principal that started it.
"""

import base64
import binascii
import json
import secrets
from dataclasses import dataclass

from cellsync.core.exceptions import StateTokenError
from cellsync.integrations.domain import Principal


@dataclass(frozen=True)
class OAuthState:
    """Decoded contents of a state token."""

    user_id: str
    org_id: str | None
    connection_request_id: str | None
    nonce: str

    def belongs_to(self, principal: Principal) -> bool:
        return self.user_id == principal.user_id and self.org_id == principal.org_id


def encode_state(principal: Principal, connection_request_id: str | None) -> str:
    payload = {
        "userId": principal.user_id,
        "orgId": principal.org_id,
        "connectionRequestId": connection_request_id,
        "nonce": secrets.token_urlsafe(16),
    }
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_state(token: str | None) -> OAuthState:
    """Decode a state token.

    Raises:
        StateTokenError: ``missing_state`` when absent, ``invalid_state``
            when it does not decode to the expected object.
    """
    if not token:
        raise StateTokenError("missing_state", "Missing OAuth state")

    try:
        padded = token + "=" * (-len(token) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise StateTokenError("invalid_state", "Malformed OAuth state") from e

    if not isinstance(payload, dict) or not payload.get("userId"):
        raise StateTokenError("invalid_state", "OAuth state is missing the user")

    return OAuthState(
        user_id=str(payload["userId"]),
        org_id=payload.get("orgId"),
        connection_request_id=payload.get("connectionRequestId"),
        nonce=str(payload.get("nonce", "")),
    )
