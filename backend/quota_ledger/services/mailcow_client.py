"""
Mailcow API client for mail-hosting provisioning.

WHAT: HTTP client for the mail host's control plane: domains, mailboxes
and DKIM keys.

WHY: The provisioning orchestrator needs a narrow, typed contract with a
remote API that can be slow, down, or reject a request with a 200 status.
All of that is normalized here into one exception type, MailcowError.

HOW: Uses httpx for async HTTP with a bounded timeout. A request fails when:
- the transport errors or times out
- the status code is not 2xx
- the JSON body (an object or a list of objects) carries
  ``type`` of ``error`` or ``danger``
"""

import logging
from typing import Any, Dict, List, Optional, Union

import httpx

from quota_ledger.core.config import settings
from quota_ledger.core.exceptions import MailcowError

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

DEFAULT_TIMEOUT = 15.0

# Response types the API uses to signal a rejected request
FAILURE_TYPES = {"error", "danger"}

# Defaults sent with every new domain
DEFAULT_DOMAIN_ALIASES = 400
DEFAULT_MAILBOX_QUOTA_MB = 1024

JsonBody = Union[Dict[str, Any], List[Any]]


# ============================================================================
# Mailcow API Client
# ============================================================================


class MailcowClient:
    """
    Async HTTP client for the Mailcow API.

    WHAT: Domain, mailbox and DKIM operations against ``{base_url}/api/v1``.

    HOW: Authenticates with the ``X-API-Key`` header. Every call goes
    through ``_request`` so timeouts and error payloads are handled once.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Mailcow client.

        Args:
            base_url: Mail host URL (e.g., https://mail.example.net)
            api_key: API key with read/write access
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self._base_url = base_url.rstrip("/") + "/api/v1"
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    def _get_headers(self) -> Dict[str, str]:
        return {
            "X-API-Key": self._api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> JsonBody:
        """
        Make an authenticated request to the Mailcow API.

        Args:
            method: HTTP method (GET or POST)
            endpoint: API path below /api/v1 (e.g., /add/domain)
            data: JSON body for POST requests

        Returns:
            Parsed JSON response

        Raises:
            MailcowError: If the request fails, times out, or is rejected
        """
        url = f"{self._base_url}/{endpoint.lstrip('/')}"

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=self._get_headers(),
                    json=data,
                )
        except httpx.TimeoutException:
            raise MailcowError(
                message="Mail hosting API request timed out",
                endpoint=endpoint,
                timeout=self._timeout,
            )
        except httpx.RequestError as e:
            raise MailcowError(
                message=f"Mail hosting API connection error: {str(e)}",
                endpoint=endpoint,
            )

        if response.status_code >= 300:
            raise MailcowError(
                message=f"Mail hosting API error: HTTP {response.status_code}",
                upstream_status=response.status_code,
                endpoint=endpoint,
                method=method,
            )

        if not response.content:
            return {}

        try:
            body = response.json()
        except ValueError:
            raise MailcowError(
                message="Mail hosting API returned a non-JSON body",
                endpoint=endpoint,
            )

        self._raise_for_payload(body, endpoint)
        return body

    @staticmethod
    def _raise_for_payload(body: JsonBody, endpoint: str) -> None:
        """
        Raise if any response object reports an error or danger type.

        Mailcow answers write requests with a list of
        ``{"type": ..., "msg": ...}`` objects and HTTP 200 even on failure.
        """
        entries = body if isinstance(body, list) else [body]
        for entry in entries:
            if isinstance(entry, dict) and entry.get("type") in FAILURE_TYPES:
                msg = entry.get("msg")
                if isinstance(msg, list):
                    msg = " ".join(str(part) for part in msg)
                raise MailcowError(
                    message=f"Mail hosting API rejected request: {msg or entry.get('type')}",
                    endpoint=endpoint,
                    response_type=entry.get("type"),
                )

    # =========================================================================
    # Domains
    # =========================================================================

    async def domain_exists(self, domain_name: str, strict: bool = False) -> bool:
        """
        Check whether the mail host already knows a domain.

        Args:
            domain_name: Domain to look up
            strict: Raise on lookup failure instead of reporting "absent"

        Returns:
            True if the domain exists

        Raises:
            MailcowError: Only when ``strict`` and the lookup itself fails
        """
        try:
            body = await self._request("GET", f"/get/domain/{domain_name}")
        except MailcowError:
            if strict:
                raise
            logger.warning(
                f"Domain lookup for {domain_name} failed; treating as absent",
                extra={"domain_name": domain_name},
            )
            return False

        return isinstance(body, dict) and body.get("domain_name") == domain_name

    async def create_domain(
        self,
        domain_name: str,
        quota_mb: int,
        max_quota_per_mailbox_mb: int,
        default_quota_per_mailbox_mb: int,
        max_mailboxes: int,
        description: Optional[str] = None,
    ) -> JsonBody:
        """
        Create a domain on the mail host.

        Args:
            domain_name: Domain to create
            quota_mb: Total domain quota in MB
            max_quota_per_mailbox_mb: Largest mailbox quota allowed
            default_quota_per_mailbox_mb: Quota for mailboxes created without one
            max_mailboxes: Mailbox limit
            description: Free-text description shown in the mail host UI
        """
        data = {
            "domain": domain_name,
            "description": description or domain_name,
            "aliases": DEFAULT_DOMAIN_ALIASES,
            "mailboxes": max_mailboxes,
            "defquota": default_quota_per_mailbox_mb,
            "maxquota": max_quota_per_mailbox_mb,
            "quota": quota_mb,
            "active": 1,
            "restart_sogo": 1,
            "gal": 1,
            "backupmx": 0,
            "relay_all_recipients": 0,
            "relay_unknown_only": 0,
        }
        return await self._request("POST", "/add/domain", data=data)

    async def update_domain(self, domain_name: str, attrs: Dict[str, Any]) -> JsonBody:
        """Update domain attributes (quota, active flag, ...)."""
        return await self._request(
            "POST", "/edit/domain", data={"items": [domain_name], "attr": attrs}
        )

    async def delete_domain(self, domain_name: str) -> JsonBody:
        """Delete a domain and every mailbox on it."""
        return await self._request("POST", "/delete/domain", data={"items": [domain_name]})

    # =========================================================================
    # Mailboxes
    # =========================================================================

    async def mailbox_exists(self, email_address: str, strict: bool = False) -> bool:
        """
        Check whether a mailbox exists.

        Args:
            email_address: Full mailbox address
            strict: Raise on lookup failure instead of reporting "absent"
        """
        try:
            body = await self._request("GET", f"/get/mailbox/{email_address}")
        except MailcowError:
            if strict:
                raise
            return False

        return isinstance(body, dict) and body.get("username") == email_address

    async def create_mailbox(
        self,
        local_part: str,
        domain_name: str,
        display_name: str,
        password: str,
        quota_mb: int = DEFAULT_MAILBOX_QUOTA_MB,
    ) -> JsonBody:
        """
        Create a mailbox.

        Args:
            local_part: Part of the address before "@"
            domain_name: Domain the mailbox belongs to
            display_name: Full name shown to recipients
            password: Initial password (never stored locally)
            quota_mb: Mailbox quota in MB
        """
        data = {
            "local_part": local_part,
            "domain": domain_name,
            "name": display_name,
            "password": password,
            "password2": password,
            "quota": quota_mb,
            "active": 1,
            "force_pw_update": 0,
            "tls_enforce_in": 1,
            "tls_enforce_out": 1,
        }
        return await self._request("POST", "/add/mailbox", data=data)

    async def update_mailbox(self, email_address: str, attrs: Dict[str, Any]) -> JsonBody:
        """Update mailbox attributes (quota in MB, active flag, ...)."""
        return await self._request(
            "POST", "/edit/mailbox", data={"items": [email_address], "attr": attrs}
        )

    async def delete_mailbox(self, email_address: str) -> JsonBody:
        """Delete a mailbox."""
        return await self._request("POST", "/delete/mailbox", data={"items": [email_address]})

    # =========================================================================
    # DKIM
    # =========================================================================

    async def generate_dkim(
        self,
        domain_name: str,
        selector: str = "dkim",
        key_size: int = 2048,
    ) -> JsonBody:
        """Issue a DKIM key pair for a domain."""
        data = {"domains": domain_name, "dkim_selector": selector, "key_size": key_size}
        return await self._request("POST", "/add/dkim", data=data)

    async def get_dkim(self, domain_name: str) -> Optional[Dict[str, Any]]:
        """
        Fetch the DKIM public record for a domain.

        Returns:
            Dict with ``dkim_txt`` and ``dkim_selector``, or None if unavailable
        """
        try:
            body = await self._request("GET", f"/get/dkim/{domain_name}")
        except MailcowError as e:
            logger.warning(
                f"DKIM lookup for {domain_name} failed: {e.message}",
                extra={"domain_name": domain_name},
            )
            return None

        if isinstance(body, dict) and body.get("dkim_txt"):
            return body
        return None


# ============================================================================
# Factory Function
# ============================================================================


def create_mailcow_client() -> MailcowClient:
    """
    Create a Mailcow client from application settings.

    Also used as a FastAPI dependency so tests can override it.
    """
    return MailcowClient(
        base_url=settings.MAILCOW_API_URL,
        api_key=settings.MAILCOW_API_KEY,
        timeout=settings.MAILCOW_TIMEOUT_SECONDS,
    )
