"""
Remote Gateway for the CRM REST API.

Thin async client over the CRM backend: JSON bodies, bearer-token auth, one
transparent refresh-and-retry when the API answers 401. Transport problems
(connection errors, timeouts) become NetworkFailure, every other non-2xx
answer becomes RequestRejected carrying the server's message verbatim.
"""
import logging
from typing import Any, Callable, Optional

import httpx

from config.settings import settings
from config.sync_config import SyncConfig, get_entity_path
from crmsync.services.errors import AuthExpired, NetworkFailure, RequestRejected

logger = logging.getLogger(__name__)


class AuthSession:
    """
    Holds the active session tokens.

    logout() tears the session down and notifies the owner (the UI process
    uses this to route back to its login screen).
    """

    def __init__(
        self,
        token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        on_logout: Optional[Callable[[], None]] = None,
    ):
        self.token = token if token is not None else (settings.access_token or None)
        self.refresh_token = (
            refresh_token if refresh_token is not None else (settings.refresh_token or None)
        )
        self.user: Optional[dict] = None
        self._on_logout = on_logout

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)

    def set_auth(self, user: Optional[dict], token: str, refresh_token: Optional[str]) -> None:
        """Store the tokens returned by a login or refresh."""
        self.user = user
        self.token = token
        self.refresh_token = refresh_token

    def logout(self) -> None:
        """Clear the session and fire the logout callback."""
        self.user = None
        self.token = None
        self.refresh_token = None
        if self._on_logout:
            self._on_logout()


class CrmApiClient:
    """
    Low-level HTTP client for the CRM API.

    Every call opens a short-lived httpx.AsyncClient; tests inject an
    httpx.MockTransport through the transport argument.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        session: Optional[AuthSession] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the API client.

        Args:
            base_url: CRM API base URL (default from settings)
            session: Session holding the bearer tokens
            timeout: Request timeout in seconds (default from settings)
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = (base_url or settings.api_url).rstrip("/")
        self.session = session or AuthSession()
        self.timeout = timeout or settings.request_timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _headers(self, content_type: str) -> dict:
        headers = {"Content-Type": content_type}
        if self.session.token:
            headers["Authorization"] = f"Bearer {self.session.token}"
        return headers

    async def request(
        self,
        method: str,
        endpoint: str,
        json: Any = None,
        content: Optional[str] = None,
        params: Optional[dict] = None,
        content_type: str = "application/json",
        _retry: bool = True,
    ) -> Any:
        """
        Send a request and decode the response.

        Args:
            method: HTTP method
            endpoint: Path below the base URL (e.g. "/contacts/123")
            json: JSON body
            content: Raw text body (CSV / ICS imports)
            params: Query parameters
            content_type: Content-Type header for the body

        Returns:
            Decoded JSON, response text for non-JSON bodies, or None when empty

        Raises:
            NetworkFailure: Connection error or timeout, including during a
                token refresh
            AuthExpired: 401 and the refresh token could not renew the session
            RequestRejected: Any other non-2xx response
        """
        url = f"{self.base_url}{endpoint}"
        try:
            async with self._client() as client:
                response = await client.request(
                    method,
                    url,
                    json=json,
                    content=content,
                    params=params,
                    headers=self._headers(content_type),
                )
        except httpx.TimeoutException as e:
            raise NetworkFailure(f"Timeout calling {method} {endpoint}: {e}") from e
        except httpx.TransportError as e:
            raise NetworkFailure(f"Connection error calling {method} {endpoint}: {e}") from e

        if response.status_code == 401:
            if _retry and await self.refresh_token():
                logger.info(f"Token refreshed, retrying {method} {endpoint}")
                return await self.request(
                    method, endpoint, json=json, content=content, params=params,
                    content_type=content_type, _retry=False,
                )
            logger.warning(f"Session expired on {method} {endpoint}")
            self.session.logout()
            raise AuthExpired()

        if response.is_error:
            raise RequestRejected(response.status_code, self._error_message(response))

        return self._decode(response)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return SyncConfig.DEFAULT_ERROR_MESSAGE
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return SyncConfig.DEFAULT_ERROR_MESSAGE

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        if "json" in response.headers.get("content-type", ""):
            return response.json()
        return response.text

    async def refresh_token(self) -> bool:
        """
        Exchange the refresh token for a new session.

        Returns:
            True if the session was renewed, False if the server refused the
            refresh token or answered without a usable token

        Raises:
            NetworkFailure: The refresh call never got an answer (session kept)
        """
        if not self.session.refresh_token:
            return False

        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/auth/refresh",
                    json={"refreshToken": self.session.refresh_token},
                    headers={"Content-Type": "application/json"},
                )
        except httpx.TimeoutException as e:
            raise NetworkFailure(f"Timeout refreshing session: {e}") from e
        except httpx.TransportError as e:
            raise NetworkFailure(f"Connection error refreshing session: {e}") from e

        if not response.is_success:
            return False

        try:
            data = response.json()
        except ValueError:
            logger.warning("Token refresh answered with a non-JSON body")
            return False
        if not isinstance(data, dict) or not isinstance(data.get("token"), str) or not data["token"]:
            logger.warning("Token refresh answered without a token")
            return False

        self.session.set_auth(data.get("user"), data["token"], data.get("refreshToken"))
        return True

    async def get(self, endpoint: str, params: Optional[dict] = None) -> Any:
        return await self.request("GET", endpoint, params=params)

    async def post(self, endpoint: str, data: Any = None) -> Any:
        return await self.request("POST", endpoint, json=data)

    async def put(self, endpoint: str, data: Any = None) -> Any:
        return await self.request("PUT", endpoint, json=data)

    async def delete(self, endpoint: str) -> Any:
        return await self.request("DELETE", endpoint)

    async def post_text(self, endpoint: str, text: str, content_type: str = "text/plain") -> Any:
        return await self.request("POST", endpoint, content=text, content_type=content_type)

    async def probe(self) -> bool:
        """
        Check if the CRM API is reachable.

        Any HTTP answer (even an error status) means the network path works;
        only transport failures count as offline.
        """
        try:
            async with self._client() as client:
                await client.get(
                    f"{self.base_url}/auth/profile",
                    headers=self._headers("application/json"),
                )
            return True
        except httpx.TransportError:
            return False


class EntityResource:
    """Uniform CRUD endpoints for one entity kind."""

    def __init__(self, client: CrmApiClient, kind: str):
        path = get_entity_path(kind)
        if path is None:
            raise ValueError(f"Unknown entity kind: {kind}")
        self.client = client
        self.kind = kind
        self.path = path

    async def list(self) -> list[dict]:
        return await self.client.get(self.path) or []

    async def get(self, entity_id: str) -> dict:
        return await self.client.get(f"{self.path}/{entity_id}")

    async def create(self, payload: dict) -> dict:
        return await self.client.post(self.path, payload)

    async def update(self, entity_id: str, payload: dict) -> dict:
        return await self.client.put(f"{self.path}/{entity_id}", payload)

    async def delete(self, entity_id: str) -> None:
        await self.client.delete(f"{self.path}/{entity_id}")


class ContactResource(EntityResource):
    """Contacts plus bulk, search and import/export pass-through calls."""

    async def bulk_add_tags(self, ids: list[str], tags: list[str]) -> list[dict]:
        return await self.client.post(f"{self.path}/bulk/tags", {"ids": ids, "tags": tags}) or []

    async def bulk_update(self, ids: list[str], payload: dict) -> list[dict]:
        return await self.client.put(f"{self.path}/bulk", {"ids": ids, **payload}) or []

    async def search(self, query: str, tags: Optional[list[str]] = None) -> list[dict]:
        params = {"q": query}
        if tags:
            params["tags"] = ",".join(tags)
        return await self.client.get(f"{self.path}/search", params=params) or []

    async def export_csv(self) -> str:
        return await self.client.get(f"{self.path}/export/csv")

    async def import_csv(self, csv_content: str) -> list[dict]:
        return await self.client.post_text(f"{self.path}/import/csv", csv_content, "text/csv") or []

    async def export_vcard(self, contact_id: str) -> str:
        return await self.client.get(f"{self.path}/{contact_id}/vcard")

    async def export_all_vcard(self) -> str:
        return await self.client.get(f"{self.path}/export/vcard")

    async def find_duplicates(self) -> list[list[dict]]:
        return await self.client.get(f"{self.path}/duplicates") or []

    async def merge(self, primary_id: str, merge_ids: list[str]) -> dict:
        return await self.client.post(
            f"{self.path}/merge", {"primaryId": primary_id, "mergeIds": merge_ids}
        )


class TaskResource(EntityResource):

    async def complete(self, task_id: str) -> dict:
        return await self.client.post(f"{self.path}/{task_id}/complete")

    async def stats(self) -> dict:
        return await self.client.get(f"{self.path}/stats")

    async def active(self) -> list[dict]:
        return await self.client.get(f"{self.path}/active") or []

    async def overdue(self) -> list[dict]:
        return await self.client.get(f"{self.path}/overdue") or []

    async def due_today(self) -> list[dict]:
        return await self.client.get(f"{self.path}/today") or []


class CalendarResource(EntityResource):
    """Calendar events (served under /calendar) plus ICS import/export."""

    async def range(self, start: str, end: str) -> list[dict]:
        return await self.client.get(f"{self.path}/range", params={"start": start, "end": end}) or []

    async def upcoming(self, limit: int = 10) -> list[dict]:
        return await self.client.get(f"{self.path}/upcoming", params={"limit": limit}) or []

    async def today(self) -> list[dict]:
        return await self.client.get(f"{self.path}/today") or []

    async def cancel(self, event_id: str) -> None:
        await self.client.post(f"{self.path}/{event_id}/cancel")

    async def complete(self, event_id: str, notes: Optional[str] = None) -> dict:
        return await self.client.post(f"{self.path}/{event_id}/complete", {"notes": notes})

    async def export_ics(self) -> str:
        return await self.client.get(f"{self.path}/export")

    async def import_ics(self, ics_content: str) -> list[dict]:
        return await self.client.post_text(f"{self.path}/import", ics_content, "text/calendar") or []


class GroupResource(EntityResource):

    async def contacts(self, group_id: str) -> list[dict]:
        return await self.client.get(f"{self.path}/{group_id}/contacts") or []

    async def add_contact(self, group_id: str, contact_id: str) -> dict:
        return await self.client.post(f"{self.path}/{group_id}/contacts/{contact_id}")

    async def remove_contact(self, group_id: str, contact_id: str) -> dict:
        return await self.client.delete(f"{self.path}/{group_id}/contacts/{contact_id}")


class RemoteGateway:
    """
    Entry point for everything the sync layer asks of the CRM API.

    Per-kind CRUD goes through resource(kind); the bulk, search, report and
    import/export calls are pass-through and never queued on failure.
    """

    RESOURCE_CLASSES: dict[str, type[EntityResource]] = {
        "contact": ContactResource,
        "meeting": EntityResource,
        "task": TaskResource,
        "calendar_event": CalendarResource,
        "tag": EntityResource,
        "group": GroupResource,
    }

    def __init__(self, client: Optional[CrmApiClient] = None):
        """
        Initialize the gateway.

        Args:
            client: API client to use (default built from settings)
        """
        self.client = client or CrmApiClient()
        self._resources = {
            kind: cls(self.client, kind) for kind, cls in self.RESOURCE_CLASSES.items()
        }

    @property
    def session(self) -> AuthSession:
        return self.client.session

    @property
    def contacts(self) -> ContactResource:
        return self._resources["contact"]

    @property
    def meetings(self) -> EntityResource:
        return self._resources["meeting"]

    @property
    def tasks(self) -> TaskResource:
        return self._resources["task"]

    @property
    def calendar(self) -> CalendarResource:
        return self._resources["calendar_event"]

    @property
    def tags(self) -> EntityResource:
        return self._resources["tag"]

    @property
    def groups(self) -> GroupResource:
        return self._resources["group"]

    def resource(self, kind: str) -> EntityResource:
        """Get the CRUD resource for an entity kind."""
        try:
            return self._resources[kind]
        except KeyError:
            raise ValueError(f"Unknown entity kind: {kind}") from None

    async def search(self, query: str, limit: int = 20) -> list[dict]:
        """Global search across contacts."""
        return await self.client.get("/search", params={"q": query, "limit": limit}) or []

    async def dashboard_stats(self) -> dict:
        return await self.client.get("/dashboard/stats")

    async def meetings_chart(self) -> list[dict]:
        return await self.client.get("/dashboard/meetings-chart") or []

    async def medium_breakdown(self) -> list[dict]:
        return await self.client.get("/dashboard/medium-breakdown") or []

    async def contacts_over_time(self, period: str = "month") -> list[dict]:
        return await self.client.get("/dashboard/contacts-over-time", params={"period": period}) or []

    async def recent_activity(self, limit: int = 20) -> list[dict]:
        return await self.client.get("/activity", params={"limit": limit}) or []

    async def contact_activity(self, contact_id: str, limit: int = 50) -> list[dict]:
        return await self.client.get(f"/activity/contact/{contact_id}", params={"limit": limit}) or []

    async def reminders(self, pending_only: bool = False) -> list[dict]:
        return await self.client.get("/reminders/pending" if pending_only else "/reminders") or []

    async def dismiss_reminder(self, reminder_id: str) -> dict:
        return await self.client.put(f"/reminders/{reminder_id}/dismiss")

    async def ping(self) -> bool:
        """
        Check if the CRM API is reachable.

        Any HTTP answer (even an error status) means the network path works;
        only transport failures count as offline.

        Returns:
            True if the API responded
        """
        return await self.client.probe()


# Singleton instance
_gateway: Optional[RemoteGateway] = None


def get_remote_gateway() -> RemoteGateway:
    """Get or create the singleton RemoteGateway."""
    global _gateway
    if _gateway is None:
        _gateway = RemoteGateway()
    return _gateway
