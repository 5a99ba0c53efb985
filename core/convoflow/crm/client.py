"""
CRM collaborator - the external system actions and bookings run against.

``CRMClient`` is the interface the engine depends on. ``HighLevelClient``
implements it over the LeadConnector (HighLevel) v2 REST API.

Every method returns the API payload as a dict or raises CRMError carrying
the HTTP status code.

API Reference: https://highlevel.stoplight.io/docs/integrations
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

import httpx

from convoflow.crm.cache import TTLCache
from convoflow.errors import CRMError

logger = logging.getLogger(__name__)

HIGHLEVEL_API_BASE = "https://services.leadconnectorhq.com"
HIGHLEVEL_API_VERSION = "2021-07-28"


@runtime_checkable
class CRMClient(Protocol):
    """Capabilities the engine needs from a CRM."""

    async def add_tags(self, contact_id: str, tags: list[str]) -> dict[str, Any]: ...

    async def remove_tags(self, contact_id: str, tags: list[str]) -> dict[str, Any]: ...

    async def update_custom_field(
        self, contact_id: str, field_key: str, value: Any
    ) -> dict[str, Any]: ...

    async def send_message(
        self, contact_id: str, channel: str, message: str, subject: str | None = None
    ) -> dict[str, Any]: ...

    async def send_webhook(self, url: str, payload: dict[str, Any]) -> dict[str, Any]: ...

    async def create_opportunity(
        self,
        contact_id: str,
        name: str,
        pipeline_id: str,
        stage_id: str | None = None,
        monetary_value: float | None = None,
    ) -> dict[str, Any]: ...

    async def book_appointment(
        self,
        contact_id: str,
        calendar_id: str,
        start_time: str | None = None,
        title: str | None = None,
    ) -> dict[str, Any]: ...


class HighLevelClient:
    """
    CRMClient over the LeadConnector v2 API.

    Usage:
        async with HighLevelClient(token, location_id="loc_1") as crm:
            await crm.add_tags("contact_1", ["qualified"])
    """

    def __init__(
        self,
        access_token: str,
        location_id: str | None = None,
        base_url: str = HIGHLEVEL_API_BASE,
        timeout: float = 30.0,
        cache: TTLCache | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._access_token = access_token
        self.location_id = location_id
        self.base_url = base_url.rstrip("/")
        self.cache = cache or TTLCache()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> HighLevelClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Version": HIGHLEVEL_API_VERSION,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _handle_response(self, response: httpx.Response) -> dict[str, Any]:
        """Map HTTP error codes to CRMError."""
        status = response.status_code
        if status == 401:
            raise CRMError("Invalid or expired HighLevel access token", status)
        if status == 403:
            raise CRMError("Token lacks the scope required for this call", status)
        if status == 404:
            raise CRMError("Resource not found", status)
        if status == 422:
            raise CRMError(f"Invalid parameters: {self._detail(response)}", status)
        if status == 429:
            raise CRMError("HighLevel rate limit exceeded. Try again later.", status)
        if status >= 400:
            raise CRMError(f"HighLevel API error (HTTP {status}): {self._detail(response)}", status)
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {"raw": response.text}
        return data if isinstance(data, dict) else {"data": data}

    @staticmethod
    def _detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text
        if isinstance(body, dict):
            return str(body.get("message") or body.get("error") or body)
        return str(body)

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, headers=self._headers, **kwargs)
        except httpx.TimeoutException as e:
            raise CRMError(f"HighLevel request timed out: {method} {path}", 504) from e
        except httpx.HTTPError as e:
            raise CRMError(f"HighLevel request failed: {e}") from e
        return self._handle_response(response)

    # --- Contacts ---

    async def add_tags(self, contact_id: str, tags: list[str]) -> dict[str, Any]:
        return await self._request("POST", f"/contacts/{contact_id}/tags", json={"tags": tags})

    async def remove_tags(self, contact_id: str, tags: list[str]) -> dict[str, Any]:
        return await self._request("DELETE", f"/contacts/{contact_id}/tags", json={"tags": tags})

    async def update_custom_field(self, contact_id: str, field_key: str, value: Any) -> dict[str, Any]:
        field_id = await self._custom_field_id(field_key)
        return await self._request(
            "PUT",
            f"/contacts/{contact_id}",
            json={"customFields": [{"id": field_id, "field_value": value}]},
        )

    # --- Messaging ---

    async def send_message(
        self, contact_id: str, channel: str, message: str, subject: str | None = None
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"type": channel, "contactId": contact_id, "message": message}
        if channel == "Email":
            body["html"] = message
            body["subject"] = subject or ""
        return await self._request("POST", "/conversations/messages", json=body)

    async def send_webhook(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise CRMError(f"Webhook delivery failed: {e}") from e
        if response.status_code >= 400:
            raise CRMError(f"Webhook returned HTTP {response.status_code}", response.status_code)
        return {"status_code": response.status_code}

    # --- Opportunities ---

    async def create_opportunity(
        self,
        contact_id: str,
        name: str,
        pipeline_id: str,
        stage_id: str | None = None,
        monetary_value: float | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "contactId": contact_id,
            "name": name,
            "pipelineId": pipeline_id,
            "status": "open",
        }
        if self.location_id:
            body["locationId"] = self.location_id
        if stage_id:
            body["pipelineStageId"] = stage_id
        if monetary_value is not None:
            body["monetaryValue"] = monetary_value
        return await self._request("POST", "/opportunities/", json=body)

    # --- Calendars ---

    async def book_appointment(
        self,
        contact_id: str,
        calendar_id: str,
        start_time: str | None = None,
        title: str | None = None,
    ) -> dict[str, Any]:
        if not start_time:
            slots = await self.free_slots(calendar_id)
            if not slots:
                raise CRMError(f"No free slots on calendar {calendar_id}")
            start_time = slots[0]
        body: dict[str, Any] = {
            "calendarId": calendar_id,
            "contactId": contact_id,
            "startTime": start_time,
        }
        if self.location_id:
            body["locationId"] = self.location_id
        if title:
            body["title"] = title
        return await self._request("POST", "/calendars/events/appointments", json=body)

    async def free_slots(self, calendar_id: str) -> list[str]:
        data = await self._request("GET", f"/calendars/{calendar_id}/free-slots")
        slots: list[str] = []
        for day in data.values():
            if isinstance(day, dict):
                slots.extend(day.get("slots") or [])
        return slots

    async def list_calendars(self) -> list[dict[str, Any]]:
        return await self._cached_list("calendars", "/calendars/", "calendars")

    async def list_custom_fields(self) -> list[dict[str, Any]]:
        return await self._cached_list(
            "custom_fields", f"/locations/{self.location_id}/customFields", "customFields"
        )

    async def list_tags(self) -> list[dict[str, Any]]:
        return await self._cached_list("tags", f"/locations/{self.location_id}/tags", "tags")

    async def _cached_list(self, kind: str, path: str, key: str) -> list[dict[str, Any]]:
        cache_key = f"{kind}:{self.location_id}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached
        params = {"locationId": self.location_id} if self.location_id else None
        data = await self._request("GET", path, params=params)
        items = data.get(key) or []
        self.cache.set(cache_key, items)
        return items

    async def _custom_field_id(self, field_key: str) -> str:
        """Resolve a field key or name to its id; unknown keys are passed through."""
        if not self.location_id:
            return field_key
        for field in await self.list_custom_fields():
            if field_key in (field.get("id"), field.get("fieldKey"), field.get("name")):
                return field.get("id") or field_key
        return field_key
