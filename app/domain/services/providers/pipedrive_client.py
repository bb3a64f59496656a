"""
Pipedrive API client - person and deal lookup, deal and note creation.
"""
from __future__ import annotations

from typing import Any

from app.core.exceptions import ExternalServiceException
from app.core.http_client import ResilientHttpClient

SERVICE = "pipedrive"


def _first_item_id(body: dict[str, Any]) -> int | None:
    items = ((body or {}).get("data") or {}).get("items") or []
    if not items:
        return None
    item_id = (items[0].get("item") or {}).get("id")
    return int(item_id) if item_id is not None else None


class PipedriveClient:
    def __init__(self, http: ResilientHttpClient, *, api_url: str, api_token: str):
        self.http = http
        self.api_url = api_url.rstrip("/")
        self.api_token = api_token

    async def _get(self, path: str, params: dict[str, Any], **trace: Any) -> dict[str, Any]:
        response = await self.http.get(
            f"{self.api_url}{path}",
            service=SERVICE,
            params={**params, "api_token": self.api_token},
            **trace,
        )
        return response.json()

    async def _post(self, path: str, body: dict[str, Any], **trace: Any) -> dict[str, Any]:
        response = await self.http.post(
            f"{self.api_url}{path}",
            service=SERVICE,
            params={"api_token": self.api_token},
            json=body,
            **trace,
        )
        data = response.json()
        if not (data.get("data") or {}).get("id"):
            raise ExternalServiceException(SERVICE, f"Pipedrive {path} response has no id")
        return data

    async def find_person_by_phone(
        self,
        phone: str,
        *,
        correlation_id: str | None = None,
        batch_id: str | None = None,
    ) -> int | None:
        body = await self._get(
            "/persons/search",
            {"term": phone, "item_type": "person", "fields": "phone"},
            correlation_id=correlation_id,
            batch_id=batch_id,
        )
        return _first_item_id(body)

    async def find_open_deal(
        self,
        call_id: str,
        phone: str | None = None,
        *,
        correlation_id: str | None = None,
        batch_id: str | None = None,
    ) -> int | None:
        """Open deal tagged with the call id, falling back to one matching the phone"""
        trace = {"correlation_id": correlation_id, "batch_id": batch_id}
        deal_id = _first_item_id(await self._get(
            "/deals/search",
            {"term": call_id, "status": "open"},
            **trace,
        ))
        if deal_id is not None or not phone:
            return deal_id

        return _first_item_id(await self._get(
            "/deals/search",
            {"term": phone, "status": "open"},
            **trace,
        ))

    async def create_deal(
        self,
        deal: dict[str, Any],
        *,
        correlation_id: str | None = None,
        batch_id: str | None = None,
    ) -> int:
        data = await self._post("/deals", deal, correlation_id=correlation_id, batch_id=batch_id)
        return int(data["data"]["id"])

    async def add_note(
        self,
        deal_id: int,
        content: str,
        *,
        correlation_id: str | None = None,
        batch_id: str | None = None,
    ) -> int:
        data = await self._post(
            "/notes",
            {"deal_id": deal_id, "content": content},
            correlation_id=correlation_id,
            batch_id=batch_id,
        )
        return int(data["data"]["id"])
