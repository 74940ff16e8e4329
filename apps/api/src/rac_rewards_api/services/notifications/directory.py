"""Resolve membership owners to email contacts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Protocol
from uuid import UUID

import httpx
from loguru import logger


@dataclass(frozen=True, slots=True)
class MemberContact:
    email: str
    display_name: Optional[str] = None


class MemberDirectory(Protocol):
    async def resolve(self, owner_id: UUID) -> Optional[MemberContact]:
        ...


class InMemoryMemberDirectory:
    """Fixed owner to contact mapping for tests and local runs."""

    def __init__(self, contacts: Dict[UUID, MemberContact] | None = None) -> None:
        self._contacts: Dict[UUID, MemberContact] = dict(contacts or {})

    def add(self, owner_id: UUID, contact: MemberContact) -> None:
        self._contacts[owner_id] = contact

    async def resolve(self, owner_id: UUID) -> Optional[MemberContact]:
        return self._contacts.get(owner_id)


class HttpMemberDirectory:
    """Look owners up in the identity service: ``GET {base_url}/members/{owner_id}``."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._http_client = http_client
        self._timeout_seconds = timeout_seconds

    async def resolve(self, owner_id: UUID) -> Optional[MemberContact]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        close_client = False
        client = self._http_client
        if client is None:
            client = httpx.AsyncClient(timeout=self._timeout_seconds)
            close_client = True

        try:
            response = await client.get(f"{self._base_url}/members/{owner_id}", headers=headers)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            logger.warning("Member directory lookup failed", owner_id=str(owner_id), error=str(exc))
            return None
        except ValueError:
            logger.warning("Member directory returned invalid JSON", owner_id=str(owner_id))
            return None
        finally:
            if close_client:
                await client.aclose()

        if not isinstance(data, dict) or not data.get("email"):
            return None
        return MemberContact(email=str(data["email"]), display_name=data.get("displayName"))


__all__ = ["HttpMemberDirectory", "InMemoryMemberDirectory", "MemberContact", "MemberDirectory"]
