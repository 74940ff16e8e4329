"""Client for the external ownership ledger used by wallet verification."""

from __future__ import annotations

import asyncio
from typing import Protocol

import httpx
from loguru import logger

from rac_rewards_api.core.settings import settings
from rac_rewards_api.observability.membership import get_membership_telemetry
from rac_rewards_api.observability.tracing import membership_span


class OwnershipLedgerError(RuntimeError):
    """Base error for ownership ledger failures."""


class LedgerUnavailableError(OwnershipLedgerError):
    """The ledger could not answer; the check may succeed if retried later."""


class LedgerRejectedError(OwnershipLedgerError):
    """The ledger refused the request itself (bad credentials, malformed payload)."""


class OwnershipLedger(Protocol):
    async def check_ownership(self, wallet_ref: str, owner_id: str, signature: str | None = None) -> bool:
        """Return True when ``wallet_ref`` is held by ``owner_id``.

        ``signature`` is the member's signed ownership challenge, forwarded as is.
        """


_TRANSIENT_STATUS_CODES = frozenset({429})


class HttpOwnershipLedger:
    """Ask the ledger service over HTTP, retrying transient failures with backoff."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float | None = None,
        max_attempts: int | None = None,
        base_backoff_seconds: float | None = None,
        backoff_multiplier: float | None = None,
        max_backoff_seconds: float | None = None,
    ) -> None:
        self._base_url = (base_url if base_url is not None else settings.ownership_ledger_url or "").rstrip("/")
        self._api_key = api_key if api_key is not None else settings.ownership_ledger_api_key
        self._http_client = http_client
        self._timeout_seconds = timeout_seconds or settings.ownership_ledger_timeout_seconds
        self._max_attempts = max(max_attempts or settings.ownership_ledger_max_attempts, 1)
        self._base_backoff = max(
            base_backoff_seconds if base_backoff_seconds is not None else settings.ownership_ledger_base_backoff_seconds,
            0.0,
        )
        self._backoff_multiplier = max(backoff_multiplier or settings.ownership_ledger_backoff_multiplier, 1.0)
        self._max_backoff = max(
            max_backoff_seconds if max_backoff_seconds is not None else settings.ownership_ledger_max_backoff_seconds,
            0.0,
        )
        self._telemetry = get_membership_telemetry()

    async def check_ownership(self, wallet_ref: str, owner_id: str, signature: str | None = None) -> bool:
        if not self._base_url:
            self._telemetry.record_ledger_call("unconfigured")
            raise LedgerUnavailableError("ownership ledger is not configured")

        target_url = f"{self._base_url}/ownership/check"
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = (
                self._api_key if self._api_key.lower().startswith("bearer ") else f"Bearer {self._api_key}"
            )
        payload = {"walletRef": wallet_ref, "ownerId": owner_id}
        if signature:
            payload["signature"] = signature

        close_client = False
        client = self._http_client
        if client is None:
            client = httpx.AsyncClient(timeout=self._timeout_seconds)
            close_client = True

        try:
            for attempt in range(1, self._max_attempts + 1):
                try:
                    with membership_span("ledger_check", attempt=attempt, wallet_ref=wallet_ref):
                        return await self._request(client, target_url, payload, headers)
                except LedgerUnavailableError as exc:
                    if attempt >= self._max_attempts:
                        self._telemetry.record_ledger_call("unavailable")
                        logger.error(
                            "Ownership ledger unavailable after retries",
                            attempts=attempt,
                            error=str(exc),
                        )
                        raise
                    delay = self._base_backoff * (self._backoff_multiplier ** (attempt - 1))
                    if self._max_backoff:
                        delay = min(delay, self._max_backoff)
                    self._telemetry.record_ledger_call("retry")
                    logger.warning(
                        "Ownership ledger call failed; retrying",
                        attempt=attempt + 1,
                        max_attempts=self._max_attempts,
                        delay_seconds=delay,
                        error=str(exc),
                    )
                    if delay > 0:
                        await asyncio.sleep(delay)
        finally:
            if close_client:
                await client.aclose()
        raise LedgerUnavailableError("ownership ledger retries exhausted")  # pragma: no cover

    async def _request(
        self,
        client: httpx.AsyncClient,
        url: str,
        payload: dict[str, str],
        headers: dict[str, str],
    ) -> bool:
        try:
            response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise LedgerUnavailableError(f"ledger request failed: {exc}") from exc

        if response.status_code >= 500 or response.status_code in _TRANSIENT_STATUS_CODES:
            raise LedgerUnavailableError(f"ledger returned HTTP {response.status_code}")
        if response.status_code >= 400:
            self._telemetry.record_ledger_call("rejected")
            logger.warning(
                "Ownership ledger rejected request",
                status=response.status_code,
                body=response.text[:256],
            )
            raise LedgerRejectedError(f"ledger rejected request with HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise LedgerUnavailableError("ledger returned a non-JSON body") from exc
        if not isinstance(data, dict) or not isinstance(data.get("owned"), bool):
            raise LedgerUnavailableError("ledger response is missing the 'owned' flag")

        self._telemetry.record_ledger_call("owned" if data["owned"] else "not_owned")
        return data["owned"]


__all__ = [
    "HttpOwnershipLedger",
    "LedgerRejectedError",
    "LedgerUnavailableError",
    "OwnershipLedger",
    "OwnershipLedgerError",
]
