"""
Agora — remote ledger gateway integration.

Thin async wrapper over an HTTP relay in front of the deployed petition/poll
contract. The relay holds the signing wallet; this client only reads
snapshots, forwards intents, polls for receipts and requests dry-runs.

Ledger schemas differ between deployments (``is_public`` vs ``visibility``,
``allowed`` vs ``allow_list``, with or without a ``closed`` flag). Those
differences are resolved here so the core sees one item model.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

import httpx

from agora.errors import (
    ExternalRejectedError,
    ExternalUnavailableError,
    ItemNotFoundError,
    MalformedLedgerResponseError,
)
from agora.ledger.store import ParticipationStore
from agora.participation.schema import (
    Confirmation,
    IntentCall,
    IntentHandle,
    ItemKind,
    ParticipationItem,
    Petition,
    Poll,
    SimulationResult,
    StoreCapability,
    Visibility,
)

logger = logging.getLogger(__name__)

# Receipt statuses that mean "not final yet"
PENDING_STATUSES = frozenset({"pending", "submitted", "unconfirmed"})


class GatewayParticipationStore(ParticipationStore):
    """
    Async ledger gateway client.

    Uses httpx for async HTTP. Transport errors, timeouts and 5xx
    responses surface as ExternalUnavailableError.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        receipt_poll_interval: float = 2.0,
        capabilities: Iterable[StoreCapability | str] = (StoreCapability.VISIBILITY,),
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.receipt_poll_interval = receipt_poll_interval
        self.capabilities = frozenset(StoreCapability(c) for c in capabilities)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        client = await self._ensure_client()
        try:
            resp = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise ExternalUnavailableError(f"Ledger gateway timed out: {method} {path}") from exc
        except httpx.TransportError as exc:
            raise ExternalUnavailableError(f"Ledger gateway unreachable: {exc}") from exc

        if resp.status_code == 404:
            raise ItemNotFoundError(f"Not found: {path}")
        if resp.status_code >= 500:
            raise ExternalUnavailableError(
                f"Ledger gateway error {resp.status_code} on {method} {path}"
            )
        if resp.status_code >= 400:
            raise ExternalRejectedError(self._reason(resp))
        try:
            data = resp.json()
        except ValueError as exc:
            raise MalformedLedgerResponseError(f"Non-JSON body from {method} {path}") from exc
        if not isinstance(data, dict):
            raise MalformedLedgerResponseError(f"Expected an object from {method} {path}")
        return data

    @staticmethod
    def _reason(resp: httpx.Response) -> str:
        try:
            return str(resp.json().get("reason", resp.text))
        except ValueError:
            return resp.text

    # ── Items ──────────────────────────────────────────────────

    async def read_item(self, kind: ItemKind, item_id: int) -> ParticipationItem:
        data = await self._request("GET", f"/v1/{kind.value}s/{item_id}")
        try:
            return self._parse_item(kind, item_id, data)
        except (KeyError, TypeError, ValueError) as exc:
            # pydantic's ValidationError is a ValueError
            raise MalformedLedgerResponseError(
                f"Unparseable {kind.value} #{item_id} from ledger gateway: {exc}"
            ) from exc

    async def list_item_ids(self, kind: ItemKind) -> list[int]:
        data = await self._request("GET", f"/v1/{kind.value}s")
        try:
            return [int(i) for i in data.get("ids", [])]
        except (TypeError, ValueError) as exc:
            raise MalformedLedgerResponseError(f"Unparseable {kind.value} id list: {exc}") from exc

    async def has_participated(self, kind: ItemKind, item_id: int, identity: str) -> bool:
        data = await self._request(
            "GET", f"/v1/{kind.value}s/{item_id}/participants/{identity}"
        )
        return bool(data.get("participated", False))

    # ── Intents ────────────────────────────────────────────────

    async def submit(self, call: IntentCall) -> IntentHandle:
        data = await self._request("POST", "/v1/intents", json=call.model_dump(mode="json"))
        if not data.get("hash"):
            raise MalformedLedgerResponseError("Intent accepted without a transaction hash")
        handle = IntentHandle(id=str(data["hash"]), call=call)
        logger.info(
            "Intent forwarded: %s %s item=%s hash=%s",
            call.action.value, call.kind.value, call.item_id, handle.id[:18],
        )
        return handle

    async def await_confirmation(self, handle: IntentHandle) -> Confirmation:
        """
        Poll the receipt until the ledger finalizes ``handle``.

        Unbounded on its own; callers bound the wait (the controller wraps
        it in ``asyncio.wait_for``).
        """
        polls = 0
        while True:
            data = await self._request("GET", f"/v1/intents/{handle.id}/receipt")
            polls += 1
            status = data.get("status")
            if status == "confirmed":
                logger.debug("Receipt for %s confirmed after %d polls", handle.id[:18], polls)
                return Confirmation(confirmed=True, item_id=data.get("item_id"))
            if status == "rejected":
                return Confirmation(confirmed=False, reason=data.get("reason") or "")
            if status not in PENDING_STATUSES:
                raise MalformedLedgerResponseError(
                    f"Unexpected receipt status {status!r} for intent {handle.id}"
                )
            await asyncio.sleep(self.receipt_poll_interval)

    async def simulate(self, call: IntentCall) -> SimulationResult:
        data = await self._request("POST", "/v1/simulate", json=call.model_dump(mode="json"))
        return SimulationResult(
            would_succeed=bool(data.get("ok", False)), reason=data.get("reason")
        )

    # ── Schema mapping ─────────────────────────────────────────

    def _parse_item(self, kind: ItemKind, item_id: int, data: dict[str, Any]) -> ParticipationItem:
        if "visibility" in data:
            visibility = Visibility(data["visibility"])
        else:
            visibility = Visibility.PUBLIC if data.get("is_public", True) else Visibility.PRIVATE

        common = {
            "id": data.get("id", item_id),
            "created_at": data["created_at"],
            "deadline": data["deadline"],
            "visibility": visibility,
            "allow_list": data.get("allow_list", data.get("allowed", [])),
            "closed_flag": (
                data.get("closed")
                if StoreCapability.EXPLICIT_CLOSE in self.capabilities
                else None
            ),
        }

        if kind == ItemKind.PETITION:
            return Petition(
                title=data["title"],
                description=data.get("description", ""),
                signature_count=data.get("signature_count", 0),
                **common,
            )
        return Poll(
            title=data.get("question", data.get("title")),
            options=data["options"],
            vote_counts=data.get("vote_counts", []),
            **common,
        )
