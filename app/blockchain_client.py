# backend/app/blockchain_client.py
"""Client for the ledger bridge that anchors content hashes on-chain.

The bridge fronts the traceability registry contract over plain HTTP. One
anchoring call runs: estimate gas -> fetch fee data -> submit -> wait for
confirmations -> read the EventRegistered log. The whole sequence is retried
with exponential backoff, one attempt at a time, so the same hash never has two
submissions in flight.
"""
import asyncio
import logging
import math
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

import httpx

from app import config
from app.errors import LedgerError
from app.models.domain import AnchorResult

logger = logging.getLogger(__name__)

# Coordinates travel as fixed-point integers.
COORDINATE_SCALE = 1_000_000
MIN_GAS_MULTIPLIER = 1.2

RETRYABLE_CODES = {
    "NETWORK_ERROR",
    "TIMEOUT",
    "SERVER_ERROR",
    "REPLACEMENT_UNDERPRICED",
    "UNDERPRICED",
    "NONCE_EXPIRED",
    "NONCE_TOO_LOW",
    "TRANSACTION_REVERTED",
    "CONFIRMATION_TIMEOUT",
}
FATAL_CODES = {"INSUFFICIENT_FUNDS", "INVALID_ARGUMENT", "CALL_EXCEPTION", "UNAUTHORIZED"}
DUPLICATE_CODES = {"ALREADY_REGISTERED"}


class AlreadyAnchored(Exception):
    """Raised inside an attempt when the registry already holds this (batch, event type)."""

    def __init__(self, tx_id: Optional[str] = None, event_id: Optional[str] = None):
        super().__init__("already registered")
        self.tx_id = tx_id
        self.event_id = event_id


def to_fixed_point(value: Optional[float]) -> int:
    return int(round((value or 0.0) * COORDINATE_SCALE))


def from_fixed_point(value) -> Optional[float]:
    if value is None:
        return None
    return int(value) / COORDINATE_SCALE


def malformed_response(path: str, error: Exception) -> LedgerError:
    """A 2xx body that doesn't have the shape the bridge documents."""
    return LedgerError(
        f"Ledger bridge sent a malformed response on {path}: {error!r}",
        retryable=True,
        code="SERVER_ERROR",
        details={"path": path},
    )


class LedgerAnchorClient:
    def __init__(
        self,
        base_url: str = config.LEDGER_BRIDGE_URL,
        api_key: Optional[str] = config.LEDGER_API_KEY,
        max_attempts: int = config.LEDGER_MAX_ATTEMPTS,
        base_delay: float = config.LEDGER_RETRY_BASE_DELAY,
        confirmations: int = config.LEDGER_CONFIRMATIONS,
        gas_multiplier: float = config.LEDGER_GAS_MULTIPLIER,
        confirmation_timeout: float = config.LEDGER_CONFIRMATION_TIMEOUT,
        poll_interval: float = config.LEDGER_POLL_INTERVAL,
        http_timeout: float = config.LEDGER_HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not base_url:
            raise ValueError("LedgerAnchorClient needs a bridge URL")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.confirmations = max(1, confirmations)
        self.gas_multiplier = max(MIN_GAS_MULTIPLIER, gas_multiplier)
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep

        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        # Long-lived, shared by every request; httpx clients are safe for concurrent use.
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=http_timeout,
            headers=headers,
            transport=transport,
        )

    async def aclose(self):
        await self._http.aclose()

    # =====================================================
    # WRITE PATH
    # =====================================================

    async def anchor(
        self,
        event_type: str,
        batch_id: str,
        latitude: Optional[float],
        longitude: Optional[float],
        content_hash: str,
    ) -> AnchorResult:
        """Register `content_hash` for (batch_id, event_type) and return the ledger reference.

        Raises LedgerError(retryable=False) on permanent failures and
        LedgerError(retryable=True, code="RETRIES_EXHAUSTED") once every attempt failed.
        A duplicate-registration rejection counts as success.
        """
        if not batch_id or not event_type or not content_hash:
            raise LedgerError("batch_id, event_type and content_hash are required",
                              retryable=False, code="INVALID_ARGUMENT")

        params = {
            "eventType": event_type,
            "batchId": batch_id,
            "latitude": to_fixed_point(latitude),
            "longitude": to_fixed_point(longitude),
            "contentHash": content_hash,
        }

        last_error: Optional[LedgerError] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._register_once(params)
            except AlreadyAnchored as dup:
                logger.info(
                    "Ledger already holds %s for batch %s; treating as anchored (tx=%s)",
                    event_type, batch_id, dup.tx_id,
                )
                return AnchorResult(tx_id=dup.tx_id, event_id=dup.event_id, already_anchored=True)
            except LedgerError as e:
                if not e.retryable:
                    logger.error("Ledger anchor failed permanently batch=%s code=%s: %s", batch_id, e.code, e.message)
                    raise
                last_error = e

            if attempt < self.max_attempts:
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Retrying ledger anchor batch=%s attempt=%d/%d delay=%.2fs error=%s",
                    batch_id, attempt, self.max_attempts, delay, last_error.code,
                )
                await self._sleep(delay)

        logger.error("Max ledger retries reached batch=%s attempts=%d", batch_id, self.max_attempts)
        raise LedgerError(
            f"Anchoring failed after {self.max_attempts} attempts: {last_error.message}",
            retryable=True,
            code="RETRIES_EXHAUSTED",
            details={"attempts": self.max_attempts, "lastErrorCode": last_error.code},
        )

    def backoff_delay(self, attempt: int) -> float:
        return self.base_delay * (2 ** (attempt - 1))

    async def _register_once(self, params: dict) -> AnchorResult:
        estimate = await self._request("POST", "/events/estimate", json=params)
        try:
            gas_limit = math.ceil(int(estimate["gas"]) * self.gas_multiplier)
        except (KeyError, TypeError, ValueError) as e:
            raise malformed_response("/events/estimate", e)

        fees = await self._request("GET", "/network/fees")
        logger.info(
            "Registering event on ledger batch=%s type=%s gasLimit=%d maxFeePerGas=%s",
            params["batchId"], params["eventType"], gas_limit, fees.get("maxFeePerGas"),
        )

        submitted = await self._request("POST", "/events", json={
            **params,
            "gasLimit": gas_limit,
            "maxFeePerGas": fees.get("maxFeePerGas"),
            "maxPriorityFeePerGas": fees.get("maxPriorityFeePerGas"),
        })
        tx_id = submitted.get("txHash")
        if not tx_id:
            raise LedgerError("Ledger bridge did not return a transaction hash",
                              retryable=True, code="SERVER_ERROR")
        logger.info("Transaction sent tx=%s batch=%s", tx_id, params["batchId"])

        receipt = await self._wait_for_confirmations(tx_id)
        gas_used = receipt.get("gasUsed")
        try:
            event_id = self._parse_event_id(receipt)
            resource_used = int(gas_used) if gas_used is not None else None
        except (AttributeError, TypeError, ValueError) as e:
            raise malformed_response(f"/transactions/{tx_id}", e)

        logger.info("Event registered tx=%s eventId=%s gasUsed=%s batch=%s",
                    tx_id, event_id, gas_used, params["batchId"])
        return AnchorResult(
            tx_id=tx_id,
            event_id=event_id,
            resource_used=resource_used,
        )

    async def _wait_for_confirmations(self, tx_id: str) -> dict:
        deadline = time.monotonic() + self.confirmation_timeout
        while True:
            receipt = await self._request("GET", f"/transactions/{tx_id}")
            status = receipt.get("status")
            if status == "failed":
                raise LedgerError(f"Transaction {tx_id} reverted", retryable=True, code="TRANSACTION_REVERTED")
            if status == "confirmed":
                try:
                    confirmations = int(receipt.get("confirmations", 0))
                except (TypeError, ValueError) as e:
                    raise malformed_response(f"/transactions/{tx_id}", e)
                if confirmations >= self.confirmations:
                    return receipt
            if time.monotonic() >= deadline:
                raise LedgerError(
                    f"Transaction {tx_id} not confirmed within {self.confirmation_timeout}s",
                    retryable=True,
                    code="CONFIRMATION_TIMEOUT",
                    details={"txId": tx_id},
                )
            await self._sleep(self.poll_interval)

    @staticmethod
    def _parse_event_id(receipt: dict) -> Optional[str]:
        for log in receipt.get("logs") or []:
            if log.get("name") == "EventRegistered":
                args = log.get("args") or {}
                return args.get("eventId")
        return None

    # =====================================================
    # READ PATH
    # =====================================================

    async def get_batch_history(self, batch_id: str) -> List[dict]:
        """Prior anchor events for a batch, oldest first. Raises LedgerError on failure."""
        path = f"/batches/{batch_id}/events"
        body = await self._request("GET", path)
        try:
            return [self._decode_event(event) for event in body.get("events") or []]
        except (AttributeError, TypeError, ValueError, OverflowError, OSError) as e:
            raise malformed_response(path, e)

    @staticmethod
    def _decode_event(event: dict) -> dict:
        location = event.get("location") or {}
        ts = event.get("timestamp")
        return {
            "eventId": event.get("eventId"),
            "eventType": event.get("eventType"),
            "producer": event.get("producer"),
            "batchId": event.get("batchId"),
            "timestamp": datetime.fromtimestamp(int(ts), tz=timezone.utc) if ts is not None else None,
            "latitude": from_fixed_point(location.get("latitude")),
            "longitude": from_fixed_point(location.get("longitude")),
            "contentHash": event.get("contentHash"),
            "previousEventHash": event.get("previousEventHash"),
            "verified": event.get("verified"),
        }

    async def is_healthy(self) -> bool:
        try:
            body = await self._request("GET", "/health")
            return int(body.get("blockNumber") or 0) > 0
        except (LedgerError, TypeError, ValueError):
            return False

    # =====================================================
    # TRANSPORT
    # =====================================================

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            resp = await self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise LedgerError(f"Ledger bridge timed out on {path}: {e}", retryable=True, code="TIMEOUT")
        except httpx.TransportError as e:
            raise LedgerError(f"Ledger bridge unreachable on {path}: {e}", retryable=True, code="NETWORK_ERROR")

        if resp.is_success:
            try:
                body = resp.json()
            except ValueError:
                raise LedgerError(f"Ledger bridge sent a non-JSON body on {path}",
                                  retryable=True, code="SERVER_ERROR")
            if not isinstance(body, dict):
                raise malformed_response(path, TypeError(f"expected an object, got {type(body).__name__}"))
            return body

        raise self._classify(resp, path)

    @staticmethod
    def _classify(resp: httpx.Response, path: str) -> Exception:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        code = str(body.get("code") or "").upper()
        message = body.get("error") or resp.text or f"HTTP {resp.status_code}"

        if code in DUPLICATE_CODES:
            return AlreadyAnchored(
                tx_id=body.get("existingTxHash") or body.get("txHash"),
                event_id=body.get("eventId"),
            )
        if code in FATAL_CODES:
            return LedgerError(message, retryable=False, code=code, details={"path": path})
        if code in RETRYABLE_CODES:
            return LedgerError(message, retryable=True, code=code, details={"path": path})
        if resp.status_code >= 500 or resp.status_code == 429:
            return LedgerError(message, retryable=True, code=code or "SERVER_ERROR",
                               details={"path": path, "status": resp.status_code})
        return LedgerError(message, retryable=False, code=code or "INVALID_ARGUMENT",
                           details={"path": path, "status": resp.status_code})
