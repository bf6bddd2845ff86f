"""
EVM JSON-RPC ledger client.

Push feed over websockets (eth_subscribe "logs"), catch-up and point reads
over HTTP (eth_getLogs, eth_blockNumber, eth_call, eth_getBlockByNumber,
eth_getTransactionReceipt).

Design decisions:
- Uses async httpx for all HTTP calls, one shared AsyncClient.
- Token bucket rate limiting on HTTP calls (public BSC nodes throttle hard).
- eth_getLogs ranges are split into fixed-size block chunks.
- Every network failure surfaces as TransientIOError; the caller owns retry.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import time
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx
import websockets
from eth_abi import decode as abi_decode

from chainpulse.exceptions import LedgerRPCError, TransientIOError
from chainpulse.ledger.abi import GET_RESERVES_SELECTOR
from chainpulse.logger import get_logger

log = get_logger(__name__)

# Rate limit: 10 calls per second
RATE_LIMIT_CALLS = 10
RATE_LIMIT_PERIOD = 1.0  # seconds

WS_PING_INTERVAL = 20
WS_PING_TIMEOUT = 30
WS_CLOSE_TIMEOUT = 10
WS_MAX_MESSAGE = 10 * 1024 * 1024


class _TokenBucket:
    """Simple token bucket rate limiter."""

    def __init__(self, calls: int, period: float) -> None:
        self._calls = calls
        self._period = period
        self._tokens: float = float(calls)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_refill
            refill = (elapsed / self._period) * self._calls
            self._tokens = min(self._calls, self._tokens + refill)
            self._last_refill = now

            if self._tokens < 1:
                wait = (1 - self._tokens) * (self._period / self._calls)
                await asyncio.sleep(wait)
                self._tokens = 0
            else:
                self._tokens -= 1


class RpcLedgerSource:
    """
    Async JSON-RPC ledger source.

    Usage:
        source = RpcLedgerSource(http_url, ws_url)
        head = await source.block_number()
        async for entry in source.subscribe_logs(address, [topic0]):
            ...
        await source.close()
    """

    def __init__(
        self,
        http_url: str,
        ws_url: str,
        timeout: float = 30.0,
        chunk_blocks: int = 2000,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._http_url = http_url
        self._ws_url = ws_url
        self._timeout = timeout
        self._chunk_blocks = max(chunk_blocks, 1)
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._rate_limiter = _TokenBucket(RATE_LIMIT_CALLS, RATE_LIMIT_PERIOD)
        self._ids = itertools.count(1)

    async def block_number(self) -> int:
        return int(await self._rpc("eth_blockNumber", []), 16)

    async def get_logs(
        self, address: str, topics: list[str], from_block: int, to_block: int
    ) -> list[dict[str, Any]]:
        """Raw log objects in [from_block, to_block], fetched in chunks."""
        entries: list[dict[str, Any]] = []
        start = from_block
        while start <= to_block:
            end = min(start + self._chunk_blocks - 1, to_block)
            result = await self._rpc(
                "eth_getLogs",
                [{
                    "address": address,
                    "topics": [topics],
                    "fromBlock": hex(start),
                    "toBlock": hex(end),
                }],
            )
            entries.extend(result or [])
            start = end + 1
        return entries

    async def subscribe_logs(
        self,
        address: str,
        topics: list[str],
        on_subscribed: Callable[[], Awaitable[None]] | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """
        Yield raw log objects pushed by the node.

        `on_subscribed` is awaited once the node confirms the subscription and
        before the first log is yielded; pushes arriving meanwhile are buffered
        by the connection. The iterator ends when the server closes cleanly.

        Raises:
            TransientIOError: connect/handshake/read failure.
            LedgerRPCError: node rejected eth_subscribe.
        """
        request = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "eth_subscribe",
            "params": ["logs", {"address": address, "topics": [topics]}],
        }
        try:
            async with websockets.connect(
                self._ws_url,
                ping_interval=WS_PING_INTERVAL,
                ping_timeout=WS_PING_TIMEOUT,
                close_timeout=WS_CLOSE_TIMEOUT,
                max_size=WS_MAX_MESSAGE,
            ) as ws:
                await ws.send(json.dumps(request))
                response = json.loads(await asyncio.wait_for(ws.recv(), timeout=self._timeout))
                if "error" in response:
                    err = response["error"] or {}
                    raise LedgerRPCError(
                        f"eth_subscribe rejected: {err.get('message', err)}",
                        code=err.get("code"),
                    )
                log.info("ledger_subscribed", address=address, subscription_id=response.get("result"))

                if on_subscribed is not None:
                    await on_subscribed()

                async for message in ws:
                    try:
                        payload = json.loads(message)
                    except json.JSONDecodeError:
                        log.warning("ledger_invalid_message", address=address)
                        continue
                    if payload.get("method") != "eth_subscription":
                        continue
                    entry = payload.get("params", {}).get("result")
                    if entry:
                        yield entry
        except (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError) as e:
            raise TransientIOError(f"Ledger websocket failure: {e}", details={"url": self._ws_url}) from e

    async def get_reserves(self, pair_address: str) -> tuple[int, int]:
        result = await self._rpc(
            "eth_call", [{"to": pair_address, "data": GET_RESERVES_SELECTOR}, "latest"]
        )
        try:
            reserve0, reserve1, _ts = abi_decode(
                ["uint112", "uint112", "uint32"], bytes.fromhex(str(result).removeprefix("0x"))
            )
        except Exception as e:
            raise LedgerRPCError(f"Unexpected getReserves result: {result!r}") from e
        return int(reserve0), int(reserve1)

    async def get_block(self, number: int, full: bool = True) -> dict[str, Any]:
        return await self._rpc("eth_getBlockByNumber", [hex(number), full]) or {}

    async def block_timestamp(self, number: int) -> int:
        block = await self.get_block(number, full=False)
        if not block.get("timestamp"):
            raise LedgerRPCError(f"Block {number} has no timestamp")
        return int(block["timestamp"], 16)

    async def get_receipt(self, tx_hash: str) -> dict[str, Any]:
        return await self._rpc("eth_getTransactionReceipt", [tx_hash]) or {}

    async def failure_counts(self, n_blocks: int, watched: set[str]) -> tuple[int, int]:
        """(failed, total) for transactions sent to `watched` in the last n blocks."""
        head = await self.block_number()
        watched = {a.lower() for a in watched if a}
        hashes: list[str] = []
        for number in range(max(head - n_blocks + 1, 0), head + 1):
            block = await self.get_block(number, full=True)
            for tx in block.get("transactions", []):
                if isinstance(tx, dict) and (tx.get("to") or "").lower() in watched:
                    hashes.append(tx["hash"])

        receipts = await asyncio.gather(*(self.get_receipt(h) for h in hashes))
        failed = sum(1 for r in receipts if r.get("status") == "0x0")
        return failed, len(hashes)

    async def close(self) -> None:
        await self._client.aclose()

    # ──────────────────────────────────────────────────────────────
    # Private helpers
    # ──────────────────────────────────────────────────────────────

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        await self._rate_limiter.acquire()
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = await self._client.post(self._http_url, json=body)
        except httpx.TimeoutException as e:
            raise TransientIOError(f"Ledger RPC timeout on {method}: {e}") from e
        except httpx.HTTPError as e:
            raise TransientIOError(f"Cannot reach ledger RPC for {method}: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientIOError(
                f"Ledger RPC {method} returned HTTP {resp.status_code}",
                details={"status": resp.status_code},
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise TransientIOError(f"Ledger RPC {method} returned non-JSON body") from e

        if data.get("error"):
            err = data["error"]
            raise LedgerRPCError(f"{method} failed: {err.get('message', err)}", code=err.get("code"))
        return data.get("result")
