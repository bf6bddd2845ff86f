"""Tests for chainpulse/ledger/client.py — JSON-RPC over httpx.

Uses respx to mock httpx calls (no real network I/O).
"""

from __future__ import annotations

import json

import httpx
import pytest
import respx
from eth_abi import encode as abi_encode

from chainpulse.exceptions import LedgerRPCError, TransientIOError
from chainpulse.ledger.abi import GET_RESERVES_SELECTOR
from chainpulse.ledger.client import RpcLedgerSource

RPC_URL = "https://node.example/rpc"
WS_URL = "wss://node.example/ws"


def rpc_result(result) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})


@pytest.mark.asyncio
@respx.mock
async def test_block_number() -> None:
    respx.post(RPC_URL).mock(return_value=rpc_result("0x7b"))
    source = RpcLedgerSource(RPC_URL, WS_URL)
    assert await source.block_number() == 123
    await source.close()


@pytest.mark.asyncio
@respx.mock
async def test_get_logs_splits_into_chunks() -> None:
    ranges = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["method"] == "eth_getLogs"
        params = body["params"][0]
        ranges.append((int(params["fromBlock"], 16), int(params["toBlock"], 16)))
        return rpc_result([{"blockNumber": params["fromBlock"]}])

    respx.post(RPC_URL).mock(side_effect=handler)
    source = RpcLedgerSource(RPC_URL, WS_URL, chunk_blocks=10)
    entries = await source.get_logs("0xa2", ["0xtopic"], 100, 125)
    await source.close()

    assert ranges == [(100, 109), (110, 119), (120, 125)]
    assert len(entries) == 3


@pytest.mark.asyncio
@respx.mock
async def test_get_reserves_decodes_eth_call() -> None:
    encoded = "0x" + abi_encode(["uint112", "uint112", "uint32"], [10**21, 5 * 10**20, 1700000000]).hex()
    route = respx.post(RPC_URL).mock(return_value=rpc_result(encoded))
    source = RpcLedgerSource(RPC_URL, WS_URL)
    assert await source.get_reserves("0xpair") == (10**21, 5 * 10**20)
    await source.close()

    call = json.loads(route.calls.last.request.content)["params"][0]
    assert call == {"to": "0xpair", "data": GET_RESERVES_SELECTOR}


@pytest.mark.asyncio
@respx.mock
async def test_block_timestamp() -> None:
    route = respx.post(RPC_URL).mock(return_value=rpc_result({"number": "0x64", "timestamp": "0x6553f100"}))
    source = RpcLedgerSource(RPC_URL, WS_URL)
    assert await source.block_timestamp(100) == 0x6553F100
    assert json.loads(route.calls.last.request.content)["params"] == ["0x64", False]

    route.mock(return_value=rpc_result(None))
    with pytest.raises(LedgerRPCError):
        await source.block_timestamp(101)
    await source.close()


@pytest.mark.asyncio
@respx.mock
async def test_failure_counts() -> None:
    watched = "0x00000000000000000000000000000000000000a2"

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if body["method"] == "eth_blockNumber":
            return rpc_result("0x2")
        if body["method"] == "eth_getBlockByNumber":
            n = int(body["params"][0], 16)
            return rpc_result({"transactions": [
                {"hash": f"0x{n}a", "to": watched.upper().replace("0X", "0x")},
                {"hash": f"0x{n}b", "to": "0xelsewhere"},
            ]})
        tx_hash = body["params"][0]
        return rpc_result({"status": "0x0" if tx_hash == "0x1a" else "0x1"})

    respx.post(RPC_URL).mock(side_effect=handler)
    source = RpcLedgerSource(RPC_URL, WS_URL)
    assert await source.failure_counts(2, {watched}) == (1, 2)
    await source.close()


@pytest.mark.asyncio
@respx.mock
async def test_rpc_error_object() -> None:
    respx.post(RPC_URL).mock(
        return_value=httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "limit exceeded"}})
    )
    source = RpcLedgerSource(RPC_URL, WS_URL)
    with pytest.raises(LedgerRPCError) as exc:
        await source.block_number()
    assert exc.value.code == -32005
    assert exc.value.exit_code == 2
    await source.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "mock_kwargs",
    [
        {"return_value": httpx.Response(429)},
        {"return_value": httpx.Response(503)},
        {"side_effect": httpx.TimeoutException("timeout")},
        {"side_effect": httpx.ConnectError("refused")},
    ],
)
async def test_transport_failures_are_transient(respx_mock, mock_kwargs) -> None:
    respx_mock.post(RPC_URL).mock(**mock_kwargs)
    source = RpcLedgerSource(RPC_URL, WS_URL)
    with pytest.raises(TransientIOError):
        await source.block_number()
    await source.close()
