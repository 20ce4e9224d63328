from unittest.mock import MagicMock

import pytest
import requests

from ledger_provider.core.ledger_exceptions import RpcError
from ledger_provider.core.rpc_transport import HttpRpcTransport, RpcTransport


def _session_returning(body):
    session = MagicMock(spec=requests.Session)
    response = MagicMock()
    response.json.return_value = body
    response.raise_for_status.return_value = None
    session.post.return_value = response
    return session


@pytest.mark.asyncio
async def test_request_posts_json_rpc_payload():
    session = _session_returning({"jsonrpc": "2.0", "id": 1, "result": "0x539"})
    transport = HttpRpcTransport("http://node:8545", timeout=5.0, session=session)

    result = await transport.request("eth_chainId")

    assert result == "0x539"
    _, kwargs = session.post.call_args
    assert session.post.call_args[0][0] == "http://node:8545"
    assert kwargs["json"]["method"] == "eth_chainId"
    assert kwargs["json"]["params"] == []
    assert kwargs["json"]["jsonrpc"] == "2.0"
    assert kwargs["timeout"] == 5.0


@pytest.mark.asyncio
async def test_request_ids_increase():
    session = _session_returning({"jsonrpc": "2.0", "id": 1, "result": None})
    transport = HttpRpcTransport("http://node:8545", session=session)

    await transport.request("eth_blockNumber", [])
    await transport.request("eth_blockNumber", [])

    ids = [call.kwargs["json"]["id"] for call in session.post.call_args_list]
    assert ids == [1, 2]


@pytest.mark.asyncio
async def test_json_rpc_error_becomes_rpc_error():
    session = _session_returning(
        {"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "nonce too low", "data": "0x"}}
    )
    transport = HttpRpcTransport("http://node:8545", session=session)

    with pytest.raises(RpcError, match="nonce too low") as exc:
        await transport.request("eth_sendRawTransaction", ["0x00"])
    assert exc.value.rpc_code == -32000
    assert exc.value.data == "0x"


@pytest.mark.asyncio
async def test_http_failure_becomes_rpc_error():
    session = MagicMock(spec=requests.Session)
    session.post.side_effect = requests.exceptions.ConnectionError("connection refused")
    transport = HttpRpcTransport("http://node:8545", session=session)

    with pytest.raises(RpcError, match="eth_chainId failed"):
        await transport.request("eth_chainId")


@pytest.mark.asyncio
async def test_invalid_json_becomes_rpc_error():
    session = _session_returning(None)
    session.post.return_value.json.side_effect = ValueError("no json")
    transport = HttpRpcTransport("http://node:8545", session=session)

    with pytest.raises(RpcError, match="not valid JSON"):
        await transport.request("eth_chainId")


def test_close_closes_session():
    session = _session_returning({})
    transport = HttpRpcTransport("http://node:8545", session=session)

    transport.close()

    session.close.assert_called_once()
    assert isinstance(transport, RpcTransport)
