"""
Test configuration and fixtures
"""
import sys
from pathlib import Path

# Add project root and src to Python path
project_root = Path(__file__).parent.parent
src_path = project_root / "src"

sys.path.insert(0, str(project_root))
sys.path.insert(0, str(src_path))

import pytest

from ledger_provider.core.device_session import DeviceSession
from ledger_provider.core.ledger_exceptions import RpcError
from ledger_provider.core.mock_device import MockLedgerTransport
from ledger_provider.core.signing_provider import LedgerSigningProvider


class FakeUpstream:
    """Scripted JSON-RPC upstream; values may be callables taking the params."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    async def request(self, method, params=None):
        params = list(params or [])
        self.calls.append((method, params))
        if method not in self.responses:
            raise RpcError(f"the method {method} does not exist/is not available", rpc_code=-32601)
        result = self.responses[method]
        return result(params) if callable(result) else result

    def methods(self):
        return [method for method, _ in self.calls]

    def params_for(self, method):
        return [params for name, params in self.calls if name == method]


@pytest.fixture
def upstream():
    return FakeUpstream(
        {
            "eth_chainId": "0x539",
            "eth_getTransactionCount": "0x7",
            "eth_estimateGas": "0x5208",
            "eth_gasPrice": "0x3b9aca00",
            "eth_getBlockByNumber": {"number": "0x10", "baseFeePerGas": None},
            "eth_blockNumber": "0x10",
            "eth_sendRawTransaction": "0x" + "ab" * 32,
        }
    )


@pytest.fixture
def mock_transport():
    return MockLedgerTransport(running_app="Ethereum")


@pytest.fixture
def session(mock_transport):
    return DeviceSession(mock_transport, connection_timeout=1.0, action_timeout=5.0)


@pytest.fixture
def provider(upstream, session):
    return LedgerSigningProvider(upstream, session, accounts=[0, 1])


@pytest.fixture
def allow_mock_device(monkeypatch):
    monkeypatch.setenv("LEDGER_ALLOW_MOCK_DEVICE", "1")


@pytest.fixture
def make_upstream():
    return FakeUpstream
