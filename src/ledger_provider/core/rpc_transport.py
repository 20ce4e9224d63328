"""
Upstream JSON-RPC transport.

The signing provider only needs ``request(method, params) -> result`` from the
node connection; anything that implements RpcTransport can sit upstream,
including another provider.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

import requests

from ledger_provider.core.ledger_exceptions import RpcError

logger = logging.getLogger(__name__)

DEFAULT_RPC_TIMEOUT = 30.0


@runtime_checkable
class RpcTransport(Protocol):
    async def request(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        ...


class HttpRpcTransport:
    """JSON-RPC 2.0 over HTTP."""

    def __init__(
        self,
        url: str,
        timeout: float = DEFAULT_RPC_TIMEOUT,
        headers: Optional[dict[str, str]] = None,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json", **(headers or {})}
        self._http = session or requests.Session()
        self._ids = itertools.count(1)

    def _post(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self._http.post(self.url, json=payload, headers=self.headers, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.RequestException as exc:
            raise RpcError(f"RPC request {method} failed: {exc}") from exc
        except ValueError as exc:
            raise RpcError(f"RPC response for {method} is not valid JSON") from exc

        if "error" in body and body["error"] is not None:
            error = body["error"]
            raise RpcError(
                error.get("message", "RPC error"),
                rpc_code=error.get("code"),
                data=error.get("data"),
            )
        return body.get("result")

    async def request(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        logger.debug("RPC %s", method, extra={"event": "rpc.request", "method": method})
        return await asyncio.to_thread(self._post, method, list(params or []))

    def close(self) -> None:
        self._http.close()
