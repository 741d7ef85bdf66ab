import httpx
import typer
from typing import Any, Optional

from core.config import NodeConfig
from core.errors import RpcError


class RpcClient:
    """
    A thin JSON-RPC 2.0 client for the validator's HTTP endpoint.
    One POST per call, no retries.
    """

    def __init__(self, config: NodeConfig, client: Optional[httpx.Client] = None):
        self.url = config.rpc_url
        self.timeout = config.rpc_timeout
        self.client = client or httpx.Client(timeout=config.rpc_timeout)

    def __enter__(self) -> "RpcClient":
        return self

    def __exit__(self, *exc_info):
        self.close()

    def call(self, method: str, timeout: Optional[float] = None) -> Any:
        """
        Makes a synchronous call and returns the `result` member. A `timeout`
        can only shorten the configured RPC timeout for this one call.
        """
        typer.secho(f"   [RPC] {method} -> {self.url}", dim=True)

        payload = {"jsonrpc": "2.0", "id": 1, "method": method}
        request_options = {}
        if timeout is not None:
            request_options["timeout"] = max(0.001, min(timeout, self.timeout))
        try:
            response = self.client.post(self.url, json=payload, **request_options)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise RpcError(f"{method}: HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise RpcError(f"{method}: {e.__class__.__name__}: {e}") from e
        except ValueError as e:
            raise RpcError(f"{method}: response is not JSON") from e

        if not isinstance(data, dict):
            raise RpcError(f"{method}: malformed response")
        if "error" in data:
            error = data["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            raise RpcError(f"{method}: {message}")
        if "result" not in data:
            raise RpcError(f"{method}: response has no result")
        return data["result"]

    def close(self):
        self.client.close()
