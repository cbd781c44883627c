import itertools
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from controller.chain_state import ChainState
from controller.config import DaemonEndpoint
from controller.errors import DaemonRejected, DaemonWarmingUp, TransportError

logger = logging.getLogger(__name__)

RPC_IN_WARMUP = -28


class BitcoinRPCClient:
    """
    Retrying JSON-RPC client for a bitcoind regtest node.

    Transport failures (refused connections, timeouts, bare 5xx replies, and
    the daemon's warm-up error) are retried with exponential backoff. Any
    error object returned by the daemon is raised as DaemonRejected at once.
    """

    def __init__(
        self,
        endpoint: DaemonEndpoint,
        *,
        chain_state: Optional[ChainState] = None,
        max_attempts: int = 5,
        backoff_base: float = 0.25,
        backoff_max: float = 5.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.endpoint = endpoint
        self.chain_state = chain_state
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = max(0.0, float(backoff_base))
        self.backoff_max = max(0.0, float(backoff_max))
        self._session = session or requests.Session()
        self._sleep = sleep
        self._ids = itertools.count(1)
        # Send order of tip reads, so a slow reply cannot overwrite a newer one.
        self._tip_reads = itertools.count(1)

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_base * (2**attempt), self.backoff_max)

    def call(
        self,
        method: str,
        params: Optional[List[Any]] = None,
        *,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> Any:
        attempts = self.max_attempts if max_attempts is None else max(1, int(max_attempts))
        timeout = self.endpoint.timeout if timeout is None else float(timeout)

        for attempt in range(attempts):
            seq = next(self._tip_reads) if method == "getblockchaininfo" else None
            try:
                result = self._call_once(method, params or [], timeout)
            except TransportError as e:
                if attempt + 1 >= attempts:
                    raise
                delay = self._backoff(attempt)
                logger.warning(
                    "RPC %s failed (attempt %d/%d): %s; retrying in %.2fs",
                    method,
                    attempt + 1,
                    attempts,
                    e,
                    delay,
                )
                self._sleep(delay)
                continue
            self._observe(method, result, seq)
            return result

        raise TransportError(f"RPC {method} was not attempted")  # pragma: no cover

    def _call_once(self, method: str, params: List[Any], timeout: float) -> Any:
        payload = {"jsonrpc": "1.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self._session.post(
                self.endpoint.url,
                json=payload,
                auth=(self.endpoint.username, self.endpoint.password),
                timeout=timeout,
            )
        except requests.exceptions.ConnectTimeout as e:
            raise TransportError(f"RPC {method}: connect timeout: {e}") from e
        except requests.exceptions.ReadTimeout as e:
            raise TransportError(f"RPC {method}: timed out after {timeout:.1f}s", ambiguous=True) from e
        except requests.exceptions.ConnectionError as e:
            # "Connection aborted" means the request was written before the socket died.
            ambiguous = "Connection aborted" in str(e)
            raise TransportError(f"RPC {method}: connection error: {e}", ambiguous=ambiguous) from e
        except requests.exceptions.RequestException as e:
            raise TransportError(f"RPC {method}: {e}") from e

        status = int(response.status_code)
        if status in (401, 403):
            raise DaemonRejected(f"RPC {method}: authentication failed (HTTP {status})", code=status, method=method)

        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict) and body.get("error"):
            error = body["error"]
            if isinstance(error, dict):
                code = error.get("code")
                message = str(error.get("message") or error)
            else:
                code = None
                message = str(error)
            if code == RPC_IN_WARMUP:
                raise DaemonWarmingUp(f"RPC {method}: {message}")
            raise DaemonRejected(message, code=code, method=method)

        if status >= 500:
            raise TransportError(f"RPC {method}: HTTP {status}")
        if status >= 400:
            text = (getattr(response, "text", "") or "").strip()
            raise DaemonRejected(f"RPC {method}: HTTP {status} {text}".strip(), code=status, method=method)
        if not isinstance(body, dict) or "result" not in body:
            raise DaemonRejected(f"RPC {method}: malformed response", method=method)
        return body["result"]

    def _observe(self, method: str, result: Any, seq: Optional[int] = None) -> None:
        if self.chain_state is None or method != "getblockchaininfo":
            return
        if not isinstance(result, dict):
            return
        height = result.get("blocks")
        block_hash = result.get("bestblockhash")
        if height is None or not block_hash:
            return
        self.chain_state.observe(int(height), str(block_hash), seq=seq)

    def get_blockchain_info(self, *, max_attempts: Optional[int] = None) -> Dict[str, Any]:
        return self.call("getblockchaininfo", max_attempts=max_attempts)

    def get_best_block_hash(self) -> str:
        return str(self.call("getbestblockhash"))

    def get_block_count(self) -> int:
        return int(self.call("getblockcount"))

    def get_block_hash(self, height: int) -> str:
        return str(self.call("getblockhash", [int(height)]))

    def get_new_address(self) -> str:
        return str(self.call("getnewaddress"))

    def generate_to_address(self, count: int, address: str) -> List[str]:
        """Mine `count` blocks. Never retried: a repeat could mine twice."""
        result = self.call(
            "generatetoaddress",
            [int(count), str(address)],
            timeout=self.endpoint.production_timeout,
            max_attempts=1,
        )
        if not isinstance(result, list):
            raise DaemonRejected(f"generatetoaddress returned {type(result).__name__}, expected list")
        return [str(h) for h in result]

    def invalidate_block(self, block_hash: str) -> None:
        self.call(
            "invalidateblock",
            [str(block_hash)],
            timeout=self.endpoint.production_timeout,
            max_attempts=1,
        )

    def close(self) -> None:
        self._session.close()
