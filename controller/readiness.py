import logging
import threading
import time
from typing import Any, Dict, Optional

from controller.chain_state import ChainState, ChainTip, ReadinessState
from controller.errors import DaemonRejected, DaemonWarmingUp, NotReady, TransportError
from controller.rpc_client import BitcoinRPCClient

logger = logging.getLogger(__name__)


class ReadinessTracker:
    """
    Polls the daemon on a fixed interval and derives a ReadinessState.

    Every poll recomputes the state from scratch. A tip drop seen by any other
    RPC traffic flips the state to SYNCING immediately; the next poll decides
    again.
    """

    def __init__(
        self,
        rpc: BitcoinRPCClient,
        chain_state: ChainState,
        interval: float,
        *,
        min_ready_height: int = 0,
        max_header_lag: int = 0,
        respect_ibd: bool = False,
    ):
        self.rpc = rpc
        self.chain_state = chain_state
        self.interval = max(0.05, float(interval))
        self.min_ready_height = max(0, int(min_ready_height))
        self.max_header_lag = max(0, int(max_header_lag))
        self.respect_ibd = bool(respect_ibd)

        self.lock = threading.Lock()
        self._state = ReadinessState.UNKNOWN
        self.last_poll_at: Optional[float] = None
        self.last_error: Optional[str] = None
        self.consecutive_failures = 0
        self._regressed_during_poll = False
        # Headers at or below this height belong to a chain dropped by a reset.
        self._discarded_headers_height: Optional[int] = None

        self.is_running = False
        self.background_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        chain_state.add_regression_listener(self._on_regression)

    @property
    def state(self) -> ReadinessState:
        with self.lock:
            return self._state

    def is_ready(self) -> bool:
        return self.state is ReadinessState.READY

    def require_ready(self) -> None:
        state = self.state
        if state is not ReadinessState.READY:
            raise NotReady(state)

    def snapshot(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "readiness": self._state.value,
                "last_poll_at": self.last_poll_at,
                "last_error": self.last_error,
                "consecutive_failures": int(self.consecutive_failures),
            }

    def start(self):
        """Starts the background polling thread."""
        with self.lock:
            if self.is_running:
                logger.info("Readiness tracker is already running.")
                return
            self.is_running = True
            self._stop_event.clear()
            self.background_thread = threading.Thread(
                target=self._poll_loop, name="readiness-tracker", daemon=True
            )
            self.background_thread.start()
            logger.info("Readiness tracker started (interval=%.2fs).", self.interval)

    def stop(self):
        """Stops the background polling thread."""
        with self.lock:
            self.is_running = False
        self._stop_event.set()
        if self.background_thread:
            self.background_thread.join(timeout=max(5.0, self.interval * 2))
        logger.info("Readiness tracker stopped.")

    def _poll_loop(self):
        while self.is_running:
            self.poll_once()
            self._stop_event.wait(self.interval)

    def poll_once(self) -> ReadinessState:
        """Poll the daemon once and recompute the readiness state."""
        with self.lock:
            self._regressed_during_poll = False

        error: Optional[str] = None
        try:
            info = self.rpc.get_blockchain_info(max_attempts=1)
        except DaemonWarmingUp as e:
            new_state, error = ReadinessState.SYNCING, str(e)
        except TransportError as e:
            new_state, error = ReadinessState.UNREACHABLE, str(e)
        except DaemonRejected as e:
            new_state, error = ReadinessState.UNREACHABLE, str(e)
        else:
            new_state = self._classify(info)

        with self.lock:
            if new_state is ReadinessState.READY and self._regressed_during_poll:
                new_state = ReadinessState.SYNCING
            previous = self._state
            self._state = new_state
            self.last_poll_at = time.time()
            self.last_error = error
            if error is None:
                self.consecutive_failures = 0
            else:
                self.consecutive_failures += 1
            failures = self.consecutive_failures

        if previous is not new_state:
            logger.info("Daemon readiness %s -> %s", previous.value, new_state.value)
        if error is not None:
            logger.warning("Readiness poll failed (%dx): %s", failures, error)
        return new_state

    def _classify(self, info: Dict[str, Any]) -> ReadinessState:
        try:
            blocks = int(info.get("blocks", 0))
            headers = int(info.get("headers", blocks))
        except (TypeError, ValueError):
            logger.warning("Unexpected getblockchaininfo payload: %r", info)
            return ReadinessState.SYNCING

        with self.lock:
            discarded = self._discarded_headers_height
            if discarded is not None and blocks >= discarded:
                self._discarded_headers_height = discarded = None
        if discarded is not None and headers <= discarded:
            headers = blocks

        if self.respect_ibd and info.get("initialblockdownload"):
            return ReadinessState.SYNCING
        if headers - blocks > self.max_header_lag:
            return ReadinessState.SYNCING
        if blocks < self.min_ready_height:
            return ReadinessState.SYNCING
        return ReadinessState.READY

    def note_reset(self, previous_height: int) -> None:
        """
        The chain was rewound on purpose. The daemon may keep reporting the
        invalidated headers, so they do not count as header lag until the new
        chain grows past `previous_height`.
        """
        with self.lock:
            self._discarded_headers_height = max(0, int(previous_height))
        logger.info("Ignoring headers up to height %d left over from a reset", previous_height)

    def _on_regression(self, previous: ChainTip, current: ChainTip) -> None:
        with self.lock:
            self._regressed_during_poll = True
            if self._state is not ReadinessState.SYNCING:
                logger.info(
                    "Daemon readiness %s -> syncing (tip dropped %d -> %d)",
                    self._state.value,
                    previous.height,
                    current.height,
                )
            self._state = ReadinessState.SYNCING
