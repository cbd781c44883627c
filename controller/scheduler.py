import logging
import threading
from typing import Optional
from uuid import uuid4

from controller.chain_state import ChainState
from controller.errors import ControllerError
from controller.production import ProductionRequest, ProductionSerializer
from controller.readiness import ReadinessTracker

logger = logging.getLogger(__name__)


class BlockScheduler:
    """
    Timed block production.

    Once the daemon is ready the chain is first mined up to `bootstrap_height`
    (so regtest coinbases mature), then one block is mined every `block_time`
    seconds. All work goes through the ProductionSerializer like any caller.
    """

    def __init__(
        self,
        serializer: ProductionSerializer,
        tracker: ReadinessTracker,
        chain_state: ChainState,
        *,
        block_time: float = 0.0,
        bootstrap_height: int = 0,
        max_blocks_per_request: int = 1000,
        idle_interval: float = 1.0,
    ):
        self.serializer = serializer
        self.tracker = tracker
        self.chain_state = chain_state
        self.block_time = max(0.0, float(block_time))
        self.bootstrap_height = max(0, int(bootstrap_height))
        self.max_blocks_per_request = max(1, int(max_blocks_per_request))
        self.idle_interval = max(0.05, float(idle_interval))
        self.bootstrapped = self.bootstrap_height == 0

        self.lock = threading.Lock()
        self.is_running = False
        self.background_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def enabled(self) -> bool:
        return self.block_time > 0 or self.bootstrap_height > 0

    @property
    def interval(self) -> float:
        if not self.bootstrapped or self.block_time <= 0:
            return self.idle_interval
        return self.block_time

    def start(self):
        if not self.enabled:
            logger.info("Block scheduler disabled (block_time=0, bootstrap_height=0).")
            return
        with self.lock:
            if self.is_running:
                return
            self.is_running = True
            self._stop_event.clear()
            self.background_thread = threading.Thread(target=self._loop, name="block-scheduler", daemon=True)
            self.background_thread.start()
        logger.info(
            "Block scheduler started (block_time=%.1fs, bootstrap_height=%d).",
            self.block_time,
            self.bootstrap_height,
        )

    def stop(self):
        with self.lock:
            self.is_running = False
        self._stop_event.set()
        if self.background_thread:
            self.background_thread.join(timeout=5.0)
        logger.info("Block scheduler stopped.")

    def _loop(self):
        while self.is_running:
            if self._stop_event.wait(self.interval):
                return
            self.tick()

    def tick(self) -> int:
        """Run one scheduling step. Returns the number of blocks mined."""
        if not self.tracker.is_ready():
            return 0

        if not self.bootstrapped:
            tip = self.chain_state.tip
            if tip is None:
                return 0
            missing = self.bootstrap_height - tip.height
            if missing <= 0:
                self.bootstrapped = True
                logger.info("Chain already at height %d; bootstrap complete", tip.height)
                return 0
            count = min(missing, self.max_blocks_per_request)
            mined = self._produce(count, "bootstrap")
            if mined and mined >= missing:
                self.bootstrapped = True
                logger.info("Bootstrap to height %d complete", self.bootstrap_height)
            return mined

        if self.block_time > 0:
            return self._produce(1, "schedule")
        return 0

    def _produce(self, count: int, reason: str) -> int:
        request = ProductionRequest(count=count, correlation_id=f"scheduler-{reason}-{uuid4().hex[:8]}")
        try:
            result = self.serializer.submit(request)
        except ControllerError as e:
            logger.warning("Scheduled %s production of %d block(s) skipped: %s", reason, count, e)
            return 0
        return len(result.block_hashes)
