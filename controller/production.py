from __future__ import annotations

import asyncio
import logging
import queue
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import uuid4

from controller.chain_state import ChainState, ChainTip
from controller.errors import (
    ControllerError,
    DaemonRejected,
    ExecutionFailed,
    QueueRejected,
    TransportError,
)
from controller.readiness import ReadinessTracker
from controller.rpc_client import BitcoinRPCClient

logger = logging.getLogger(__name__)

KIND_MINE = "mine"
KIND_RESET = "reset"


def _now_s() -> float:
    return float(time.time())


@dataclass
class ProductionRequest:
    count: int = 1
    correlation_id: str = field(default_factory=lambda: str(uuid4()))
    kind: str = KIND_MINE
    submitted_at_s: float = field(default_factory=_now_s)


@dataclass
class ProductionResult:
    correlation_id: str
    kind: str
    block_hashes: List[str]
    height: Optional[int]
    tip_hash: Optional[str]
    submitted_at_s: float
    completed_at_s: float = field(default_factory=_now_s)

    def to_event(self) -> Dict[str, Any]:
        return {
            "height": self.height,
            "block_hashes": list(self.block_hashes),
            "tip_hash": self.tip_hash,
            "correlation_id": self.correlation_id,
            "timestamp": self.completed_at_s,
        }


_STOP = object()


class ProductionSerializer:
    """
    Single-flight gate for every RPC call that changes the chain.

    Requests are accepted into a FIFO queue while fewer than `queue_depth` are
    outstanding (queued or executing) and are executed one at a time by a
    single worker thread. Production calls are never retried; an ambiguous
    failure is reported as such and the tip is re-read from the daemon.
    """

    def __init__(
        self,
        rpc: BitcoinRPCClient,
        chain_state: ChainState,
        tracker: ReadinessTracker,
        *,
        queue_depth: int,
        miner_address: Optional[str] = None,
        notifier=None,
        result_timeout: float = 300.0,
    ):
        self.rpc = rpc
        self.chain_state = chain_state
        self.tracker = tracker
        self.queue_depth = max(1, int(queue_depth))
        self.notifier = notifier
        self.result_timeout = max(0.1, float(result_timeout))
        self._miner_address = miner_address

        self.lock = threading.Lock()
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._outstanding = 0
        self.is_running = False
        self.worker_thread: Optional[threading.Thread] = None

    @property
    def pending(self) -> int:
        with self.lock:
            return int(self._outstanding)

    def start(self):
        with self.lock:
            if self.is_running:
                logger.info("Production serializer is already running.")
                return
            self.is_running = True
            self.worker_thread = threading.Thread(
                target=self._worker_loop, name="production-worker", daemon=True
            )
            self.worker_thread.start()
            logger.info("Production serializer started (queue_depth=%d).", self.queue_depth)

    def stop(self, timeout: Optional[float] = None):
        """Stop accepting work, let the in-flight request finish, fail the rest."""
        with self.lock:
            if not self.is_running:
                return
            self.is_running = False
        self._drain("controller shutting down")
        self._queue.put(_STOP)
        if self.worker_thread:
            self.worker_thread.join(timeout=timeout)
        logger.info("Production serializer stopped.")

    def enqueue(self, request: ProductionRequest) -> Future:
        """Accept a request or raise NotReady/QueueRejected without blocking."""
        if request.kind not in (KIND_MINE, KIND_RESET):
            raise ValueError(f"unknown production kind {request.kind!r}")
        self.tracker.require_ready()

        future: Future = Future()
        with self.lock:
            if not self.is_running:
                raise ExecutionFailed(
                    "production serializer is not running",
                    classification=ExecutionFailed.TRANSPORT,
                )
            if self._outstanding >= self.queue_depth:
                logger.warning(
                    "Rejecting %s request %s: %d outstanding",
                    request.kind,
                    request.correlation_id,
                    self._outstanding,
                )
                raise QueueRejected(self.queue_depth)
            self._outstanding += 1
            self._queue.put((request, future))
        logger.debug("Accepted %s request %s (count=%d)", request.kind, request.correlation_id, request.count)
        return future

    def submit(self, request: ProductionRequest, timeout: Optional[float] = None) -> ProductionResult:
        """Enqueue and wait. Giving up on the wait does not cancel the daemon call."""
        future = self.enqueue(request)
        wait_s = self.result_timeout if timeout is None else float(timeout)
        try:
            return future.result(timeout=wait_s)
        except FutureTimeoutError:
            raise self._abandoned(wait_s) from None

    async def submit_async(self, request: ProductionRequest, timeout: Optional[float] = None) -> ProductionResult:
        """submit() for event-loop callers: the wait holds no thread."""
        future = self.enqueue(request)
        wait_s = self.result_timeout if timeout is None else float(timeout)
        try:
            # shield: a timed-out wait must not cancel a request still in the queue
            return await asyncio.wait_for(asyncio.shield(asyncio.wrap_future(future)), timeout=wait_s)
        except asyncio.TimeoutError:
            raise self._abandoned(wait_s) from None

    @staticmethod
    def _abandoned(wait_s: float) -> ExecutionFailed:
        return ExecutionFailed(
            f"no result after {wait_s:.1f}s; the request may still complete, re-query height",
            classification=ExecutionFailed.AMBIGUOUS,
        )

    def _drain(self, reason: str) -> None:
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            if item is _STOP:
                continue
            _request, future = item
            future.set_exception(ExecutionFailed(reason, classification=ExecutionFailed.TRANSPORT))
            with self.lock:
                self._outstanding -= 1

    def _worker_loop(self):
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            request, future = item
            try:
                if not future.set_running_or_notify_cancel():
                    continue
                try:
                    result = self._execute(request)
                except ControllerError as e:
                    logger.warning("%s request %s failed: %s", request.kind, request.correlation_id, e)
                    future.set_exception(e)
                except Exception as e:
                    logger.exception("%s request %s crashed", request.kind, request.correlation_id)
                    self._refresh_tip()
                    future.set_exception(
                        ExecutionFailed(str(e), classification=ExecutionFailed.AMBIGUOUS, cause=e)
                    )
                else:
                    future.set_result(result)
            finally:
                with self.lock:
                    self._outstanding -= 1

    def _execute(self, request: ProductionRequest) -> ProductionResult:
        self.tracker.require_ready()
        if request.kind == KIND_RESET:
            return self._execute_reset(request)
        return self._execute_mine(request)

    def _mining_address(self) -> str:
        if self._miner_address:
            return self._miner_address
        try:
            address = self.rpc.get_new_address()
        except (TransportError, DaemonRejected) as e:
            classification = (
                ExecutionFailed.REJECTED if isinstance(e, DaemonRejected) else ExecutionFailed.TRANSPORT
            )
            raise ExecutionFailed(
                f"could not obtain a mining address: {e}", classification=classification, cause=e
            ) from e
        logger.info("Using wallet address %s for mined coinbase outputs", address)
        self._miner_address = address
        return address

    def _execute_mine(self, request: ProductionRequest) -> ProductionResult:
        address = self._mining_address()
        started = time.perf_counter()
        try:
            hashes = self.rpc.generate_to_address(request.count, address)
        except (TransportError, DaemonRejected) as e:
            self._refresh_tip()
            raise ExecutionFailed.from_error(e) from e

        tip = self._refresh_tip()
        if tip is None:
            tip = self.chain_state.record_production(hashes)
        else:
            self.chain_state.set_last_mined(hashes)

        result = ProductionResult(
            correlation_id=request.correlation_id,
            kind=request.kind,
            block_hashes=hashes,
            height=tip.height if tip else None,
            tip_hash=tip.block_hash if tip else (hashes[-1] if hashes else None),
            submitted_at_s=request.submitted_at_s,
        )
        logger.info(
            "Mined %d block(s) for %s in %.1fms; height=%s tip=%s",
            len(hashes),
            request.correlation_id,
            (time.perf_counter() - started) * 1000.0,
            result.height,
            (result.tip_hash or "")[:16],
        )
        if self.notifier is not None and hashes:
            self.notifier.notify(result)
        return result

    def _execute_reset(self, request: ProductionRequest) -> ProductionResult:
        tip = self._refresh_tip()
        if tip is None or tip.height > 0:
            try:
                previous_height = tip.height if tip else self.rpc.get_block_count()
                first_block = self.rpc.get_block_hash(1)
                self.rpc.invalidate_block(first_block)
            except (TransportError, DaemonRejected) as e:
                self._refresh_tip()
                raise ExecutionFailed.from_error(e) from e
            self.tracker.note_reset(previous_height)
            tip = self._refresh_tip()
            logger.info("Chain reset requested by %s; height=%s", request.correlation_id, tip.height if tip else None)
        self.chain_state.set_last_mined([])
        return ProductionResult(
            correlation_id=request.correlation_id,
            kind=request.kind,
            block_hashes=[],
            height=tip.height if tip else None,
            tip_hash=tip.block_hash if tip else None,
            submitted_at_s=request.submitted_at_s,
        )

    def _refresh_tip(self) -> Optional[ChainTip]:
        try:
            self.rpc.get_blockchain_info()
        except ControllerError as e:
            logger.warning("Could not refresh tip from daemon: %s", e)
            return None
        return self.chain_state.tip
