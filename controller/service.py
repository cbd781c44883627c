import logging
from typing import Any, Dict, Optional

import requests

from controller.chain_state import ChainState
from controller.config import ControllerConfig
from controller.notifier import EventNotifier
from controller.production import KIND_RESET, ProductionRequest, ProductionResult, ProductionSerializer
from controller.readiness import ReadinessTracker
from controller.rpc_client import BitcoinRPCClient
from controller.scheduler import BlockScheduler

logger = logging.getLogger(__name__)


class ControllerService:
    """Builds every component from one config object and owns their lifecycle."""

    def __init__(
        self,
        config: ControllerConfig,
        *,
        rpc_session: Optional[requests.Session] = None,
        notify_session: Optional[requests.Session] = None,
    ):
        self.config = config
        self.chain_state = ChainState()
        self.rpc = BitcoinRPCClient(
            config.daemon,
            chain_state=self.chain_state,
            max_attempts=config.rpc_max_attempts,
            backoff_base=config.rpc_backoff_base,
            backoff_max=config.rpc_backoff_max,
            session=rpc_session,
        )
        self.tracker = ReadinessTracker(
            self.rpc,
            self.chain_state,
            config.poll_interval,
            min_ready_height=config.min_ready_height,
            max_header_lag=config.max_header_lag,
            respect_ibd=config.respect_ibd,
        )
        self.notifier = EventNotifier(
            config.notify_url,
            timeout=config.notify_timeout,
            max_attempts=config.notify_max_attempts,
            queue_size=config.notify_queue_size,
            session=notify_session,
        )
        self.serializer = ProductionSerializer(
            self.rpc,
            self.chain_state,
            self.tracker,
            queue_depth=config.queue_depth,
            miner_address=config.miner_address,
            notifier=self.notifier,
            result_timeout=config.result_timeout,
        )
        self.scheduler = BlockScheduler(
            self.serializer,
            self.tracker,
            self.chain_state,
            block_time=config.block_time,
            bootstrap_height=config.bootstrap_height,
            max_blocks_per_request=config.max_blocks_per_request,
        )
        self.started = False

    def start(self, *, poll_first: bool = True):
        if self.started:
            return
        logger.info("Starting controller for daemon %r", self.config.daemon)
        if poll_first:
            self.tracker.poll_once()
        self.notifier.start()
        self.serializer.start()
        self.tracker.start()
        self.scheduler.start()
        self.started = True

    def stop(self):
        if not self.started:
            return
        logger.info("Stopping controller")
        self.scheduler.stop()
        self.tracker.stop()
        self.serializer.stop(timeout=self.config.daemon.production_timeout)
        self.notifier.stop()
        self.rpc.close()
        self.notifier.close()
        self.started = False

    async def mine(self, count: int, correlation_id: Optional[str] = None) -> ProductionResult:
        request = ProductionRequest(count=int(count))
        if correlation_id:
            request.correlation_id = correlation_id
        return await self.serializer.submit_async(request)

    async def reset(self, correlation_id: Optional[str] = None) -> ProductionResult:
        request = ProductionRequest(count=0, kind=KIND_RESET)
        if correlation_id:
            request.correlation_id = correlation_id
        result = await self.serializer.submit_async(request)
        # A fresh chain needs its coinbases matured again.
        self.scheduler.bootstrapped = self.scheduler.bootstrap_height == 0
        return result

    def status(self) -> Dict[str, Any]:
        tip = self.chain_state.tip
        out = self.tracker.snapshot()
        out.update(
            {
                "height": tip.height if tip else None,
                "tip_hash": tip.block_hash if tip else None,
                "last_mined": self.chain_state.last_mined,
                "queue": {"depth": self.serializer.queue_depth, "pending": self.serializer.pending},
                "notifier": self.notifier.stats(),
            }
        )
        return out
