import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

logger = logging.getLogger(__name__)


def _now_s() -> float:
    return float(time.time())


class ReadinessState(str, enum.Enum):
    UNKNOWN = "unknown"
    UNREACHABLE = "unreachable"
    SYNCING = "syncing"
    READY = "ready"


@dataclass(frozen=True)
class ChainTip:
    height: int
    block_hash: str
    observed_at_s: float = field(default_factory=_now_s, compare=False)


RegressionListener = Callable[[ChainTip, ChainTip], None]


class ChainState:
    """
    Cached view of the daemon's tip.

    The daemon is authoritative; this is only ever as fresh as the last RPC
    response that carried tip data. A lower height is accepted only from a
    daemon read, and every such drop is reported to the regression listeners.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._tip: Optional[ChainTip] = None
        self._last_mined: List[str] = []
        self._listeners: List[RegressionListener] = []
        self.regressions = 0
        self.stale_reads = 0
        self._last_seq = 0

    @property
    def tip(self) -> Optional[ChainTip]:
        with self._lock:
            return self._tip

    @property
    def last_mined(self) -> List[str]:
        with self._lock:
            return list(self._last_mined)

    def add_regression_listener(self, listener: RegressionListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def observe(self, height: int, block_hash: str, seq: Optional[int] = None) -> bool:
        """
        Record a tip read from the daemon. Returns True if the height dropped.

        `seq` orders reads by when they were sent. A read sent before the one
        already applied is stale and is discarded.
        """
        new_tip = ChainTip(height=int(height), block_hash=str(block_hash))
        with self._lock:
            if seq is not None:
                if seq <= self._last_seq:
                    self.stale_reads += 1
                    return False
                self._last_seq = int(seq)
            previous = self._tip
            self._tip = new_tip
            regressed = previous is not None and new_tip.height < previous.height
            if regressed:
                self.regressions += 1
                self._last_mined = []
            listeners = list(self._listeners) if regressed else []

        if regressed:
            logger.warning(
                "Daemon tip dropped from %d (%s) to %d (%s)",
                previous.height,
                previous.block_hash[:16],
                new_tip.height,
                new_tip.block_hash[:16],
            )
            for listener in listeners:
                try:
                    listener(previous, new_tip)
                except Exception:
                    logger.exception("Regression listener failed")
        return regressed

    def record_production(self, block_hashes: Sequence[str]) -> Optional[ChainTip]:
        """
        Advance the cache by bookkeeping after a production call when no fresh
        read is available. Never lowers the cached height.
        """
        hashes = [str(h) for h in block_hashes]
        with self._lock:
            self._last_mined = hashes
            if not hashes or self._tip is None:
                return self._tip
            candidate = ChainTip(height=self._tip.height + len(hashes), block_hash=hashes[-1])
            if candidate.height > self._tip.height:
                self._tip = candidate
            return self._tip

    def set_last_mined(self, block_hashes: Sequence[str]) -> None:
        with self._lock:
            self._last_mined = [str(h) for h in block_hashes]
