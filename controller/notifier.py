import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)

_STOP = object()


class EventNotifier:
    """
    Best-effort webhook delivery for mined blocks.

    notify() never blocks: events go onto a bounded queue and a single worker
    POSTs them in order. A full queue or an exhausted retry budget drops the
    event with a log line; the production caller never sees either.
    """

    def __init__(
        self,
        url: Optional[str],
        *,
        timeout: float = 5.0,
        max_attempts: int = 3,
        queue_size: int = 256,
        backoff_base: float = 0.5,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.url = (url or "").strip() or None
        self.timeout = max(0.1, float(timeout))
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = max(0.0, float(backoff_base))
        self._session = session or requests.Session()
        self._sleep = sleep
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max(1, int(queue_size)))

        self.lock = threading.Lock()
        self.delivered = 0
        self.failed_attempts = 0
        self.dropped = 0
        self.is_running = False
        self.worker_thread: Optional[threading.Thread] = None

    @property
    def enabled(self) -> bool:
        return self.url is not None

    def stats(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "enabled": self.enabled,
                "delivered": int(self.delivered),
                "failed_attempts": int(self.failed_attempts),
                "dropped": int(self.dropped),
                "queued": self._queue.qsize(),
            }

    def start(self):
        if not self.enabled:
            logger.info("Event notifier disabled (no notify_url configured).")
            return
        with self.lock:
            if self.is_running:
                return
            self.is_running = True
            self.worker_thread = threading.Thread(target=self._worker_loop, name="event-notifier", daemon=True)
            self.worker_thread.start()
        logger.info("Event notifier started, delivering to %s", self.url)

    def stop(self, timeout: Optional[float] = 5.0):
        with self.lock:
            if not self.is_running:
                return
            self.is_running = False
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning("Notifier queue full at shutdown; pending events will be lost")
        if self.worker_thread:
            self.worker_thread.join(timeout=timeout)
        logger.info("Event notifier stopped.")

    def notify(self, result) -> bool:
        """Queue a mined-block event. Returns False if it was not queued."""
        if not self.enabled:
            return False
        event = result.to_event() if hasattr(result, "to_event") else dict(result)
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            with self.lock:
                self.dropped += 1
            logger.warning(
                "Notifier queue full; dropping event for height=%s (%d blocks)",
                event.get("height"),
                len(event.get("block_hashes") or []),
            )
            return False
        return True

    def _worker_loop(self):
        while True:
            event = self._queue.get()
            if event is _STOP:
                return
            self.deliver(event)

    def deliver(self, event: Dict[str, Any]) -> bool:
        for attempt in range(self.max_attempts):
            try:
                response = self._session.post(self.url, json=event, timeout=self.timeout)
                response.raise_for_status()
            except requests.exceptions.RequestException as e:
                with self.lock:
                    self.failed_attempts += 1
                logger.warning(
                    "Notification for height=%s failed (attempt %d/%d): %s",
                    event.get("height"),
                    attempt + 1,
                    self.max_attempts,
                    e,
                )
                if attempt + 1 < self.max_attempts:
                    self._sleep(self.backoff_base * (2**attempt))
                continue
            with self.lock:
                self.delivered += 1
            logger.debug("Delivered notification for height=%s", event.get("height"))
            return True

        with self.lock:
            self.dropped += 1
        logger.error(
            "Dropping notification for height=%s after %d attempts", event.get("height"), self.max_attempts
        )
        return False

    def close(self) -> None:
        self._session.close()
