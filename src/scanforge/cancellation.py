import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from scanforge.errors import CancellationRequested
from scanforge.events import Broker, EventGateway
from scanforge.findings import empty_counts
from scanforge.logger import setup_logger
from scanforge.repo import cleanup_work_dir
from scanforge.sandbox import SandboxExecutor

logger = setup_logger(__name__)

CANCEL_CHANNEL = "scan-cancellation"


@dataclass
class ActiveScan:
    """
    Local registry entry for a scan this instance is executing.
    `try_finish` hands out the right to emit the single terminal scan:complete.
    """

    scan_id: str
    cancel_event: threading.Event = field(default_factory=threading.Event)
    work_dir: Optional[str] = None
    started: float = 0.0
    # findings persisted so far, reported if the scan is cancelled
    counts: Dict[str, int] = field(default_factory=empty_counts)
    _finished: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def finished(self) -> bool:
        with self._lock:
            return self._finished

    def try_finish(self) -> bool:
        with self._lock:
            if self._finished:
                return False
            self._finished = True
            return True


class CancellationCoordinator:
    """
    Listens on the cancellation channel and kills scans owned by this instance.
    Messages for scans owned elsewhere are ignored.
    """

    def __init__(
        self,
        broker: Broker,
        executor: SandboxExecutor,
        gateway: Optional[EventGateway] = None,
        channel: str = CANCEL_CHANNEL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.broker = broker
        self.executor = executor
        self.gateway = gateway
        self.channel = channel
        self.clock = clock
        self._lock = threading.Lock()
        self._active: Dict[str, ActiveScan] = {}
        self._subscription = None

    def start(self) -> None:
        if self._subscription is None:
            self._subscription = self.broker.subscribe(self.channel, self._on_message)
            logger.info(f"Listening for cancellations on {self.channel}")

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    # -- registry -------------------------------------------------------------

    def register(self, scan_id: str, work_dir: Optional[str] = None, cancel_event: Optional[threading.Event] = None) -> ActiveScan:
        active = ActiveScan(
            scan_id,
            cancel_event=cancel_event if cancel_event is not None else threading.Event(),
            work_dir=work_dir,
            started=self.clock(),
        )
        with self._lock:
            self._active[scan_id] = active
        return active

    def unregister(self, scan_id: str) -> None:
        with self._lock:
            self._active.pop(scan_id, None)

    def get(self, scan_id: str) -> Optional[ActiveScan]:
        with self._lock:
            return self._active.get(scan_id)

    def active_scans(self) -> List[str]:
        with self._lock:
            return list(self._active.keys())

    def is_cancelled(self, scan_id: str) -> bool:
        active = self.get(scan_id)
        return active is not None and active.cancelled

    def check(self, scan_id: str) -> None:
        """Phase-boundary checkpoint."""
        if self.is_cancelled(scan_id):
            raise CancellationRequested(scan_id)

    # -- signalling ---------------------------------------------------------------

    def request_cancel(self, scan_id: str) -> None:
        """Broadcasts a cancellation to every instance; the owner acts on it."""
        logger.info(f"Publishing cancellation for scan {scan_id}")
        self.broker.publish(self.channel, scan_id)

    def _on_message(self, message: str) -> None:
        scan_id = (message or "").strip()
        if scan_id:
            self.handle_cancel(scan_id)

    def handle_cancel(self, scan_id: str) -> bool:
        """
        Returns True when this instance owned the scan and acted on the request. A scan
        that already reached a terminal state is left alone.
        """
        active = self.get(scan_id)
        if active is None:
            logger.debug(f"Ignoring cancellation for scan {scan_id}: not owned by this instance")
            return False
        if active.finished:
            logger.info(f"Cancellation for scan {scan_id} arrived after completion; ignoring")
            return False

        logger.warning(f"Cancelling scan {scan_id}")
        active.cancel_event.set()
        killed = self.executor.kill_process(scan_id)
        if killed:
            logger.info(f"Killed running processes for scan {scan_id}")
        cleanup_work_dir(active.work_dir)

        if self.gateway is not None and active.try_finish():
            counts = dict(active.counts)
            elapsed = self.clock() - active.started
            self.gateway.scan_complete(scan_id, sum(counts.values()), counts, elapsed, "cancelled")
        return True
