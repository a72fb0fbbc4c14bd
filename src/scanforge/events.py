"""
Real-time scan telemetry.

Every emit is published on a shared broker channel; every gateway instance listens on
that channel and hands messages to the sinks subscribed locally for that scan. An
observer attached to one instance therefore sees events produced on any other.
Findings are buffered per scan and flushed on a fixed interval.
"""

import json
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Union

import redis

from scanforge.logger import setup_logger
from scanforge.models import NormalizedFinding, ScanObserver

logger = setup_logger(__name__)

EVENT_CHANNEL = "scan-events"
DEFAULT_BATCH_INTERVAL = 0.3
SNAPSHOT_GRACE_SECONDS = 60.0

SCANNER_START = "scanner:start"
SCANNER_PROGRESS = "scanner:progress"
SCANNER_LOG = "scanner:log"
SCANNER_FINDING = "scanner:finding"
SCANNER_FINDINGS_BATCH = "scanner:findings:batch"
SCANNER_COMPLETE = "scanner:complete"
TEMPLATE_STATUS = "template:status"
SCAN_PHASE = "scan:phase"
SCAN_URLS = "scan:urls"
SCAN_TECHNOLOGY = "scan:technology"
SCAN_COMPLETE = "scan:complete"

MessageHandler = Callable[[str], None]


# -- brokers --------------------------------------------------------------


class Subscription:
    def __init__(self, close: Callable[[], None]):
        self._close = close
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._close()


class Broker:
    """Broadcast transport: publish(channel, message) reaches every subscribe(channel, ...)."""

    def publish(self, channel: str, message: str) -> None:
        raise NotImplementedError

    def subscribe(self, channel: str, handler: MessageHandler) -> Subscription:
        raise NotImplementedError

    def close(self) -> None:
        pass


def _call_handler(handler: MessageHandler, message: str, channel: str) -> None:
    try:
        handler(message)
    except Exception as e:
        logger.warning(f"Handler for {channel} raised: {e}")


class InMemoryBroker(Broker):
    """Single-process broker; delivery is synchronous on the publishing thread."""

    def __init__(self):
        self._lock = threading.Lock()
        self._handlers: Dict[str, List[MessageHandler]] = {}

    def publish(self, channel: str, message: str) -> None:
        with self._lock:
            handlers = list(self._handlers.get(channel, []))
        for handler in handlers:
            _call_handler(handler, message, channel)

    def subscribe(self, channel: str, handler: MessageHandler) -> Subscription:
        with self._lock:
            self._handlers.setdefault(channel, []).append(handler)

        def remove() -> None:
            with self._lock:
                handlers = self._handlers.get(channel, [])
                if handler in handlers:
                    handlers.remove(handler)

        return Subscription(remove)


class RedisBroker(Broker):
    """
    redis-py pub/sub. Each subscription owns a PubSub object and a daemon listener thread.
    """

    def __init__(self, url: Optional[str] = None, client: Optional[redis.Redis] = None, poll_timeout: float = 1.0):
        self.client = client if client is not None else redis.Redis.from_url(url or "redis://localhost:6379/0", decode_responses=True)
        self.poll_timeout = poll_timeout
        self._subscriptions: List[Subscription] = []

    def publish(self, channel: str, message: str) -> None:
        try:
            self.client.publish(channel, message)
        except redis.RedisError as e:
            logger.warning(f"Redis publish to {channel} failed: {e}")

    def subscribe(self, channel: str, handler: MessageHandler) -> Subscription:
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(channel)
        stop = threading.Event()

        def listen() -> None:
            while not stop.is_set():
                try:
                    message = pubsub.get_message(timeout=self.poll_timeout)
                except redis.RedisError as e:
                    logger.warning(f"Redis subscription to {channel} failed: {e}")
                    stop.wait(self.poll_timeout)
                    continue
                if not message or message.get("type") != "message":
                    continue
                data = message.get("data")
                if isinstance(data, bytes):
                    data = data.decode("utf-8", errors="replace")
                _call_handler(handler, data, channel)

        thread = threading.Thread(target=listen, name=f"redis-sub-{channel}", daemon=True)
        thread.start()
        logger.info(f"Subscribed to redis channel {channel}")

        def close() -> None:
            stop.set()
            thread.join(timeout=self.poll_timeout + 1)
            try:
                pubsub.close()
            except redis.RedisError as e:
                logger.debug(f"Closing pubsub for {channel} failed: {e}")

        subscription = Subscription(close)
        self._subscriptions.append(subscription)
        return subscription

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions = []
        self.client.close()


# -- observers --------------------------------------------------------------


class EventSink:
    """A live observer connection (the presentation layer in production)."""

    def send(self, scan_id: str, event: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


@dataclass
class ScannerState:
    scanner: str
    status: str = "running"
    label: Optional[str] = None
    phase: str = "single"
    findings_count: int = 0


@dataclass
class ScanSnapshot:
    scanners: Dict[str, ScannerState] = field(default_factory=dict)
    completed_at: Optional[float] = None


def _millis(seconds: float) -> int:
    return int(round((seconds or 0) * 1000))


class EventGateway:
    def __init__(
        self,
        broker: Optional[Broker] = None,
        batch_interval: float = DEFAULT_BATCH_INTERVAL,
        channel: str = EVENT_CHANNEL,
        snapshot_grace: float = SNAPSHOT_GRACE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.broker = broker if broker is not None else InMemoryBroker()
        self.batch_interval = batch_interval
        self.channel = channel
        self.snapshot_grace = snapshot_grace
        self.clock = clock
        self._lock = threading.RLock()
        self._sinks: Dict[str, Set[EventSink]] = {}
        self._snapshots: Dict[str, ScanSnapshot] = {}
        self._buffer: Dict[str, List[Dict[str, Any]]] = {}
        self._stop = threading.Event()
        self._timer: Optional[threading.Thread] = None
        self._subscription = self.broker.subscribe(self.channel, self._on_message)

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        """Starts the periodic finding flush."""
        if self._timer is not None:
            return
        self._stop.clear()
        self._timer = threading.Thread(target=self._flush_loop, name="event-flush", daemon=True)
        self._timer.start()
        logger.info(f"Finding batch timer started ({self.batch_interval * 1000:.0f}ms)")

    def _flush_loop(self) -> None:
        while not self._stop.wait(self.batch_interval):
            self.flush()
            self._expire_snapshots()

    def close(self) -> None:
        self._stop.set()
        if self._timer is not None:
            self._timer.join(timeout=self.batch_interval + 1)
            self._timer = None
        self.flush()
        self._subscription.close()

    # -- subscriptions --------------------------------------------------------

    def subscribe(self, scan_id: str, sink: EventSink) -> Dict[str, Any]:
        """
        Attaches a sink to one scan and replays the current scanner snapshot to it
        (starts for running scanners, start + complete for finished ones).
        """
        with self._lock:
            self._sinks.setdefault(scan_id, set()).add(sink)
            snapshot = self._snapshots.get(scan_id)
            states = list(snapshot.scanners.values()) if snapshot else []
        logger.info(f"Observer subscribed to scan {scan_id} ({len(states)} scanners in snapshot)")
        for state in states:
            self._send(sink, scan_id, SCANNER_START, {"scanner": state.scanner, "label": state.label, "phase": state.phase})
            if state.status != "running":
                self._send(
                    sink,
                    scan_id,
                    SCANNER_COMPLETE,
                    {"scanner": state.scanner, "label": state.label, "findingsCount": state.findings_count, "duration": 0, "status": state.status},
                )
        return {"success": True, "room": f"scan:{scan_id}"}

    def unsubscribe(self, scan_id: str, sink: EventSink) -> Dict[str, Any]:
        with self._lock:
            sinks = self._sinks.get(scan_id)
            if sinks is not None:
                sinks.discard(sink)
                if not sinks:
                    del self._sinks[scan_id]
        return {"success": True}

    def has_subscribers(self, scan_id: str) -> bool:
        return self.subscriber_count(scan_id) > 0

    def subscriber_count(self, scan_id: str) -> int:
        with self._lock:
            return len(self._sinks.get(scan_id, ()))

    def snapshot(self, scan_id: str) -> List[ScannerState]:
        with self._lock:
            snapshot = self._snapshots.get(scan_id)
            return list(snapshot.scanners.values()) if snapshot else []

    def forget(self, scan_id: str) -> None:
        """Drops the scanner snapshot and any unflushed findings for a scan."""
        with self._lock:
            self._snapshots.pop(scan_id, None)
            self._buffer.pop(scan_id, None)

    def _expire_snapshots(self) -> None:
        now = self.clock()
        with self._lock:
            expired = [
                scan_id
                for scan_id, snap in self._snapshots.items()
                if snap.completed_at is not None and now - snap.completed_at >= self.snapshot_grace
            ]
        for scan_id in expired:
            self.forget(scan_id)

    # -- transport ------------------------------------------------------------

    def _send(self, sink: EventSink, scan_id: str, event: str, payload: Dict[str, Any]) -> None:
        try:
            sink.send(scan_id, event, payload)
        except Exception as e:
            logger.warning(f"Event sink failed for {event} on scan {scan_id}: {e}")

    def emit(self, scan_id: str, event: str, payload: Dict[str, Any]) -> None:
        message = json.dumps({"scan_id": scan_id, "event": event, "payload": payload}, default=str)
        self.broker.publish(self.channel, message)

    def _on_message(self, message: str) -> None:
        try:
            data = json.loads(message)
            scan_id = str(data["scan_id"])
            event = str(data["event"])
            payload = data.get("payload") or {}
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Dropping malformed event message: {e}")
            return
        self._track(scan_id, event, payload)
        with self._lock:
            sinks = list(self._sinks.get(scan_id, ()))
        for sink in sinks:
            self._send(sink, scan_id, event, payload)

    def _track(self, scan_id: str, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            if event == SCANNER_START:
                snap = self._snapshots.setdefault(scan_id, ScanSnapshot())
                name = payload.get("scanner")
                snap.scanners[name] = ScannerState(name, "running", payload.get("label"), payload.get("phase") or "single")
            elif event == SCANNER_COMPLETE:
                snap = self._snapshots.get(scan_id)
                state = snap.scanners.get(payload.get("scanner")) if snap else None
                if state is not None:
                    state.status = payload.get("status") or "completed"
                    state.findings_count = int(payload.get("findingsCount") or 0)
            elif event == SCAN_COMPLETE:
                snap = self._snapshots.get(scan_id)
                if snap is not None:
                    snap.completed_at = self.clock()

    # -- findings batching ------------------------------------------------------

    def flush(self, scan_id: Optional[str] = None) -> None:
        with self._lock:
            if scan_id is None:
                pending = {k: v for k, v in self._buffer.items() if v}
                self._buffer = {}
            else:
                items = self._buffer.pop(scan_id, [])
                pending = {scan_id: items} if items else {}
        for sid, findings in pending.items():
            if len(findings) > 1:
                self.emit(sid, SCANNER_FINDINGS_BATCH, {"findings": findings})
                logger.debug(f"[{sid}] Flushed {len(findings)} findings as batch")
            else:
                self.emit(sid, SCANNER_FINDING, findings[0])

    # -- typed events -------------------------------------------------------------

    def scanner_start(self, scan_id: str, scanner: str, label: Optional[str] = None, phase: str = "single") -> None:
        self.emit(scan_id, SCANNER_START, {"scanner": scanner, "label": label, "phase": phase})
        logger.info(f"[{scan_id}] Scanner {scanner} started ({phase})")

    def scanner_progress(
        self,
        scan_id: str,
        scanner: str,
        percent: float,
        phase: Optional[str] = None,
        current: Optional[int] = None,
        total: Optional[int] = None,
    ) -> None:
        payload: Dict[str, Any] = {"scanner": scanner, "percent": percent}
        if phase is not None:
            payload["phase"] = phase
        if current is not None:
            payload["current"] = current
        if total is not None:
            payload["total"] = total
        self.emit(scan_id, SCANNER_PROGRESS, payload)

    def scanner_log(self, scan_id: str, scanner: str, line: str, stream: str = "stdout") -> None:
        self.emit(
            scan_id,
            SCANNER_LOG,
            {"scanner": scanner, "line": line, "stream": stream, "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())},
        )

    def scanner_finding(self, scan_id: str, scanner: str, finding: Union[NormalizedFinding, Dict[str, Any]], label: Optional[str] = None) -> None:
        """Buffered; delivered by the next flush."""
        summary = finding.summary() if isinstance(finding, NormalizedFinding) else dict(finding)
        with self._lock:
            self._buffer.setdefault(scan_id, []).append({"scanner": scanner, "label": label, "finding": summary})

    def scanner_complete(
        self,
        scan_id: str,
        scanner: str,
        findings_count: int,
        duration: float,
        status: str,
        label: Optional[str] = None,
        exit_code: Optional[int] = None,
        error: Optional[str] = None,
        **extra: Any,
    ) -> None:
        self.flush(scan_id)
        payload: Dict[str, Any] = {
            "scanner": scanner,
            "label": label,
            "findingsCount": findings_count,
            "duration": _millis(duration),
            "status": status,
        }
        if exit_code is not None:
            payload["exitCode"] = exit_code
        if error:
            payload["error"] = error
        payload.update({k: v for k, v in extra.items() if v is not None})
        self.emit(scan_id, SCANNER_COMPLETE, payload)
        logger.info(f"[{scan_id}] Scanner {scanner} {status}: {findings_count} findings")

    def template_status(self, scan_id: str, scanner: str, template_id: str, status: str) -> None:
        self.emit(scan_id, TEMPLATE_STATUS, {"scanner": scanner, "templateId": template_id, "status": status})

    def scan_phase(self, scan_id: str, phase: str, percent: Optional[float] = None, detected_technologies: Optional[List[str]] = None) -> None:
        payload: Dict[str, Any] = {"phase": phase}
        if percent is not None:
            payload["percent"] = percent
        if detected_technologies is not None:
            payload["detectedTechnologies"] = list(detected_technologies)
        self.emit(scan_id, SCAN_PHASE, payload)
        logger.info(f"[{scan_id}] Scan phase: {phase}" + (f" ({percent}%)" if percent is not None else ""))

    def scan_urls(self, scan_id: str, urls: List[str], js_files: Optional[List[str]] = None, params_count: Optional[int] = None) -> None:
        payload: Dict[str, Any] = {"urls": list(urls), "total": len(urls)}
        if js_files is not None:
            payload["jsFiles"] = list(js_files)
        if params_count is not None:
            payload["paramsCount"] = params_count
        self.emit(scan_id, SCAN_URLS, payload)
        logger.info(f"[{scan_id}] URLs discovered: {len(urls)}")

    def technology(self, scan_id: str, technology: str) -> None:
        self.emit(scan_id, SCAN_TECHNOLOGY, {"technology": technology})
        logger.info(f"[{scan_id}] Technology detected: {technology}")

    def scan_complete(
        self,
        scan_id: str,
        total_findings: int,
        severity_breakdown: Dict[str, int],
        duration: float,
        status: str,
        **extra: Any,
    ) -> None:
        self.flush(scan_id)
        payload: Dict[str, Any] = {
            "totalFindings": total_findings,
            "severityBreakdown": dict(severity_breakdown),
            "duration": _millis(duration),
            "status": status,
        }
        payload.update({k: v for k, v in extra.items() if v is not None})
        self.emit(scan_id, SCAN_COMPLETE, payload)
        logger.info(f"[{scan_id}] Scan {status}: {total_findings} total findings")

    def observer_for(self, scan_id: str, scanner: str, label: Optional[str] = None) -> "GatewayObserver":
        return GatewayObserver(self, scan_id, scanner, label)


class GatewayObserver(ScanObserver):
    """Bridges one adapter's live callbacks onto gateway events."""

    def __init__(self, gateway: EventGateway, scan_id: str, scanner: str, label: Optional[str] = None):
        self.gateway = gateway
        self.scan_id = scan_id
        self.scanner = scanner
        self.label = label
        self.emitted: Set[str] = set()

    def on_log(self, line: str, stream: str) -> None:
        self.gateway.scanner_log(self.scan_id, self.scanner, line, stream)

    def on_progress(self, percent, phase=None, current=None, total=None) -> None:
        self.gateway.scanner_progress(self.scan_id, self.scanner, percent, phase, current, total)

    def on_finding(self, finding: NormalizedFinding) -> None:
        if finding.fingerprint in self.emitted:
            return
        self.emitted.add(finding.fingerprint)
        self.gateway.scanner_finding(self.scan_id, self.scanner, finding, self.label)

    def on_template(self, template_id: str, status: str) -> None:
        self.gateway.template_status(self.scan_id, self.scanner, template_id, status)
