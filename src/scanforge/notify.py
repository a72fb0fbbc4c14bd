from typing import Any, Dict, Optional

import requests

from scanforge.errors import NotificationError
from scanforge.findings import notification_conclusion, risk_score
from scanforge.logger import setup_logger
from scanforge.models import NotifyJob

logger = setup_logger(__name__)


def build_summary(job: NotifyJob) -> Dict[str, Any]:
    counts = dict(job.severity_counts or {})
    return {
        "scan_id": job.scan_id,
        "status": job.status,
        "conclusion": notification_conclusion(counts),
        "severity_counts": counts,
        "total_findings": sum(int(v) for v in counts.values()),
        "duration": job.duration,
        "risk_score": risk_score(counts),
        "repository": job.full_name or None,
        "commit_sha": job.commit_sha or None,
        "pull_request_id": job.pull_request_id,
        "check_run_id": job.check_run_id,
    }


class Notifier:
    """Posts a completed scan's summary to an external system."""

    def notify(self, job: NotifyJob) -> None:
        raise NotImplementedError


class WebhookNotifier(Notifier):
    def __init__(self, url: Optional[str] = None, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.url = url
        self.session = session or requests.Session()
        self.timeout = timeout

    def notify(self, job: NotifyJob) -> None:
        url = job.destination or self.url
        if not url:
            logger.info(f"No notification destination for scan {job.scan_id}; skipping")
            return
        payload = build_summary(job)
        try:
            resp = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise NotificationError(f"Webhook delivery for scan {job.scan_id} failed: {e}") from e
        if not 200 <= resp.status_code < 300:
            raise NotificationError(f"Webhook for scan {job.scan_id} returned HTTP {resp.status_code}: {resp.text[:200]}")
        logger.info(f"Notified {url} for scan {job.scan_id} ({payload['conclusion']})")
