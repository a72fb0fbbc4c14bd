import os
import sys
import unittest
from unittest.mock import MagicMock

import requests

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from scanforge.errors import NotificationError
from scanforge.models import NotifyJob
from scanforge.notify import WebhookNotifier, build_summary


def notify_job(**overrides):
    data = dict(
        scan_id="scan-1",
        status="completed",
        severity_counts={"critical": 0, "high": 2, "medium": 1, "low": 0, "info": 3},
        duration=12.5,
        full_name="acme/app",
        commit_sha="abc123",
        pull_request_id="7",
    )
    data.update(overrides)
    return NotifyJob(**data)


class TestBuildSummary(unittest.TestCase):
    def test_summary(self):
        summary = build_summary(notify_job())
        self.assertEqual(summary["conclusion"], "failure")
        self.assertEqual(summary["total_findings"], 6)
        self.assertEqual(summary["repository"], "acme/app")
        self.assertEqual(summary["pull_request_id"], "7")
        self.assertIsNone(summary["check_run_id"])
        self.assertGreater(summary["risk_score"], 0)

    def test_conclusions(self):
        self.assertEqual(build_summary(notify_job(severity_counts={"medium": 1}))["conclusion"], "neutral")
        self.assertEqual(build_summary(notify_job(severity_counts={"low": 4}))["conclusion"], "success")


class TestWebhookNotifier(unittest.TestCase):
    def setUp(self):
        self.session = MagicMock()
        self.notifier = WebhookNotifier("https://hooks.example.com/scan", session=self.session, timeout=5)

    def test_posts_summary(self):
        self.session.post.return_value = MagicMock(status_code=204, text="")
        self.notifier.notify(notify_job())
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://hooks.example.com/scan")
        self.assertEqual(kwargs["json"]["scan_id"], "scan-1")
        self.assertEqual(kwargs["timeout"], 5)

    def test_job_destination_overrides_default(self):
        self.session.post.return_value = MagicMock(status_code=200, text="ok")
        self.notifier.notify(notify_job(destination="https://other.example.com/hook"))
        self.assertEqual(self.session.post.call_args.args[0], "https://other.example.com/hook")

    def test_no_destination_skips(self):
        WebhookNotifier(None, session=self.session).notify(notify_job())
        self.session.post.assert_not_called()

    def test_http_error_raises(self):
        self.session.post.return_value = MagicMock(status_code=502, text="bad gateway")
        with self.assertRaises(NotificationError):
            self.notifier.notify(notify_job())

    def test_transport_error_raises(self):
        self.session.post.side_effect = requests.Timeout("slow")
        with self.assertRaises(NotificationError):
            self.notifier.notify(notify_job())


if __name__ == '__main__':
    unittest.main()
