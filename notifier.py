import logging
import requests
from config import NOTIFY_WEBHOOK_URL, NOTIFY_TIMEOUT

logger = logging.getLogger("Notifier")


class WebhookNotifier:
    """POSTs run summaries as JSON to a webhook. Delivery problems never fail a run."""

    def __init__(self, url=None, timeout=NOTIFY_TIMEOUT):
        self.url = url if url is not None else NOTIFY_WEBHOOK_URL
        self.timeout = timeout
        self.session = requests.Session()

    @property
    def enabled(self):
        return bool(self.url)

    def send(self, payload):
        if not self.enabled:
            return False
        try:
            resp = self.session.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"Webhook notification failed: {e}")
            return False
        logger.debug(f"Webhook notified ({resp.status_code})")
        return True

    def notify_summary(self, summary):
        return self.send({"event": "installation_completed", "summary": summary.to_dict()})

    def close(self):
        self.session.close()
