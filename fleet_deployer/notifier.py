import os

import aiohttp

from .logger import get_logger

WEBHOOK_ENV = "SLACK_WEBHOOK_URL"


class Notifier:
    """Notification sink that drops every message"""

    def valid_client(self):
        return False

    async def send_simple_message(self, message):
        return None


class SlackNotifier(Notifier):
    """Posts plain-text messages to a chat webhook.

    Delivery problems are logged and never raised: a broken webhook must not
    abort a deployment.
    """

    def __init__(self, webhook_url=None, slack_off=False, timeout_s=10.0):
        self.webhook_url = webhook_url if webhook_url is not None else os.environ.get(WEBHOOK_ENV, "")
        self.slack_off = slack_off
        self.timeout_s = timeout_s
        self.logger = get_logger("notifier")

    def valid_client(self):
        return bool(self.webhook_url) and not self.slack_off

    async def send_simple_message(self, message):
        if not self.valid_client():
            return None

        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_s)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.webhook_url, json={"text": message}) as response:
                    if response.status != 200:
                        self.logger.warning(f"Webhook notification failed with status {response.status}")
        except Exception as e:
            self.logger.error(f"Error sending notification: {e}")
        return None


class RecordingNotifier(Notifier):
    """Keeps messages in memory, used by simulated runs"""

    def __init__(self):
        self.messages = []

    def valid_client(self):
        return True

    async def send_simple_message(self, message):
        self.messages.append(message)


def build_notifier(slack_off=False, webhook_url=None):
    notifier = SlackNotifier(webhook_url=webhook_url, slack_off=slack_off)
    if not notifier.valid_client():
        get_logger("notifier").debug("chat notification is disabled")
        return Notifier()
    return notifier
