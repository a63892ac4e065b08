"""Email backend that delivers through the Resend HTTP API."""

import logging

import requests
from django.conf import settings
from django.core.mail.backends.base import BaseEmailBackend

logger = logging.getLogger(__name__)


class ResendEmailBackend(BaseEmailBackend):
    """Send ``EmailMessage``/``EmailMultiAlternatives`` via https://resend.com."""

    def __init__(self, api_key=None, api_url=None, timeout=10, fail_silently=False, **kwargs):
        super().__init__(fail_silently=fail_silently, **kwargs)
        self.api_key = api_key or settings.RESEND_API_KEY
        self.api_url = api_url or settings.RESEND_API_URL
        self.timeout = timeout

    def _payload(self, message) -> dict:
        payload = {
            'from': message.from_email or settings.DEFAULT_FROM_EMAIL,
            'to': list(message.to),
            'subject': message.subject,
            'text': message.body,
        }
        if message.cc:
            payload['cc'] = list(message.cc)
        if message.bcc:
            payload['bcc'] = list(message.bcc)
        if message.reply_to:
            payload['reply_to'] = list(message.reply_to)
        for content, mimetype in getattr(message, 'alternatives', None) or []:
            if mimetype == 'text/html':
                payload['html'] = content
        return payload

    def send_messages(self, email_messages):
        if not email_messages:
            return 0
        if not self.api_key:
            if self.fail_silently:
                return 0
            raise ValueError('RESEND_API_KEY is not set.')

        sent = 0
        for message in email_messages:
            if not message.recipients():
                continue
            try:
                resp = requests.post(
                    self.api_url,
                    json=self._payload(message),
                    headers={'Authorization': f'Bearer {self.api_key}'},
                    timeout=self.timeout,
                )
                resp.raise_for_status()
            except requests.RequestException:
                logger.exception("Resend rejected email %r to %s", message.subject, message.to)
                if not self.fail_silently:
                    raise
                continue
            sent += 1
        return sent
