"""
Outbound senders used by the fan-out engine. Each raises
UpstreamChannelFailure when the provider refuses or is unreachable; the
engine logs that per recipient and moves on.
"""
import logging
import smtplib

from django.conf import settings
from django.core.mail import send_mail
from django.utils.html import strip_tags

from common.exceptions import UpstreamChannelFailure

logger = logging.getLogger(__name__)


class EmailSender:

    def send(self, to, subject, html):
        try:
            send_mail(
                subject=subject,
                message=strip_tags(html),
                from_email=settings.DEFAULT_FROM_EMAIL,
                recipient_list=[to],
                html_message=html,
                fail_silently=False,
            )
        except (smtplib.SMTPException, OSError) as exc:
            raise UpstreamChannelFailure(f'Email to {to} failed: {exc}') from exc
        logger.debug(f'Email "{subject}" sent to {to}')


class TwilioSmsSender:
    """
    SMS via Twilio.

    Settings:
    - TWILIO_ACCOUNT_SID: Twilio account SID
    - TWILIO_AUTH_TOKEN: Twilio auth token
    - TWILIO_PHONE_NUMBER: Twilio phone number to send from (E.164)
    """

    def __init__(self, account_sid=None, auth_token=None, from_number=None):
        self.account_sid = account_sid or settings.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token or settings.TWILIO_AUTH_TOKEN
        self.from_number = from_number or settings.TWILIO_PHONE_NUMBER
        self._client = None

    def is_configured(self):
        return bool(self.account_sid and self.auth_token and self.from_number)

    @property
    def client(self):
        if self._client is None:
            from twilio.rest import Client
            self._client = Client(self.account_sid, self.auth_token)
        return self._client

    def send(self, to, body):
        if not self.is_configured():
            raise UpstreamChannelFailure('Twilio is not configured.')
        from twilio.base.exceptions import TwilioException
        try:
            message = self.client.messages.create(to=to, from_=self.from_number, body=body)
        except TwilioException as exc:
            raise UpstreamChannelFailure(f'SMS to {to} failed: {exc}') from exc
        logger.debug(f'SMS {message.sid} sent to {to}')
        return message.sid
