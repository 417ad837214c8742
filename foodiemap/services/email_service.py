import html
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx

from foodiemap.core.config import settings
from foodiemap.models.verification_code import CodePurpose

logger = logging.getLogger(__name__)


@dataclass
class CodeNotification:
    identity_key: str
    code: str
    purpose: CodePurpose
    expires_at: datetime
    display_name: Optional[str] = None


class NotificationDispatcher:
    """Out-of-band delivery of issued codes. dispatch() must not block."""

    def dispatch(self, notification: CodeNotification) -> None:
        raise NotImplementedError

    def shutdown(self) -> None:
        pass


_SUBJECTS = {
    CodePurpose.EMAIL_VERIFICATION: "[FoodieMap] Email verification code",
    CodePurpose.OPERATOR_2FA: "[FoodieMap] Admin sign-in code",
}

_INTROS = {
    CodePurpose.EMAIL_VERIFICATION: "Use the code below to verify your e-mail address.",
    CodePurpose.OPERATOR_2FA: "Use the code below to finish signing in to the admin console.",
}


class EmailDispatcher(NotificationDispatcher):
    """Sends codes through the transactional e-mail HTTP API."""

    def __init__(
        self,
        service_url: str = None,
        api_key: str = None,
        timeout: float = None,
        skip_in_dev: bool = None,
        max_workers: int = None,
        transport: httpx.BaseTransport = None,
    ):
        self.service_url = service_url or settings.EMAIL_SERVICE_URL
        self.api_key = api_key if api_key is not None else settings.EMAIL_API_KEY
        self.timeout = timeout or settings.EMAIL_TIMEOUT_SECONDS
        self.skip_in_dev = settings.SKIP_EMAIL_IN_DEV if skip_in_dev is None else skip_in_dev
        self._transport = transport
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.EMAIL_DISPATCH_WORKERS,
            thread_name_prefix="email-dispatch",
        )

    def dispatch(self, notification: CodeNotification) -> None:
        # Development mode: skip the mail API and just log
        if self.skip_in_dev:
            logger.warning(
                f"⚠️  DEV MODE: Skipping e-mail. {notification.purpose.value} code "
                f"for {notification.identity_key}: {notification.code}"
            )
            return

        future = self._executor.submit(self.send_code, notification)
        future.add_done_callback(
            lambda f: self._report(f, notification.identity_key, notification.purpose)
        )

    def send_code(self, notification: CodeNotification) -> None:
        """Blocking delivery; raises on transport or HTTP errors."""
        payload = self.build_message(notification)
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            response = client.post(self.service_url, json=payload, headers=headers)
            response.raise_for_status()

        logger.info(f"{notification.purpose.value} code sent to {notification.identity_key}")

    def build_message(self, notification: CodeNotification) -> dict:
        name = notification.display_name or "there"
        minutes = settings.CODE_TTL_MINUTES
        intro = _INTROS[notification.purpose]
        text = (
            f"Hi {name},\n\n"
            f"{intro}\n\n"
            f"Code: {notification.code}\n"
            f"It expires in {minutes} minutes.\n\n"
            f"If you didn't request this code, you can safely ignore this e-mail.\n\n"
            f"- FoodieMap"
        )
        html_body = (
            f"<p>Hi {html.escape(name)},</p>"
            f"<p>{intro}</p>"
            f'<p style="font-size:28px;font-weight:700;letter-spacing:6px">{notification.code}</p>'
            f"<p>It expires in {minutes} minutes.</p>"
            f"<p>If you didn't request this code, you can safely ignore this e-mail.</p>"
        )
        return {
            "from": {"email": settings.EMAIL_FROM, "name": settings.EMAIL_FROM_NAME},
            "to": [{"email": notification.identity_key, "name": notification.display_name}],
            "subject": _SUBJECTS[notification.purpose],
            "text": text,
            "html": html_body,
        }

    @staticmethod
    def _report(future: Future, identity_key: str, purpose: CodePurpose) -> None:
        error = future.exception()
        if error is None:
            return
        if isinstance(error, httpx.TimeoutException):
            logger.error(f"Timeout sending {purpose.value} code to {identity_key}")
        else:
            logger.error(f"Failed to send {purpose.value} code to {identity_key}: {error}")

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
