"""
auth/mailer.py -- Delivery of verification codes to the user's inbox.

Two senders share one call shape, send(to_email, verification_code, display_name):

  HttpMailer -- renders the Jinja2 HTML template and POSTs it to an HTTP mail
      API (Resend-compatible JSON body) with a bearer key. Every transport
      failure -- connection error, timeout, non-2xx status -- is raised as
      NotificationFailure. Nothing is swallowed: sign-up reports the failure
      and the user retries.

  LogMailer -- development only (DEBUG=true and no MAIL_API_KEY). Logs the
      verification link instead of sending it.

build_mailer() picks between them from Settings.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import requests
from jinja2 import Environment, FileSystemLoader, select_autoescape

from auth.errors import NotificationFailure
from core.config import Settings

logger = logging.getLogger("userapi.mailer")

_templates = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
    autoescape=select_autoescape(["html"]),
)


def verification_url(spa_url: str, code: str) -> str:
    return f"{spa_url.rstrip('/')}/verify/{code}"


def render_verification_email(display_name: str, url: str) -> str:
    return _templates.get_template("verification_email.html").render(
        display_name=display_name,
        verification_url=url,
    )


class Mailer(Protocol):
    def send(self, to_email: str, verification_code: str, display_name: str) -> None: ...


class HttpMailer:
    """Send verification emails through an HTTP mail API."""

    def __init__(self, settings: Settings, session: requests.Session | None = None) -> None:
        self._settings = settings
        # One session per mailer for connection pooling across requests.
        self._session = session or requests.Session()
        self._session.max_redirects = 3

    def send(self, to_email: str, verification_code: str, display_name: str) -> None:
        url = verification_url(self._settings.spa_url, verification_code)
        body = render_verification_email(display_name, url)
        try:
            resp = self._session.post(
                self._settings.mail_api_url,
                headers={"Authorization": f"Bearer {self._settings.mail_api_key}"},
                json={
                    "from": self._settings.mail_from,
                    "to": to_email,
                    "subject": self._settings.mail_subject,
                    "html": body,
                },
                timeout=self._settings.mail_timeout_seconds,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Verification email delivery failed: %s", exc)
            raise NotificationFailure() from exc

    def close(self) -> None:
        self._session.close()


class LogMailer:
    """Log the verification link instead of sending it. Development only."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def send(self, to_email: str, verification_code: str, display_name: str) -> None:
        logger.info(
            "DEV MAIL to %s (%s): %s",
            to_email,
            display_name,
            verification_url(self._settings.spa_url, verification_code),
        )

    def close(self) -> None:
        pass


def build_mailer(settings: Settings) -> HttpMailer | LogMailer:
    if settings.mail_api_key:
        return HttpMailer(settings)
    logger.warning("MAIL_API_KEY not set -- verification links will be logged, not sent")
    return LogMailer(settings)
