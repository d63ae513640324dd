"""Completion email sent once a user's data has been deleted.

The email goes out over SMTP via aiosmtplib as a multipart message (plain
text and HTML). Unlike fire-and-forget notifications, a delivery failure is
raised: the deletion saga escalates it like any other failed step.
"""

from __future__ import annotations

import email.mime.multipart
import email.mime.text
import email.utils
import html
from typing import Any

import aiosmtplib
import structlog

from erasure.config import Settings, get_settings

log = structlog.get_logger(__name__)

USER_DATA_DELETE_SUBJECT = "Eliminazione del tuo profilo su IO"
USER_DATA_DELETE_TEXT = (
    "Ciao, come da te richiesto abbiamo eseguito la tua richiesta di cancellazione.\n"
    "Potrai iscriverti nuovamente all’App IO in ogni momento effettuando una nuova "
    "procedura di registrazione. Grazie per aver utilizzato IO"
)


class EmailDeliveryError(Exception):
    """The SMTP server did not accept the message."""


def render_html(text: str) -> str:
    paragraphs = (html.escape(line) for line in text.splitlines() if line.strip())
    return "".join(f"<p>{paragraph}</p>" for paragraph in paragraphs)


class NotificationSender:
    """Sends the user data deletion confirmation email.

    Instantiate with explicit SMTP parameters (useful for testing), or call
    ``NotificationSender.from_settings()`` to read them from the app config.
    When no SMTP host is configured the email is skipped and logged.
    """

    def __init__(
        self,
        smtp_host: str | None = None,
        smtp_port: int = 587,
        smtp_user: str | None = None,
        smtp_password: str | None = None,
        mail_from: str = "no-reply@io.italia.it",
        smtp_use_tls: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.mail_from = mail_from
        self.smtp_use_tls = smtp_use_tls

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> NotificationSender:
        cfg = settings or get_settings()
        return cls(
            smtp_host=cfg.smtp_host,
            smtp_port=cfg.smtp_port,
            smtp_user=cfg.smtp_user,
            smtp_password=(
                cfg.smtp_password.get_secret_value() if cfg.smtp_password else None
            ),
            mail_from=cfg.mail_from,
            smtp_use_tls=cfg.smtp_use_tls,
        )

    def build_message(self, to_address: str) -> email.mime.multipart.MIMEMultipart:
        message = email.mime.multipart.MIMEMultipart("alternative")
        message["From"] = self.mail_from
        message["To"] = to_address
        message["Subject"] = USER_DATA_DELETE_SUBJECT
        message["Date"] = email.utils.formatdate(localtime=False)
        message["Message-ID"] = email.utils.make_msgid()
        message.attach(email.mime.text.MIMEText(USER_DATA_DELETE_TEXT, "plain", "utf-8"))
        message.attach(
            email.mime.text.MIMEText(render_html(USER_DATA_DELETE_TEXT), "html", "utf-8")
        )
        return message

    async def send_user_data_delete_email(self, to_address: str) -> bool:
        """Send the confirmation email.

        Returns:
            ``True`` when sent, ``False`` when SMTP is not configured.

        Raises:
            EmailDeliveryError: the SMTP exchange failed
        """
        if not self.smtp_host:
            log.warning("notification.email_skipped", reason="smtp_not_configured")
            return False

        smtp_kwargs: dict[str, Any] = {
            "hostname": self.smtp_host,
            "port": self.smtp_port,
            "use_tls": self.smtp_use_tls,
        }
        if self.smtp_user:
            smtp_kwargs["username"] = self.smtp_user
        if self.smtp_password:
            smtp_kwargs["password"] = self.smtp_password

        try:
            await aiosmtplib.send(self.build_message(to_address), **smtp_kwargs)
        except aiosmtplib.SMTPException as exc:
            log.error("notification.email_smtp_error", to_address=to_address, error=str(exc))
            raise EmailDeliveryError(f"Error while sending email: {exc}") from exc

        log.info("notification.email_sent", to_address=to_address, smtp_host=self.smtp_host)
        return True
