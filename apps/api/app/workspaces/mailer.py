from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import httpx

from app.core.config import get_settings
from app.metrics import observe_mail_failure
from app.otel import start_span


logger = logging.getLogger("app.mail")

ROLE_LABELS = {"admin": "Administrador", "member": "Membro", "owner": "Owner"}


class MailDeliveryError(Exception):
    pass


@dataclass
class InviteEmail:
    to: str
    workspace_name: str
    inviter_name: str
    role: str
    accept_url: str
    expires_at: datetime


@dataclass
class MailResult:
    sent: bool
    warning: str | None = None


class MailTransport(Protocol):
    def send(self, message: dict[str, Any]) -> None: ...


class ResendTransport:
    def __init__(self, api_key: str, api_url: str, timeout: float = 10.0) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.timeout = timeout

    def send(self, message: dict[str, Any]) -> None:
        try:
            response = httpx.post(
                self.api_url,
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                json=message,
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            raise MailDeliveryError(f"mail API request failed: {exc}") from exc
        if response.status_code >= 400:
            raise MailDeliveryError(f"mail API error {response.status_code}: {response.text[:300]}")


def render_invite(email: InviteEmail) -> tuple[str, str, str]:
    role_label = ROLE_LABELS.get(email.role, email.role)
    subject = f"Convite para {email.workspace_name}"
    text = (
        "Você foi convidado!\n\n"
        f"{email.inviter_name} convidou você para se juntar ao workspace {email.workspace_name} como {role_label}.\n\n"
        f"Aceite o convite acessando: {email.accept_url}\n\n"
        "Este convite expira em 7 dias. Se você não solicitou este convite, pode ignorar este email."
    )
    body = (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"><title>Convite para Workspace</title></head><body>"
        "<h1>Você foi convidado!</h1>"
        f"<p><strong>{html.escape(email.inviter_name)}</strong> convidou você para se juntar ao workspace "
        f"<strong>{html.escape(email.workspace_name)}</strong> como <strong>{html.escape(role_label)}</strong>.</p>"
        f"<p><a href=\"{html.escape(email.accept_url, quote=True)}\">Aceitar Convite</a></p>"
        f"<p>Ou copie e cole este link no seu navegador:<br>{html.escape(email.accept_url)}</p>"
        "<p>Este convite expira em 7 dias. Se você não solicitou este convite, pode ignorar este email.</p>"
        "</body></html>"
    )
    return subject, text, body


class InviteMailer:
    def __init__(self, transport: MailTransport | None = None) -> None:
        self._transport = transport

    def _resolve_transport(self) -> MailTransport | None:
        if self._transport is not None:
            return self._transport
        settings = get_settings()
        if not settings.resend_api_key:
            return None
        return ResendTransport(api_key=settings.resend_api_key, api_url=settings.mail_api_url)

    def send_invite(self, email: InviteEmail) -> MailResult:
        transport = self._resolve_transport()
        if transport is None:
            logger.info("mail.invite_skipped", extra={"recipient": email.to, "status": "not_configured"})
            return MailResult(sent=False, warning="email delivery is not configured; share the invite link manually")

        subject, text, body = render_invite(email)
        message = {
            "from": get_settings().mail_from,
            "to": [email.to],
            "subject": subject,
            "html": body,
            "text": text,
        }
        with start_span("app.mail", "mail.send_invite") as span:
            try:
                transport.send(message)
            except MailDeliveryError as exc:
                span.set_attribute("mail.sent", False)
                observe_mail_failure("delivery_error")
                logger.warning("mail.invite_failed", extra={"recipient": email.to, "error": str(exc)})
                return MailResult(sent=False, warning="invite created but the email could not be sent")
            span.set_attribute("mail.sent", True)

        logger.info("mail.invite_sent", extra={"recipient": email.to, "status": "sent"})
        return MailResult(sent=True)


_mailer = InviteMailer()


def get_invite_mailer() -> InviteMailer:
    return _mailer


def set_invite_mailer(mailer: InviteMailer | None) -> None:
    global _mailer
    _mailer = mailer or InviteMailer()
