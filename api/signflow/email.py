import logging
import os
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from html import escape

from .config import APP_BASE_URL
from .notifier import Contact, DeliveryResult
from .utils import signing_link

logger = logging.getLogger(__name__)

SMTP_HOST = os.getenv("EMAIL_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("EMAIL_PORT", "587"))
SMTP_USER = os.getenv("EMAIL_USER")
SMTP_PASSWORD = os.getenv("EMAIL_PASSWORD")
DEFAULT_SENDER = os.getenv("EMAIL_SENDER", SMTP_USER or "noreply@example.com")
DEFAULT_SENDER_NAME = os.getenv("EMAIL_SENDER_NAME", "Signflow")

def format_sender_name(requester_name: str | None = None) -> str:
    base_label = (DEFAULT_SENDER_NAME or "Signflow").strip() or "Signflow"
    if requester_name:
        plain = requester_name.strip()
        if plain:
            return f"{plain} via {base_label}"
    return base_label

def send_email(
    to: str,
    subject: str,
    body: str,
    html_body: str | None = None,
    sender_name: str | None = None,
    reply_to: str | None = None,
):
    display_name = (sender_name or DEFAULT_SENDER_NAME).strip()
    from_value = formataddr((display_name, DEFAULT_SENDER)) if display_name else DEFAULT_SENDER
    if SMTP_USER and SMTP_PASSWORD:
        msg = EmailMessage()
        msg["From"] = from_value
        if reply_to:
            msg["Reply-To"] = reply_to
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body or "")
        if html_body:
            msg.add_alternative(html_body, subtype="html")
        with smtplib.SMTP(SMTP_HOST, SMTP_PORT) as smtp:
            smtp.starttls()
            smtp.login(SMTP_USER, SMTP_PASSWORD)
            smtp.send_message(msg)
    else:
        logger.info("EMAIL (stub) from=%s to=%s subject=%s\n%s", from_value, to, subject, body)


def _subject(template: str, title: str) -> str:
    return {
        "invite": f"Signature Requested: {title}",
        "reminder": f"Reminder: {title} is waiting for your signature",
        "verification_code": f"Your verification code for {title}",
        "completed": f"Completed: {title}",
        "declined": f"Declined: {title}",
        "expired": f"Expired: {title}",
        "cancelled": f"Cancelled: {title}",
    }[template]


def render(template: str, contact: Contact, payload: dict) -> tuple[str, str, str]:
    """Return (subject, text body, html body) for one outbound message."""
    title = payload.get("title") or "Document"
    requester = (payload.get("requester_name") or "").strip() or "Your contact"
    lines = [f"Hi {contact.name},", ""]
    link = None
    if template in ("invite", "reminder"):
        link = signing_link(payload["signer_id"], payload["request_id"], payload.get("base_url") or APP_BASE_URL)
        if template == "invite":
            lines.append(f"{requester} sent you “{title}” to review and sign.")
            if payload.get("message"):
                lines += ["", payload["message"]]
        else:
            lines.append(f"“{title}” is still waiting for your signature.")
        if payload.get("due_at"):
            lines.append(f"Please sign before {payload['due_at']}.")
        lines += ["", f"Open document: {link}"]
    elif template == "verification_code":
        lines.append(f"Your verification code is {payload['code']}.")
        lines.append(f"It expires at {payload['expires_at']}.")
    elif template == "completed":
        lines.append(f"All parties have finished signing “{title}”.")
        lines.append(f"Final SHA256: {payload.get('artifact_hash')}")
        lines.append(f"Verification token: {payload.get('lookup_token')}")
    elif template == "declined":
        lines.append(f"“{title}” was declined and will not be completed.")
        if payload.get("reason"):
            lines.append(f"Reason: {payload['reason']}")
    elif template == "expired":
        lines.append(f"“{title}” expired before every party signed.")
    elif template == "cancelled":
        lines.append(f"{requester} cancelled the signature request for “{title}”.")
    text_body = "\n".join(lines) + "\n"
    paragraphs = "".join(
        f'<p style="font-size: 14px; color: #1e293b; line-height: 1.5;">{escape(line)}</p>'
        for line in lines if line and not line.startswith("Open document:")
    )
    button = ""
    if link:
        link_html = escape(link)
        button = f"""
      <div style="margin: 24px 0;">
        <a href="{link_html}" style="display: inline-block; background: #2563eb; color: #fff; padding: 12px 24px; border-radius: 999px; text-decoration: none; font-weight: 600;">
          Review &amp; Sign
        </a>
      </div>"""
    html_body = f"""
<html>
  <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; background: #f5f6f8; padding: 24px;">
    <div style="max-width: 520px; margin: 0 auto; background: #ffffff; border-radius: 12px; padding: 24px;">
      {paragraphs}{button}
    </div>
  </body>
</html>
"""
    return _subject(template, title), text_body, html_body


class EmailNotifier:
    """Default Notifier Gateway: renders the template and sends it over SMTP."""

    def send(self, contact: Contact, template: str, payload: dict) -> DeliveryResult:
        subject, text_body, html_body = render(template, contact, payload)
        try:
            send_email(
                contact.email,
                subject,
                text_body,
                html_body=html_body,
                sender_name=format_sender_name(payload.get("requester_name")),
                reply_to=payload.get("requester_email"),
            )
        except (smtplib.SMTPException, OSError) as exc:
            return DeliveryResult(ok=False, detail=str(exc))
        return DeliveryResult(ok=True, detail="sent")
