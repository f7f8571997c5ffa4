import logging
import smtplib
from email.message import EmailMessage
from flask import current_app, render_template

logger = logging.getLogger(__name__)

# Subject line per template, formatted with the render context
EMAIL_SUBJECTS = {
    "welcome": "Welcome to {campus_name}",
    "password_reset": "Reset your password",
    "notification": "{title}",
    "settlement_processed": "Settlement {batch_id} processed for {campus_name}",
    "security_alert": "[{severity}] Payment security alert: {event_type}",
}


class _SafeDict(dict):
    def __missing__(self, key):
        return ""


def render_email(template: str, **context):
    """Render the text and html bodies of an email template.

    Returns (subject, text_body, html_body).
    """
    if template not in EMAIL_SUBJECTS:
        raise ValueError(f"Unknown email template: {template}")
    subject = EMAIL_SUBJECTS[template].format_map(_SafeDict(context))
    text_body = render_template(f"email/{template}.txt", **context)
    html_body = render_template(f"email/{template}.html", **context)
    return subject, text_body, html_body


def _mail_settings():
    cfg = current_app.config
    user = cfg.get("MAIL_USER")
    return {
        "host": cfg.get("MAIL_HOST"),
        "port": int(cfg.get("MAIL_PORT", 587)),
        "user": user,
        "password": cfg.get("MAIL_PASSWORD"),
        "sender": cfg.get("MAIL_FROM") or user or "noreply@example.com",
        "use_tls": bool(cfg.get("MAIL_USE_TLS", True)),
        "use_ssl": bool(cfg.get("MAIL_USE_SSL", False)),
    }


def _build_message(subject, sender, to_address, text_body, html_body=None):
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to_address
    msg.set_content(text_body)
    if html_body:
        msg.add_alternative(html_body, subtype="html")
    return msg


def _deliver(settings, msg):
    if settings["use_ssl"]:
        server = smtplib.SMTP_SSL(settings["host"], settings["port"])
    else:
        server = smtplib.SMTP(settings["host"], settings["port"])
    with server:
        if settings["use_tls"] and not settings["use_ssl"]:
            server.starttls()
        if settings["user"] and settings["password"]:
            server.login(settings["user"], settings["password"])
        server.send_message(msg)


def send_email(subject: str, to_address: str, text_body: str, html_body: str = None) -> bool:
    """Send one message through the SMTP server in the MAIL_* config.

    Returns False without raising when no MAIL_HOST is set or delivery fails.
    """
    settings = _mail_settings()
    if not settings["host"]:
        logger.warning("MAIL_HOST not configured; email to %s not sent", to_address)
        return False
    msg = _build_message(subject, settings["sender"], to_address, text_body, html_body)
    try:
        _deliver(settings, msg)
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Failed to send email to %s: %s", to_address, e)
        return False
    logger.info("email %r sent to %s", subject, to_address)
    return True


def send_templated_email(template: str, to_address: str, **context) -> bool:
    if not to_address:
        return False
    subject, text_body, html_body = render_email(template, **context)
    return send_email(subject, to_address, text_body, html_body)
