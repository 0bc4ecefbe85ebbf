from __future__ import annotations

import logging

from core.settings import get_settings

logger = logging.getLogger("salarysync.mail")


def send(to: str, subject: str, body: str) -> None:
    """Hand an outbound message to the mail log; delivery is up to the log shipper."""
    logger.info("mail to=%s subject=%s\n%s", to, subject, body, extra={"event": "mail_queued"})


def link(path: str, token: str) -> str:
    return f"{get_settings().app_base_url}{path}?token={token}"


def send_verification(to: str, token: str) -> None:
    send(to, "Confirm your e-mail address", f"Confirm your address: {link('/verify-email', token)}")


def send_password_reset(to: str, token: str) -> None:
    send(to, "Reset your password", f"Choose a new password within one hour: {link('/reset-password', token)}")


def send_invitation(to: str, company_name: str, token: str) -> None:
    send(
        to,
        f"You were added to {company_name}",
        f"Set your password to get started: {link('/reset-password', token)}",
    )
