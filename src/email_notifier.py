"""
Email Notifier — Intervention Summaries
=========================================
Sends a short HTML email listing the critical actions the intervention
engine just took on the user's behalf (cancelled workouts, purchase
freezes, enforced bedtimes).  Uses SMTP with STARTTLS and an App Password.

Setup:
  1. Generate an App Password for "Mail" with your provider
  2. Set EMAIL_SENDER and EMAIL_APP_PASSWORD in .env
  3. Optionally set EMAIL_RECIPIENT as the fallback address for users
     without an email on file
"""

from __future__ import annotations

import html
import logging
import os
import smtplib
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

log = logging.getLogger("email_notifier")


# ═══════════════════════════════════════════════════════════════
#  Configuration
# ═══════════════════════════════════════════════════════════════

SMTP_SERVER = os.getenv("SMTP_SERVER", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SENDER_EMAIL = os.getenv("EMAIL_SENDER", "")
SENDER_PASSWORD = os.getenv("EMAIL_APP_PASSWORD", "")
RECIPIENT_EMAIL = os.getenv("EMAIL_RECIPIENT", SENDER_EMAIL)


# ═══════════════════════════════════════════════════════════════
#  HTML Template
# ═══════════════════════════════════════════════════════════════

HTML_TEMPLATE = """\
<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<style>
  .wrap {{ font-family: Helvetica, Arial, sans-serif; background: #f4f6f8; padding: 24px 12px; }}
  .card {{ max-width: 560px; margin: 0 auto; background: #ffffff; border: 1px solid #dde3e8; }}
  .banner {{ background: #b3261e; color: #ffffff; padding: 14px 20px; font-size: 18px; font-weight: bold; }}
  .body {{ padding: 8px 20px 16px; color: #1f2933; }}
  .action {{ border-bottom: 1px solid #eef1f4; padding: 10px 0; }}
  .action .title {{ font-size: 13px; letter-spacing: 0.5px; color: #b3261e; font-weight: bold; }}
  .action .detail {{ font-size: 14px; margin-top: 2px; }}
  .action .why {{ font-size: 12px; color: #6b7785; margin-top: 2px; }}
  .note {{ font-size: 11px; color: #8a96a3; padding: 12px 20px; background: #fafbfc; }}
</style>
</head>
<body>
<div class="wrap">
  <div class="card">
    <div class="banner">{title}</div>
    <div class="body">
      {actions_html}
    </div>
    <div class="note">
      Sent {generation_time}. These actions ran automatically from your
      recovery and correlation data.
    </div>
  </div>
</div>
</body>
</html>
"""


def _label(intervention_type: str) -> str:
    return intervention_type.replace("_", " ").upper()


def _actions_html(interventions: List[Dict[str, Any]]) -> str:
    parts = []
    for item in interventions:
        why = item.get("reason")
        why_html = f'<div class="why">{html.escape(why)}</div>' if why else ""
        parts.append(
            '<div class="action">'
            f'<div class="title">{html.escape(_label(item.get("type", "")))}</div>'
            f'<div class="detail">{html.escape(item.get("message") or "")}</div>'
            f"{why_html}</div>"
        )
    return "\n".join(parts)


def _plain_text(title: str, interventions: List[Dict[str, Any]]) -> str:
    lines = [title, ""]
    for item in interventions:
        lines.append(f"- {_label(item.get('type', ''))}: {item.get('message') or ''}")
    return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════
#  Main send function
# ═══════════════════════════════════════════════════════════════

def send_intervention_email(user_id: str, interventions: List[Dict[str, Any]],
                            recipient: Optional[str] = None) -> bool:
    """Send the critical-intervention summary for one user.

    Parameters
    ----------
    user_id : str
        User the actions were taken for (used in logs and the subject).
    interventions : list of dict
        Successful outcomes, each with ``type``, ``message`` and optionally
        ``reason``.
    recipient : str, optional
        Destination address.  Falls back to EMAIL_RECIPIENT.

    Returns
    -------
    bool
        True if the email was handed to the SMTP server, False otherwise.
        Never raises.
    """
    if not interventions:
        return False

    if not SENDER_PASSWORD:
        log.warning("EMAIL_APP_PASSWORD not set — skipping intervention email for %s.", user_id)
        return False

    if not SENDER_EMAIL:
        log.warning("No sender email configured — skipping intervention email.")
        return False

    to_addr = recipient or RECIPIENT_EMAIL
    if not to_addr:
        log.warning("No recipient for %s — skipping intervention email.", user_id)
        return False

    title = f"We took {len(interventions)} critical action(s) for you"
    html_body = HTML_TEMPLATE.format(
        title=html.escape(title),
        actions_html=_actions_html(interventions),
        generation_time=datetime.now().strftime("%Y-%m-%d %H:%M"),
    )

    msg = MIMEMultipart("alternative")
    msg["Subject"] = f"Automatic actions taken — {datetime.now().strftime('%b %d')}"
    msg["From"] = SENDER_EMAIL
    msg["To"] = to_addr
    msg.attach(MIMEText(_plain_text(title, interventions), "plain"))
    msg.attach(MIMEText(html_body, "html"))

    try:
        with smtplib.SMTP(SMTP_SERVER, SMTP_PORT, timeout=30) as server:
            server.ehlo()
            server.starttls()
            server.ehlo()
            server.login(SENDER_EMAIL, SENDER_PASSWORD)
            server.sendmail(SENDER_EMAIL, [to_addr], msg.as_string())

        log.info("📧 Intervention email for %s sent to %s", user_id, to_addr)
        return True

    except smtplib.SMTPAuthenticationError:
        log.error(
            "Email authentication failed. Make sure EMAIL_APP_PASSWORD is a "
            "valid App Password (not your regular password)."
        )
        return False
    except Exception as e:
        log.error("Failed to send intervention email for %s: %s", user_id, e)
        return False
