import logging
from typing import Optional

import requests

from app.core.config import settings

logger = logging.getLogger("mlfor")

RESEND_URL = "https://api.resend.com/emails"

ORDER_PAID_HTML = """
<div style="font-family: 'Inter', sans-serif; max-width: 480px; margin: 40px auto; padding: 32px; background: #FDFDFD; color: #0A0A0A; border-radius: 16px; border: 1px solid #E5E5E5;">
  <p style="margin:0; font-size:14px; text-transform:uppercase; letter-spacing:1px;">Payment Confirmed</p>
  <h2 style="margin:16px 0; font-weight:600; font-size:24px;">{amount}</h2>
  <p style="margin:0; font-size:15px;">Hi {name}, we have received your payment and your order is now being processed.</p>

  <div style="margin:32px 0; padding:20px; background:#F5F5F5; border-radius:12px;">
    <table style="width:100%; font-size:14px;">
      <tr><td style="padding:4px 0;">Order</td><td style="text-align:right;">{order_id}</td></tr>
      <tr><td style="padding:4px 0;">Reference</td><td style="text-align:right;">{reference}</td></tr>
      <tr><td style="padding:4px 0;">Date</td><td style="text-align:right;">{date}</td></tr>
    </table>
  </div>

  <div style="text-align:center; margin:32px 0;">
    <a href="{order_link}" style="background:#0A0A0A; color:#FDFDFD; padding:14px 32px; border-radius:12px; text-decoration:none; font-weight:600; display:inline-block;">
      View Order
    </a>
  </div>
</div>
"""


def format_naira(amount_kobo: int) -> str:
    return f"₦{amount_kobo / 100:,.2f}"


def send_email(to: str, subject: str, html: str, sender: Optional[str] = None) -> bool:
    """
    The base sender for all order emails.
    Connects to Resend API. Returns False instead of raising so callers decide on retries.
    """
    if not settings.RESEND_API_KEY:
        logger.error("RESEND_API_KEY not found in settings")
        return False

    headers = {
        "Authorization": f"Bearer {settings.RESEND_API_KEY}",
        "Content-Type": "application/json",
    }
    payload = {
        "from": sender or settings.EMAIL_SENDER,
        "to": [to],
        "subject": subject,
        "html": html,
    }

    try:
        response = requests.post(RESEND_URL, json=payload, headers=headers, timeout=10)
        response.raise_for_status()
        logger.info(f"Email sent successfully to {to} | Subject: {subject}")
        return True
    except requests.RequestException as e:
        logger.error(f"Failed to send email to {to}: {e}")
        return False
