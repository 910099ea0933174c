"""
Email bodies for issued codes.

Each template function returns (subject, html_body). Inline CSS only.
"""

from __future__ import annotations

from html import escape

ACCENT = "#A50064"
TEXT = "#1F2328"
MUTED = "#57606A"


def _layout(content: str) -> str:
    return f"""\
<!DOCTYPE html>
<html>
<body style="margin: 0; padding: 24px; font-family: Arial, sans-serif; color: {TEXT};">
  <table role="presentation" width="100%" style="max-width: 600px; margin: 0 auto;">
    <tr><td>{content}</td></tr>
    <tr><td style="padding-top: 24px; font-size: 12px; color: {MUTED};">MyShop</td></tr>
  </table>
</body>
</html>"""


def _code_block(code: str) -> str:
    return (
        f'<p style="font-size: 22px; font-weight: 700; letter-spacing: 2px; color: {ACCENT};">'
        f"{escape(code)}</p>"
    )


def trial_code_email(name_company: str | None, code: str, expiry_date: str, expiry_days: int) -> tuple[str, str]:
    subject = "Your trial code"
    html = _layout(
        f"<h2>Hello {escape(name_company or '')},</h2>"
        f"<p>Here is your trial code, valid for {expiry_days} days:</p>"
        f"{_code_block(code)}"
        f"<p>Expires on: {escape(expiry_date)}</p>"
    )
    return subject, html


def premium_code_email(
    name_company: str | None,
    code: str,
    order_id: str,
    amount: str | None,
    transaction_date: str,
) -> tuple[str, str]:
    subject = f"Your premium code (order {order_id})"
    html = _layout(
        f"<h2>Thank you {escape(name_company or '')}!</h2>"
        "<p>Your payment was received. Your premium code never expires:</p>"
        f"{_code_block(code)}"
        f"<p>Order: {escape(order_id)}<br>Amount: {escape(str(amount or ''))} VND<br>"
        f"Date: {escape(transaction_date)}</p>"
    )
    return subject, html
