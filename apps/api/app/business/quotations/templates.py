from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from html import escape


@dataclass(frozen=True, slots=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


def _layout(title: str, body: str, details: dict[str, str], portal_name: str) -> str:
    rows = "".join(
        f"<tr><td style=\"padding:4px 12px 4px 0;color:#555\">{escape(label)}</td>"
        f"<td style=\"padding:4px 0\"><strong>{escape(value)}</strong></td></tr>"
        for label, value in details.items()
    )
    return (
        "<!DOCTYPE html><html><body style=\"font-family:Arial,sans-serif;color:#222\">"
        f"<h2 style=\"color:#1b5e20\">{escape(title)}</h2>"
        f"{body}"
        f"<table style=\"margin-top:16px\">{rows}</table>"
        f"<p style=\"margin-top:24px;color:#888;font-size:12px\">{escape(portal_name)}</p>"
        "</body></html>"
    )


def _amount(amount: Decimal | None, currency: str | None) -> str:
    if amount is None:
        return "N/A"
    return f"{amount} {currency or ''}".strip()


def quotation_uploaded(
    *,
    title: str,
    amount: Decimal | None,
    currency: str | None,
    valid_until: datetime | None,
    uploader_name: str | None,
    portal_name: str,
) -> RenderedEmail:
    details = {
        "Title": title,
        "Amount": _amount(amount, currency),
        "Valid Until": valid_until.strftime("%Y-%m-%d") if valid_until else "N/A",
        "Uploaded By": uploader_name or "N/A",
    }
    html = _layout(
        "New Quotation Uploaded",
        "<p>A new quotation has been uploaded to the system.</p>",
        details,
        portal_name,
    )
    text = "A new quotation has been uploaded.\n" + "\n".join(f"{key}: {value}" for key, value in details.items())
    return RenderedEmail(subject=f"New Quotation: {title}", html=html, text=text)


def quotation_status_updated(
    *,
    title: str,
    old_status: str,
    new_status: str,
    changed_by: str | None,
    notes: str | None,
    portal_name: str,
) -> RenderedEmail:
    details = {
        "Title": title,
        "Previous Status": old_status,
        "New Status": new_status,
        "Changed By": changed_by or "N/A",
    }
    body = f"<p>The status of quotation <strong>{escape(title)}</strong> is now <strong>{escape(new_status)}</strong>.</p>"
    if notes:
        body += f"<p><strong>Notes:</strong><br>{escape(notes).replace(chr(10), '<br>')}</p>"
    html = _layout("Quotation Status Updated", body, details, portal_name)
    text = f"Quotation '{title}' changed from {old_status} to {new_status}."
    if notes:
        text += f"\n\nNotes:\n{notes}"
    return RenderedEmail(subject=f"Quotation {new_status}: {title}", html=html, text=text)


def quotation_deleted(*, title: str, status: str, portal_name: str) -> RenderedEmail:
    html = _layout(
        "Quotation Deleted",
        f"<p>The quotation <strong>{escape(title)}</strong> has been removed.</p>",
        {"Title": title, "Status": status},
        portal_name,
    )
    return RenderedEmail(
        subject=f"Quotation Deleted: {title}",
        html=html,
        text=f"The quotation '{title}' ({status}) has been removed.",
    )


def client_welcome(
    *,
    first_name: str | None,
    last_name: str | None,
    email: str,
    temporary_password: str,
    login_url: str,
    portal_name: str,
) -> RenderedEmail:
    name = " ".join(part for part in (first_name, last_name) if part) or email
    html = _layout(
        f"Welcome to {portal_name}",
        (
            f"<p>Hello {escape(name)},</p>"
            "<p>Your quotation has been accepted and a client portal account was created for you. "
            "Please sign in and change your password.</p>"
            f"<p><a href=\"{escape(login_url, quote=True)}\">{escape(login_url)}</a></p>"
        ),
        {"Email": email, "Temporary Password": temporary_password},
        portal_name,
    )
    text = (
        f"Hello {name},\n\n"
        f"Your {portal_name} account is ready.\n"
        f"Login: {login_url}\n"
        f"Email: {email}\n"
        f"Temporary password: {temporary_password}\n\n"
        "Please change your password after signing in."
    )
    return RenderedEmail(subject=f"Welcome to {portal_name} - Your Login Credentials", html=html, text=text)
