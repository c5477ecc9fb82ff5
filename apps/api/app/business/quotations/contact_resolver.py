"""Best-effort client identity from a lead's contact data.

A lead may carry contact details in two places: the structured contact it links
to, and the free-text columns filled in on the lead form. Each field is resolved
on its own, preferring the structured contact, so a contact without a phone
still picks up the phone typed on the lead.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class ResolvedContact:
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None

    @property
    def has_full_name(self) -> bool:
        return bool(self.first_name) and bool(self.last_name)


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def split_contact_name(raw: str | None) -> tuple[str | None, str | None]:
    """Split free text into (first, rest). A single word fills both slots."""

    text = _clean(raw)
    if text is None:
        return None, None
    parts = text.split()
    if len(parts) == 1:
        return parts[0], parts[0]
    return parts[0], " ".join(parts[1:])


def resolve_contact_info(lead: Any) -> ResolvedContact:
    if lead is None:
        return ResolvedContact()

    contact = getattr(lead, "contact", None)

    email = _clean(getattr(contact, "email", None)) or _clean(getattr(lead, "contact_email", None))
    phone = _clean(getattr(contact, "phone", None)) or _clean(getattr(lead, "contact_phone", None))
    first_name = _clean(getattr(contact, "first_name", None))
    last_name = _clean(getattr(contact, "last_name", None))

    if first_name is None or last_name is None:
        parsed_first, parsed_last = split_contact_name(getattr(lead, "contact_name", None))
        first_name = first_name or parsed_first
        last_name = last_name or parsed_last

    if first_name and not last_name:
        last_name = first_name

    return ResolvedContact(email=email, first_name=first_name, last_name=last_name, phone=phone)
