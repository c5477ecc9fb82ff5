from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.authz.models import Role


logger = logging.getLogger("app.authz.seed")

DEFAULT_ROLES: tuple[tuple[str, str], ...] = (
    ("Administrator", "Full access to the back office"),
    ("Sales Manager", "Manages leads, meetings and quotations"),
    ("Client User", "External client with portal access"),
)


def seed_default_roles(session: Session) -> list[Role]:
    """Create the default roles that are missing. Existing roles are left untouched."""

    existing = {role.name: role for role in session.scalars(select(Role)).all()}
    created: list[Role] = []
    for name, description in DEFAULT_ROLES:
        if name in existing:
            continue
        role = Role(name=name, description=description, is_system=True)
        session.add(role)
        created.append(role)

    if created:
        session.commit()
        logger.info("roles.seeded", extra={"roles": [role.name for role in created]})
    return created
