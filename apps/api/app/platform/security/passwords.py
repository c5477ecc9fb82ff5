from __future__ import annotations

import secrets

from passlib.context import CryptContext

from app.core.config import get_settings


# No 0/O, 1/l/I: clients type these from an email.
TEMPORARY_PASSWORD_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZabcdefghijkmnpqrstuvwxyz23456789"


class PasswordHasher:
    """One-way bcrypt hashing with a tunable cost factor."""

    def __init__(self, rounds: int | None = None) -> None:
        self.rounds = rounds if rounds is not None else get_settings().password_hash_rounds
        self._context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=self.rounds)

    def hash(self, plaintext: str) -> str:
        return self._context.hash(plaintext)

    def verify(self, plaintext: str, hashed: str) -> bool:
        return self._context.verify(plaintext, hashed)


def generate_temporary_password(length: int | None = None) -> str:
    size = length if length is not None else get_settings().temporary_password_length
    return "".join(secrets.choice(TEMPORARY_PASSWORD_ALPHABET) for _ in range(size))
