from app.platform.security.passwords import TEMPORARY_PASSWORD_ALPHABET, PasswordHasher, generate_temporary_password

__all__ = [
    "PasswordHasher",
    "TEMPORARY_PASSWORD_ALPHABET",
    "generate_temporary_password",
]
