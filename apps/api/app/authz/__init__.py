from app.authz.models import Role, User, UserRole, UserType

__all__ = [
    "Role",
    "User",
    "UserRole",
    "UserType",
]
