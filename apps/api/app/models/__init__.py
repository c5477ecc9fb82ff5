"""Every mapped table, imported so ``Base.metadata`` is complete for migrations and tests."""

from app.authz.models import Role, User, UserRole
from app.business.quotations.models import Quotation
from app.crm.models import CRMContact, CRMLead, CRMOrganization

__all__ = [
	"CRMContact",
	"CRMLead",
	"CRMOrganization",
	"Quotation",
	"Role",
	"User",
	"UserRole",
]
