from typing import Iterable, Optional

from errors import Forbidden
from models import Principal, PrincipalKind, VerifiedIdentity


class AdminPolicy:
    """Membership test over the admin allow-list.

    The list is normalized and frozen at construction. An empty or missing list
    means nobody is an admin.
    """

    def __init__(self, email_addresses: Optional[Iterable[str]] = None) -> None:
        normalized = set()
        for address in email_addresses or []:
            if not isinstance(address, str):
                continue
            value = address.strip().lower()
            if value:
                normalized.add(value)
        self._allow_list = frozenset(normalized)

    @property
    def allow_list(self) -> frozenset:
        return self._allow_list

    def is_admin(self, identity: Optional[VerifiedIdentity]) -> bool:
        if identity is None:
            return False
        return identity.email.strip().lower() in self._allow_list

    def is_admin_principal(self, principal: Principal) -> bool:
        if principal.kind != PrincipalKind.USER:
            return False
        return self.is_admin(principal.identity)

    def require_admin(self, principal: Principal, action: str) -> None:
        if self.is_admin_principal(principal):
            return
        raise Forbidden(f"Only admins can {action}", code="ADMIN_REQUIRED")
