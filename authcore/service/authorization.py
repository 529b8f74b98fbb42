from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Optional

from authcore.logging import get_logger
from authcore.service.errors import InsufficientPermissionsError, UnauthenticatedError

if TYPE_CHECKING:
    from authcore.service.auth import AuthContext

logger = get_logger(__name__)


class Role(str, Enum):
    """Closed set of user roles."""

    USER = "user"
    OPERATOR = "operator"
    MANAGER = "manager"
    ADMIN = "admin"


# Total order over roles; a higher number may act for every lower one.
ROLE_ORDER: Dict[Role, int] = {
    Role.USER: 1,
    Role.OPERATOR: 2,
    Role.MANAGER: 3,
    Role.ADMIN: 4,
}

_USER_PERMISSIONS = frozenset(
    {"profile:read", "profile:update", "vehicle:read", "vehicle:create"}
)

ROLE_PERMISSIONS: Dict[Role, FrozenSet[str]] = {
    Role.USER: _USER_PERMISSIONS,
    Role.OPERATOR: _USER_PERMISSIONS
    | {"vehicle:update", "parking:read", "parking:create", "parking:update"},
    Role.MANAGER: frozenset(
        {
            "profile:read",
            "profile:update",
            "vehicle:*",
            "parking:*",
            "garage:*",
            "reports:read",
            "users:read",
        }
    ),
    Role.ADMIN: frozenset({"*"}),
}

_missing = [r for r in Role if r not in ROLE_ORDER or r not in ROLE_PERMISSIONS]
if _missing:
    raise RuntimeError(f"roles missing from authorization tables: {_missing}")
if len(set(ROLE_ORDER.values())) != len(ROLE_ORDER):
    raise RuntimeError("ROLE_ORDER must be a strict total order")


def coerce_role(value: "Role | str") -> Role:
    """Parse a stored or claimed role; unknown strings raise ``ValueError``."""
    if isinstance(value, Role):
        return value
    return Role(str(value).lower())


class AuthorizationEngine:
    """Role membership, permission grants and role-level checks.

    All lookups are against the static tables above; nothing here touches
    storage, so every method is safe to call from any thread.
    """

    def __init__(
        self,
        permissions: Optional[Dict[Role, FrozenSet[str]]] = None,
        order: Optional[Dict[Role, int]] = None,
    ) -> None:
        self.permissions = permissions or ROLE_PERMISSIONS
        self.order = order or ROLE_ORDER

    def authorize(self, role: "Role | str", allowed_roles: Iterable["Role | str"]) -> bool:
        """Exact membership of ``role`` in ``allowed_roles``."""
        try:
            current = coerce_role(role)
            allowed = {coerce_role(r) for r in allowed_roles}
        except ValueError:
            return False
        return current in allowed

    def has_permission(self, role: "Role | str", permission_key: str) -> bool:
        """Check a namespaced permission such as ``users:manage``.

        A grant of ``*`` covers every key, and ``ns:*`` covers every key in
        namespace ``ns``.
        """
        try:
            granted = self.permissions.get(coerce_role(role), frozenset())
        except ValueError:
            return False
        if "*" in granted or permission_key in granted:
            return True
        namespace, sep, _ = permission_key.partition(":")
        return bool(sep) and f"{namespace}:*" in granted

    def has_role_level(self, role: "Role | str", required_role: "Role | str") -> bool:
        try:
            return self.order[coerce_role(role)] >= self.order[coerce_role(required_role)]
        except ValueError:
            return False

    def roles_at_or_below(self, role: "Role | str") -> List[Role]:
        level = self.order[coerce_role(role)]
        return sorted(
            (r for r, rank in self.order.items() if rank <= level),
            key=lambda r: self.order[r],
        )

    # Raising helpers used by the HTTP dependencies

    def require_roles(
        self, context: Optional["AuthContext"], allowed_roles: Iterable["Role | str"]
    ) -> "AuthContext":
        ctx = self._require_context(context)
        if not self.authorize(ctx.role, allowed_roles):
            self._deny(ctx, reason="role_not_allowed")
        return ctx

    def require_permission(
        self, context: Optional["AuthContext"], permission_key: str
    ) -> "AuthContext":
        ctx = self._require_context(context)
        if not self.has_permission(ctx.role, permission_key):
            self._deny(ctx, reason="permission_missing", permission=permission_key)
        return ctx

    def require_role_level(
        self, context: Optional["AuthContext"], required_role: "Role | str"
    ) -> "AuthContext":
        ctx = self._require_context(context)
        if not self.has_role_level(ctx.role, required_role):
            self._deny(ctx, reason="role_level_too_low", required_role=coerce_role(required_role).value)
        return ctx

    @staticmethod
    def _require_context(context: Optional["AuthContext"]) -> "AuthContext":
        if context is None:
            raise UnauthenticatedError("Authentication required")
        return context

    @staticmethod
    def _deny(context: "AuthContext", *, reason: str, **fields) -> None:
        logger.info(
            "authorization_denied",
            user_id=context.user_id,
            role=coerce_role(context.role).value,
            reason=reason,
            **fields,
        )
        raise InsufficientPermissionsError()
