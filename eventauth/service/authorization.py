from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, Iterator, Mapping, Optional, Tuple

from eventauth.logging import get_logger
from eventauth.service.errors import ForbiddenError, ValidationError
from eventauth.storage.models import OwnedResource, Role, utcnow
from eventauth.storage.protocol import CredentialStore

logger = get_logger(__name__)

WILDCARD = "*"

ROLE_PERMISSIONS: Dict[Role, Dict[str, Any]] = {
    Role.ADMIN: {WILDCARD: WILDCARD},
    Role.ORGANIZER: {
        "user": ["read"],
        "project": ["read", "write"],
        "bom": ["read", "write"],
        "supplier": ["read", "write"],
        "permit": ["read", "write"],
        "logistics": ["read", "write"],
        "operations": ["read", "write"],
        "reports": ["read", "write"],
    },
    Role.ONSITE: {
        "project": ["read"],
        "bom": ["read"],
        "operations": ["read", "write"],
        "logistics": ["read"],
        "scanning": ["read", "write"],
    },
    Role.EXTERNAL_VENDOR: {
        "project": ["read"],
        "bom": ["read"],
        "operations": ["read"],
        "supplier": ["read", "write"],
    },
}

# resource type -> attributes that identify the caller as owner
OWNERSHIP_FIELDS: Dict[str, Tuple[str, ...]] = {
    "project": ("manager_id",),
    "task": ("assigned_to", "created_by"),
    "file": ("uploaded_by",),
}


@dataclass(frozen=True)
class PermissionSet:
    """Set of ``(resource, action)`` pairs; ``*`` on either side is a wildcard."""

    grants: FrozenSet[Tuple[str, str]] = frozenset()

    @classmethod
    def from_mapping(cls, mapping: Optional[Mapping[str, Any]]) -> "PermissionSet":
        pairs = set()
        for resource, actions in (mapping or {}).items():
            if isinstance(actions, str):
                actions = [actions]
            for action in actions or ():
                pairs.add((str(resource), str(action)))
        return cls(frozenset(pairs))

    @classmethod
    def from_strings(cls, values: Iterable[str]) -> "PermissionSet":
        pairs = set()
        for value in values:
            resource, sep, action = value.partition(":")
            if not sep or not resource or not action:
                raise ValueError(f"permission '{value}' must look like resource:action")
            pairs.add((resource, action))
        return cls(frozenset(pairs))

    def allows(self, resource: str, action: str) -> bool:
        return (
            (WILDCARD, WILDCARD) in self.grants
            or (resource, WILDCARD) in self.grants
            or (WILDCARD, action) in self.grants
            or (resource, action) in self.grants
        )

    def __or__(self, other: "PermissionSet") -> "PermissionSet":
        return PermissionSet(self.grants | other.grants)

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(sorted(self.grants))

    def __len__(self) -> int:
        return len(self.grants)

    def as_strings(self) -> list[str]:
        return [f"{resource}:{action}" for resource, action in self]


class AuthorizationEngine:
    """Role, permission and ownership checks.

    Stored role definitions override the built-in table so operators can
    adjust a role without a deploy.
    """

    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def role_permissions(self, role: str) -> PermissionSet:
        try:
            canonical = Role.parse(role)
        except ValueError:
            stored = self.store.get_role(role)
            return PermissionSet.from_mapping(stored.permissions if stored else None)
        stored = self.store.get_role(canonical.value)
        if stored is not None:
            return PermissionSet.from_mapping(stored.permissions)
        return PermissionSet.from_mapping(ROLE_PERMISSIONS.get(canonical))

    def user_grants(self, user_id: str, resource_type: Optional[str] = None) -> PermissionSet:
        pairs = set()
        for grant in self.store.list_user_permissions(user_id, utcnow(), resource_type):
            for action in grant.actions:
                pairs.add((grant.resource_type, action))
        return PermissionSet(frozenset(pairs))

    def effective_permissions(self, user_id: str, role: str) -> PermissionSet:
        return self.role_permissions(role) | self.user_grants(user_id)

    def authorize_role(self, role: str, allowed: Iterable[Role | str]) -> None:
        allowed_roles = {Role.parse(item) for item in allowed}
        try:
            current = Role.parse(role)
        except ValueError:
            current = None
        if current not in allowed_roles:
            logger.warning(
                "role_denied",
                role=role,
                allowed=sorted(r.value for r in allowed_roles),
            )
            raise ForbiddenError("insufficient role")

    def authorize_permission(self, user_id: str, role: str, resource: str, action: str) -> None:
        role_set = self.role_permissions(role)
        if role_set.allows(resource, action):
            return
        if self.user_grants(user_id, resource).allows(resource, action):
            return
        logger.warning(
            "permission_denied", user_id=user_id, role=role, resource=resource, action=action
        )
        raise ForbiddenError(
            "insufficient permissions", detail={"required": f"{resource}:{action}"}
        )

    def authorize_ownership(
        self, user_id: str, resource_type: str, resource_id: Optional[str]
    ) -> OwnedResource:
        if not resource_id:
            raise ValidationError("resource id is required")
        fields = OWNERSHIP_FIELDS.get(resource_type)
        if fields is None:
            raise ValidationError(f"unsupported resource type '{resource_type}'")
        resource = self.store.get_resource(resource_type, resource_id)
        # a missing resource is indistinguishable from someone else's
        if resource is not None and any(
            resource.attributes.get(name) == user_id for name in fields
        ):
            return resource
        logger.warning(
            "ownership_denied",
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
        )
        raise ForbiddenError("you do not own this resource")
