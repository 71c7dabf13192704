"""Tests for role, permission and ownership authorization."""

import asyncio
from datetime import timedelta

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from eventauth.api.dependencies import require_ownership, require_permission, require_roles
from eventauth.api.error_handling import register_exception_handlers
from eventauth.service.authorization import (
    ROLE_PERMISSIONS,
    AuthorizationEngine,
    PermissionSet,
)
from eventauth.service.errors import ForbiddenError, ValidationError
from eventauth.service.runtime import get_runtime
from eventauth.storage.memory import MemoryStore
from eventauth.storage.models import (
    OwnedResource,
    Role,
    RoleDefinition,
    UserPermission,
    utcnow,
)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def engine(store):
    return AuthorizationEngine(store)


@pytest.fixture
def user_id(store):
    return store.create_user("alice@example.com", "alice", role="ONSITE").id


class TestPermissionSet:
    """Wildcard matching."""

    def test_exact_match(self):
        perms = PermissionSet.from_mapping({"project": ["read"]})
        assert perms.allows("project", "read")
        assert not perms.allows("project", "write")
        assert not perms.allows("bom", "read")

    def test_resource_wildcard(self):
        perms = PermissionSet.from_mapping({"project": "*"})
        assert perms.allows("project", "delete")
        assert not perms.allows("bom", "delete")

    def test_action_wildcard_over_any_resource(self):
        perms = PermissionSet.from_mapping({"*": ["read"]})
        assert perms.allows("supplier", "read")
        assert not perms.allows("supplier", "write")

    def test_full_wildcard(self):
        perms = PermissionSet.from_mapping({"*": "*"})
        assert perms.allows("anything", "at-all")

    def test_union_and_strings(self):
        merged = PermissionSet.from_strings(["bom:read"]) | PermissionSet.from_strings(["bom:write"])
        assert merged.as_strings() == ["bom:read", "bom:write"]
        assert len(merged) == 2

    @pytest.mark.parametrize("value", ["bom", ":read", "bom:", ""])
    def test_malformed_strings(self, value):
        with pytest.raises(ValueError):
            PermissionSet.from_strings([value])


class TestRolePermissions:
    """Built-in table, stored overrides and legacy aliases."""

    def test_admin_has_everything(self, engine):
        assert engine.role_permissions("ADMIN").allows("system", "admin")

    def test_built_in_roles(self, engine):
        organizer = engine.role_permissions("ORGANIZER")
        assert organizer.allows("reports", "write")
        assert not organizer.allows("system", "admin")
        vendor = engine.role_permissions("EXTERNAL_VENDOR")
        assert vendor.allows("supplier", "write")
        assert not vendor.allows("project", "write")

    def test_every_role_has_an_entry(self):
        assert set(ROLE_PERMISSIONS) == set(Role)

    def test_legacy_alias(self, engine):
        assert engine.role_permissions("MANAGER") == engine.role_permissions("ORGANIZER")

    def test_stored_role_overrides_table(self, store, engine):
        store.upsert_role(RoleDefinition(name="ONSITE", permissions={"reports": ["read"]}))
        perms = engine.role_permissions("ONSITE")
        assert perms.allows("reports", "read")
        assert not perms.allows("operations", "write")

    def test_unknown_role_has_nothing(self, engine):
        assert len(engine.role_permissions("INTERN")) == 0


class TestAuthorizeChecks:
    """authorize_role, authorize_permission and direct grants."""

    def test_authorize_role(self, engine):
        engine.authorize_role("ADMIN", [Role.ADMIN, "ORGANIZER"])
        engine.authorize_role("MANAGER", ["ORGANIZER"])
        with pytest.raises(ForbiddenError):
            engine.authorize_role("ONSITE", [Role.ADMIN])
        with pytest.raises(ForbiddenError):
            engine.authorize_role("INTERN", [Role.ADMIN])

    def test_permission_denied_names_requirement(self, engine):
        with pytest.raises(ForbiddenError) as excinfo:
            engine.authorize_permission("u1", "ONSITE", "bom", "write")
        assert excinfo.value.detail == {"required": "bom:write"}

    def test_direct_grant_extends_role(self, store, engine, user_id):
        store.grant_user_permission(
            UserPermission(id="g1", user_id=user_id, resource_type="bom", actions=["write"])
        )
        engine.authorize_permission(user_id, "ONSITE", "bom", "write")
        with pytest.raises(ForbiddenError):
            engine.authorize_permission("someone-else", "ONSITE", "bom", "write")

    def test_expired_grant_ignored(self, store, engine, user_id):
        store.grant_user_permission(
            UserPermission(
                id="g1",
                user_id=user_id,
                resource_type="bom",
                actions=["write"],
                expires_at=utcnow() - timedelta(seconds=1),
            )
        )
        with pytest.raises(ForbiddenError):
            engine.authorize_permission(user_id, "ONSITE", "bom", "write")

    def test_effective_permissions_merge(self, store, engine, user_id):
        store.grant_user_permission(
            UserPermission(id="g1", user_id=user_id, resource_type="reports", actions=["*"])
        )
        perms = engine.effective_permissions(user_id, "ONSITE")
        assert perms.allows("reports", "export")
        assert perms.allows("scanning", "write")


class TestOwnership:
    """Ownership of projects, tasks and files."""

    def test_project_manager_owns(self, store, engine):
        store.put_resource(
            OwnedResource(id="p1", resource_type="project", attributes={"manager_id": "u1"})
        )
        assert engine.authorize_ownership("u1", "project", "p1").id == "p1"
        with pytest.raises(ForbiddenError):
            engine.authorize_ownership("u2", "project", "p1")

    def test_task_assignee_or_creator_owns(self, store, engine):
        store.put_resource(
            OwnedResource(
                id="t1",
                resource_type="task",
                attributes={"assigned_to": "u1", "created_by": "u2"},
            )
        )
        engine.authorize_ownership("u1", "task", "t1")
        engine.authorize_ownership("u2", "task", "t1")
        with pytest.raises(ForbiddenError):
            engine.authorize_ownership("u3", "task", "t1")

    def test_missing_resource_looks_foreign(self, engine):
        with pytest.raises(ForbiddenError):
            engine.authorize_ownership("u1", "file", "missing")

    def test_missing_id_and_unknown_type(self, engine):
        with pytest.raises(ValidationError):
            engine.authorize_ownership("u1", "project", None)
        with pytest.raises(ValidationError):
            engine.authorize_ownership("u1", "invoice", "i1")


def _protected_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/admin-only")
    async def admin_only(ctx=Depends(require_roles(Role.ADMIN))):
        return {"user_id": ctx.user_id}

    @app.get("/bom")
    async def write_bom(ctx=Depends(require_permission("bom", "write"))):
        return {"user_id": ctx.user_id}

    @app.get("/projects/{id}")
    async def project(ctx=Depends(require_ownership("project"))):
        return {"user_id": ctx.user_id}

    return app


def _token_for(role: str, email: str, username: str):
    runtime = get_runtime()
    result = asyncio.run(runtime.auth.register(email, username, "Passw0rd1", role=role))
    return result.user.id, {"Authorization": f"Bearer {result.tokens.access_token}"}


class TestRouteDependencies:
    """require_* dependencies wired into a FastAPI app."""

    def test_role_dependency(self):
        client = TestClient(_protected_app())
        _, admin = _token_for("ADMIN", "admin@example.com", "admin")
        _, onsite = _token_for("ONSITE", "onsite@example.com", "onsite")
        assert client.get("/admin-only", headers=admin).status_code == 200
        denied = client.get("/admin-only", headers=onsite)
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "forbidden"

    def test_missing_token_is_unauthorized(self):
        client = TestClient(_protected_app())
        response = client.get("/admin-only")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"

    def test_permission_dependency(self):
        client = TestClient(_protected_app())
        _, organizer = _token_for("ORGANIZER", "org@example.com", "org")
        _, vendor = _token_for("EXTERNAL_VENDOR", "vendor@example.com", "vendor")
        assert client.get("/bom", headers=organizer).status_code == 200
        denied = client.get("/bom", headers=vendor)
        assert denied.status_code == 403
        assert denied.json()["error"]["details"] == {"required": "bom:write"}

    def test_ownership_dependency(self):
        client = TestClient(_protected_app())
        owner_id, owner = _token_for("ORGANIZER", "owner@example.com", "owner")
        _, other = _token_for("ORGANIZER", "other@example.com", "other")
        get_runtime().store.put_resource(
            OwnedResource(id="p1", resource_type="project", attributes={"manager_id": owner_id})
        )
        assert client.get("/projects/p1", headers=owner).json() == {"user_id": owner_id}
        assert client.get("/projects/p1", headers=other).status_code == 403
