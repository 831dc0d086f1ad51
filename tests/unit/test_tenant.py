"""Tests for tenant scope resolution."""

import dataclasses
import os

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only")

from starlette.requests import Request

from qa_access.security.auth import Principal
from qa_access.security.permissions import Role
from qa_access.security.tenant import (
    EMPTY_SCOPE,
    TENANT_SCOPE_STATE_KEY,
    TenantScope,
    get_tenant_scope,
    resolve,
)


def _request() -> Request:
    return Request({"type": "http", "method": "GET", "path": "/", "headers": []})


class TestResolve:

    def test_none_principal_yields_empty_scope(self):
        scope = resolve(None)
        assert scope is EMPTY_SCOPE
        assert scope.is_empty

    def test_verbatim_projection(self):
        principal = Principal(
            user_id="u1",
            username="ana",
            role=Role.MANAGER,
            organization_id="org-9",
            instance_id="inst-3",
            project_id="proj-7",
        )
        assert resolve(principal) == TenantScope("org-9", "inst-3", "proj-7")

    def test_empty_strings_normalised(self):
        principal = Principal(
            user_id="u1", username="ana", role=Role.AGENT,
            organization_id="", instance_id="inst-3", project_id="",
        )
        scope = resolve(principal)
        assert scope.organization_id is None
        assert scope.project_id is None
        assert scope.instance_id == "inst-3"

    def test_super_admin_without_tenant(self):
        principal = Principal(user_id="root", username="root", role=Role.SUPER_ADMIN)
        assert resolve(principal).is_empty


class TestTenantScope:

    def test_as_filter_skips_empty_fields(self):
        scope = TenantScope(organization_id="org-1", instance_id=None, project_id="p")
        assert scope.as_filter() == {"organization_id": "org-1", "project_id": "p"}

    def test_frozen(self):
        scope = TenantScope(instance_id="i")
        with pytest.raises(dataclasses.FrozenInstanceError):
            scope.instance_id = "other"


class TestGetTenantScope:

    def test_defaults_to_empty(self):
        assert get_tenant_scope(_request()) is EMPTY_SCOPE

    def test_reads_attached_scope(self):
        request = _request()
        scope = TenantScope(instance_id="inst-1")
        setattr(request.state, TENANT_SCOPE_STATE_KEY, scope)
        assert get_tenant_scope(request) is scope
