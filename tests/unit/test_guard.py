"""Tests for the access guard state machine and its FastAPI dependency."""

import os

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only")

from fastapi import HTTPException
from starlette.requests import Request

from qa_access.errors import UnknownPermission, UnknownRole
from qa_access.security.auth import Principal
from qa_access.security.authorization import DenyCode
from qa_access.security.guard import (
    GuardStage,
    OperationPolicy,
    evaluate,
    require_access,
)
from qa_access.security.permissions import Permission, Role
from qa_access.security.tenant import EMPTY_SCOPE, TenantScope, get_tenant_scope


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _principal(role=Role.MANAGER, instance_id="inst-1"):
    return Principal(
        user_id="u1",
        username="tester",
        role=role,
        organization_id="org-1",
        instance_id=instance_id,
    )


def _request(path: str = "/api/v1/audits") -> Request:
    return Request({"type": "http", "method": "POST", "path": path, "headers": []})


AUDIT_POLICY = OperationPolicy.of(permissions=[Permission.PERFORM_AUDIT])


# ---------------------------------------------------------------------------
# OperationPolicy
# ---------------------------------------------------------------------------


class TestOperationPolicy:

    def test_of_parses_strings(self):
        policy = OperationPolicy.of(permissions=["perform_audit"], roles=["manager"])
        assert policy.permissions == frozenset({Permission.PERFORM_AUDIT})
        assert policy.roles == frozenset({Role.MANAGER})
        assert policy.public is False

    def test_of_rejects_unknown_values(self):
        with pytest.raises(UnknownPermission):
            OperationPolicy.of(permissions=["nope"])
        with pytest.raises(UnknownRole):
            OperationPolicy.of(roles=["nope"])


# ---------------------------------------------------------------------------
# evaluate()
# ---------------------------------------------------------------------------


class TestEvaluate:

    def test_unauthenticated_denied(self):
        outcome = evaluate(None, AUDIT_POLICY)
        assert outcome.stage == GuardStage.DENIED
        assert outcome.decision.code == DenyCode.UNAUTHENTICATED
        assert outcome.scope is None
        assert outcome.trace == (GuardStage.UNAUTHENTICATED, GuardStage.DENIED)

    def test_public_allows_anonymous_with_empty_scope(self):
        outcome = evaluate(None, OperationPolicy(public=True))
        assert outcome.allowed
        assert outcome.scope is EMPTY_SCOPE

    def test_allowed_walks_every_stage_in_order(self):
        outcome = evaluate(_principal(), AUDIT_POLICY)
        assert outcome.allowed
        assert outcome.trace == (
            GuardStage.UNAUTHENTICATED,
            GuardStage.AUTHENTICATED,
            GuardStage.SCOPED,
            GuardStage.ALLOWED,
        )
        assert outcome.scope == TenantScope("org-1", "inst-1", None)

    def test_permission_denied_has_no_scope(self):
        outcome = evaluate(_principal(Role.AGENT), AUDIT_POLICY)
        assert outcome.stage == GuardStage.DENIED
        assert outcome.decision.code == DenyCode.INSUFFICIENT_PERMISSION
        assert outcome.scope is None
        assert outcome.trace[-1] == GuardStage.DENIED
        assert GuardStage.ALLOWED not in outcome.trace

    def test_role_check_runs_before_permission_check(self):
        # Agent fails both; the role failure is reported
        policy = OperationPolicy.of(permissions=[Permission.PERFORM_AUDIT], roles=[Role.MANAGER])
        outcome = evaluate(_principal(Role.AGENT), policy)
        assert outcome.decision.code == DenyCode.INSUFFICIENT_ROLE

    def test_no_role_denied_even_for_empty_policy(self):
        outcome = evaluate(_principal(role=None), OperationPolicy())
        assert outcome.stage == GuardStage.DENIED
        assert outcome.decision.code == DenyCode.NO_ROLE_ASSIGNED

    def test_authenticated_on_public_route_still_checked(self):
        policy = OperationPolicy.of(permissions=[Permission.MANAGE_CREDITS], public=True)
        assert not evaluate(_principal(Role.MANAGER), policy).allowed

    def test_super_admin_allowed_everywhere(self):
        policy = OperationPolicy.of(permissions=list(Permission), roles=[Role.SUPER_ADMIN])
        assert evaluate(_principal(Role.SUPER_ADMIN, instance_id=None), policy).allowed


# ---------------------------------------------------------------------------
# require_access() dependency
# ---------------------------------------------------------------------------


class TestRequireAccess:

    @pytest.mark.asyncio
    async def test_missing_credential_is_401(self):
        dep = require_access(Permission.PERFORM_AUDIT)
        request = _request()
        with pytest.raises(HTTPException) as exc_info:
            await dep(request=request, principal=None)
        assert exc_info.value.status_code == 401
        assert get_tenant_scope(request) is EMPTY_SCOPE

    @pytest.mark.asyncio
    async def test_missing_permission_is_403_with_detail(self):
        dep = require_access(Permission.PERFORM_AUDIT)
        request = _request()
        with pytest.raises(HTTPException) as exc_info:
            await dep(request=request, principal=_principal(Role.AGENT))
        assert exc_info.value.status_code == 403
        assert exc_info.value.detail == "Access denied: Missing permissions: perform_audit"
        assert get_tenant_scope(request) is EMPTY_SCOPE

    @pytest.mark.asyncio
    async def test_no_role_is_403(self):
        dep = require_access()
        with pytest.raises(HTTPException) as exc_info:
            await dep(request=_request(), principal=_principal(role=None))
        assert exc_info.value.status_code == 403
        assert exc_info.value.detail == "Access denied: No role assigned"

    @pytest.mark.asyncio
    async def test_role_requirement(self):
        dep = require_access(roles=[Role.CLIENT_ADMIN])
        with pytest.raises(HTTPException) as exc_info:
            await dep(request=_request(), principal=_principal(Role.MANAGER))
        assert exc_info.value.status_code == 403
        assert "client_admin" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_allowed_attaches_principal_and_scope(self):
        dep = require_access(Permission.PERFORM_AUDIT)
        request = _request()
        principal = _principal(Role.AUDITOR)

        scope = await dep(request=request, principal=principal)

        assert scope.instance_id == "inst-1"
        assert request.state.principal is principal
        assert get_tenant_scope(request) is scope

    @pytest.mark.asyncio
    async def test_explicit_policy(self):
        dep = require_access(policy=OperationPolicy(public=True))
        scope = await dep(request=_request(), principal=None)
        assert scope is EMPTY_SCOPE
