"""Request-level access guard.

Each guarded request walks a fixed sequence of stages::

    UNAUTHENTICATED -> AUTHENTICATED -> SCOPED -> ALLOWED
                 \\            \\          \\
                  +------------+----------+--> DENIED

Rate limiting runs before this (middleware). Authentication strictly
precedes tenant-scope attachment, which strictly precedes the role and
permission checks. The first failing stage terminates at ``DENIED``; later
stages never run and no scope is attached to the request.

Requirements are declared per route with an explicit ``OperationPolicy``
passed to ``require_access()`` at registration time.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, Union

from fastapi import Depends, HTTPException, Request

from ..errors import AccessError
from ..observability.logging import set_log_context
from ..observability.metrics import record_authz_decision
from .auth import Principal, get_optional_principal
from .authorization import ALLOW, AccessDecision, DenyCode, authorize, authorize_role
from .permissions import Permission, PermissionLike, Role, RoleLike, parse_permission, parse_role
from .tenant import EMPTY_SCOPE, TENANT_SCOPE_STATE_KEY, TenantScope, resolve

logger = logging.getLogger(__name__)


class GuardStage(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    SCOPED = "scoped"
    ALLOWED = "allowed"
    DENIED = "denied"


@dataclass(frozen=True)
class OperationPolicy:
    """Access requirements for one operation.

    ``permissions`` are all-of, ``roles`` are any-of. A ``public`` operation
    admits unauthenticated callers with an empty tenant scope; an
    authenticated caller on a public operation is still checked.
    """
    permissions: frozenset[Permission] = frozenset()
    roles: frozenset[Role] = frozenset()
    public: bool = False

    @classmethod
    def of(
        cls,
        permissions: Iterable[PermissionLike] = (),
        roles: Iterable[RoleLike] = (),
        public: bool = False,
    ) -> "OperationPolicy":
        return cls(
            permissions=frozenset(parse_permission(p) for p in permissions),
            roles=frozenset(parse_role(r) for r in roles),
            public=public,
        )


@dataclass(frozen=True)
class GuardOutcome:
    """Result of walking the guard stages for one request."""
    stage: GuardStage
    decision: AccessDecision
    scope: Optional[TenantScope] = None
    trace: tuple[GuardStage, ...] = field(default=())

    @property
    def allowed(self) -> bool:
        return self.stage == GuardStage.ALLOWED


def evaluate(principal: Optional[Principal], policy: OperationPolicy) -> GuardOutcome:
    """Run the guard state machine for *principal* against *policy*.

    Pure: no I/O, no request mutation. Fails closed at every stage.
    """
    trace = [GuardStage.UNAUTHENTICATED]

    if principal is None:
        if policy.public:
            trace.append(GuardStage.ALLOWED)
            return GuardOutcome(GuardStage.ALLOWED, ALLOW, EMPTY_SCOPE, tuple(trace))
        trace.append(GuardStage.DENIED)
        decision = AccessDecision.deny(DenyCode.UNAUTHENTICATED, "Authentication required")
        return GuardOutcome(GuardStage.DENIED, decision, None, tuple(trace))

    trace.append(GuardStage.AUTHENTICATED)
    scope = resolve(principal)
    trace.append(GuardStage.SCOPED)

    decision = authorize_role(principal, policy.roles)
    if decision.allowed:
        decision = authorize(principal, policy.permissions)

    if not decision.allowed:
        trace.append(GuardStage.DENIED)
        return GuardOutcome(GuardStage.DENIED, decision, None, tuple(trace))

    trace.append(GuardStage.ALLOWED)
    return GuardOutcome(GuardStage.ALLOWED, decision, scope, tuple(trace))


def require_access(
    *permissions: PermissionLike,
    roles: Iterable[RoleLike] = (),
    policy: Union[OperationPolicy, None] = None,
):
    """Dependency factory: guard a route with an ``OperationPolicy``.

    Returns 401 when no credential is supplied, 403 when the role or
    permission check fails. On success the principal and ``TenantScope`` are
    attached to ``request.state`` and the scope is returned.
    """
    if policy is None:
        policy = OperationPolicy.of(permissions=permissions, roles=roles)

    async def _check(
        request: Request,
        principal: Optional[Principal] = Depends(get_optional_principal),
    ) -> TenantScope:
        outcome = evaluate(principal, policy)
        record_authz_decision(outcome.stage.value, outcome.decision.code)

        if not outcome.allowed:
            try:
                outcome.decision.raise_for_denial()
            except AccessError as e:
                logger.info(
                    "Denied %s %s for user=%s: %s",
                    request.method,
                    request.url.path,
                    principal.user_id if principal else "anonymous",
                    e.message,
                )
                raise HTTPException(status_code=e.status_code, detail=e.message) from None

        request.state.principal = principal
        setattr(request.state, TENANT_SCOPE_STATE_KEY, outcome.scope)
        if principal is not None:
            set_log_context(
                user_id=principal.user_id,
                instance_id=outcome.scope.instance_id,
            )
        return outcome.scope

    return _check
