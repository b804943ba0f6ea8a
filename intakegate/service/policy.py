"""Authorization policy: (role, session, action) -> allow | deny.

Rules are keyed by the closed ``Role`` enum and the table is checked for
completeness at import. Anything not explicitly allowed is denied.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, Dict, Optional

from intakegate.logging import get_logger
from intakegate.service.audit import AuditService
from intakegate.service.errors import ForbiddenError, UnauthenticatedError
from intakegate.storage.models import (
    AuditAction,
    Principal,
    RequestActor,
    Role,
    parse_session_id,
)

logger = get_logger(__name__)


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    ABANDON = "abandon"
    DELETE = "delete"
    LIST = "list"


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


_Rule = Callable[[Optional[str], Action, Optional[str], bool], bool]


def _anonymous(session_id: Optional[str], action: Action, subject: Optional[str], background: bool) -> bool:
    return action == Action.CREATE


def _owner(session_id: Optional[str], action: Action, subject: Optional[str], background: bool) -> bool:
    if action == Action.CREATE:
        return True
    if action not in (Action.READ, Action.UPDATE, Action.ABANDON):
        return False
    return session_id is not None and subject is not None and subject == session_id


def _staff(session_id: Optional[str], action: Action, subject: Optional[str], background: bool) -> bool:
    return action in (Action.READ, Action.UPDATE, Action.LIST)


def _system(session_id: Optional[str], action: Action, subject: Optional[str], background: bool) -> bool:
    # Only internal jobs carry the system role; a request claiming it gets nothing
    return background


_RULES: Dict[Role, _Rule] = {
    Role.ANONYMOUS: _anonymous,
    Role.OWNER: _owner,
    Role.COORDINATOR: _staff,
    Role.ADMIN: _staff,
    Role.SYSTEM: _system,
}

if set(_RULES) != set(Role):
    raise RuntimeError(
        f"authorization rules missing roles: {sorted(r.value for r in set(Role) - set(_RULES))}"
    )


def authorize(
    role: Role,
    session_id: Optional[str],
    action: Action,
    bearer_subject: Optional[str],
    *,
    background: bool = False,
) -> Decision:
    """Pure decision function; ``session_id`` and ``bearer_subject`` are external ids."""
    rule = _RULES[role]
    return Decision.ALLOW if rule(session_id, action, bearer_subject, background) else Decision.DENY


class PolicyEngine:
    def __init__(self, audit: AuditService) -> None:
        self.audit = audit

    def enforce(
        self,
        principal: Principal,
        session_id: Optional[str],
        action: Action,
        *,
        actor: Optional[RequestActor] = None,
    ) -> None:
        decision = authorize(
            principal.role,
            session_id,
            action,
            principal.subject,
            background=principal.background,
        )
        if decision == Decision.ALLOW:
            return
        session_key: Optional[str] = None
        if session_id:
            try:
                session_key = parse_session_id(session_id)
            except ValueError:
                session_key = None
        self.audit.record(
            AuditAction.AUTHORIZATION_DENIED,
            session_id=session_key,
            details={"role": principal.role.value, "action": action.value},
            actor=actor,
        )
        logger.info(
            "authorization_denied",
            role=principal.role.value,
            action=action.value,
            session_id=session_key,
        )
        if principal.role == Role.ANONYMOUS:
            raise UnauthenticatedError("authentication required")
        raise ForbiddenError("not permitted")
