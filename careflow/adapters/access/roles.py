"""Role-based access policy adapter.

Implements AccessPolicyPort with a static table from operation name to
the staff roles allowed to run it. Admins may run everything.
"""

import logging

from careflow.core.exceptions import NotAuthenticated, PermissionDenied
from careflow.core.models import Actor
from careflow.core.ports import AccessPolicyPort

logger = logging.getLogger(__name__)

ADMIN = "admin"
COORDINATION = "coordinacion"
THERAPIST = "terapeuta"
DOCTOR = "doctor"

# None means any authenticated actor.
DEFAULT_OPERATION_ROLES: dict[str, frozenset[str] | None] = {
    "create_lead": frozenset({COORDINATION}),
    "submit_triage": frozenset({COORDINATION, THERAPIST}),
    "route_triage": frozenset({COORDINATION}),
    "book_appointment": frozenset({COORDINATION, THERAPIST}),
    "confirm_appointment": frozenset({COORDINATION, THERAPIST}),
    "sign_consent": None,
    "propose_plan": frozenset({COORDINATION, THERAPIST}),
    "present_quote": frozenset({COORDINATION}),
    "accept_quote": frozenset({COORDINATION, THERAPIST}),
    "complete_procedure": frozenset({DOCTOR, THERAPIST}),
    "schedule_followup": frozenset({COORDINATION, THERAPIST}),
    "discharge_episode": frozenset({COORDINATION, DOCTOR}),
    "advance_episode": frozenset({COORDINATION, DOCTOR}),
    # Empty means admins only.
    "process_pending": frozenset(),
    "purge_processed": frozenset(),
}


class RoleAccessPolicy(AccessPolicyPort):
    """Allows an operation when the actor holds one of its roles."""

    def __init__(self, operation_roles: dict[str, frozenset[str] | None] | None = None):
        self.operation_roles = (
            DEFAULT_OPERATION_ROLES if operation_roles is None else operation_roles
        )

    async def authorize(self, actor: Actor | None, operation: str) -> None:
        if actor is None or not actor.user_id:
            raise NotAuthenticated()
        if ADMIN in actor.roles:
            return
        if operation not in self.operation_roles:
            logger.warning(f"Denying unknown operation {operation!r} for {actor.user_id}")
            raise PermissionDenied(actor.user_id, operation)
        allowed = self.operation_roles[operation]
        if allowed is None or actor.has_any_role(allowed):
            return
        logger.info(
            f"User {actor.user_id} denied {operation}",
            extra={"user_id": actor.user_id, "operation": operation},
        )
        raise PermissionDenied(actor.user_id, operation)
