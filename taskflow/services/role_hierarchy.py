"""
Role hierarchy — who may promote or demote whom.

An actor may move a user from role A to role B only with authority over
both A and B. Nobody holds authority over super_admin, so that role can
be neither granted nor taken away through the API.
"""

import logging

from taskflow.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from taskflow.models.audit import write_activity
from taskflow.models.auth import USER_ROLES
from taskflow.services.status_transition import AuthorityTable
from taskflow.services.store import run_in_transaction

logger = logging.getLogger(__name__)

ROLE_AUTHORITY = AuthorityTable(
    {
        "super_admin": {"ceo", "hoo", "hr", "admin", "staff"},
        "ceo": {"hoo", "hr", "admin", "staff"},
        "hoo": {"admin", "staff"},
        "hr": {"admin", "staff"},
        "admin": set(),
        "staff": set(),
    },
    name="role_hierarchy",
)


def can_manage_role(actor_role, target_role, table=ROLE_AUTHORITY) -> bool:
    return table.allows(actor_role, target_role)


def change_user_role(actor, user_id: int, new_role: str, *, table=ROLE_AUTHORITY):
    """Change a user's role after checking the actor's authority.

    Raises:
        ValidationError: unknown role, or the actor targets themselves.
        NotFoundError:   user missing.
        ForbiddenError:  no authority over the current or the new role.
    """
    if new_role not in USER_ROLES:
        raise ValidationError(f"Unknown role: {new_role}", {"role": new_role, "allowed": list(USER_ROLES)})
    if actor.id == user_id:
        raise ValidationError("Users cannot change their own role", {"user_id": user_id})

    def work(store):
        user = store.find_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        previous = user.role
        for role in (previous, new_role):
            table.require(
                actor.role, role,
                lambda role=role: ForbiddenError(
                    f"Role {actor.role} has no authority over {role}",
                    {"actor_role": actor.role, "role": role},
                ),
            )
        if previous == new_role:
            return user
        user.role = new_role
        store.session.flush()
        write_activity(
            entity_type="user",
            entity_id=user.id,
            action="user.role_change",
            actor_id=actor.id,
            previous_value=previous,
            new_value=new_role,
        )
        logger.info(
            "User %s role %s -> %s by %s", user.id, previous, new_role, actor.id,
            extra={"actor_id": actor.id},
        )
        return user

    return run_in_transaction(work)
