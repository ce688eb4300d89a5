"""Cascade authorization: which administrators may act on which applications and provision which users.

Every decision is computed from the live user row and the in-memory location hierarchy. Nothing is
cached between requests. Hierarchy failures deny access and are logged for operators.
"""
import logging
from typing import List, NamedTuple, Optional

from sqlalchemy import false, or_

from models import Membership
from utils.locations import LocationHierarchy, LocationLookupError, get_hierarchy, same_name
from utils.roles import LEVEL_RANK, LEVELS, AdminRole, parse_role

logger = logging.getLogger(__name__)


class LocatedAt(NamedTuple):
    level: str
    entity_id: str


class ScopeFilter(NamedTuple):
    field: str
    values: tuple


def _actor_role(user) -> Optional[AdminRole]:
    if user is None or not getattr(user, "role", None):
        return None
    try:
        return parse_role(user.role)
    except ValueError:
        logger.warning("Unknown administrator role", extra={"user_id": getattr(user, "id", None), "role": user.role})
        return None


def infer_location(membership) -> Optional[LocatedAt]:
    """Finest populated location field wins (block > district > division > state).

    Only used for rows created before the explicit ``level`` column existed.
    """
    for level in reversed(LEVELS):
        value = getattr(membership, level, None)
        if value:
            return LocatedAt(level, value)
    return None


def effective_location(membership) -> Optional[LocatedAt]:
    level = getattr(membership, "level", None)
    if level in LEVELS:
        value = getattr(membership, level, None)
        if value:
            return LocatedAt(level, value)
    return infer_location(membership)


def _covers(hierarchy: LocationHierarchy, level: str, entity: str, target_level: str, target_id: str) -> bool:
    if level == "state":
        if target_level not in ("division", "district", "block"):
            return False
        return same_name(hierarchy.state_for(target_level, target_id), entity)
    if level == "division":
        districts = hierarchy.get_districts_for_division(entity)
        if target_level == "district":
            return any(same_name(district, target_id) for district in districts)
        if target_level == "block":
            return any(hierarchy.block_in_district(target_id, district) for district in districts)
        return False
    if level == "district" and target_level == "block":
        return hierarchy.block_in_district(target_id, entity)
    return False


def has_cascade_access(user, target_level: str, target_id: str, hierarchy: LocationHierarchy | None = None) -> bool:
    role = _actor_role(user)
    if role is None:
        return False
    if role.is_superadmin:
        return True
    if role.is_media_incharge:
        return False

    level = user.assigned_level
    entity = user.assigned_id
    if not level or not entity or not target_level or not target_id:
        return False
    if level == target_level and same_name(entity, target_id):
        return True

    hierarchy = hierarchy or get_hierarchy()
    try:
        return _covers(hierarchy, level, entity, target_level, target_id)
    except LocationLookupError as exc:
        logger.error(
            "Cascade check denied: location hierarchy unavailable",
            extra={
                "user_id": user.id,
                "user_level": level,
                "target_level": target_level,
                "target_id": target_id,
                "error": str(exc),
            },
        )
        return False


def can_assign_role_at_level(user, level: str, entity_id: str, hierarchy: LocationHierarchy | None = None) -> bool:
    role = _actor_role(user)
    if role is None or role.is_media_incharge:
        return False
    if role.is_superadmin:
        return True
    return has_cascade_access(user, level, entity_id, hierarchy)


def can_assign_role(user, membership, team_type: str | None = None, hierarchy: LocationHierarchy | None = None) -> bool:
    """``team_type`` is accepted for callers but does not narrow the decision."""
    role = _actor_role(user)
    if role is None:
        return False
    if role.is_superadmin:
        return True
    located = effective_location(membership)
    if located is None:
        return False
    return can_assign_role_at_level(user, located.level, located.entity_id, hierarchy)


def can_perform_actions(user, membership, hierarchy: LocationHierarchy | None = None) -> bool:
    role = _actor_role(user)
    if role is None or role.is_media_incharge:
        return False
    if role.is_superadmin:
        return True
    located = effective_location(membership)
    if located is not None and has_cascade_access(user, located.level, located.entity_id, hierarchy):
        return True
    # Applications routed to a district office belong to that district's administrators.
    return user.assigned_level == "district" and same_name(membership.assigned_district, user.assigned_id)


def can_create_user(actor, assigned_level: str, assigned_id: str, hierarchy: LocationHierarchy | None = None) -> bool:
    """Provisioning rule: strictly lower level only, and inside the actor's own cascade scope."""
    role = _actor_role(actor)
    if role is None or not role.can_provision:
        return False
    if assigned_level not in LEVELS or not assigned_id:
        return False
    if LEVEL_RANK[assigned_level] <= role.rank:
        return False
    if role.is_superadmin:
        return True
    return has_cascade_access(actor, assigned_level, assigned_id, hierarchy)


def can_manage_user(actor, target, hierarchy: LocationHierarchy | None = None) -> bool:
    """Edit or deactivate. Nobody manages their own account through the admin screens."""
    role = _actor_role(actor)
    if role is None or target is None or actor.id == target.id:
        return False
    if target.is_superadmin:
        return role.is_superadmin
    return can_create_user(actor, target.assigned_level, target.assigned_id, hierarchy)


def can_delete_user(actor, target) -> bool:
    role = _actor_role(actor)
    return bool(role and role.is_superadmin and target is not None and actor.id != target.id)


def get_accessible_entities(user, hierarchy: LocationHierarchy | None = None) -> List[ScopeFilter]:
    """Expand a user's single assignment into query filters. Empty means unrestricted for superadmin only."""
    role = _actor_role(user)
    if role is None or role.is_superadmin:
        return []
    level = user.assigned_level
    entity = user.assigned_id
    if not level or not entity:
        return []

    hierarchy = hierarchy or get_hierarchy()
    filters: List[ScopeFilter] = []
    try:
        if level == "state":
            filters.append(ScopeFilter("state", (entity,)))
        elif level == "division":
            filters.append(ScopeFilter("division", (entity,)))
            districts = hierarchy.get_districts_for_division(entity)
            if districts:
                filters.append(ScopeFilter("district", tuple(districts)))
                blocks = [block for district in districts for block in hierarchy.get_blocks_for_district(district)]
                if blocks:
                    filters.append(ScopeFilter("block", tuple(blocks)))
        elif level == "district":
            filters.append(ScopeFilter("district", (entity,)))
            filters.append(ScopeFilter("assigned_district", (entity,)))
            blocks = hierarchy.get_blocks_for_district(entity)
            if blocks:
                filters.append(ScopeFilter("block", tuple(blocks)))
        elif level == "block":
            filters.append(ScopeFilter("block", (entity,)))
    except LocationLookupError as exc:
        logger.error(
            "Scope expansion truncated: location hierarchy unavailable",
            extra={"user_id": user.id, "level": level, "error": str(exc)},
        )
    return filters


def apply_scope(query, user, hierarchy: LocationHierarchy | None = None):
    """Restrict a Membership query to the rows the user may see."""
    role = _actor_role(user)
    if role is not None and role.is_superadmin:
        return query
    filters = get_accessible_entities(user, hierarchy)
    if not filters:
        return query.filter(false())
    return query.filter(or_(*(getattr(Membership, item.field).in_(item.values) for item in filters)))
