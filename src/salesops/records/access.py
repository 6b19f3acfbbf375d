"""Role Filter -- scopes canonical record sets to a requester.

Visibility rules:

| role                        | deals / callbacks                                   |
|-----------------------------|-----------------------------------------------------|
| manager                     | everything                                          |
| team-leader                 | salesTeam == requester.team OR salesAgentId == id   |
| salesman / customer-service | salesAgentId == id OR closingAgentId == id          |

Notifications: manager sees all, everyone else sees recipients "ALL" or their id.
Targets: manager all, team-leader its own or those it manages, others their own.
Users: manager all, everyone else only their own record.

The filter is exhaustive over Role and fails closed: a requester without a
recognized role gets an empty list. Empty identifiers never match, so a caller
with no user id cannot see records whose owner field is blank.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

from src.salesops.records.schemas import ALL_RECIPIENTS, EntityType, Requester, Role

Predicate = Callable[[Any], bool]


def _same(value: str, expected: str) -> bool:
    return bool(expected) and value == expected


class RoleFilter:
    """Deterministic, order-preserving visibility filter."""

    def filter(
        self,
        entity_type: EntityType,
        records: Sequence[Any],
        requester: Requester,
    ) -> list[Any]:
        """Return the subset of ``records`` visible to ``requester``, order kept."""
        predicate = self._predicate(entity_type, requester)
        if predicate is None:
            return []
        return [record for record in records if predicate(record)]

    def is_visible(self, entity_type: EntityType, record: Any, requester: Requester) -> bool:
        predicate = self._predicate(entity_type, requester)
        return predicate is not None and predicate(record)

    def _predicate(self, entity_type: EntityType, requester: Requester) -> Predicate | None:
        role = requester.role
        if role is None:
            return None
        if role is Role.MANAGER:
            return lambda record: True

        user_id = requester.user_id
        team = requester.team

        if entity_type in (EntityType.DEALS, EntityType.CALLBACKS):
            if role is Role.TEAM_LEADER:
                return lambda r: _same(r.sales_team, team) or _same(r.sales_agent_id, user_id)
            if role in (Role.SALESMAN, Role.CUSTOMER_SERVICE):
                return lambda r: (
                    _same(r.sales_agent_id, user_id)
                    or _same(getattr(r, "closing_agent_id", ""), user_id)
                )
            return None

        if entity_type is EntityType.NOTIFICATIONS:
            return lambda r: ALL_RECIPIENTS in r.recipients or _same_in(r.recipients, user_id)

        if entity_type is EntityType.TARGETS:
            if role is Role.TEAM_LEADER:
                return lambda r: _same(r.agent_id, user_id) or _same(r.manager_id, user_id)
            if role in (Role.SALESMAN, Role.CUSTOMER_SERVICE):
                return lambda r: _same(r.agent_id, user_id)
            return None

        if entity_type is EntityType.USERS:
            return lambda r: _same(r.id, user_id)

        return None


def _same_in(values: Sequence[str], expected: str) -> bool:
    return bool(expected) and expected in values
