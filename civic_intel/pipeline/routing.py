from __future__ import annotations

import logging
from typing import Iterable

from civic_intel.domain.errors import NoDepartmentMapping
from civic_intel.domain.models import RoutingDecision
from civic_intel.domain.policy import PipelineConfig
from civic_intel.domain.states import Category

logger = logging.getLogger(__name__)


def _ordered_unique(items: Iterable[str]) -> tuple[str, ...]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            out.append(item)
    return tuple(out)


class RoutingEngine:
    """Pure mapping of (category, priority) onto departments.

    Notification order is: primary department, then the configured secondary
    departments when the priority reaches the category's escalation threshold,
    then the primary departments of any other implicated categories.
    """

    def route(
        self,
        category: Category,
        priority: int,
        config: PipelineConfig,
        implicated: Iterable[Category] = (),
        primary_department: str | None = None,
    ) -> RoutingDecision:
        mapping = config.mapping_for(category)
        if mapping is None:
            raise NoDepartmentMapping(category.value)

        primary = primary_department or mapping.primary_department
        escalated = priority >= mapping.escalation_threshold

        notified: list[str] = [primary]
        if escalated:
            notified.extend(mapping.secondary_departments)

        for other in implicated:
            if other == category:
                continue
            other_mapping = config.mapping_for(other)
            if other_mapping is None:
                logger.info("Implicated category %s has no mapping; not notified", other.value)
                continue
            notified.append(other_mapping.primary_department)

        return RoutingDecision(
            primary_department=primary,
            secondary_departments=tuple(mapping.secondary_departments),
            escalated=escalated,
            notified_departments=_ordered_unique(notified),
            category=category,
            priority=int(priority),
            escalation_threshold=mapping.escalation_threshold,
            mapping_version=config.version,
        )

    def reescalate(self, decision: RoutingDecision, priority: int, config: PipelineConfig) -> RoutingDecision:
        """Re-evaluate escalation for a new priority; departments already notified stay notified."""
        fresh = self.route(decision.category, priority, config, primary_department=decision.primary_department)
        return RoutingDecision(
            primary_department=decision.primary_department,
            secondary_departments=fresh.secondary_departments,
            escalated=fresh.escalated,
            notified_departments=_ordered_unique(list(decision.notified_departments) + list(fresh.notified_departments)),
            category=decision.category,
            priority=int(priority),
            escalation_threshold=fresh.escalation_threshold,
            mapping_version=config.version,
        )
