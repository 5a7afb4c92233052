from __future__ import annotations

import pytest

from civic_intel.domain.errors import NoDepartmentMapping
from civic_intel.domain.policy import PUBLIC_WORKS, SANITATION, TRAFFIC_MANAGEMENT, WATER_AUTHORITY
from civic_intel.domain.states import Category
from civic_intel.pipeline.routing import RoutingEngine
from conftest import default_pipeline_config


@pytest.fixture
def engine() -> RoutingEngine:
    return RoutingEngine()


@pytest.fixture
def config():
    return default_pipeline_config()


def test_road_damage_at_priority_nine_escalates(engine, config):
    decision = engine.route(Category.ROAD_DAMAGE, 9, config)
    assert decision.primary_department == PUBLIC_WORKS
    assert decision.escalated is True
    assert decision.escalation_threshold == 8
    assert TRAFFIC_MANAGEMENT in decision.notified_departments
    assert decision.notified_departments[0] == PUBLIC_WORKS


def test_below_threshold_notifies_primary_only(engine, config):
    decision = engine.route(Category.ROAD_DAMAGE, 7, config)
    assert decision.escalated is False
    assert decision.notified_departments == (PUBLIC_WORKS,)


@pytest.mark.parametrize("priority", range(1, 11))
def test_escalated_iff_priority_reaches_threshold(engine, config, priority):
    for category in config.mappings:
        decision = engine.route(category, priority, config)
        assert decision.escalated == (priority >= decision.escalation_threshold)
        if decision.escalated:
            assert set(decision.secondary_departments) <= set(decision.notified_departments)
        assert decision.primary_department


def test_implicated_categories_append_primary_departments(engine, config):
    decision = engine.route(
        Category.POTHOLE,
        5,
        config,
        implicated=[Category.WATER_LEAKAGE, Category.GARBAGE_COLLECTION, Category.POTHOLE],
    )
    assert decision.primary_department == PUBLIC_WORKS
    assert decision.notified_departments == (PUBLIC_WORKS, WATER_AUTHORITY, SANITATION)


def test_notified_departments_deduplicated_in_order(engine, config):
    decision = engine.route(Category.DRAINAGE_BLOCKAGE, 9, config, implicated=[Category.GARBAGE_COLLECTION])
    # DRAINAGE_BLOCKAGE escalates to SANITATION, which the implicated category also maps to.
    assert decision.notified_departments == (PUBLIC_WORKS, SANITATION)


def test_unmapped_primary_raises(engine, config):
    with pytest.raises(NoDepartmentMapping) as exc:
        engine.route(Category.OTHER, 5, config)
    assert exc.value.category == "OTHER"


def test_unmapped_implicated_category_is_skipped(engine, config):
    decision = engine.route(Category.POTHOLE, 5, config, implicated=[Category.OTHER])
    assert decision.notified_departments == (PUBLIC_WORKS,)


def test_reescalate_keeps_previously_notified(engine, config):
    first = engine.route(Category.POTHOLE, 9, config)
    lowered = engine.reescalate(first, 3, config)
    assert lowered.escalated is False
    assert TRAFFIC_MANAGEMENT in lowered.notified_departments
    assert lowered.priority == 3


def test_decision_records_mapping_version(engine):
    config = default_pipeline_config()
    assert engine.route(Category.POTHOLE, 5, config).mapping_version == config.version
