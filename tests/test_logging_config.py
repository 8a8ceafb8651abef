"""Tests for structured logging helpers."""

from uuid import uuid4

import structlog

from household_core.domain.entitlements import Plan
from household_core.logging_config import (
    _plain_values,
    bind_context,
    clear_context,
    household_context,
)


class TestPlainValues:
    def test_ids_and_enums_render_as_strings(self):
        household_id = uuid4()

        event = _plain_values(
            None,
            "info",
            {"event": "plan_changed", "household_id": household_id, "plan": Plan.PREMIUM},
        )

        assert event == {
            "event": "plan_changed",
            "household_id": str(household_id),
            "plan": "premium",
        }


class TestHouseholdContext:
    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_binds_household_for_the_block_only(self):
        household_id = uuid4()
        bind_context(request_id="req-1")

        with household_context(household_id, invite_id="inv-1"):
            bound = structlog.contextvars.get_contextvars()
            assert bound["household_id"] == household_id
            assert bound["invite_id"] == "inv-1"
            assert bound["request_id"] == "req-1"

        assert structlog.contextvars.get_contextvars() == {"request_id": "req-1"}

    def test_nested_block_restores_outer_household(self):
        outer, inner = uuid4(), uuid4()

        with household_context(outer):
            with household_context(inner):
                assert structlog.contextvars.get_contextvars()["household_id"] == inner
            assert structlog.contextvars.get_contextvars()["household_id"] == outer
