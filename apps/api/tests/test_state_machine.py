"""
Tests for entity and phase transitions.
"""

from datetime import datetime

import pytest

from fundsync.core.exceptions import ProviderNotFoundError
from fundsync.models.entity_progress import EntityProgress, EntityStatus, PriorityClass
from fundsync.models.ingestion_phase import IngestionPhase
from fundsync.providers.base import Facet
from fundsync.services import state_machine
from fundsync.services.state_machine import InvalidTransitionError

NOW = datetime(2024, 5, 10, 12, 0, 0)


def make_entity(status=EntityStatus.PENDING, error_count=0, **kwargs) -> EntityProgress:
    values = dict(
        ticker="PETR4",
        status=status,
        error_count=error_count,
        priority=PriorityClass.NORMAL,
        has_basic_profile=False,
        has_historical_statements=False,
        has_ttm_update=False,
        has_secondary_data=False,
    )
    values.update(kwargs)
    return EntityProgress(**values)


class TestEntityTransitions:

    def test_claim_pending(self):
        entity = make_entity()
        state_machine.apply(entity, state_machine.claim(entity, NOW))
        assert entity.status == EntityStatus.PROCESSING
        assert entity.last_attempted_at == NOW

    def test_claim_completed_is_rejected(self):
        with pytest.raises(InvalidTransitionError):
            state_machine.claim(make_entity(EntityStatus.COMPLETED), NOW)

    def test_success_sets_flags_and_clears_errors(self):
        entity = make_entity(
            EntityStatus.PROCESSING,
            error_count=2,
            last_error="timeout",
            priority=PriorityClass.REQUESTED,
        )
        updates = state_machine.on_success(
            entity, {Facet.HISTORICAL_STATEMENTS, Facet.TTM_UPDATE}, NOW
        )
        state_machine.apply(entity, updates)

        assert entity.status == EntityStatus.COMPLETED
        assert entity.error_count == 0
        assert entity.last_error is None
        assert entity.priority == PriorityClass.NORMAL
        assert entity.last_completed_at == NOW
        assert entity.has_historical_statements and entity.has_ttm_update
        assert not entity.has_basic_profile and not entity.has_secondary_data

    def test_success_never_clears_a_flag(self):
        entity = make_entity(EntityStatus.PROCESSING, has_basic_profile=True)
        updates = state_machine.on_success(entity, {Facet.TTM_UPDATE}, NOW)
        assert "has_basic_profile" not in updates

    def test_failure_below_ceiling_returns_to_pending(self):
        entity = make_entity(EntityStatus.PROCESSING, error_count=0)
        updates = state_machine.on_failure(entity, ProviderNotFoundError("ward", "PETR4"), 3)
        assert updates["status"] == EntityStatus.PENDING
        assert updates["error_count"] == 1
        assert "no data for PETR4" in updates["last_error"]

    def test_failure_at_ceiling_moves_to_error(self):
        entity = make_entity(EntityStatus.PROCESSING, error_count=2)
        updates = state_machine.on_failure(entity, RuntimeError("boom"), 3)
        assert updates["status"] == EntityStatus.ERROR
        assert updates["error_count"] == 3

    def test_failure_message_is_truncated(self):
        entity = make_entity(EntityStatus.PROCESSING)
        updates = state_machine.on_failure(entity, RuntimeError("x" * 5000), 3)
        assert len(updates["last_error"]) == state_machine.MAX_ERROR_MESSAGE_LENGTH

    def test_failure_without_message_uses_type_name(self):
        entity = make_entity(EntityStatus.PROCESSING)
        updates = state_machine.on_failure(entity, TimeoutError(), 3)
        assert updates["last_error"] == "TimeoutError"

    @pytest.mark.parametrize("status", [EntityStatus.PENDING, EntityStatus.COMPLETED, EntityStatus.ERROR])
    def test_outcomes_require_processing(self, status):
        entity = make_entity(status)
        with pytest.raises(InvalidTransitionError):
            state_machine.on_success(entity, set(), NOW)
        with pytest.raises(InvalidTransitionError):
            state_machine.on_failure(entity, RuntimeError(), 3)

    @pytest.mark.parametrize("error_count", [0, 1, 2, 5])
    def test_every_outcome_leaves_processing(self, error_count):
        entity = make_entity(EntityStatus.PROCESSING, error_count=error_count)
        ok = state_machine.on_success(entity, set(), NOW)
        failed = state_machine.on_failure(entity, RuntimeError(), 3)
        assert ok["status"] == EntityStatus.COMPLETED
        assert failed["status"] in (EntityStatus.PENDING, EntityStatus.ERROR)

    def test_reset_clears_everything(self):
        updates = state_machine.reset_updates()
        assert updates["status"] == EntityStatus.PENDING
        assert updates["error_count"] == 0
        for flag in state_machine.FACET_FLAGS.values():
            assert updates[flag] is False

    def test_request_raises_priority(self):
        updates = state_machine.request_updates()
        assert updates["priority"] == PriorityClass.REQUESTED
        assert updates["status"] == EntityStatus.PENDING


class TestPhaseTransitions:

    @pytest.mark.parametrize(
        "total, with_history, pending, processing, expected",
        [
            (0, 0, 0, 0, IngestionPhase.DISCOVERING),
            (7, 5, 2, 0, IngestionPhase.PROCESSING_HISTORICAL),
            (7, 7, 1, 0, IngestionPhase.PROCESSING_TTM),
            (7, 7, 0, 1, IngestionPhase.PROCESSING_TTM),
            (7, 7, 0, 0, IngestionPhase.COMPLETED),
        ],
    )
    def test_derive_phase(self, total, with_history, pending, processing, expected):
        assert state_machine.derive_phase(total, with_history, pending, processing) == expected

    def test_abandoned_entities_do_not_hold_history_phase(self):
        # 2 of 3 have history, the third is in ERROR without any
        assert state_machine.derive_phase(3, 2, 0, 0) == IngestionPhase.PROCESSING_HISTORICAL
        assert state_machine.derive_phase(3, 2, 0, 0, abandoned=1) == IngestionPhase.COMPLETED
        assert state_machine.derive_phase(3, 2, 1, 0, abandoned=1) == IngestionPhase.PROCESSING_TTM

    def test_phase_only_moves_forward(self):
        assert (
            state_machine.advance_phase(IngestionPhase.PROCESSING_TTM, IngestionPhase.PROCESSING_HISTORICAL)
            == IngestionPhase.PROCESSING_TTM
        )
        assert (
            state_machine.advance_phase(IngestionPhase.PROCESSING_HISTORICAL, IngestionPhase.DISCOVERING)
            == IngestionPhase.PROCESSING_HISTORICAL
        )

    def test_phase_can_skip_forward(self):
        assert (
            state_machine.advance_phase(IngestionPhase.DISCOVERING, IngestionPhase.COMPLETED)
            == IngestionPhase.COMPLETED
        )

    def test_completed_loops_back_to_ttm(self):
        assert (
            state_machine.advance_phase(IngestionPhase.COMPLETED, IngestionPhase.PROCESSING_TTM)
            == IngestionPhase.PROCESSING_TTM
        )
        assert (
            state_machine.advance_phase(IngestionPhase.COMPLETED, IngestionPhase.PROCESSING_HISTORICAL)
            == IngestionPhase.COMPLETED
        )
