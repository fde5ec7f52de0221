"""Tests for the circuit breaker state machine."""

import json

import pytest

from korero.autonomous.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerState,
    CircuitState,
    HaltCause,
)
from korero.autonomous.response_analyzer import LoopRecord
from korero.utils.exceptions import CircuitOpenError


def record(loop, files=0, errors=False, denials=False, exit_signal=False, output_length=100):
    return LoopRecord(
        loop_number=loop,
        files_changed=files,
        has_errors=errors,
        has_permission_denials=denials,
        exit_signal=exit_signal,
        output_length=output_length,
    )


@pytest.fixture
def breaker(tmp_path):
    return CircuitBreaker(
        CircuitBreakerConfig(),
        tmp_path / ".circuit_breaker_state",
        tmp_path / ".circuit_breaker_history",
    )


class TestNoProgress:
    """Stagnation through loops without progress."""

    def test_opens_exactly_at_threshold(self, breaker):
        assert breaker.record_result(record(1)) is CircuitState.CLOSED
        assert breaker.record_result(record(2)) is CircuitState.HALF_OPEN
        assert breaker.record_result(record(3)) is CircuitState.OPEN
        assert breaker.data.total_opens == 1
        assert breaker.halt_cause is HaltCause.NO_PROGRESS

    def test_progress_resets_counter(self, breaker):
        breaker.record_result(record(1))
        breaker.record_result(record(2, files=2))
        assert breaker.data.consecutive_no_progress == 0
        assert breaker.data.last_progress_loop == 2
        assert breaker.state is CircuitState.CLOSED

    def test_half_open_recovers_on_progress(self, breaker):
        breaker.record_result(record(1))
        breaker.record_result(record(2))
        assert breaker.state is CircuitState.HALF_OPEN

        assert breaker.record_result(record(3, files=1)) is CircuitState.CLOSED
        assert breaker.data.consecutive_no_progress == 0

    def test_exit_signal_counts_as_progress(self, breaker):
        for loop in range(1, 5):
            breaker.record_result(record(loop, exit_signal=True))
        assert breaker.state is CircuitState.CLOSED

    def test_custom_threshold(self, tmp_path):
        breaker = CircuitBreaker(
            CircuitBreakerConfig(no_progress_threshold=5),
            tmp_path / "state",
            tmp_path / "history",
        )
        states = [breaker.record_result(record(loop)) for loop in range(1, 6)]
        assert states[:4] == [CircuitState.CLOSED] + [CircuitState.HALF_OPEN] * 3
        assert states[4] is CircuitState.OPEN


class TestOtherCauses:
    """Repeated errors and permission denials."""

    def test_same_error_opens_at_threshold(self, breaker):
        for loop in range(1, 5):
            assert breaker.record_result(record(loop, files=1, errors=True)) is CircuitState.CLOSED
        assert breaker.record_result(record(5, files=1, errors=True)) is CircuitState.OPEN
        assert breaker.halt_cause is HaltCause.SAME_ERROR

    def test_error_run_broken_by_clean_loop(self, breaker):
        for loop in range(1, 5):
            breaker.record_result(record(loop, files=1, errors=True))
        breaker.record_result(record(5, files=1))
        assert breaker.data.consecutive_same_error == 0
        assert breaker.state is CircuitState.CLOSED

    def test_permission_denials_open_from_closed(self, breaker):
        breaker.record_result(record(1, files=1, denials=True))
        assert breaker.record_result(record(2, files=1, denials=True)) is CircuitState.OPEN
        assert breaker.halt_cause is HaltCause.PERMISSION_DENIED
        assert "ALLOWED_TOOLS" in breaker.data.reason

    def test_permission_denials_take_priority(self, breaker):
        breaker.record_result(record(1, denials=True))
        breaker.record_result(record(2, denials=True))
        assert breaker.halt_cause is HaltCause.PERMISSION_DENIED

    def test_permission_denials_open_from_half_open(self, breaker):
        breaker.record_result(record(1))
        breaker.record_result(record(2, denials=True))
        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.record_result(record(3, denials=True)) is CircuitState.OPEN
        assert breaker.halt_cause is HaltCause.PERMISSION_DENIED

    def test_recovery_suggestions_match_cause(self, breaker):
        breaker.record_result(record(1, denials=True))
        breaker.record_result(record(2, denials=True))
        suggestions = breaker.recovery_suggestions()
        assert any("ALLOWED_TOOLS" in s for s in suggestions)
        assert suggestions[-1].endswith("korero reset-circuit")


class TestOpenState:
    """OPEN is terminal until reset."""

    def _open(self, breaker):
        for loop in range(1, 4):
            breaker.record_result(record(loop))
        assert breaker.state is CircuitState.OPEN

    def test_progress_does_not_close_open_circuit(self, breaker):
        self._open(breaker)
        assert breaker.record_result(record(4, files=3)) is CircuitState.OPEN
        assert breaker.data.total_opens == 1

    def test_cannot_execute_when_open(self, breaker):
        self._open(breaker)
        assert not breaker.can_execute()
        assert breaker.should_halt()
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.ensure_can_execute()
        assert exc_info.value.reason == "no_progress"

    def test_reset_closes_and_zeroes(self, breaker):
        self._open(breaker)
        state = breaker.reset()
        assert state.state is CircuitState.CLOSED
        assert state.consecutive_no_progress == 0
        assert state.total_opens == 0
        assert breaker.can_execute()

    def test_reset_is_idempotent(self, tmp_path):
        opened = CircuitBreaker(CircuitBreakerConfig(), tmp_path / "a_state", tmp_path / "a_history")
        self._open(opened)
        fresh = CircuitBreaker(CircuitBreakerConfig(), tmp_path / "b_state", tmp_path / "b_history")

        assert opened.reset().to_dict() == fresh.reset().to_dict()
        assert opened.reset().to_dict() == fresh.reset().to_dict()


class TestPersistence:
    """State file handling."""

    def test_state_survives_reload(self, breaker):
        breaker.record_result(record(1))
        breaker.record_result(record(2))
        reloaded = CircuitBreaker(breaker.config, breaker.state_file, breaker.history_file)
        assert reloaded.state is CircuitState.HALF_OPEN
        assert reloaded.data.consecutive_no_progress == 2

    def test_corrupted_state_file_means_closed(self, tmp_path):
        state_file = tmp_path / "state"
        state_file.write_text('{"state": "OPEN", "consec')
        breaker = CircuitBreaker(CircuitBreakerConfig(), state_file, tmp_path / "history")
        assert breaker.state is CircuitState.CLOSED

    def test_invalid_state_value_means_closed(self, tmp_path):
        state_file = tmp_path / "state"
        state_file.write_text(json.dumps({"state": "SIDEWAYS"}))
        breaker = CircuitBreaker(CircuitBreakerConfig(), state_file, tmp_path / "history")
        assert breaker.state is CircuitState.CLOSED

    def test_unknown_fields_ignored_and_missing_defaulted(self, tmp_path):
        state_file = tmp_path / "state"
        state_file.write_text(json.dumps({"state": "HALF_OPEN", "consecutive_no_progress": 2, "future": 1}))
        breaker = CircuitBreaker(CircuitBreakerConfig(), state_file, tmp_path / "history")
        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.data.consecutive_same_error == 0

    def test_transitions_logged_to_history(self, breaker):
        for loop in range(1, 4):
            breaker.record_result(record(loop))
        history = breaker.get_history()
        assert [(h["from_state"], h["to_state"]) for h in history] == [
            ("CLOSED", "HALF_OPEN"),
            ("HALF_OPEN", "OPEN"),
        ]
        assert history[-1]["loop"] == 3

    def test_state_round_trip(self):
        state = CircuitBreakerState(state=CircuitState.OPEN, total_opens=2, cause="same_error")
        assert CircuitBreakerState.from_dict(state.to_dict()) == state


class TestOutputDecline:
    """Output length tracking is diagnostic."""

    def test_sharp_decline_is_counted(self, breaker):
        breaker.record_result(record(1, files=1, output_length=1000))
        breaker.record_result(record(2, files=1, output_length=100))
        assert breaker.data.consecutive_output_decline == 1
        assert breaker.state is CircuitState.CLOSED

    def test_small_decline_resets_count(self, breaker):
        breaker.record_result(record(1, files=1, output_length=1000))
        breaker.record_result(record(2, files=1, output_length=100))
        breaker.record_result(record(3, files=1, output_length=90))
        assert breaker.data.consecutive_output_decline == 0
