"""
Tests for the validation job state machine.
"""

from uuid import uuid4

import pytest
from hypothesis import given
from hypothesis import strategies as st

from app.exceptions import InvalidJobTransitionError
from app.models.api import JobStatus
from app.services import job_state

statuses = st.sampled_from(list(JobStatus))


class TestTransitions:
    """Tests for the forward-only edges."""

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (JobStatus.CREDITS_RESERVED, JobStatus.QUEUED),
            (JobStatus.QUEUED, JobStatus.PROCESSING),
            (JobStatus.PROCESSING, JobStatus.COMPLETED),
            (JobStatus.PROCESSING, JobStatus.FAILED),
            (JobStatus.CREDITS_RESERVED, JobStatus.CANCELLED),
            (JobStatus.QUEUED, JobStatus.CANCELLED),
            (JobStatus.PROCESSING, JobStatus.CANCELLED),
        ],
    )
    def test_allowed(self, current, target):
        assert job_state.can_transition(current, target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (JobStatus.QUEUED, JobStatus.CREDITS_RESERVED),
            (JobStatus.PROCESSING, JobStatus.QUEUED),
            (JobStatus.CREDITS_RESERVED, JobStatus.COMPLETED),
            (JobStatus.QUEUED, JobStatus.COMPLETED),
        ],
    )
    def test_rejected(self, current, target):
        assert not job_state.can_transition(current, target)

    def test_accepts_plain_strings(self):
        assert job_state.can_transition("queued", "processing")
        assert job_state.is_terminal("cancelled")

    def test_assert_transition_raises(self):
        job_id = uuid4()
        with pytest.raises(InvalidJobTransitionError) as exc_info:
            job_state.assert_transition(job_id, JobStatus.COMPLETED, JobStatus.CANCELLED)
        assert exc_info.value.job_id == job_id
        assert exc_info.value.current == "completed"
        assert exc_info.value.target == "cancelled"


class TestTerminalStates:
    """Terminal states are absorbing."""

    @given(terminal=st.sampled_from(sorted(job_state.TERMINAL_STATES)), target=statuses)
    def test_no_edge_leaves_a_terminal_state(self, terminal, target):
        assert not job_state.can_transition(terminal, target)

    @given(current=statuses)
    def test_cancellable_iff_not_terminal(self, current):
        assert (current in job_state.CANCELLABLE_STATES) == (not job_state.is_terminal(current))

    @given(current=statuses, target=statuses)
    def test_no_self_loops(self, current, target):
        if current == target:
            assert not job_state.can_transition(current, target)
