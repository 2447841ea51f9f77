"""Property-based tests for configuration parsing."""

from hypothesis import given
from hypothesis import strategies as st

from feedbot.config import SystemPolicy, parse_duration


class TestConfigProperties:
    """Property-based tests for config helpers."""

    @given(
        st.integers(min_value=0, max_value=99),
        st.integers(min_value=0, max_value=59),
        st.integers(min_value=0, max_value=59),
    )
    def test_duration_components_add_up(self, hours, minutes, seconds):
        """For any h/m/s combination the parsed value is the sum in seconds."""
        text = f"{hours}h{minutes}m{seconds}s"
        assert parse_duration(text) == hours * 3600 + minutes * 60 + seconds

    @given(
        st.integers(min_value=0, max_value=10_000),
        st.integers(min_value=0, max_value=10_000),
        st.integers(min_value=0, max_value=10_000),
        st.integers(min_value=0, max_value=64),
    )
    def test_resolved_policy_has_no_zero_values(
        self, max_items, max_keep, max_total, concurrent
    ):
        """Resolving always yields positive values and keeps explicit ones."""
        policy = SystemPolicy(
            max_items=max_items,
            max_keep=max_keep,
            max_total=max_total,
            concurrent=concurrent,
        ).resolve()

        assert policy.update_interval > 0
        assert policy.max_items > 0
        assert policy.max_keep > 0
        assert policy.max_total > 0
        assert policy.concurrent > 0
        if max_items:
            assert policy.max_items == max_items
        if concurrent:
            assert policy.concurrent == concurrent
