"""
Unit tests for the onboarding session entity.
Tests creation, the pure transition functions, step helpers and analytics.
"""

from dataclasses import FrozenInstanceError, replace
from datetime import timedelta

import pytest

from onboarding_tracker.logic.email import Email
from onboarding_tracker.logic.onboarding_session import (
    STEP_ORDER,
    TOTAL_STEPS,
    TRACKED_STEPS,
    DeviceInfo,
    OnboardingStatus,
    OnboardingStep,
    abandon_onboarding,
    advance_onboarding_step,
    average_step_duration_minutes,
    calculate_onboarding_progress,
    calculate_session_analytics,
    create_onboarding_session,
    extend_session_expiry,
    generate_analytics_summary,
    get_all_steps,
    get_current_step_duration_minutes,
    get_next_onboarding_step,
    get_session_duration_minutes,
    get_step_display_name,
    get_step_number,
    is_session_expired,
    is_step_accessible,
    is_valid_transition,
    minutes_until_expiry,
    pause_onboarding,
    record_ab_test_variant,
    resume_onboarding,
    update_device_info,
    update_onboarding_metadata,
    update_onboarding_step_data,
)


def complete_all_steps(session, start, minutes_per_step=10):
    """Walk a session through every step, spending minutes_per_step on each."""
    at = start
    for step in STEP_ORDER[1:]:
        at = at + timedelta(minutes=minutes_per_step)
        session = advance_onboarding_step(session, step, now=at)
    return session


class TestCreateOnboardingSession:
    """Test cases for create_onboarding_session."""

    def test_new_session_defaults(self, now):
        session = create_onboarding_session(Email("a@b.com"), now=now)

        assert session.current_step == OnboardingStep.WELCOME
        assert session.status == OnboardingStatus.IN_PROGRESS
        assert session.completed_steps == ()
        assert session.started_at == now
        assert session.last_activity_at == now
        assert session.expires_at == session.started_at + timedelta(hours=24)
        assert session.completed_at is None
        assert session.step_data == {}
        assert session.metadata == {}
        assert session.revision == 1
        assert session.recovery_token

    def test_initializes_step_timestamps_and_durations(self, new_session, now):
        timestamps = new_session.analytics.step_timestamps
        assert timestamps[OnboardingStep.WELCOME] == (now,)
        assert all(timestamps[step] == () for step in STEP_ORDER[1:])
        assert set(new_session.analytics.step_durations) == set(STEP_ORDER)
        assert all(value == 0 for value in new_session.analytics.step_durations.values())

    def test_records_device_and_conversion_source(self, new_session, device_info):
        assert new_session.analytics.device_info == device_info
        assert new_session.analytics.conversion_source == "google"

    def test_custom_expiry(self, user_email, now):
        session = create_onboarding_session(user_email, expiry_hours=2, now=now)
        assert session.expires_at == now + timedelta(hours=2)

    def test_ids_and_tokens_are_unique(self, user_email, now):
        first = create_onboarding_session(user_email, now=now)
        second = create_onboarding_session(user_email, now=now)
        assert first.id != second.id
        assert first.recovery_token != second.recovery_token

    def test_requires_validated_email(self, now):
        with pytest.raises(TypeError):
            create_onboarding_session("a@b.com", now=now)

    def test_session_is_immutable(self, new_session):
        with pytest.raises(FrozenInstanceError):
            new_session.status = OnboardingStatus.PAUSED


class TestAdvanceOnboardingStep:
    """Test cases for advance_onboarding_step."""

    def test_moves_to_next_step(self, new_session, now):
        later = now + timedelta(minutes=5)
        advanced = advance_onboarding_step(new_session, OnboardingStep.BUSINESS, now=later)

        assert advanced.current_step == OnboardingStep.BUSINESS
        assert advanced.completed_steps == (OnboardingStep.WELCOME,)
        assert advanced.analytics.step_timestamps[OnboardingStep.BUSINESS] == (later,)
        assert advanced.analytics.step_durations[OnboardingStep.WELCOME] == 5 * 60 * 1000
        assert advanced.last_activity_at == later
        assert advanced.analytics.last_activity_at == later
        assert advanced.revision == new_session.revision + 1

    def test_does_not_mutate_input(self, new_session, now):
        advance_onboarding_step(new_session, OnboardingStep.BUSINESS, {"business": {"a": 1}}, now=now)
        assert new_session.current_step == OnboardingStep.WELCOME
        assert new_session.step_data == {}
        assert new_session.analytics.step_timestamps[OnboardingStep.BUSINESS] == ()

    def test_accepts_step_value_strings(self, new_session, now):
        advanced = advance_onboarding_step(new_session, "business", now=now)
        assert advanced.current_step == OnboardingStep.BUSINESS

    def test_merges_step_data_patch_wins(self, new_session, now):
        session = update_onboarding_step_data(new_session, {"business": {"company_name": "Old"}, "x": 1}, now=now)
        advanced = advance_onboarding_step(
            session, OnboardingStep.BUSINESS, {"business": {"company_name": "New"}}, now=now
        )
        assert advanced.step_data == {"business": {"company_name": "New"}, "x": 1}

    def test_same_step_does_not_duplicate_completed_steps(self, new_session, now):
        once = advance_onboarding_step(new_session, OnboardingStep.BUSINESS, now=now + timedelta(minutes=1))
        twice = advance_onboarding_step(once, OnboardingStep.BUSINESS, now=now + timedelta(minutes=2))

        assert twice.completed_steps == (OnboardingStep.WELCOME,)
        assert twice.analytics.step_durations == once.analytics.step_durations
        assert twice.analytics.step_timestamps == once.analytics.step_timestamps
        assert twice.last_activity_at == now + timedelta(minutes=2)

    def test_duration_falls_back_to_last_activity(self, new_session, now):
        session = replace(
            new_session,
            analytics=replace(
                new_session.analytics,
                step_timestamps={**new_session.analytics.step_timestamps, OnboardingStep.WELCOME: ()},
            ),
        )
        advanced = advance_onboarding_step(session, OnboardingStep.BUSINESS, now=now + timedelta(seconds=3))
        assert advanced.analytics.step_durations[OnboardingStep.WELCOME] == 3000

    def test_completion_sets_status_and_timestamp(self, new_session, now):
        completed = complete_all_steps(new_session, now)
        finished_at = now + timedelta(minutes=60)

        assert completed.status == OnboardingStatus.COMPLETED
        assert completed.current_step == OnboardingStep.COMPLETE
        assert completed.completed_at == finished_at
        assert completed.analytics.completed_at == finished_at
        assert completed.completed_steps == TRACKED_STEPS

    def test_completing_twice_is_idempotent(self, new_session, now):
        completed = complete_all_steps(new_session, now)
        again = advance_onboarding_step(completed, OnboardingStep.COMPLETE, now=now + timedelta(hours=3))

        assert again.completed_steps == completed.completed_steps
        assert again.completed_at == completed.completed_at
        assert again.analytics.step_durations == completed.analytics.step_durations
        assert again.status == OnboardingStatus.COMPLETED

    def test_moving_back_records_revisit(self, new_session, now):
        business = advance_onboarding_step(new_session, OnboardingStep.BUSINESS, now=now + timedelta(minutes=1))
        back = advance_onboarding_step(business, OnboardingStep.WELCOME, now=now + timedelta(minutes=3))

        assert back.current_step == OnboardingStep.WELCOME
        assert back.completed_steps == (OnboardingStep.WELCOME, OnboardingStep.BUSINESS)
        assert back.analytics.step_timestamps[OnboardingStep.WELCOME] == (now, now + timedelta(minutes=3))
        assert back.analytics.step_durations[OnboardingStep.BUSINESS] == 2 * 60 * 1000

    def test_does_not_guard_transitions(self, new_session, now):
        jumped = advance_onboarding_step(new_session, OnboardingStep.TESTING, now=now)
        assert jumped.current_step == OnboardingStep.TESTING
        assert jumped.completed_steps == (OnboardingStep.WELCOME,)


class TestLifecycleTransitions:
    """Test cases for pause/resume/abandon/expiry transitions."""

    def test_pause_and_resume_only_change_status(self, new_session, now):
        later = now + timedelta(minutes=7)
        paused = pause_onboarding(new_session, now=later)

        assert paused.status == OnboardingStatus.PAUSED
        assert paused.last_activity_at == later
        assert paused.analytics == new_session.analytics
        assert paused.step_data == new_session.step_data
        assert paused.current_step == new_session.current_step

        resumed = resume_onboarding(paused, now=later + timedelta(minutes=1))
        assert resumed.status == OnboardingStatus.IN_PROGRESS
        assert resumed.analytics == new_session.analytics
        assert resumed.revision == new_session.revision + 2

    def test_abandon_records_reason(self, new_session, now):
        later = now + timedelta(minutes=40)
        abandoned = abandon_onboarding(new_session, "inactive_timeout", now=later)

        assert abandoned.status == OnboardingStatus.ABANDONED
        assert abandoned.analytics.abandoned_at == later
        assert abandoned.analytics.abandonment_reason == "inactive_timeout"

    def test_abandon_without_reason(self, new_session, now):
        abandoned = abandon_onboarding(new_session, now=now)
        assert abandoned.analytics.abandonment_reason is None

    def test_extend_is_relative_to_now(self, new_session, now):
        later = now + timedelta(hours=10)
        extended = extend_session_expiry(new_session, 24, now=later)
        assert extended.expires_at == later + timedelta(hours=24)

        shortened = extend_session_expiry(new_session, 1, now=now)
        assert shortened.expires_at == now + timedelta(hours=1)

    def test_extend_does_not_stack(self, new_session, now):
        once = extend_session_expiry(new_session, 24, now=now)
        twice = extend_session_expiry(once, 24, now=now)
        assert twice.expires_at == once.expires_at

    def test_expiry_is_strict(self, new_session):
        assert not is_session_expired(new_session, now=new_session.started_at)
        assert not is_session_expired(new_session, now=new_session.expires_at)
        assert is_session_expired(new_session, now=new_session.expires_at + timedelta(seconds=1))

    def test_minutes_until_expiry_is_signed(self, new_session, now):
        assert minutes_until_expiry(new_session, now=now) == 24 * 60
        assert minutes_until_expiry(new_session, now=now + timedelta(hours=25)) == -60


class TestMergeOnlyUpdates:
    """Test cases for the merge-only map updates."""

    def test_metadata_merge(self, new_session, now):
        first = update_onboarding_metadata(new_session, {"a": 1, "b": 2}, now=now)
        second = update_onboarding_metadata(first, {"b": 3}, now=now)
        assert second.metadata == {"a": 1, "b": 3}
        assert new_session.metadata == {}

    def test_ab_test_variant_keeps_latest(self, new_session, now):
        first = record_ab_test_variant(new_session, "cta_color", "blue", now=now)
        second = record_ab_test_variant(first, "cta_color", "green", now=now)
        third = record_ab_test_variant(second, "pricing", "b", now=now)
        assert third.analytics.ab_test_variants == {"cta_color": "green", "pricing": "b"}

    def test_device_info_is_replaced_wholesale(self, new_session, now):
        replacement = DeviceInfo(user_agent="curl/8.0")
        updated = update_device_info(new_session, replacement, now=now)
        assert updated.analytics.device_info == replacement
        assert updated.analytics.device_info.city is None

        cleared = update_device_info(updated, None, now=now)
        assert cleared.analytics.device_info is None


class TestProgress:
    """Test cases for calculate_onboarding_progress."""

    @pytest.mark.parametrize(
        "completed, expected",
        [
            ((), 0),
            ((OnboardingStep.WELCOME,), 17),
            ((OnboardingStep.WELCOME, OnboardingStep.BUSINESS), 33),
            (TRACKED_STEPS[:3], 50),
            (TRACKED_STEPS, 100),
        ],
    )
    def test_progress(self, new_session, completed, expected):
        session = replace(new_session, completed_steps=tuple(completed))
        assert calculate_onboarding_progress(session) == expected

    def test_progress_is_capped(self, new_session):
        session = replace(new_session, completed_steps=STEP_ORDER)
        assert calculate_onboarding_progress(session) == 100


class TestStepHelpers:
    """Test cases for step navigation helpers."""

    def test_all_steps_in_order(self):
        assert [step.value for step in get_all_steps()] == [
            "welcome", "business", "integration", "verification", "bot-setup", "testing", "complete",
        ]
        assert TOTAL_STEPS == 6

    def test_step_number_and_display_name(self):
        assert get_step_number(OnboardingStep.WELCOME) == 1
        assert get_step_number("bot-setup") == 5
        assert get_step_display_name(OnboardingStep.INTEGRATION) == "WhatsApp Integration"

    def test_next_step(self):
        assert get_next_onboarding_step(OnboardingStep.WELCOME) == OnboardingStep.BUSINESS
        assert get_next_onboarding_step(OnboardingStep.TESTING) == OnboardingStep.COMPLETE
        assert get_next_onboarding_step(OnboardingStep.COMPLETE) is None

    def test_unknown_step_raises(self):
        with pytest.raises(ValueError):
            get_step_number("payment")

    @pytest.mark.parametrize(
        "current, target, allowed",
        [
            (OnboardingStep.WELCOME, OnboardingStep.BUSINESS, True),
            (OnboardingStep.WELCOME, OnboardingStep.INTEGRATION, False),
            (OnboardingStep.BUSINESS, OnboardingStep.WELCOME, False),
            (OnboardingStep.TESTING, OnboardingStep.BUSINESS, False),
            (OnboardingStep.BUSINESS, OnboardingStep.BUSINESS, True),
            (OnboardingStep.TESTING, OnboardingStep.COMPLETE, True),
            (OnboardingStep.COMPLETE, OnboardingStep.COMPLETE, True),
            (OnboardingStep.COMPLETE, OnboardingStep.TESTING, False),
        ],
    )
    def test_is_valid_transition(self, current, target, allowed):
        assert is_valid_transition(current, target) is allowed

    def test_step_accessibility(self, new_session, now):
        assert is_step_accessible(new_session, OnboardingStep.WELCOME)
        assert is_step_accessible(new_session, OnboardingStep.BUSINESS)
        assert not is_step_accessible(new_session, OnboardingStep.INTEGRATION)

        advanced = advance_onboarding_step(new_session, OnboardingStep.BUSINESS, now=now)
        assert is_step_accessible(advanced, "welcome")
        assert is_step_accessible(advanced, "integration")
        assert not is_step_accessible(advanced, "verification")


class TestSessionAnalyticsSummary:
    """Test cases for per-session durations and the analytics summary."""

    def test_summary_of_active_session(self, new_session, now):
        session = advance_onboarding_step(new_session, OnboardingStep.BUSINESS, now=now + timedelta(minutes=10))
        session = record_ab_test_variant(session, "cta_color", "blue", now=now + timedelta(minutes=10))

        summary = generate_analytics_summary(session, now=now + timedelta(minutes=30))

        assert summary.session_id == session.id
        assert summary.status == OnboardingStatus.IN_PROGRESS
        assert summary.current_step == OnboardingStep.BUSINESS
        assert summary.progress == 17
        assert summary.completed_steps == 1
        assert summary.total_steps == 6
        assert summary.total_duration_minutes == 30
        assert summary.current_step_duration_minutes == 20
        assert summary.average_step_duration == 10.0
        assert summary.conversion_source == "google"
        assert summary.ab_test_variants == {"cta_color": "blue"}
        assert summary.is_expired is False
        assert summary.time_to_expiry == 24 * 60 - 30

    def test_expired_session_has_no_time_left(self, new_session, now):
        summary = generate_analytics_summary(new_session, now=now + timedelta(hours=30))
        assert summary.is_expired is True
        assert summary.time_to_expiry == 0

    def test_average_ignores_unvisited_steps(self, new_session, now):
        session = advance_onboarding_step(new_session, OnboardingStep.BUSINESS, now=now + timedelta(minutes=4))
        session = advance_onboarding_step(session, OnboardingStep.INTEGRATION, now=now + timedelta(minutes=10))
        # 4 and 6 minutes; five untouched steps do not drag the mean down
        assert average_step_duration_minutes(session) == 5.0
        assert average_step_duration_minutes(new_session) == 0.0

    def test_duration_stops_at_completion(self, new_session, now):
        completed = complete_all_steps(new_session, now)
        assert get_session_duration_minutes(completed, now=now + timedelta(days=2)) == 60

    def test_duration_stops_at_abandonment(self, new_session, now):
        abandoned = abandon_onboarding(new_session, now=now + timedelta(minutes=45))
        assert get_session_duration_minutes(abandoned, now=now + timedelta(days=2)) == 45

    def test_current_step_duration(self, new_session, now):
        assert get_current_step_duration_minutes(new_session, now=now + timedelta(minutes=12)) == 12


class TestCalculateSessionAnalytics:
    """Test cases for aggregate analytics."""

    def test_empty_input(self):
        summary = calculate_session_analytics([])
        assert summary.total_sessions == 0
        assert summary.conversion_rate == 0.0
        assert summary.average_completion_time == 0.0
        assert summary.step_dropoff_rates == {step.value: 0.0 for step in TRACKED_STEPS}

    def test_aggregates_mixed_sessions(self, user_email, now):
        fresh = create_onboarding_session(user_email, conversion_source="google", now=now)
        completed = complete_all_steps(
            create_onboarding_session(user_email, conversion_source="google", now=now), now
        )
        dropped = advance_onboarding_step(
            create_onboarding_session(user_email, now=now), OnboardingStep.BUSINESS, now=now
        )
        dropped = abandon_onboarding(dropped, "inactive_timeout", now=now + timedelta(minutes=40))

        summary = calculate_session_analytics([fresh, completed, dropped])

        assert summary.total_sessions == 3
        assert summary.completed_sessions == 1
        assert summary.abandoned_sessions == 1
        assert summary.average_completion_time == 60.0
        assert summary.conversion_rate == pytest.approx(100 / 3)
        assert summary.step_dropoff_rates["welcome"] == 0.0
        assert summary.step_dropoff_rates["business"] == pytest.approx(100 / 3)
        assert summary.step_dropoff_rates["integration"] == pytest.approx(200 / 3)
        assert summary.step_dropoff_rates["testing"] == pytest.approx(200 / 3)
        assert summary.common_abandonment_reasons == {"inactive_timeout": 1}
        assert summary.conversion_source_breakdown == {"google": 2, "unknown": 1}

    def test_reasons_only_from_abandoned_sessions(self, new_session, now):
        tagged = replace(
            new_session, analytics=replace(new_session.analytics, abandonment_reason="stale")
        )
        summary = calculate_session_analytics([tagged])
        assert summary.common_abandonment_reasons == {}
