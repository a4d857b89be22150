"""
Onboarding session entity.

Defines the onboarding session aggregate, its step/status enumerations and
the pure functions that derive new session values from old ones. Nothing in
this module performs I/O; every transition returns a new OnboardingSession
and leaves its input untouched.
"""

from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from uuid import uuid4

from onboarding_tracker.logic.email import Email
from onboarding_tracker.utils.clock import utcnow


class OnboardingStep(str, Enum):
    """Steps of the onboarding wizard in canonical order."""

    WELCOME = "welcome"
    BUSINESS = "business"
    INTEGRATION = "integration"
    VERIFICATION = "verification"
    BOT_SETUP = "bot-setup"
    TESTING = "testing"
    COMPLETE = "complete"


class OnboardingStatus(str, Enum):
    """Lifecycle status of an onboarding session."""

    IN_PROGRESS = "in-progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


STEP_ORDER: Tuple[OnboardingStep, ...] = tuple(OnboardingStep)
# Progress is measured against the steps before the terminal "complete" step
TRACKED_STEPS: Tuple[OnboardingStep, ...] = STEP_ORDER[:-1]
TOTAL_STEPS = len(TRACKED_STEPS)

DEFAULT_EXPIRY_HOURS = 24

STEP_DISPLAY_NAMES: Dict[OnboardingStep, str] = {
    OnboardingStep.WELCOME: "Welcome",
    OnboardingStep.BUSINESS: "Business Information",
    OnboardingStep.INTEGRATION: "WhatsApp Integration",
    OnboardingStep.VERIFICATION: "Phone Verification",
    OnboardingStep.BOT_SETUP: "Bot Configuration",
    OnboardingStep.TESTING: "Test Your Bot",
    OnboardingStep.COMPLETE: "Complete",
}


@dataclass(frozen=True)
class DeviceInfo:
    """Client device the session was last seen from."""

    user_agent: str
    ip: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_agent": self.user_agent,
            "ip": self.ip,
            "country": self.country,
            "city": self.city,
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional["DeviceInfo"]:
        if not data:
            return None
        return cls(
            user_agent=data.get("user_agent") or data.get("userAgent") or "",
            ip=data.get("ip"),
            country=data.get("country"),
            city=data.get("city"),
        )


@dataclass(frozen=True)
class SessionAnalytics:
    """Timing and attribution data embedded in a session.

    step_durations holds cumulative milliseconds per step; step_timestamps
    holds every entry time of a step (re-entries append).
    """

    started_at: datetime
    last_activity_at: datetime
    step_timestamps: Dict[OnboardingStep, Tuple[datetime, ...]]
    step_durations: Dict[OnboardingStep, int]
    completed_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    device_info: Optional[DeviceInfo] = None
    ab_test_variants: Dict[str, str] = field(default_factory=dict)
    conversion_source: Optional[str] = None
    abandonment_reason: Optional[str] = None


@dataclass(frozen=True)
class OnboardingSession:
    """Aggregate root: one user's pass through the onboarding wizard."""

    id: str
    user_email: Email
    current_step: OnboardingStep
    status: OnboardingStatus
    completed_steps: Tuple[OnboardingStep, ...]
    started_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    analytics: SessionAnalytics
    step_data: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[datetime] = None
    recovery_token: Optional[str] = None
    revision: int = 1


@dataclass(frozen=True)
class SessionAnalyticsSummary:
    """Read-only projection of a single session for reporting."""

    session_id: str
    status: OnboardingStatus
    progress: int
    current_step: OnboardingStep
    completed_steps: int
    total_steps: int
    total_duration_minutes: int
    current_step_duration_minutes: int
    average_step_duration: float
    conversion_source: Optional[str]
    ab_test_variants: Dict[str, str]
    device_info: Optional[DeviceInfo]
    is_expired: bool
    time_to_expiry: int


@dataclass(frozen=True)
class AnalyticsFilters:
    """Optional filters for aggregate analytics queries."""

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    statuses: Optional[Tuple[OnboardingStatus, ...]] = None
    conversion_source: Optional[str] = None


@dataclass(frozen=True)
class OnboardingAnalyticsSummary:
    """Aggregate analytics over a set of sessions."""

    total_sessions: int = 0
    completed_sessions: int = 0
    abandoned_sessions: int = 0
    average_completion_time: float = 0.0
    conversion_rate: float = 0.0
    step_dropoff_rates: Dict[str, float] = field(default_factory=dict)
    common_abandonment_reasons: Dict[str, int] = field(default_factory=dict)
    conversion_source_breakdown: Dict[str, int] = field(default_factory=dict)


def create_session_id() -> str:
    return str(uuid4())


def create_recovery_token() -> str:
    """Opaque secret used to resume a session without authentication."""
    return str(uuid4())


def create_onboarding_session(
    user_email: Email,
    device_info: Optional[DeviceInfo] = None,
    conversion_source: Optional[str] = None,
    *,
    expiry_hours: int = DEFAULT_EXPIRY_HOURS,
    now: Optional[datetime] = None,
) -> OnboardingSession:
    """Create a fresh in-progress session positioned on the welcome step."""
    if not isinstance(user_email, Email):
        raise TypeError("user_email must be a validated Email value")

    now = now or utcnow()
    step_timestamps = {step: () for step in STEP_ORDER}
    step_timestamps[OnboardingStep.WELCOME] = (now,)

    return OnboardingSession(
        id=create_session_id(),
        user_email=user_email,
        current_step=OnboardingStep.WELCOME,
        status=OnboardingStatus.IN_PROGRESS,
        completed_steps=(),
        started_at=now,
        last_activity_at=now,
        expires_at=now + timedelta(hours=expiry_hours),
        analytics=SessionAnalytics(
            started_at=now,
            last_activity_at=now,
            step_timestamps=step_timestamps,
            step_durations={step: 0 for step in STEP_ORDER},
            device_info=device_info,
            conversion_source=conversion_source,
        ),
        recovery_token=create_recovery_token(),
    )


def _touch(session: OnboardingSession, now: datetime, **changes) -> OnboardingSession:
    """Return a copy with the given changes, refreshed activity and the next revision."""
    return replace(session, last_activity_at=now, revision=session.revision + 1, **changes)


def advance_onboarding_step(
    session: OnboardingSession,
    next_step: OnboardingStep | str,
    step_data: Optional[Mapping[str, Any]] = None,
    *,
    now: Optional[datetime] = None,
) -> OnboardingSession:
    """Move the session to next_step.

    This is an unguarded primitive: it does not check that next_step follows
    current_step (see is_valid_transition). Leaving a step marks it completed
    and accumulates the time spent in it. Advancing to the step the session is
    already on only merges step data, so repeating a call (including
    complete -> complete) never double counts.
    """
    now = now or utcnow()
    next_step = OnboardingStep(next_step)
    current = session.current_step
    merged_data = {**session.step_data, **step_data} if step_data else session.step_data

    if next_step == current:
        return _touch(
            session,
            now,
            step_data=merged_data,
            analytics=replace(session.analytics, last_activity_at=now),
        )

    completed_steps = session.completed_steps
    if current not in completed_steps:
        completed_steps = completed_steps + (current,)

    analytics = session.analytics
    entries = analytics.step_timestamps.get(current) or ()
    step_started = entries[-1] if entries else analytics.last_activity_at
    elapsed_ms = max(0, int((now - step_started).total_seconds() * 1000))

    step_timestamps = dict(analytics.step_timestamps)
    step_timestamps[next_step] = tuple(step_timestamps.get(next_step) or ()) + (now,)
    step_durations = dict(analytics.step_durations)
    step_durations[current] = step_durations.get(current, 0) + elapsed_ms

    is_completed = next_step == OnboardingStep.COMPLETE
    completed_at = now if is_completed else session.completed_at

    return _touch(
        session,
        now,
        current_step=next_step,
        status=OnboardingStatus.COMPLETED if is_completed else session.status,
        completed_steps=completed_steps,
        completed_at=completed_at,
        step_data=merged_data,
        analytics=replace(
            analytics,
            last_activity_at=now,
            completed_at=now if is_completed else analytics.completed_at,
            step_timestamps=step_timestamps,
            step_durations=step_durations,
        ),
    )


def update_onboarding_step_data(
    session: OnboardingSession, step_data: Mapping[str, Any], *, now: Optional[datetime] = None
) -> OnboardingSession:
    """Shallow-merge step payloads into step_data (patch wins)."""
    return _touch(session, now or utcnow(), step_data={**session.step_data, **step_data})


def update_onboarding_metadata(
    session: OnboardingSession, metadata: Mapping[str, Any], *, now: Optional[datetime] = None
) -> OnboardingSession:
    """Shallow-merge operational annotations into metadata (patch wins)."""
    return _touch(session, now or utcnow(), metadata={**session.metadata, **metadata})


def pause_onboarding(session: OnboardingSession, *, now: Optional[datetime] = None) -> OnboardingSession:
    return _touch(session, now or utcnow(), status=OnboardingStatus.PAUSED)


def resume_onboarding(session: OnboardingSession, *, now: Optional[datetime] = None) -> OnboardingSession:
    return _touch(session, now or utcnow(), status=OnboardingStatus.IN_PROGRESS)


def abandon_onboarding(
    session: OnboardingSession, reason: Optional[str] = None, *, now: Optional[datetime] = None
) -> OnboardingSession:
    """Mark the session abandoned. The record stays stored until expiry cleanup."""
    now = now or utcnow()
    return _touch(
        session,
        now,
        status=OnboardingStatus.ABANDONED,
        analytics=replace(
            session.analytics,
            abandoned_at=now,
            last_activity_at=now,
            abandonment_reason=reason,
        ),
    )


def extend_session_expiry(
    session: OnboardingSession, additional_hours: float = DEFAULT_EXPIRY_HOURS, *, now: Optional[datetime] = None
) -> OnboardingSession:
    """Set expires_at to now + additional_hours (never relative to the old expiry)."""
    now = now or utcnow()
    return _touch(
        session,
        now,
        expires_at=now + timedelta(hours=additional_hours),
        analytics=replace(session.analytics, last_activity_at=now),
    )


def is_session_expired(session: OnboardingSession, *, now: Optional[datetime] = None) -> bool:
    return (now or utcnow()) > session.expires_at


def minutes_until_expiry(session: OnboardingSession, *, now: Optional[datetime] = None) -> float:
    """Signed minutes left before expiry (negative once expired)."""
    return (session.expires_at - (now or utcnow())).total_seconds() / 60


def record_ab_test_variant(
    session: OnboardingSession, test_name: str, variant: str, *, now: Optional[datetime] = None
) -> OnboardingSession:
    variants = {**session.analytics.ab_test_variants, test_name: variant}
    return _touch(
        session, now or utcnow(), analytics=replace(session.analytics, ab_test_variants=variants)
    )


def update_device_info(
    session: OnboardingSession, device_info: Optional[DeviceInfo], *, now: Optional[datetime] = None
) -> OnboardingSession:
    """Replace device info wholesale."""
    return _touch(session, now or utcnow(), analytics=replace(session.analytics, device_info=device_info))


def calculate_onboarding_progress(session: OnboardingSession) -> int:
    """Percentage of the six non-terminal steps completed, 0..100."""
    return min(round(100 * len(session.completed_steps) / TOTAL_STEPS), 100)


# Step helpers


def get_all_steps() -> List[OnboardingStep]:
    return list(STEP_ORDER)


def get_step_number(step: OnboardingStep | str) -> int:
    """1-based position of the step in the wizard."""
    return STEP_ORDER.index(OnboardingStep(step)) + 1


def get_step_display_name(step: OnboardingStep | str) -> str:
    return STEP_DISPLAY_NAMES[OnboardingStep(step)]


def get_next_onboarding_step(step: OnboardingStep | str) -> Optional[OnboardingStep]:
    """Canonical successor, or None for the terminal step."""
    index = STEP_ORDER.index(OnboardingStep(step))
    if index == len(STEP_ORDER) - 1:
        return None
    return STEP_ORDER[index + 1]


def is_step_accessible(session: OnboardingSession, target_step: OnboardingStep | str) -> bool:
    """A user may view the current step, any completed step, or the next one."""
    target = OnboardingStep(target_step)
    return (
        target == session.current_step
        or target in session.completed_steps
        or target == get_next_onboarding_step(session.current_step)
    )


def is_valid_transition(current_step: OnboardingStep | str, next_step: OnboardingStep | str) -> bool:
    """Guard for advance_onboarding_step.

    Allowed: staying on the current step and moving to its canonical
    successor (complete -> complete included). Going back is rejected:
    completed_steps only holds steps before current_step. Earlier steps stay
    viewable through is_step_accessible.
    """
    current = OnboardingStep(current_step)
    target = OnboardingStep(next_step)
    return target == current or target == get_next_onboarding_step(current)


# Durations and summaries


def get_session_duration_minutes(session: OnboardingSession, *, now: Optional[datetime] = None) -> int:
    """Minutes from start to completion, abandonment, or now."""
    end = session.completed_at or session.analytics.abandoned_at or now or utcnow()
    return round((end - session.started_at).total_seconds() / 60)


def get_current_step_duration_minutes(session: OnboardingSession, *, now: Optional[datetime] = None) -> int:
    entries = session.analytics.step_timestamps.get(session.current_step) or ()
    if not entries:
        return 0
    return round(((now or utcnow()) - entries[-1]).total_seconds() / 60)


def average_step_duration_minutes(session: OnboardingSession) -> float:
    """Mean of the non-zero step durations, in minutes. Unvisited steps are ignored."""
    durations = [value for value in session.analytics.step_durations.values() if value > 0]
    if not durations:
        return 0.0
    return sum(durations) / len(durations) / (1000 * 60)


def generate_analytics_summary(
    session: OnboardingSession, *, now: Optional[datetime] = None
) -> SessionAnalyticsSummary:
    now = now or utcnow()
    return SessionAnalyticsSummary(
        session_id=session.id,
        status=session.status,
        progress=calculate_onboarding_progress(session),
        current_step=session.current_step,
        completed_steps=len(session.completed_steps),
        total_steps=TOTAL_STEPS,
        total_duration_minutes=get_session_duration_minutes(session, now=now),
        current_step_duration_minutes=get_current_step_duration_minutes(session, now=now),
        average_step_duration=average_step_duration_minutes(session),
        conversion_source=session.analytics.conversion_source,
        ab_test_variants=dict(session.analytics.ab_test_variants),
        device_info=session.analytics.device_info,
        is_expired=is_session_expired(session, now=now),
        time_to_expiry=max(0, round(minutes_until_expiry(session, now=now))),
    )


def calculate_session_analytics(sessions: Iterable[OnboardingSession]) -> OnboardingAnalyticsSummary:
    """Aggregate completion, conversion and dropoff figures over sessions."""
    sessions = list(sessions)
    total = len(sessions)
    if total == 0:
        return OnboardingAnalyticsSummary(step_dropoff_rates={step.value: 0.0 for step in TRACKED_STEPS})

    completed = [s for s in sessions if s.status == OnboardingStatus.COMPLETED]
    abandoned = [s for s in sessions if s.status == OnboardingStatus.ABANDONED]

    completion_minutes = [
        (s.completed_at - s.started_at).total_seconds() / 60 for s in completed if s.completed_at
    ]
    average_completion = sum(completion_minutes) / len(completion_minutes) if completion_minutes else 0.0

    dropoff_rates = {}
    for index, step in enumerate(TRACKED_STEPS):
        reached = sum(1 for s in sessions if len(s.completed_steps) > index or s.current_step == step)
        dropoff_rates[step.value] = (total - reached) / total * 100

    reasons = Counter(
        s.analytics.abandonment_reason for s in abandoned if s.analytics.abandonment_reason
    )
    sources = Counter(s.analytics.conversion_source or "unknown" for s in sessions)

    return OnboardingAnalyticsSummary(
        total_sessions=total,
        completed_sessions=len(completed),
        abandoned_sessions=len(abandoned),
        average_completion_time=average_completion,
        conversion_rate=len(completed) / total * 100,
        step_dropoff_rates=dropoff_rates,
        common_abandonment_reasons=dict(reasons),
        conversion_source_breakdown=dict(sources),
    )
