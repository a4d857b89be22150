"""
Onboarding logic for the onboarding session tracker.
Handles the wizard use cases (start, advance, update step data, complete,
read state) on top of the session entity and the repository port.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from config.config import FeatureFlags, SessionConfig
from onboarding_tracker.data.repositories import OnboardingRepository
from onboarding_tracker.data.schemas import get_step_model, parse_step_data, step_data_to_dict
from onboarding_tracker.exceptions import (
    InvalidSessionStateError,
    InvalidStepTransitionError,
    OnboardingTrackerError,
    SessionExpiredError,
    SessionNotFoundError,
    StepDataValidationError,
    ValidationError,
)
from onboarding_tracker.logic.email import Email
from onboarding_tracker.logic.onboarding_session import (
    STEP_ORDER,
    DeviceInfo,
    OnboardingSession,
    OnboardingStatus,
    OnboardingStep,
    SessionAnalyticsSummary,
    advance_onboarding_step,
    calculate_onboarding_progress,
    create_onboarding_session,
    generate_analytics_summary,
    get_next_onboarding_step,
    is_session_expired,
    is_step_accessible,
    is_valid_transition,
    record_ab_test_variant,
    update_onboarding_step_data,
)
from onboarding_tracker.utils.clock import utcnow
from onboarding_tracker.utils.result import Result

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OnboardingState:
    """Snapshot of a session for the wizard UI."""

    session: OnboardingSession
    progress: int
    next_step: Optional[OnboardingStep]
    accessible_steps: List[OnboardingStep]
    summary: SessionAnalyticsSummary


def _parse_step(value: OnboardingStep | str, field: str = "step") -> OnboardingStep:
    try:
        return OnboardingStep(value)
    except ValueError as e:
        raise ValidationError(f"Unknown onboarding step: {value!r}", field=field, cause=e) from e


class OnboardingLogic:
    """Logic for managing the onboarding wizard flow."""

    def __init__(
        self,
        repository: OnboardingRepository,
        session_config: Optional[SessionConfig] = None,
        feature_flags: Optional[FeatureFlags] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.session_config = session_config or SessionConfig()
        self.feature_flags = feature_flags or FeatureFlags()
        self._clock = clock

    def _failure(self, operation: str, error: Exception) -> Result:
        if isinstance(error, OnboardingTrackerError):
            logger.warning("Failed %s: %s", operation, error.message)
            return Result.from_error(error)
        logger.error("Unexpected error %s: %s", operation, error, exc_info=True)
        return Result.fail(f"Unexpected error {operation}")

    def _load(self, session_id: str) -> OnboardingSession:
        session = self.repository.find_by_id(session_id)
        if session is None:
            raise SessionNotFoundError("id", session_id)
        return session

    def _ensure_writable(self, session: OnboardingSession, now: datetime) -> None:
        if session.status == OnboardingStatus.ABANDONED:
            raise InvalidSessionStateError("Session has been abandoned", status=session.status.value)
        if session.status == OnboardingStatus.PAUSED:
            raise InvalidSessionStateError("Session is paused; resume it first", status=session.status.value)
        if session.status == OnboardingStatus.IN_PROGRESS and is_session_expired(session, now=now):
            raise SessionExpiredError(session.id)

    def start_onboarding(
        self,
        email: Email | str,
        device_info: Optional[DeviceInfo] = None,
        conversion_source: Optional[str] = None,
        ab_test_variants: Optional[Mapping[str, str]] = None,
    ) -> Result[OnboardingSession]:
        """
        Start onboarding for a user, or hand back the live session they already have.

        Args:
            email: User email address
            device_info: Client device the request came from
            conversion_source: Marketing source of the signup
            ab_test_variants: Experiment assignments to record on a new session

        Returns:
            Result with the in-progress session
        """
        try:
            user_email = Email.create(email)
            now = self._clock()

            if self.feature_flags.reuse_in_progress_sessions:
                existing = self.repository.find_by_user_email(user_email)
                if (
                    existing is not None
                    and existing.status == OnboardingStatus.IN_PROGRESS
                    and not is_session_expired(existing, now=now)
                ):
                    logger.info("Reusing in-progress onboarding session %s", existing.id)
                    return Result.ok(existing)

            session = create_onboarding_session(
                user_email,
                device_info,
                conversion_source,
                expiry_hours=self.session_config.expiry_hours,
                now=now,
            )
            for test_name, variant in (ab_test_variants or {}).items():
                session = record_ab_test_variant(session, test_name, variant, now=now)

            saved = self.repository.save(session)
            logger.info("Started onboarding session %s", saved.id)
            return Result.ok(saved)
        except Exception as e:
            return self._failure("starting onboarding", e)

    def _validate_step_exit(
        self, session: OnboardingSession, next_step: OnboardingStep, patch: Dict[str, Any]
    ) -> None:
        """Moving forward requires the payload of the step being left to be complete."""
        current = session.current_step
        if STEP_ORDER.index(next_step) <= STEP_ORDER.index(current):
            return
        model = get_step_model({**session.step_data, **patch}, current)
        if model is None:
            if current in (OnboardingStep.WELCOME, OnboardingStep.COMPLETE):
                return
            raise StepDataValidationError(f"Step '{current.value}' has no data yet", step=current.value)
        if not model.is_complete():
            raise StepDataValidationError(f"Step '{current.value}' is not complete", step=current.value)

    def advance_step(
        self,
        session_id: str,
        next_step: OnboardingStep | str,
        step_payload: Optional[Mapping[str, Any]] = None,
    ) -> Result[OnboardingSession]:
        """
        Advance a session to the next step, storing the payload of the step being left.

        Returns:
            Result with the updated session
        """
        try:
            next_step = _parse_step(next_step, "next_step")
            now = self._clock()
            session = self._load(session_id)
            if session.status == OnboardingStatus.COMPLETED:
                if next_step == OnboardingStep.COMPLETE:
                    return Result.ok(session)
                raise InvalidSessionStateError("Onboarding is already completed", status=session.status.value)
            self._ensure_writable(session, now)

            if self.feature_flags.enforce_step_order and not is_valid_transition(session.current_step, next_step):
                raise InvalidStepTransitionError(session.current_step.value, next_step.value)

            patch: Dict[str, Any] = {}
            if step_payload is not None:
                model = parse_step_data(session.current_step, step_payload)
                if model is not None:
                    patch[session.current_step.value] = step_data_to_dict(model)

            if self.feature_flags.enforce_step_order:
                self._validate_step_exit(session, next_step, patch)

            advanced = advance_onboarding_step(session, next_step, patch or None, now=now)
            saved = self.repository.update(advanced)
            logger.info(
                "Advanced session %s from %s to %s", saved.id, session.current_step.value, next_step.value
            )
            return Result.ok(saved)
        except Exception as e:
            return self._failure("advancing onboarding step", e)

    def update_step_data(
        self, session_id: str, step: OnboardingStep | str, payload: Mapping[str, Any]
    ) -> Result[OnboardingSession]:
        """Validate and store the payload of a step without moving the session."""
        try:
            step = _parse_step(step)
            now = self._clock()
            session = self._load(session_id)
            if session.status == OnboardingStatus.COMPLETED:
                raise InvalidSessionStateError("Onboarding is already completed", status=session.status.value)
            self._ensure_writable(session, now)
            model = parse_step_data(step, payload)
            if model is None:
                raise StepDataValidationError(f"Step '{step.value}' does not take data", step=step.value)
            updated = update_onboarding_step_data(
                session, {step.value: step_data_to_dict(model)}, now=now
            )
            return Result.ok(self.repository.update(updated))
        except Exception as e:
            return self._failure("updating step data", e)

    def complete_onboarding(self, session_id: str) -> Result[OnboardingSession]:
        return self.advance_step(session_id, OnboardingStep.COMPLETE)

    def get_onboarding_state(self, session_id: str) -> Result[OnboardingState]:
        try:
            session = self._load(session_id)
            now = self._clock()
            return Result.ok(
                OnboardingState(
                    session=session,
                    progress=calculate_onboarding_progress(session),
                    next_step=get_next_onboarding_step(session.current_step),
                    accessible_steps=[step for step in STEP_ORDER if is_step_accessible(session, step)],
                    summary=generate_analytics_summary(session, now=now),
                )
            )
        except Exception as e:
            return self._failure("getting onboarding state", e)
