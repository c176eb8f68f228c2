"""Re-validation performed at the moment a user asks to start an exam."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from exam_portal.core.access_evaluator import evaluate_exam_status, utc_now
from exam_portal.core.errors import ProfileNotFoundError
from exam_portal.core.models import AccessStatus, Exam, ExamId, Profile, Role, UserId
from exam_portal.core.services.store_ports import ExamScope, ExamStore

logger = logging.getLogger(__name__)


class DenialReason(Enum):
    BLOCKED = "blocked"
    PROFILE_INCOMPLETE = "profile_incomplete"
    EXAM_UNAVAILABLE = "exam_unavailable"
    ALREADY_COMPLETED = "already_completed"
    NOT_YET_OPEN = "not_yet_open"
    UNAVAILABLE = "unavailable"


DENIAL_MESSAGES: dict[DenialReason, str] = {
    DenialReason.BLOCKED: "Your access is blocked. Ask a professor to unblock it.",
    DenialReason.PROFILE_INCOMPLETE: "Complete your profile before starting an exam.",
    DenialReason.EXAM_UNAVAILABLE: "This exam no longer exists or is not available to you.",
    DenialReason.ALREADY_COMPLETED: "You have already submitted this exam.",
    DenialReason.NOT_YET_OPEN: "This exam has not opened yet.",
    DenialReason.UNAVAILABLE: "This exam is not available.",
}

_STATUS_DENIALS: dict[AccessStatus, DenialReason] = {
    AccessStatus.COMPLETED: DenialReason.ALREADY_COMPLETED,
    AccessStatus.LOCKED_TIME: DenialReason.NOT_YET_OPEN,
    AccessStatus.LOCKED_PERMISSION: DenialReason.UNAVAILABLE,
    AccessStatus.EXPIRED: DenialReason.UNAVAILABLE,
}


@dataclass(slots=True, frozen=True)
class StartDecision:
    """Outcome of a start request.

    On success it carries the freshly fetched exam and profile the session
    must use; on failure it carries the reason.
    """

    proceed: bool
    reason: DenialReason | None = None
    exam: Exam | None = None
    profile: Profile | None = None

    @classmethod
    def allow(cls, exam: Exam, profile: Profile) -> StartDecision:
        return cls(proceed=True, exam=exam, profile=profile)

    @classmethod
    def deny(cls, reason: DenialReason) -> StartDecision:
        return cls(proceed=False, reason=reason)

    @property
    def message(self) -> str | None:
        return DENIAL_MESSAGES[self.reason] if self.reason is not None else None


class SubmissionGuard:
    """Decides start requests from freshly fetched state only.

    Whatever status a listing showed earlier is ignored here: the profile,
    exam collection and submission ids are fetched again on every call and
    nothing is cached between calls.
    """

    def __init__(self, store: ExamStore, clock: Callable[[], datetime] = utc_now) -> None:
        self._store = store
        self._clock = clock

    async def request_start(self, exam_id: ExamId, user_id: UserId) -> StartDecision:
        profile = await self._store.fetch_profile(user_id)
        if profile is None:
            raise ProfileNotFoundError(f"No profile for user {user_id}.")

        if profile.is_blocked and profile.role is not Role.ADMIN:
            return self._deny(DenialReason.BLOCKED, exam_id, user_id)

        if not profile.is_complete:
            return self._deny(DenialReason.PROFILE_INCOMPLETE, exam_id, user_id)

        exams, submitted_ids = await asyncio.gather(
            self._store.fetch_exams(ExamScope.for_profile(profile)),
            self._store.fetch_submitted_exam_ids(profile.id),
        )
        exam = next((candidate for candidate in exams if candidate.id == exam_id), None)
        if exam is None:
            return self._deny(DenialReason.EXAM_UNAVAILABLE, exam_id, user_id)

        status = evaluate_exam_status(exam, profile, submitted_ids, now=self._clock())
        if status is not AccessStatus.AVAILABLE:
            return self._deny(_STATUS_DENIALS[status], exam_id, user_id)

        logger.info("Start of exam %s approved for user %s", exam_id, user_id)
        return StartDecision.allow(exam, profile)

    @staticmethod
    def _deny(reason: DenialReason, exam_id: ExamId, user_id: UserId) -> StartDecision:
        logger.info("Start of exam %s denied for user %s: %s", exam_id, user_id, reason.value)
        return StartDecision.deny(reason)
