"""State machine for one student's attempt at one exam.

    LOADING -> IN_PROGRESS -> SUBMITTING -> FINALIZED
                   |              |
                   +--> ABORTED <-+

LOADING may also end in ABORTED when the content cannot be fetched. Nothing
is persisted before FINALIZED, so an aborted or abandoned attempt leaves no
trace in the store and can be started again from LOADING.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import replace
from datetime import datetime
from enum import Enum
from math import ceil
from typing import Any

from exam_portal.constants.exam_constants import QUESTIONS_PER_PAGE
from exam_portal.core.access_evaluator import evaluate_exam_status, utc_now
from exam_portal.core.errors import (
    ExamContentError,
    ExamNotFoundError,
    ProfileNotFoundError,
    SessionStateError,
    StoreUnavailableError,
)
from exam_portal.core.models import (
    AccessStatus,
    Exam,
    Profile,
    Question,
    QuestionId,
    Role,
    StudentQuestion,
)
from exam_portal.core.services.change_feed import ChangeSignal, Subscription
from exam_portal.core.services.store_ports import (
    ArtifactUploader,
    ChangeScope,
    ExamScope,
    ExamStore,
    SubmissionOutcome,
)
from exam_portal.core.transcript import artifact_path, build_transcript

logger = logging.getLogger(__name__)

WATCHED_SCOPES = frozenset(
    {ChangeScope.EXAMS, ChangeScope.ACCESS_GRANTS, ChangeScope.SUBMISSIONS, ChangeScope.PROFILE}
)


class SessionState(Enum):
    LOADING = "loading"
    IN_PROGRESS = "in_progress"
    SUBMITTING = "submitting"
    FINALIZED = "finalized"
    ABORTED = "aborted"


class AbortReason(Enum):
    LOAD_FAILED = "load_failed"
    CONTENT_INVALID = "content_invalid"
    BLOCKED = "blocked"
    ACCESS_REVOKED = "access_revoked"
    ALREADY_SUBMITTED = "already_submitted"
    CONTENT_CHANGED = "content_changed"
    ABANDONED = "abandoned"
    SUBMIT_FAILED = "submit_failed"


ABORT_MESSAGES: dict[AbortReason, str] = {
    AbortReason.LOAD_FAILED: "The exam could not be loaded. Try again.",
    AbortReason.CONTENT_INVALID: "This exam could not be opened. Contact a professor.",
    AbortReason.BLOCKED: "Your access was blocked. Contact a professor to unblock it.",
    AbortReason.ACCESS_REVOKED: "Your access to this exam was withdrawn.",
    AbortReason.ALREADY_SUBMITTED: "This exam was already submitted from another device.",
    AbortReason.CONTENT_CHANGED: "The questions of this exam were changed. Start it again.",
    AbortReason.ABANDONED: "The exam was closed before it was submitted.",
    AbortReason.SUBMIT_FAILED: "Something went wrong while submitting. Contact a professor.",
}

_RETRYABLE = frozenset({AbortReason.LOAD_FAILED, AbortReason.ABANDONED, AbortReason.CONTENT_CHANGED})

_TERMINAL = frozenset({SessionState.FINALIZED, SessionState.ABORTED})


class ExamSession:
    """Runs one attempt for a student who passed the submission guard."""

    def __init__(
        self,
        store: ExamStore,
        uploader: ArtifactUploader,
        exam: Exam,
        profile: Profile,
        *,
        clock: Callable[[], datetime] = utc_now,
        questions_per_page: int = QUESTIONS_PER_PAGE,
    ) -> None:
        if questions_per_page <= 0:
            raise ValueError("questions_per_page must be a positive integer.")
        self._store = store
        self._uploader = uploader
        self._exam = exam
        self._profile = profile
        self._clock = clock
        self._questions_per_page = questions_per_page

        self._state = SessionState.LOADING
        self._questions: list[StudentQuestion] = []
        self._letters: dict[QuestionId, frozenset[str]] = {}
        self._answers: dict[QuestionId, str] = {}
        self._abort_reason: AbortReason | None = None
        self._outcome: SubmissionOutcome | None = None
        self._submit_task: asyncio.Future[SubmissionOutcome] | None = None
        self._subscription: Subscription | None = None
        self._revalidation_pending = False
        self._background: set[asyncio.Task[None]] = set()

    # --- Read-only views ---

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def exam(self) -> Exam:
        return self._exam

    @property
    def profile(self) -> Profile:
        return self._profile

    @property
    def is_terminal(self) -> bool:
        return self._state in _TERMINAL

    @property
    def abort_reason(self) -> AbortReason | None:
        return self._abort_reason

    @property
    def abort_message(self) -> str | None:
        return ABORT_MESSAGES[self._abort_reason] if self._abort_reason else None

    @property
    def retryable(self) -> bool:
        return self._abort_reason in _RETRYABLE

    @property
    def outcome(self) -> SubmissionOutcome | None:
        return self._outcome

    @property
    def answers(self) -> dict[QuestionId, str]:
        return dict(self._answers)

    @property
    def question_count(self) -> int:
        return len(self._questions)

    @property
    def page_count(self) -> int:
        return ceil(len(self._questions) / self._questions_per_page)

    def get_questions(self) -> list[StudentQuestion]:
        return list(self._questions)

    def questions_on_page(self, page: int) -> list[StudentQuestion]:
        """Return the student-facing questions of a zero-based page."""
        if not self._questions:
            raise SessionStateError(f"Questions are not available while the session is {self._state.value}.")
        if not 0 <= page < self.page_count:
            raise IndexError(f"Page {page} out of range")
        start = page * self._questions_per_page
        return self._questions[start:start + self._questions_per_page]

    # --- Lifecycle ---

    async def load(self) -> SessionState:
        """Fetch the exam content and move to IN_PROGRESS, or ABORTED on failure."""
        self._require_state("load", SessionState.LOADING)
        try:
            content = await self._store.fetch_exam_content(self._exam.id)
        except StoreUnavailableError:
            logger.warning("Content fetch failed for exam %s", self._exam.id, exc_info=True)
            self._abort(AbortReason.LOAD_FAILED)
            return self._state
        except ExamNotFoundError:
            logger.error("Exam %s vanished after its start was approved", self._exam.id)
            self._abort(AbortReason.CONTENT_INVALID)
            return self._state

        try:
            self._questions = self._student_questions(content)
        except ExamContentError:
            logger.exception("Exam %s has unusable content", self._exam.id)
            self._abort(AbortReason.CONTENT_INVALID)
            return self._state

        self._letters = {
            question.id: frozenset(alt.letter for alt in question.alternatives)
            for question in self._questions
        }
        self._state = SessionState.IN_PROGRESS
        logger.info(
            "Exam %s in progress for user %s (%d questions)",
            self._exam.id,
            self._profile.id,
            len(self._questions),
        )
        return self._state

    def select_answer(self, question_id: QuestionId, letter: str) -> None:
        self._require_state("answer", SessionState.IN_PROGRESS)
        allowed = self._letters.get(question_id)
        if allowed is None:
            raise ValueError(f"Question {question_id} is not part of this exam.")
        normalized = letter.strip().upper()
        if normalized not in allowed:
            raise ValueError(f"'{letter}' is not an alternative of question {question_id}.")
        self._answers[question_id] = normalized

    def clear_answer(self, question_id: QuestionId) -> None:
        self._require_state("answer", SessionState.IN_PROGRESS)
        self._answers.pop(question_id, None)

    async def finalize(self) -> SubmissionOutcome:
        """Submit the answers.

        Repeated calls are safe: a call made while a submission is in flight
        waits for that same submission, and a call after success returns the
        stored outcome. A transient store failure returns the session to
        IN_PROGRESS with every answer kept and re-raises.
        """
        if self._state is SessionState.FINALIZED and self._outcome is not None:
            return self._outcome
        if self._state is SessionState.SUBMITTING and self._submit_task is not None:
            return await asyncio.shield(self._submit_task)
        self._require_state("finalize", SessionState.IN_PROGRESS)

        self._state = SessionState.SUBMITTING
        self._submit_task = asyncio.ensure_future(self._submit(dict(self._answers)))
        return await asyncio.shield(self._submit_task)

    def abandon(self) -> None:
        """Leave the attempt without submitting."""
        if self.is_terminal:
            return
        if self._state is SessionState.SUBMITTING:
            raise SessionStateError("The exam is being submitted and can no longer be abandoned.")
        self._abort(AbortReason.ABANDONED)

    async def wait_for_artifacts(self) -> None:
        """Wait until pending transcript uploads have settled."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # --- Revocation watching ---

    async def watch(self, subscription: Subscription) -> None:
        """Consume invalidation signals until the session ends.

        Start this after ``load`` returns. Signals that arrived earlier wait
        in the subscription queue and are handled first.
        """
        self._subscription = subscription
        if self.is_terminal:
            subscription.cancel()
        try:
            async for signal in subscription:
                if self.is_terminal:
                    break
                if not self._concerns(signal):
                    continue
                if self._state is not SessionState.IN_PROGRESS:
                    self._revalidation_pending = True
                    continue
                logger.debug("Session %s/%s got %s change", self._exam.id, self._profile.id, signal.scope.value)
                await self.revalidate()
        finally:
            subscription.cancel()

    async def revalidate(self) -> None:
        """Re-fetch access state and abort when the attempt may no longer continue."""
        self._revalidation_pending = False
        try:
            profile = await self._store.fetch_profile(self._profile.id)
            if profile is None:
                self._revoke(AbortReason.ACCESS_REVOKED, "profile removed")
                return
            if profile.is_blocked and profile.role is not Role.ADMIN:
                self._revoke(AbortReason.BLOCKED, "profile blocked")
                return
            exams, submitted_ids = await asyncio.gather(
                self._store.fetch_exams(ExamScope.for_profile(profile)),
                self._store.fetch_submitted_exam_ids(profile.id),
            )
        except StoreUnavailableError:
            logger.warning("Could not re-check access for exam %s; keeping session", self._exam.id, exc_info=True)
            return

        exam = next((candidate for candidate in exams if candidate.id == self._exam.id), None)
        if exam is None:
            self._revoke(AbortReason.ACCESS_REVOKED, "exam no longer listed")
            return

        status = evaluate_exam_status(exam, profile, submitted_ids, now=self._clock())
        if status is AccessStatus.COMPLETED:
            self._revoke(AbortReason.ALREADY_SUBMITTED, status.value)
            return
        if status is not AccessStatus.AVAILABLE:
            self._revoke(AbortReason.ACCESS_REVOKED, status.value)
            return

        # Answers are keyed by question id; a content edit that drops or
        # re-letters a question would leave them pointing at nothing.
        try:
            content = await self._store.fetch_exam_content(self._exam.id)
        except StoreUnavailableError:
            logger.warning("Could not re-check content for exam %s; keeping session", self._exam.id, exc_info=True)
            return
        except ExamNotFoundError:
            self._revoke(AbortReason.ACCESS_REVOKED, "exam removed")
            return
        current = {question.id: frozenset(alt.letter for alt in question.alternatives) for question in content}
        if current != self._letters:
            self._revoke(AbortReason.CONTENT_CHANGED, "questions replaced")

    async def report_violation(self) -> bool:
        """Block the student and end the attempt after a rule violation.

        Admins are exempt and keep their session. Returns whether a block
        was applied.
        """
        self._require_state("report a violation", SessionState.IN_PROGRESS)
        profile = await self._store.fetch_profile(self._profile.id)
        if profile is None:
            raise ProfileNotFoundError(f"No profile for user {self._profile.id}.")
        if profile.role is Role.ADMIN:
            logger.info("Violation on exam %s ignored for admin %s", self._exam.id, profile.id)
            return False
        try:
            if not profile.is_blocked:
                await self._store.save_profile(replace(profile, is_blocked=True))
        except StoreUnavailableError:
            logger.warning("Could not block user %s after a violation", profile.id, exc_info=True)
            self._revoke(AbortReason.ABANDONED, "violation reported, block not saved")
            raise
        self._revoke(AbortReason.BLOCKED, "exam rules violated")
        return True

    # --- Internals ---

    def _concerns(self, signal: ChangeSignal) -> bool:
        """Whether a signal can affect this attempt. Signals without a subject always can."""
        if signal.subject_id is None:
            return True
        if signal.scope is ChangeScope.EXAMS:
            return signal.subject_id == str(self._exam.id)
        return signal.subject_id == self._profile.id

    async def _submit(self, answers: dict[QuestionId, str]) -> SubmissionOutcome:
        try:
            outcome = await self._store.create_submission(self._exam.id, self._profile.id, answers)
        except StoreUnavailableError:
            logger.warning("Submission of exam %s by %s failed; answers kept", self._exam.id, self._profile.id)
            self._state = SessionState.IN_PROGRESS
            self._submit_task = None
            if self._revalidation_pending:
                self._spawn(self.revalidate())
            raise
        except Exception:
            logger.exception("Unexpected failure submitting exam %s by %s", self._exam.id, self._profile.id)
            self._abort(AbortReason.SUBMIT_FAILED)
            raise

        if outcome is SubmissionOutcome.ALREADY_EXISTS:
            logger.info("Exam %s already had a submission from %s; treating as success", self._exam.id, self._profile.id)
        self._outcome = outcome
        self._state = SessionState.FINALIZED
        self._stop_watching()
        logger.info("Exam %s finalized for user %s", self._exam.id, self._profile.id)
        self._spawn(self._upload_transcript(answers))
        return outcome

    async def _upload_transcript(self, answers: dict[QuestionId, str]) -> None:
        try:
            document = build_transcript(self._exam, self._profile, self._questions, answers, self._clock())
            path = artifact_path(self._exam, self._profile)
            await self._uploader.upload_result_artifact(self._profile.id, self._exam.id, path, document)
        except Exception:
            # The submission is already stored; a missing transcript never undoes it.
            logger.exception("Transcript upload failed for exam %s, user %s", self._exam.id, self._profile.id)
        else:
            logger.info("Transcript stored at %s", path)

    def _spawn(self, coroutine: Coroutine[Any, Any, None]) -> None:
        task = asyncio.ensure_future(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _revoke(self, reason: AbortReason, detail: str) -> None:
        if self._state is not SessionState.IN_PROGRESS:
            return
        logger.info("Exam %s aborted for user %s: %s", self._exam.id, self._profile.id, detail)
        self._abort(reason)

    def _abort(self, reason: AbortReason) -> None:
        self._abort_reason = reason
        self._state = SessionState.ABORTED
        self._answers.clear()
        self._stop_watching()

    def _stop_watching(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()

    def _require_state(self, action: str, *allowed: SessionState) -> None:
        if self._state not in allowed:
            raise SessionStateError(f"Cannot {action} while the session is {self._state.value}.")

    @staticmethod
    def _student_questions(content: list[Question]) -> list[StudentQuestion]:
        if not content:
            raise ExamContentError("Exam has no questions.")
        questions = sorted(content, key=lambda q: q.question_order)
        for question in questions:
            if not question.alternatives:
                raise ExamContentError(f"Question {question.id} has no alternatives.")
        return [question.for_student() for question in questions]
