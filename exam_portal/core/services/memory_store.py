"""In-process implementation of the store ports.

Backs the development server and the test suite. Every write publishes the
matching change scope when a feed is attached, the way the hosted database
pushes row changes to its realtime channel.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

from exam_portal.core.models import (
    AccessPolicy,
    Exam,
    ExamId,
    Profile,
    Question,
    QuestionId,
    Role,
    Submission,
    UserId,
)
from exam_portal.core.question_rules import normalize_question
from exam_portal.core.errors import ExamNotFoundError
from exam_portal.core.services.change_feed import ChangeFeed
from exam_portal.core.services.store_ports import (
    ArtifactUploader,
    ChangeScope,
    ExamScope,
    ExamStore,
    SubmissionOutcome,
)


class InMemoryExamStore(ExamStore):
    """Dictionary-backed exam store with unique (exam, student) submissions."""

    def __init__(self, feed: ChangeFeed | None = None) -> None:
        self._feed = feed
        self._profiles: dict[UserId, Profile] = {}
        self._exams: dict[ExamId, Exam] = {}
        self._questions: dict[ExamId, list[Question]] = {}
        self._submissions: dict[tuple[ExamId, UserId], Submission] = {}
        self._exam_counter: int = 0
        self._question_counter: int = 0
        self._alternative_counter: int = 0

    # --- Profiles ---

    async def fetch_profile(self, user_id: UserId) -> Profile | None:
        return self._profiles.get(user_id)

    async def fetch_profiles(self, user_ids: set[UserId]) -> dict[UserId, Profile]:
        return {user_id: self._profiles[user_id] for user_id in user_ids if user_id in self._profiles}

    async def fetch_students(self) -> list[Profile]:
        students = [p for p in self._profiles.values() if p.role is Role.STUDENT]
        return sorted(students, key=lambda p: (p.full_name or "", p.id))

    async def save_profile(self, profile: Profile) -> Profile:
        self._profiles[profile.id] = profile
        self._publish(ChangeScope.PROFILE, profile.id)
        return profile

    # --- Exams ---

    async def fetch_exams(self, scope: ExamScope) -> list[Exam]:
        exams = [exam for exam in self._exams.values() if scope.includes(exam)]
        return sorted(exams, key=lambda e: (e.area, e.series, e.id))

    async def fetch_exam(self, exam_id: ExamId) -> Exam | None:
        return self._exams.get(exam_id)

    async def fetch_exam_content(self, exam_id: ExamId) -> list[Question]:
        if exam_id not in self._exams:
            raise ExamNotFoundError(f"Exam {exam_id} does not exist.")
        questions = self._questions.get(exam_id, [])
        return sorted(questions, key=lambda q: q.question_order)

    async def save_exam(self, exam: Exam, questions: list[Question] | None = None) -> Exam:
        if exam.id not in self._exams:
            exam = replace(exam, id=self._next_exam_id()) if exam.id <= 0 else exam
            self._exam_counter = max(self._exam_counter, exam.id)
        prepared = None
        if questions is not None:
            known_ids = {question.id for question in self._questions.get(exam.id, [])}
            prepared = [
                self._prepare_question(question, exam.id, position, known_ids)
                for position, question in enumerate(questions, start=1)
            ]
        self._exams[exam.id] = exam
        if prepared is not None:
            self._questions[exam.id] = prepared
        self._publish(ChangeScope.EXAMS, str(exam.id))
        return exam

    async def delete_exam(self, exam_id: ExamId) -> None:
        if self._exams.pop(exam_id, None) is None:
            raise ExamNotFoundError(f"Exam {exam_id} does not exist.")
        self._questions.pop(exam_id, None)
        self._publish(ChangeScope.EXAMS, str(exam_id))

    async def set_access_policy(self, exam_id: ExamId, policy: AccessPolicy) -> Exam:
        exam = replace(self._require_exam(exam_id), policy=policy)
        self._exams[exam_id] = exam
        self._publish(ChangeScope.EXAMS, str(exam_id))
        return exam

    async def set_individual_access(self, exam_id: ExamId, student_id: UserId, grant: bool) -> Exam:
        exam = self._require_exam(exam_id)
        if grant:
            granted = exam.granted_student_ids | {student_id}
        else:
            granted = exam.granted_student_ids - {student_id}
        exam = replace(exam, granted_student_ids=frozenset(granted))
        self._exams[exam_id] = exam
        self._publish(ChangeScope.ACCESS_GRANTS, student_id)
        return exam

    # --- Submissions ---

    async def fetch_submitted_exam_ids(self, student_id: UserId) -> set[ExamId]:
        return {exam_id for exam_id, owner in self._submissions if owner == student_id}

    async def fetch_submissions(self, exam_id: ExamId) -> list[Submission]:
        return [
            submission
            for (submitted_exam_id, _), submission in self._submissions.items()
            if submitted_exam_id == exam_id
        ]

    async def create_submission(
        self,
        exam_id: ExamId,
        student_id: UserId,
        answers: dict[QuestionId, str],
    ) -> SubmissionOutcome:
        key = (exam_id, student_id)
        if key in self._submissions:
            return SubmissionOutcome.ALREADY_EXISTS
        self._submissions[key] = Submission(
            exam_id=exam_id,
            student_id=student_id,
            answers=dict(answers),
            created_at=datetime.now(timezone.utc),
        )
        self._publish(ChangeScope.SUBMISSIONS, student_id)
        return SubmissionOutcome.CREATED

    def submission_count(self) -> int:
        return len(self._submissions)

    # --- Helpers ---

    def _require_exam(self, exam_id: ExamId) -> Exam:
        exam = self._exams.get(exam_id)
        if exam is None:
            raise ExamNotFoundError(f"Exam {exam_id} does not exist.")
        return exam

    def _prepare_question(
        self,
        question: Question,
        exam_id: ExamId,
        position: int,
        known_ids: set[QuestionId],
    ) -> Question:
        """Validate a question and assign store identifiers.

        A question that already belongs to the exam keeps its id, so answers
        held by running attempts still point at it after an edit.
        """
        cleaned = normalize_question(question)
        keep_id = cleaned.id in known_ids
        alternatives = tuple(
            alternative if keep_id and alternative.id else replace(alternative, id=self._next_alternative_id())
            for alternative in cleaned.alternatives
        )
        return replace(
            cleaned,
            id=cleaned.id if keep_id else self._next_question_id(),
            exam_id=exam_id,
            question_order=cleaned.question_order or position,
            alternatives=alternatives,
        )

    def _next_exam_id(self) -> int:
        self._exam_counter += 1
        return self._exam_counter

    def _next_question_id(self) -> int:
        self._question_counter += 1
        return self._question_counter

    def _next_alternative_id(self) -> int:
        self._alternative_counter += 1
        return self._alternative_counter

    def _publish(self, scope: ChangeScope, subject_id: str | None) -> None:
        if self._feed is not None:
            self._feed.publish(scope, subject_id)


class InMemoryArtifactUploader(ArtifactUploader):
    """Keeps uploaded transcripts in a dictionary keyed by path."""

    def __init__(self) -> None:
        self.artifacts: dict[str, bytes] = {}

    async def upload_result_artifact(
        self,
        student_id: UserId,
        exam_id: ExamId,
        path: str,
        document: bytes,
    ) -> None:
        # Re-uploads overwrite, matching the bucket's upsert behaviour.
        self.artifacts[path] = document
