"""Staff operations on exams, grants and student lockouts.

Every call re-reads the acting profile from the store, so a role change takes
effect on the next operation. The store publishes the matching change scope
for each write, which is what aborts affected sessions.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from pathlib import Path

from exam_portal.core.access_evaluator import as_utc
from exam_portal.core.errors import ExamNotFoundError, PermissionDeniedError, ProfileNotFoundError
from exam_portal.core.exam_importer import load_questions_from_file
from exam_portal.core.models import AccessPolicy, Exam, ExamId, Profile, Question, Role, UserId
from exam_portal.core.question_rules import normalize_question
from exam_portal.core.services.results_board import ResultsBoard, ResultsSummary
from exam_portal.core.services.store_ports import ExamStore

logger = logging.getLogger(__name__)


class StaffConsole:
    """Operations reserved to professors and admins."""

    def __init__(self, store: ExamStore) -> None:
        self._store = store

    async def reschedule(self, actor_id: UserId, exam_id: ExamId, start_at: datetime, end_at: datetime) -> Exam:
        await self._require_staff(actor_id)
        exam = await self._require_exam(exam_id)
        start_at, end_at = as_utc(start_at), as_utc(end_at)
        if end_at <= start_at:
            logger.warning("Exam %s scheduled with end %s not after start %s", exam_id, end_at, start_at)
        saved = await self._store.save_exam(replace(exam, start_at=start_at, end_at=end_at))
        logger.info("Exam %s rescheduled by %s", exam_id, actor_id)
        return saved

    async def set_access_policy(self, actor_id: UserId, exam_id: ExamId, policy: AccessPolicy) -> Exam:
        await self._require_staff(actor_id)
        exam = await self._store.set_access_policy(exam_id, policy)
        logger.info("Exam %s policy set to %s by %s", exam_id, policy.value, actor_id)
        return exam

    async def set_individual_access(
        self,
        actor_id: UserId,
        exam_id: ExamId,
        student_id: UserId,
        grant: bool,
    ) -> Exam:
        """Grant or revoke one student's access. Repeating a call changes nothing."""
        await self._require_staff(actor_id)
        exam = await self._store.set_individual_access(exam_id, student_id, grant)
        logger.info(
            "Exam %s access %s for %s by %s",
            exam_id,
            "granted" if grant else "revoked",
            student_id,
            actor_id,
        )
        return exam

    async def block_student(self, actor_id: UserId, student_id: UserId) -> Profile:
        return await self._set_blocked(actor_id, student_id, True)

    async def unblock_student(self, actor_id: UserId, student_id: UserId) -> Profile:
        return await self._set_blocked(actor_id, student_id, False)

    async def save_exam(self, actor_id: UserId, exam: Exam, questions: list[Question] | None = None) -> Exam:
        """Create or replace an exam. Pass ``id=0`` to create."""
        await self._require_staff(actor_id)
        if questions is not None:
            questions = [normalize_question(question) for question in questions]
        exam = replace(exam, start_at=as_utc(exam.start_at), end_at=as_utc(exam.end_at))
        if exam.end_at <= exam.start_at:
            logger.warning("Exam '%s' saved with end %s not after start %s", exam.title, exam.end_at, exam.start_at)
        saved = await self._store.save_exam(exam, questions)
        logger.info("Exam %s saved by %s", saved.id, actor_id)
        return saved

    async def replace_questions(self, actor_id: UserId, exam_id: ExamId, questions: list[Question]) -> Exam:
        await self._require_staff(actor_id)
        exam = await self._require_exam(exam_id)
        cleaned = [normalize_question(question) for question in questions]
        saved = await self._store.save_exam(exam, cleaned)
        logger.info("Exam %s content replaced by %s (%d questions)", exam_id, actor_id, len(cleaned))
        return saved

    async def import_questions(self, actor_id: UserId, exam_id: ExamId, file_path: Path) -> Exam:
        """Replace an exam's content with the questions of a question bank file."""
        imported = load_questions_from_file(file_path)
        logger.info("Imported %d questions from %s", len(imported.questions), imported.source_path)
        return await self.replace_questions(actor_id, exam_id, imported.questions)

    async def delete_exam(self, actor_id: UserId, exam_id: ExamId) -> None:
        await self._require_staff(actor_id)
        await self._store.delete_exam(exam_id)
        logger.info("Exam %s deleted by %s", exam_id, actor_id)

    async def exam_questions(self, actor_id: UserId, exam_id: ExamId) -> list[Question]:
        """Return the full content, answer key included."""
        await self._require_staff(actor_id)
        return await self._store.fetch_exam_content(exam_id)

    async def exam_results(self, actor_id: UserId, exam_id: ExamId) -> ResultsSummary:
        await self._require_staff(actor_id)
        exam = await self._require_exam(exam_id)
        questions, submissions, students = await asyncio.gather(
            self._store.fetch_exam_content(exam_id),
            self._store.fetch_submissions(exam_id),
            self._store.fetch_students(),
        )
        profiles = await self._store.fetch_profiles({submission.student_id for submission in submissions})
        eligible = sum(1 for student in students if student.class_tag == exam.series)
        return ResultsBoard(questions).summarize(exam, submissions, profiles, eligible)

    async def _set_blocked(self, actor_id: UserId, student_id: UserId, blocked: bool) -> Profile:
        await self._require_staff(actor_id)
        profile = await self._store.fetch_profile(student_id)
        if profile is None:
            raise ProfileNotFoundError(f"No profile for user {student_id}.")
        if profile.is_blocked == blocked:
            return profile
        saved = await self._store.save_profile(replace(profile, is_blocked=blocked))
        logger.info("Student %s %s by %s", student_id, "blocked" if blocked else "unblocked", actor_id)
        return saved

    async def _require_staff(self, actor_id: UserId) -> Profile:
        actor = await self._store.fetch_profile(actor_id)
        if actor is None:
            raise ProfileNotFoundError(f"No profile for user {actor_id}.")
        if actor.role not in (Role.PROFESSOR, Role.ADMIN):
            raise PermissionDeniedError(f"User {actor_id} is not staff.")
        return actor

    async def _require_exam(self, exam_id: ExamId) -> Exam:
        exam = await self._store.fetch_exam(exam_id)
        if exam is None:
            raise ExamNotFoundError(f"Exam {exam_id} does not exist.")
        return exam
