"""Pure rules deciding what one user may currently do with one exam.

Rules are checked in a fixed order and the first match wins:

    completed          a submission already exists for the exam
    expired            the exam window has closed
    locked_permission  no admin role, exam not open to all, no individual grant
    locked_time        permission held but the window has not opened yet
    available          everything else

Completion outranks every other rule, including blocks and re-opened access.
Expiry outranks permission, so an individual grant never revives a closed
window. Only ``admin`` skips the permission rule; professors need the same
grants as students.
"""

from __future__ import annotations

from collections.abc import Container
from datetime import datetime, timezone

from exam_portal.core.models import AccessPolicy, AccessStatus, Exam, ExamId, Profile, Role


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(moment: datetime) -> datetime:
    """Treat naive timestamps as UTC so comparisons never mix naive and aware values."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def has_permission(exam: Exam, profile: Profile) -> bool:
    if profile.role is Role.ADMIN:
        return True
    if exam.policy is AccessPolicy.OPEN_TO_ALL:
        return True
    return profile.id in exam.granted_student_ids


def evaluate_exam_status(
    exam: Exam,
    profile: Profile,
    submitted_exam_ids: Container[ExamId],
    now: datetime | None = None,
) -> AccessStatus:
    """Return the access status of ``exam`` for ``profile`` at ``now``."""
    if exam.id in submitted_exam_ids:
        return AccessStatus.COMPLETED

    current = as_utc(now) if now is not None else utc_now()
    if current > as_utc(exam.end_at):
        return AccessStatus.EXPIRED

    if not has_permission(exam, profile):
        return AccessStatus.LOCKED_PERMISSION

    if current < as_utc(exam.start_at):
        return AccessStatus.LOCKED_TIME

    return AccessStatus.AVAILABLE
