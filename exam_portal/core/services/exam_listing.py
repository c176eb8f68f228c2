"""Exam listing shown on the student dashboard.

Statuses computed here are advisory: they describe the data as fetched for
this listing and go stale immediately. Starting an exam always goes through
the submission guard.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

from exam_portal.core.access_evaluator import evaluate_exam_status, utc_now
from exam_portal.core.errors import ProfileNotFoundError
from exam_portal.core.models import ExamArea, ExamCard, Profile, UserId
from exam_portal.core.services.store_ports import ExamScope, ExamStore


@dataclass(slots=True)
class ExamListing:
    profile: Profile
    areas: list[ExamArea] = field(default_factory=list)

    @property
    def profile_complete(self) -> bool:
        return self.profile.is_complete

    def cards(self) -> list[ExamCard]:
        return [card for area in self.areas for card in area.exams]


async def list_exams(store: ExamStore, user_id: UserId, now: datetime | None = None) -> ExamListing:
    """Fetch the exams visible to a user, grouped by area with their current status."""
    profile = await store.fetch_profile(user_id)
    if profile is None:
        raise ProfileNotFoundError(f"No profile for user {user_id}.")

    exams, submitted_ids = await asyncio.gather(
        store.fetch_exams(ExamScope.for_profile(profile)),
        store.fetch_submitted_exam_ids(profile.id),
    )
    current = now or utc_now()

    groups: dict[str, ExamArea] = {}
    for exam in sorted(exams, key=lambda e: (e.area, e.series, e.start_at)):
        group = groups.setdefault(exam.area, ExamArea(area=exam.area))
        status = evaluate_exam_status(exam, profile, submitted_ids, now=current)
        group.exams.append(ExamCard(exam=exam, status=status))

    return ExamListing(profile=profile, areas=list(groups.values()))
