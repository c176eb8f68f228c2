"""Profile completion for students."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace

from exam_portal.constants.exam_constants import (
    CLASS_TAGS,
    PROFILE_SAVE_ATTEMPTS,
    PROFILE_SAVE_BACKOFF_SECONDS,
)
from exam_portal.core.errors import ProfileNotFoundError, ProfileValidationError, StoreUnavailableError
from exam_portal.core.models import Profile, UserId
from exam_portal.core.services.store_ports import ExamStore

logger = logging.getLogger(__name__)


class ProfileService:
    """Validates and stores the student-only profile fields."""

    def __init__(
        self,
        store: ExamStore,
        attempts: int = PROFILE_SAVE_ATTEMPTS,
        backoff_seconds: float = PROFILE_SAVE_BACKOFF_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be at least 1.")
        self._store = store
        self._attempts = attempts
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep

    async def complete_profile(
        self,
        user_id: UserId,
        full_name: str,
        enrollment_id: str,
        class_tag: str,
    ) -> Profile:
        name, enrollment, class_tag = self.validate(full_name, enrollment_id, class_tag)

        profile = await self._store.fetch_profile(user_id)
        if profile is None:
            raise ProfileNotFoundError(f"No profile for user {user_id}.")

        updated = replace(profile, full_name=name, enrollment_id=enrollment, class_tag=class_tag)
        return await self._save_with_retry(updated)

    @staticmethod
    def validate(full_name: str, enrollment_id: str, class_tag: str) -> tuple[str, str, str]:
        """Return normalized (name, enrollment id, class tag) or raise ``ProfileValidationError``."""
        name = (full_name or "").strip().upper()
        enrollment = (enrollment_id or "").strip()
        tag = (class_tag or "").strip().upper()

        missing = tuple(
            label
            for label, value in (("full_name", name), ("enrollment_id", enrollment), ("class_tag", tag))
            if not value
        )
        if missing:
            raise ProfileValidationError("All fields are required.", fields=missing)
        if tag not in CLASS_TAGS:
            raise ProfileValidationError(
                f"Unknown class '{class_tag}'. Choose one of {', '.join(CLASS_TAGS)}.",
                fields=("class_tag",),
            )
        return name, enrollment, tag

    async def _save_with_retry(self, profile: Profile) -> Profile:
        for attempt in range(1, self._attempts):
            try:
                return await self._store.save_profile(profile)
            except StoreUnavailableError:
                logger.warning("Saving profile %s failed (attempt %d/%d)", profile.id, attempt, self._attempts)
                await self._sleep(self._backoff_seconds * attempt)
        return await self._store.save_profile(profile)
