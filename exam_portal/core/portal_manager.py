"""Business logic shared by every client of one portal process.

Architecture note:
    The manager is a facade over the guard, the exam sessions and the staff
    console. Sessions live in memory keyed by (student, exam) and each one
    owns a watcher task consuming the change feed. Everything runs on one
    event loop, so session state is only touched between awaits. Start
    requests are serialized per (student, exam) so a double click cannot
    open two sessions for the same attempt, while other attempts start
    independently.

    Once a session is terminal and its transcript upload has settled it moves
    to a bounded map of finished sessions, kept only so clients can still
    read the final state.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, OrderedDict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime

from exam_portal.constants.exam_constants import FINISHED_SESSIONS_KEPT
from exam_portal.core.access_evaluator import utc_now
from exam_portal.core.errors import SessionNotFoundError
from exam_portal.core.models import ExamId, Profile, QuestionId, UserId
from exam_portal.core.services.change_feed import ChangeFeed, Subscription
from exam_portal.core.services.exam_listing import ExamListing, list_exams
from exam_portal.core.services.exam_session import WATCHED_SCOPES, ExamSession, SessionState
from exam_portal.core.services.profile_service import ProfileService
from exam_portal.core.services.staff_console import StaffConsole
from exam_portal.core.services.store_ports import ArtifactUploader, ExamStore, SubmissionOutcome
from exam_portal.core.services.submission_guard import StartDecision, SubmissionGuard

logger = logging.getLogger(__name__)

_ACTIVE_STATES = frozenset({SessionState.LOADING, SessionState.IN_PROGRESS, SessionState.SUBMITTING})

SessionKey = tuple[UserId, ExamId]


@dataclass(slots=True, frozen=True)
class StartResult:
    decision: StartDecision
    session: ExamSession | None = None


class PortalManager:
    """Facade for the portal services: guard, sessions, profiles and staff console."""

    def __init__(
        self,
        store: ExamStore,
        feed: ChangeFeed,
        uploader: ArtifactUploader,
        clock: Callable[[], datetime] = utc_now,
        profile_service: ProfileService | None = None,
        finished_session_limit: int = FINISHED_SESSIONS_KEPT,
    ) -> None:
        if finished_session_limit < 0:
            raise ValueError("finished_session_limit must not be negative.")
        self._store = store
        self._feed = feed
        self._uploader = uploader
        self._clock = clock
        self._finished_limit = finished_session_limit

        # Services
        self._guard = SubmissionGuard(store, clock=clock)
        self._profiles = profile_service or ProfileService(store)
        self._staff = StaffConsole(store)

        self._sessions: dict[SessionKey, ExamSession] = {}
        self._finished: OrderedDict[SessionKey, ExamSession] = OrderedDict()
        self._watchers: dict[SessionKey, asyncio.Task[None]] = {}
        self._start_locks: dict[SessionKey, asyncio.Lock] = {}
        self._start_waiters: Counter[SessionKey] = Counter()

    @property
    def staff(self) -> StaffConsole:
        return self._staff

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    # --- Student dashboard ---

    async def list_exams(self, user_id: UserId) -> ExamListing:
        return await list_exams(self._store, user_id, now=self._clock())

    async def complete_profile(
        self,
        user_id: UserId,
        full_name: str,
        enrollment_id: str,
        class_tag: str,
    ) -> Profile:
        return await self._profiles.complete_profile(user_id, full_name, enrollment_id, class_tag)

    async def get_profile(self, user_id: UserId) -> Profile | None:
        return await self._store.fetch_profile(user_id)

    # --- Sessions ---

    async def start_exam(self, user_id: UserId, exam_id: ExamId) -> StartResult:
        """Run the guard and open (or resume) a session when it approves."""
        key = (user_id, exam_id)
        async with self._start_lock(key):
            # Subscribe before the guard reads, so a change landing between
            # the guard and the watcher start is still delivered.
            subscription = self._feed.subscribe(WATCHED_SCOPES)
            try:
                decision = await self._guard.request_start(exam_id, user_id)
            except BaseException:
                subscription.cancel()
                raise
            if not decision.proceed:
                subscription.cancel()
                return StartResult(decision=decision)

            existing = self._sessions.get(key)
            if existing is not None and existing.state in _ACTIVE_STATES:
                subscription.cancel()
                logger.info("Resuming exam %s for user %s", exam_id, user_id)
                return StartResult(decision=decision, session=existing)

            session = ExamSession(self._store, self._uploader, decision.exam, decision.profile, clock=self._clock)
            try:
                await session.load()
            except BaseException:
                subscription.cancel()
                raise
            self._sessions[key] = session
            self._finished.pop(key, None)
            if session.state is SessionState.IN_PROGRESS:
                self._watchers[key] = asyncio.create_task(self._watch(key, session, subscription))
            else:
                subscription.cancel()
                self._retire(key, session)
            return StartResult(decision=decision, session=session)

    def get_session(self, user_id: UserId, exam_id: ExamId) -> ExamSession:
        key = (user_id, exam_id)
        session = self._sessions.get(key) or self._finished.get(key)
        if session is None:
            raise SessionNotFoundError(f"No session for exam {exam_id} and user {user_id}.")
        return session

    def record_answer(self, user_id: UserId, exam_id: ExamId, question_id: QuestionId, letter: str | None) -> None:
        """Select an alternative, or clear the answer when ``letter`` is ``None``."""
        session = self.get_session(user_id, exam_id)
        if letter is None:
            session.clear_answer(question_id)
        else:
            session.select_answer(question_id, letter)

    async def submit(self, user_id: UserId, exam_id: ExamId) -> SubmissionOutcome:
        return await self.get_session(user_id, exam_id).finalize()

    def abandon(self, user_id: UserId, exam_id: ExamId) -> ExamSession:
        session = self.get_session(user_id, exam_id)
        session.abandon()
        return session

    async def report_violation(self, user_id: UserId, exam_id: ExamId) -> ExamSession:
        """Block a student who broke the exam rules and end the attempt."""
        session = self.get_session(user_id, exam_id)
        if await session.report_violation():
            logger.warning("User %s blocked for a rule violation on exam %s", user_id, exam_id)
        return session

    def active_session_count(self) -> int:
        return sum(1 for session in self._sessions.values() if session.state in _ACTIVE_STATES)

    async def shutdown(self) -> None:
        """Abandon open attempts and wait for watchers and pending uploads."""
        for session in list(self._sessions.values()):
            if session.state in (SessionState.LOADING, SessionState.IN_PROGRESS):
                session.abandon()
        watchers = list(self._watchers.values())
        if watchers:
            await asyncio.gather(*watchers, return_exceptions=True)
        await asyncio.gather(
            *(session.wait_for_artifacts() for session in list(self._sessions.values())),
            return_exceptions=True,
        )
        logger.info(
            "Portal shut down with %d open and %d finished session(s)",
            len(self._sessions),
            len(self._finished),
        )

    @asynccontextmanager
    async def _start_lock(self, key: SessionKey) -> AsyncIterator[None]:
        lock = self._start_locks.setdefault(key, asyncio.Lock())
        self._start_waiters[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._start_waiters[key] -= 1
            if not self._start_waiters[key]:
                del self._start_waiters[key]
                del self._start_locks[key]

    async def _watch(self, key: SessionKey, session: ExamSession, subscription: Subscription) -> None:
        try:
            await session.watch(subscription)
            await session.wait_for_artifacts()
        except Exception:
            logger.exception("Watcher for exam %s, user %s failed", key[1], key[0])
        finally:
            if self._watchers.get(key) is asyncio.current_task():
                del self._watchers[key]
            self._retire(key, session)

    def _retire(self, key: SessionKey, session: ExamSession) -> None:
        if not session.is_terminal or self._sessions.get(key) is not session:
            return
        del self._sessions[key]
        self._finished[key] = session
        self._finished.move_to_end(key)
        while len(self._finished) > self._finished_limit:
            self._finished.popitem(last=False)
