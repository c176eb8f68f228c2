import asyncio
import logging
from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import make_exam, make_question, make_student
from exam_portal.core.errors import SessionStateError, StoreUnavailableError
from exam_portal.core.models import AccessPolicy, Profile, Role
from exam_portal.core.services.exam_session import WATCHED_SCOPES, AbortReason, ExamSession, SessionState
from exam_portal.core.services.store_ports import SubmissionOutcome


async def _wait_until(predicate, rounds: int = 200) -> None:
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


async def _new_session(store, uploader, clock, *, question_count=3, exam_policy=AccessPolicy.OPEN_TO_ALL, **exam_overrides):
    profile = await store.save_profile(make_student())
    exam = await store.save_exam(
        make_exam(policy=exam_policy, **exam_overrides),
        [make_question(f"Q{number}") for number in range(1, question_count + 1)],
    )
    return ExamSession(store, uploader, exam, profile, clock=clock)


@pytest.fixture
async def session(store, uploader, clock):
    session = await _new_session(store, uploader, clock)
    await session.load()
    return session


class TestLoading:
    async def test_load_hides_answer_key(self, session):
        assert session.state is SessionState.IN_PROGRESS
        questions = session.get_questions()
        assert [q.title for q in questions] == ["Q1", "Q2", "Q3"]
        for question in questions:
            for alternative in question.alternatives:
                assert not hasattr(alternative, "is_correct")

    async def test_pages_hold_five_questions(self, store, uploader, clock):
        session = await _new_session(store, uploader, clock, question_count=7)
        await session.load()

        assert session.page_count == 2
        assert len(session.questions_on_page(0)) == 5
        assert [q.title for q in session.questions_on_page(1)] == ["Q6", "Q7"]
        with pytest.raises(IndexError):
            session.questions_on_page(2)

    async def test_transient_load_failure_is_retryable(self, store, uploader, clock, monkeypatch):
        session = await _new_session(store, uploader, clock)

        async def unavailable(exam_id):
            raise StoreUnavailableError("offline")

        monkeypatch.setattr(store, "fetch_exam_content", unavailable)

        assert await session.load() is SessionState.ABORTED
        assert session.abort_reason is AbortReason.LOAD_FAILED
        assert session.retryable

    async def test_exam_without_questions_is_fatal(self, store, uploader, clock):
        session = await _new_session(store, uploader, clock, question_count=0)

        await session.load()

        assert session.abort_reason is AbortReason.CONTENT_INVALID
        assert not session.retryable
        with pytest.raises(SessionStateError):
            session.questions_on_page(0)

    async def test_answering_before_load_is_illegal(self, store, uploader, clock):
        session = await _new_session(store, uploader, clock)

        with pytest.raises(SessionStateError):
            session.select_answer(1, "A")


class TestAnswers:
    async def test_select_and_clear(self, session):
        first = session.get_questions()[0]

        session.select_answer(first.id, "b")
        assert session.answers == {first.id: "B"}

        session.clear_answer(first.id)
        assert session.answers == {}

    async def test_rejects_unknown_letter_and_question(self, session):
        first = session.get_questions()[0]

        with pytest.raises(ValueError):
            session.select_answer(first.id, "E")
        with pytest.raises(ValueError):
            session.select_answer(999, "A")


class TestFinalize:
    async def test_concurrent_finalize_writes_once(self, session, store):
        session.select_answer(session.get_questions()[0].id, "B")

        outcomes = await asyncio.gather(session.finalize(), session.finalize())

        assert outcomes == [SubmissionOutcome.CREATED, SubmissionOutcome.CREATED]
        assert store.submission_count() == 1
        assert session.state is SessionState.FINALIZED
        assert await session.finalize() is SubmissionOutcome.CREATED

    async def test_second_device_sees_existing_record_as_success(self, store, uploader, clock):
        first = await _new_session(store, uploader, clock)
        second = ExamSession(store, uploader, first.exam, first.profile, clock=clock)
        await first.load()
        await second.load()

        await first.finalize()
        outcome = await second.finalize()

        assert outcome is SubmissionOutcome.ALREADY_EXISTS
        assert second.state is SessionState.FINALIZED
        assert store.submission_count() == 1

    async def test_transient_failure_keeps_answers(self, session, store, monkeypatch):
        question_id = session.get_questions()[1].id
        session.select_answer(question_id, "C")
        original = store.create_submission
        calls = []

        async def flaky(*args):
            calls.append(args)
            if len(calls) == 1:
                raise StoreUnavailableError("timeout")
            return await original(*args)

        monkeypatch.setattr(store, "create_submission", flaky)

        with pytest.raises(StoreUnavailableError):
            await session.finalize()
        assert session.state is SessionState.IN_PROGRESS
        assert session.answers == {question_id: "C"}

        assert await session.finalize() is SubmissionOutcome.CREATED
        [stored] = await store.fetch_submissions(session.exam.id)
        assert stored.answers == {question_id: "C"}

    async def test_unexpected_failure_aborts(self, session, store, monkeypatch):
        async def broken(*args):
            raise KeyError("boom")

        monkeypatch.setattr(store, "create_submission", broken)

        with pytest.raises(KeyError):
            await session.finalize()
        assert session.abort_reason is AbortReason.SUBMIT_FAILED

    async def test_transcript_uploaded_after_finalize(self, session, uploader):
        first = session.get_questions()[0]
        session.select_answer(first.id, "A")

        await session.finalize()
        await session.wait_for_artifacts()

        [(path, document)] = uploader.artifacts.items()
        assert path == "3A_MATEMATICA/TURMA_3A/2025001-MARIA_SILVA.html"
        html = document.decode("utf-8")
        assert "<table>" in html
        assert "N/R" in html
        assert "MARIA SILVA" in html

    async def test_upload_failure_never_undoes_submission(self, session, store, uploader, monkeypatch, caplog):
        async def failing(*args):
            raise OSError("bucket unavailable")

        monkeypatch.setattr(uploader, "upload_result_artifact", failing)

        with caplog.at_level(logging.ERROR):
            assert await session.finalize() is SubmissionOutcome.CREATED
            await session.wait_for_artifacts()

        assert session.state is SessionState.FINALIZED
        assert store.submission_count() == 1
        assert "Transcript upload failed" in caplog.text


class TestAbandon:
    async def test_abandon_discards_answers(self, session, store):
        session.select_answer(session.get_questions()[0].id, "A")

        session.abandon()

        assert session.state is SessionState.ABORTED
        assert session.answers == {}
        assert session.retryable
        assert store.submission_count() == 0
        with pytest.raises(SessionStateError):
            await session.finalize()

    async def test_abandon_after_finalize_is_a_no_op(self, session):
        await session.finalize()

        session.abandon()

        assert session.state is SessionState.FINALIZED


class TestRevocation:
    @pytest.fixture
    async def watched(self, session, feed):
        task = asyncio.create_task(session.watch(feed.subscribe(WATCHED_SCOPES)))
        yield session
        session.abandon()
        await asyncio.wait_for(task, timeout=1)

    async def test_block_aborts_session(self, watched, store):
        watched.select_answer(watched.get_questions()[0].id, "A")

        await store.save_profile(replace(watched.profile, is_blocked=True))
        await _wait_until(lambda: watched.is_terminal)

        assert watched.abort_reason is AbortReason.BLOCKED
        assert watched.answers == {}
        assert store.submission_count() == 0

    async def test_exam_deletion_aborts_session(self, watched, store):
        await store.delete_exam(watched.exam.id)
        await _wait_until(lambda: watched.is_terminal)

        assert watched.abort_reason is AbortReason.ACCESS_REVOKED

    async def test_policy_closed_aborts_session(self, watched, store):
        await store.set_access_policy(watched.exam.id, AccessPolicy.CLOSED)
        await _wait_until(lambda: watched.is_terminal)

        assert watched.abort_reason is AbortReason.ACCESS_REVOKED

    async def test_submission_from_other_device_aborts(self, watched, store):
        await store.create_submission(watched.exam.id, watched.profile.id, {})
        await _wait_until(lambda: watched.is_terminal)

        assert watched.abort_reason is AbortReason.ALREADY_SUBMITTED

    async def test_expiry_detected_on_next_signal(self, watched, store, clock):
        clock.advance(hours=2)
        await store.save_profile(replace(watched.profile, email="new@example.com"))
        await _wait_until(lambda: watched.is_terminal)

        assert watched.abort_reason is AbortReason.ACCESS_REVOKED

    async def test_unrelated_change_keeps_session(self, watched, store, feed):
        await store.save_profile(make_student("s2"))
        await _wait_until(lambda: feed.subscriber_count() == 1 and watched.state is SessionState.IN_PROGRESS)
        for _ in range(10):
            await asyncio.sleep(0)

        assert watched.state is SessionState.IN_PROGRESS

    async def test_store_failure_during_recheck_keeps_session(self, session, store, monkeypatch):
        async def unavailable(user_id):
            raise StoreUnavailableError("offline")

        monkeypatch.setattr(store, "fetch_profile", unavailable)

        await session.revalidate()

        assert session.state is SessionState.IN_PROGRESS

    async def test_reschedule_into_future_aborts(self, watched, store):
        later = replace(
            watched.exam,
            start_at=watched.exam.start_at + timedelta(days=1),
            end_at=watched.exam.end_at + timedelta(days=1),
        )
        await store.save_exam(later)
        await _wait_until(lambda: watched.is_terminal)

        assert watched.abort_reason is AbortReason.ACCESS_REVOKED

    async def test_replaced_questions_abort_session(self, watched, store):
        watched.select_answer(watched.get_questions()[0].id, "A")

        await store.save_exam(watched.exam, [make_question("Nova")])
        await _wait_until(lambda: watched.is_terminal)

        assert watched.abort_reason is AbortReason.CONTENT_CHANGED
        assert watched.retryable
        assert watched.answers == {}

    async def test_edited_wording_keeps_session_and_answers(self, watched, store):
        first, *rest = await store.fetch_exam_content(watched.exam.id)
        watched.select_answer(first.id, "B")

        await store.save_exam(watched.exam, [replace(first, title="Q1 revisada"), *rest])
        for _ in range(20):
            await asyncio.sleep(0)

        assert watched.state is SessionState.IN_PROGRESS
        assert watched.answers == {first.id: "B"}

    async def test_changes_for_other_students_are_skipped(self, watched, store, monkeypatch):
        original = store.fetch_profile
        fetched = []

        async def counting(user_id):
            fetched.append(user_id)
            return await original(user_id)

        monkeypatch.setattr(store, "fetch_profile", counting)

        await store.save_profile(make_student("s2"))
        await store.create_submission(watched.exam.id, "s2", {})
        await store.set_individual_access(watched.exam.id, "s2", True)
        await store.save_exam(make_exam())
        for _ in range(20):
            await asyncio.sleep(0)
        assert fetched == []

        await store.save_profile(replace(watched.profile, email="nova@example.com"))
        await _wait_until(lambda: fetched)

        assert fetched == ["s1"]
        assert watched.state is SessionState.IN_PROGRESS


class TestViolation:
    async def test_student_is_blocked_and_attempt_ends(self, session, store):
        session.select_answer(session.get_questions()[0].id, "A")

        assert await session.report_violation()

        assert session.abort_reason is AbortReason.BLOCKED
        assert session.answers == {}
        assert (await store.fetch_profile("s1")).is_blocked
        assert store.submission_count() == 0

    async def test_admin_keeps_session(self, store, uploader, clock):
        admin = await store.save_profile(Profile(id="adm", role=Role.ADMIN))
        exam = await store.save_exam(make_exam(policy=AccessPolicy.OPEN_TO_ALL), [make_question()])
        session = ExamSession(store, uploader, exam, admin, clock=clock)
        await session.load()

        assert not await session.report_violation()

        assert session.state is SessionState.IN_PROGRESS
        assert not (await store.fetch_profile("adm")).is_blocked

    async def test_failed_block_still_ends_attempt(self, session, store, monkeypatch):
        async def unavailable(profile):
            raise StoreUnavailableError("offline")

        monkeypatch.setattr(store, "save_profile", unavailable)

        with pytest.raises(StoreUnavailableError):
            await session.report_violation()
        assert session.abort_reason is AbortReason.ABANDONED

    async def test_rejected_after_finalize(self, session):
        await session.finalize()

        with pytest.raises(SessionStateError):
            await session.report_violation()
