"""FastAPI server that exposes the student and staff endpoints."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
import uvicorn

from exam_portal.constants.about import APP_ABOUT_TEXT, APP_LICENSE, APP_NAME, APP_VERSION
from exam_portal.constants.network_constants import DEFAULT_HOST, DEFAULT_PORT, USER_ID_HEADER
from exam_portal.core.errors import (
    ExamContentError,
    ExamImportError,
    ExamNotFoundError,
    PermissionDeniedError,
    PortalError,
    ProfileNotFoundError,
    ProfileValidationError,
    SessionNotFoundError,
    SessionStateError,
    StoreUnavailableError,
)
from exam_portal.core.exam_exporter import serialize_questions
from exam_portal.core.exam_importer import parse_question_bank
from exam_portal.core.markdown_math_renderer import renderer
from exam_portal.core.models import AccessPolicy, Exam, Profile, StudentQuestion
from exam_portal.core.portal_manager import PortalManager
from exam_portal.core.services.exam_listing import ExamListing
from exam_portal.core.services.exam_session import ExamSession
from exam_portal.core.services.results_board import ResultsSummary

_ERROR_STATUS: tuple[tuple[type[Exception], int], ...] = (
    (ProfileValidationError, 422),
    (ExamContentError, 422),
    (ExamImportError, 422),
    (SessionStateError, 409),
    (PermissionDeniedError, 403),
    (ProfileNotFoundError, 404),
    (ExamNotFoundError, 404),
    (SessionNotFoundError, 404),
    (StoreUnavailableError, 503),
)


class ProfilePayload(BaseModel):
    """Payload schema for profile completion."""

    full_name: str
    enrollment_id: str
    class_tag: str


class AnswerPayload(BaseModel):
    """Payload schema for a chosen alternative. ``null`` clears the answer."""

    letter: str | None = None


class SchedulePayload(BaseModel):
    start_at: datetime
    end_at: datetime


class PolicyPayload(BaseModel):
    policy: AccessPolicy


def _http_error(exc: Exception) -> HTTPException:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, RuntimeError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _get_portal_dependency(portal: PortalManager):
    def dependency() -> PortalManager:
        return portal

    return dependency


def _current_user_id(user_id: str | None = Header(default=None, alias=USER_ID_HEADER)) -> str:
    if not user_id or not user_id.strip():
        raise HTTPException(status_code=401, detail=f"Missing {USER_ID_HEADER} header.")
    return user_id.strip()


def _exam_payload(exam: Exam) -> dict[str, object]:
    return {
        "id": exam.id,
        "title": exam.title,
        "area": exam.area,
        "series": exam.series,
        "start_at": exam.start_at.isoformat(),
        "end_at": exam.end_at.isoformat(),
        "policy": exam.policy.value,
    }


def _profile_payload(profile: Profile) -> dict[str, object]:
    return {
        "id": profile.id,
        "role": profile.role.value,
        "email": profile.email,
        "full_name": profile.full_name,
        "enrollment_id": profile.enrollment_id,
        "class_tag": profile.class_tag,
        "is_blocked": profile.is_blocked,
        "is_complete": profile.is_complete,
    }


def _listing_payload(listing: ExamListing) -> dict[str, object]:
    return {
        "profile_complete": listing.profile_complete,
        "areas": [
            {
                "area": group.area,
                "exams": [
                    {**_exam_payload(card.exam), "status": card.status.value}
                    for card in group.exams
                ],
            }
            for group in listing.areas
        ],
    }


def _session_payload(session: ExamSession) -> dict[str, object]:
    return {
        "exam": _exam_payload(session.exam),
        "state": session.state.value,
        "question_count": session.question_count,
        "page_count": session.page_count,
        "answers": {str(question_id): letter for question_id, letter in session.answers.items()},
        "outcome": session.outcome.value if session.outcome else None,
        "abort_reason": session.abort_reason.value if session.abort_reason else None,
        "message": session.abort_message,
        "retryable": session.retryable,
    }


def _question_payload(question: StudentQuestion, selected: str | None) -> dict[str, object]:
    return {
        "id": question.id,
        "order": question.question_order,
        "title": question.title,
        "discipline": question.discipline,
        "long_text_html": renderer.render_fragment(question.long_text),
        "image_urls": list(question.image_urls),
        "alternatives": [
            {"id": alt.id, "letter": alt.letter, "text": alt.text}
            for alt in question.alternatives
        ],
        "selected": selected,
    }


def _results_payload(summary: ResultsSummary) -> dict[str, object]:
    return {
        "exam": _exam_payload(summary.exam),
        "participants": summary.participants,
        "eligible_students": summary.eligible_students,
        "participation_share": summary.participation_share,
        "average_percent": round(summary.average_percent, 2),
        "passed": summary.passed_count,
        "rows": [
            {
                "student_id": row.student_id,
                "full_name": row.full_name,
                "enrollment_id": row.enrollment_id,
                "class_tag": row.class_tag,
                "total_correct": row.total_correct,
                "total_questions": row.total_questions,
                "passed": row.passed,
                "score_by_discipline": {
                    discipline: {"correct": score.correct, "total": score.total}
                    for discipline, score in row.score_by_discipline.items()
                },
            }
            for row in summary.rows
        ],
    }


def create_api_app(portal: PortalManager) -> FastAPI:
    """Create a FastAPI application wired to the provided portal manager."""

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        await portal.shutdown()

    app = FastAPI(
        title=f"{APP_NAME} API",
        version=APP_VERSION,
        description=APP_ABOUT_TEXT,
        license_info={"name": APP_LICENSE},
        lifespan=lifespan,
    )
    portal_dep = _get_portal_dependency(portal)

    # --- Student routes ---

    @app.get("/profile")
    async def get_profile(
        user_id: str = Depends(_current_user_id),
        manager: PortalManager = Depends(portal_dep),
    ) -> dict[str, object]:
        try:
            profile = await manager.get_profile(user_id)
        except PortalError as exc:
            raise _http_error(exc) from exc
        if profile is None:
            raise HTTPException(status_code=404, detail=f"No profile for user {user_id}.")
        return _profile_payload(profile)

    @app.put("/profile")
    async def complete_profile(
        payload: ProfilePayload,
        user_id: str = Depends(_current_user_id),
        manager: PortalManager = Depends(portal_dep),
    ) -> dict[str, object]:
        try:
            profile = await manager.complete_profile(
                user_id,
                payload.full_name,
                payload.enrollment_id,
                payload.class_tag,
            )
        except ProfileValidationError as exc:
            raise HTTPException(
                status_code=422,
                detail={"message": str(exc), "fields": list(exc.fields)},
            ) from exc
        except PortalError as exc:
            raise _http_error(exc) from exc
        return _profile_payload(profile)

    @app.get("/exams")
    async def get_exams(
        user_id: str = Depends(_current_user_id),
        manager: PortalManager = Depends(portal_dep),
    ) -> dict[str, object]:
        try:
            listing = await manager.list_exams(user_id)
        except PortalError as exc:
            raise _http_error(exc) from exc
        return _listing_payload(listing)

    @app.post("/exams/{exam_id}/start", status_code=201)
    async def start_exam(
        exam_id: int,
        user_id: str = Depends(_current_user_id),
        manager: PortalManager = Depends(portal_dep),
    ) -> dict[str, object]:
        try:
            result = await manager.start_exam(user_id, exam_id)
        except PortalError as exc:
            raise _http_error(exc) from exc
        decision = result.decision
        if not decision.proceed or result.session is None:
            raise HTTPException(
                status_code=403,
                detail={"reason": decision.reason.value, "message": decision.message},
            )
        return _session_payload(result.session)

    @app.get("/sessions/{exam_id}")
    async def get_session(
        exam_id: int,
        user_id: str = Depends(_current_user_id),
        manager: PortalManager = Depends(portal_dep),
    ) -> dict[str, object]:
        try:
            session = manager.get_session(user_id, exam_id)
        except PortalError as exc:
            raise _http_error(exc) from exc
        return _session_payload(session)

    @app.get("/sessions/{exam_id}/pages/{page}")
    async def get_session_page(
        exam_id: int,
        page: int,
        user_id: str = Depends(_current_user_id),
        manager: PortalManager = Depends(portal_dep),
    ) -> dict[str, object]:
        try:
            session = manager.get_session(user_id, exam_id)
            questions = session.questions_on_page(page)
        except IndexError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except PortalError as exc:
            raise _http_error(exc) from exc
        answers = session.answers
        return {
            "page": page,
            "page_count": session.page_count,
            "state": session.state.value,
            "questions": [_question_payload(question, answers.get(question.id)) for question in questions],
        }

    @app.put("/sessions/{exam_id}/answers/{question_id}")
    async def record_answer(
        exam_id: int,
        question_id: int,
        payload: AnswerPayload,
        user_id: str = Depends(_current_user_id),
        manager: PortalManager = Depends(portal_dep),
    ) -> dict[str, object]:
        try:
            manager.record_answer(user_id, exam_id, question_id, payload.letter)
            session = manager.get_session(user_id, exam_id)
        except (PortalError, ValueError) as exc:
            raise _http_error(exc) from exc
        return {"question_id": question_id, "letter": session.answers.get(question_id)}

    @app.post("/sessions/{exam_id}/submit")
    async def submit_session(
        exam_id: int,
        user_id: str = Depends(_current_user_id),
        manager: PortalManager = Depends(portal_dep),
    ) -> dict[str, object]:
        try:
            outcome = await manager.submit(user_id, exam_id)
            session = manager.get_session(user_id, exam_id)
        except PortalError as exc:
            raise _http_error(exc) from exc
        return {**_session_payload(session), "outcome": outcome.value}

    @app.delete("/sessions/{exam_id}")
    async def abandon_session(
        exam_id: int,
        user_id: str = Depends(_current_user_id),
        manager: PortalManager = Depends(portal_dep),
    ) -> dict[str, object]:
        try:
            session = manager.abandon(user_id, exam_id)
        except PortalError as exc:
            raise _http_error(exc) from exc
        return _session_payload(session)

    @app.post("/sessions/{exam_id}/violation")
    async def report_violation(
        exam_id: int,
        user_id: str = Depends(_current_user_id),
        manager: PortalManager = Depends(portal_dep),
    ) -> dict[str, object]:
        try:
            session = await manager.report_violation(user_id, exam_id)
        except PortalError as exc:
            raise _http_error(exc) from exc
        return _session_payload(session)

    # --- Staff routes ---

    @app.patch("/staff/exams/{exam_id}/schedule")
    async def reschedule_exam(
        exam_id: int,
        payload: SchedulePayload,
        user_id: str = Depends(_current_user_id),
        manager: PortalManager = Depends(portal_dep),
    ) -> dict[str, object]:
        try:
            exam = await manager.staff.reschedule(user_id, exam_id, payload.start_at, payload.end_at)
        except PortalError as exc:
            raise _http_error(exc) from exc
        return _exam_payload(exam)

    @app.patch("/staff/exams/{exam_id}/policy")
    async def set_exam_policy(
        exam_id: int,
        payload: PolicyPayload,
        user_id: str = Depends(_current_user_id),
        manager: PortalManager = Depends(portal_dep),
    ) -> dict[str, object]:
        try:
            exam = await manager.staff.set_access_policy(user_id, exam_id, payload.policy)
        except PortalError as exc:
            raise _http_error(exc) from exc
        return _exam_payload(exam)

    @app.put("/staff/exams/{exam_id}/grants/{student_id}")
    async def grant_access(
        exam_id: int,
        student_id: str,
        user_id: str = Depends(_current_user_id),
        manager: PortalManager = Depends(portal_dep),
    ) -> dict[str, object]:
        try:
            exam = await manager.staff.set_individual_access(user_id, exam_id, student_id, grant=True)
        except PortalError as exc:
            raise _http_error(exc) from exc
        return {**_exam_payload(exam), "granted": student_id in exam.granted_student_ids}

    @app.delete("/staff/exams/{exam_id}/grants/{student_id}")
    async def revoke_access(
        exam_id: int,
        student_id: str,
        user_id: str = Depends(_current_user_id),
        manager: PortalManager = Depends(portal_dep),
    ) -> dict[str, object]:
        try:
            exam = await manager.staff.set_individual_access(user_id, exam_id, student_id, grant=False)
        except PortalError as exc:
            raise _http_error(exc) from exc
        return {**_exam_payload(exam), "granted": student_id in exam.granted_student_ids}

    @app.post("/staff/students/{student_id}/block")
    async def block_student(
        student_id: str,
        user_id: str = Depends(_current_user_id),
        manager: PortalManager = Depends(portal_dep),
    ) -> dict[str, object]:
        try:
            profile = await manager.staff.block_student(user_id, student_id)
        except PortalError as exc:
            raise _http_error(exc) from exc
        return _profile_payload(profile)

    @app.post("/staff/students/{student_id}/unblock")
    async def unblock_student(
        student_id: str,
        user_id: str = Depends(_current_user_id),
        manager: PortalManager = Depends(portal_dep),
    ) -> dict[str, object]:
        try:
            profile = await manager.staff.unblock_student(user_id, student_id)
        except PortalError as exc:
            raise _http_error(exc) from exc
        return _profile_payload(profile)

    @app.get("/staff/exams/{exam_id}/results")
    async def get_exam_results(
        exam_id: int,
        user_id: str = Depends(_current_user_id),
        manager: PortalManager = Depends(portal_dep),
    ) -> dict[str, object]:
        try:
            summary = await manager.staff.exam_results(user_id, exam_id)
        except PortalError as exc:
            raise _http_error(exc) from exc
        return _results_payload(summary)

    @app.get("/staff/exams/{exam_id}/question-bank", response_class=PlainTextResponse)
    async def export_question_bank(
        exam_id: int,
        user_id: str = Depends(_current_user_id),
        manager: PortalManager = Depends(portal_dep),
    ) -> str:
        try:
            questions = await manager.staff.exam_questions(user_id, exam_id)
            return serialize_questions(questions) if questions else ""
        except PortalError as exc:
            raise _http_error(exc) from exc

    @app.put("/staff/exams/{exam_id}/question-bank")
    async def import_question_bank(
        exam_id: int,
        request: Request,
        user_id: str = Depends(_current_user_id),
        manager: PortalManager = Depends(portal_dep),
    ) -> dict[str, object]:
        try:
            document = (await request.body()).decode("utf-8")
            questions = parse_question_bank(document)
            exam = await manager.staff.replace_questions(user_id, exam_id, questions)
        except (PortalError, ValueError) as exc:
            raise _http_error(exc) from exc
        return {**_exam_payload(exam), "question_count": len(questions)}

    return app


def run_api_server(
    portal: PortalManager,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    log_level: str = "info",
) -> None:
    """Serve the API on the current thread until interrupted."""
    app = create_api_app(portal)
    config = uvicorn.Config(app=app, host=host, port=port, log_level=log_level)
    server = uvicorn.Server(config)
    server.run()
