"""Application entry point for the exam portal development server."""

from __future__ import annotations

import asyncio
import os
from datetime import timedelta

from exam_portal.constants.network_constants import DEFAULT_HOST, DEFAULT_PORT
from exam_portal.core.access_evaluator import utc_now
from exam_portal.core.exam_importer import parse_question_bank
from exam_portal.core.models import AccessPolicy, Exam, Profile, Role
from exam_portal.core.portal_manager import PortalManager
from exam_portal.core.services.change_feed import ChangeFeed
from exam_portal.core.services.memory_store import InMemoryArtifactUploader, InMemoryExamStore
from exam_portal.server.api_server import run_api_server
from exam_portal.utils.logging_config import configure_logging

_DEMO_QUESTION_BANK = """\
Q: Quanto vale $2 + 2$?
DISCIPLINE: Matemática
A: 3
B: 4
C: 5
CORRECT: B

---

Q: Qual é a capital do Brasil?
DISCIPLINE: Geografia
A: Rio de Janeiro
B: São Paulo
C: Brasília
D: Salvador
CORRECT: C
"""


async def _seed_demo_data(store: InMemoryExamStore) -> None:
    """Populate the in-memory store with one exam and one user per role."""
    await store.save_profile(Profile(id="admin", role=Role.ADMIN, email="admin@example.com"))
    await store.save_profile(Profile(id="professor", role=Role.PROFESSOR, email="prof@example.com", class_tag="3A"))
    await store.save_profile(Profile(id="student", role=Role.STUDENT, email="student@example.com"))
    now = utc_now()
    await store.save_exam(
        Exam(
            id=0,
            title="Avaliação Diagnóstica",
            area="Matemática",
            series="3A",
            start_at=now - timedelta(minutes=5),
            end_at=now + timedelta(hours=2),
            policy=AccessPolicy.OPEN_TO_ALL,
        ),
        parse_question_bank(_DEMO_QUESTION_BANK),
    )


def main() -> None:
    """Initialize logging, wire the portal services and serve the API."""
    log_level = os.getenv("EXAM_PORTAL_LOG_LEVEL", "INFO").upper()
    logger = configure_logging(log_level)
    host = os.getenv("EXAM_PORTAL_HOST", DEFAULT_HOST)
    port = int(os.getenv("EXAM_PORTAL_PORT", str(DEFAULT_PORT)))
    logger.info("Starting exam portal…")

    feed = ChangeFeed()
    store = InMemoryExamStore(feed)
    portal = PortalManager(store=store, feed=feed, uploader=InMemoryArtifactUploader())
    if os.getenv("EXAM_PORTAL_DEMO", "1") != "0":
        asyncio.run(_seed_demo_data(store))
        logger.info("Seeded demo data (users: admin, professor, student)")

    logger.info("API available at http://%s:%d/docs", host, port)
    run_api_server(portal, host=host, port=port, log_level=log_level.lower())


if __name__ == "__main__":
    main()
