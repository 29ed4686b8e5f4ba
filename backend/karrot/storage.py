from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from azure.core.credentials import TokenCredential
from azure.core.exceptions import HttpResponseError, ResourceExistsError
from azure.storage.blob import (
    BlobSasPermissions,
    BlobServiceClient,
    ContainerClient,
    ContentSettings,
    generate_blob_sas,
)
from pydantic import ValidationError

from .config import settings
from .models import Quiz, SessionState

logger = logging.getLogger(__name__)

_blob_service_client: BlobServiceClient | None = None
_container_initialised = False
_container_is_private: bool | None = None


class QuizImportError(ValueError):
    """Quiz definition file could not be read or is not a valid quiz."""


def parse_quiz(data: Any) -> Quiz:
    if not isinstance(data, dict):
        raise QuizImportError("Quiz definition must be a JSON object.")
    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        raise QuizImportError("Quiz definition is missing a title.")
    if not isinstance(data.get("questions"), list):
        raise QuizImportError("Quiz definition must contain a list of questions.")

    try:
        return Quiz.model_validate(data)
    except ValidationError as exc:
        raise QuizImportError(f"Quiz definition is invalid: {exc}") from exc


def load_quiz(path: Union[str, Path]) -> Quiz:
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise QuizImportError(f"Could not read {path}: {exc}") from exc
    except ValueError as exc:
        raise QuizImportError(f"{path} is not valid JSON: {exc}") from exc

    quiz = parse_quiz(data)
    logger.info("Loaded '%s' from %s (%d questions)", quiz.title, path, len(quiz.questions))
    return quiz


TEMPLATE_FILENAME = "karrot-quiz-template.json"

# One question of every type; the starting point offered to quiz authors.
TEMPLATE_QUIZ: Dict[str, Any] = {
    "title": "Sample Quiz",
    "description": "A sample quiz to get you started",
    "questions": [
        {
            "id": "1",
            "type": "multiple-choice",
            "question": "What is the capital of France?",
            "options": ["London", "Berlin", "Paris", "Madrid"],
            "correctAnswer": 2,
            "timeLimit": 30,
        },
        {
            "id": "2",
            "type": "multiple-select",
            "question": "Select all the irregular verbs:",
            "options": ["Walk", "Run", "Eat", "Talk", "Go"],
            "correctAnswers": [1, 2, 4],
            "timeLimit": 30,
        },
        {
            "id": "3",
            "type": "ranking",
            "question": "Order these planets by distance from the sun:",
            "options": ["Mercury", "Venus", "Earth", "Mars"],
            "timeLimit": 40,
        },
        {
            "id": "4",
            "type": "scales",
            "question": "How confident do you feel about today's topic?",
            "scaleMin": 1,
            "scaleMax": 10,
            "scaleLabels": {"min": "Confused", "max": "Expert"},
            "timeLimit": 20,
        },
        {
            "id": "5",
            "type": "word-cloud",
            "question": "Describe Karrot in one word",
            "timeLimit": 20,
        },
        {
            "id": "6",
            "type": "open-ended",
            "question": "What would you like to learn next?",
            "timeLimit": 60,
        },
        {
            "id": "7",
            "type": "q-and-a",
            "question": "Any questions for the presenter?",
            "timeLimit": 120,
        },
    ],
}


def write_template(path: Union[str, Path, None] = None) -> Path:
    """Write the sample quiz to ``path`` (a file or an existing directory)."""
    target = Path(path) if path is not None else Path(TEMPLATE_FILENAME)
    if target.is_dir():
        target = target / TEMPLATE_FILENAME
    target.write_text(json.dumps(TEMPLATE_QUIZ, indent=2), encoding="utf-8")
    logger.info("Wrote quiz template to %s", target)
    return target


def results_filename(room_code: str) -> str:
    return f"karrot-results-{room_code}.json"


def build_results(state: SessionState, completed_at: Optional[datetime] = None) -> Dict[str, Any]:
    """Export document for a finished (or abandoned) session."""
    completed_at = completed_at or datetime.now(timezone.utc)
    participants = [*state.roster.values(), *state.departed.values()]
    return {
        "quiz": state.quiz.to_wire(),
        "session": {
            "roomCode": state.room_code,
            "participants": [p.to_wire() for p in participants],
            "answers": [a.to_wire() for a in state.answers],
            "completedAt": completed_at.isoformat(),
        },
    }


def save_results(document: Dict[str, Any], directory: Union[str, Path, None] = None) -> Path:
    target = Path(directory or settings.RESULTS_DIR)
    target.mkdir(parents=True, exist_ok=True)
    path = target / results_filename(document["session"]["roomCode"])
    path.write_text(json.dumps(document, indent=2), encoding="utf-8")
    logger.info("Saved results to %s", path)
    return path


def _get_blob_service() -> BlobServiceClient:
    global _blob_service_client
    if _blob_service_client is None:
        if not settings.AZURE_STORAGE_CONNECTION_STRING:
            raise RuntimeError("Azure Blob Storage is not configured")
        _blob_service_client = BlobServiceClient.from_connection_string(
            settings.AZURE_STORAGE_CONNECTION_STRING
        )
    return _blob_service_client


def _error_code(exc: HttpResponseError) -> Optional[str]:
    return getattr(exc, "error_code", None) or getattr(getattr(exc, "error", None), "code", None)


async def _ensure_container(container_client: ContainerClient) -> bool:
    """Create the results container once per process; return whether it is private.

    Accounts that forbid anonymous access reject a public container, in which
    case a private one is created and readers get a signed URL instead.
    """
    global _container_initialised, _container_is_private
    if _container_initialised:
        return bool(_container_is_private)

    try:
        await asyncio.to_thread(container_client.create_container, public_access="blob")
        private = False
    except ResourceExistsError:
        properties = await asyncio.to_thread(container_client.get_container_properties)
        private = getattr(properties, "public_access", None) not in {"blob", "container"}
    except HttpResponseError as exc:
        if _error_code(exc) != "PublicAccessNotPermitted":
            raise
        try:
            await asyncio.to_thread(container_client.create_container)
        except ResourceExistsError:
            pass
        private = True

    _container_is_private = private
    _container_initialised = True
    logger.info("Results container ready (%s)", "private" if private else "public")
    return private


async def upload_results(document: Dict[str, Any]) -> str:
    """Upload a results document and return a URL it can be read from."""
    room_code = document.get("session", {}).get("roomCode")
    if not room_code:
        raise ValueError("Results document has no room code")

    service = _get_blob_service()
    container_client = service.get_container_client(settings.AZURE_STORAGE_CONTAINER)
    private = await _ensure_container(container_client)

    completed = document["session"].get("completedAt", "")
    stamp = completed.replace(":", "").replace("-", "").split(".")[0] or "latest"
    blob_name = f"{room_code}/{stamp}-{results_filename(room_code)}"
    blob_client = container_client.get_blob_client(blob_name)

    await asyncio.to_thread(
        blob_client.upload_blob,
        json.dumps(document, indent=2).encode("utf-8"),
        overwrite=True,
        content_settings=ContentSettings(content_type="application/json"),
    )
    logger.info("Uploaded results for %s to %s", room_code, blob_name)

    if not private:
        return blob_client.url
    token = await _sign_read_access(service, settings.AZURE_STORAGE_CONTAINER, blob_name)
    separator = "&" if "?" in blob_client.url else "?"
    return f"{blob_client.url}{separator}{token}"


async def _sign_read_access(service: BlobServiceClient, container_name: str, blob_name: str) -> str:
    """Read-only SAS token for one results blob, valid for ``RESULTS_LINK_TTL_HOURS``."""
    start = datetime.now(timezone.utc)
    expiry = start + timedelta(hours=settings.RESULTS_LINK_TTL_HOURS)
    signing = {
        "account_name": service.account_name,
        "container_name": container_name,
        "blob_name": blob_name,
        "permission": BlobSasPermissions(read=True),
        "expiry": expiry,
    }

    credential = getattr(service, "credential", None)
    if isinstance(credential, TokenCredential):
        signing["user_delegation_key"] = await asyncio.to_thread(service.get_user_delegation_key, start, expiry)
    elif credential is not None:
        signing["credential"] = credential
    else:
        raise RuntimeError("Azure Blob Storage credential is required to sign results links")
    return generate_blob_sas(**signing)
