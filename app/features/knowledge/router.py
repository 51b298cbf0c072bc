"""
Knowledge feature: HTTP routes for uploading, indexing, inspecting and deleting
knowledge sources. Long-running ingestion is handed to FastAPI BackgroundTasks.
"""

import logging
import re
import unicodedata

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile

from app.background.document_tasks import run_index_task, run_reindex_task
from app.core.dependencies import get_current_user_id, get_knowledge_service
from app.core.exceptions import AppBaseError, app_error_to_http
from app.features.knowledge.schemas import (
    BulkReindexRequest,
    KnowledgeSourceResponse,
    SourceStatus,
)
from app.features.knowledge.service import KnowledgeService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Knowledge Base"])

MAX_UPLOAD_SIZE = 50 * 1024 * 1024  # 50MB


def secure_filename(filename: str) -> str:
    """Strip accents and special characters, replace whitespace with underscores."""
    filename = unicodedata.normalize("NFKD", filename).encode("ascii", "ignore").decode("ascii")
    filename = re.sub(r"[^\w\.-]", "_", filename)
    return filename or "document"


@router.post("/upload", status_code=202)
async def upload_knowledge_source(
    background_tasks: BackgroundTasks,
    agent_id: str = Form(...),
    file: UploadFile = File(...),
    user_id: str = Depends(get_current_user_id),
    service: KnowledgeService = Depends(get_knowledge_service),
):
    """
    Upload a document into an agent's knowledge base.
    - Stores the file under agents/{agent_id}/sources/{source_id}/.
    - Records the source with status `uploaded`.
    - Schedules parse → chunk → embed → index as a background task.
    """
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")
    if len(content) > MAX_UPLOAD_SIZE:
        raise HTTPException(status_code=413, detail="File too large. Maximum size is 50MB.")

    file_name = secure_filename(file.filename or "document")
    mime = file.content_type or "application/octet-stream"

    try:
        source = await service.create_source(agent_id, file_name, content, mime)
    except AppBaseError as e:
        raise app_error_to_http(e)

    background_tasks.add_task(run_index_task, service, source.id)
    logger.info(f"📤 User {user_id} uploaded {file_name} for agent {agent_id}")

    return {
        "status": "success",
        "message": "Upload successful. Document is being indexed in the background.",
        "data": KnowledgeSourceResponse.from_source(source),
    }


@router.get("/health/overview")
async def knowledge_health_overview(
    agent_id: str | None = None,
    user_id: str = Depends(get_current_user_id),
    service: KnowledgeService = Depends(get_knowledge_service),
):
    """Status counts, chunk totals and stale sources across the knowledge base."""
    return {"status": "success", "data": await service.health_overview(agent_id)}


@router.get("/health/index")
async def vector_index_health(
    user_id: str = Depends(get_current_user_id),
    service: KnowledgeService = Depends(get_knowledge_service),
):
    """Vector index diagnostics (dimensions, vector count, last processed mutation)."""
    return {"status": "success", "data": await service.index_health()}


@router.post("/bulk-reindex")
async def bulk_reindex(
    request: BulkReindexRequest,
    user_id: str = Depends(get_current_user_id),
    service: KnowledgeService = Depends(get_knowledge_service),
):
    """Reindex several sources; per-source failures are reported, not raised."""
    result = await service.bulk_reindex(request.source_ids)
    return {"status": "success", "data": result}


@router.post("/{source_id}/index", status_code=202)
async def index_knowledge_source(
    source_id: str,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    service: KnowledgeService = Depends(get_knowledge_service),
):
    """Run or resume ingestion for a source in the background."""
    try:
        source = await service.get_source(source_id)
    except AppBaseError as e:
        raise app_error_to_http(e)

    if source.status == SourceStatus.INDEXED:
        return {
            "status": "success",
            "message": "Knowledge source is already indexed.",
            "data": KnowledgeSourceResponse.from_source(source),
        }

    background_tasks.add_task(run_index_task, service, source_id)
    return {
        "status": "success",
        "message": "Indexing started in background.",
        "data": KnowledgeSourceResponse.from_source(source),
    }


@router.post("/{source_id}/reindex", status_code=202)
async def reindex_knowledge_source(
    source_id: str,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    service: KnowledgeService = Depends(get_knowledge_service),
):
    """Delete a source's chunks and vectors, then index it again from its stored file."""
    try:
        source = await service.get_source(source_id)
    except AppBaseError as e:
        raise app_error_to_http(e)

    background_tasks.add_task(run_reindex_task, service, source_id)
    return {
        "status": "success",
        "message": "Reindex started in background.",
        "data": KnowledgeSourceResponse.from_source(source),
    }


@router.get("/{source_id}/health")
async def knowledge_source_health(
    source_id: str,
    user_id: str = Depends(get_current_user_id),
    service: KnowledgeService = Depends(get_knowledge_service),
):
    try:
        detail = await service.health_detail(source_id)
    except AppBaseError as e:
        raise app_error_to_http(e)
    return {"status": "success", "data": detail}


@router.get("/{source_id}")
async def get_knowledge_source(
    source_id: str,
    user_id: str = Depends(get_current_user_id),
    service: KnowledgeService = Depends(get_knowledge_service),
):
    """Current status and progress of one source."""
    try:
        source = await service.get_source(source_id)
    except AppBaseError as e:
        raise app_error_to_http(e)
    return {"status": "success", "data": KnowledgeSourceResponse.from_source(source)}


@router.get("/")
async def list_knowledge_sources(
    agent_id: str | None = None,
    status: SourceStatus | None = None,
    user_id: str = Depends(get_current_user_id),
    service: KnowledgeService = Depends(get_knowledge_service),
):
    sources = await service.list_sources(agent_id=agent_id, status=status)
    return {
        "status": "success",
        "data": [KnowledgeSourceResponse.from_source(s) for s in sources],
    }


@router.delete("/{source_id}")
async def delete_knowledge_source(
    source_id: str,
    user_id: str = Depends(get_current_user_id),
    service: KnowledgeService = Depends(get_knowledge_service),
):
    """
    Delete a knowledge source.
    - Removes its vectors from the index (best effort).
    - Removes the stored file (best effort).
    - Deletes the source row; chunk rows go with it (CASCADE).
    """
    try:
        report = await service.delete_source(source_id)
    except AppBaseError as e:
        raise app_error_to_http(e)
    except Exception as e:
        logger.error(f"❌ Error deleting knowledge source {source_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to delete knowledge source: {e}")

    return {"status": "success", "message": "Knowledge source deleted.", "data": report}
