"""Knowledge base management endpoints.

Agents list, add and edit entries; deletion is limited to admins. Content
changes are re-embedded by the knowledge service.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.app.api.deps import (
    get_current_user,
    get_knowledge_importer,
    get_knowledge_service,
    require_admin,
)
from src.app.models.user import User
from src.knowledge.ingestion.pipeline import ConversationKnowledgeImporter
from src.knowledge.models import (
    BulkDeleteRequest,
    ImportResult,
    KnowledgeEntryCreate,
    KnowledgeEntryResponse,
    KnowledgeEntryUpdate,
    KnowledgeSource,
    KnowledgeStats,
)
from src.knowledge.service import KnowledgeService

router = APIRouter(prefix="/api/v1/knowledge", tags=["knowledge"])


@router.get("", response_model=list[KnowledgeEntryResponse])
async def list_entries(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    source: KnowledgeSource | None = None,
    search: str | None = None,
    knowledge: KnowledgeService = Depends(get_knowledge_service),
    current_user: User = Depends(get_current_user),
):
    """Entries newest first, optionally filtered by source or a text search."""
    entries = await knowledge.list_entries(
        limit=limit, offset=offset, source=source, search=search
    )
    return [KnowledgeEntryResponse.from_entry(e) for e in entries]


@router.post("", response_model=KnowledgeEntryResponse, status_code=status.HTTP_201_CREATED)
async def add_entry(
    body: KnowledgeEntryCreate,
    knowledge: KnowledgeService = Depends(get_knowledge_service),
    current_user: User = Depends(get_current_user),
):
    entry = await knowledge.add_entry(
        body.content,
        source=body.source,
        source_id=body.source_id,
        metadata={**body.metadata, "created_by": str(current_user.id)},
    )
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An identical knowledge entry already exists",
        )
    return KnowledgeEntryResponse.from_entry(entry)


@router.get("/stats", response_model=KnowledgeStats)
async def knowledge_stats(
    knowledge: KnowledgeService = Depends(get_knowledge_service),
    current_user: User = Depends(get_current_user),
):
    return await knowledge.stats()


@router.post("/bulk-delete")
async def bulk_delete(
    body: BulkDeleteRequest,
    knowledge: KnowledgeService = Depends(get_knowledge_service),
    current_user: User = Depends(require_admin),
):
    deleted = await knowledge.bulk_delete(body.ids)
    return {"deleted": deleted}


@router.post("/import-conversations", response_model=ImportResult)
async def import_conversations(
    importer: ConversationKnowledgeImporter = Depends(get_knowledge_importer),
    current_user: User = Depends(get_current_user),
):
    """Turn recorded client -> agent exchanges into knowledge entries."""
    return await importer.import_conversations()


@router.get("/{entry_id}", response_model=KnowledgeEntryResponse)
async def get_entry(
    entry_id: str,
    knowledge: KnowledgeService = Depends(get_knowledge_service),
    current_user: User = Depends(get_current_user),
):
    return KnowledgeEntryResponse.from_entry(await knowledge.get_entry(entry_id))


@router.patch("/{entry_id}", response_model=KnowledgeEntryResponse)
async def update_entry(
    entry_id: str,
    body: KnowledgeEntryUpdate,
    knowledge: KnowledgeService = Depends(get_knowledge_service),
    current_user: User = Depends(get_current_user),
):
    entry = await knowledge.update_entry(
        entry_id,
        content=body.content,
        source=body.source,
        metadata=body.metadata,
    )
    return KnowledgeEntryResponse.from_entry(entry)


@router.delete("/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_entry(
    entry_id: str,
    knowledge: KnowledgeService = Depends(get_knowledge_service),
    current_user: User = Depends(require_admin),
):
    await knowledge.delete_entry(entry_id)
