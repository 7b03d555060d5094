"""Document upload, listing, download/view and soft delete."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import FileResponse

from taskhub.api.deps import envelope, get_actor, get_container
from taskhub.documents.service import Upload
from taskhub.engine.context import Actor

router = APIRouter(prefix="/api/documents", tags=["documents"])


@router.post("/upload/{task_id}", status_code=201)
def upload_documents(
    task_id: str,
    documents: Optional[List[UploadFile]] = File(None),
    actor: Actor = Depends(get_actor),
    container=Depends(get_container),
):
    uploads = [
        Upload(filename=f.filename or "", content_type=f.content_type, stream=f.file)
        for f in (documents or [])
    ]
    out = container.documents.upload(actor, task_id, uploads)
    return envelope(
        {"documents": [d.dump() for d in out]},
        f"{len(out)} document(s) uploaded successfully",
    )


@router.get("/task/{task_id}")
def list_task_documents(task_id: str, actor: Actor = Depends(get_actor), container=Depends(get_container)):
    docs = container.documents.list_for_task(actor, task_id)
    return envelope({"documents": [d.dump() for d in docs]})


@router.get("/{document_id}")
def download_document(document_id: str, actor: Actor = Depends(get_actor), container=Depends(get_container)):
    target = container.documents.open_for_download(actor, document_id)
    return FileResponse(
        target.path,
        media_type=target.mime_type,
        filename=target.original_name,
    )


@router.get("/{document_id}/view")
def view_document(document_id: str, actor: Actor = Depends(get_actor), container=Depends(get_container)):
    target = container.documents.open_for_download(actor, document_id, inline=True)
    return FileResponse(
        target.path,
        media_type=target.mime_type,
        filename=target.original_name,
        content_disposition_type="inline",
    )


@router.delete("/{document_id}")
def delete_document(document_id: str, actor: Actor = Depends(get_actor), container=Depends(get_container)):
    container.documents.delete(actor, document_id)
    return envelope(message="Document deleted successfully")
