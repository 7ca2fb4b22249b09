"""Projects API router: lifecycle, finalization and finalized documents."""

import logging
import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from chunkbatch.api.deps import get_owner_id
from chunkbatch.db import get_session
from chunkbatch.schemas.project import (
    FinalDocumentSchema,
    FinalizeResponse,
    ProjectCreateRequest,
    ProjectSchema,
)
from chunkbatch.services.finalizer import ProjectFinalizer
from chunkbatch.services.projects import ProjectService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", status_code=201)
def create_project(
    body: ProjectCreateRequest,
    db: Session = Depends(get_session),
    owner_id: str = Depends(get_owner_id),
) -> ProjectSchema:
    project = ProjectService().create(
        owner_id, body.title, db, faculty=body.faculty, topic=body.topic, level=body.level
    )
    return ProjectSchema.model_validate(project)


@router.get("")
def list_projects(
    db: Session = Depends(get_session),
    owner_id: str = Depends(get_owner_id),
) -> list[ProjectSchema]:
    return [ProjectSchema.model_validate(p) for p in ProjectService().list_for_owner(owner_id, db)]


@router.get("/{project_id}")
def get_project(
    project_id: uuid.UUID,
    db: Session = Depends(get_session),
    owner_id: str = Depends(get_owner_id),
) -> ProjectSchema:
    return ProjectSchema.model_validate(ProjectService().get(project_id, db, owner_id))


@router.post("/{project_id}/abandon")
def abandon_project(
    project_id: uuid.UUID,
    db: Session = Depends(get_session),
    owner_id: str = Depends(get_owner_id),
) -> ProjectSchema:
    return ProjectSchema.model_validate(ProjectService().abandon(project_id, db, owner_id))


@router.post("/{project_id}/finalize")
def finalize_project(
    project_id: uuid.UUID,
    db: Session = Depends(get_session),
    owner_id: str = Depends(get_owner_id),
) -> FinalizeResponse:
    """Merge completed chunks into a new document version; 409 if none are completed."""
    return FinalizeResponse.model_validate(ProjectFinalizer().finalize(project_id, db, owner_id))


@router.get("/{project_id}/documents")
def list_documents(
    project_id: uuid.UUID,
    db: Session = Depends(get_session),
    owner_id: str = Depends(get_owner_id),
) -> list[FinalDocumentSchema]:
    docs = ProjectService().documents(project_id, db, owner_id)
    return [FinalDocumentSchema.model_validate(d) for d in docs]
