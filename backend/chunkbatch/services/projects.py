"""Project lifecycle: create, look up, abandon."""

import logging
import uuid

from sqlalchemy.orm import Session

from chunkbatch.db import utcnow
from chunkbatch.models.final_document import FinalDocument
from chunkbatch.models.project import Project
from chunkbatch.services.errors import InvalidTransition, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class ProjectService:
    def create(
        self,
        owner_id: str,
        title: str,
        db: Session,
        faculty: str | None = None,
        topic: str | None = None,
        level: str | None = None,
    ) -> Project:
        clean = title.strip()
        if not clean:
            raise ValidationError("Project title must not be empty")
        project = Project(
            owner_id=owner_id,
            title=clean,
            faculty=(faculty or "").strip() or None,
            topic=(topic or "").strip() or None,
            level=(level or "").strip().lower() or None,
            status="active",
        )
        db.add(project)
        db.commit()
        db.refresh(project)
        logger.info("project %s created for owner %s", project.id, owner_id)
        return project

    def get(self, project_id: uuid.UUID, db: Session, owner_id: str | None = None) -> Project:
        """Return the project; a project owned by someone else is reported as missing."""
        project = db.query(Project).filter(Project.id == project_id).first()
        if project is None or (owner_id is not None and project.owner_id != owner_id):
            raise NotFoundError(f"Project {project_id} not found")
        return project

    def list_for_owner(self, owner_id: str, db: Session) -> list[Project]:
        return (
            db.query(Project)
            .filter(Project.owner_id == owner_id)
            .order_by(Project.last_activity_at.desc())
            .all()
        )

    def abandon(self, project_id: uuid.UUID, db: Session, owner_id: str | None = None) -> Project:
        project = self.get(project_id, db, owner_id)
        if project.status != "active":
            raise InvalidTransition(f"Project is '{project.status}' and cannot be abandoned")
        project.status = "abandoned"
        project.last_activity_at = utcnow()
        db.commit()
        db.refresh(project)
        return project

    def documents(self, project_id: uuid.UUID, db: Session, owner_id: str | None = None) -> list[FinalDocument]:
        """Finalized versions of the project, newest first."""
        project = self.get(project_id, db, owner_id)
        return (
            db.query(FinalDocument)
            .filter(FinalDocument.project_id == project.id)
            .order_by(FinalDocument.version.desc())
            .all()
        )

    @staticmethod
    def touch(project: Project) -> None:
        project.last_activity_at = utcnow()
