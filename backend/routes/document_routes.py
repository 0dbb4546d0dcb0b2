from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_user
from backend.database import get_db
from backend.models.document import DocumentFolder, DocumentTemplate, DocumentTemplateAssignment
from backend.models.user import User
from backend.routes.common import database_unavailable, ensure_database_ready
from backend.routes.patient_routes import get_owned_patient

router = APIRouter(tags=['documents'])

MAX_FOLDER_NAME_LENGTH = 120
MAX_TEMPLATE_TITLE_LENGTH = 200


class FolderRequest(BaseModel):
    name: str

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Folder name is required.')
        if len(normalized) > MAX_FOLDER_NAME_LENGTH:
            raise ValueError(f'Folder name must be {MAX_FOLDER_NAME_LENGTH} characters or fewer.')
        return normalized


class CreateTemplateRequest(BaseModel):
    title: str
    content: str = ''
    folder_id: int

    @field_validator('title')
    @classmethod
    def validate_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Template title is required.')
        if len(normalized) > MAX_TEMPLATE_TITLE_LENGTH:
            raise ValueError(f'Template title must be {MAX_TEMPLATE_TITLE_LENGTH} characters or fewer.')
        return normalized


class UpdateTemplateRequest(BaseModel):
    title: str | None = None
    content: str | None = None
    folder_id: int | None = None

    @field_validator('title')
    @classmethod
    def validate_title(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized:
            raise ValueError('Template title cannot be blank.')
        return normalized


class AssignTemplateRequest(BaseModel):
    template_id: int
    patient_id: int


class FolderResponse(BaseModel):
    id: int
    name: str
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class TemplateResponse(BaseModel):
    id: int
    title: str
    content: str
    folder_id: int
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class AssignedPatientResponse(BaseModel):
    id: int
    full_name: str

    class Config:
        from_attributes = True


class AssignmentResponse(BaseModel):
    id: int
    template_id: int
    patient_id: int
    created_at: datetime | None = None
    patient: AssignedPatientResponse | None = None

    class Config:
        from_attributes = True


def _get_owned(db: Session, model, user: User, item_id: int, not_found_detail: str):
    item = db.query(model).filter(model.id == item_id, model.user_id == user.id).first()
    if not item:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=not_found_detail)
    return item


@router.get('/folders', response_model=list[FolderResponse])
def list_folders(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return db.query(DocumentFolder).filter(
            DocumentFolder.user_id == current_user.id,
        ).order_by(DocumentFolder.name.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/folders', response_model=FolderResponse, status_code=status.HTTP_201_CREATED)
def create_folder(data: FolderRequest, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        folder = DocumentFolder(user_id=current_user.id, name=data.name)
        db.add(folder)
        db.commit()
        db.refresh(folder)
        return folder
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.put('/folders/{folder_id}', response_model=FolderResponse)
def rename_folder(
    folder_id: int,
    data: FolderRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        folder = _get_owned(db, DocumentFolder, current_user, folder_id, 'Folder not found.')
        folder.name = data.name
        db.commit()
        db.refresh(folder)
        return folder
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/folders/{folder_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_folder(folder_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        folder = _get_owned(db, DocumentFolder, current_user, folder_id, 'Folder not found.')
        in_use = db.query(DocumentTemplate.id).filter(DocumentTemplate.folder_id == folder.id).first()
        if in_use:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail='Move or delete the templates in this folder first.',
            )
        db.delete(folder)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/templates', response_model=list[TemplateResponse])
def list_templates(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return db.query(DocumentTemplate).filter(
            DocumentTemplate.user_id == current_user.id,
        ).order_by(DocumentTemplate.updated_at.desc(), DocumentTemplate.id.desc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/templates', response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
def create_template(
    data: CreateTemplateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        _get_owned(db, DocumentFolder, current_user, data.folder_id, 'Folder not found.')
        template = DocumentTemplate(user_id=current_user.id, **data.model_dump())
        db.add(template)
        db.commit()
        db.refresh(template)
        return template
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.patch('/templates/{template_id}', response_model=TemplateResponse)
def update_template(
    template_id: int,
    data: UpdateTemplateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        template = _get_owned(db, DocumentTemplate, current_user, template_id, 'Template not found.')
        updates = data.model_dump(exclude_unset=True, exclude_none=True)
        if 'folder_id' in updates:
            _get_owned(db, DocumentFolder, current_user, updates['folder_id'], 'Folder not found.')

        for field_name, value in updates.items():
            setattr(template, field_name, value)

        db.commit()
        db.refresh(template)
        return template
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/templates/{template_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_template(template_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        template = _get_owned(db, DocumentTemplate, current_user, template_id, 'Template not found.')
        db.query(DocumentTemplateAssignment).filter(
            DocumentTemplateAssignment.template_id == template.id,
        ).delete(synchronize_session=False)
        db.delete(template)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/assignments', response_model=list[AssignmentResponse])
def list_assignments(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return db.query(DocumentTemplateAssignment).filter(
            DocumentTemplateAssignment.user_id == current_user.id,
        ).order_by(DocumentTemplateAssignment.created_at.desc(), DocumentTemplateAssignment.id.desc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/assignments', response_model=AssignmentResponse)
def assign_template(
    data: AssignTemplateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        _get_owned(db, DocumentTemplate, current_user, data.template_id, 'Template not found.')
        get_owned_patient(db, current_user, data.patient_id)

        # Assigning twice returns the existing row.
        assignment = db.query(DocumentTemplateAssignment).filter(
            DocumentTemplateAssignment.template_id == data.template_id,
            DocumentTemplateAssignment.patient_id == data.patient_id,
        ).first()
        if assignment is None:
            assignment = DocumentTemplateAssignment(
                user_id=current_user.id,
                template_id=data.template_id,
                patient_id=data.patient_id,
            )
            db.add(assignment)
            db.commit()
            db.refresh(assignment)

        return assignment
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/assignments/{assignment_id}', status_code=status.HTTP_204_NO_CONTENT)
def remove_assignment(assignment_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        assignment = _get_owned(db, DocumentTemplateAssignment, current_user, assignment_id, 'Assignment not found.')
        db.delete(assignment)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
