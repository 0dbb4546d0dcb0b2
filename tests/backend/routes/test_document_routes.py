import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from backend.models.document import DocumentTemplateAssignment
from backend.models.patient import Patient
from backend.routes.document_routes import (
    AssignTemplateRequest,
    CreateTemplateRequest,
    FolderRequest,
    UpdateTemplateRequest,
    assign_template,
    create_folder,
    create_template,
    delete_folder,
    delete_template,
    list_assignments,
    list_folders,
    update_template,
)


@pytest.fixture
def folder(db, user):
    return create_folder(FolderRequest(name='Contracts'), current_user=user, db=db)


@pytest.fixture
def patient(db, user):
    record = Patient(user_id=user.id, full_name='Ana Souza')
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def test_folder_name_is_required() -> None:
    with pytest.raises(ValidationError):
        FolderRequest(name='   ')


def test_folders_are_listed_by_name(db, user, folder) -> None:
    create_folder(FolderRequest(name='Anamnesis'), current_user=user, db=db)

    assert [item.name for item in list_folders(current_user=user, db=db)] == ['Anamnesis', 'Contracts']


def test_template_requires_an_owned_folder(db, user, other_user) -> None:
    foreign_folder = create_folder(FolderRequest(name='Theirs'), current_user=other_user, db=db)

    with pytest.raises(HTTPException) as exception_info:
        create_template(
            CreateTemplateRequest(title='Consent', folder_id=foreign_folder.id),
            current_user=user,
            db=db,
        )

    assert exception_info.value.status_code == 404
    assert exception_info.value.detail == 'Folder not found.'


def test_folder_with_templates_cannot_be_deleted(db, user, folder) -> None:
    create_template(CreateTemplateRequest(title='Consent', folder_id=folder.id), current_user=user, db=db)

    with pytest.raises(HTTPException) as exception_info:
        delete_folder(folder.id, current_user=user, db=db)

    assert exception_info.value.status_code == 409


def test_update_template_moves_between_owned_folders(db, user, folder) -> None:
    template = create_template(CreateTemplateRequest(title='Consent', folder_id=folder.id), current_user=user, db=db)
    archive = create_folder(FolderRequest(name='Archive'), current_user=user, db=db)

    updated = update_template(
        template.id,
        UpdateTemplateRequest(folder_id=archive.id, content='Updated text'),
        current_user=user,
        db=db,
    )

    assert updated.folder_id == archive.id
    assert updated.content == 'Updated text'
    assert updated.title == 'Consent'


def test_assigning_twice_returns_the_same_assignment(db, user, folder, patient) -> None:
    template = create_template(CreateTemplateRequest(title='Consent', folder_id=folder.id), current_user=user, db=db)
    request = AssignTemplateRequest(template_id=template.id, patient_id=patient.id)

    first = assign_template(request, current_user=user, db=db)
    second = assign_template(request, current_user=user, db=db)

    assert first.id == second.id
    assert db.query(DocumentTemplateAssignment).count() == 1
    assert list_assignments(current_user=user, db=db)[0].patient.full_name == 'Ana Souza'


def test_deleting_template_removes_its_assignments(db, user, folder, patient) -> None:
    template = create_template(CreateTemplateRequest(title='Consent', folder_id=folder.id), current_user=user, db=db)
    assign_template(AssignTemplateRequest(template_id=template.id, patient_id=patient.id), current_user=user, db=db)

    delete_template(template.id, current_user=user, db=db)
    delete_folder(folder.id, current_user=user, db=db)

    assert db.query(DocumentTemplateAssignment).count() == 0
    assert list_folders(current_user=user, db=db) == []
