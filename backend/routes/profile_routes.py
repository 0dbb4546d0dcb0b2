from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_user
from backend.database import get_db
from backend.models.profile import Profile
from backend.models.user import User
from backend.routes.common import database_unavailable

router = APIRouter(tags=['profile'])


class ProfileFields(BaseModel):
    specialty: str | None = None
    crp_number: str | None = None
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    session_price: Decimal | None = None
    signature_data: str | None = None
    logo_data: str | None = None


class CreateProfileRequest(ProfileFields):
    full_name: str

    @field_validator('full_name')
    @classmethod
    def validate_full_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Full name is required.')
        return normalized


class UpdateProfileRequest(ProfileFields):
    full_name: str | None = None


class ProfileResponse(ProfileFields):
    id: int
    full_name: str
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


def find_profile(db: Session, user_id: int) -> Profile | None:
    return db.query(Profile).filter(Profile.user_id == user_id).first()


@router.get('', response_model=ProfileResponse | None)
def get_profile(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        return find_profile(db, current_user.id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('', response_model=ProfileResponse, status_code=status.HTTP_201_CREATED)
def create_profile(
    data: CreateProfileRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        if find_profile(db, current_user.id):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail='Profile already exists.')

        profile = Profile(user_id=current_user.id, **data.model_dump())
        db.add(profile)
        db.commit()
        db.refresh(profile)
        return profile
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.patch('', response_model=ProfileResponse)
def update_profile(
    data: UpdateProfileRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        profile = find_profile(db, current_user.id)
        if profile is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Profile not found.')

        for field_name, value in data.model_dump(exclude_unset=True).items():
            if field_name == 'full_name' and not (value or '').strip():
                continue
            setattr(profile, field_name, value)

        db.commit()
        db.refresh(profile)
        return profile
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
