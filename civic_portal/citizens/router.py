"""Citizens Router - citizen registry endpoints

Endpoints:
- GET /api/citizens: List (search over decrypted fields, pagination)
- GET /api/citizens/stats/analytics: Public-field statistics (no decryption)
- GET /api/citizens/citizen-id/{citizen_id}: Lookup by registry id (CTZ001)
- GET /api/citizens/{id}: Lookup by primary key
- POST /api/citizens: Create (PII encrypted before insert)
- PUT /api/citizens/{id}: Update (supplied PII re-encrypted)
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.exc import IntegrityError

from civic_portal.database.encrypted_db import CitizenRepository
from civic_portal.dependencies import get_citizen_repository
from civic_portal.utils.helpers import paginate, sanitize_input, success_response

router = APIRouter()
logger = structlog.get_logger()


class CitizenCreate(BaseModel):
    citizenId: str = Field(..., min_length=1, max_length=32)
    firstName: str = Field(..., min_length=1, max_length=100)
    lastName: str = Field(..., min_length=1, max_length=100)
    email: EmailStr = "demo@example.com"
    phone: str = "000-000-0000"
    address: str = "Demo Address"
    city: str = "Springfield"
    state: str = Field("IL", min_length=2, max_length=2)
    zipCode: str = "62701"
    dateOfBirth: str = "1990-01-01"


class CitizenUpdate(BaseModel):
    firstName: Optional[str] = Field(None, min_length=1, max_length=100)
    lastName: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = Field(None, min_length=2, max_length=2)
    zipCode: Optional[str] = None
    status: Optional[str] = None


def _clean(model: BaseModel) -> dict:
    return {key: sanitize_input(value) for key, value in model.model_dump().items()}


def _matches(citizen: dict, term: str) -> bool:
    return any(
        term in str(citizen.get(field) or "").lower()
        for field in ("firstName", "lastName", "email", "citizenId")
    )


@router.get("")
async def list_citizens(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    repo: CitizenRepository = Depends(get_citizen_repository),
):
    """List citizens; PII decrypted (or replaced by fallback labels)"""
    citizens = await repo.get_all()
    if search:
        term = search.lower()
        citizens = [c for c in citizens if _matches(c, term)]
    return success_response(paginate(citizens, page, limit), "Citizens retrieved successfully")


@router.get("/stats/analytics")
async def citizen_analytics(repo: CitizenRepository = Depends(get_citizen_repository)):
    return success_response(repo.get_analytics(), "Citizen analytics retrieved successfully")


@router.get("/citizen-id/{citizen_id}")
async def get_citizen_by_citizen_id(
    citizen_id: str,
    repo: CitizenRepository = Depends(get_citizen_repository),
):
    citizen = await repo.get_by_citizen_id(sanitize_input(citizen_id))
    if citizen is None:
        raise HTTPException(status_code=404, detail="Citizen not found")
    return success_response(citizen, "Citizen retrieved successfully")


@router.get("/{citizen_pk}")
async def get_citizen(citizen_pk: int, repo: CitizenRepository = Depends(get_citizen_repository)):
    citizen = await repo.get_by_id(citizen_pk)
    if citizen is None:
        raise HTTPException(status_code=404, detail="Citizen not found")
    return success_response(citizen, "Citizen retrieved successfully")


@router.post("", status_code=201)
async def create_citizen(
    request: CitizenCreate,
    repo: CitizenRepository = Depends(get_citizen_repository),
):
    """Create a citizen. EncryptionFailed is mapped to 502 by the app."""
    try:
        citizen = await repo.create(_clean(request))
    except IntegrityError:
        raise HTTPException(status_code=409, detail="Citizen ID already exists")
    return success_response(citizen, "Citizen created successfully")


@router.put("/{citizen_pk}")
async def update_citizen(
    citizen_pk: int,
    request: CitizenUpdate,
    repo: CitizenRepository = Depends(get_citizen_repository),
):
    citizen = await repo.update(citizen_pk, _clean(request))
    if citizen is None:
        raise HTTPException(status_code=404, detail="Citizen not found")
    return success_response(citizen, "Citizen updated successfully")
