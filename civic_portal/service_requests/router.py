"""Service Requests Router - request tracking endpoints

Endpoints:
- GET /api/service-requests: List (status/priority/citizenId filters)
- GET /api/service-requests/stats/analytics: Public-field statistics
- GET /api/service-requests/citizen/{citizen_id}: Requests of one citizen
- GET /api/service-requests/status/{status}: Requests in one workflow state
- GET /api/service-requests/search/{term}: Search number, requester, notes
- GET /api/service-requests/{id}: Lookup by primary key
- POST /api/service-requests: Create (notes/applicationData encrypted)
"""

import json
from typing import Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError

from civic_portal.database.encrypted_db import REQUEST_STATUSES, ServiceRequestRepository
from civic_portal.dependencies import get_service_request_repository
from civic_portal.utils.helpers import paginate, sanitize_input, success_response

router = APIRouter()
logger = structlog.get_logger()


class ServiceRequestCreate(BaseModel):
    citizenId: int = Field(..., ge=1)
    serviceTypeId: int = Field(..., ge=1)
    priority: str = Field("normal", pattern=r"^(low|normal|high|urgent)$")
    assignedAgent: str = "Auto-Assigned"
    notes: str = ""
    applicationData: Dict = {}


@router.get("")
async def list_service_requests(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    priority: Optional[str] = None,
    citizenId: Optional[int] = None,
    repo: ServiceRequestRepository = Depends(get_service_request_repository),
):
    requests = await repo.get_all(
        {"status": status, "priority": priority, "citizenId": citizenId}
    )
    return success_response(paginate(requests, page, limit),
                            "Service requests retrieved successfully")


@router.get("/stats/analytics")
async def service_request_analytics(
    repo: ServiceRequestRepository = Depends(get_service_request_repository),
):
    return success_response(repo.get_analytics(),
                            "Service request analytics retrieved successfully")


@router.get("/citizen/{citizen_pk}")
async def list_citizen_requests(
    citizen_pk: int,
    repo: ServiceRequestRepository = Depends(get_service_request_repository),
):
    requests = await repo.get_by_citizen_id(citizen_pk)
    return success_response(requests, "Citizen service requests retrieved successfully")


@router.get("/status/{status}")
async def list_requests_by_status(
    status: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    repo: ServiceRequestRepository = Depends(get_service_request_repository),
):
    if status not in REQUEST_STATUSES:
        raise HTTPException(
            status_code=400,
            detail={"message": "Invalid status value", "validStatuses": list(REQUEST_STATUSES)},
        )
    requests = await repo.get_by_status(status)
    return success_response(paginate(requests, page, limit),
                            f"Service requests with status '{status}' retrieved successfully")


@router.get("/search/{term}")
async def search_service_requests(
    term: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    repo: ServiceRequestRepository = Depends(get_service_request_repository),
):
    """Search over decrypted values; unreadable names show as fallback labels"""
    requests = await repo.search(sanitize_input(term))
    return success_response(paginate(requests, page, limit),
                            "Service requests search completed")


@router.get("/{request_pk}")
async def get_service_request(
    request_pk: int,
    repo: ServiceRequestRepository = Depends(get_service_request_repository),
):
    request = await repo.get_by_id(request_pk)
    if request is None:
        raise HTTPException(status_code=404, detail="Service request not found")
    return success_response(request, "Service request retrieved successfully")


@router.post("", status_code=201)
async def create_service_request(
    request: ServiceRequestCreate,
    repo: ServiceRequestRepository = Depends(get_service_request_repository),
):
    """Create a request in 'submitted' state; EncryptionFailed -> 502"""
    try:
        created = await repo.create({
            "citizenId": request.citizenId,
            "serviceTypeId": request.serviceTypeId,
            "status": "submitted",
            "priority": request.priority,
            "assignedAgent": sanitize_input(request.assignedAgent),
            "notes": sanitize_input(request.notes),
            "applicationData": json.dumps(request.applicationData),
        })
    except IntegrityError:
        raise HTTPException(status_code=409, detail="Request number already issued, retry")
    logger.info("Service request submitted", request_number=created["requestNumber"])
    return success_response(created, "Service request created successfully")
