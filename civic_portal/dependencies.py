"""FastAPI dependencies - hand the per-process services to route handlers"""

from fastapi import Request

from civic_portal.database.encrypted_db import CitizenRepository, ServiceRequestRepository
from civic_portal.security.encryption_service import EncryptionService
from civic_portal.utils.health_check import HealthChecker


def get_citizen_repository(request: Request) -> CitizenRepository:
    return request.app.state.citizens


def get_service_request_repository(request: Request) -> ServiceRequestRepository:
    return request.app.state.service_requests


def get_encryption_service(request: Request) -> EncryptionService:
    return request.app.state.encryption


def get_health_checker(request: Request) -> HealthChecker:
    return request.app.state.health_checker
