"""Encrypted Repositories - citizen and service-request persistence

Self-Explanatory: The only place where the field codec meets the database.
Why: Route handlers work with plaintext entities; the database only ever
sees envelopes in sensitive columns.
How: write = codec.to_storage -> Database.insert/update,
read = Database.get/all -> codec.from_storage (concurrently for lists).

Service requests are returned with their requester's contact details
(decrypted from the citizens table, with the usual fallback labels).
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional

import structlog

from civic_portal.database.db import Database
from civic_portal.security.field_codec import (
    CITIZEN,
    SERVICE_REQUEST,
    FieldCodec,
    encrypted_key,
)
from civic_portal.utils.metrics import record_write

logger = structlog.get_logger()

# Citizen fields shown alongside each service request
REQUESTER_SENSITIVE_FIELDS = ("firstName", "lastName", "email", "phone", "address")
REQUESTER_PUBLIC_FIELDS = ("city", "state")
REQUESTER_FIELDS = REQUESTER_SENSITIVE_FIELDS + REQUESTER_PUBLIC_FIELDS

REQUEST_STATUSES = (
    "submitted", "in_review", "pending_documents", "approved", "rejected", "completed",
)


def _without_none(data: Dict) -> Dict:
    return {key: value for key, value in data.items() if value is not None}


class CitizenRepository:
    """Citizens table with encrypted PII columns"""

    table = "citizens"

    def __init__(self, db: Database, codec: FieldCodec):
        self.db = db
        self.codec = codec

    async def get_all(self) -> List[Dict]:
        records = self.db.all(self.table, order_by="createdAt", descending=True)
        citizens = await self.codec.from_storage_many(CITIZEN, records)
        logger.info("Retrieved citizens", count=len(citizens))
        return citizens

    async def get_by_id(self, citizen_pk: int) -> Optional[Dict]:
        record = self.db.get(self.table, {"id": citizen_pk})
        if record is None:
            logger.info("Citizen not found", id=citizen_pk)
            return None
        return await self.codec.from_storage(CITIZEN, record)

    async def get_by_citizen_id(self, citizen_id: str) -> Optional[Dict]:
        record = self.db.get(self.table, {"citizenId": citizen_id})
        if record is None:
            logger.info("Citizen not found", citizen_id=citizen_id)
            return None
        return await self.codec.from_storage(CITIZEN, record)

    async def create(self, citizen: Dict) -> Dict:
        """Encrypt and insert. EncryptionFailed aborts before anything is written."""
        record = await self.codec.to_storage(CITIZEN, _without_none(citizen))
        new_id = self.db.insert(self.table, record)
        record_write(CITIZEN, "create")
        logger.info("Citizen created with encrypted PII", id=new_id,
                    citizen_id=citizen.get("citizenId"))
        return {"id": new_id, **citizen}

    async def update(self, citizen_pk: int, changes: Dict) -> Optional[Dict]:
        """Re-encrypt the supplied fields

        Fields left as None are kept; sensitive fields sent as "" are cleared.
        """
        if self.db.get(self.table, {"id": citizen_pk}) is None:
            return None
        record = await self.codec.to_storage(CITIZEN, _without_none(changes), clear_empty=True)
        record.pop("id", None)
        if record:
            self.db.update(self.table, citizen_pk, record)
        record_write(CITIZEN, "update")
        logger.info("Citizen updated with encrypted PII", id=citizen_pk)
        return await self.get_by_id(citizen_pk)

    def get_analytics(self) -> Dict:
        """Dashboard statistics from public columns; works with the HSM down"""
        return self.codec.analytics(CITIZEN, self.db.all(self.table))


class ServiceRequestRepository:
    """Service requests with encrypted notes and application data"""

    table = "service_requests"

    def __init__(self, db: Database, codec: FieldCodec):
        self.db = db
        self.codec = codec

    async def _requester(self, citizen_pk: int) -> Dict:
        """Decrypted contact details of one requester (all None if unknown)"""
        row = self.db.get(CitizenRepository.table, {"id": citizen_pk})
        if row is None:
            return dict.fromkeys(REQUESTER_FIELDS)
        subset = {encrypted_key(field): row[encrypted_key(field)]
                  for field in REQUESTER_SENSITIVE_FIELDS}
        subset.update({field: row[field] for field in REQUESTER_PUBLIC_FIELDS})
        return await self.codec.from_storage(CITIZEN, subset)

    async def _decrypt_with_requesters(self, records: List[Dict]) -> List[Dict]:
        citizen_pks = sorted({r["citizenId"] for r in records if r.get("citizenId") is not None})
        requests, requesters = await asyncio.gather(
            self.codec.from_storage_many(SERVICE_REQUEST, records),
            asyncio.gather(*(self._requester(pk) for pk in citizen_pks)),
        )
        by_pk = dict(zip(citizen_pks, requesters))
        for request in requests:
            request.update(by_pk.get(request.get("citizenId")) or dict.fromkeys(REQUESTER_FIELDS))
        return requests

    async def get_all(self, filters: Optional[Dict] = None) -> List[Dict]:
        records = self.db.all(self.table, _without_none(filters or {}),
                              order_by="submittedDate", descending=True)
        requests = await self._decrypt_with_requesters(records)
        logger.info("Retrieved service requests", count=len(requests))
        return requests

    async def get_by_id(self, request_pk: int) -> Optional[Dict]:
        record = self.db.get(self.table, {"id": request_pk})
        if record is None:
            return None
        [request] = await self._decrypt_with_requesters([record])
        return request

    async def get_by_citizen_id(self, citizen_pk: int) -> List[Dict]:
        return await self.get_all({"citizenId": citizen_pk})

    async def get_by_status(self, status: str) -> List[Dict]:
        if status not in REQUEST_STATUSES:
            raise ValueError(f"Unknown status {status!r}; expected one of {REQUEST_STATUSES}")
        return await self.get_all({"status": status})

    async def search(self, term: str) -> List[Dict]:
        """Case-insensitive match on request number, requester and notes

        Runs over decrypted values, so every request is decrypted first.
        """
        needle = term.lower()
        fields = ("requestNumber", "firstName", "lastName", "email", "notes")
        return [
            request for request in await self.get_all()
            if any(needle in str(request.get(field) or "").lower() for field in fields)
        ]

    def next_request_number(self, year: Optional[int] = None) -> str:
        """REQ-YYYY-NNN, one above the highest number issued this year"""
        year = year or datetime.now(timezone.utc).year
        prefix = f"REQ-{year}-"
        highest = 0
        for record in self.db.all(self.table):
            number = record.get("requestNumber") or ""
            if number.startswith(prefix) and number[len(prefix):].isdigit():
                highest = max(highest, int(number[len(prefix):]))
        return f"{prefix}{highest + 1:03d}"

    async def create(self, request: Dict) -> Dict:
        """Encrypt and insert. EncryptionFailed aborts before anything is written."""
        data = _without_none(request)
        record = await self.codec.to_storage(SERVICE_REQUEST, data)

        # No await between numbering and insert, so concurrent creates on the
        # event loop cannot draw the same number
        if "requestNumber" not in record:
            record["requestNumber"] = self.next_request_number()
        new_id = self.db.insert(self.table, record)

        data["requestNumber"] = record["requestNumber"]
        record_write(SERVICE_REQUEST, "create")
        logger.info("Service request created with encrypted data", id=new_id,
                    request_number=data["requestNumber"])
        return {"id": new_id, **data}

    def get_analytics(self) -> Dict:
        return self.codec.analytics(SERVICE_REQUEST, self.db.all(self.table))
