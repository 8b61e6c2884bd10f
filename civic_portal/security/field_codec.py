"""Field Codec - selective field encryption for citizen and service-request records

Self-Explanatory: Translates plaintext entities to storage records and back.
Why: PII (names, contact details, case notes) must never reach the database
in cleartext, while city/state/status stay queryable for dashboards.
How: Static classification table. Sensitive fields go through the HSM client
and land under ``{field}_encrypted``; public fields pass through untouched.

Guarantees:
- to_storage never emits a sensitive field under its own name, and fails as
  a whole (EncryptionFailed) if any single field fails.
- from_storage is total: a field that cannot be decrypted is replaced by a
  human-readable fallback label, and every ``_encrypted`` key is removed.
- analytics() reads public fields only and never calls the HSM.
"""

import asyncio
from collections import Counter
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional

import structlog

from civic_portal.security.envelope import parse_envelope
from civic_portal.security.errors import DecryptionFailed, EncryptionFailed
from civic_portal.security.hsm_client import HsmClient
from civic_portal.utils.metrics import record_decrypt_fallback

logger = structlog.get_logger()

ENCRYPTED_SUFFIX = "_encrypted"

CITIZEN = "citizen"
SERVICE_REQUEST = "service-request"


@dataclass(frozen=True)
class EntityClassification:
    """Disjoint split of one entity's persisted fields"""

    sensitive: FrozenSet[str]
    public: FrozenSet[str]

    def __post_init__(self):
        overlap = self.sensitive & self.public
        if overlap:
            raise ValueError(f"Fields classified as both sensitive and public: {sorted(overlap)}")


CLASSIFICATION: Dict[str, EntityClassification] = {
    CITIZEN: EntityClassification(
        sensitive=frozenset({
            "firstName", "lastName", "email", "phone",
            "address", "zipCode", "dateOfBirth",
        }),
        public=frozenset({
            "id", "citizenId", "city", "state", "status",
            "createdAt", "updatedAt",
        }),
    ),
    SERVICE_REQUEST: EntityClassification(
        sensitive=frozenset({"notes", "applicationData"}),
        public=frozenset({
            "id", "requestNumber", "citizenId", "serviceTypeId", "status",
            "priority", "submittedDate", "assignedAgent",
        }),
    ),
}

# Shown in place of a field whose envelope could not be decrypted
FALLBACK_LABELS: Dict[str, str] = {
    "firstName": "[Encrypted]",
    "lastName": "[Data]",
    "email": "[Encrypted Email]",
    "phone": "[Encrypted Phone]",
    "address": "[Encrypted Address]",
    "zipCode": "[Protected]",
    "dateOfBirth": "[Protected DOB]",
    "notes": "[Encrypted Notes]",
    "applicationData": "[Encrypted Application Data]",
}
DEFAULT_FALLBACK_LABEL = "[Encrypted Data]"


def fallback_label(field: str) -> str:
    return FALLBACK_LABELS.get(field, DEFAULT_FALLBACK_LABEL)


def encrypted_key(field: str) -> str:
    return f"{field}{ENCRYPTED_SUFFIX}"


def get_classification(entity_kind: str) -> EntityClassification:
    try:
        return CLASSIFICATION[entity_kind]
    except KeyError:
        raise ValueError(
            f"Unknown entity kind {entity_kind!r}; expected one of {sorted(CLASSIFICATION)}"
        ) from None


class FieldCodec:
    """Plaintext entity <-> storage record, driven by CLASSIFICATION

    With ``hsm_client=None`` the portal runs without encryption: sensitive
    values are written to their ``_encrypted`` slot as-is and read back
    through the legacy-plaintext path.
    """

    def __init__(self, hsm_client: Optional[HsmClient] = None):
        self.hsm_client = hsm_client

    @property
    def encryption_enabled(self) -> bool:
        return self.hsm_client is not None

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def to_storage(self, entity_kind: str, entity: Dict, clear_empty: bool = False) -> Dict:
        """Encrypt sensitive fields of ``entity``

        Empty sensitive values are dropped, or written as ``{field}_encrypted:
        None`` with ``clear_empty`` (updates that blank a field).

        Raises:
            EncryptionFailed: if any sensitive field fails to encrypt
        """
        classification = get_classification(entity_kind)
        record = dict(entity)
        pending = [
            field for field in sorted(classification.sensitive)
            if field in record
        ]

        # Sensitive keys are dropped even when empty; never leak under own name
        values = {field: record.pop(field) for field in pending}
        to_encrypt = [field for field in pending if values[field]]
        if clear_empty:
            for field in pending:
                if not values[field]:
                    record[encrypted_key(field)] = None

        if not self.encryption_enabled:
            for field in to_encrypt:
                record[encrypted_key(field)] = str(values[field])
            return record

        # Wait for every call so no request is left running after a failure
        envelopes = await asyncio.gather(*(
            self.hsm_client.encrypt(str(values[field])) for field in to_encrypt
        ), return_exceptions=True)
        for field, result in zip(to_encrypt, envelopes):
            if isinstance(result, BaseException):
                logger.error("Failed to encrypt record", entity_kind=entity_kind, field=field)
                raise result

        for field, envelope in zip(to_encrypt, envelopes):
            record[encrypted_key(field)] = envelope

        logger.debug(
            "Record encrypted for storage",
            entity_kind=entity_kind,
            fields=to_encrypt,
        )
        return record

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def _decrypt_field(self, entity_kind: str, field: str, stored: str) -> str:
        try:
            if self.encryption_enabled:
                return await self.hsm_client.decrypt(stored)
            if parse_envelope(stored) is None:
                return stored
            raise DecryptionFailed("encryption is disabled")
        except DecryptionFailed as e:
            logger.warning(
                "Decryption failed, using fallback label",
                entity_kind=entity_kind,
                field=field,
                error=str(e),
            )
            record_decrypt_fallback(entity_kind, field)
            return fallback_label(field)

    async def from_storage(self, entity_kind: str, record: Optional[Dict]) -> Optional[Dict]:
        """Decrypt every ``{field}_encrypted`` slot of a storage record

        Never raises for HSM problems. Returns None only for a None record.
        """
        if record is None:
            return None

        get_classification(entity_kind)
        entity = {
            key: value for key, value in record.items()
            if not key.endswith(ENCRYPTED_SUFFIX)
        }
        slots = [
            (key[:-len(ENCRYPTED_SUFFIX)], value) for key, value in record.items()
            if key.endswith(ENCRYPTED_SUFFIX)
        ]
        # Empty slots (field never set) come back as None without an HSM call
        for field, stored in slots:
            if not stored:
                entity[field] = None
        slots = [(field, stored) for field, stored in slots if stored]

        plaintexts = await asyncio.gather(*(
            self._decrypt_field(entity_kind, field, stored) for field, stored in slots
        ))
        for (field, _), plaintext in zip(slots, plaintexts):
            entity[field] = plaintext
        return entity

    async def from_storage_many(self, entity_kind: str, records: Iterable[Dict]) -> List[Dict]:
        return list(await asyncio.gather(*(
            self.from_storage(entity_kind, record) for record in records
        )))

    # ------------------------------------------------------------------
    # Analytics (public fields only)
    # ------------------------------------------------------------------

    def analytics(self, entity_kind: str, records: Iterable[Dict]) -> Dict:
        """Aggregate statistics over public fields; no decryption"""
        classification = get_classification(entity_kind)
        public_rows = [
            {key: value for key, value in record.items() if key in classification.public}
            for record in records
        ]

        if entity_kind == CITIZEN:
            return {
                "totalCitizens": len(public_rows),
                "citiesCounts": _count_by(public_rows, "city"),
                "statesCounts": _count_by(public_rows, "state"),
                "statusCounts": _count_by(public_rows, "status"),
                "monthlyRegistrations": _count_by_month(public_rows, "createdAt"),
            }
        return {
            "totalRequests": len(public_rows),
            "statusCounts": _count_by(public_rows, "status"),
            "priorityCounts": _count_by(public_rows, "priority"),
            "monthlySubmissions": _count_by_month(public_rows, "submittedDate"),
        }

    def describe(self) -> Dict:
        """Debug view of the encryption setup (no secrets)"""
        client = self.hsm_client
        return {
            "encryption_enabled": self.encryption_enabled,
            "endpoint": client.settings.base_url if client else None,
            "key_id": client.settings.key_id if client else None,
            "auth_method": client.auth_method.value if client else None,
            "mode": client.mode if client else "disabled",
            "classification": {
                kind: {
                    "sensitiveFields": sorted(c.sensitive),
                    "publicFields": sorted(c.public),
                }
                for kind, c in CLASSIFICATION.items()
            },
        }


def _count_by(rows: List[Dict], field: str) -> Dict[str, int]:
    return dict(Counter(row.get(field) for row in rows if row.get(field) is not None))


def _count_by_month(rows: List[Dict], field: str) -> Dict[str, int]:
    # Timestamps are ISO-like text; YYYY-MM is the first seven characters
    return dict(Counter(
        str(row[field])[:7] for row in rows if row.get(field)
    ))
