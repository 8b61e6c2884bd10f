"""Integration Tests for the encrypted repositories

Self-Explanatory: In-memory SQLite + fake DSM.
Why: Prove what actually lands in the database, and that failed writes
leave nothing behind.
Run: pytest tests/database/
"""
import asyncio
from datetime import datetime, timezone

import pytest

from civic_portal.database.db import Database
from civic_portal.database.encrypted_db import CitizenRepository, ServiceRequestRepository
from civic_portal.security.envelope import parse_envelope
from civic_portal.security.errors import EncryptionFailed
from civic_portal.security.field_codec import FieldCodec
from civic_portal.security.hsm_client import HsmClient

CITIZEN = {
    "citizenId": "CTZ001",
    "firstName": "Marge",
    "lastName": "Simpson",
    "email": "marge@example.com",
    "phone": "217-555-0199",
    "address": "742 Evergreen Terrace",
    "zipCode": "62701",
    "dateOfBirth": "1956-10-01",
    "city": "Springfield",
    "state": "IL",
}


@pytest.fixture
def db():
    database = Database()
    database.create_tables()
    return database


@pytest.fixture
def citizens(db, hsm_client):
    return CitizenRepository(db, FieldCodec(hsm_client))


@pytest.fixture
def requests_repo(db, hsm_client):
    return ServiceRequestRepository(db, FieldCodec(hsm_client))


@pytest.mark.asyncio
async def test_create_stores_only_envelopes(citizens, db):
    created = await citizens.create(CITIZEN)

    row = db.get("citizens", {"id": created["id"]})
    for field in ("firstName", "lastName", "email", "phone", "address", "zipCode", "dateOfBirth"):
        assert parse_envelope(row[f"{field}_encrypted"]) is not None
        assert CITIZEN[field] not in row.values()
    assert row["city"] == "Springfield"
    assert row["status"] == "active"


@pytest.mark.asyncio
async def test_read_back_decrypts(citizens):
    created = await citizens.create(CITIZEN)

    by_pk = await citizens.get_by_id(created["id"])
    by_citizen_id = await citizens.get_by_citizen_id("CTZ001")

    assert by_pk["firstName"] == "Marge"
    assert by_pk["dateOfBirth"] == "1956-10-01"
    assert not any(key.endswith("_encrypted") for key in by_pk)
    assert by_citizen_id == by_pk


@pytest.mark.asyncio
async def test_failed_encryption_persists_nothing(citizens, db, fake_dsm):
    fake_dsm.fail_encrypt_after = 3

    with pytest.raises(EncryptionFailed):
        await citizens.create(CITIZEN)
    assert db.count("citizens") == 0


@pytest.mark.asyncio
async def test_update_reencrypts_supplied_fields_only(citizens):
    created = await citizens.create(CITIZEN)

    updated = await citizens.update(created["id"], {"phone": "217-555-0123", "city": None})

    assert updated["phone"] == "217-555-0123"
    assert updated["firstName"] == "Marge"
    assert updated["city"] == "Springfield"


@pytest.mark.asyncio
async def test_update_missing_citizen(citizens):
    assert await citizens.update(999, {"phone": "1"}) is None


@pytest.mark.asyncio
async def test_legacy_rows_are_readable(citizens, db):
    db.insert("citizens", {
        "citizenId": "CTZ-LEGACY",
        "firstName_encrypted": "Homer",
        "lastName_encrypted": "Simpson",
        "city": "Springfield",
        "state": "IL",
    })

    citizen = await citizens.get_by_citizen_id("CTZ-LEGACY")

    assert citizen["firstName"] == "Homer"
    assert citizen["email"] is None


@pytest.mark.asyncio
async def test_reads_survive_hsm_outage(citizens, fake_dsm):
    await citizens.create(CITIZEN)
    fake_dsm.fail_decrypt = True

    [citizen] = await citizens.get_all()

    assert citizen["firstName"] == "[Encrypted]"
    assert citizen["lastName"] == "[Data]"
    assert citizen["city"] == "Springfield"


@pytest.mark.asyncio
async def test_analytics_with_hsm_down(citizens, fake_dsm):
    await citizens.create(CITIZEN)
    await citizens.create({**CITIZEN, "citizenId": "CTZ002", "city": "Shelbyville"})
    fake_dsm.fail_auth = True
    fake_dsm.fail_decrypt = True
    before = len(fake_dsm.requests)

    stats = citizens.get_analytics()

    assert stats["totalCitizens"] == 2
    assert stats["citiesCounts"] == {"Springfield": 1, "Shelbyville": 1}
    assert len(fake_dsm.requests) == before


@pytest.mark.asyncio
async def test_service_request_numbers_increment(requests_repo):
    first = await requests_repo.create({
        "citizenId": 1, "serviceTypeId": 2, "notes": "Fence permit", "applicationData": "{}",
    })
    second = await requests_repo.create({"citizenId": 1, "serviceTypeId": 3})

    year = first["requestNumber"].split("-")[1]
    assert first["requestNumber"] == f"REQ-{year}-001"
    assert second["requestNumber"] == f"REQ-{year}-002"


@pytest.mark.asyncio
async def test_service_request_round_trip_and_filters(requests_repo, db):
    created = await requests_repo.create({
        "citizenId": 4, "serviceTypeId": 2, "priority": "high",
        "notes": "Call after 5pm", "applicationData": '{"lot": 12}',
    })
    await requests_repo.create({"citizenId": 5, "serviceTypeId": 2, "notes": "n/a"})

    row = db.get("service_requests", {"id": created["id"]})
    assert parse_envelope(row["notes_encrypted"]) is not None

    fetched = await requests_repo.get_by_id(created["id"])
    assert fetched["notes"] == "Call after 5pm"
    assert fetched["applicationData"] == '{"lot": 12}'

    mine = await requests_repo.get_by_citizen_id(4)
    assert [r["id"] for r in mine] == [created["id"]]
    assert len(await requests_repo.get_all({"priority": "high"})) == 1


@pytest.mark.asyncio
async def test_demo_mode_repository_round_trip(db, demo_settings, fake_dsm):
    repo = CitizenRepository(db, FieldCodec(HsmClient(demo_settings, transport=fake_dsm.transport)))

    created = await repo.create(CITIZEN)

    assert (await repo.get_by_id(created["id"]))["email"] == "marge@example.com"
    assert fake_dsm.requests == []


def test_database_rejects_unknown_tables_and_columns(db):
    with pytest.raises(ValueError):
        db.insert("employees", {"name": "x"})
    with pytest.raises(ValueError):
        db.insert("citizens", {"citizenId": "X", "firstName": "plain", "city": "a", "state": "b"})
    with pytest.raises(ValueError):
        db.all("citizens", {"ssn": "1"})


@pytest.mark.asyncio
async def test_update_with_empty_string_clears_sensitive_field(citizens, db):
    created = await citizens.create(CITIZEN)

    updated = await citizens.update(created["id"], {"phone": "", "address": None})

    assert updated["phone"] is None
    assert updated["address"] == "742 Evergreen Terrace"
    assert db.get("citizens", {"id": created["id"]})["phone_encrypted"] is None


@pytest.mark.asyncio
async def test_concurrent_service_requests_get_distinct_numbers(requests_repo):
    year = datetime.now(timezone.utc).year
    payload = {"citizenId": 1, "serviceTypeId": 2, "notes": "Same moment"}

    first, second = await asyncio.gather(
        requests_repo.create(dict(payload)),
        requests_repo.create(dict(payload)),
    )

    assert sorted([first["requestNumber"], second["requestNumber"]]) == [
        f"REQ-{year}-001", f"REQ-{year}-002",
    ]


@pytest.mark.asyncio
async def test_service_requests_include_decrypted_requester(citizens, requests_repo):
    citizen = await citizens.create(CITIZEN)
    created = await requests_repo.create({
        "citizenId": citizen["id"], "serviceTypeId": 1, "notes": "Tree removal",
    })

    [listed] = await requests_repo.get_all()
    fetched = await requests_repo.get_by_id(created["id"])

    for request in (listed, fetched):
        assert request["firstName"] == "Marge"
        assert request["lastName"] == "Simpson"
        assert request["email"] == "marge@example.com"
        assert request["city"] == "Springfield"
        assert request["notes"] == "Tree removal"
        assert not any(key.endswith("_encrypted") for key in request)
    # Only contact details are attached, not every citizen field
    assert "dateOfBirth" not in fetched


@pytest.mark.asyncio
async def test_requester_details_fall_back_to_labels_when_hsm_down(citizens, requests_repo, fake_dsm):
    citizen = await citizens.create(CITIZEN)
    await requests_repo.create({"citizenId": citizen["id"], "serviceTypeId": 1, "notes": "x"})
    fake_dsm.fail_decrypt = True

    [request] = await requests_repo.get_all()

    assert request["firstName"] == "[Encrypted]"
    assert request["email"] == "[Encrypted Email]"
    assert request["notes"] == "[Encrypted Notes]"
    assert request["city"] == "Springfield"
    assert request["requestNumber"].startswith("REQ-")


@pytest.mark.asyncio
async def test_request_for_unknown_citizen_has_empty_requester(requests_repo):
    created = await requests_repo.create({"citizenId": 99, "serviceTypeId": 1})

    fetched = await requests_repo.get_by_id(created["id"])

    assert fetched["firstName"] is None
    assert fetched["city"] is None


@pytest.mark.asyncio
async def test_missing_service_request(requests_repo):
    assert await requests_repo.get_by_id(404) is None


@pytest.mark.asyncio
async def test_search_and_status_filters(citizens, requests_repo):
    citizen = await citizens.create(CITIZEN)
    await requests_repo.create({"citizenId": citizen["id"], "serviceTypeId": 1, "notes": "Dog license"})
    await requests_repo.create({"citizenId": 77, "serviceTypeId": 1, "notes": "Parking permit"})

    assert [r["notes"] for r in await requests_repo.search("SIMPSON")] == ["Dog license"]
    assert [r["notes"] for r in await requests_repo.search("parking")] == ["Parking permit"]
    assert len(await requests_repo.search("REQ-")) == 2
    assert len(await requests_repo.get_by_status("submitted")) == 2
    with pytest.raises(ValueError):
        await requests_repo.get_by_status("lost")
