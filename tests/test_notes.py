# tests/test_notes.py
import asyncio
import io
import json
import os

import pytest
from fastapi import UploadFile
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from starlette.datastructures import Headers

from app.models.attachment import Attachment
from app.models.note import Note
from app.models.tag import Tag
from app.schemas.note import NoteCreate
from app.services.cache import ResponseCache
from app.services.notes import NoteService, upsert_tags


async def _count(database, stmt):
    async with database.session_factory() as session:
        return (await session.execute(stmt)).scalar_one()


def _stored_files(storage):
    return sorted(os.listdir(storage.attachments_dir))


async def test_requires_authentication(client):
    r = await client.get("/api/v1/notes/")
    assert r.status_code == 401
    assert r.json() == {"success": False, "error": "Not authorized to access this route"}


async def test_create_and_read_note(client, make_user, create_note):
    alice = await make_user("alice")
    note = await create_note(alice, title="  Groceries ", content="milk", is_pinned=True)
    assert note["title"] == "Groceries"
    assert note["is_pinned"] is True
    assert note["owner_username"] == "alice"

    r = await client.get(f"/api/v1/notes/{note['id']}", headers=alice["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["content"] == "milk"


async def test_tags_are_deduplicated_per_owner(client, database, make_user, create_note):
    alice = await make_user("alice")
    note = await create_note(alice, title="Tagged", tags=json.dumps(["a", "b", "a"]))
    assert note["tags"] == ["a", "b"]

    # Same names on a second note reuse the existing tag rows
    await create_note(alice, title="Again", tags="A, b")
    assert await _count(database, select(func.count()).select_from(Tag).where(Tag.name == "a")) == 1
    assert await _count(database, select(func.count()).select_from(Tag)) == 2

    r = await client.get("/api/v1/notes/tags", headers=alice["headers"])
    assert r.json()["data"] == ["a", "b"]


async def test_validation_errors_are_reported_per_field(client, make_user):
    alice = await make_user("alice")
    r = await client.post("/api/v1/notes/", headers=alice["headers"], data={"title": "x" * 201})
    assert r.status_code == 400
    body = r.json()
    assert body["success"] is False
    assert body["details"][0]["field"] == "title"

    r = await client.post(
        "/api/v1/notes/", headers=alice["headers"],
        data={"title": "ok", "tags": json.dumps([f"t{i}" for i in range(11)])},
    )
    assert r.status_code == 400


async def test_create_with_attachments(client, storage, make_user, create_note):
    alice = await make_user("alice")
    files = [
        ("files", ("one.txt", b"first", "text/plain")),
        ("files", ("two.txt", b"second", "text/plain")),
    ]
    note = await create_note(alice, title="With files", files=files)
    assert [a["original_filename"] for a in note["attachments"]] == ["one.txt", "two.txt"]
    assert len(_stored_files(storage)) == 2

    attachment = note["attachments"][0]
    r = await client.get(
        f"/api/v1/notes/{note['id']}/attachments/{attachment['id']}", headers=alice["headers"]
    )
    assert r.status_code == 200
    assert r.content == b"first"


async def test_disallowed_file_type_is_rejected_before_storage(client, storage, make_user):
    alice = await make_user("alice")
    r = await client.post(
        "/api/v1/notes/", headers=alice["headers"], data={"title": "bad"},
        files=[("files", ("run.sh", b"#!/bin/sh", "application/x-sh"))],
    )
    assert r.status_code == 400
    assert _stored_files(storage) == []


async def test_failed_attachment_insert_rolls_back_note(client, database, storage, make_user, monkeypatch):
    alice = await make_user("alice")

    async def broken_insert(*args, **kwargs):
        raise SQLAlchemyError("forced failure")

    monkeypatch.setattr("app.services.notes.insert_attachments", broken_insert)
    r = await client.post(
        "/api/v1/notes/", headers=alice["headers"],
        data={"title": "Doomed", "tags": "x"},
        files=[("files", ("a.txt", b"hello", "text/plain"))],
    )
    assert r.status_code == 500
    assert r.json() == {"success": False, "error": "Failed to create note"}

    assert await _count(database, select(func.count()).select_from(Note)) == 0
    assert await _count(database, select(func.count()).select_from(Attachment)) == 0
    assert _stored_files(storage) == []

    r = await client.get("/api/v1/notes/", headers=alice["headers"])
    assert r.json()["pagination"]["total_count"] == 0


async def test_failed_update_keeps_previous_state(client, storage, make_user, create_note, monkeypatch):
    alice = await make_user("alice")
    note = await create_note(alice, title="Keep", tags="one")

    async def broken_insert(*args, **kwargs):
        raise SQLAlchemyError("forced failure")

    monkeypatch.setattr("app.services.notes.insert_attachments", broken_insert)
    r = await client.put(
        f"/api/v1/notes/{note['id']}", headers=alice["headers"],
        data={"title": "Changed", "tags": "two,three"},
        files=[("files", ("a.txt", b"hello", "text/plain"))],
    )
    assert r.status_code == 500
    assert r.json() == {"success": False, "error": "Failed to update note"}
    assert _stored_files(storage) == []

    r = await client.get(f"/api/v1/notes/{note['id']}", headers=alice["headers"])
    data = r.json()["data"]
    assert data["title"] == "Keep"
    assert data["tags"] == ["one"]
    assert data["attachments"] == []


async def test_cancelled_create_leaves_nothing_behind(database, redis_client, storage, settings, make_user, monkeypatch):
    alice = await make_user("alice")
    reached = asyncio.Event()

    async def stalled_insert(*args, **kwargs):
        reached.set()
        await asyncio.sleep(30)

    monkeypatch.setattr("app.services.notes.insert_attachments", stalled_insert)
    upload = UploadFile(io.BytesIO(b"hello"), filename="a.txt", headers=Headers({"content-type": "text/plain"}))

    async with database.session_factory() as session:
        service = NoteService(session, storage, ResponseCache(redis_client), settings)
        task = asyncio.create_task(service.create(alice["id"], NoteCreate(title="Interrupted", tags=["x"]), [upload]))
        await reached.wait()
        # The upload is on disk and the note row is flushed when the write is cancelled
        assert len(_stored_files(storage)) == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert await _count(database, select(func.count()).select_from(Note)) == 0
    assert await _count(database, select(func.count()).select_from(Tag)) == 0
    assert _stored_files(storage) == []


async def test_tag_upsert_returns_the_existing_row(database, make_user):
    alice = await make_user("alice")
    async with database.session_factory() as session:
        first = await upsert_tags(session, alice["id"], ["work", "home"])
        again = await upsert_tags(session, alice["id"], ["work"])
        await session.commit()
    assert again == first[:1]

    async with database.session_factory() as session:
        later = await upsert_tags(session, alice["id"], ["home", "work"])
        await session.commit()
    assert later == [first[1], first[0]]

    total = select(func.count()).select_from(Tag).where(Tag.owner_id == alice["id"])
    assert await _count(database, total) == 2


async def test_update_tags_omitted_vs_empty(client, make_user, create_note):
    alice = await make_user("alice")
    note = await create_note(alice, title="Tags", tags="one,two")
    url = f"/api/v1/notes/{note['id']}"

    r = await client.put(url, headers=alice["headers"], data={"title": "Renamed"})
    assert r.status_code == 200
    assert r.json()["data"]["title"] == "Renamed"
    assert r.json()["data"]["tags"] == ["one", "two"]

    r = await client.put(url, headers=alice["headers"], data={"tags": "three"})
    assert r.json()["data"]["tags"] == ["three"]
    assert r.json()["data"]["title"] == "Renamed"

    r = await client.put(url, headers=alice["headers"], data={"tags": "[]"})
    assert r.json()["data"]["tags"] == []


async def test_update_appends_attachments(client, make_user, create_note):
    alice = await make_user("alice")
    note = await create_note(alice, title="Files", files=[("files", ("a.txt", b"a", "text/plain"))])
    r = await client.put(
        f"/api/v1/notes/{note['id']}", headers=alice["headers"],
        files=[("files", ("b.txt", b"b", "text/plain"))],
    )
    assert r.status_code == 200
    assert [a["original_filename"] for a in r.json()["data"]["attachments"]] == ["a.txt", "b.txt"]


async def test_soft_delete_restore_cycle(client, make_user, create_note):
    alice = await make_user("alice")
    note = await create_note(alice, title="Cycle")
    keep = await create_note(alice, title="Keep")
    headers = alice["headers"]

    async def listed(path):
        r = await client.get(path, headers=headers)
        assert r.status_code == 200
        return [n["id"] for n in r.json()["data"]]

    # Populate the cache first so the transitions must invalidate it
    assert note["id"] in await listed("/api/v1/notes/")

    r = await client.delete(f"/api/v1/notes/{note['id']}", headers=headers)
    assert r.status_code == 200
    assert note["id"] not in await listed("/api/v1/notes/")
    assert await listed("/api/v1/notes/trash") == [note["id"]]
    r = await client.get(f"/api/v1/notes/{note['id']}", headers=headers)
    assert r.status_code == 404

    r = await client.post(f"/api/v1/notes/{note['id']}/restore", headers=headers)
    assert r.status_code == 200
    assert sorted(await listed("/api/v1/notes/")) == sorted([note["id"], keep["id"]])
    assert await listed("/api/v1/notes/trash") == []

    # Restoring an active note is not a valid transition
    r = await client.post(f"/api/v1/notes/{note['id']}/restore", headers=headers)
    assert r.status_code == 404


async def test_transitions_on_other_users_notes_report_not_found(client, make_user, create_note):
    alice = await make_user("alice")
    bob = await make_user("bob")
    note = await create_note(alice, title="Private")

    r = await client.delete(f"/api/v1/notes/{note['id']}", headers=bob["headers"])
    assert r.status_code == 404
    await client.delete(f"/api/v1/notes/{note['id']}", headers=alice["headers"])
    r = await client.post(f"/api/v1/notes/{note['id']}/restore", headers=bob["headers"])
    assert r.status_code == 404
    r = await client.delete(f"/api/v1/notes/{note['id']}/permanent", headers=bob["headers"])
    assert r.status_code == 404


async def test_purge_removes_rows_and_files(client, database, storage, make_user, create_note, monkeypatch):
    alice = await make_user("alice")
    files = [
        ("files", ("one.txt", b"1", "text/plain")),
        ("files", ("two.txt", b"2", "text/plain")),
    ]
    note = await create_note(alice, title="Purge me", files=files, tags="x")
    assert len(_stored_files(storage)) == 2

    # Active notes cannot be purged
    r = await client.delete(f"/api/v1/notes/{note['id']}/permanent", headers=alice["headers"])
    assert r.status_code == 404

    real_delete = storage.delete
    calls = []

    def flaky_delete(file_path):
        calls.append(file_path)
        if len(calls) == 1:
            raise OSError("disk busy")
        real_delete(file_path)

    monkeypatch.setattr(storage, "delete", flaky_delete)

    await client.delete(f"/api/v1/notes/{note['id']}", headers=alice["headers"])
    r = await client.delete(f"/api/v1/notes/{note['id']}/permanent", headers=alice["headers"])
    assert r.status_code == 200

    assert await _count(database, select(func.count()).select_from(Note)) == 0
    assert await _count(database, select(func.count()).select_from(Attachment)) == 0
    assert _stored_files(storage) == []
    assert len(calls) == 3


async def test_purge_completes_when_file_delete_keeps_failing(client, database, storage, make_user, create_note, monkeypatch):
    alice = await make_user("alice")
    note = await create_note(alice, title="Stuck", files=[("files", ("one.txt", b"1", "text/plain"))])

    def broken_delete(file_path):
        raise OSError("read-only file system")

    monkeypatch.setattr(storage, "delete", broken_delete)
    await client.delete(f"/api/v1/notes/{note['id']}", headers=alice["headers"])
    r = await client.delete(f"/api/v1/notes/{note['id']}/permanent", headers=alice["headers"])
    assert r.status_code == 200
    assert await _count(database, select(func.count()).select_from(Note)) == 0
    assert await _count(database, select(func.count()).select_from(Attachment)) == 0


async def test_listing_search_filters_and_pagination(client, make_user, create_note):
    alice = await make_user("alice")
    for i in range(12):
        await create_note(alice, title=f"Note {i:02d}", content="shopping list" if i % 3 == 0 else "other",
                          is_pinned=i % 2 == 0)
    headers = alice["headers"]

    r = await client.get("/api/v1/notes/", params={"search": "SHOPPING"}, headers=headers)
    assert r.json()["pagination"]["total_count"] == 4

    r = await client.get("/api/v1/notes/", params={"is_pinned": "true"}, headers=headers)
    assert r.json()["pagination"]["total_count"] == 6

    r = await client.get("/api/v1/notes/", params={"sort": "title", "order": "asc", "limit": 5, "page": 3},
                         headers=headers)
    body = r.json()
    assert [n["title"] for n in body["data"]] == ["Note 10", "Note 11"]
    assert body["pagination"] == {
        "page": 3,
        "limit": 5,
        "total_pages": 3,
        "total_count": 12,
        "has_next_page": False,
        "has_prev_page": True,
    }

    r = await client.get("/api/v1/notes/", params={"limit": 1000}, headers=headers)
    assert r.json()["pagination"]["limit"] == 100

    r = await client.get("/api/v1/notes/", params={"category_id": "1 OR 1=1"}, headers=headers)
    assert r.status_code == 400

    r = await client.get("/api/v1/notes/", params={"is_pinned": "maybe"}, headers=headers)
    assert r.status_code == 400
    assert r.json()["details"][0]["field"] == "is_pinned"


async def test_default_order_is_newest_first_across_pages(client, make_user, create_note):
    alice = await make_user("alice")
    for i in range(6):
        await create_note(alice, title=f"N{i}")

    seen = []
    for page in (1, 2, 3):
        r = await client.get("/api/v1/notes/", params={"limit": 2, "page": page}, headers=alice["headers"])
        seen += [n["title"] for n in r.json()["data"]]
    assert seen == ["N5", "N4", "N3", "N2", "N1", "N0"]


async def test_category_filter(client, make_user, create_note):
    alice = await make_user("alice")
    r = await client.post("/api/v1/categories/", headers=alice["headers"], json={"name": "Work"})
    category_id = r.json()["data"]["id"]
    await create_note(alice, title="Filed", category_id=category_id)
    await create_note(alice, title="Loose")

    r = await client.get("/api/v1/notes/", params={"category_id": category_id}, headers=alice["headers"])
    assert [n["title"] for n in r.json()["data"]] == ["Filed"]
    assert r.json()["data"][0]["category"]["name"] == "Work"


async def test_cannot_file_note_under_another_users_category(client, make_user):
    alice = await make_user("alice")
    bob = await make_user("bob")
    r = await client.post("/api/v1/categories/", headers=bob["headers"], json={"name": "Bob's"})
    r = await client.post(
        "/api/v1/notes/", headers=alice["headers"],
        data={"title": "Sneaky", "category_id": str(r.json()["data"]["id"])},
    )
    assert r.status_code == 400
    assert r.json()["details"] == [{"field": "category_id", "message": "Category not found"}]


async def test_cache_is_per_user_and_invalidated_on_write(client, redis_client, make_user, create_note):
    alice = await make_user("alice")
    bob = await make_user("bob")
    await create_note(alice, title="First")

    await client.get("/api/v1/notes/", headers=alice["headers"])
    await client.get("/api/v1/notes/?page=2", headers=alice["headers"])
    await client.get("/api/v1/notes/", headers=bob["headers"])
    assert len([k async for k in redis_client.scan_iter(match=f"cache:{alice['id']}:*")]) == 2
    bob_keys = [k async for k in redis_client.scan_iter(match=f"cache:{bob['id']}:*")]
    assert len(bob_keys) == 1

    await create_note(alice, title="Second")
    assert [k async for k in redis_client.scan_iter(match=f"cache:{alice['id']}:*")] == []
    assert [k async for k in redis_client.scan_iter(match=f"cache:{bob['id']}:*")] == bob_keys

    r = await client.get("/api/v1/notes/", headers=alice["headers"])
    assert r.json()["pagination"]["total_count"] == 2


async def test_adversarial_attachment_ids(client, make_user, create_note):
    alice = await make_user("alice")
    mallory = await make_user("mallory")
    note = await create_note(alice, title="Secret", files=[("files", ("s.txt", b"secret", "text/plain"))])
    attachment_id = note["attachments"][0]["id"]
    base = f"/api/v1/notes/{note['id']}/attachments"

    for bad_id in ("1 OR 1=1", "1;DELETE FROM attachments", "-1 UNION SELECT 1"):
        r = await client.get(f"{base}/{bad_id}", headers=mallory["headers"])
        assert r.status_code == 400
        r = await client.delete(f"{base}/{bad_id}", headers=alice["headers"])
        assert r.status_code == 400

    r = await client.get(f"{base}/{attachment_id}", headers=mallory["headers"])
    assert r.status_code == 404
    r = await client.delete(f"{base}/{attachment_id}", headers=mallory["headers"])
    assert r.status_code == 404

    # The attachment survived every attempt
    r = await client.get(f"{base}/{attachment_id}", headers=alice["headers"])
    assert r.status_code == 200
    assert r.content == b"secret"


async def test_delete_attachment_removes_row_then_file(client, storage, make_user, create_note):
    alice = await make_user("alice")
    note = await create_note(alice, title="Files", files=[("files", ("a.txt", b"a", "text/plain"))])
    attachment_id = note["attachments"][0]["id"]

    r = await client.delete(f"/api/v1/notes/{note['id']}/attachments/{attachment_id}", headers=alice["headers"])
    assert r.status_code == 200
    assert _stored_files(storage) == []
    r = await client.get(f"/api/v1/notes/{note['id']}", headers=alice["headers"])
    assert r.json()["data"]["attachments"] == []
