# tests/test_sharing.py
from sqlalchemy import func, select

from app.models.note_share import NoteShare


async def _share(client, owner, note_id, email, permission):
    return await client.post(
        f"/api/v1/sharing/notes/{note_id}/share",
        headers=owner["headers"],
        json={"email": email, "permission": permission},
    )


async def test_read_grantee_cannot_edit_until_upgraded(client, database, make_user, create_note):
    owner = await make_user("owner")
    bob = await make_user("bob")
    note = await create_note(owner, title="Plan")
    url = f"/api/v1/notes/{note['id']}"

    r = await _share(client, owner, note["id"], bob["email"], "read")
    assert r.status_code == 200
    assert r.json()["data"]["permission"] == "read"

    r = await client.get(url, headers=bob["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["permission"] == "read"

    r = await client.put(url, headers=bob["headers"], data={"title": "Hijacked"})
    assert r.status_code == 403
    assert r.json()["error"] == "You only have read permission for this note"

    r = await _share(client, owner, note["id"], bob["email"], "edit")
    assert r.status_code == 200

    r = await client.put(url, headers=bob["headers"], data={"title": "Edited by Bob"})
    assert r.status_code == 200
    assert r.json()["data"]["title"] == "Edited by Bob"
    assert r.json()["data"]["owner_id"] == owner["id"]

    async with database.session_factory() as session:
        grants = (await session.execute(
            select(NoteShare.permission).where(NoteShare.note_id == note["id"])
        )).scalars().all()
    assert grants == ["edit"]


async def test_resharing_keeps_a_single_grant(client, database, make_user, create_note):
    owner = await make_user("owner")
    bob = await make_user("bob")
    note = await create_note(owner, title="Shared")

    first = await _share(client, owner, note["id"], bob["email"], "edit")
    second = await _share(client, owner, note["id"], bob["email"].upper(), "read")
    assert first.json()["data"]["share_id"] == second.json()["data"]["share_id"]

    async with database.session_factory() as session:
        count = (await session.execute(select(func.count()).select_from(NoteShare))).scalar_one()
    assert count == 1

    r = await client.get(f"/api/v1/sharing/notes/{note['id']}/users", headers=owner["headers"])
    users = r.json()["data"]
    assert [(u["user"]["username"], u["permission"]) for u in users] == [("bob", "read")]


async def test_self_share_is_rejected(client, make_user, create_note):
    owner = await make_user("owner")
    note = await create_note(owner, title="Mine")
    r = await _share(client, owner, note["id"], owner["email"], "edit")
    assert r.status_code == 400
    assert r.json()["error"] == "Cannot share note with yourself"


async def test_self_share_is_rejected_before_note_lookup(client, make_user):
    owner = await make_user("owner")
    r = await _share(client, owner, 999, owner["email"], "read")
    assert r.status_code == 400


async def test_only_owner_manages_grants(client, make_user, create_note):
    owner = await make_user("owner")
    bob = await make_user("bob")
    carol = await make_user("carol")
    note = await create_note(owner, title="Team")
    r = await _share(client, owner, note["id"], bob["email"], "edit")
    share_id = r.json()["data"]["share_id"]

    # An edit grantee still cannot re-share, list grantees or revoke
    r = await _share(client, bob, note["id"], carol["email"], "read")
    assert r.status_code == 404
    r = await client.get(f"/api/v1/sharing/notes/{note['id']}/users", headers=bob["headers"])
    assert r.status_code == 404
    r = await client.delete(f"/api/v1/sharing/{share_id}", headers=bob["headers"])
    assert r.status_code == 404

    r = await client.delete(f"/api/v1/sharing/{share_id}", headers=owner["headers"])
    assert r.status_code == 200
    r = await client.get(f"/api/v1/notes/{note['id']}", headers=bob["headers"])
    assert r.status_code == 404


async def test_share_with_unknown_email(client, make_user, create_note):
    owner = await make_user("owner")
    note = await create_note(owner, title="Lonely")
    r = await _share(client, owner, note["id"], "nobody@example.com", "read")
    assert r.status_code == 404


async def test_shared_with_me_excludes_trashed_notes(client, make_user, create_note):
    owner = await make_user("owner")
    bob = await make_user("bob")
    kept = await create_note(owner, title="Kept", tags="x")
    trashed = await create_note(owner, title="Trashed")
    for note in (kept, trashed):
        await _share(client, owner, note["id"], bob["email"], "read")

    await client.delete(f"/api/v1/notes/{trashed['id']}", headers=owner["headers"])

    r = await client.get("/api/v1/sharing/shared-with-me", headers=bob["headers"])
    data = r.json()["data"]
    assert [n["title"] for n in data] == ["Kept"]
    assert data[0]["permission"] == "read"
    assert data[0]["owner_username"] == "owner"
    assert data[0]["tags"] == ["x"]

    # Trashed notes are invisible to grantees
    r = await client.get(f"/api/v1/notes/{trashed['id']}", headers=bob["headers"])
    assert r.status_code == 404


async def test_edit_grantee_update_invalidates_owner_cache(client, redis_client, make_user, create_note):
    owner = await make_user("owner")
    bob = await make_user("bob")
    carol = await make_user("carol")
    note = await create_note(owner, title="Before")
    await _share(client, owner, note["id"], bob["email"], "edit")

    await client.get("/api/v1/notes/", headers=owner["headers"])
    await client.get("/api/v1/notes/", headers=carol["headers"])

    r = await client.put(f"/api/v1/notes/{note['id']}", headers=bob["headers"], data={"title": "After"})
    assert r.status_code == 200

    assert [k async for k in redis_client.scan_iter(match=f"cache:{owner['id']}:*")] == []
    assert len([k async for k in redis_client.scan_iter(match=f"cache:{carol['id']}:*")]) == 1

    r = await client.get("/api/v1/notes/", headers=owner["headers"])
    assert [n["title"] for n in r.json()["data"]] == ["After"]


async def test_edit_grantee_can_trash_but_not_restore(client, make_user, create_note):
    owner = await make_user("owner")
    bob = await make_user("bob")
    reader = await make_user("reader")
    note = await create_note(owner, title="Shared trash")
    await _share(client, owner, note["id"], bob["email"], "edit")
    await _share(client, owner, note["id"], reader["email"], "read")

    r = await client.delete(f"/api/v1/notes/{note['id']}", headers=reader["headers"])
    assert r.status_code == 403

    r = await client.delete(f"/api/v1/notes/{note['id']}", headers=bob["headers"])
    assert r.status_code == 200

    r = await client.post(f"/api/v1/notes/{note['id']}/restore", headers=bob["headers"])
    assert r.status_code == 404

    r = await client.get("/api/v1/notes/trash", headers=owner["headers"])
    assert [n["id"] for n in r.json()["data"]] == [note["id"]]
