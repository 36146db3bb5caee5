import json
import os

import anyio
import pytest

from conftest import workspace_leftovers
from foliocas import (
    AccessDenied,
    AlreadyExists,
    Corrupt,
    EditKind,
    EditPayload,
    EntryKind,
    Folio,
    NotFound,
    QuotaExceeded,
    QuotaPolicy,
    StoreUnavailable,
)

pytestmark = pytest.mark.anyio

BLOG = {"index.html": "x" * 500}
NOTES = "n" * 200


async def test_scenario_from_bootstrap_to_delete(folio):
    created = await folio.create_folder("alice", quota_limit=10 * 1024 * 1024)
    bootstrap = folio.state.account("alice").bootstrap_size

    assert created.previous_id is None
    assert created.sequence == 1
    assert created.quota_used == bootstrap

    added = await folio.put_website("alice", "alice-blog", BLOG)
    first = folio.resolve_live("alice")
    assert added.new_id == first
    assert added.previous_id == created.new_id

    await folio.put_file("alice", "notes.txt", NOTES)
    second = folio.resolve_live("alice")
    assert second != first
    assert folio.resolve_historical(first) == second
    assert folio.state.account("alice").quota_used == bootstrap + 700

    deleted = await folio.delete_entry("alice", EntryKind.WEBSITE, "alice-blog")
    third = folio.resolve_live("alice")
    assert deleted.new_id == third
    assert folio.list_entries("alice", EntryKind.WEBSITE) == []
    assert await folio.fetch(third, "files/notes.txt") == NOTES.encode()
    with pytest.raises(NotFound):
        folio.locate_site("alice-blog")

    history = folio.history("alice")
    assert [record.sequence for record in history] == [1, 2, 3, 4]
    assert history[-1].roster == {"website": [], "archive-website": [], "file": ["notes.txt"]}


async def test_live_snapshot_serves_what_was_written(folio):
    await folio.create_folder("alice")
    await folio.put_website("alice", "alice-blog", {"index.html": "<h1>hello</h1>"})

    live = folio.resolve_live("alice")

    assert await folio.fetch(live, "websites/alice-blog/index.html") == b"<h1>hello</h1>"
    assert await folio.fetch_site("alice-blog") == b"<h1>hello</h1>"


async def test_every_old_id_resolves_to_the_live_one(folio):
    await folio.create_folder("alice")
    for index in range(4):
        await folio.put_file("alice", f"file-{index}.txt", f"content {index}")

    live = folio.resolve_live("alice")
    history = folio.history("alice")
    assert len({record.new_id for record in history}) == len(history)
    for record in history:
        assert folio.resolve_historical(record.new_id) == live
    assert await folio.fetch(history[0].new_id, "files/file-3.txt") == b"content 3"


async def test_unknown_id_resolves_to_itself(folio):
    assert folio.resolve_historical("f" * 64) == "f" * 64


async def test_quota_matches_bootstrap_plus_entries(folio):
    await folio.create_folder("alice")
    await folio.put_website("alice", "site", {"index.html": "a" * 100, "css/main.css": "b" * 50})
    await folio.put_archive_website(
        "alice", "zipped", {"index.html": "c" * 30}, archive_name="zipped.zip"
    )
    await folio.put_file("alice", "photo.bin", "AAECAw==", encoding="base64")

    account = folio.state.account("alice")
    assert account.quota_used == account.bootstrap_size + 100 + 50 + 30 + 4
    assert folio.recompute("alice") == account.quota_used


async def test_quota_exceeded_changes_nothing(folio):
    await folio.create_folder("alice", quota_limit=2000)
    account = folio.state.account("alice")
    before = (account.current_id, account.quota_used, len(folio.history("alice")))

    with pytest.raises(QuotaExceeded) as exc_info:
        await folio.put_file("alice", "big.bin", "z" * 5000)

    assert exc_info.value.available == 2000 - account.quota_used
    assert exc_info.value.to_dict()["error"] == "quota_exceeded"
    assert (account.current_id, account.quota_used, len(folio.history("alice"))) == before
    assert folio.list_entries("alice") == []
    assert workspace_leftovers(folio) == []


async def test_bootstrap_must_fit_the_limit(folio):
    with pytest.raises(QuotaExceeded):
        await folio.create_folder("alice", quota_limit=10)

    assert "alice" not in folio.state.accounts


async def test_folder_is_created_once(folio):
    await folio.create_folder("alice")

    with pytest.raises(AlreadyExists):
        await folio.create_folder("alice")


async def test_bootstrap_layout(folio):
    await folio.create_folder("alice")
    live = folio.resolve_live("alice")

    top = await folio.tree(live)

    assert set(top) == {"README.md", "index.json", "websites", "zip-websites", "files", "media"}
    index = json.loads(await folio.fetch(live, "index.json"))
    assert index["owner"] == "alice"
    assert index["sequence"] == 1


async def test_index_tracks_entries(folio):
    await folio.create_folder("alice")
    await folio.put_file("alice", "notes.txt", NOTES)

    index = json.loads(await folio.fetch(folio.resolve_live("alice"), "index.json"))

    assert index["sequence"] == 2
    assert index["entries"]["file"] == ["notes.txt"]


async def test_website_meta_is_written(folio):
    await folio.create_folder("alice")
    await folio.put_archive_website(
        "alice",
        "zipped",
        {"index.html": "<p>zip</p>", "img/logo.svg": "<svg/>"},
        archive_name="zipped.zip",
        metadata={"title": "Zipped"},
    )

    meta = json.loads(await folio.fetch(folio.resolve_live("alice"), "zip-websites/zipped/meta.json"))

    assert meta["owner"] == "alice"
    assert meta["type"] == "archive-website"
    assert meta["archiveName"] == "zipped.zip"
    assert meta["title"] == "Zipped"
    assert meta["structure"] == ["img/logo.svg", "index.html"]
    assert meta["fileCount"] == 2


async def test_replacing_an_entry(folio):
    await folio.create_folder("alice")
    await folio.put_website("alice", "blog", {"index.html": "v1", "old.html": "old"})
    result = await folio.put_website("alice", "blog", {"index.html": "v2"})

    live = folio.resolve_live("alice")
    assert result.action == "Replaced website: blog"
    assert await folio.fetch(live, "websites/blog/index.html") == b"v2"
    with pytest.raises(NotFound):
        await folio.fetch(live, "websites/blog/old.html")
    assert [entry.name for entry in folio.list_entries("alice", EntryKind.WEBSITE)] == ["blog"]


async def test_retain_policy_keeps_deleted_bytes(folio):
    await folio.create_folder("alice")
    await folio.put_file("alice", "notes.txt", NOTES)
    used = folio.state.account("alice").quota_used

    await folio.delete_entry("alice", EntryKind.FILE, "notes.txt")

    assert folio.state.account("alice").quota_used == used


async def test_reclaim_policy_gives_bytes_back(tmp_path):
    folio = Folio(tmp_path / "reclaim")
    folio.init(quota_policy=QuotaPolicy.RECLAIM)
    await folio.open()
    await folio.create_folder("alice")
    bootstrap = folio.state.account("alice").bootstrap_size

    await folio.put_file("alice", "notes.txt", NOTES)
    await folio.put_file("alice", "notes.txt", "short")
    assert folio.state.account("alice").quota_used == bootstrap + len("short")

    await folio.delete_entry("alice", EntryKind.FILE, "notes.txt")
    assert folio.state.account("alice").quota_used == bootstrap


async def test_reconcile_quota_corrects_drift(folio):
    await folio.create_folder("alice")
    await folio.put_file("alice", "notes.txt", NOTES)
    await folio.delete_entry("alice", EntryKind.FILE, "notes.txt")
    account = folio.state.account("alice")

    # retained bytes are within the tolerance
    assert await folio.reconcile_quota("alice") == account.bootstrap_size + 200

    account.quota_used += 5000
    assert await folio.reconcile_quota("alice") == account.bootstrap_size


async def test_delete_missing_entry(folio):
    await folio.create_folder("alice")

    with pytest.raises(NotFound):
        await folio.delete_entry("alice", EntryKind.FILE, "ghost.txt")
    assert len(folio.history("alice")) == 1


async def test_delete_needs_a_kind(folio):
    await folio.create_folder("alice")

    with pytest.raises(ValueError):
        await folio.mutate("alice", EditKind.DELETE_ENTRY, EditPayload(name="x"))


async def test_delete_all_entries(folio):
    await folio.create_folder("alice")
    await folio.put_website("alice", "blog", BLOG)
    await folio.put_file("alice", "notes.txt", NOTES)

    result = await folio.delete_all_entries("alice")

    assert result.action == "Deleted all entries (2)"
    assert folio.list_entries("alice") == []
    assert folio.state.directory.find_site("blog") is None
    top = await folio.tree(folio.resolve_live("alice"))
    assert top["websites"] == {}
    assert top["files"] == {}
    assert "media" in top


async def test_mutation_needs_a_folder(folio):
    with pytest.raises(NotFound):
        await folio.put_file("nobody", "notes.txt", NOTES)


async def test_caller_must_own_the_folder(folio):
    await folio.create_folder("alice")

    with pytest.raises(AccessDenied):
        await folio.mutate(
            "alice",
            EditKind.PUT_FILE,
            EditPayload(name="x.txt", files={"x.txt": "x"}),
            caller="mallory",
        )


async def test_site_names_are_global(folio):
    await folio.create_folder("alice")
    await folio.create_folder("bob")
    await folio.put_website("alice", "blog", BLOG)

    with pytest.raises(AlreadyExists):
        await folio.put_website("bob", "blog", BLOG)
    assert folio.list_entries("bob") == []


async def test_site_name_keeps_its_kind(folio):
    await folio.create_folder("alice")
    await folio.put_website("alice", "blog", BLOG)

    with pytest.raises(AlreadyExists):
        await folio.put_archive_website("alice", "blog", BLOG, archive_name="blog.zip")


async def race(*calls):
    """Run `(alias, func, *args)` calls together; map alias to result or `AlreadyExists`."""
    outcomes = {}

    async def run(alias, func, *args):
        try:
            outcomes[alias] = await func(*args)
        except AlreadyExists as exc:
            outcomes[alias] = exc

    async with anyio.create_task_group() as tg:
        for alias, func, *args in calls:
            tg.start_soon(run, alias, func, *args)
    return outcomes


async def test_concurrent_claims_of_a_site_name(flaky):
    folio, store = flaky
    await folio.create_folder("alice")
    await folio.create_folder("bob")
    bootstrap = {alias: folio.state.account(alias).quota_used for alias in ("alice", "bob")}

    # both accounts pass the name check before either reaches the store
    store.delay = 0.1
    outcomes = await race(
        ("alice", folio.put_website, "alice", "blog", BLOG),
        ("bob", folio.put_website, "bob", "blog", BLOG),
    )

    losers = [alias for alias, outcome in outcomes.items() if isinstance(outcome, AlreadyExists)]
    assert len(losers) == 1
    loser = losers[0]
    winner = "bob" if loser == "alice" else "alice"

    assert folio.locate_site("blog").alias == winner
    assert [entry.name for entry in folio.list_entries(winner)] == ["blog"]
    assert folio.list_entries(loser) == []
    assert len(folio.history(loser)) == 1
    assert folio.state.account(loser).quota_used == bootstrap[loser]
    assert workspace_leftovers(folio) == []


@pytest.mark.parametrize(
    "name", ["", "..", "a/b", ".hidden", "__MACOSX"]
)
async def test_invalid_entry_names(folio, name):
    await folio.create_folder("alice")

    with pytest.raises(ValueError):
        await folio.put_file("alice", name, "x")


@pytest.mark.parametrize(
    "path", ["../escape.html", "/abs.html", ".git/config", "meta.json"]
)
async def test_invalid_website_paths(folio, path):
    await folio.create_folder("alice")

    with pytest.raises(ValueError):
        await folio.put_website("alice", "blog", {path: "x"})
    assert workspace_leftovers(folio) == []


async def test_website_paths_must_name_distinct_files(folio):
    await folio.create_folder("alice")
    used = folio.state.account("alice").quota_used

    with pytest.raises(ValueError):
        await folio.put_website("alice", "blog", {"a.html": "x", "./a.html": "y"})

    assert folio.state.account("alice").quota_used == used
    assert folio.list_entries("alice") == []


async def test_edits_of_one_account_are_serialized(folio):
    await folio.create_folder("alice")

    async with anyio.create_task_group() as tg:
        for index in range(6):
            tg.start_soon(folio.put_file, "alice", f"file-{index}.txt", f"{index}")

    history = folio.history("alice")
    assert [record.sequence for record in history] == list(range(1, 8))
    for earlier, later in zip(history, history[1:]):
        assert later.previous_id == earlier.new_id

    live = folio.resolve_live("alice")
    for index in range(6):
        assert await folio.fetch(live, f"files/file-{index}.txt") == f"{index}".encode()


async def test_accounts_do_not_interfere(folio):
    await folio.create_folder("alice")
    await folio.create_folder("bob")

    async def edit(alias: str) -> None:
        for index in range(3):
            await folio.put_file(alias, f"{alias}-{index}.txt", alias * (index + 1))

    async with anyio.create_task_group() as tg:
        tg.start_soon(edit, "alice")
        tg.start_soon(edit, "bob")

    for alias in ("alice", "bob"):
        names = [entry.name for entry in folio.list_entries(alias, EntryKind.FILE)]
        assert names == [f"{alias}-{index}.txt" for index in range(3)]
        account = folio.state.account(alias)
        assert account.quota_used == account.bootstrap_size + len(alias) * 6

    alice_ids = {record.new_id for record in folio.history("alice")}
    bob_ids = {record.new_id for record in folio.history("bob")}
    assert not alice_ids & bob_ids
    assert folio.resolve_historical(folio.history("bob")[0].new_id) == folio.resolve_live("bob")


async def test_store_write_failure_leaves_state_untouched(flaky):
    folio, store = flaky
    await folio.create_folder("alice")
    account = folio.state.account("alice")
    before = (account.current_id, account.quota_used)

    store.fail_writes = True
    with pytest.raises(StoreUnavailable) as exc_info:
        await folio.put_file("alice", "notes.txt", NOTES)

    assert exc_info.value.kind == "store_unavailable"
    assert (account.current_id, account.quota_used) == before
    assert folio.list_entries("alice") == []
    assert len(folio.history("alice")) == 1
    assert workspace_leftovers(folio) == []

    store.fail_writes = False
    result = await folio.put_file("alice", "notes.txt", NOTES)
    assert result.sequence == 2


async def test_store_read_failure(flaky):
    folio, store = flaky
    await folio.create_folder("alice")

    store.fail_reads = True
    with pytest.raises(StoreUnavailable):
        await folio.put_file("alice", "notes.txt", NOTES)
    assert store.writes == 1


async def test_store_timeout(flaky):
    folio, store = flaky
    await folio.create_folder("alice")
    live = folio.resolve_live("alice")

    store.delay = 5
    with pytest.raises(StoreUnavailable):
        await folio.put_file("alice", "notes.txt", NOTES)

    assert folio.resolve_live("alice") == live
    assert workspace_leftovers(folio) == []
    assert not folio.engine.locks.locked("alice")


async def test_snapshot_without_skeleton_is_corrupt(flaky, tmp_path):
    folio, store = flaky
    await folio.create_folder("alice")
    broken = tmp_path / "broken"
    broken.joinpath("files").mkdir(parents=True)
    broken.joinpath("index.json").write_text("{}")
    broken_id = await store.inner.put_tree(broken)
    folio.state.account("alice").current_id = broken_id

    with pytest.raises(Corrupt):
        await folio.put_file("alice", "notes.txt", NOTES)

    assert folio.state.account("alice").current_id == broken_id
    assert len(folio.history("alice")) == 1


async def test_damaged_blob_is_corrupt(folio):
    await folio.create_folder("alice")
    await folio.put_file("alice", "notes.txt", "hello world")
    live = folio.resolve_live("alice")

    blob_id = (await folio.tree(live))["files"]["notes.txt"]
    blob_path = folio.store.get_blob(blob_id).path
    os.chmod(blob_path, 0o600)
    with open(blob_path, "wb") as blob:
        blob.write(b"jello world")

    with pytest.raises(Corrupt) as exc_info:
        await folio.put_file("alice", "todo.txt", "x")

    assert exc_info.value.kind == "corrupt"
    assert folio.resolve_live("alice") == live
    assert len(folio.history("alice")) == 2
    assert workspace_leftovers(folio) == []
    assert not folio.engine.locks.locked("alice")


async def test_failed_save_reports_an_applied_commit(folio, monkeypatch):
    await folio.create_folder("alice")

    async def refuse(dest_path, data):
        raise OSError("disk full")

    monkeypatch.setattr("foliocas.state.write_atomic", refuse)
    with pytest.raises(StoreUnavailable):
        await folio.put_file("alice", "notes.txt", NOTES)

    # the snapshot was committed before saving failed
    assert len(folio.history("alice")) == 2
    assert [entry.name for entry in folio.list_entries("alice")] == ["notes.txt"]
    assert not folio.engine.locks.locked("alice")

    monkeypatch.undo()
    await folio.put_file("alice", "todo.txt", "x")
    reopened = await Folio(folio.root).open()
    assert len(reopened.history("alice")) == 3


async def test_state_survives_a_restart(tmp_path):
    root = tmp_path / "folio"
    folio = Folio(root)
    folio.init()
    await folio.open()
    await folio.create_folder("alice")
    await folio.put_website("alice", "blog", BLOG)
    first = folio.resolve_live("alice")
    await folio.put_file("alice", "notes.txt", NOTES)

    reopened = await Folio(root).open()

    assert reopened.resolve_live("alice") == folio.resolve_live("alice")
    assert reopened.resolve_historical(first) == reopened.resolve_live("alice")
    assert [entry.name for entry in reopened.list_entries("alice")] == ["blog", "notes.txt"]
    assert await reopened.fetch_site("blog") == BLOG["index.html"].encode()

    result = await reopened.delete_entry("alice", EntryKind.FILE, "notes.txt")
    assert result.sequence == 4


async def test_folio_must_be_opened(tmp_path):
    folio = Folio(tmp_path / "folio")
    folio.init()

    with pytest.raises(RuntimeError):
        await folio.create_folder("alice")
    assert not folio.is_open

    await folio.open()
    result = await folio.create_folder("alice")

    assert folio.is_open
    assert result.to_dict() == {
        "previous_id": None,
        "new_id": folio.resolve_live("alice"),
        "quota_used": folio.state.account("alice").bootstrap_size,
        "sequence": 1,
        "action": "Created folder",
    }
