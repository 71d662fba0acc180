import json
import re

import pytest

from foodreview.errors import (
    ConflictError,
    CredentialBlobError,
    CredentialError,
    CredentialRejectedError,
    StoreError,
    UploadTimeoutError,
)
from foodreview.media.pipeline import Artifact
from foodreview.schemas import ReviewCreate
from foodreview.settings import settings
from foodreview.storage.github_contents import GitHubContentStore, sanitize_filename

from conftest import PASSPHRASE, TOKEN, encrypt_token


def _review(name="Cafe A", item="Soup", price="4.50"):
    return ReviewCreate(
        restaurant=name, foodItem=item, price=price, taste=8, texture=7, size=5, value=6, EL="Yes", AG="No"
    ).to_review()


def _artifact(name="photo.jpg", data=b"\xff\xd8\xff" + b"j" * 100):
    return Artifact(filename=name, media_type="image/jpeg", data=data, compressed=True)


# --- Reading ---

@pytest.mark.asyncio
async def test_missing_collection_is_empty(store, github):
    assert await store.fetch_collection(TOKEN) == []
    assert await store.fetch_collection(None) == []
    assert await store.fetch_versioned(TOKEN) == ([], None)


@pytest.mark.asyncio
async def test_fetch_collection_authenticated_and_anonymous(store, github):
    review = _review()
    sha = github.seed("reviews.json", [review.to_json_dict()])

    reviews, version = await store.fetch_versioned(TOKEN)
    assert reviews == [review]
    assert version == sha

    assert await store.fetch_collection(None) == [review]
    assert ("RAW", "reviews.json") in github.requests


@pytest.mark.asyncio
async def test_server_error_carries_status(store, github):
    github.get_status_override = 502
    with pytest.raises(StoreError) as exc:
        await store.fetch_collection(TOKEN)
    assert exc.value.status == 502
    assert "502" in str(exc.value)


@pytest.mark.asyncio
async def test_malformed_collection_is_a_store_error(store, github):
    github.seed("reviews.json", b"{not json")
    with pytest.raises(StoreError, match="not valid JSON"):
        await store.fetch_collection(TOKEN)


@pytest.mark.asyncio
async def test_rejected_credential(store, github):
    other = "ghp_" + "z" * 40
    with pytest.raises(CredentialRejectedError):
        await store.fetch_collection(other)


@pytest.mark.asyncio
async def test_malformed_credential_never_hits_the_network(store, github):
    with pytest.raises(CredentialError):
        await store.fetch_collection("not-a-token")
    with pytest.raises(CredentialError):
        await store.save_collection([_review()], "ghp_short")
    with pytest.raises(CredentialError):
        await store.upload_artifact(_artifact(), "")
    assert github.requests == []


# --- Writing ---

@pytest.mark.asyncio
async def test_sequential_saves_read_before_write(store, github):
    first = await store.save_collection([_review("A")], TOKEN)
    second = await store.save_collection([_review("A"), _review("B")], TOKEN)

    assert first != second
    assert second == github.sha("reviews.json")
    assert [r["restaurant"] for r in github.reviews()] == ["A", "B"]
    # each save looked up the current sha first
    assert github.requests.count(("GET", "reviews.json")) == 2


@pytest.mark.asyncio
async def test_stale_sha_is_rejected_not_merged(store, github):
    stale = await store.save_collection([_review("A")], TOKEN)
    await store.save_collection([_review("A"), _review("B")], TOKEN)

    with pytest.raises(ConflictError) as exc:
        await store.save_collection([_review("C")], TOKEN, expected_sha=stale)
    assert exc.value.status == 409
    assert [r["restaurant"] for r in github.reviews()] == ["A", "B"]


@pytest.mark.asyncio
async def test_unreadable_version_is_tolerated_for_new_file(store, github):
    github.get_status_override = 500
    sha = await store.save_collection([_review()], TOKEN)
    assert sha == github.sha("reviews.json")


@pytest.mark.asyncio
async def test_write_without_sha_over_existing_file_conflicts(store, github):
    github.seed("reviews.json", [])
    github.get_status_override = 500
    with pytest.raises(ConflictError) as exc:
        await store.save_collection([_review()], TOKEN)
    assert exc.value.status == 422


@pytest.mark.asyncio
async def test_saved_document_format(store, github):
    await store.save_collection([_review(price="7")], TOKEN)
    raw = github.files["reviews.json"].decode("utf-8")
    assert raw.startswith("[\n  {")
    entry = json.loads(raw)[0]
    assert entry["price"] == "7.00"
    assert entry["foodItem"] == "Soup"
    assert entry["image"] is None


@pytest.mark.asyncio
async def test_invalid_entries_do_not_block_reads_and_survive_writes(store, github):
    good = _review("Good").to_json_dict()
    low = dict(_review("Low").to_json_dict(), ratings={"taste": 0, "texture": 5, "size": 5, "value": 5})
    broken = {"restaurant": "Broken", "note": "half an entry"}
    github.seed("reviews.json", [good, low, broken])

    reviews, sha = await store.fetch_versioned(TOKEN)
    assert [r.restaurant for r in reviews] == ["Good", "Low"]
    assert reviews[1].ratings.taste == 0

    await store.save_collection(reviews + [_review("New")], TOKEN, expected_sha=sha)
    stored = github.reviews()
    assert [e["restaurant"] for e in stored] == ["Good", "Low", "New", "Broken"]
    assert stored[-1] == broken


@pytest.mark.asyncio
async def test_unknown_keys_survive_a_rewrite(store, github):
    entry = dict(
        _review("Old").to_json_dict(),
        notes="keep me",
        ratings={"taste": 8, "texture": 7, "size": 5, "value": 6, "spice": 3},
    )
    github.seed("reviews.json", [entry])

    reviews, sha = await store.fetch_versioned(TOKEN)
    await store.save_collection(reviews + [_review("New")], TOKEN, expected_sha=sha)
    assert github.reviews()[0] == entry


@pytest.mark.asyncio
@pytest.mark.parametrize("reply", [
    "<html>Bad Gateway</html>",
    "{}",
    "[]",
    '{"content": {"path": "reviews.json"}}',
])
async def test_unexpected_write_reply_is_a_store_error(store, github, reply):
    github.put_reply_body = reply
    with pytest.raises(StoreError, match="Unexpected response") as exc:
        await store.save_collection([_review()], TOKEN)
    assert exc.value.status == 200
    with pytest.raises(StoreError, match="Unexpected response"):
        await store.upload_artifact(_artifact(), TOKEN)


# --- Media ---


@pytest.mark.asyncio
async def test_upload_artifact_path(github):
    store = GitHubContentStore(
        "owner", "repo", "main",
        api_base_url=github.base_url, raw_base_url=f"{github.base_url}/raw",
        clock=lambda: 1700000000.5,
    )
    try:
        path = await store.upload_artifact(_artifact("my photo.jpg"), TOKEN)
    finally:
        await store.close()
    assert path == "images/1700000000500_my_photo.jpg"
    assert github.files[path].startswith(b"\xff\xd8\xff")


@pytest.mark.asyncio
async def test_uploads_never_overwrite(store, github):
    ticks = iter([1.0, 2.0])
    store._clock = lambda: next(ticks)
    first = await store.upload_artifact(_artifact(), TOKEN)
    second = await store.upload_artifact(_artifact(), TOKEN)
    assert first != second
    assert re.fullmatch(r"images/\d+_photo\.jpg", first)


@pytest.mark.asyncio
async def test_upload_timeout(github):
    github.put_delay = 1.0
    store = GitHubContentStore(
        "owner", "repo", "main",
        api_base_url=github.base_url, raw_base_url=f"{github.base_url}/raw",
        upload_timeout_s=0.1,
    )
    try:
        with pytest.raises(UploadTimeoutError):
            await store.upload_artifact(_artifact(), TOKEN)
    finally:
        await store.close()


@pytest.mark.parametrize("name,expected", [
    ("photo.jpg", "photo.jpg"),
    ("my photo (1).jpg", "my_photo__1_.jpg"),
    ("../../etc/passwd", "passwd"),
    ("..\\windows\\evil.png", "evil.png"),
    (".hidden.jpg", "hidden.jpg"),
    ("", "image"),
    ("café.jpg", "caf_.jpg"),
])
def test_sanitize_filename(name, expected):
    assert sanitize_filename(name) == expected


def test_sanitize_filename_bounds_length():
    name = sanitize_filename("x" * 300 + ".jpeg")
    assert len(name) == 100
    assert name.endswith(".jpeg")


@pytest.mark.asyncio
async def test_fetch_artifact(store, github):
    github.seed("images/1_a.jpg", b"\xff\xd8\xffdata")

    found = await store.fetch_artifact("images/1_a.jpg", TOKEN)
    assert found.ok and found.data == b"\xff\xd8\xffdata"

    anonymous = await store.fetch_artifact("images/1_a.jpg")
    assert anonymous.ok and anonymous.data == found.data


@pytest.mark.asyncio
async def test_fetch_artifact_degrades_instead_of_raising(store, github):
    missing = await store.fetch_artifact("images/nope.jpg", TOKEN)
    assert not missing.ok and missing.data is None

    github.seed("images/1_a.jpg", b"\xff\xd8\xff")
    refused = await store.fetch_artifact("images/1_a.jpg", "ghp_" + "q" * 40)
    assert not refused.ok

    malformed = await store.fetch_artifact("images/1_a.jpg", "bogus")
    assert not malformed.ok


# --- Credential blob ---

@pytest.mark.asyncio
async def test_fetch_credential_blob_from_repo(store, github):
    assert await store.fetch_credential_blob() == encrypt_token(TOKEN, PASSPHRASE)


@pytest.mark.asyncio
async def test_fetch_credential_blob_missing(store, github):
    del github.files["pat.enc.json"]
    with pytest.raises(CredentialBlobError):
        await store.fetch_credential_blob()


@pytest.mark.asyncio
async def test_fetch_credential_blob_bundled(store, github, tmp_path, monkeypatch):
    blob = tmp_path / "pat.enc.json"
    blob.write_text(json.dumps({"data": "YWJj"}), encoding="utf-8")
    monkeypatch.setattr(settings, "credential_blob_file", str(blob))
    assert await store.fetch_credential_blob() == "YWJj"
    assert not any(path == "pat.enc.json" for _, path in github.requests)
