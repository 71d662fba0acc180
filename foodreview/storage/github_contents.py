import asyncio
import base64
import binascii
import json
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence
from urllib.parse import quote

import aiohttp
from pydantic import ValidationError

from ..core.credentials import is_valid_token, parse_blob
from ..errors import (
    ConflictError,
    CredentialBlobError,
    CredentialError,
    CredentialRejectedError,
    StoreError,
    UploadTimeoutError,
)
from ..media.pipeline import Artifact
from ..schemas import ContentDescriptor, Review
from ..settings import settings

logger = logging.getLogger("foodreview.store")

ACCEPT_JSON = "application/vnd.github.v3+json"
ACCEPT_RAW = "application/vnd.github.raw+json"

MAX_NAME_LENGTH = 100
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_filename(name: str) -> str:
    """Reduce a user-supplied filename to a single safe path segment."""
    name = Path(name.replace("\\", "/")).name
    name = _UNSAFE_NAME_CHARS.sub("_", name).lstrip(".")
    if len(name) > MAX_NAME_LENGTH:
        stem, dot, ext = name.rpartition(".")
        if dot and len(ext) <= 10:
            name = stem[: MAX_NAME_LENGTH - len(ext) - 1] + "." + ext
        else:
            name = name[:MAX_NAME_LENGTH]
    return name or "image"


@dataclass(frozen=True)
class ArtifactFetchResult:
    reference: str
    ok: bool
    data: Optional[bytes] = None
    reason: Optional[str] = None


class GitHubContentStore:
    """Reads and writes the review collection and photos through the GitHub contents API.

    The collection lives in one JSON file; every write carries the blob sha last
    read so GitHub rejects it if the file moved on in between. Reads without a
    credential go through the raw mirror.
    """

    def __init__(
        self,
        owner: Optional[str] = None,
        repo: Optional[str] = None,
        branch: Optional[str] = None,
        *,
        api_base_url: Optional[str] = None,
        raw_base_url: Optional[str] = None,
        reviews_path: Optional[str] = None,
        media_dir: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        request_timeout_s: Optional[float] = None,
        upload_timeout_s: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.owner = owner or settings.github_owner
        self.repo = repo or settings.github_repo
        self.branch = branch or settings.github_branch
        self.api_base_url = (api_base_url or settings.api_base_url).rstrip("/")
        self.raw_base_url = (raw_base_url or settings.raw_base_url).rstrip("/")
        self.reviews_path = reviews_path or settings.reviews_path
        self.media_dir = (media_dir or settings.media_dir).strip("/")
        self.request_timeout = aiohttp.ClientTimeout(total=request_timeout_s or settings.request_timeout_s)
        self.upload_timeout = aiohttp.ClientTimeout(total=upload_timeout_s or settings.upload_timeout_s)
        self._clock = clock
        self._session = session
        self._owns_session = session is None
        # Entries of the last authenticated read that are not reviews, keyed by its sha
        self._unreadable: tuple[Optional[str], list] = (None, [])

    async def __aenter__(self) -> "GitHubContentStore":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    # --- URLs & headers ---

    def api_url(self, path: str) -> str:
        return f"{self.api_base_url}/repos/{self.owner}/{self.repo}/contents/{quote(path, safe='/')}"

    def raw_url(self, path: str) -> str:
        return f"{self.raw_base_url}/{self.owner}/{self.repo}/{self.branch}/{quote(path, safe='/')}"

    def _millis(self) -> int:
        return int(self._clock() * 1000)

    def _headers(self, credential: str, accept: str = ACCEPT_JSON) -> dict:
        # Never put a malformed token on the wire
        if not is_valid_token(credential):
            raise CredentialError()
        return {"Authorization": f"Bearer {credential}", "Accept": accept}

    @staticmethod
    async def _error_message(resp: aiohttp.ClientResponse) -> str:
        try:
            body = await resp.json(content_type=None)
            return str(body.get("message", "")) if isinstance(body, dict) else ""
        except (aiohttp.ContentTypeError, json.JSONDecodeError, UnicodeDecodeError):
            return ""

    @staticmethod
    async def _read_descriptor(resp: aiohttp.ClientResponse, action: str, key: Optional[str] = None) -> ContentDescriptor:
        try:
            body = await resp.json(content_type=None)
            return ContentDescriptor.model_validate(body[key] if key else body)
        except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError, ValidationError) as e:
            logger.warning(f"{action}: unexpected response body: {e}")
            raise StoreError(f"Unexpected response from GitHub while {action.lower()}", status=resp.status)

    async def _raise_for_status(self, resp: aiohttp.ClientResponse, action: str) -> None:
        if resp.status < 400:
            return
        message = await self._error_message(resp)
        logger.warning(f"{action} failed: HTTP {resp.status} {message}")
        if resp.status == 401:
            raise CredentialRejectedError()
        if resp.status == 409 or (resp.status == 422 and "sha" in message.lower()):
            raise ConflictError(status=resp.status)
        raise StoreError(f"{action} failed", status=resp.status)

    # --- Collection ---

    @staticmethod
    def _parse_collection(raw: bytes) -> tuple[list[Review], list]:
        """Split the stored array into reviews and entries that do not validate.

        Entries that fail validation are logged and returned separately; only a
        document that is not a JSON array fails the read.
        """
        try:
            items = json.loads(raw.decode("utf-8")) if raw.strip() else []
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StoreError(f"Stored reviews are not valid JSON: {e}")
        if not isinstance(items, list):
            raise StoreError("Stored reviews are not a list")

        reviews, unreadable = [], []
        for position, item in enumerate(items):
            try:
                reviews.append(Review.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping stored entry {position}: {e.error_count()} validation error(s)")
                unreadable.append(item)
        return reviews, unreadable

    @staticmethod
    def serialize_collection(reviews: list[Review], carried: Sequence = ()) -> bytes:
        payload = [r.to_json_dict() for r in reviews] + list(carried)
        return json.dumps(payload, indent=2, ensure_ascii=False).encode("utf-8")

    async def _get_descriptor(self, path: str, credential: str) -> Optional[ContentDescriptor]:
        headers = self._headers(credential)
        try:
            async with self._get_session().get(
                self.api_url(path), headers=headers, params={"ref": self.branch}, timeout=self.request_timeout
            ) as resp:
                if resp.status == 404:
                    return None
                await self._raise_for_status(resp, f"Reading {path}")
                return await self._read_descriptor(resp, f"Reading {path}")
        except asyncio.TimeoutError:
            raise StoreError(f"Reading {path} timed out")
        except aiohttp.ClientError as e:
            raise StoreError(f"Network error reading {path}: {e}")

    async def _get_raw_via_api(self, path: str, credential: str) -> Optional[bytes]:
        headers = self._headers(credential, accept=ACCEPT_RAW)
        try:
            async with self._get_session().get(
                self.api_url(path), headers=headers, params={"ref": self.branch}, timeout=self.upload_timeout
            ) as resp:
                if resp.status == 404:
                    return None
                await self._raise_for_status(resp, f"Reading {path}")
                return await resp.read()
        except asyncio.TimeoutError:
            raise StoreError(f"Reading {path} timed out")
        except aiohttp.ClientError as e:
            raise StoreError(f"Network error reading {path}: {e}")

    async def _get_raw_mirror(self, path: str) -> Optional[bytes]:
        try:
            async with self._get_session().get(
                self.raw_url(path), params={"t": str(self._millis())}, timeout=self.request_timeout
            ) as resp:
                if resp.status == 404:
                    return None
                await self._raise_for_status(resp, f"Reading {path}")
                return await resp.read()
        except asyncio.TimeoutError:
            raise StoreError(f"Reading {path} timed out")
        except aiohttp.ClientError as e:
            raise StoreError(f"Network error reading {path}: {e}")

    async def fetch_versioned(self, credential: Optional[str] = None) -> tuple[list[Review], Optional[str]]:
        """Collection plus the sha it was read at (None when anonymous or absent)."""
        if credential is None:
            raw = await self._get_raw_mirror(self.reviews_path)
            if raw is None:
                logger.info(f"{self.reviews_path} not found, starting with an empty collection")
                return [], None
            reviews, _ = self._parse_collection(raw)
            return reviews, None

        descriptor = await self._get_descriptor(self.reviews_path, credential)
        if descriptor is None:
            logger.info(f"{self.reviews_path} not found, starting with an empty collection")
            return [], None

        if descriptor.encoding == "base64" and descriptor.content is not None:
            try:
                raw = base64.b64decode(descriptor.content)
            except (binascii.Error, ValueError) as e:
                raise StoreError(f"Stored reviews could not be decoded: {e}")
        else:
            # Files over 1 MB come back without inline content
            raw = await self._get_raw_via_api(self.reviews_path, credential) or b""
        reviews, unreadable = self._parse_collection(raw)
        self._unreadable = (descriptor.sha, unreadable)
        return reviews, descriptor.sha

    async def fetch_collection(self, credential: Optional[str] = None) -> list[Review]:
        reviews, _ = await self.fetch_versioned(credential)
        return reviews

    async def get_version(self, credential: str) -> Optional[str]:
        """Best-effort read of the collection's current sha."""
        try:
            descriptor = await self._get_descriptor(self.reviews_path, credential)
        except StoreError as e:
            logger.warning(f"Could not read current version of {self.reviews_path}, writing without sha: {e}")
            return None
        return descriptor.sha if descriptor else None

    async def _put(
        self,
        path: str,
        data: bytes,
        credential: str,
        message: str,
        sha: Optional[str] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None,
    ) -> ContentDescriptor:
        body = {
            "message": message,
            "content": base64.b64encode(data).decode("ascii"),
            "branch": self.branch,
        }
        if sha:
            body["sha"] = sha
        headers = self._headers(credential)
        async with self._get_session().put(
            self.api_url(path), headers=headers, json=body, timeout=timeout or self.request_timeout
        ) as resp:
            await self._raise_for_status(resp, f"Writing {path}")
            return await self._read_descriptor(resp, f"Writing {path}", key="content")

    async def save_collection(
        self,
        reviews: list[Review],
        credential: str,
        expected_sha: Optional[str] = None,
        message: str = "Update reviews",
    ) -> str:
        """Write the whole collection, conditional on the sha read just before.

        Pass ``expected_sha`` to skip the read and assert a specific version.
        Raises ConflictError when GitHub reports the sha is stale.
        """
        sha = expected_sha if expected_sha is not None else await self.get_version(credential)
        # Entries we could not read are written back unchanged, after the reviews
        carried = self._unreadable[1] if sha is not None and self._unreadable[0] == sha else []
        if carried:
            logger.info(f"Keeping {len(carried)} unreadable entries in {self.reviews_path}")
        data = self.serialize_collection(reviews, carried)
        try:
            descriptor = await self._put(self.reviews_path, data, credential, message, sha=sha)
        except asyncio.TimeoutError:
            raise StoreError("Saving reviews timed out")
        except aiohttp.ClientError as e:
            raise StoreError(f"Network error saving reviews: {e}")
        logger.info(f"Saved {len(reviews)} reviews ({len(data)} bytes), sha {sha} -> {descriptor.sha}")
        return descriptor.sha

    # --- Media ---

    def artifact_path(self, filename: str) -> str:
        return f"{self.media_dir}/{self._millis()}_{sanitize_filename(filename)}"

    async def upload_artifact(self, artifact: Artifact, credential: str) -> str:
        """Store the artifact at a fresh timestamped path and return that path."""
        path = self.artifact_path(artifact.filename)
        try:
            descriptor = await self._put(
                path,
                artifact.data,
                credential,
                f"Add image {path}",
                timeout=self.upload_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Upload of {path} ({artifact.size} bytes) timed out")
            raise UploadTimeoutError()
        except aiohttp.ClientError as e:
            raise StoreError(f"Network error uploading image: {e}")
        logger.info(f"Uploaded {artifact.size} bytes to {descriptor.path}")
        return descriptor.path or path

    async def fetch_artifact(self, reference: str, credential: Optional[str] = None) -> ArtifactFetchResult:
        """Never raises: a missing photo or refused token yields ok=False."""
        try:
            if credential is not None:
                data = await self._get_raw_via_api(reference, credential)
            else:
                data = await self._get_raw_mirror(reference)
        except (StoreError, CredentialError) as e:
            logger.warning(f"Image {reference} unavailable: {e}")
            return ArtifactFetchResult(reference=reference, ok=False, reason=str(e))
        if not data:
            return ArtifactFetchResult(reference=reference, ok=False, reason="Image unavailable")
        return ArtifactFetchResult(reference=reference, ok=True, data=data)

    # --- Credential blob ---

    async def fetch_credential_blob(self) -> str:
        """Ciphertext of the encrypted token, from a bundled file or the repo."""
        if settings.credential_blob_file:
            try:
                document = await asyncio.to_thread(Path(settings.credential_blob_file).read_text, encoding="utf-8")
            except OSError as e:
                raise CredentialBlobError() from e
            return parse_blob(document)

        try:
            raw = await self._get_raw_mirror(settings.credential_blob_path)
        except StoreError as e:
            raise CredentialBlobError("Could not fetch the credential file.") from e
        if raw is None:
            raise CredentialBlobError("Could not fetch the credential file.")
        return parse_blob(raw)
