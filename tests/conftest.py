import asyncio
import base64
import hashlib
import io
import json

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from PIL import Image

from foodreview.storage.github_contents import GitHubContentStore

TOKEN = "ghp_" + "A1b2C3d4E5" * 4  # 44 chars
PASSPHRASE = "correct horse"


def encrypt_token(token: str, passphrase: str) -> str:
    """Inverse of credentials.unwrap, used to build fixture blobs."""
    data = token.encode("latin-1")
    key = passphrase.encode("latin-1")
    return base64.b64encode(bytes(b ^ key[i % len(key)] for i, b in enumerate(data))).decode("ascii")


def make_jpeg(width: int, height: int, quality: int = 90, pad_to: int = 0) -> bytes:
    """Smooth RGB gradient JPEG, optionally padded after EOI up to pad_to bytes."""
    g = Image.linear_gradient("L").resize((width, height))
    img = Image.merge(
        "RGB",
        (g, g.transpose(Image.Transpose.FLIP_LEFT_RIGHT), g.transpose(Image.Transpose.FLIP_TOP_BOTTOM)),
    )
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=quality)
    data = buf.getvalue()
    if pad_to > len(data):
        data += b"\x00" * (pad_to - len(data))
    return data


def make_noise_jpeg(size: int = 400, quality: int = 95) -> bytes:
    img = Image.effect_noise((size, size), 100).convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


def git_blob_sha(data: bytes) -> str:
    return hashlib.sha1(b"blob %d\0" % len(data) + data).hexdigest()


class FakeGitHub:
    """In-process stand-in for the contents API and the raw mirror.

    Enforces the same sha rules GitHub does: updating an existing file needs
    its current sha (422 without, 409 on mismatch).
    """

    def __init__(self, token: str = TOKEN):
        self.token = token
        self.files: dict[str, bytes] = {}
        self.requests: list[tuple[str, str]] = []
        self.put_delay = 0.0
        self.put_reply_body = None
        self.get_status_override = None
        self.base_url = ""

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/repos/{owner}/{repo}/contents/{path:.+}", self.get_content)
        app.router.add_put("/repos/{owner}/{repo}/contents/{path:.+}", self.put_content)
        app.router.add_get("/raw/{owner}/{repo}/{branch}/{path:.+}", self.get_raw)
        return app

    def seed(self, path: str, data) -> str:
        if not isinstance(data, bytes):
            data = json.dumps(data, indent=2).encode("utf-8")
        self.files[path] = data
        return git_blob_sha(data)

    def sha(self, path: str):
        return git_blob_sha(self.files[path]) if path in self.files else None

    def reviews(self, path: str = "reviews.json") -> list:
        return json.loads(self.files[path]) if path in self.files else []

    def _authorized(self, request) -> bool:
        return request.headers.get("Authorization") == f"Bearer {self.token}"

    async def get_content(self, request):
        path = request.match_info["path"]
        self.requests.append(("GET", path))
        if not self._authorized(request):
            return web.json_response({"message": "Bad credentials"}, status=401)
        if self.get_status_override:
            return web.json_response({"message": "Server Error"}, status=self.get_status_override)
        if path not in self.files:
            return web.json_response({"message": "Not Found"}, status=404)
        data = self.files[path]
        if "raw" in request.headers.get("Accept", ""):
            return web.Response(body=data)
        encoded = base64.encodebytes(data).decode("ascii")  # GitHub wraps lines too
        return web.json_response({
            "type": "file",
            "path": path,
            "sha": git_blob_sha(data),
            "size": len(data),
            "encoding": "base64",
            "content": encoded,
        })

    async def put_content(self, request):
        path = request.match_info["path"]
        self.requests.append(("PUT", path))
        if not self._authorized(request):
            return web.json_response({"message": "Bad credentials"}, status=401)
        if self.put_delay:
            await asyncio.sleep(self.put_delay)
        if self.put_reply_body is not None:
            # A proxy or outage page answering 200 with something other than the API object
            return web.Response(text=self.put_reply_body, status=200)
        body = await request.json()
        current = self.sha(path)
        given = body.get("sha")
        if current and not given:
            return web.json_response({"message": "Invalid request.\n\n\"sha\" wasn't supplied."}, status=422)
        if given and given != current:
            return web.json_response({"message": f"{path} does not match {given}"}, status=409)
        data = base64.b64decode(body["content"])
        self.files[path] = data
        return web.json_response(
            {"content": {"path": path, "sha": git_blob_sha(data), "size": len(data)}, "commit": {"message": body["message"]}},
            status=200 if current else 201,
        )

    async def get_raw(self, request):
        path = request.match_info["path"]
        self.requests.append(("RAW", path))
        if path not in self.files:
            return web.Response(text="404: Not Found", status=404)
        return web.Response(body=self.files[path])


@pytest.fixture
def sample_form():
    return {
        "restaurant": "Cafe A",
        "foodItem": "Soup",
        "price": "4.50",
        "taste": 8,
        "texture": 7,
        "size": 5,
        "value": 6,
        "EL": "Yes",
        "AG": "No",
    }


@pytest_asyncio.fixture
async def github():
    fake = FakeGitHub()
    fake.seed("pat.enc.json", {"data": encrypt_token(TOKEN, PASSPHRASE)})
    server = TestServer(fake.app())
    await server.start_server()
    fake.base_url = str(server.make_url("/")).rstrip("/")
    yield fake
    await server.close()


@pytest_asyncio.fixture
async def store(github):
    s = GitHubContentStore(
        "owner",
        "repo",
        "main",
        api_base_url=github.base_url,
        raw_base_url=f"{github.base_url}/raw",
        request_timeout_s=5,
        upload_timeout_s=5,
    )
    yield s
    await s.close()


class RecordingPresenter:
    def __init__(self):
        self.renders: list[tuple[list, bool]] = []
        self.errors: list[str] = []
        self.progress: list[int] = []

    def render(self, reviews, logged_in):
        self.renders.append((reviews, logged_in))

    def report_error(self, message):
        self.errors.append(message)

    def report_progress(self, percent):
        self.progress.append(percent)


@pytest.fixture
def presenter():
    return RecordingPresenter()
