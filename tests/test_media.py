"""
tests/test_media.py
"""
from __future__ import annotations

import io

import pytest
import requests

import casfolio.portfolio as portfolio
from casfolio.portfolio import (
    CloudinaryHost,
    PendingUpload,
    R2Host,
    UpstreamError,
    get_db,
    list_entries,
    media_host,
    upload_batch,
)


# ───────────────────────── fakes ──────────────────────────────────────
class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self.ok = 200 <= status_code < 300
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class RecordingPost:
    """Stand-in for requests.post that answers every call with *reply*."""

    def __init__(self, reply=None):
        self.calls = []
        self.reply = reply

    def __call__(self, url, files=None, data=None, timeout=None):
        self.calls.append({"url": url, "files": files, "data": data, "timeout": timeout})
        if self.reply is not None:
            return self.reply
        name = files["file"][0]
        return FakeResponse(payload={"secure_url": f"https://res.test/{name}"})


class ListHost:
    """In-process host: returns a URL per name, fails on names starting with 'bad'."""

    def upload(self, pending, media_kind):
        if pending.name.startswith("bad"):
            raise UpstreamError("refused", "quota exceeded")
        return f"https://host.test/{media_kind}/{pending.name}"


def _pending(name="a.png", mime="image/png"):
    return PendingUpload(name, b"\x89PNG....", mime)


@pytest.fixture
def cloudinary_env(monkeypatch):
    monkeypatch.setenv("CLOUDINARY_CLOUD_NAME", "demo-account")
    monkeypatch.setenv("CLOUDINARY_UPLOAD_PRESET", "unsigned-preset")


@pytest.fixture
def fake_post(monkeypatch):
    post = RecordingPost()
    monkeypatch.setattr(portfolio.requests, "post", post)
    return post


# ───────────────────────── Cloudinary host ────────────────────────────
@pytest.mark.parametrize("media_kind,resource", [("image", "image"), ("audio", "video")])
def test_resource_type_mapping(media_kind, resource):
    assert CloudinaryHost.resource_type(media_kind) == resource


def test_cloudinary_upload_posts_file_and_preset(fake_post):
    host = CloudinaryHost("demo-account", "unsigned-preset")
    url = host.upload(_pending("t1.m4a", "audio/mp4"), "audio")

    assert url == "https://res.test/t1.m4a"
    call = fake_post.calls[0]
    assert call["url"] == "https://api.cloudinary.com/v1_1/demo-account/video/upload"
    assert call["data"] == {"upload_preset": "unsigned-preset"}
    assert call["files"]["file"] == ("t1.m4a", b"\x89PNG....", "audio/mp4")
    assert call["timeout"] == portfolio.UPLOAD_TIMEOUT


def test_cloudinary_error_carries_body(monkeypatch):
    post = RecordingPost(FakeResponse(400, text='{"error":"Invalid preset"}'))
    monkeypatch.setattr(portfolio.requests, "post", post)

    with pytest.raises(UpstreamError) as info:
        CloudinaryHost("demo-account", "bad").upload(_pending(), "image")
    assert "400" in str(info.value)
    assert "Invalid preset" in info.value.body


def test_cloudinary_reply_without_url_is_upstream_error(monkeypatch):
    post = RecordingPost(FakeResponse(200, payload={"public_id": "x"}))
    monkeypatch.setattr(portfolio.requests, "post", post)
    with pytest.raises(UpstreamError):
        CloudinaryHost("demo-account", "p").upload(_pending(), "image")


def test_cloudinary_network_failure(monkeypatch):
    def _down(*a, **kw):
        raise requests.ConnectionError("dns failure")

    monkeypatch.setattr(portfolio.requests, "post", _down)
    with pytest.raises(UpstreamError) as info:
        CloudinaryHost("demo-account", "p").upload(_pending(), "image")
    assert "dns failure" in info.value.body


# ───────────────────────── batches ────────────────────────────────────
def test_upload_batch_keeps_input_order():
    names = [f"img{i}.png" for i in range(7)]
    items = upload_batch(ListHost(), [_pending(n) for n in names], "image")
    assert [m["name"] for m in items] == names
    assert items[0] == {
        "kind": "image",
        "name": "img0.png",
        "url": "https://host.test/image/img0.png",
    }


def test_upload_batch_empty():
    assert upload_batch(None, [], "audio") == []


def test_upload_batch_fails_as_a_whole():
    with pytest.raises(UpstreamError):
        upload_batch(ListHost(), [_pending("ok.png"), _pending("bad.png")], "image")


# ───────────────────────── R2 host ────────────────────────────────────
class FakeS3:
    def __init__(self):
        self.calls = []

    def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
        self.calls.append((fileobj.read(), bucket, key, ExtraArgs))


R2_CFG = {
    "R2_ACCOUNT_ID": "acct",
    "R2_ACCESS_KEY_ID": "key",
    "R2_SECRET_ACCESS_KEY": "secret",
    "R2_BUCKET": "portfolio",
    "R2_PUBLIC_BASE": "https://media.example.org/",
}


def test_r2_keeps_audio_native(monkeypatch):
    s3 = FakeS3()
    monkeypatch.setattr(portfolio, "_r2_client", lambda cfg: s3)

    url = R2Host(R2_CFG).upload(_pending("Term 1.M4A", "audio/mp4"), "audio")

    data, bucket, key, extra = s3.calls[0]
    assert bucket == "portfolio"
    assert key.startswith("uploads/audio/2030/03/15/")
    assert key.endswith(".m4a")
    assert extra == {"ContentType": "audio/mp4"}
    assert data == b"\x89PNG...."
    assert url == f"https://media.example.org/{key}"


def test_r2_client_error_is_upstream(monkeypatch):
    from botocore.exceptions import EndpointConnectionError

    class Broken:
        def upload_fileobj(self, *a, **kw):
            raise EndpointConnectionError(endpoint_url="https://r2.test")

    monkeypatch.setattr(portfolio, "_r2_client", lambda cfg: Broken())
    with pytest.raises(UpstreamError):
        R2Host(R2_CFG).upload(_pending(), "image")


# ───────────────────────── host selection ─────────────────────────────
def test_no_host_without_config():
    assert media_host() is None


def test_cloudinary_wins_when_configured(cloudinary_env, monkeypatch):
    for k, v in R2_CFG.items():
        monkeypatch.setenv(k, v)
    assert isinstance(media_host(), CloudinaryHost)


def test_r2_used_when_only_bucket_configured(monkeypatch):
    for k, v in R2_CFG.items():
        monkeypatch.setenv(k, v)
    host = media_host()
    assert isinstance(host, R2Host)
    assert host.cfg["R2_BUCKET"] == "portfolio"


def test_partial_r2_config_is_ignored(monkeypatch):
    monkeypatch.setenv("R2_BUCKET", "portfolio")
    assert media_host() is None


# ───────────────────────── /admin/new ─────────────────────────────────
def _form(csrf, **extra):
    return {
        "csrf": csrf,
        "kind": "creativity",
        "title": "Poster Design",
        "description": "Colour palettes and typography.",
        "week": "5",
        "entry_date": "2030-03-10",
        **extra,
    }


def test_new_entry_with_images(client, csrf, cloudinary_env, fake_post):
    data = _form(
        csrf,
        images=[
            (io.BytesIO(b"one"), "a.png", "image/png"),
            (io.BytesIO(b"two"), "b.jpg", "image/jpeg"),
        ],
    )
    rv = client.post("/admin/new", data=data, content_type="multipart/form-data")
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith("/creativity")

    (entry,) = list_entries(db=get_db())
    assert entry["week"] == 5
    assert entry["entryDate"].date().isoformat() == "2030-03-10"
    assert entry["media"] == [
        {"kind": "image", "name": "a.png", "url": "https://res.test/a.png"},
        {"kind": "image", "name": "b.jpg", "url": "https://res.test/b.jpg"},
    ]
    assert all("/image/upload" in c["url"] for c in fake_post.calls)


def test_new_conversation_uploads_audio_as_video(client, csrf, cloudinary_env, fake_post):
    data = _form(
        csrf,
        kind="conversation",
        title="Term 1 conversation",
        audio=[(io.BytesIO(b"aac"), "t1.m4a", "audio/mp4")],
    )
    rv = client.post("/admin/new", data=data, content_type="multipart/form-data")
    assert rv.headers["Location"].endswith("/conversations")
    assert fake_post.calls[0]["url"].endswith("/video/upload")

    page = client.get("/conversations").data
    assert b"<audio" in page
    assert b"https://res.test/t1.m4a" in page


def test_upload_failure_saves_nothing(client, csrf, cloudinary_env, monkeypatch):
    post = RecordingPost(FakeResponse(500, text="boom"))
    monkeypatch.setattr(portfolio.requests, "post", post)

    data = _form(csrf, images=[(io.BytesIO(b"one"), "a.png", "image/png")])
    rv = client.post("/admin/new", data=data, content_type="multipart/form-data")
    assert rv.status_code == 502
    assert b"Upload failed" in rv.data
    assert list_entries(db=get_db()) == []


def test_oversized_body_is_refused_before_upload(
    client, csrf, cloudinary_env, fake_post, monkeypatch
):
    assert portfolio.app.config["MAX_CONTENT_LENGTH"] == portfolio.UPLOAD_MAX_BYTES
    monkeypatch.setitem(portfolio.app.config, "MAX_CONTENT_LENGTH", 1024)

    data = _form(csrf, images=[(io.BytesIO(b"x" * 4096), "big.png", "image/png")])
    rv = client.post("/admin/new", data=data, content_type="multipart/form-data")
    assert rv.status_code == 413
    assert b"Upload too large" in rv.data
    assert fake_post.calls == []
    assert list_entries(db=get_db()) == []


def test_wrong_mime_family_is_rejected(client, csrf, cloudinary_env, fake_post):
    data = _form(
        csrf,
        kind="conversation",
        audio=[(io.BytesIO(b"png"), "not-audio.png", "image/png")],
    )
    rv = client.post("/admin/new", data=data, content_type="multipart/form-data")
    assert rv.status_code == 400
    assert fake_post.calls == []
    assert list_entries(db=get_db()) == []


def test_files_without_configured_host_are_rejected(client, csrf):
    data = _form(csrf, images=[(io.BytesIO(b"one"), "a.png", "image/png")])
    rv = client.post("/admin/new", data=data, content_type="multipart/form-data")
    assert rv.status_code == 400
    assert b"not configured" in rv.data


def test_new_entry_without_files_needs_no_host(client, csrf):
    rv = client.post("/admin/new", data=_form(csrf))
    assert rv.status_code == 302
    assert list_entries(db=get_db())[0]["media"] == []


def test_new_entry_missing_title_keeps_form(client, csrf):
    rv = client.post("/admin/new", data=_form(csrf, title=""))
    assert rv.status_code == 400
    assert b"Missing required fields" in rv.data
    assert b"Colour palettes and typography." in rv.data
