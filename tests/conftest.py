import base64
import quopri
from urllib.parse import urlsplit

import pytest

from unmht import Resource, ResourceStore, Settings, start_server

BOUNDARY = "----MultipartBoundary--unmhtTestBoundary----"

PNG_BYTES = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\x00\x00\x00\x01fake-image-data"


def build_mhtml(parts, boundary=BOUNDARY, content_type=None):
    """Assemble an MHTML archive the way browsers save one.

    Each part is a dict with ``body`` and optional ``location``,
    ``content_type``, ``cid`` and ``encoding`` (``base64``,
    ``quoted-printable`` or ``raw-base64`` for an undecoded base64 header).
    """
    if content_type is None:
        content_type = f'multipart/related; type="text/html"; boundary="{boundary}"'
    lines = [
        b"From: <Saved by unmht tests>",
        b"Subject: test page",
        b"MIME-Version: 1.0",
        b"Content-Type: " + content_type.encode(),
        b"",
        b"",
    ]
    for part in parts:
        lines.append(b"--" + boundary.encode())
        lines.append(b"Content-Type: " + part.get("content_type", "text/html").encode())
        body = part["body"]
        if isinstance(body, str):
            body = body.encode("utf-8")
        encoding = part.get("encoding", "binary")
        if encoding == "base64":
            body = base64.encodebytes(body).rstrip(b"\n").replace(b"\n", b"\r\n")
        elif encoding == "quoted-printable":
            body = quopri.encodestring(body)
        elif encoding == "raw-base64":
            encoding = "base64"
        lines.append(b"Content-Transfer-Encoding: " + encoding.encode())
        if part.get("cid"):
            lines.append(b"Content-ID: <" + part["cid"].encode() + b">")
        if part.get("location"):
            lines.append(b"Content-Location: " + part["location"].encode())
        lines.append(b"")
        lines.append(body)
    lines.append(b"--" + boundary.encode() + b"--")
    lines.append(b"")
    return b"\r\n".join(lines)


def make_resource(location, body, content_type="text/html", cid=None):
    if isinstance(body, str):
        body = body.encode("utf-8")
    return Resource(
        location=location,
        content_type=content_type,
        data=body,
        base_url=urlsplit(location),
        content_id=cid,
    )


@pytest.fixture
def mhtml():
    return build_mhtml


@pytest.fixture
def png_bytes():
    return PNG_BYTES


@pytest.fixture
def make_store():
    def _make(*resources):
        store = ResourceStore()
        for res in resources:
            store.add(res)
        return store

    return _make


@pytest.fixture
def resource():
    return make_resource


@pytest.fixture
def two_part_archive():
    return build_mhtml(
        [
            {
                "location": "http://example.com/index.html",
                "content_type": "text/html",
                "encoding": "quoted-printable",
                "body": '<html><head><title>t</title></head>'
                '<body><img src="img/logo.png"></body></html>',
            },
            {
                "location": "http://example.com/img/logo.png",
                "content_type": "image/png",
                "encoding": "base64",
                "body": PNG_BYTES,
            },
        ]
    )


@pytest.fixture
def archive_file(tmp_path, two_part_archive):
    p = tmp_path / "page.mht"
    p.write_bytes(two_part_archive)
    return p


@pytest.fixture
def running_server():
    servers = []

    def _start(store):
        store.seal()
        server = start_server(store, Settings())
        servers.append(server)
        return server

    yield _start
    for server in servers:
        server.shutdown()
        server.server_close()
