"""Tests for the local artifact store and its signed retrieval references."""

from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import pytest

from lifecycle.compliance.artifacts import LocalArtifactStore
from lifecycle.compliance.errors import ArtifactNotFound
from tests.conftest import START


@pytest.fixture
def store(tmp_path, clock):
    return LocalArtifactStore(
        tmp_path / "artifacts",
        secret=b"artifact-signing-key",
        base_url="/api/v1/privacy/artifacts/",
        clock=clock,
    )


def signed(store, key, expires_at):
    url = urlsplit(store.retrieval_reference(key, expires_at))
    query = parse_qs(url.query)
    return url.path, int(query["expires"][0]), query["signature"][0]


class TestSignedReferences:
    def test_reference_shape(self, store):
        path, expires, signature = signed(store, "export-1.json", START + timedelta(days=1))

        assert path == "/api/v1/privacy/artifacts/export-1.json"
        assert expires == int((START + timedelta(days=1)).timestamp())
        assert len(signature) == 64

    def test_tampered_reference_rejected(self, store):
        _, expires, signature = signed(store, "export-1.json", START + timedelta(days=1))

        assert store.verify_signature("export-1.json", expires, signature)
        assert not store.verify_signature("export-2.json", expires, signature)
        assert not store.verify_signature("export-1.json", expires + 3600, signature)

    def test_reference_expires(self, store, clock):
        _, expires, signature = signed(store, "export-1.json", START + timedelta(hours=1))
        clock.advance(hours=1)
        assert not store.verify_signature("export-1.json", expires, signature)


class TestArtifactIO:
    @pytest.mark.asyncio
    async def test_write_then_open(self, store):
        key = await store.write("export-1.json", b'{"ok": true}')
        _, expires, signature = signed(store, key, START + timedelta(days=1))

        assert await store.open(key, expires=expires, signature=signature) == b'{"ok": true}'
        assert not list(store.root.glob("*.part"))

    @pytest.mark.asyncio
    async def test_open_with_bad_signature(self, store):
        key = await store.write("export-1.json", b"{}")
        _, expires, _ = signed(store, key, START + timedelta(days=1))

        with pytest.raises(ArtifactNotFound):
            await store.open(key, expires=expires, signature="0" * 64)

    @pytest.mark.asyncio
    async def test_open_deleted_artifact(self, store):
        key = await store.write("export-1.json", b"{}")
        _, expires, signature = signed(store, key, START + timedelta(days=1))

        assert await store.delete(key) is True
        assert await store.delete(key) is False
        with pytest.raises(ArtifactNotFound):
            await store.open(key, expires=expires, signature=signature)

    @pytest.mark.asyncio
    async def test_path_traversal_keys_rejected(self, store):
        with pytest.raises(ArtifactNotFound):
            await store.write("../escape.json", b"{}")
        with pytest.raises(ArtifactNotFound):
            await store.write("nested/file.json", b"{}")
