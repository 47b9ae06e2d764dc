"""Tests for imaginator.core.artifact_store — artifact persistence."""

from __future__ import annotations

import io

import pytest
from PIL import Image

from imaginator.core.artifact_store import ArtifactStore
from imaginator.core.errors import ArtifactError


class TestSave:
    def test_png_is_stored(self, store: ArtifactStore, png_bytes: bytes):
        artifact = store.save("job-1", png_bytes, "ComfyUI_00001_.png")
        assert artifact.filename.startswith("job-1_")
        assert artifact.filename.endswith("_0.png")
        assert artifact.url == f"/api/images/{artifact.filename}"
        assert artifact.backend_name == "ComfyUI_00001_.png"
        assert (store.images_dir / artifact.filename).read_bytes() == png_bytes

    def test_index_keeps_names_unique(self, store: ArtifactStore, png_bytes: bytes):
        first = store.save("job-1", png_bytes, "a.png", index=0)
        second = store.save("job-1", png_bytes, "b.png", index=1)
        assert first.filename != second.filename

    def test_extension_follows_format(self, store: ArtifactStore):
        buffer = io.BytesIO()
        Image.new("RGB", (4, 4)).save(buffer, format="JPEG")
        artifact = store.save("job-1", buffer.getvalue(), "out.jpg")
        assert artifact.filename.endswith(".jpg")

    def test_invalid_bytes_rejected(self, store: ArtifactStore):
        with pytest.raises(ArtifactError, match="unreadable image"):
            store.save("job-1", b"<html>502 Bad Gateway</html>", "ComfyUI_00001_.png")
        assert list(store.images_dir.iterdir()) == []

    def test_url_prefix_trailing_slash(self, temp_dir, png_bytes: bytes):
        store = ArtifactStore(temp_dir / "img", url_prefix="/static/")
        artifact = store.save("job-1", png_bytes, "a.png")
        assert artifact.url == f"/static/{artifact.filename}"

    def test_directory_created(self, temp_dir):
        ArtifactStore(temp_dir / "nested" / "images")
        assert (temp_dir / "nested" / "images").is_dir()


class TestPathFor:
    def test_existing_file(self, store: ArtifactStore, png_bytes: bytes):
        artifact = store.save("job-1", png_bytes, "a.png")
        assert store.path_for(artifact.filename) == (store.images_dir / artifact.filename).resolve()

    def test_missing_file(self, store: ArtifactStore):
        assert store.path_for("nope.png") is None

    def test_traversal_rejected(self, store: ArtifactStore, temp_dir):
        (temp_dir / "secret.txt").write_text("x")
        assert store.path_for("../secret.txt") is None
