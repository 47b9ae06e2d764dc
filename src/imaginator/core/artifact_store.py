"""File-backed storage for generated artifacts.

Images fetched from the backend are written to a single directory, one file
per artifact.  Filenames are job-scoped (``<job_id>_<millis>_<index>.<ext>``)
so several jobs can finish at the same moment without colliding, and so an
operator can tell from a directory listing which job produced which file.

The store is intentionally simple:

- bytes are decoded with Pillow before they are written, so a backend that
  answers with an error page instead of an image fails the job instead of
  leaving a corrupt file behind
- the extension follows the decoded image format
- the public reference is ``<url_prefix>/<filename>``; serving the file is left
  to the HTTP layer, which resolves names through :meth:`ArtifactStore.path_for`
"""

from __future__ import annotations

import io
import logging
import time
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from imaginator.core.errors import ArtifactError
from imaginator.core.job_registry import Artifact

logger = logging.getLogger(__name__)

# Decoded Pillow format -> stored file extension.
_EXTENSIONS = {
    "PNG": ".png",
    "JPEG": ".jpg",
    "WEBP": ".webp",
    "GIF": ".gif",
}


class ArtifactStore:
    """Persist artifact bytes under a configured directory.

    Args:
        images_dir: Directory for stored images.  Created if missing.
        url_prefix: Public URL prefix the HTTP layer serves the directory at.
    """

    def __init__(self, images_dir: Path, url_prefix: str = "/api/images") -> None:
        self.images_dir = Path(images_dir)
        self.url_prefix = url_prefix.rstrip("/")
        self.images_dir.mkdir(parents=True, exist_ok=True)

    def save(self, job_id: str, data: bytes, backend_name: str, index: int = 0) -> Artifact:
        """Validate and write one artifact.

        Args:
            job_id: Owning job, used as the filename prefix.
            data: Raw bytes returned by the backend.
            backend_name: Filename the backend reported for this output.
            index: Position of the artifact within the job's outputs.

        Returns:
            The :class:`Artifact` reference for the stored file.

        Raises:
            ArtifactError: If *data* is not a decodable image or cannot be
                written.
        """
        try:
            with Image.open(io.BytesIO(data)) as image:
                image.verify()
                image_format = image.format
        except (UnidentifiedImageError, OSError, SyntaxError) as e:
            raise ArtifactError(f"Backend returned an unreadable image for {backend_name}") from e

        extension = _EXTENSIONS.get(image_format or "", ".png")
        filename = f"{job_id}_{int(time.time() * 1000)}_{index}{extension}"
        filepath = self.images_dir / filename

        try:
            filepath.write_bytes(data)
        except OSError as e:
            raise ArtifactError(f"Could not store {filename}: {e}") from e

        logger.info(f"Stored artifact {filename} ({len(data)} bytes) for job {job_id}")
        return Artifact(
            filename=filename,
            url=f"{self.url_prefix}/{filename}",
            backend_name=backend_name,
        )

    def path_for(self, filename: str) -> Path | None:
        """Resolve a stored filename to its path.

        Returns ``None`` when the file does not exist or the name would
        escape the images directory.
        """
        root = self.images_dir.resolve()
        candidate = (root / filename).resolve()
        if candidate.parent != root or not candidate.is_file():
            return None
        return candidate
