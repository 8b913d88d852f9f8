import logging
import os
import uuid

from triage.errors import IssueValidationError, PersistenceError
from triage.config import FILE_WRITE_CHUNK_SIZE

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/heic": ".heic",
}


class LocalImageStore:
    """
    Stores complaint photos on local disk under UPLOAD_DIR.
    """
    def __init__(self, upload_dir, max_bytes, public_prefix="/uploads"):
        self.upload_dir = upload_dir
        self.max_bytes = max_bytes
        self.public_prefix = public_prefix.rstrip("/")

    def _extension_for(self, content_type, filename):
        """
        Pick a file extension from the content type, then the original name.
        """
        content_type = (content_type or "").split(";")[0].strip().lower()
        if content_type in _EXTENSIONS:
            return _EXTENSIONS[content_type]
        _, ext = os.path.splitext(filename or "")
        return ext.lower() if ext else ".img"

    def save(self, stream, content_type, filename):
        """
        Copy an uploaded file stream to disk. Returns the public image URL.

        The name is random so two citizens uploading "photo.jpg" never collide
        and the client cannot choose a path.
        """
        os.makedirs(self.upload_dir, exist_ok=True)
        name = f"{uuid.uuid4().hex}{self._extension_for(content_type, filename)}"
        abs_path = os.path.abspath(os.path.join(self.upload_dir, name))

        written = 0
        try:
            # Write in chunks to keep memory usage low.
            with open(abs_path, "wb") as f:
                while True:
                    chunk = stream.read(FILE_WRITE_CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > self.max_bytes:
                        break
                    f.write(chunk)
        except OSError as e:
            logger.error(f"Failed to write upload {abs_path}: {e}")
            raise PersistenceError(f"Could not store image: {e}") from e

        if written > self.max_bytes or written == 0:
            self._remove(abs_path)
            message = "Image is empty" if written == 0 else f"Image exceeds {self.max_bytes} bytes"
            raise IssueValidationError({"image": [message]}, "Invalid image")

        logger.info(f"Stored upload {name} ({written} bytes)")
        return f"{self.public_prefix}/{name}"

    def path_for(self, image_url):
        return os.path.join(self.upload_dir, os.path.basename(image_url or ""))

    def discard(self, image_url):
        """
        Remove a stored image, e.g. when the issue insert that needed it failed.
        """
        self._remove(self.path_for(image_url))

    def _remove(self, path):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove upload {path}: {e}")
