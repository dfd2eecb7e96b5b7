"""
File Upload Collaborator

Stores payment proofs and disbursement documents and hands back a durable
URL. The lending engine only depends on the FileUploader interface.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Union
import logging
import re
import uuid

from .errors import PersistenceError, ValidationError

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r'[^A-Za-z0-9._-]+')


class FileUploader(ABC):
    """Persists a binary file and returns a durable URL"""

    @abstractmethod
    def upload(self, filename: str, content: bytes, folder: str = "") -> str:
        pass


class LocalFileUploader(FileUploader):
    """Writes uploads under a local directory and returns file:// URLs"""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def upload(self, filename: str, content: bytes, folder: str = "") -> str:
        if not content:
            raise ValidationError("Uploaded file is empty")
        safe_name = _SAFE_NAME.sub('_', Path(filename).name) or "upload"
        target_dir = self.directory / _SAFE_NAME.sub('_', folder) if folder else self.directory
        target = target_dir / f"{uuid.uuid4().hex}_{safe_name}"
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as e:
            raise PersistenceError(f"Could not store upload {safe_name}: {e}") from e

        logger.info("Stored upload %s (%d bytes)", target.name, len(content))
        return target.resolve().as_uri()
