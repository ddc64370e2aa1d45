from __future__ import annotations

import hashlib
import hmac
import re
import threading
import time
from pathlib import Path
from urllib.parse import quote, urlencode

RESUME_OBJECT_NAME = "resume.pdf"
PDF_CONTENT_TYPE = "application/pdf"
_OWNER_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class ResumeStoreError(Exception):
    pass


class ResumeStore:
    """Filesystem object store holding one résumé per owner.

    Objects live at ``<root>/<owner_id>/resume.pdf``. Read access for the
    external worker goes through HMAC-signed URLs that expire.
    """

    def __init__(self, root: str, *, signing_key: str, public_base_url: str) -> None:
        self.root = Path(root)
        self._signing_key = signing_key.encode()
        self._public_base_url = public_base_url.rstrip("/")
        self._lock = threading.RLock()

    def _owner_dir(self, owner_id: str) -> Path:
        if not _OWNER_PATTERN.match(owner_id):
            raise ResumeStoreError(f"Invalid owner id: {owner_id!r}")
        return self.root / owner_id

    def object_path(self, owner_id: str) -> Path:
        return self._owner_dir(owner_id) / RESUME_OBJECT_NAME

    def upload(self, owner_id: str, content: bytes) -> int:
        target = self.object_path(owner_id)
        with self._lock:
            target.parent.mkdir(parents=True, exist_ok=True)
            staging = target.with_suffix(".upload")
            staging.write_bytes(content)
            staging.replace(target)
        return len(content)

    def list_objects(self, owner_id: str) -> list[str]:
        owner_dir = self._owner_dir(owner_id)
        if not owner_dir.is_dir():
            return []
        return sorted(path.name for path in owner_dir.iterdir() if path.is_file())

    def has_resume(self, owner_id: str) -> bool:
        return bool(self.list_objects(owner_id))

    def read(self, owner_id: str) -> bytes:
        target = self.object_path(owner_id)
        if not target.is_file():
            raise FileNotFoundError(str(target))
        return target.read_bytes()

    def _signature(self, owner_id: str, expires: int) -> str:
        message = f"{owner_id}:{expires}".encode()
        return hmac.new(self._signing_key, message, hashlib.sha256).hexdigest()

    def create_signed_url(self, owner_id: str, ttl_seconds: int) -> str:
        if not self.object_path(owner_id).is_file():
            raise ResumeStoreError(f"No {RESUME_OBJECT_NAME} stored for owner {owner_id}")
        expires = int(time.time()) + ttl_seconds
        query = urlencode({"expires": expires, "signature": self._signature(owner_id, expires)})
        return f"{self._public_base_url}/resume/files/{quote(owner_id)}?{query}"

    def verify_signature(
        self,
        owner_id: str,
        expires: int,
        signature: str,
        *,
        now: float | None = None,
    ) -> bool:
        current = time.time() if now is None else now
        if expires < current:
            return False
        try:
            self._owner_dir(owner_id)
        except ResumeStoreError:
            return False
        return hmac.compare_digest(self._signature(owner_id, expires), signature)
