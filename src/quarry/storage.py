"""Local object storage: raw document bytes plus signed, time-limited read URLs.

Objects live under a root directory, addressed by a relative POSIX key such
as ``<user_id>/<project_id>/<filename>``. Keys that escape the root are
rejected.

Signed URLs have the form ``quarry://<key>?expires=<epoch>&signature=<hex>``;
the signature is HMAC-SHA256 over ``"<key>:<expires>"`` with the secret from
``QUARRY_STORAGE_SECRET``.
"""

from __future__ import annotations

import hashlib
import hmac
import os
import time
from pathlib import Path
from urllib.parse import parse_qs, quote, unquote, urlsplit

from quarry.errors import NotFoundError, ValidationError

_SECRET_ENV = "QUARRY_STORAGE_SECRET"
_SCHEME = "quarry"


class ObjectStore:
    """Filesystem-backed object store rooted at *root*."""

    def __init__(self, root: Path | str, secret: str | None = None) -> None:
        self.root = Path(root)
        self._secret = secret if secret is not None else os.environ.get(_SECRET_ENV, "")

    # ------------------------------------------------------------------
    # Bytes
    # ------------------------------------------------------------------

    def put(self, key: str, data: bytes) -> str:
        """Write *data* at *key* (overwriting) and return the key."""
        path = self._resolve(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return key

    def download(self, key: str) -> bytes:
        """Return the bytes stored at *key*.

        Raises:
            NotFoundError: If nothing is stored at *key*.
        """
        path = self._resolve(key)
        if not path.is_file():
            raise NotFoundError(f"No stored object at '{key}'")
        return path.read_bytes()

    def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    # ------------------------------------------------------------------
    # Signed URLs
    # ------------------------------------------------------------------

    def signed_url(self, key: str, expires_in: int = 3_600, *, now: float | None = None) -> str:
        """Issue a read URL for *key* valid for *expires_in* seconds."""
        if not self._secret:
            raise ValidationError(
                f"Signed URLs need a signing secret. Set {_SECRET_ENV}."
            )
        self._resolve(key)
        expires = int((now if now is not None else time.time()) + expires_in)
        signature = self._sign(key, expires)
        return f"{_SCHEME}://{quote(key)}?expires={expires}&signature={signature}"

    def verify_url(self, url: str, *, now: float | None = None) -> str:
        """Return the object key if *url* is authentic and unexpired.

        Raises:
            ValidationError: On a malformed, tampered or expired URL.
        """
        parts = urlsplit(url)
        if parts.scheme != _SCHEME:
            raise ValidationError(f"Not a storage URL: '{url}'")
        key = unquote(parts.netloc + parts.path)
        query = parse_qs(parts.query)
        try:
            expires = int(query["expires"][0])
            signature = query["signature"][0]
        except (KeyError, IndexError, ValueError) as exc:
            raise ValidationError("Storage URL is missing expires/signature") from exc

        if not hmac.compare_digest(signature, self._sign(key, expires)):
            raise ValidationError("Storage URL signature does not match")
        if (now if now is not None else time.time()) > expires:
            raise ValidationError("Storage URL has expired")
        return key

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _sign(self, key: str, expires: int) -> str:
        message = f"{key}:{expires}".encode()
        return hmac.new(self._secret.encode(), message, hashlib.sha256).hexdigest()

    def _resolve(self, key: str) -> Path:
        if not key or key.startswith("/") or "\\" in key:
            raise ValidationError(f"Invalid storage key: '{key}'")
        root = self.root.resolve()
        path = (root / key).resolve()
        if not path.is_relative_to(root):
            raise ValidationError(f"Storage key escapes the store root: '{key}'")
        return path
