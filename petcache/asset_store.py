"""
Flat on-disk store for cached assets: one '<id>.<ext>' file per asset id.

Files are written to a temporary name in the same directory and then moved into
place with os.replace(), so a concurrent reader either sees no file or the
complete file. Existing entries are never overwritten.
"""

from __future__ import annotations

import logging
import os
import re
import threading
import time
from typing import Optional

from petcache.errors import AssetNotFound, CacheIOError

LOG = logging.getLogger(__name__)

MAX_ASSET_ID = 2 ** 32 - 1

# ASCII digits only; no sign, no leading zeros (except the id 0 itself).
_ID_RE = re.compile(r"^(0|[1-9][0-9]*)$")


def parse_asset_id(text: str) -> Optional[int]:
    if not text or not _ID_RE.match(text):
        return None
    value = int(text)
    if value > MAX_ASSET_ID:
        return None
    return value


def parse_asset_filename(name: str, extension: str = "swf") -> Optional[int]:
    """Return the asset id for '<id>.<extension>', or None if it does not parse."""
    suffix = "." + extension
    if not name or not name.endswith(suffix):
        return None
    return parse_asset_id(name[: -len(suffix)])


class AssetStore:
    def __init__(self, root: str, extension: str = "swf"):
        self.root = root
        self.extension = extension

    def filename_for(self, asset_id: int) -> str:
        return f"{int(asset_id)}.{self.extension}"

    def path_for(self, asset_id: int) -> str:
        return os.path.join(self.root, self.filename_for(asset_id))

    def ensure_root(self) -> None:
        try:
            os.makedirs(self.root, exist_ok=True)
        except OSError as e:
            raise CacheIOError(self.root, f"cannot create cache directory: {e}") from e

    def exists(self, asset_id: int) -> bool:
        return os.path.isfile(self.path_for(asset_id))

    def read(self, asset_id: int) -> bytes:
        path = self.path_for(asset_id)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise AssetNotFound(path) from e
        except IsADirectoryError as e:
            raise AssetNotFound(path) from e
        except OSError as e:
            raise CacheIOError(path, f"read failed: {e}") from e

    def write(self, asset_id: int, data: bytes) -> str:
        """Persist ``data`` for ``asset_id`` and return the final path."""
        self.ensure_root()
        final_path = self.path_for(asset_id)
        tmp_path = os.path.join(
            self.root,
            f".tmp_{int(asset_id)}_{int(time.time() * 1000)}_{threading.get_ident()}",
        )

        try:
            with open(tmp_path, "wb") as f:
                f.write(data)
            if os.path.exists(final_path):
                # Already cached; keep the existing file.
                os.remove(tmp_path)
            else:
                os.replace(tmp_path, final_path)
        except OSError as e:
            try:
                os.remove(tmp_path)
            except OSError:
                pass
            raise CacheIOError(final_path, f"write failed: {e}") from e

        LOG.debug("Stored %d bytes at %s", len(data), final_path)
        return final_path
