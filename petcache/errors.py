"""Error types raised by the asset cache.

Everything the request path can fail with derives from PetCacheError so the
HTTP layer can collapse it into a single 404.
"""

from typing import Optional


class PetCacheError(Exception):
    """Base class for cache failures."""


class AssetIdError(PetCacheError):
    """The requested filename is not '<id>.<ext>' with a valid unsigned id."""


class AssetNotFound(PetCacheError):
    """Valid id, but nothing is cached for it."""


class FetchError(PetCacheError):
    def __init__(self, url: str, status: Optional[int] = None, reason: str = ""):
        self.url = url
        self.status = status
        self.reason = reason
        if status is not None:
            msg = f"HTTP {status} from {url}"
        else:
            msg = f"request to {url} failed: {reason}"
        super().__init__(msg)


class CacheIOError(PetCacheError):
    def __init__(self, path: str, reason: str = ""):
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}" if reason else path)
