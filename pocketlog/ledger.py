"""Upload ledger derived from the object store listing.

There is no local database of what was shipped. Each uploader run lists the
remote prefix once and treats an object whose size equals the local artifact's
as already shipped. The ledger is only a cache of that listing: when it cannot
be loaded it is marked incomplete and callers must ask the store per key.
"""

import logging

from pocketlog.store import ObjectStore, StoreError

logger = logging.getLogger(__name__)


class UploadLedger:
    def __init__(self, objects: dict[str, int] | None = None, complete: bool = True):
        self._objects = dict(objects or {})
        self.complete = complete

    @classmethod
    def load(cls, store: ObjectStore, prefix: str) -> "UploadLedger":
        prefix = (prefix or "").strip("/")
        try:
            objects = store.list(prefix + "/" if prefix else "")
        except StoreError as exc:
            logger.warning("Could not list remote objects, assuming nothing is shipped: %s", exc)
            return cls(complete=False)
        logger.debug("Ledger loaded %d remote object(s)", len(objects))
        return cls(objects)

    def get(self, key: str) -> int | None:
        """Remote size recorded for *key*, or None if the listing did not contain it."""
        return self._objects.get(key)

    def is_shipped(self, key: str, size: int) -> bool:
        return self._objects.get(key) == size

    def record(self, key: str, size: int):
        self._objects[key] = size

    def __contains__(self, key: str) -> bool:
        return key in self._objects

    def __len__(self) -> int:
        return len(self._objects)
