"""In-flight upload tracking for provisional entities.

Two reconcile passes may interleave at any ``await``.  Both can see the same
never-uploaded entity, so the first pass to claim its fingerprint owns the
``create`` call and the other pass leaves the entity alone.  State lives for
the process lifetime only: a restart clears every claim.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class PendingUploadTracker:
    """Fingerprint claims for uploads currently in flight.

    Usage::

        if tracker.try_begin_upload(fp):
            try:
                created = await remote.create(payload)
                tracker.record_created(fp, created.id)
            finally:
                tracker.end_upload(fp)
    """

    def __init__(self) -> None:
        self._in_flight: set[str] = set()
        self._created: dict[str, str] = {}

    def try_begin_upload(self, fingerprint: str) -> bool:
        """Claim *fingerprint*.  Returns ``False`` if it is already claimed."""
        if fingerprint in self._in_flight:
            logger.debug("Upload for %s already in flight", fingerprint)
            return False
        self._in_flight.add(fingerprint)
        return True

    def end_upload(self, fingerprint: str) -> None:
        """Release *fingerprint*.  Safe to call for an unclaimed key."""
        self._in_flight.discard(fingerprint)

    def record_created(self, fingerprint: str, remote_id: str) -> None:
        """Remember that *fingerprint* now exists remotely as *remote_id*."""
        self._created[fingerprint] = remote_id

    def created_id(self, fingerprint: str) -> str | None:
        """Remote id a previous upload of *fingerprint* produced, if any."""
        return self._created.get(fingerprint)

    def release_created(self, remote_ids: set[str], keep: set[str] | None = None) -> int:
        """Forget creates whose remote id the caller has now adopted.

        Args:
            remote_ids: Remote ids present in a committed remote listing.
            keep: Fingerprints still carried by a provisional local copy;
                their entries stay so the copy can be folded later.

        Returns:
            How many entries were dropped.
        """
        keep = keep or set()
        released = [
            fingerprint
            for fingerprint, remote_id in self._created.items()
            if remote_id in remote_ids and fingerprint not in keep
        ]
        for fingerprint in released:
            del self._created[fingerprint]
        return len(released)
