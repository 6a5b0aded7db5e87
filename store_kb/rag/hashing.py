"""Content-addressed chunk fingerprints."""

import hashlib


class ContentHasher:
    """SHA-256 fingerprint of chunk text.

    Used only as a dedup and change-detection key; equal digests are treated
    as equal content.
    """

    algorithm = "sha256"

    def hash(self, text: str) -> str:
        """Return the 64-character hex digest of the UTF-8 encoded text."""
        return hashlib.sha256(text.encode("utf-8")).hexdigest()
