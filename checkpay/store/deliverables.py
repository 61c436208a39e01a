"""Deliverable references.

A deliverable is stored twice in the content store: the original and a
preview the client can inspect before approving. Internally the pair is a
two-field structure; only the ledger and store boundary see the joined
``"<originalId>:<previewId>"`` string.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from checkpay.store.content import ContentStore

logger = logging.getLogger(__name__)

SEPARATOR = ":"

IMAGE_EXTENSIONS = re.compile(r"\.(jpg|jpeg|png|gif|webp)$", re.IGNORECASE)

# (data, filename) -> preview bytes
PreviewRenderer = Callable[[bytes, str], bytes]


@dataclass(frozen=True)
class DeliverableRef:
    """Pointer to a deliverable's original and preview content."""

    original_id: str
    preview_id: str

    def __post_init__(self):
        for name, value in (("original_id", self.original_id), ("preview_id", self.preview_id)):
            if not value or not value.strip():
                raise ValueError(f"{name} cannot be empty")
            if SEPARATOR in value:
                raise ValueError(f"{name} cannot contain {SEPARATOR!r}")

    def encode(self) -> str:
        """Serialize to the boundary format."""
        return f"{self.original_id}{SEPARATOR}{self.preview_id}"

    @classmethod
    def parse(cls, value: str) -> "DeliverableRef":
        """Parse the boundary format.

        A bare id without separator refers to content with no separate
        preview, so it is used for both fields.
        """
        if not value:
            raise ValueError("Deliverable reference cannot be empty")
        if SEPARATOR not in value:
            return cls(original_id=value, preview_id=value)
        original, _, preview = value.partition(SEPARATOR)
        return cls(original_id=original, preview_id=preview)

    @property
    def has_preview(self) -> bool:
        return self.original_id != self.preview_id

    def __str__(self) -> str:
        return self.encode()


class DeliverableUploader:
    """Stores a deliverable and its preview, returning the paired reference."""

    def __init__(self, store: ContentStore, preview_renderer: Optional[PreviewRenderer] = None):
        self.store = store
        self.preview_renderer = preview_renderer

    def upload(self, data: bytes, filename: str) -> DeliverableRef:
        """Upload ``data`` and, for images with a renderer, a preview of it.

        Non-image files (or no renderer) reuse the original id as preview.
        """
        original_id = self.store.put(data, filename)

        if self.preview_renderer is None or not IMAGE_EXTENSIONS.search(filename):
            return DeliverableRef(original_id=original_id, preview_id=original_id)

        preview = self.preview_renderer(data, filename)
        preview_id = self.store.put(preview, f"preview_{filename}")
        logger.info(f"Uploaded deliverable {filename} | original={original_id} | preview={preview_id}")
        return DeliverableRef(original_id=original_id, preview_id=preview_id)

    def fetch_preview(self, ref: DeliverableRef) -> bytes:
        return self.store.get(ref.preview_id)

    def fetch_original(self, ref: DeliverableRef) -> bytes:
        return self.store.get(ref.original_id)
