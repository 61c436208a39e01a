"""Content store subsystem for Checkpay.

Modules:
- content.py: Content store protocol, in-memory and IPFS backends
- deliverables.py: Original/preview deliverable references and uploads
- preview.py: Watermarked previews for image deliverables
"""

from checkpay.store.content import ContentStore, InMemoryContentStore, IpfsContentStore
from checkpay.store.deliverables import DeliverableRef, DeliverableUploader
from checkpay.store.preview import watermark_preview

__all__ = [
    "ContentStore",
    "InMemoryContentStore",
    "IpfsContentStore",
    "DeliverableRef",
    "DeliverableUploader",
    "watermark_preview",
]
