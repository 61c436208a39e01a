"""
Checkpay - checkpoint escrow for two-party freelance engagements.

A client funds a fixed price, the freelancer delivers in three checkpoints,
and the escrow releases funds as each checkpoint is approved.
"""

from .config import CommerceConfig
from .errors import CommerceError

try:
    from importlib.metadata import version

    __version__ = version("checkpay")
except Exception:
    __version__ = "0.0.0"

__all__ = ["CommerceConfig", "CommerceError"]
