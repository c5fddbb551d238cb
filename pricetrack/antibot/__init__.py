"""Anti-bot fetch layer.

- Fixed browser fingerprint (header set, header order, TLS shape)
- Persistent-cookie session with warm-up visit
- Randomized pacing before every request
"""

from .fingerprint import CHROME_120_WINDOWS, DeviceFingerprint, create_tls_context
from .session import BrowserSession

__all__ = [
    "BrowserSession",
    "CHROME_120_WINDOWS",
    "DeviceFingerprint",
    "create_tls_context",
]
