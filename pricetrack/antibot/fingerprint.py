"""Browser network fingerprint: headers, header order and TLS shape."""
from __future__ import annotations

import ssl
from dataclasses import dataclass
from typing import List, Tuple

# Chrome 120 cipher preference (TLS 1.3 suites are negotiated separately).
CHROME_CIPHERS = ":".join(
    [
        "ECDHE-ECDSA-AES128-GCM-SHA256",
        "ECDHE-RSA-AES128-GCM-SHA256",
        "ECDHE-ECDSA-AES256-GCM-SHA384",
        "ECDHE-RSA-AES256-GCM-SHA384",
        "ECDHE-ECDSA-CHACHA20-POLY1305",
        "ECDHE-RSA-CHACHA20-POLY1305",
        "ECDHE-RSA-AES128-SHA",
        "ECDHE-RSA-AES256-SHA",
        "AES128-GCM-SHA256",
        "AES256-GCM-SHA384",
        "AES128-SHA",
        "AES256-SHA",
    ]
)


@dataclass(frozen=True)
class DeviceFingerprint:
    """Fixed browser identity presented on every request of a session."""

    user_agent: str
    accept_language: str
    sec_ch_ua: str
    sec_ch_ua_platform: str
    sec_ch_ua_mobile: str = "?0"
    accept_encoding: str = "gzip, deflate, br"

    def api_headers(self) -> List[Tuple[str, str]]:
        """Headers for XHR-style JSON calls, in the order the browser sends them."""
        return [
            ("accept", "application/json, text/plain, */*"),
            ("accept-language", self.accept_language),
            ("accept-encoding", self.accept_encoding),
            ("cache-control", "max-age=0"),
            ("sec-ch-ua", self.sec_ch_ua),
            ("sec-ch-ua-mobile", self.sec_ch_ua_mobile),
            ("sec-ch-ua-platform", self.sec_ch_ua_platform),
            ("sec-fetch-dest", "empty"),
            ("sec-fetch-mode", "cors"),
            ("sec-fetch-site", "same-site"),
            ("user-agent", self.user_agent),
        ]

    def navigation_headers(self) -> List[Tuple[str, str]]:
        """Headers for a top-level page load (used by the warm-up visit)."""
        return [
            ("accept", "text/html,application/xhtml+xml,application/xml;q=0.9,"
                       "image/avif,image/webp,image/apng,*/*;q=0.8"),
            ("accept-language", self.accept_language),
            ("accept-encoding", self.accept_encoding),
            ("cache-control", "max-age=0"),
            ("sec-ch-ua", self.sec_ch_ua),
            ("sec-ch-ua-mobile", self.sec_ch_ua_mobile),
            ("sec-ch-ua-platform", self.sec_ch_ua_platform),
            ("sec-fetch-dest", "document"),
            ("sec-fetch-mode", "navigate"),
            ("sec-fetch-site", "none"),
            ("sec-fetch-user", "?1"),
            ("upgrade-insecure-requests", "1"),
            ("user-agent", self.user_agent),
        ]


CHROME_120_WINDOWS = DeviceFingerprint(
    user_agent=(
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    accept_language="en-US,en;q=0.9,fa;q=0.8",
    sec_ch_ua='"Not_A Brand";v="8", "Chromium";v="120", "Google Chrome";v="120"',
    sec_ch_ua_platform='"Windows"',
)


def create_tls_context() -> ssl.SSLContext:
    """TLS context ordered like Chrome's ClientHello.

    Certificates are still verified against the system trust store.
    """
    context = ssl.create_default_context()
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.set_ciphers(CHROME_CIPHERS)
    context.set_alpn_protocols(["h2", "http/1.1"])
    return context
