from __future__ import annotations

import hashlib
import ipaddress
import re
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from fastapi import Request

MAX_USER_AGENT_LENGTH = 512

# Order matters: Edge and Opera UAs also contain "Chrome", Chrome UAs contain "Safari"
_BROWSER_PATTERNS = (
    ("Edge", re.compile(r"\bEdg(?:e|A|iOS)?/", re.I)),
    ("Opera", re.compile(r"\b(?:OPR|Opera)/", re.I)),
    ("Firefox", re.compile(r"\b(?:Firefox|FxiOS)/", re.I)),
    ("Chrome", re.compile(r"\b(?:Chrome|CriOS)/", re.I)),
    ("Safari", re.compile(r"\bVersion/[\d.]+.*Safari/", re.I)),
)
_OS_PATTERNS = (
    ("iOS", re.compile(r"\b(?:iPhone|iPad|iPod)\b", re.I)),
    ("Android", re.compile(r"\bAndroid\b", re.I)),
    ("Windows", re.compile(r"\bWindows\b", re.I)),
    ("macOS", re.compile(r"\bMac OS X\b|\bMacintosh\b", re.I)),
    ("Linux", re.compile(r"\bLinux\b|\bX11\b", re.I)),
)
_TABLET_PATTERN = re.compile(r"\biPad\b|\bTablet\b|Android(?!.*\bMobile\b)", re.I)
_MOBILE_PATTERN = re.compile(r"\bMobile\b|\biPhone\b|\biPod\b", re.I)


@dataclass(frozen=True)
class DeviceInfo:
    """Request characteristics a refresh token is softly bound to."""

    ip_address: str
    user_agent: str
    browser: str
    os: str
    device_type: str
    fingerprint: str

    @property
    def description(self) -> str:
        return f"{self.browser} on {self.os}"


def client_ip(headers: Mapping[str, str], fallback: Optional[str] = None) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return fallback or "unknown"


def parse_user_agent(user_agent: str | None) -> Tuple[str, str, str]:
    """Classify a User-Agent into (browser, os, device_type)."""
    ua = user_agent or ""
    browser = next((name for name, pattern in _BROWSER_PATTERNS if pattern.search(ua)), "Unknown")
    os_name = next((name for name, pattern in _OS_PATTERNS if pattern.search(ua)), "Unknown")
    if _TABLET_PATTERN.search(ua):
        device_type = "tablet"
    elif _MOBILE_PATTERN.search(ua):
        device_type = "mobile"
    else:
        device_type = "desktop"
    return browser, os_name, device_type


def truncate_ip(ip: str) -> str:
    """Reduce an address to its network prefix (/24 for IPv4, /64 for IPv6).

    Mobile clients hop between addresses inside a carrier block, so only the
    prefix participates in the fingerprint.
    """
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return ip
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped
    prefix = 24 if address.version == 4 else 64
    return str(ipaddress.ip_network(f"{address}/{prefix}", strict=False))


def compute_fingerprint(user_agent: str, os_name: str, browser: str, ip: str) -> str:
    material = "|".join((browser, os_name, user_agent, truncate_ip(ip)))
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def device_from_headers(
    headers: Mapping[str, str], peer_ip: Optional[str] = None
) -> DeviceInfo:
    user_agent = (headers.get("user-agent") or "")[:MAX_USER_AGENT_LENGTH]
    ip = client_ip(headers, peer_ip)
    browser, os_name, device_type = parse_user_agent(user_agent)
    return DeviceInfo(
        ip_address=ip,
        user_agent=user_agent,
        browser=browser,
        os=os_name,
        device_type=device_type,
        fingerprint=compute_fingerprint(user_agent, os_name, browser, ip),
    )


def extract_device(request: Request) -> DeviceInfo:
    peer = request.client.host if request.client else None
    return device_from_headers(request.headers, peer)
