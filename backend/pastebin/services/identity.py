"""
Rate limit identity resolution.

Authenticated callers are limited as `user:<id>`, everyone else as `ip:<address>`.
Proxy headers are only honoured when the deployment runs behind a trusted
proxy; otherwise the address is the loopback placeholder so that spoofed
headers cannot be used to dodge limits.
"""
import re
from dataclasses import dataclass
from typing import Mapping, Optional

LOOPBACK_IP = "127.0.0.1"

IPV4_PATTERN = re.compile(
    r"^(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}"
    r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)$"
)
IPV6_PATTERN = re.compile(r"^(?:[0-9a-fA-F]{1,4}:){7}[0-9a-fA-F]{1,4}$|^::1$|^::$")

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9\-_:]")


@dataclass(frozen=True)
class Identity:
    identifier: str
    is_authenticated: bool
    ip: str

    @property
    def ip_identifier(self) -> str:
        return f"ip:{self.ip}"


def sanitize_identifier(identifier: str) -> str:
    """Replace every character outside [A-Za-z0-9_:-] so the value is safe as a key segment."""
    return _UNSAFE_KEY_CHARS.sub("_", identifier)


def is_valid_ip(value: str) -> bool:
    return bool(IPV4_PATTERN.match(value) or IPV6_PATTERN.match(value))


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        # Plain dicts are case sensitive, Starlette headers are not
        for key, candidate in headers.items():
            if key.lower() == name:
                return candidate
    return value


def extract_client_ip(headers: Mapping[str, str], trust_proxy: bool) -> str:
    if not trust_proxy:
        return LOOPBACK_IP

    cf_ip = _header(headers, "cf-connecting-ip")
    if cf_ip and is_valid_ip(cf_ip.strip()):
        return cf_ip.strip()

    forwarded = _header(headers, "x-forwarded-for")
    if forwarded:
        first_ip = forwarded.split(",")[0].strip()
        if first_ip and is_valid_ip(first_ip):
            return first_ip

    real_ip = _header(headers, "x-real-ip")
    if real_ip and is_valid_ip(real_ip.strip()):
        return real_ip.strip()

    return LOOPBACK_IP


def resolve_identity(
    headers: Mapping[str, str],
    user_id: Optional[str] = None,
    trust_proxy: bool = False,
) -> Identity:
    ip = extract_client_ip(headers, trust_proxy)
    if user_id:
        return Identity(identifier=f"user:{user_id}", is_authenticated=True, ip=ip)
    return Identity(identifier=f"ip:{ip}", is_authenticated=False, ip=ip)
