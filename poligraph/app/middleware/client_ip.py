"""Client identity extraction.

The identity is best effort: X-Forwarded-For and X-Real-IP are set by the
reverse proxy in front of the service, but a client that reaches the service
directly can put anything in them. Only a trusted proxy that overwrites these
headers makes the identity meaningful.
"""

from typing import Mapping

from fastapi import Request

LOOPBACK_IP = "127.0.0.1"


def get_client_ip(headers: Mapping[str, str]) -> str:
    """Return the client IP from proxy headers, or the loopback fallback."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip

    return LOOPBACK_IP


def client_ip_from_request(request: Request) -> str:
    return get_client_ip(request.headers)
