"""Client IP extraction with trusted proxy support.

Only trusts X-Forwarded-For when the app was configured with
``TRUST_PROXY=true`` (e.g. behind Render's or Cloudflare's proxy).

This prevents IP spoofing when the API is exposed directly.
"""

from __future__ import annotations

from fastapi import Request


def _trust_proxy(request: Request) -> bool:
    config = getattr(request.app.state, "config", None)
    return bool(getattr(config, "trust_proxy", False))


def get_client_ip(request: Request) -> str:
    """Get client IP address from request.

    If the proxy is trusted, checks proxy headers.
    Otherwise, only uses direct connection IP.

    Args:
        request: FastAPI request object

    Returns:
        Client IP address string
    """
    if _trust_proxy(request):
        # Check Cloudflare header first
        cf_ip = request.headers.get("CF-Connecting-IP")
        if cf_ip:
            return cf_ip.strip()

        # First IP in chain is original client
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()

    # Direct connection or untrusted proxy
    if request.client:
        return request.client.host

    return "unknown"
