import logging
import secrets
from typing import Optional

logger = logging.getLogger("Whispo.security")


def is_security_enabled(configured_token: Optional[str]) -> bool:
    """Auth is enforced only when a non-empty token is configured."""
    return configured_token is not None and configured_token.strip() != ""


def verify_token(configured_token: Optional[str], presented: Optional[str]) -> bool:
    """Check a presented bearer token against the configured one."""
    if not is_security_enabled(configured_token):
        return True
    if presented is None:
        return False
    return secrets.compare_digest(presented, configured_token)


def warn_if_exposed(host: str, configured_token: Optional[str]) -> None:
    if is_security_enabled(configured_token):
        return
    if host not in ("127.0.0.1", "localhost", "::1"):
        logger.warning(
            "MCP server bound to %s without an auth token; any host on the network can call its tools",
            host,
        )
