"""
Security event helpers for the billing platform.
Financially relevant operations are logged here in addition to module loggers.
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger("apps.security")


def log_security_event(
    event_type: str,
    details: dict[str, Any],
    request_ip: str | None = None,
    user_email: str | None = None,
) -> None:
    """
    Log security events for monitoring and forensics
    """
    try:
        actor = user_email or "system"
        logger.warning(f"🚨 [Security] {event_type}: {details} by {actor} from IP: {request_ip}")
    except Exception as e:
        logger.error(f"Failed to log security event: {e}")
