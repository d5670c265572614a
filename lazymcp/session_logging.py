"""Session-scoped logging helpers.

Log records emitted through these helpers carry the ``session_id`` attribute
that the log format in ``lazymcp.main`` expects.
"""

from __future__ import annotations

import logging

logger = logging.getLogger("lazymcp.session")

SYSTEM_SESSION = "system"


def session_extra(session_id: str | None) -> dict[str, str]:
    return {"session_id": session_id or SYSTEM_SESSION}


def log_session(session_id: str | None, message: str, *args: object) -> None:
    logger.info(message, *args, extra=session_extra(session_id))


__all__ = ["SYSTEM_SESSION", "log_session", "session_extra"]
