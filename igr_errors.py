#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                  POWER-IGR - Error Types                                     ║
╚══════════════════════════════════════════════════════════════════════════════╝

Exceptions raised inside the automation engine. Session operations catch them
at step boundaries and turn them into OperationResult failures, so none of
these ever reach the HTTP layer as a 500.

Author: POWER-IGR Team
Version: 1.0.0
"""


class IGRError(Exception):
    """Base class for engine errors"""


class WaitTimeout(IGRError):
    """A bounded wait ran out before its condition held"""

    def __init__(self, what: str, timeout: float):
        super().__init__(f"Timed out after {timeout:.1f}s waiting for {what}")
        self.what = what
        self.timeout = timeout


class SessionCancelled(IGRError):
    """The session was cancelled while a step was waiting"""


class SessionLost(IGRError):
    """The browser disconnected underneath the session"""

    def __init__(self, message: str = 'Browser session lost'):
        super().__init__(message)


class InvalidTransition(IGRError):
    """Illegal session state change"""

    def __init__(self, current, target):
        super().__init__(f"Invalid session transition: {current.value} → {target.value}")
        self.current = current
        self.target = target


class CascadeOrderError(IGRError):
    """A dependent level was requested before its parent was resolved"""


class SessionBusy(IGRError):
    """Another command is still running on this session"""


class SessionBudgetExceeded(IGRError):
    """The registry already holds MAX_SESSIONS live sessions"""


class PortalUnavailable(IGRError):
    """Portal health monitor reports DOWN or RATE_LIMITED"""
