#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                  POWER-IGR - Portal Health Monitor                           ║
║                  HTTP-based portal health checking                           ║
║                  (No browser overhead)                                       ║
╚══════════════════════════════════════════════════════════════════════════════╝

Purpose:
  - Cheap HEAD checks against the IGR free-search portal
  - Refuse new sessions while the portal is DOWN or RATE_LIMITED, instead of
    spending a Chromium launch and a CAPTCHA on a dead portal
  - Exponential backoff advice for callers

Author: POWER-IGR Team
Version: 1.0.0
"""

import requests
import time
import threading
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Optional, Dict
import urllib3

from igr_config import Config

# IGR portal certificate chain is incomplete; requests are made with verify=False
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger('PortalHealth')


class PortalStatus(Enum):
    """Portal health states"""
    HEALTHY = 'healthy'           # < 1s response, HTTP 2xx/3xx
    DEGRADED = 'degraded'         # slow, or 4xx other than 429
    RATE_LIMITED = 'rate_limited' # HTTP 429
    DOWN = 'down'                 # connection refused, timeout, HTTP 5xx
    UNKNOWN = 'unknown'           # not checked yet


BLOCKING_STATUSES = (PortalStatus.DOWN, PortalStatus.RATE_LIMITED)


def classify_response(status_code: int, elapsed_ms: float) -> PortalStatus:
    if status_code == 429:
        return PortalStatus.RATE_LIMITED
    if status_code >= 500:
        return PortalStatus.DOWN
    if status_code >= 400:
        return PortalStatus.DEGRADED
    if elapsed_ms < 1000:
        return PortalStatus.HEALTHY
    return PortalStatus.DEGRADED


@dataclass
class HealthMetrics:
    """Current health metrics"""
    status: PortalStatus = PortalStatus.UNKNOWN
    response_time_ms: float = 0
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_check_time: float = 0
    last_success_time: float = 0
    total_checks: int = 0
    failed_checks: int = 0

    def to_dict(self) -> Dict:
        now = time.time()
        return {
            'status': self.status.value,
            'responseTimeMs': round(self.response_time_ms, 2),
            'consecutiveFailures': self.consecutive_failures,
            'consecutiveSuccesses': self.consecutive_successes,
            'lastCheckAgoSeconds': round(now - self.last_check_time, 1) if self.last_check_time else None,
            'lastSuccessAgoSeconds': round(now - self.last_success_time, 1) if self.last_success_time else None,
            'totalChecks': self.total_checks,
            'failedChecks': self.failed_checks,
            'successRate': round((self.total_checks - self.failed_checks) / max(self.total_checks, 1) * 100, 1)
        }


class PortalHealthMonitor:
    """
    HTTP-based portal health monitoring.

    Usage:
        monitor = get_portal_monitor()
        monitor.start()

        if monitor.should_allow_session():
            registry.create()

        monitor.stop()
    """

    def __init__(self, portal_url: str = None, check_interval: float = None, http=None):
        self.portal_url = portal_url or Config.BASE_URL
        self.check_interval = check_interval or Config.HEALTH_CHECK_INTERVAL
        self.http = http or requests.Session()

        self._metrics = HealthMetrics()
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._monitor_thread: Optional[threading.Thread] = None

        logger.info(f"🏥 PortalHealthMonitor initialized (URL: {self.portal_url})")

    def start(self):
        """Start background health monitoring thread"""
        if self._monitor_thread and self._monitor_thread.is_alive():
            logger.warning("Monitor already running")
            return

        self._stop_event.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitor_loop,
            name='PortalHealthMonitor',
            daemon=True
        )
        self._monitor_thread.start()
        logger.info("🏥 Portal health monitoring started")

    def stop(self):
        if not self._monitor_thread:
            return
        self._stop_event.set()
        self._monitor_thread.join(timeout=10)
        self._monitor_thread = None
        logger.info("🏥 Portal health monitoring stopped")

    def _monitor_loop(self):
        self.check_now()
        while not self._stop_event.wait(self.check_interval):
            self.check_now()

    def check_now(self) -> PortalStatus:
        """One HEAD request; updates and returns the status"""
        old_status = self.get_status()
        start_time = time.time()
        try:
            response = self.http.head(
                self.portal_url,
                timeout=5,
                allow_redirects=True,
                verify=False
            )
            elapsed_ms = (time.time() - start_time) * 1000
            new_status = classify_response(response.status_code, elapsed_ms)
        except (requests.Timeout, requests.ConnectionError) as e:
            logger.debug(f"Health check network error: {e}")
            elapsed_ms = 5000
            new_status = PortalStatus.DOWN
        except requests.RequestException as e:
            logger.error(f"Health check failed: {e}")
            elapsed_ms = 0
            new_status = PortalStatus.UNKNOWN

        with self._lock:
            metrics = self._metrics
            metrics.total_checks += 1
            metrics.last_check_time = time.time()
            metrics.response_time_ms = elapsed_ms
            metrics.status = new_status
            if new_status in (PortalStatus.HEALTHY, PortalStatus.DEGRADED):
                metrics.consecutive_failures = 0
                metrics.consecutive_successes += 1
                metrics.last_success_time = metrics.last_check_time
            else:
                metrics.consecutive_failures += 1
                metrics.consecutive_successes = 0
                metrics.failed_checks += 1

        if old_status != new_status:
            logger.info(f"🏥 Portal state changed: {old_status.value} → {new_status.value}")
        return new_status

    def should_allow_session(self) -> bool:
        """Circuit breaker for new sessions. DEGRADED and UNKNOWN are let through."""
        return self.get_status() not in BLOCKING_STATUSES

    def get_backoff_seconds(self) -> float:
        """2^failures seconds, capped at 5 minutes; 0 when healthy"""
        with self._lock:
            failures = self._metrics.consecutive_failures
        if failures == 0:
            return 0
        return min(2 ** failures, 300)

    def get_status(self) -> PortalStatus:
        with self._lock:
            return self._metrics.status

    def get_metrics(self) -> Dict:
        with self._lock:
            metrics = self._metrics.to_dict()
        metrics['backoffSeconds'] = self.get_backoff_seconds()
        metrics['url'] = self.portal_url
        return metrics


# Singleton instance for global access
_global_monitor: Optional[PortalHealthMonitor] = None
_global_lock = threading.Lock()


def get_portal_monitor() -> PortalHealthMonitor:
    """Get or create global portal monitor instance"""
    global _global_monitor
    if _global_monitor is None:
        with _global_lock:
            if _global_monitor is None:
                _global_monitor = PortalHealthMonitor()
    return _global_monitor
