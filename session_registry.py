#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                  POWER-IGR - Session Registry                                ║
║                  Bounded set of session workers, one browser each            ║
╚══════════════════════════════════════════════════════════════════════════════╝

Purpose:
  - Allocate session ids and a dedicated worker thread per session
  - NEVER exceed MAX_SESSIONS live sessions (refuse, never evict)
  - Reject a second command while one is outstanding ("session busy")
  - Cancel promptly: cancel event → close command → bounded join
  - Reap finished or long-idle sessions and close their browsers

Threading:
  Playwright's sync API must be driven from the thread that started it.
  Each session's commands run in order on its own thread; different
  sessions never share a browser.

Author: POWER-IGR Team
Version: 1.0.0
"""

import queue
import time
import uuid
import logging
import threading
from concurrent.futures import Future
from typing import Callable, Dict, List, Optional, Any

import psutil

from browser_handle import BrowserHandle
from capture_history import CaptureHistory
from igr_config import Config
from igr_errors import SessionBusy, SessionBudgetExceeded, PortalUnavailable
from retry_policy import Clock
from search_session import SearchSession
from session_models import OperationResult, SessionStatus

logger = logging.getLogger('SessionRegistry')

FINISHED_STATUSES = (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CLOSED)
WAITING_STATUSES = (SessionStatus.IDLE, SessionStatus.AWAITING_CAPTCHA)

_STOP = object()


def default_session_factory(history: Optional[CaptureHistory] = None) -> Callable[[str], SearchSession]:
    """Real sessions: a Playwright handle plus a wall clock"""
    def build(session_id: str) -> SearchSession:
        return SearchSession(session_id, BrowserHandle(), clock=Clock(), history=history)
    return build


def get_chromium_process_count() -> int:
    """Chromium processes below this process (Playwright driver → browser tree)"""
    count = 0
    try:
        children = psutil.Process().children(recursive=True)
    except psutil.Error:
        return 0
    for proc in children:
        try:
            name = proc.name().lower()
            if 'chromium' in name or 'chrome' in name:
                count += 1
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return count


class SessionWorker:
    """
    Runs one SearchSession's commands in order on a dedicated thread.

    execute() takes the busy lock without blocking; the worker thread
    releases it once the command has finished, so a caller that stopped
    waiting does not let a second command slip in early.
    """

    def __init__(self, session: SearchSession):
        self.session = session
        self.session_id = session.session_id
        self.created_at = time.time()
        self.last_active = session.clock.timestamp()
        self._busy = threading.Lock()
        self._queue: queue.Queue = queue.Queue()
        self._closed = False
        self._thread = threading.Thread(
            target=self._run,
            name=f'Session-{self.session_id}',
            daemon=True
        )

    def start(self):
        self._thread.start()
        logger.info(f"  Session {self.session_id} worker started")

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def is_busy(self) -> bool:
        return self._busy.locked()

    def idle_seconds(self) -> float:
        """Time since the last command or status change, on the session's clock"""
        last = max(self.last_active, self.session.updated_at)
        return self.session.clock.timestamp() - last

    def _run(self):
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            name, args, future, holds_busy = item
            try:
                if future.set_running_or_notify_cancel():
                    try:
                        future.set_result(getattr(self.session, name)(*args))
                    except Exception as e:
                        logger.error(f"Session {self.session_id} command {name} crashed: {e}")
                        future.set_exception(e)
            finally:
                self.last_active = self.session.clock.timestamp()
                if holds_busy:
                    self._busy.release()
            if name == 'cancel':
                break
        logger.info(f"  Session {self.session_id} worker exited")

    def execute(self, name: str, *args, timeout: float = None) -> OperationResult:
        """Run session.<name>(*args) on the worker thread and wait for it"""
        if self._closed:
            return OperationResult.failure('Session closed', status=SessionStatus.CLOSED,
                                           session_id=self.session_id)
        if not self._busy.acquire(blocking=False):
            raise SessionBusy(f"Session {self.session_id} is busy")
        future: Future = Future()
        self._queue.put((name, args, future, True))
        return future.result(timeout=timeout or Config.COMMAND_TIMEOUT)

    def cancel(self, join_timeout: float = None) -> OperationResult:
        """Abort any wait, close the browser on the worker thread, join"""
        join_timeout = Config.CANCEL_JOIN_TIMEOUT if join_timeout is None else join_timeout
        if self._closed:
            return OperationResult(success=True, message='Session already closed',
                                   status=SessionStatus.CLOSED, session_id=self.session_id)
        self._closed = True
        self.session.cancel_event.set()

        future: Future = Future()
        self._queue.put(('cancel', (), future, False))
        self._thread.join(join_timeout)
        if self._thread.is_alive():
            logger.warning(f"⚠️  Session {self.session_id} did not stop within {join_timeout:.0f}s")
            return OperationResult(success=True, message='Cancellation requested',
                                   status=self.session.status, session_id=self.session_id)
        if future.done() and future.exception() is None:
            return future.result()
        return OperationResult(success=True, message='Session closed',
                               status=SessionStatus.CLOSED, session_id=self.session_id)

    def snapshot(self) -> Dict[str, Any]:
        data = self.session.snapshot()
        data['busy'] = self.is_busy()
        data['alive'] = self.is_alive()
        return data


class SessionRegistry:
    """
    Bounded registry of live sessions.

    Usage:
        registry = SessionRegistry(max_sessions=4)
        worker = registry.create()
        result = worker.execute('start', selections)
        registry.cancel(worker.session_id)
    """

    def __init__(
        self,
        max_sessions: int = None,
        session_factory: Callable[[str], SearchSession] = None,
        history: Optional[CaptureHistory] = None,
        monitor=None,
        idle_timeout: float = None
    ):
        self.max_sessions = max_sessions or Config.MAX_SESSIONS
        self.idle_timeout = Config.SESSION_IDLE_TIMEOUT if idle_timeout is None else idle_timeout
        self.history = history
        self.session_factory = session_factory or default_session_factory(history)
        self.monitor = monitor
        self._workers: Dict[str, SessionWorker] = {}
        self._lock = threading.RLock()

        logger.info(f"SessionRegistry initialized (max sessions: {self.max_sessions})")

    # ═══════════════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════

    def create(self) -> SessionWorker:
        self.reap()
        if self.monitor is not None and not self.monitor.should_allow_session():
            raise PortalUnavailable(f"Portal unavailable ({self.monitor.get_status().value})")

        with self._lock:
            if len(self._workers) >= self.max_sessions:
                raise SessionBudgetExceeded(
                    f"Session budget exhausted ({self.max_sessions} live sessions)"
                )
            session_id = uuid.uuid4().hex[:8]
            worker = SessionWorker(self.session_factory(session_id))
            self._workers[session_id] = worker
            worker.start()

        logger.info(f"🆕 Session {session_id} created ({len(self._workers)}/{self.max_sessions})")
        return worker

    def get(self, session_id: str) -> Optional[SessionWorker]:
        self.reap()
        with self._lock:
            return self._workers.get(session_id)

    def default(self) -> Optional[SessionWorker]:
        """Most recently created live session, for clients that send no id"""
        self.reap()
        with self._lock:
            for worker in reversed(list(self._workers.values())):
                if worker.session.is_live():
                    return worker
        return None

    def resolve(self, session_id: str = None) -> Optional[SessionWorker]:
        return self.get(session_id) if session_id else self.default()

    def cancel(self, session_id: str) -> OperationResult:
        with self._lock:
            worker = self._workers.pop(session_id, None)
        if worker is None:
            return OperationResult(success=True, message='No active session',
                                   status=SessionStatus.CLOSED, session_id=session_id or '')
        logger.info(f"🛑 Cancelling session {session_id}")
        return worker.cancel()

    def cancel_all(self):
        with self._lock:
            session_ids = list(self._workers.keys())
        if session_ids:
            logger.info(f"🛑 Cancelling {len(session_ids)} sessions...")
        for session_id in session_ids:
            self.cancel(session_id)

    def _is_abandoned(self, worker: SessionWorker) -> bool:
        return (
            self.idle_timeout > 0
            and worker.session.status in WAITING_STATUSES
            and worker.idle_seconds() > self.idle_timeout
        )

    def reap(self):
        """Close and drop sessions that finished or sat idle too long, unless running a command"""
        with self._lock:
            stale = [
                w for w in self._workers.values()
                if not w.is_busy()
                and (w.session.status in FINISHED_STATUSES or self._is_abandoned(w))
            ]
            for worker in stale:
                self._workers.pop(worker.session_id, None)
        for worker in stale:
            if worker.session.status in FINISHED_STATUSES:
                logger.info(f"🧹 Reaping session {worker.session_id} ({worker.session.status.value})")
            else:
                logger.info(f"⏰ Reaping session {worker.session_id}: "
                            f"{worker.session.status.value} for {worker.idle_seconds():.0f}s")
            worker.cancel()

    # ═══════════════════════════════════════════════════════════════════════
    # METRICS
    # ═══════════════════════════════════════════════════════════════════════

    def live_count(self) -> int:
        with self._lock:
            return len(self._workers)

    def summary(self) -> Dict[str, Any]:
        self.reap()
        with self._lock:
            workers: List[SessionWorker] = list(self._workers.values())
        return {
            'maxSessions': self.max_sessions,
            'liveSessions': len(workers),
            'chromiumProcesses': get_chromium_process_count(),
            'sessions': [w.snapshot() for w in workers],
        }
