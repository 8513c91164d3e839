from __future__ import annotations

import contextvars
import logging
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import AbstractContextManager, contextmanager
from functools import partial
from typing import Any

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.outreach.service import suggestion_service


logger = logging.getLogger("app.outreach")

Job = Callable[[], None]
SessionScope = Callable[[], AbstractContextManager[Session]]

# Jobs raised while a request is being handled wait here until its response is ready.
_request_jobs: contextvars.ContextVar[list[Job] | None] = contextvars.ContextVar("outreach_request_jobs", default=None)


class AutoMessageJobRunner:
    """Runs stage-change auto generation on worker threads, never on the request that moved the lead.

    With ``auto_messages_workers`` set to 0 the jobs run inline once the response is built.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        self._pending: set[Future[None]] = set()

    def enqueue(self, session_scope: SessionScope, envelope: dict[str, Any]) -> None:
        if not get_settings().auto_messages_enabled:
            return
        job = partial(self._run, session_scope, envelope)
        deferred = _request_jobs.get()
        if deferred is not None:
            deferred.append(job)
            return
        self.submit(job)

    @contextmanager
    def collect(self) -> Iterator[list[Job]]:
        jobs: list[Job] = []
        token = _request_jobs.set(jobs)
        try:
            yield jobs
        finally:
            _request_jobs.reset(token)

    @property
    def runs_inline(self) -> bool:
        return get_settings().auto_messages_workers <= 0

    def submit(self, job: Job) -> Future[None] | None:
        if self.runs_inline:
            job()
            return None

        context = contextvars.copy_context()
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=get_settings().auto_messages_workers,
                    thread_name_prefix="auto-messages",
                )
            future = self._executor.submit(context.run, job)
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def drain(self, timeout: float | None = None) -> None:
        """Waits for queued jobs and releases the worker pool."""
        with self._lock:
            pending = list(self._pending)
            executor, self._executor = self._executor, None
        if pending:
            wait(pending, timeout=timeout)
        if executor is not None:
            executor.shutdown(wait=False)

    def _forget(self, future: Future[None]) -> None:
        with self._lock:
            self._pending.discard(future)

    def _run(self, session_scope: SessionScope, envelope: dict[str, Any]) -> None:
        payload = envelope.get("payload") or {}
        try:
            with session_scope() as session:
                suggestion_service.handle_stage_changed(session, envelope)
        except Exception as exc:
            # The stage change is already committed; generation failures only get logged.
            logger.exception(
                "outreach.auto_messages_failed",
                extra={"lead_id": str(payload.get("lead_id")), "error": str(exc)[:500]},
            )


auto_message_job_runner = AutoMessageJobRunner()
