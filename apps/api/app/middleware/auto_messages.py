from __future__ import annotations

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.outreach.jobs import auto_message_job_runner


class AutoMessageJobsMiddleware(BaseHTTPMiddleware):
    """Hands auto-message jobs raised by a request to the job runner once the endpoint has returned."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        jobs = []
        try:
            with auto_message_job_runner.collect() as jobs:
                response = await call_next(request)
        finally:
            for job in jobs:
                await run_in_threadpool(auto_message_job_runner.submit, job)
        return response
