"""Processor interface and the job-type dispatch table."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from brief_queue.orchestrator.models import JobType, JobView, parse_job_type


class Processor(Protocol):
    """Callable performing one job attempt."""

    def __call__(self, job: JobView) -> object:
        """Run the job and return a JSON-serializable result; raise to fail."""


class TerminalJobError(RuntimeError):
    """Processor failure that must not be retried."""


class ProcessorRegistry:
    """Maps each job type to the handler that executes it."""

    def __init__(self) -> None:
        self._handlers: dict[JobType, Processor] = {}

    def register(self, job_type: JobType | str, handler: Processor) -> None:
        self._handlers[parse_job_type(job_type)] = handler

    def processor(self, job_type: JobType | str) -> Callable[[Processor], Processor]:
        """Decorator form of :meth:`register`."""

        def _decorator(handler: Processor) -> Processor:
            self.register(job_type, handler)
            return handler

        return _decorator

    def get(self, job_type: JobType | str) -> Processor | None:
        try:
            resolved = parse_job_type(job_type)
        except ValueError:
            return None
        return self._handlers.get(resolved)

    def registered_types(self) -> tuple[JobType, ...]:
        return tuple(job_type for job_type in JobType if job_type in self._handlers)

    def __contains__(self, job_type: object) -> bool:
        if not isinstance(job_type, JobType | str):
            return False
        return self.get(job_type) is not None
