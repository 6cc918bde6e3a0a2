"""Local demo processors that simulate each stage of a brief.

Real deployments register handlers that call generation, transcription or
rendering services. These stand-ins sleep for a short, configurable delay and
return a deterministic payload so the worker can be exercised end to end.

Job metadata can steer a demo run:

- ``demo_fail: true`` raises a retryable error on every attempt.
- ``demo_fail: "terminal"`` raises :class:`TerminalJobError`.
- ``demo_delay_seconds`` overrides the delay for that job.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from brief_queue.orchestrator.models import JobType, JobView
from brief_queue.orchestrator.processors import Processor, ProcessorRegistry, TerminalJobError
from brief_queue.storage.common import utc_now

_DEMO_PAYLOADS: dict[JobType, Callable[[JobView], dict[str, object]]] = {
    JobType.ANALYSIS: lambda job: {
        "analysis_completed": True,
        "pipeline_step": job.metadata.get("pipeline_step"),
    },
    JobType.ASSET_PREP: lambda _job: {"assets_prepared": True, "asset_count": 3},
    JobType.STORYBOARD: lambda _job: {"storyboard_created": True, "scene_count": 5},
    JobType.RENDER: lambda job: {
        "rendered": True,
        "output_url": f"https://example.com/render/{job.brief_id}.mp4",
    },
    JobType.VIDEO_GENERATION: lambda job: {
        "video_generated": True,
        "video_url": f"https://example.com/video/{job.brief_id}.mp4",
        "duration": 30,
    },
    JobType.IMAGE_PROCESSING: lambda job: {
        "image_processed": True,
        "image_url": f"https://example.com/image/{job.brief_id}.jpg",
    },
    JobType.TEXT_ANALYSIS: lambda _job: {
        "text_analyzed": True,
        "analysis": {"word_count": 150, "sentiment": "neutral"},
    },
}


def demo_processor(job_type: JobType, *, delay_seconds: float = 0.0) -> Processor:
    """Build a simulated handler for one job type."""

    payload_factory = _DEMO_PAYLOADS[job_type]

    def _process(job: JobView) -> object:
        delay = job.metadata.get("demo_delay_seconds", delay_seconds)
        if isinstance(delay, int | float) and delay > 0:
            time.sleep(float(delay))

        failure_mode = job.metadata.get("demo_fail")
        if failure_mode == "terminal":
            raise TerminalJobError(f"Demo {job_type.value} processor rejected job {job.job_id}")
        if failure_mode:
            raise RuntimeError(
                f"Demo {job_type.value} processor failed on attempt {job.attempts}",
            )

        return {
            **payload_factory(job),
            "backend": "demo",
            "processed_at": utc_now().isoformat(),
        }

    return _process


def build_demo_registry(*, delay_seconds: float = 0.0) -> ProcessorRegistry:
    """Registry with a simulated handler for every job type."""

    registry = ProcessorRegistry()
    for job_type in JobType:
        registry.register(job_type, demo_processor(job_type, delay_seconds=delay_seconds))
    return registry
