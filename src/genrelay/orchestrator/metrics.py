"""Queue and cache observability helpers."""

from __future__ import annotations

from genrelay.orchestrator.cache import ResultCache
from genrelay.orchestrator.models import CacheStats, QueueStats
from genrelay.orchestrator.repository import TaskRepository


def get_queue_stats(repository: TaskRepository) -> QueueStats:
    return repository.queue_stats()


def get_cache_stats(cache: ResultCache) -> CacheStats:
    return cache.stats()


def render_stats_lines(*, queue: QueueStats, cache: CacheStats | None = None) -> list[str]:
    """Render operator-facing metrics lines for CLI output."""

    lines = [
        "Generation queue",
        (
            "Queue status: "
            f"pending={queue.pending} processing={queue.processing} "
            f"completed={queue.completed_count} failed={queue.failed_count}"
        ),
        f"Average wait: {_fmt_seconds(queue.avg_wait_seconds)}",
        f"Average processing: {_fmt_seconds(queue.avg_processing_seconds)}",
        f"Terminal failure share: {_fmt_ratio(_failure_share(queue))}",
    ]
    if cache is not None:
        lines.append(
            "Result cache: "
            f"size={cache.size} hits={cache.hits} misses={cache.misses} "
            f"hit_rate={_fmt_ratio(cache.hit_rate if cache.hits + cache.misses else None)}",
        )
    return lines


def _failure_share(queue: QueueStats) -> float | None:
    terminal = queue.completed_count + queue.failed_count
    if terminal <= 0:
        return None
    return queue.failed_count / terminal


def _fmt_ratio(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2%}"


def _fmt_seconds(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2f}s"
