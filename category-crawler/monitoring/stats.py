"""
Read-only crawl statistics derived from the stores.
"""

import os

import psutil

from crawler.policy import URLPolicy
from frontier.models import JobStatus, UrlStatus


def _job_summary(counts_by_status):
    summary = {status.value: int(counts_by_status.get(status.value, 0)) for status in JobStatus}
    summary["total"] = sum(summary.values())
    return summary


def memory_usage_mb() -> float:
    return round(psutil.Process(os.getpid()).memory_info().rss / (1024 * 1024), 1)


def collect_stats(storage, categories=None):
    """
    FLOW: URL counts by status -> queue size / locked entries ->
    per-category job counts -> URL policy rejections -> process memory.
    """
    by_status = storage.urls.count_by_status()
    urls = {status.value: int(by_status.get(status.value, 0)) for status in UrlStatus}
    urls["total"] = sum(urls.values())

    jobs_by_category = storage.jobs.count_by_category()
    names = list(categories) if categories else []
    for name in jobs_by_category:
        if name not in names:
            names.append(name)

    return {
        "urls": urls,
        "queue": storage.queue.counts(),
        "jobs": {name: _job_summary(jobs_by_category.get(name, {})) for name in names},
        "policy": URLPolicy.get_stats(),
        "memory_mb": memory_usage_mb(),
    }
