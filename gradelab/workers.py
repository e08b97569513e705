"""
Thread pool for blocking work (storage calls, OCR, LLM grading) so request
handlers don't stall the event loop.

The pool is created on first use and again after shutdown(), so each app
lifespan (and each TestClient) gets a live pool.
"""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Optional

from gradelab import config

_executor_lock = threading.Lock()
_executor: Optional[ThreadPoolExecutor] = None


def get_executor() -> ThreadPoolExecutor:
    global _executor
    if _executor is not None:
        return _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(
                max_workers=config.API_WORKERS,
                thread_name_prefix="gradelab-worker",
            )
        return _executor


def shutdown(wait: bool = False):
    """Stop the current pool; the next run_blocking starts a fresh one."""
    global _executor
    with _executor_lock:
        pool, _executor = _executor, None
    if pool is not None:
        pool.shutdown(wait=wait)


async def run_blocking(fn, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(get_executor(), partial(fn, *args, **kwargs))
