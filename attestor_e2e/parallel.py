# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from loguru import logger as LOG


@dataclass
class ParallelTask:
    name: str
    run: Callable[[], Any]


class ParallelTaskError(Exception):
    def __init__(self, name, cause):
        super().__init__(f"{name} failed: {cause}")
        self.name = name
        self.cause = cause


def crash_isolated(key, fn, deliver):
    """
    Runs fn() and calls deliver(key, value, error) exactly once, whether fn
    returns or raises. Anything other than an Exception is re-raised once it
    has been delivered.
    """
    try:
        value = fn()
    except BaseException as e:  # pylint: disable=broad-except
        LOG.opt(exception=e).debug(f"Task {key} raised")
        deliver(key, None, e)
        if not isinstance(e, Exception):
            raise
    else:
        deliver(key, value, None)


def fan_out(keyed_fns, name="task"):
    """
    Starts one thread per (key, fn) pair and yields (key, value, error) as
    each finishes, until exactly one result per pair has been yielded.
    """
    keyed_fns = list(keyed_fns)
    results = queue.Queue(maxsize=len(keyed_fns))

    def deliver(key, value, error):
        results.put_nowait((key, value, error))

    for key, fn in keyed_fns:
        threading.Thread(
            target=crash_isolated,
            args=(key, fn, deliver),
            name=f"{name}-{key}",
            daemon=True,
        ).start()

    for _ in range(len(keyed_fns)):
        yield results.get()


def run_parallel_tasks_with_results(*tasks: ParallelTask) -> Dict[str, Any]:
    """
    Runs all tasks concurrently and returns a dict of task name to value.
    Waits for every task to finish, then raises ParallelTaskError for the
    first task that failed.
    """
    if not tasks:
        return {}

    values = {}
    first_error = None
    for name, value, error in fan_out(((t.name, t.run) for t in tasks), "parallel"):
        if error is not None:
            LOG.error(f"{name} failed: {error}")
            if first_error is None:
                first_error = ParallelTaskError(name, error)
        else:
            values[name] = value

    if first_error is not None:
        raise first_error from first_error.cause
    return values


def run_parallel_tasks(*tasks: ParallelTask) -> None:
    run_parallel_tasks_with_results(*tasks)


class ParallelExecutor:
    def __init__(self):
        self._tasks: List[ParallelTask] = []
        self._lock = threading.Lock()

    def add(self, name: str, fn: Callable[[], Any]) -> "ParallelExecutor":
        with self._lock:
            self._tasks.append(ParallelTask(name=name, run=fn))
        return self

    def run(self) -> None:
        with self._lock:
            tasks = list(self._tasks)
        run_parallel_tasks(*tasks)
