# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import threading
from contextlib import contextmanager

from loguru import logger as LOG


class Teardown:
    """
    Collects cleanup functions registered while a test sets up its
    environment, and runs each of them exactly once, most recent first.
    A failing cleanup is logged and does not prevent the others from running.
    """

    def __init__(self):
        self._cleanups = []
        self._lock = threading.Lock()

    def add(self, fn, *args, **kwargs):
        with self._lock:
            self._cleanups.append((fn, args, kwargs))

    def __len__(self):
        with self._lock:
            return len(self._cleanups)

    def run(self):
        with self._lock:
            cleanups, self._cleanups = self._cleanups, []
        failures = 0
        while cleanups:
            fn, args, kwargs = cleanups.pop()
            try:
                fn(*args, **kwargs)
            except Exception:
                failures += 1
                LOG.exception(f"Cleanup {getattr(fn, '__name__', fn)} failed")
        if failures:
            LOG.warning(f"{failures} cleanup(s) failed during teardown")
        return failures


@contextmanager
def teardown():
    t = Teardown()
    try:
        yield t
    finally:
        LOG.info("Running teardown")
        t.run()
