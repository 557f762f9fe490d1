# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import os
import sys
import threading
import time

import pytest

# Add the package root to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import attestor_e2e.bootstrap
from attestor_e2e.teardown import Teardown


@pytest.fixture
def teardown(request):
    t = Teardown()
    request.addfinalizer(t.run)
    return t


class FakeLauncher:
    """Stands in for docker, recording launches and cleanups per index"""

    def __init__(self, fail=None, delays=None, block=None, returns=None):
        self.fail = fail or {}
        self.delays = delays or {}
        self.block = block or {}
        self.returns = returns or {}
        self.launched = []
        self.configs = {}
        self.cleanups = {}
        self._lock = threading.Lock()

    def cleanup_count(self, index):
        with self._lock:
            return self.cleanups.get(index, 0)

    def _cleanup(self, index):
        with self._lock:
            self.cleanups[index] = self.cleanups.get(index, 0) + 1

    def __call__(self, index, instance_config):
        with self._lock:
            self.launched.append(index)
            self.configs[index] = instance_config
        if index in self.delays:
            time.sleep(self.delays[index])
        if index in self.block:
            self.block[index].wait()
        if index in self.fail:
            raise self.fail[index]
        if index in self.returns:
            return self.returns[index]
        return attestor_e2e.bootstrap.InstanceHandle(
            index=index,
            endpoint=f"http://127.0.0.1:{30000 + index}",
            internal_endpoint=f"http://attestor-{index}:2025",
            identity=f"0x{index:040x}",
            config_path=instance_config.keystore_path,
            cleanup=lambda: self._cleanup(index),
        )


class FakeProbe:
    """Fails the first failures[endpoint] calls for an endpoint"""

    def __init__(self, failures=None):
        self.failures = dict(failures or {})
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, endpoint):
        with self._lock:
            self.calls.append(endpoint)
            if self.failures.get(endpoint, 0) > 0:
                self.failures[endpoint] -= 1
                raise ConnectionError(f"{endpoint} unreachable")


def wait_until(predicate, timeout=5):
    end_time = time.time() + timeout
    while time.time() < end_time:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
