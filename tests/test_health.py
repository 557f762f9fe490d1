# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import socket
from concurrent import futures

import grpc
import pytest
from grpc_health.v1 import health, health_pb2, health_pb2_grpc

from attestor_e2e.health import AttestorUnhealthy, check_attestor_health, grpc_target


def start_server(with_health=True):
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=2))
    servicer = None
    if with_health:
        servicer = health.HealthServicer()
        health_pb2_grpc.add_HealthServicer_to_server(servicer, server)
    port = server.add_insecure_port("127.0.0.1:0")
    server.start()
    return server, servicer, f"http://127.0.0.1:{port}"


@pytest.fixture
def health_server():
    server, servicer, endpoint = start_server()
    yield servicer, endpoint
    server.stop(None)


def unused_port():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


def test_grpc_target():
    assert grpc_target("http://127.0.0.1:32768") == "127.0.0.1:32768"
    assert grpc_target("https://attestor-0:2025/") == "attestor-0:2025"
    assert grpc_target("127.0.0.1:32768") == "127.0.0.1:32768"


def test_serving(health_server):
    servicer, endpoint = health_server
    servicer.set("", health_pb2.HealthCheckResponse.SERVING)
    check_attestor_health(endpoint, timeout=5)


def test_not_serving(health_server):
    servicer, endpoint = health_server
    servicer.set("", health_pb2.HealthCheckResponse.NOT_SERVING)
    with pytest.raises(AttestorUnhealthy) as e:
        check_attestor_health(endpoint, timeout=5)
    assert "NOT_SERVING" in str(e.value)


def test_unknown_service(health_server):
    _, endpoint = health_server
    with pytest.raises(AttestorUnhealthy):
        check_attestor_health(endpoint, timeout=5, service="attestor.v1.Attestor")


def test_server_without_health_service_is_alive():
    server, _, endpoint = start_server(with_health=False)
    try:
        check_attestor_health(endpoint, timeout=5)
    finally:
        server.stop(None)


def test_unreachable():
    with pytest.raises(AttestorUnhealthy):
        check_attestor_health(f"http://127.0.0.1:{unused_port()}", timeout=0.5)
