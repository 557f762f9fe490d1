# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import grpc
from grpc_health.v1 import health_pb2, health_pb2_grpc

import attestor_e2e.testvalues as testvalues

from loguru import logger as LOG


class AttestorUnhealthy(Exception):
    pass


def grpc_target(endpoint):
    for scheme in ("http://", "https://"):
        if endpoint.startswith(scheme):
            return endpoint[len(scheme) :].rstrip("/")
    return endpoint


def check_attestor_health(endpoint, timeout=testvalues.PROBE_TIMEOUT_S, service=""):
    """
    Performs a single gRPC health check round trip against an attestor.
    Servers that do not implement the health service but answer the call
    are considered alive. Raises AttestorUnhealthy otherwise.
    """
    target = grpc_target(endpoint)
    with grpc.insecure_channel(target) as channel:
        try:
            grpc.channel_ready_future(channel).result(timeout=timeout)
        except grpc.FutureTimeoutError as e:
            raise AttestorUnhealthy(
                f"Could not connect to attestor at {endpoint} within {timeout}s"
            ) from e

        stub = health_pb2_grpc.HealthStub(channel)
        try:
            r = stub.Check(health_pb2.HealthCheckRequest(service=service), timeout=timeout)
        except grpc.RpcError as e:
            # pylint: disable=no-member
            if e.code() == grpc.StatusCode.UNIMPLEMENTED:
                LOG.trace(f"Attestor at {endpoint} has no health service")
                return
            # pylint: disable=no-member
            raise AttestorUnhealthy(
                f"Health check on {endpoint} failed: {e.code().name} {e.details()}"
            ) from e

    if r.status != health_pb2.HealthCheckResponse.SERVING:
        raise AttestorUnhealthy(
            f"Attestor at {endpoint} is {health_pb2.HealthCheckResponse.ServingStatus.Name(r.status)}"
        )
