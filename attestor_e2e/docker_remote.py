# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import os
import re
import shutil
import threading
import time
import secrets

import docker

import attestor_e2e.attestor
import attestor_e2e.bootstrap
import attestor_e2e.testvalues as testvalues

from loguru import logger as LOG

# Network all attestor containers are connected to when none is given
DOCKER_NETWORK_NAME_LOCAL = "ibc_attestor_test_network"

CONTAINER_NAME_PREFIX = "ibc-attestor"

# Docker takes a moment to assign port bindings after container start
PORT_BINDING_RETRIES = 10
PORT_BINDING_RETRY_DELAY_S = 0.1

LOGS_TAIL_LINES = 200

# A container being removed concurrently answers with a conflict
STOP_RETRIES = 5
STOP_RETRY_DELAY_S = 0.5

HEALTH_INITIAL_BACKOFF_S = 0.5
HEALTH_MAX_BACKOFF_S = 5


class AttestorContainerError(Exception):
    pass


def generate_container_name():
    """Returns 64 hex characters from 32 random bytes"""
    return secrets.token_hex(32)


def get_or_create_network(client, network_name=DOCKER_NETWORK_NAME_LOCAL):
    try:
        return client.networks.get(network_name)
    except docker.errors.NotFound:
        LOG.debug(f"Creating network {network_name}")
        return client.networks.create(network_name)


def _host_ports(container):
    ports = {}
    for port, bindings in (container.attrs["NetworkSettings"]["Ports"] or {}).items():
        if bindings and bindings[0].get("HostPort"):
            ports[port.split("/")[0]] = bindings[0]["HostPort"]
    return ports


class AttestorContainer:
    def __init__(
        self,
        container,
        index,
        keystore_path,
        address,
        host_port,
        container_port=testvalues.ATTESTOR_CONTAINER_PORT,
    ):
        self.container = container
        self.name = container.name
        self.index = index
        self.keystore_path = keystore_path
        self.address = address
        self.endpoint = f"http://127.0.0.1:{host_port}"
        # Reachable from other containers on the same docker network
        self.docker_endpoint = f"http://{self.name}:{container_port}"
        self._stopped = False
        self._lock = threading.Lock()

    @property
    def id(self):
        return self.container.id

    def _stop_container(self):
        for _ in range(STOP_RETRIES):
            try:
                self.container.stop()
                self.container.remove(force=True)
                LOG.info(f"Stopped container {self.name}")
                return
            except docker.errors.NotFound:
                return
            except docker.errors.APIError as e:
                # Container may already be in the process of being cleaned up
                LOG.debug(f"Could not stop container {self.name} yet: {e}")
                time.sleep(STOP_RETRY_DELAY_S)
        LOG.warning(f"Gave up stopping container {self.name}")

    def cleanup(self, remove_keystore=False):
        with self._lock:
            if not self._stopped:
                self._stopped = True
                self._stop_container()
        if remove_keystore:
            shutil.rmtree(self.keystore_path, ignore_errors=True)

    def is_running(self):
        self.container.reload()
        return self.container.attrs["State"]["Running"]

    def logs(self, tail=LOGS_TAIL_LINES):
        return self.container.logs(stdout=True, stderr=True, tail=tail).decode(
            errors="replace"
        )

    def get_status_and_logs(self):
        self.container.reload()
        state = self.container.attrs["State"]
        return (
            f"Container {self.name} ({self.id[:12]}): "
            f"status={state['Status']} running={state['Running']} "
            f"exit_code={state.get('ExitCode')}\n"
            f"Last {LOGS_TAIL_LINES} log lines:\n{self.logs()}"
        )

    def network_info(self):
        self.container.reload()
        attrs = self.container.attrs
        lines = [
            f"Container {self.name} ({self.id}) network info:",
            f"  State: {attrs['State']['Status']} (Running: {attrs['State']['Running']})",
        ]
        for net_name, settings in attrs["NetworkSettings"]["Networks"].items():
            lines.append(f"  Network '{net_name}':")
            lines.append(f"    NetworkID: {settings.get('NetworkID')}")
            lines.append(f"    IPAddress: {settings.get('IPAddress')}")
            lines.append(f"    Gateway: {settings.get('Gateway')}")
            if settings.get("Aliases"):
                lines.append(f"    Aliases: {settings['Aliases']}")
        lines.append("  Ports:")
        for port, bindings in (attrs["NetworkSettings"]["Ports"] or {}).items():
            if bindings:
                lines.append(
                    f"    {port} -> {bindings[0]['HostIp']}:{bindings[0]['HostPort']}"
                )
            else:
                lines.append(f"    {port} -> (no binding)")
        return "\n".join(lines)

    def wait_for_health(self, timeout, check):
        """
        Calls check() until it stops raising, with exponential backoff.
        Fails early if the container exits.
        """
        end_time = time.time() + timeout
        backoff = HEALTH_INITIAL_BACKOFF_S
        while True:
            if time.time() > end_time:
                raise TimeoutError(
                    f"Attestor container {self.name} was not healthy after {timeout}s"
                )
            if not self.is_running():
                raise AttestorContainerError(
                    f"Container {self.name} exited unexpectedly, logs:\n{self.logs()}"
                )
            try:
                check()
                return
            except Exception as e:
                LOG.debug(f"Container {self.name} not healthy yet: {e}")
            time.sleep(backoff)
            backoff = min(backoff * 2, HEALTH_MAX_BACKOFF_S)


def ensure_image(client, image):
    try:
        client.images.get(image)
    except docker.errors.ImageNotFound:
        LOG.info(f"Pulling image {image}")
        client.images.pull(image)


def start_attestor_docker(
    client,
    network_id,
    config,
    chain_type,
    keystore_path,
    index,
    image=testvalues.ATTESTOR_IMAGE,
    enable_host_access=False,
):
    chain_type = attestor_e2e.attestor.ChainType(chain_type)
    container_port = config.server.port

    name = f"{CONTAINER_NAME_PREFIX}-{chain_type.value}-{index}-{generate_container_name()[:12]}"
    # Sanitise container name, replacing illegal characters with underscores
    name = re.sub(r"[^a-zA-Z0-9_.-]", "_", name)

    extra_hosts = None
    if enable_host_access:
        extra_hosts = {attestor_e2e.attestor.DOCKER_HOST_INTERNAL: "host-gateway"}

    keystore_existed = os.path.isdir(keystore_path)
    container = None
    try:
        attestor_e2e.attestor.create_keystore(keystore_path)
        attestor_e2e.attestor.write_config(config, chain_type, keystore_path)
        address = attestor_e2e.attestor.address_from_keystore(keystore_path)

        LOG.debug(f"Creating container {name} with image {image}")
        container = client.containers.create(
            image,
            command=[
                "server",
                "--config",
                os.path.join(
                    attestor_e2e.attestor.CONTAINER_KEYSTORE_DIR,
                    attestor_e2e.attestor.CONFIG_FILE,
                ),
                "--chain-type",
                chain_type.value,
            ],
            name=name,
            labels=[testvalues.ATTESTOR_CONTAINERS_LABEL],
            ports={f"{container_port}/tcp": None},
            volumes={
                os.path.abspath(keystore_path): {
                    "bind": attestor_e2e.attestor.CONTAINER_KEYSTORE_DIR,
                    "mode": "rw",
                }
            },
            extra_hosts=extra_hosts,
            # Same user as the keystore owner, so the key can stay private
            user=f"{os.getuid()}:{os.getgid()}",
            detach=True,
        )
        if network_id:
            client.networks.get(network_id).connect(container)
        container.start()
        LOG.debug(f"Container {name} started, waiting for port bindings...")

        host_ports = {}
        for attempt in range(PORT_BINDING_RETRIES):
            container.reload()  # attrs are cached
            host_ports = _host_ports(container)
            if str(container_port) in host_ports:
                break
            if attempt > 0:
                LOG.debug(
                    f"Waiting for port bindings of {name} (attempt {attempt + 1}/{PORT_BINDING_RETRIES})"
                )
            time.sleep(PORT_BINDING_RETRY_DELAY_S)
        else:
            raise AttestorContainerError(
                f"No port binding for {container_port} on {name} after {PORT_BINDING_RETRIES} retries"
            )
    except Exception:
        if container is not None:
            try:
                container.remove(force=True)
            except docker.errors.APIError:
                LOG.exception(f"Could not remove container {name}")
        if not keystore_existed:
            shutil.rmtree(keystore_path, ignore_errors=True)
        raise

    LOG.debug(
        f"Container {name} port binding: {container_port} -> 127.0.0.1:{host_ports[str(container_port)]}"
    )
    return AttestorContainer(
        container,
        index,
        keystore_path,
        address,
        host_ports[str(container_port)],
        container_port=container_port,
    )


def launcher(params):
    """
    Returns a launch(index, instance_config) function starting one attestor
    container per call, for use by attestor_e2e.bootstrap.setup_attestors.
    """
    client = params.docker_client or docker.from_env()
    ensure_image(client, params.image)

    def launch(index, instance_config):
        container = start_attestor_docker(
            client,
            params.network_id,
            instance_config.attestor_config,
            params.chain_type,
            instance_config.keystore_path,
            index,
            image=params.image,
            enable_host_access=params.enable_host_access,
        )
        return attestor_e2e.bootstrap.InstanceHandle(
            index=index,
            endpoint=container.endpoint,
            internal_endpoint=container.docker_endpoint,
            identity=container.address,
            config_path=container.keystore_path,
            cleanup=lambda: container.cleanup(remove_keystore=True),
            status=container.get_status_and_logs,
        )

    return launch
