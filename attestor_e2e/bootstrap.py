# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

import attestor_e2e.attestor
import attestor_e2e.docker_remote
import attestor_e2e.health
import attestor_e2e.parallel
import attestor_e2e.testvalues as testvalues

from loguru import logger as LOG

# How often the fan-in loop wakes up to check the deadline and cancellation
FAN_IN_POLL_INTERVAL_S = 0.1


class AttestorSetupError(Exception):
    def __init__(self, msg, errors=None):
        self.errors = errors or {}
        details = "\n".join(
            f"attestor {index}: {error}" for index, error in sorted(self.errors.items())
        )
        super().__init__(f"{msg}\n{details}" if details else msg)
        self.msg = msg


class AttestorSetupCancelled(Exception):
    pass


class AttestorVerificationError(Exception):
    def __init__(self, index, endpoint, cause):
        super().__init__(
            f"Attestor {index} at {endpoint} is not healthy after retry: {cause}"
        )
        self.index = index
        self.endpoint = endpoint
        self.cause = cause


@dataclass(frozen=True)
class InstanceConfig:
    index: int
    keystore_path: str
    attestor_config: Any


@dataclass(frozen=True)
class SetupParams:
    num_attestors: int
    keystore_path_template: str = testvalues.ATTESTOR_KEYSTORE_PATH_TEMPLATE
    chain_type: Any = attestor_e2e.attestor.ChainType.EVM
    # RPC endpoint of the chain the attestors read from
    adapter_url: str = ""
    # Unused by Cosmos attestors
    router_address: str = ""
    network_id: Optional[str] = None
    enable_host_access: bool = False
    image: str = testvalues.ATTESTOR_IMAGE
    docker_client: Any = None
    settle_interval_s: float = testvalues.SETTLE_INTERVAL_S
    probe_retry_delay_s: float = testvalues.PROBE_RETRY_DELAY_S
    # None waits for launches indefinitely
    launch_timeout_s: Optional[float] = None

    def validate(self):
        if self.num_attestors is None:
            raise ValueError("Number of attestors must be specified")
        if isinstance(self.num_attestors, bool) or not isinstance(
            self.num_attestors, int
        ):
            raise ValueError(
                f"Number of attestors must be an integer, not {self.num_attestors!r}"
            )
        if self.num_attestors < 0:
            raise ValueError(
                f"Number of attestors must not be negative: {self.num_attestors}"
            )
        if not self.keystore_path_template:
            raise ValueError("Keystore path template is required")
        if self.num_attestors > 1 and "{" not in self.keystore_path_template:
            raise ValueError(
                f"Keystore path template {self.keystore_path_template} has no index placeholder"
            )
        if self.launch_timeout_s is not None and self.launch_timeout_s <= 0:
            raise ValueError(f"Invalid launch timeout: {self.launch_timeout_s}")
        attestor_e2e.attestor.ChainType(self.chain_type)

    def instance_config(self, index):
        return InstanceConfig(
            index=index,
            keystore_path=self.keystore_path_template.format(index),
            attestor_config=attestor_e2e.attestor.attestor_config(
                self.adapter_url, self.router_address
            ),
        )


class InstanceHandle:
    def __init__(
        self,
        index,
        endpoint,
        internal_endpoint,
        identity,
        config_path,
        cleanup,
        status=None,
    ):
        self.index = index
        self.endpoint = endpoint
        self.internal_endpoint = internal_endpoint
        self.identity = identity
        self.config_path = config_path
        self.status = status
        self._cleanup = cleanup
        self._cleaned_up = False
        self._lock = threading.Lock()

    def cleanup(self):
        """Stops the instance. Only the first call has any effect."""
        with self._lock:
            if self._cleaned_up:
                return
            self._cleaned_up = True
        self._cleanup()

    def __repr__(self):
        return f"<attestor {self.index} {self.identity} at {self.endpoint}>"


@dataclass
class LaunchOutcome:
    index: int
    handle: Optional[InstanceHandle] = None
    error: Optional[BaseException] = None


@dataclass
class SetupResult:
    handles: List[InstanceHandle] = field(default_factory=list)

    @property
    def endpoints(self):
        return [h.endpoint for h in self.handles]

    @property
    def internal_endpoints(self):
        return [h.internal_endpoint for h in self.handles]

    @property
    def identities(self):
        return [h.identity for h in self.handles]

    @property
    def config_paths(self):
        return [h.config_path for h in self.handles]

    def __len__(self):
        return len(self.handles)

    def __iter__(self):
        return iter(self.handles)

    def __getitem__(self, index):
        return self.handles[index]


def _safe_cleanup(handle):
    try:
        handle.cleanup()
    except Exception:
        LOG.exception(f"Failed to clean up attestor {handle.index}")


def cleanup_containers(handles):
    for handle in handles:
        if handle is not None:
            _safe_cleanup(handle)


class _FanIn:
    """
    Receives exactly one LaunchOutcome per launched index. Once abandoned
    (deadline or cancellation), outcomes that arrive late are not queued:
    their handles are cleaned up on the launching thread instead.
    """

    def __init__(self, count):
        self.outcomes = queue.Queue(maxsize=count)
        self._abandoned = False
        self._lock = threading.Lock()

    def deliver(self, index, handle, error):
        if error is None and not isinstance(handle, InstanceHandle):
            error = TypeError(
                f"Launcher returned {type(handle).__name__} instead of an instance handle"
            )
            handle = None
        outcome = LaunchOutcome(index=index, handle=handle, error=error)
        with self._lock:
            if not self._abandoned:
                self.outcomes.put_nowait(outcome)
                return
        if outcome.handle is not None:
            LOG.warning(f"Attestor {index} started after setup was abandoned")
            _safe_cleanup(outcome.handle)

    def abandon(self):
        with self._lock:
            self._abandoned = True
            drained = []
            while True:
                try:
                    drained.append(self.outcomes.get_nowait())
                except queue.Empty:
                    return drained


def _launch_all(params, launch, cancel):
    n = params.num_attestors
    fan_in = _FanIn(n)

    for index in range(n):
        instance_config = params.instance_config(index)
        LOG.debug(f"Launching attestor {index} [{instance_config.keystore_path}]")
        threading.Thread(
            target=attestor_e2e.parallel.crash_isolated,
            args=(
                index,
                lambda index=index, cfg=instance_config: launch(index, cfg),
                fan_in.deliver,
            ),
            name=f"attestor-launch-{index}",
            daemon=True,
        ).start()

    deadline = (
        time.time() + params.launch_timeout_s
        if params.launch_timeout_s is not None
        else None
    )
    outcomes = []
    stop_reason = None
    try:
        while len(outcomes) < n:
            if cancel is not None and cancel.is_set():
                stop_reason = AttestorSetupCancelled("Attestor setup was cancelled")
                break
            timeout = None
            if deadline is not None:
                remaining = deadline - time.time()
                if remaining <= 0:
                    stop_reason = TimeoutError(
                        f"Attestor did not start within {params.launch_timeout_s}s"
                    )
                    break
                timeout = min(remaining, FAN_IN_POLL_INTERVAL_S)
            elif cancel is not None:
                timeout = FAN_IN_POLL_INTERVAL_S
            try:
                outcomes.append(fan_in.outcomes.get(timeout=timeout))
            except queue.Empty:
                continue
    except BaseException:
        # e.g. KeyboardInterrupt: launches still in flight clean up after themselves
        outcomes.extend(fan_in.abandon())
        LOG.warning("Attestor setup interrupted, stopping started attestors")
        cleanup_containers(outcome.handle for outcome in outcomes)
        raise

    if stop_reason is not None:
        outcomes.extend(fan_in.abandon())

    handles = [None] * n
    errors = {}
    for outcome in outcomes:
        if outcome.error is not None:
            LOG.error(f"Attestor {outcome.index} failed to start: {outcome.error}")
            errors[outcome.index] = outcome.error
        else:
            handles[outcome.index] = outcome.handle

    if stop_reason is not None:
        for index in range(n):
            if handles[index] is None and index not in errors:
                errors[index] = stop_reason

    if errors:
        LOG.warning(
            f"Rolling back {sum(h is not None for h in handles)} started attestor(s)"
        )
        cleanup_containers(handles)
        raise AttestorSetupError(
            f"{len(errors)} of {n} attestor(s) failed to start", errors
        )

    return handles


def _wait(duration, cancel):
    if cancel is None:
        time.sleep(duration)
        return False
    return cancel.wait(duration)


def _verify(result, probe, params, cancel):
    for handle in result:
        if cancel is not None and cancel.is_set():
            raise AttestorSetupCancelled("Attestor setup was cancelled")
        if handle.status is not None:
            try:
                LOG.info(f"Attestor {handle.index} status:\n{handle.status()}")
            except Exception as e:
                LOG.warning(f"Failed to get status for attestor {handle.index}: {e}")

        try:
            probe(handle.endpoint)
        except Exception as e:
            LOG.error(
                f"Attestor {handle.index} at {handle.endpoint} health check failed after stabilization: {e}"
            )
            if _wait(params.probe_retry_delay_s, cancel):
                raise AttestorSetupCancelled("Attestor setup was cancelled") from e
            try:
                probe(handle.endpoint)
            except Exception as retry_error:
                raise AttestorVerificationError(
                    handle.index, handle.endpoint, retry_error
                ) from retry_error
            LOG.info(f"Attestor {handle.index} recovered after retry")
        else:
            LOG.info(f"Attestor {handle.index} health check passed after stabilization")


def setup_attestors(
    params: SetupParams,
    register_cleanup: Callable[[Callable[[], None]], Any],
    launch=None,
    probe=None,
    cancel: Optional[threading.Event] = None,
) -> SetupResult:
    """
    Starts params.num_attestors attestors concurrently and returns them once
    all of them answer a health check.

    :param register_cleanup: called once with each returned handle's cleanup,
        e.g. Teardown.add or pytest's request.addfinalizer.
    :param launch: launch(index, instance_config) -> InstanceHandle. Defaults
        to starting docker containers.
    :param probe: probe(endpoint), raising if the instance is unhealthy.
    :param cancel: optional event aborting the setup when set.

    If any attestor fails to start, all the others are stopped before
    AttestorSetupError is raised. Cancellation at any stage stops every
    started attestor and is reported the same way, with AttestorSetupCancelled
    as the cause for each index. If an attestor fails its health check twice,
    AttestorVerificationError is raised and the registered cleanups are left
    to the caller's teardown.
    """
    params.validate()
    chain_type = attestor_e2e.attestor.ChainType(params.chain_type)

    LOG.info(
        f"Setting up {params.num_attestors} attestor(s) for chain type {chain_type.value}"
    )
    LOG.info(
        f"Adapter URL: {params.adapter_url}, Router Address: {params.router_address}"
    )
    LOG.info(
        f"Network ID: {params.network_id}, Host access: {params.enable_host_access}"
    )

    if params.num_attestors == 0:
        return SetupResult()

    if launch is None:
        launch = attestor_e2e.docker_remote.launcher(params)
    if probe is None:
        probe = attestor_e2e.health.check_attestor_health

    setup_start = time.time()
    result = SetupResult(handles=_launch_all(params, launch, cancel))

    try:
        for handle in result:
            LOG.info(
                f"{chain_type.value} attestor {handle.index} address: {handle.identity}, endpoint: {handle.endpoint}, docker: {handle.internal_endpoint}"
            )
            register_cleanup(handle.cleanup)
    except BaseException:
        LOG.error("Failed to register attestor cleanup, stopping all attestors")
        cleanup_containers(result)
        raise

    try:
        LOG.info(
            f"Waiting {params.settle_interval_s}s for attestor containers to stabilize..."
        )
        if _wait(params.settle_interval_s, cancel):
            raise AttestorSetupCancelled("Attestor setup was cancelled")

        LOG.info("Verifying attestors are still running...")
        _verify(result, probe, params, cancel)
    except AttestorSetupCancelled as e:
        cleanup_containers(result)
        raise AttestorSetupError(
            "Attestor setup was cancelled", {h.index: e for h in result}
        ) from e

    LOG.success(
        f"All {params.num_attestors} attestor(s) set up and verified in {time.time() - setup_start:.1f}s"
    )
    return result


def setup_eth_attestors(
    docker_client,
    network_id,
    eth_rpc,
    ics26_address,
    register_cleanup,
    chain_type=attestor_e2e.attestor.ChainType.EVM,
    num_attestors=testvalues.NUM_ATTESTORS,
    launch=None,
    probe=None,
    cancel=None,
    **kwargs,
):
    """chain_type is EVM for PoW chains, COSMOS for PoS chains."""
    return setup_attestors(
        SetupParams(
            num_attestors=num_attestors,
            keystore_path_template=testvalues.ETH_ATTESTOR_KEYSTORE_PATH_TEMPLATE,
            chain_type=chain_type,
            adapter_url=eth_rpc,
            router_address=ics26_address,
            docker_client=docker_client,
            network_id=network_id,
            **kwargs,
        ),
        register_cleanup,
        launch=launch,
        probe=probe,
        cancel=cancel,
    )


def setup_cosmos_attestors(
    docker_client,
    network_id,
    tm_rpc,
    register_cleanup,
    num_attestors=testvalues.NUM_ATTESTORS,
    launch=None,
    probe=None,
    cancel=None,
    **kwargs,
):
    return setup_attestors(
        SetupParams(
            num_attestors=num_attestors,
            keystore_path_template=testvalues.COSMOS_ATTESTOR_KEYSTORE_PATH_TEMPLATE,
            chain_type=attestor_e2e.attestor.ChainType.COSMOS,
            adapter_url=tm_rpc,
            docker_client=docker_client,
            network_id=network_id,
            **kwargs,
        ),
        register_cleanup,
        launch=launch,
        probe=probe,
        cancel=cancel,
    )


def setup_solana_attestors(
    docker_client,
    network_id,
    solana_rpc,
    ics26_router_program_id,
    register_cleanup,
    num_attestors=testvalues.NUM_ATTESTORS,
    launch=None,
    probe=None,
    cancel=None,
    **kwargs,
):
    """
    Solana localnet runs on the host, so the attestor containers are given
    host access and the RPC URL is rewritten to reach it.
    """
    return setup_attestors(
        SetupParams(
            num_attestors=num_attestors,
            keystore_path_template=testvalues.SOLANA_ATTESTOR_KEYSTORE_PATH_TEMPLATE,
            chain_type=attestor_e2e.attestor.ChainType.SOLANA,
            adapter_url=attestor_e2e.attestor.transform_localhost_to_docker_host(
                solana_rpc
            ),
            router_address=ics26_router_program_id,
            docker_client=docker_client,
            network_id=network_id,
            enable_host_access=True,
            **kwargs,
        ),
        register_cleanup,
        launch=launch,
        probe=probe,
        cancel=cancel,
    )
