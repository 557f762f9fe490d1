# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import argparse
import os
import sys

import attestor_e2e.attestor
import attestor_e2e.bootstrap
import attestor_e2e.testvalues as testvalues

from loguru import logger as LOG


def positive_float(arg):
    value = float(arg)
    if value <= 0:
        raise argparse.ArgumentTypeError(f"{arg} is not a positive number")
    return value


def non_negative_int(arg):
    value = int(arg)
    if value < 0:
        raise argparse.ArgumentTypeError(f"{arg} is negative")
    return value


def cli_args(add=lambda x: None, parser=None, accept_unknown=False, argv=None):
    LOG.remove()
    LOG.add(
        sys.stdout,
        format="<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    )

    if parser is None:
        parser = argparse.ArgumentParser(
            formatter_class=argparse.ArgumentDefaultsHelpFormatter
        )
    parser.add_argument(
        "-n",
        "--num-attestors",
        help="Number of attestor instances to start",
        type=non_negative_int,
        default=int(os.getenv("E2E_NUM_ATTESTORS", str(testvalues.NUM_ATTESTORS))),
    )
    parser.add_argument(
        "--keystore-path-template",
        help="Keystore directory of each attestor, {} is replaced by the attestor index",
        default=testvalues.ATTESTOR_KEYSTORE_PATH_TEMPLATE,
    )
    parser.add_argument(
        "--chain-type",
        help="Type of chain the attestors read from",
        choices=[c.value for c in attestor_e2e.attestor.ChainType],
        default=attestor_e2e.attestor.ChainType.EVM.value,
    )
    parser.add_argument(
        "--adapter-url",
        help="RPC endpoint of the chain the attestors read from",
        default=os.getenv("E2E_ADAPTER_URL", "http://localhost:8545"),
    )
    parser.add_argument(
        "--router-address",
        help="ICS26 router address (EVM) or program ID (Solana)",
        default="",
    )
    parser.add_argument(
        "--network-id",
        help="Docker network to connect attestor containers to",
        default=None,
    )
    parser.add_argument(
        "--enable-host-access",
        help="Make the host reachable from containers as host.docker.internal",
        action="store_true",
        default=False,
    )
    parser.add_argument(
        "--image",
        help="Attestor container image",
        default=os.getenv("E2E_ATTESTOR_IMAGE", testvalues.ATTESTOR_IMAGE),
    )
    parser.add_argument(
        "--settle-interval-s",
        help="Delay between starting attestors and verifying their health",
        type=float,
        default=testvalues.SETTLE_INTERVAL_S,
    )
    parser.add_argument(
        "--probe-retry-delay-s",
        help="Delay before retrying a failed health check",
        type=float,
        default=testvalues.PROBE_RETRY_DELAY_S,
    )
    parser.add_argument(
        "--launch-timeout-s",
        help="Maximum time to wait for all attestors to start (unbounded if unset)",
        type=positive_float,
        default=None,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        help="Include debug logs describing the startup process",
        action="store_true",
        default=False,
    )
    add(parser)

    if accept_unknown:
        args, unknown_args = parser.parse_known_args(argv)
    else:
        args = parser.parse_args(argv)

    if not args.verbose:
        LOG.remove()
        LOG.add(sys.stdout, level="INFO", format="<green>[{time:HH:mm:ss.SSS}]</green> {message}")

    if accept_unknown:
        return args, unknown_args
    else:
        return args


def setup_params(args, docker_client=None):
    return attestor_e2e.bootstrap.SetupParams(
        num_attestors=args.num_attestors,
        keystore_path_template=args.keystore_path_template,
        chain_type=attestor_e2e.attestor.ChainType(args.chain_type),
        adapter_url=args.adapter_url,
        router_address=args.router_address,
        network_id=args.network_id,
        enable_host_access=args.enable_host_access,
        image=args.image,
        docker_client=docker_client,
        settle_interval_s=args.settle_interval_s,
        probe_retry_delay_s=args.probe_retry_delay_s,
        launch_timeout_s=args.launch_timeout_s,
    )
