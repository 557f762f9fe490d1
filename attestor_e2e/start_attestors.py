# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import sys
import time

import docker

import attestor_e2e.bootstrap
import attestor_e2e.docker_remote
import attestor_e2e.e2e_args
import attestor_e2e.teardown

from loguru import logger as LOG


def wait_for_interrupt():
    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        LOG.info("Stopping all attestors...")


def run(args):
    client = docker.from_env()
    if args.network_id is None:
        args.network_id = attestor_e2e.docker_remote.get_or_create_network(client).id

    params = attestor_e2e.e2e_args.setup_params(args, docker_client=client)
    LOG.info(
        f"Starting {params.num_attestors} attestor{'s' if params.num_attestors != 1 else ''}..."
    )

    with attestor_e2e.teardown.teardown() as t:
        result = attestor_e2e.bootstrap.setup_attestors(params, t.add)

        LOG.info("Started attestors:")
        for handle in result:
            LOG.info(f"  Attestor [{handle.index}] = {handle.identity}")
            LOG.info(f"    endpoint: {handle.endpoint}")
            LOG.info(f"    docker endpoint: {handle.internal_endpoint}")
            LOG.info(f"    keystore: {handle.config_path}")
        LOG.warning("Press Ctrl+C to shutdown the attestors")
        wait_for_interrupt()

    LOG.info("All attestors stopped.")


def main(argv=None):
    args = attestor_e2e.e2e_args.cli_args(argv=argv)
    try:
        run(args)
    except attestor_e2e.bootstrap.AttestorSetupError as e:
        LOG.error("Error! Some attestors failed to start:")
        for index, error in sorted(e.errors.items()):
            LOG.error(f"- Attestor [{index}]: {error}")
        sys.exit(1)
    except attestor_e2e.bootstrap.AttestorVerificationError as e:
        LOG.error(f"Error! {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
