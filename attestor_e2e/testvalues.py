# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

# Number of attestor instances started by default
NUM_ATTESTORS = 1

# Keystore directories, one per attestor (formatted with the attestor index)
ATTESTOR_KEYSTORE_PATH_TEMPLATE = "/tmp/attestor_keystore_{}"
ETH_ATTESTOR_KEYSTORE_PATH_TEMPLATE = "/tmp/attestor_keystore_eth_{}"
COSMOS_ATTESTOR_KEYSTORE_PATH_TEMPLATE = "/tmp/attestor_keystore_cosmos_{}"
SOLANA_ATTESTOR_KEYSTORE_PATH_TEMPLATE = "/tmp/attestor_keystore_solana_{}"

ATTESTOR_IMAGE = "ibc-attestor:local"

# Port the attestor gRPC server listens on inside its container
ATTESTOR_CONTAINER_PORT = 2025

# Identifier for all attestor test containers
ATTESTOR_CONTAINERS_LABEL = "ibc_attestor_test"

# Docker port forwarding needs a moment before it is reliable
SETTLE_INTERVAL_S = 5

# Delay before the single health check retry
PROBE_RETRY_DELAY_S = 0.5

# Client side timeout for one health check round trip
PROBE_TIMEOUT_S = 5
