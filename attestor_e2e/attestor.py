# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import os
import copy
from dataclasses import dataclass, field
from enum import Enum

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PrivateFormat,
    PublicFormat,
    NoEncryption,
    load_pem_private_key,
)
from eth_utils import keccak, to_checksum_address
from jinja2 import Environment, FileSystemLoader, select_autoescape

import attestor_e2e.testvalues as testvalues

from loguru import logger as LOG

TEMPLATES_DIR = os.path.join(os.path.dirname(os.path.realpath(__file__)), "templates")
TEMPLATE_CONFIGURATION_FILE = "attestor.toml.jinja"

KEY_FILE = "ibc-attestor.pem"
CONFIG_FILE = "config.toml"

# Where the keystore directory is mounted inside the attestor container
CONTAINER_KEYSTORE_DIR = "/attestor"

DOCKER_HOST_INTERNAL = "host.docker.internal"


class ChainType(Enum):
    EVM = "evm"
    COSMOS = "cosmos"
    SOLANA = "solana"


@dataclass
class ServerConfig:
    address: str = "0.0.0.0"
    port: int = testvalues.ATTESTOR_CONTAINER_PORT
    log_level: str = "info"


@dataclass
class AdapterConfig:
    url: str = ""
    # Unused by Cosmos attestors
    router_address: str = ""
    finality_offset: int = 0


@dataclass
class AttestorConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    adapter: AdapterConfig = field(default_factory=AdapterConfig)
    secret_key: str = os.path.join(CONTAINER_KEYSTORE_DIR, KEY_FILE)


def default_attestor_config():
    return AttestorConfig()


def attestor_config(adapter_url, router_address=""):
    """
    Returns a copy of the default configuration pointing at the given
    adapter (RPC endpoint) and router address.
    """
    cfg = copy.deepcopy(default_attestor_config())
    cfg.adapter.url = adapter_url
    cfg.adapter.router_address = router_address or ""
    cfg.adapter.finality_offset = 0
    return cfg


def render_config(config, chain_type):
    chain_type = ChainType(chain_type)
    loader = FileSystemLoader(TEMPLATES_DIR)
    t_env = Environment(loader=loader, autoescape=select_autoescape())
    t = t_env.get_template(TEMPLATE_CONFIGURATION_FILE)
    return t.render(
        server=config.server,
        adapter=config.adapter,
        secret_key=config.secret_key,
        chain_type=chain_type.value,
    )


def write_config(config, chain_type, keystore_path):
    path = os.path.join(keystore_path, CONFIG_FILE)
    with open(path, "w", encoding="utf-8") as f:
        f.write(render_config(config, chain_type))
    return path


def create_keystore(keystore_path):
    """
    Creates the keystore directory and a secp256k1 signing key, unless a key
    is already present, in which case it is kept so that the attestor
    identity does not change between runs.
    """
    os.makedirs(keystore_path, exist_ok=True)
    key_path = os.path.join(keystore_path, KEY_FILE)
    if os.path.isfile(key_path):
        LOG.debug(f"Reusing attestor key {key_path}")
        return key_path

    priv = ec.generate_private_key(curve=ec.SECP256K1(), backend=default_backend())
    pem = priv.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption())
    with open(key_path, "wb") as f:
        f.write(pem)
    os.chmod(key_path, 0o600)
    LOG.debug(f"Generated attestor key {key_path}")
    return key_path


def address_from_key(priv):
    pub = priv.public_key().public_bytes(
        Encoding.X962, PublicFormat.UncompressedPoint
    )
    # Drop the 0x04 prefix
    return to_checksum_address("0x" + keccak(pub[1:])[-20:].hex())


def address_from_keystore(keystore_path):
    with open(os.path.join(keystore_path, KEY_FILE), "rb") as f:
        priv = load_pem_private_key(f.read(), password=None, backend=default_backend())
    if not isinstance(priv, ec.EllipticCurvePrivateKey) or not isinstance(
        priv.curve, ec.SECP256K1
    ):
        raise ValueError(f"Attestor key in {keystore_path} is not a secp256k1 key")
    return address_from_key(priv)


def transform_localhost_to_docker_host(url):
    """
    Rewrites localhost URLs so that a container can reach services
    running on the host machine.
    """
    url = url.replace("localhost", DOCKER_HOST_INTERNAL)
    return url.replace("127.0.0.1", DOCKER_HOST_INTERNAL)
