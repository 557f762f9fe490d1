# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import os

import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PrivateFormat,
    NoEncryption,
)

import attestor_e2e.attestor as attestor
from attestor_e2e.attestor import ChainType


def test_default_config():
    cfg = attestor.default_attestor_config()
    assert cfg.server.address == "0.0.0.0"
    assert cfg.server.port == 2025
    assert cfg.adapter.finality_offset == 0
    assert cfg.secret_key == "/attestor/ibc-attestor.pem"


def test_render_evm_config():
    cfg = attestor.attestor_config("http://anvil:8545", "0xabc")
    rendered = attestor.render_config(cfg, ChainType.EVM)
    assert "[server]" in rendered
    assert "port = 2025" in rendered
    assert "[ethereum]" in rendered
    assert 'url = "http://anvil:8545"' in rendered
    assert 'router_address = "0xabc"' in rendered
    assert "finality_offset = 0" in rendered
    assert "[cosmos]" not in rendered


def test_render_cosmos_config():
    rendered = attestor.render_config(
        attestor.attestor_config("http://simd:26657"), "cosmos"
    )
    assert "[cosmos]" in rendered
    assert 'url = "http://simd:26657"' in rendered
    assert "router_address" not in rendered


def test_render_solana_config():
    rendered = attestor.render_config(
        attestor.attestor_config("http://host.docker.internal:8899", "Program1111"),
        ChainType.SOLANA,
    )
    assert "[solana]" in rendered
    assert 'account_key = "Program1111"' in rendered


def test_render_escapes_quotes():
    rendered = attestor.render_config(
        attestor.attestor_config('http://x"y'), ChainType.COSMOS
    )
    assert 'url = "http://x\\"y"' in rendered


def test_render_unknown_chain_type():
    with pytest.raises(ValueError):
        attestor.render_config(attestor.default_attestor_config(), "bitcoin")


def test_address_from_known_key():
    priv = ec.derive_private_key(1, ec.SECP256K1(), default_backend())
    assert (
        attestor.address_from_key(priv) == "0x7E5F4552091A69125d5DfCb7b8C2659029395Bdf"
    )


def test_keystore_identity_is_stable(tmp_path):
    keystore = str(tmp_path / "keystore_0")
    key_path = attestor.create_keystore(keystore)
    assert os.path.isfile(key_path)
    # Private key is only readable by its owner
    assert os.stat(key_path).st_mode & 0o777 == 0o600
    address = attestor.address_from_keystore(keystore)
    assert address.startswith("0x") and len(address) == 42

    attestor.create_keystore(keystore)
    assert attestor.address_from_keystore(keystore) == address


def test_keystores_have_distinct_identities(tmp_path):
    addresses = set()
    for i in range(3):
        keystore = str(tmp_path / f"keystore_{i}")
        attestor.create_keystore(keystore)
        addresses.add(attestor.address_from_keystore(keystore))
    assert len(addresses) == 3


def test_keystore_with_wrong_curve(tmp_path):
    keystore = tmp_path / "keystore"
    keystore.mkdir()
    priv = ec.generate_private_key(ec.SECP256R1(), default_backend())
    (keystore / attestor.KEY_FILE).write_bytes(
        priv.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption())
    )
    with pytest.raises(ValueError):
        attestor.address_from_keystore(str(keystore))


def test_write_config(tmp_path):
    path = attestor.write_config(
        attestor.attestor_config("http://anvil:8545", "0xabc"), "evm", str(tmp_path)
    )
    assert path == str(tmp_path / "config.toml")
    assert "[ethereum]" in (tmp_path / "config.toml").read_text()


@pytest.mark.parametrize(
    "url,expected",
    [
        ("http://localhost:8899", "http://host.docker.internal:8899"),
        ("http://127.0.0.1:8899", "http://host.docker.internal:8899"),
        ("http://solana:8899", "http://solana:8899"),
    ],
)
def test_transform_localhost_to_docker_host(url, expected):
    assert attestor.transform_localhost_to_docker_host(url) == expected
