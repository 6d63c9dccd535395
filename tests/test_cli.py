import json

import pytest

import cli
from relayhub.core.ledger import derive_command_id, payload_hash
from relayhub.core.metatx import MetaTransaction, encode_meta_transactions, recover_batch_signer

from conftest import USER, USER_KEY

CONTRACT = "0x00000000000000000000000000000000000b0001"


def test_parser_knows_subcommands():
    parser = cli.build_parser()

    args = parser.parse_args(["compensate", "0xabc", "--action", "refund"])
    assert (args.command, args.command_id, args.action) == ("compensate", "0xabc", "refund")

    with pytest.raises(SystemExit):
        parser.parse_args(["compensate", "0xabc", "--action", "forget"])

    args = parser.parse_args(["settle", "crossfi", "3"])
    assert (args.command, args.chain, args.batch_id) == ("settle", "crossfi", 3)


def test_derive_command_id(capsys):
    tx_hash = "0x" + "ab" * 32
    cli.cli_derive_command_id("crossfi", tx_hash, 3, "0x0102")

    out = capsys.readouterr().out
    hashed = payload_hash(b"\x01\x02")
    assert f"payloadHash: {hashed}" in out
    assert derive_command_id("crossfi", tx_hash, 3, hashed) in out


def test_sign_batch_prints_request_body(capsys):
    calls = json.dumps([{"to": CONTRACT, "value": "5", "data": "0x01"}])

    body = cli.cli_sign_batch(USER_KEY, 4157, CONTRACT, calls, nonce=2, deadline=1_700_000_600)

    assert json.loads(capsys.readouterr().out) == body
    assert body["from"] == USER
    assert body["metaTxs"] == [{"to": CONTRACT, "value": "5", "data": "0x01"}]
    signed = encode_meta_transactions([MetaTransaction.from_dict(c) for c in body["metaTxs"]])
    signer = recover_batch_signer(4157, CONTRACT, USER, signed, 2, 1_700_000_600, body["signature"])
    assert signer == USER


def test_operator_headers(monkeypatch):
    monkeypatch.setattr(cli.settings, "operator_api_token", "")
    assert cli.operator_headers() == {}

    monkeypatch.setattr(cli.settings, "operator_api_token", "s3cret")
    assert cli.operator_headers() == {"Authorization": "Bearer s3cret"}
