import asyncio

import pytest

from chainsignal.cli import build_parser, main, simulate
from chainsignal.identity import Identity


def test_keygen_writes_loadable_identity(tmp_path, capsys):
    path = tmp_path / "me.json"
    assert main(["keygen", "--out", str(path), "--password", "pw"]) == 0

    out = capsys.readouterr().out
    identity = Identity.load_from_file(str(path), "pw")
    assert identity.address in out
    assert identity.public_key_hex in out
    assert "account key" in out


def test_keygen_with_existing_address(tmp_path, capsys):
    path = tmp_path / "me.json"
    address = "0x52908400098527886E0F7030069857D2E4169EE7"
    assert main(["keygen", "--out", str(path), "--password", "pw", "--address", address]) == 0
    assert "account key" not in capsys.readouterr().out
    assert Identity.load_from_file(str(path), "pw").address == address


def test_keygen_reports_invalid_address(tmp_path, capsys):
    assert main(["keygen", "--out", str(tmp_path / "x.json"), "--password", "pw", "--address", "0x12"]) == 1
    assert "error" in capsys.readouterr().err


def test_parser_defaults():
    args = build_parser().parse_args(["simulate"])
    assert args.latency == 0.0
    assert args.timeout > 0
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_simulate_opens_a_real_channel(capsys):
    assert asyncio.run(simulate(15.0, 0.0)) == "hello alice"
    assert "channel open" in capsys.readouterr().out
