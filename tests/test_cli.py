"""CLI tests for the sponsored batch flow."""

import json

import pytest
from click.testing import CliRunner
from eth_account import Account

from batchcall.cli import main


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.delenv("BATCHCALL_AUDIT_HMAC_KEY", raising=False)
    return {
        "HOME": str(tmp_path),
        "BATCHCALL_HOME": str(tmp_path / "bc"),
        "BATCHCALL_FRAMED_ENCODING": "0",
    }


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def principal():
    return Account.create()


@pytest.fixture
def calls_file(tmp_path):
    recipient = Account.create().address
    path = tmp_path / "calls.json"
    path.write_text(json.dumps({"calls": [{"target": recipient, "value": "1", "payload": "0x"}]}))
    return path, recipient


def _signature(result):
    return [line for line in result.output.splitlines() if line.startswith("0x")][-1]


def test_sponsored_flow_and_replay(runner, env, principal, calls_file):
    path, recipient = calls_file
    sponsor = Account.create().address

    assert runner.invoke(main, ["activate", principal.address], env=env).exit_code == 0
    assert runner.invoke(main, ["fund", principal.address, "5"], env=env).exit_code == 0

    signed = runner.invoke(main, ["sign", "--calls", str(path)], input=principal.key.hex() + "\n", env=env)
    assert signed.exit_code == 0, signed.output
    signature = _signature(signed)

    args = [
        "execute",
        "--principal", principal.address,
        "--calls", str(path),
        "--signature", signature,
        "--sponsor", sponsor,
    ]
    result = runner.invoke(main, args, env=env)
    assert result.exit_code == 0, result.output
    assert "Next nonce: 1" in result.output

    assert runner.invoke(main, ["nonce", principal.address], env=env).output.strip() == "1"
    assert runner.invoke(main, ["balance", recipient], env=env).output.strip() == "1"

    replay = runner.invoke(main, args, env=env)
    assert replay.exit_code != 0
    assert "Invalid signature" in replay.output

    audit = runner.invoke(main, ["audit", "--principal", principal.address], env=env)
    assert "signature_rejected" in audit.output


def test_sign_rejects_raw_key_on_argv(runner, env, principal, calls_file):
    path, _ = calls_file
    result = runner.invoke(
        main,
        ["sign", "--calls", str(path), "--principal-key", principal.key.hex()],
        env=env,
    )
    assert result.exit_code != 0
    assert "Refusing --principal-key from argv" in result.output


def test_digest_matches_signed_nonce(runner, env, principal, calls_file):
    path, _ = calls_file
    first = runner.invoke(main, ["digest", "--principal", principal.address, "--calls", str(path)], env=env)
    explicit = runner.invoke(
        main,
        ["digest", "--principal", principal.address, "--calls", str(path), "--nonce", "0"],
        env=env,
    )
    assert first.exit_code == 0
    assert first.output == explicit.output
    assert len(first.output.strip()) == 66


def test_execute_direct_requires_principal(runner, env, principal, calls_file):
    path, recipient = calls_file
    runner.invoke(main, ["fund", principal.address, "2"], env=env)

    refused = runner.invoke(
        main,
        ["execute-direct", "--principal", principal.address, "--calls", str(path),
         "--caller", Account.create().address],
        env=env,
    )
    assert refused.exit_code != 0
    assert "not the principal" in refused.output

    ok = runner.invoke(main, ["execute-direct", "--principal", principal.address, "--calls", str(path)], env=env)
    assert ok.exit_code == 0, ok.output
    assert runner.invoke(main, ["balance", recipient], env=env).output.strip() == "1"
    assert runner.invoke(main, ["nonce", principal.address], env=env).output.strip() == "0"


def test_token_commands(runner, env, principal):
    deployed = runner.invoke(main, ["deploy-token"], env=env)
    assert deployed.exit_code == 0
    token = deployed.output.strip().split()[-1]

    data = runner.invoke(main, ["payload", "mint", principal.address, "7"], env=env).output.strip()
    assert data.startswith("0x40c10f19")

    balance = runner.invoke(main, ["balance", principal.address, "--token", token], env=env)
    assert balance.output.strip() == "0"


def test_bad_calls_file(runner, env, principal, tmp_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"not": "calls"}))
    result = runner.invoke(main, ["digest", "--principal", principal.address, "--calls", str(path)], env=env)
    assert result.exit_code != 0
    assert "Failed to read calls" in result.output


def test_demo_runs(runner, env):
    result = runner.invoke(main, ["demo"], env=env)
    assert result.exit_code == 0, result.output
    assert "Demo complete" in result.output
    assert "InvalidSignatureError" in result.output


def test_digest_does_not_activate_principal(runner, env, principal, calls_file):
    path, _ = calls_file
    result = runner.invoke(main, ["digest", "--principal", principal.address, "--calls", str(path)], env=env)
    assert result.exit_code == 0

    audit = runner.invoke(main, ["audit"], env=env)
    assert "Chain verified: 0 events" in audit.output
    assert "No audit events found." in audit.output


def test_payload_amount_out_of_range(runner, env, principal):
    result = runner.invoke(main, ["payload", "transfer", principal.address, str(2**256)], env=env)
    assert isinstance(result.exception, SystemExit)
    assert result.exit_code == 1
    assert "Invalid payload" in result.output


def test_audit_reports_broken_chain(runner, env, principal, tmp_path):
    runner.invoke(main, ["activate", principal.address], env=env)
    verified = runner.invoke(main, ["audit"], env=env)
    assert "Chain verified: 1 events" in verified.output

    audit_path = tmp_path / "bc" / "audit.jsonl"
    audit_path.write_text(audit_path.read_text().replace('"nonce":0', '"nonce":7'))

    broken = runner.invoke(main, ["audit"], env=env)
    assert broken.exit_code != 0
    assert "Audit chain broken at line 1" in broken.output
