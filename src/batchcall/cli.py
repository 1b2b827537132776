"""
batchcall CLI — Sponsored batch execution against a local host state.

Commands:
    batchcall activate        Start a principal's nonce ledger at 0
    batchcall nonce           Show a principal's current nonce
    batchcall fund / balance  Manage native balances in the local host
    batchcall deploy-token    Deploy the example token target
    batchcall payload         Build token call data
    batchcall digest          Show the digest to sign for a batch
    batchcall sign            Sign a batch as the principal
    batchcall execute         Submit a signed batch as a sponsor
    batchcall execute-direct  Run a batch as the principal itself
    batchcall audit           View audit trail
    batchcall demo            Run a full demo flow
"""

from __future__ import annotations

import json
import sys
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import click
from click.core import ParameterSource
from eth_abi.exceptions import EncodingError
from eth_account import Account

from . import __version__
from .audit import AuditTrail
from .calls import Call, load_calls, normalize_address
from .config import EngineConfig
from .engine import BatchCallEngine
from .digest import batch_digest
from .errors import AuditChainError, BatchCallError
from .signing import sign_batch
from .state import HostState
from .targets import ExampleToken, Host


def _config() -> EngineConfig:
    return EngineConfig.from_env()


def _audit(config: EngineConfig) -> AuditTrail:
    return AuditTrail(path=config.audit_path, key_path=config.audit_key_path)


@contextmanager
def _engine(config: EngineConfig, principal: str) -> Iterator[BatchCallEngine]:
    with HostState(config.state_path) as state:
        yield BatchCallEngine(principal, state, audit=_audit(config), config=config)


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _read_calls(path: str) -> tuple[Call, ...]:
    try:
        return load_calls(Path(path))
    except (OSError, ValueError, KeyError) as e:
        _fail(f"Failed to read calls from {path}: {e}")
        raise


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string")
    int(candidate, 16)
    return "0x" + candidate


def _echo_receipt(receipt) -> None:
    for record in receipt.records:
        click.echo(f"   {json.dumps(record.to_dict())}")


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
def main():
    """batchcall — Delegated batch execution for a single account."""
    pass


@main.command()
@click.argument("principal")
def activate(principal: str):
    """Activate a principal (nonce starts at 0)."""
    config = _config()
    try:
        with _engine(config, principal) as engine:
            address, current = engine.principal, engine.current_nonce()
    except (ValueError, BatchCallError) as e:
        _fail(str(e))
    click.echo(f"✅ Principal active: {address}")
    click.echo(f"   Nonce: {current}")


@main.command()
@click.argument("principal")
def nonce(principal: str):
    """Show the current nonce of a principal."""
    config = _config()
    try:
        with HostState(config.state_path) as state:
            click.echo(str(state.nonce_of(principal)))
    except ValueError as e:
        _fail(str(e))


@main.command()
@click.argument("address")
@click.argument("amount", type=int)
def fund(address: str, amount: int):
    """Credit native units to an address in the local host."""
    if amount <= 0:
        _fail("Amount must be positive")
    config = _config()
    try:
        with HostState(config.state_path) as state:
            balance = state.fund(address, amount)
    except (ValueError, BatchCallError) as e:
        _fail(str(e))
    click.echo(f"✅ {normalize_address(address)} balance: {balance}")


@main.command()
@click.argument("address")
@click.option("--token", default=None, help="Show the balance held in this token target")
def balance(address: str, token: Optional[str]):
    """Show a native (or token) balance."""
    config = _config()
    try:
        with HostState(config.state_path) as state:
            if token:
                amount = ExampleToken.balance_of(state, token, address)
            else:
                amount = state.balance_of(address)
    except ValueError as e:
        _fail(str(e))
    click.echo(str(amount))


@main.command("deploy-token")
@click.option("--address", default=None, help="Deploy at this address (default: random)")
def deploy_token(address: Optional[str]):
    """Deploy the example token target."""
    config = _config()
    try:
        with HostState(config.state_path) as state:
            deployed = Host(state).deploy(ExampleToken.KIND, address)
    except (ValueError, BatchCallError) as e:
        _fail(f"Failed to deploy token: {e}")
    click.echo(f"✅ Token deployed: {deployed}")


@main.command()
@click.argument("function", type=click.Choice(["mint", "transfer"]))
@click.argument("to")
@click.argument("amount", type=int)
def payload(function: str, to: str, amount: int):
    """Print example-token call data for mint/transfer."""
    try:
        if function == "mint":
            data = ExampleToken.encode_mint(to, amount)
        else:
            data = ExampleToken.encode_transfer(to, amount)
    except (ValueError, EncodingError) as e:
        _fail(f"Invalid payload: {e}")
    click.echo("0x" + data.hex())


@main.command()
@click.option("--principal", required=True, help="Principal address")
@click.option("--calls", "calls_path", required=True, type=click.Path(exists=True),
              help="JSON file with the batch")
@click.option("--nonce", "nonce_value", type=int, default=None,
              help="Nonce override (default: principal's current nonce)")
def digest(principal: str, calls_path: str, nonce_value: Optional[int]):
    """Print the digest the principal must sign for a batch."""
    config = _config()
    calls = _read_calls(calls_path)
    try:
        with HostState(config.state_path) as state:
            if nonce_value is None:
                nonce_value = state.nonce_of(principal)
        value = batch_digest(nonce_value, calls, framed=config.framed_encoding)
    except ValueError as e:
        _fail(str(e))
    click.echo("0x" + value.hex())


@main.command()
@click.option("--calls", "calls_path", required=True, type=click.Path(exists=True),
              help="JSON file with the batch")
@click.option("--principal-key", prompt=True, hide_input=True,
              help="Principal's Ethereum private key (hex)")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --principal-key via argv (unsafe; can leak in shell/process history).",
)
@click.option("--nonce", "nonce_value", type=int, default=None,
              help="Nonce to sign for (default: principal's current nonce)")
def sign(calls_path: str, principal_key: str, unsafe_allow_key_arg: bool, nonce_value: Optional[int]):
    """Sign a batch as the principal."""
    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and ctx.get_parameter_source("principal_key") == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            "❌ Refusing --principal-key from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)

    config = _config()
    calls = _read_calls(calls_path)
    try:
        private_key = _resolve_private_key(principal_key)
        principal = Account.from_key(private_key).address
        if nonce_value is None:
            with HostState(config.state_path) as state:
                nonce_value = state.nonce_of(principal)
        signature = sign_batch(private_key, nonce_value, calls, framed=config.framed_encoding)
    except ValueError as e:
        _fail(f"Failed to sign batch: {e}")

    click.echo(f"✅ Signed {len(calls)} calls for {principal} at nonce {nonce_value}", err=True)
    click.echo("0x" + signature.hex())


@main.command()
@click.option("--principal", required=True, help="Principal address")
@click.option("--calls", "calls_path", required=True, type=click.Path(exists=True),
              help="JSON file with the batch")
@click.option("--signature", required=True, help="Principal's signature (hex)")
@click.option("--sponsor", required=True, help="Address submitting the batch")
def execute(principal: str, calls_path: str, signature: str, sponsor: str):
    """Submit a signed batch on the principal's behalf."""
    config = _config()
    calls = _read_calls(calls_path)
    try:
        with _engine(config, principal) as engine:
            receipt = engine.execute_with_signature(sponsor, calls, signature)
            next_nonce = engine.current_nonce()
    except (ValueError, BatchCallError) as e:
        _fail(f"Batch failed: {e}")

    click.echo(f"✅ Sponsored batch executed (nonce {receipt.nonce})")
    click.echo(f"   Principal: {receipt.principal}")
    click.echo(f"   Sponsor:   {receipt.caller}")
    click.echo(f"   Next nonce: {next_nonce}")
    _echo_receipt(receipt)


@main.command("execute-direct")
@click.option("--principal", required=True, help="Principal address")
@click.option("--calls", "calls_path", required=True, type=click.Path(exists=True),
              help="JSON file with the batch")
@click.option("--caller", default=None, help="Invoking address (default: the principal)")
def execute_direct(principal: str, calls_path: str, caller: Optional[str]):
    """Run a batch as the principal itself (no signature, no nonce)."""
    config = _config()
    calls = _read_calls(calls_path)
    try:
        with _engine(config, principal) as engine:
            receipt = engine.execute_as_principal(caller or principal, calls)
    except (ValueError, BatchCallError) as e:
        _fail(f"Batch failed: {e}")

    click.echo(f"✅ Direct batch executed ({len(receipt.calls)} calls)")
    _echo_receipt(receipt)


@main.command()
@click.option("--principal", default=None, help="Filter by principal address")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(principal: Optional[str], limit: int):
    """View the audit trail after verifying its hash chain."""
    try:
        trail = _audit(_config())
        head = trail.verify()
        events = trail.read_events(principal=principal, limit=limit)
    except AuditChainError as e:
        _fail(str(e))

    click.echo(f"🔒 Chain verified: {head.length} events (head {head.event_hash[:12] or '-'})")
    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        nonce_label = f" nonce={event.nonce}" if event.nonce is not None else ""
        target = f" → {event.target}" if event.target else ""
        value = f" value={event.value}" if event.value else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{nonce_label}{target}{value}{reason}")


@main.command()
def demo():
    """Run the five sponsored-batch scenarios in a scratch directory."""
    click.echo("🎬 batchcall Demo — Sponsored Batch Flow")
    click.echo("=" * 50)

    principal = Account.create()
    sponsor = Account.create()
    stranger = Account.create()
    x, y, z = (Account.create().address for _ in range(3))

    with tempfile.TemporaryDirectory() as scratch:
        config = EngineConfig(home=Path(scratch) / "batchcall")
        with HostState(config.state_path) as state:
            host = Host(state)
            token = host.deploy(ExampleToken.KIND)
            engine = BatchCallEngine(principal.address, state, host=host, config=config)
            state.fund(principal.address, 10)

            click.echo("\n1️⃣  Principal pays 1 unit to X directly...")
            engine.execute_as_principal(principal.address, [Call(x, 1)])
            click.echo(f"   X balance: {state.balance_of(x)} | nonce: {engine.current_nonce()}")

            click.echo("\n2️⃣  Sponsor submits a signed batch paying 1 unit to Y...")
            batch = [Call(y, 1)]
            signature = sign_batch(principal.key, engine.current_nonce(), batch)
            receipt = engine.execute_with_signature(sponsor.address, batch, signature)
            click.echo(f"   Y balance: {state.balance_of(y)} | consumed nonce: {receipt.nonce} "
                       f"| nonce now: {engine.current_nonce()}")

            click.echo("\n3️⃣  Sponsor replays the same signature...")
            try:
                engine.execute_with_signature(sponsor.address, batch, signature)
            except BatchCallError as e:
                click.echo(f"   ❌ {type(e).__name__}: {e}")

            click.echo("\n4️⃣  Stranger signs a mint of 50 to Z...")
            mint = [Call(token, 0, ExampleToken.encode_mint(z, 50))]
            forged = sign_batch(stranger.key, engine.current_nonce(), mint)
            try:
                engine.execute_with_signature(sponsor.address, mint, forged)
            except BatchCallError as e:
                click.echo(f"   ❌ {type(e).__name__}: {e}")
            click.echo(f"   Nonce still: {engine.current_nonce()}")

            click.echo("\n5️⃣  Batch whose second call overdraws the token balance...")
            batch = [
                Call(token, 0, ExampleToken.encode_mint(principal.address, 5)),
                Call(token, 0, ExampleToken.encode_transfer(z, 6)),
            ]
            signature = sign_batch(principal.key, engine.current_nonce(), batch)
            try:
                engine.execute_with_signature(sponsor.address, batch, signature)
            except BatchCallError as e:
                click.echo(f"   ❌ {type(e).__name__}: {e}")
            minted = ExampleToken.balance_of(state, token, principal.address)
            click.echo(f"   Principal token balance: {minted} | nonce: {engine.current_nonce()}")

    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Sign → Verify → Consume nonce → Execute → Record")


if __name__ == "__main__":
    main()
