"""Tests for the host call router and the example token target."""

import pytest
from eth_abi import decode
from eth_account import Account

from batchcall.errors import StateError, TargetReverted
from batchcall.state import HostState
from batchcall.targets import ExampleToken, Host


HOLDER = Account.create().address
RECIPIENT = Account.create().address


@pytest.fixture
def state(tmp_path):
    s = HostState(tmp_path / "state.sqlite3")
    yield s
    s.close()


@pytest.fixture
def host(state):
    return Host(state)


@pytest.fixture
def token(host):
    return host.deploy(ExampleToken.KIND)


class TestHostCall:
    def test_plain_transfer_ignores_payload(self, state, host):
        state.fund(HOLDER, 5)
        with state.unit_of_work():
            assert host.call(HOLDER, RECIPIENT, 2, b"\x01\x02") == b""
        assert state.balance_of(RECIPIENT) == 2
        assert state.balance_of(HOLDER) == 3

    def test_call_requires_unit_of_work(self, host):
        with pytest.raises(StateError):
            host.call(HOLDER, RECIPIENT, 0, b"")

    def test_registered_target_receives_context(self, state, host):
        seen = []

        class Recorder:
            def invoke(self, ctx, payload):
                seen.append((ctx.sender, ctx.address, ctx.value, payload))
                return b"ok"

        address = host.register(Account.create().address, Recorder())
        state.fund(HOLDER, 1)
        with state.unit_of_work():
            assert host.call(HOLDER, address, 1, b"\x07") == b"ok"
        assert seen == [(HOLDER, address, 1, b"\x07")]
        assert state.balance_of(address) == 1


class TestDeploy:
    def test_deployed_code_resolves_in_new_host(self, state, token):
        assert isinstance(Host(state).target_at(token), ExampleToken)

    def test_unknown_kind(self, host):
        with pytest.raises(ValueError, match="Unknown target kind"):
            host.deploy("nope")

    def test_deploy_twice_at_same_address(self, host, token):
        with pytest.raises(StateError, match="already deployed"):
            host.deploy(ExampleToken.KIND, token)


class TestExampleToken:
    def test_mint_and_balance_of(self, state, host, token):
        with state.unit_of_work():
            host.call(HOLDER, token, 0, ExampleToken.encode_mint(RECIPIENT, 50))
            raw = host.call(HOLDER, token, 0, ExampleToken.encode_balance_of(RECIPIENT))
        assert decode(["uint256"], raw) == (50,)
        assert ExampleToken.balance_of(state, token, RECIPIENT) == 50
        assert state.get_slot(token, ExampleToken.TOTAL_SUPPLY_SLOT) == 50

    def test_transfer_moves_sender_balance(self, state, host, token):
        with state.unit_of_work():
            host.call(HOLDER, token, 0, ExampleToken.encode_mint(HOLDER, 10))
            host.call(HOLDER, token, 0, ExampleToken.encode_transfer(RECIPIENT, 4))
        assert ExampleToken.balance_of(state, token, HOLDER) == 6
        assert ExampleToken.balance_of(state, token, RECIPIENT) == 4

    def test_transfer_over_balance_reverts(self, state, host, token):
        with pytest.raises(TargetReverted, match="ERC20InsufficientBalance"):
            with state.unit_of_work():
                host.call(HOLDER, token, 0, ExampleToken.encode_transfer(RECIPIENT, 1))

    def test_unknown_selector_reverts(self, state, host, token):
        with pytest.raises(TargetReverted, match="Unknown selector"):
            with state.unit_of_work():
                host.call(HOLDER, token, 0, b"\x00\x00\x00\x00")

    def test_truncated_arguments_revert(self, state, host, token):
        with pytest.raises(TargetReverted, match="Malformed call data"):
            with state.unit_of_work():
                host.call(HOLDER, token, 0, ExampleToken.MINT + b"\x01")

    def test_native_value_reverts_and_rolls_back(self, state, host, token):
        state.fund(HOLDER, 5)
        with pytest.raises(TargetReverted, match="native value"):
            with state.unit_of_work():
                host.call(HOLDER, token, 1, ExampleToken.encode_mint(HOLDER, 1))
        assert state.balance_of(HOLDER) == 5
        assert state.balance_of(token) == 0
