import httpx
import pytest

from holder_jackpot.errors import ConfirmationError, NetworkError
from holder_jackpot.gateway import LedgerGateway
from holder_jackpot.project_constants import WSOL_MINT
from holder_jackpot.rpc import RpcClient
from holder_jackpot.token_accounts import associated_token_address

from conftest import FakeRpcClient, pubkey, token_account_bytes


def make_gateway(*clients, max_retries=3):
    return LedgerGateway(list(clients), token_mint="MintAddress", max_retries=max_retries, backoff_s=0)


class TestExecuteWithRetry:
    @pytest.mark.asyncio
    async def test_fails_over_to_backup_and_succeeds(self):
        primary = FakeRpcClient("primary", fail_times=1)
        backup = FakeRpcClient("backup")
        gateway = make_gateway(primary, backup)

        assert await gateway.get_slot() == 42
        assert gateway.active_index == 1
        assert gateway.get_stats()["failover_count"] == 1
        assert gateway.get_stats()["failure_count"] == 1

    @pytest.mark.asyncio
    async def test_single_endpoint_retries_in_place(self):
        primary = FakeRpcClient("primary", fail_times=2)
        gateway = make_gateway(primary)

        assert await gateway.get_slot() == 42
        assert primary.calls == 3
        assert gateway.active_index == 0

    @pytest.mark.asyncio
    async def test_exhausted_attempts_raise_network_error(self):
        primary = FakeRpcClient("primary", fail_times=10)
        backup = FakeRpcClient("backup", fail_times=10)
        gateway = make_gateway(primary, backup, max_retries=3)

        with pytest.raises(NetworkError):
            await gateway.get_slot()
        assert primary.calls + backup.calls == 3

    @pytest.mark.asyncio
    async def test_malformed_payload_is_retried_then_wrapped(self):
        calls = []

        async def operation(client):
            calls.append(client.name)
            raise KeyError("result")

        gateway = make_gateway(FakeRpcClient("primary"), max_retries=2)
        with pytest.raises(NetworkError) as excinfo:
            await gateway.execute_with_retry(operation, "broken")

        assert len(calls) == 2
        assert isinstance(excinfo.value.__cause__, KeyError)

    @pytest.mark.asyncio
    async def test_confirmation_errors_are_not_retried(self):
        calls = []

        async def operation(client):
            calls.append(client.name)
            raise ConfirmationError("rejected")

        gateway = make_gateway(FakeRpcClient("primary"), FakeRpcClient("backup"))
        with pytest.raises(ConfirmationError):
            await gateway.execute_with_retry(operation, "confirm")
        assert calls == ["primary"]


class TestSwitchToBackup:
    @pytest.mark.asyncio
    async def test_round_robin_with_liveness_probe(self):
        gateway = make_gateway(FakeRpcClient("a"), FakeRpcClient("b", alive=False))

        assert await gateway.switch_to_backup() is False
        assert gateway.active_index == 1
        assert await gateway.switch_to_backup() is True
        assert gateway.active_index == 0

    @pytest.mark.asyncio
    async def test_no_backup_available(self):
        gateway = make_gateway(FakeRpcClient("only"))
        assert await gateway.switch_to_backup() is False
        assert gateway.active_index == 0

    def test_requires_a_client(self):
        with pytest.raises(ValueError):
            LedgerGateway([], token_mint="MintAddress")


class TestConfirm:
    @pytest.mark.asyncio
    async def test_confirmed_status_returns(self):
        client = FakeRpcClient("primary")
        client.signature_status = {"confirmationStatus": "confirmed", "err": None}

        await make_gateway(client).confirm_transaction("sig", timeout_s=1, poll_interval_s=0)

    @pytest.mark.asyncio
    async def test_on_chain_error_raises(self):
        client = FakeRpcClient("primary")
        client.signature_status = {"confirmationStatus": "confirmed", "err": {"InstructionError": [0, 1]}}

        with pytest.raises(ConfirmationError, match="failed"):
            await make_gateway(client).confirm_transaction("sig", timeout_s=1, poll_interval_s=0)

    @pytest.mark.asyncio
    async def test_unconfirmed_signature_times_out(self):
        client = FakeRpcClient("primary")

        with pytest.raises(ConfirmationError, match="not confirmed"):
            await make_gateway(client).confirm_transaction("sig", timeout_s=0, poll_interval_s=0)


class TestTokenBalance:
    @pytest.mark.asyncio
    async def test_balance_read_from_associated_account(self):
        wallet = pubkey(7)
        client = FakeRpcClient("primary")
        client.accounts[associated_token_address(wallet, WSOL_MINT)] = token_account_bytes(
            WSOL_MINT, wallet, 2_500_000
        )

        assert await make_gateway(client).get_token_balance(wallet, WSOL_MINT) == 2_500_000

    @pytest.mark.asyncio
    async def test_missing_accounts_mean_zero_balance(self):
        wallet = pubkey(8)
        gateway = make_gateway(FakeRpcClient("primary"))

        assert await gateway.get_token_balance(wallet, WSOL_MINT) == 0
        assert await gateway.account_exists(wallet) is False


class TestRpcClient:
    @pytest.mark.asyncio
    async def test_rpc_error_surfaces_as_network_error(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32005}})

        client = RpcClient("http://rpc.test")
        client.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(NetworkError, match="RPC error"):
                await client.get_slot()
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_latest_blockhash_parsed(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "jsonrpc": "2.0",
                    "id": 1,
                    "result": {"value": {"blockhash": "Hash111", "lastValidBlockHeight": 77}},
                },
            )

        client = RpcClient("http://rpc.test")
        client.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        try:
            assert await client.get_latest_blockhash() == ("Hash111", 77)
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_http_failure_surfaces_as_network_error(self):
        def handler(request):
            return httpx.Response(503)

        client = RpcClient("http://rpc.test")
        client.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(NetworkError):
                await client.get_version()
        finally:
            await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("result", [None, "1.18.0", ["1.18.0"]])
    async def test_malformed_version_surfaces_as_network_error(self, result):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})

        client = RpcClient("http://rpc.test")
        client.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(NetworkError, match="getVersion"):
                await client.get_version()
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_backup_with_malformed_version_is_treated_as_down(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": None})

        backup = RpcClient("http://backup.test")
        backup.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        gateway = make_gateway(FakeRpcClient("primary"), backup)
        try:
            assert await gateway.switch_to_backup() is False
            assert gateway.active_index == 1
        finally:
            await backup.close()
