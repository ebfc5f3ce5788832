from __future__ import annotations

import base64
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .errors import NetworkError


class RpcClient:
    """Thin async JSON-RPC client for one Solana endpoint."""

    def __init__(self, rpc_url: str, timeout_s: float = 60.0) -> None:
        self.rpc_url = rpc_url
        self.client = httpx.AsyncClient(timeout=timeout_s)
        self._request_id = 0

    async def close(self) -> None:
        await self.client.aclose()

    async def _post(self, method: str, params: List[Any]) -> Dict[str, Any]:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }
        try:
            resp = await self.client.post(self.rpc_url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise NetworkError(f"{method} failed: {e}") from e
        if "error" in data:
            raise NetworkError(f"RPC error from {method}: {data['error']}")
        return data

    async def get_version(self) -> str:
        data = await self._post("getVersion", [])
        result = data.get("result")
        if not isinstance(result, dict):
            raise NetworkError("getVersion returned no version.")
        return str(result.get("solana-core", "unknown"))

    async def get_slot(self, commitment: str = "finalized") -> int:
        """Returns the current slot."""
        data = await self._post("getSlot", [{"commitment": commitment}])
        return int(data["result"])

    async def get_latest_blockhash(self, commitment: str = "confirmed") -> Tuple[str, int]:
        """Returns (blockhash, last valid block height)."""
        data = await self._post("getLatestBlockhash", [{"commitment": commitment}])
        value = (data.get("result") or {}).get("value")
        if not value or "blockhash" not in value:
            raise NetworkError("getLatestBlockhash returned no blockhash.")
        return value["blockhash"], int(value.get("lastValidBlockHeight", 0))

    async def get_token_supply(self, mint: str) -> int:
        """Total supply of a mint in raw units."""
        data = await self._post("getTokenSupply", [mint])
        value = (data.get("result") or {}).get("value")
        if not value or "amount" not in value:
            raise NetworkError(f"getTokenSupply returned no amount for {mint}.")
        return int(value["amount"])

    async def get_program_accounts_base64(
        self,
        program_id: str,
        mint: str,
        classic_token_program: bool,
    ) -> List[str]:
        """
        Returns base64 strings for account data.
        Note: For classic SPL Token accounts, we enforce dataSize=165.
        Token-2022 accounts can vary due to extensions.
        """
        filters: List[Dict[str, Any]] = [{"memcmp": {"offset": 0, "bytes": mint}}]
        if classic_token_program:
            filters.append({"dataSize": 165})

        data = await self._post(
            "getProgramAccounts",
            [program_id, {"encoding": "base64", "filters": filters}],
        )
        out: List[str] = []
        for item in data.get("result") or []:
            # item['account']['data'] is [base64_str, "base64"]
            out.append(item["account"]["data"][0])
        return out

    async def get_account_data(self, address: str) -> Optional[bytes]:
        """Raw account data, or None when the account does not exist."""
        data = await self._post("getAccountInfo", [address, {"encoding": "base64"}])
        value = (data.get("result") or {}).get("value")
        if value is None:
            return None
        return base64.b64decode(value["data"][0])

    async def get_token_accounts_by_owner_base64(self, owner: str, mint: str) -> List[str]:
        data = await self._post(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "base64"}],
        )
        value = (data.get("result") or {}).get("value") or []
        return [item["account"]["data"][0] for item in value]

    async def send_transaction(self, raw_tx: bytes) -> str:
        """Submits a signed transaction and returns its signature."""
        encoded = base64.b64encode(raw_tx).decode("ascii")
        data = await self._post(
            "sendTransaction",
            [encoded, {"encoding": "base64", "skipPreflight": False, "preflightCommitment": "confirmed"}],
        )
        return str(data["result"])

    async def get_signature_status(self, signature: str) -> Optional[Dict[str, Any]]:
        data = await self._post(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": False}],
        )
        statuses = (data.get("result") or {}).get("value") or [None]
        return statuses[0]
