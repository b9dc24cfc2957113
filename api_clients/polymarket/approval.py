"""
On-chain USDC approval client backed by ``web3``.

Reads the ERC-20 allowance granted to the Polymarket exchange spender and
submits approval transactions for a direct (EOA) signer. Blocking RPC calls run
in worker threads. Install with the ``live`` extra.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from api_clients.base import ApprovalClient


logger = logging.getLogger(__name__)

USDC_TOKEN_ADDRESS = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"
CTF_SPENDER_ADDRESS = "0x4d97dcd97ec945f40cf65f87097ace5ea0476045"
MAX_UINT256 = 2 ** 256 - 1

ERC20_ABI = [
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]


class Web3ApprovalClient(ApprovalClient):
    """USDC allowance reads and approvals over JSON-RPC."""

    def __init__(
        self,
        rpc_url: str,
        chain_id: int,
        private_key: Optional[str] = None,
        token_address: str = USDC_TOKEN_ADDRESS,
        spender_address: str = CTF_SPENDER_ADDRESS,
        timeout_s: float = 30.0,
        receipt_timeout_s: float = 180.0,
    ):
        from web3 import Web3

        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout_s}))
        self.chain_id = chain_id
        self.spender = Web3.to_checksum_address(spender_address)
        self.token = self.w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_ABI)
        self.receipt_timeout_s = receipt_timeout_s
        self._account = self.w3.eth.account.from_key(private_key) if private_key else None

    @property
    def signer_address(self) -> Optional[str]:
        return self._account.address if self._account else None

    def _read_allowance_sync(self, owner: str) -> int:
        from web3 import Web3

        return int(self.token.functions.allowance(Web3.to_checksum_address(owner), self.spender).call())

    async def read_allowance(self, owner: str) -> int:
        return await asyncio.to_thread(self._read_allowance_sync, owner)

    def _approve_sync(self, amount_micro: Optional[int]) -> str:
        if self._account is None:
            raise RuntimeError("signer unavailable for approval")
        amount = MAX_UINT256 if amount_micro is None else int(amount_micro)
        address = self._account.address
        tx = self.token.functions.approve(self.spender, amount).build_transaction(
            {
                "from": address,
                "nonce": self.w3.eth.get_transaction_count(address),
                "chainId": self.chain_id,
            }
        )
        if "gas" in tx:
            tx["gas"] = int(tx["gas"] * 120 // 100)
        signed = self._account.sign_transaction(tx)
        raw = getattr(signed, "raw_transaction", None) or getattr(signed, "rawTransaction")
        tx_hash = self.w3.eth.send_raw_transaction(raw)
        return tx_hash.hex() if hasattr(tx_hash, "hex") else str(tx_hash)

    async def approve(self, amount_micro: Optional[int]) -> str:
        return await asyncio.to_thread(self._approve_sync, amount_micro)

    def _wait_sync(self, tx_hash: str) -> Dict[str, Any]:
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout_s)
        return {
            "transaction_hash": tx_hash,
            "block_number": receipt.get("blockNumber"),
            "status": receipt.get("status"),
        }

    async def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self._wait_sync, tx_hash)
