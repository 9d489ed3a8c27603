import os
import re
import asyncio
import logging
from dataclasses import dataclass

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError

logger = logging.getLogger(__name__)

PROVIDER_URL = os.getenv("PROVIDER_URL", "https://rpc.ankr.com/polygon")
CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS", "0x4A5340cBB1e2D000357880fFBaC8AA5B6Cf557fD")
GAS_MULTIPLIER = float(os.getenv("GAS_MULTIPLIER", "1.2"))
GAS_LIMIT_FALLBACK = int(os.getenv("GAS_LIMIT_FALLBACK", "500000"))
RECEIPT_TIMEOUT_SECONDS = float(os.getenv("RECEIPT_TIMEOUT_SECONDS", "300"))

BADGE_ABI = [
    {
        "name": "mintInsignia",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "id", "type": "uint256"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "account", "type": "address"},
            {"name": "id", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class MintError(Exception):
    """Mint could not be submitted. str(exc) is safe to show to the user."""


class InsufficientFundsError(MintError):
    pass


class ContractRejectedError(MintError):
    pass


@dataclass
class MintOutcome:
    already_owned: bool
    tx_hash: str | None = None
    gas_limit: int | None = None


def normalize_address(value: str | None) -> str | None:
    """Checksummed form of a 0x-prefixed 20-byte hex address, None if malformed."""
    value = (value or "").strip()
    if not _ADDRESS_RE.match(value):
        return None
    return Web3.to_checksum_address(value.lower())


class BadgeContract:
    """Thin async wrapper around the ERC-1155 badge contract."""

    def __init__(self, w3: AsyncWeb3, address: str, private_key: str | None = None):
        self.w3 = w3
        self.address = Web3.to_checksum_address(address)
        self.contract = w3.eth.contract(address=self.address, abi=BADGE_ABI)
        self.account = Account.from_key(private_key) if private_key else None

    @classmethod
    def from_env(cls) -> "BadgeContract":
        private_key = os.getenv("ADMIN_PRIVATE_KEY")
        if private_key and not private_key.startswith("0x"):
            private_key = "0x" + private_key
        w3 = AsyncWeb3(AsyncHTTPProvider(PROVIDER_URL))
        contract = cls(w3, CONTRACT_ADDRESS, private_key)
        if contract.account:
            logger.info(f"Badge issuer active on {PROVIDER_URL}. Wallet: {contract.account.address}")
        else:
            logger.error("ADMIN_PRIVATE_KEY missing: balances can be read but minting is disabled")
        return contract

    @property
    def can_mint(self) -> bool:
        return self.account is not None

    async def balance_of(self, wallet: str, badge_id: str) -> int:
        return int(await self.contract.functions.balanceOf(wallet, int(badge_id)).call())

    async def estimate_mint_gas(self, wallet: str, badge_id: str) -> int:
        fn = self.contract.functions.mintInsignia(wallet, int(badge_id), 1)
        return int(await fn.estimate_gas({"from": self.account.address}))

    async def send_mint(self, wallet: str, badge_id: str, gas_limit: int) -> str:
        """Sign and broadcast mintInsignia(wallet, id, 1). Returns as soon as the node accepts it."""
        nonce = await self.w3.eth.get_transaction_count(self.account.address, "pending")
        fn = self.contract.functions.mintInsignia(wallet, int(badge_id), 1)
        tx = await fn.build_transaction({
            "from": self.account.address,
            "nonce": nonce,
            "gas": gas_limit,
        })
        signed = self.account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)

    async def watch_receipt(self, tx_hash: str) -> None:
        """Log how a broadcast mint ended up. Nothing waits on this."""
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=RECEIPT_TIMEOUT_SECONDS)
        except Exception as e:
            logger.warning(f"No receipt for {tx_hash}: {e}")
            return
        if receipt["status"] == 1:
            logger.info(f"Mint {tx_hash} confirmed in block {receipt['blockNumber']}")
        else:
            logger.error(f"Mint {tx_hash} reverted in block {receipt['blockNumber']}")


async def check_ownership(contract: BadgeContract | None, wallet: str, badge_ids: list[str]) -> dict[str, bool]:
    """Ask the contract for every badge at once; a failed read counts as not owned."""
    if contract is None:
        return {badge_id: False for badge_id in badge_ids}

    async def owned(badge_id: str) -> bool:
        try:
            return await contract.balance_of(wallet, badge_id) > 0
        except Exception as e:
            logger.warning(f"Error reading balance of badge {badge_id} for {wallet}: {e}")
            return False

    results = await asyncio.gather(*(owned(badge_id) for badge_id in badge_ids))
    return dict(zip(badge_ids, results))


def describe_chain_error(error: Exception) -> MintError:
    if "insufficient funds" in str(error).lower():
        return InsufficientFundsError("Fondos insuficientes para pagar el gas de la emisión.")
    if isinstance(error, ContractLogicError):
        reason = getattr(error, "message", None) or error
        return ContractRejectedError(f"El contrato rechazó la emisión: {reason}")
    return MintError(f"Fallo Blockchain: {error}")


async def issue_badge(contract: BadgeContract, wallet: str, badge_id: str) -> MintOutcome:
    """Mint one unit of badge_id to wallet unless the wallet already holds it.

    Nothing is retried; any chain failure is raised as a MintError.
    """
    if not contract.can_mint:
        raise MintError("Error interno: Sin contrato.")

    try:
        balance = await contract.balance_of(wallet, badge_id)
    except Exception as e:
        logger.error(f"Balance check failed for badge {badge_id} / {wallet}: {e}", exc_info=True)
        raise describe_chain_error(e) from e

    if balance > 0:
        logger.info(f"{wallet} already holds badge {badge_id}, nothing to mint")
        return MintOutcome(already_owned=True)

    try:
        gas_limit = int(await contract.estimate_mint_gas(wallet, badge_id) * GAS_MULTIPLIER)
    except ContractLogicError as e:
        # the call would revert on-chain, so nothing is sent
        logger.error(f"Contract rejected mint of badge {badge_id} to {wallet}: {e}")
        raise describe_chain_error(e) from e
    except Exception as e:
        logger.warning(f"Gas estimation failed for badge {badge_id}, using {GAS_LIMIT_FALLBACK}: {e}")
        gas_limit = GAS_LIMIT_FALLBACK

    try:
        tx_hash = await contract.send_mint(wallet, badge_id, gas_limit)
    except Exception as e:
        logger.error(f"Mint of badge {badge_id} to {wallet} failed: {e}", exc_info=True)
        raise describe_chain_error(e) from e

    logger.info(f"Mint tx sent to mempool: {tx_hash} (badge {badge_id}, gas {gas_limit})")
    return MintOutcome(already_owned=False, tx_hash=tx_hash, gas_limit=gas_limit)
