import json
import logging
import os
import time
from pathlib import Path

from eth_account import Account
from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from .schemas import Poll

# --- Configuration ---
EVM_RPC = os.getenv("EVM_RPC", "http://127.0.0.1:8545")
MAX_RETRIES = int(os.getenv("EVM_MAX_RETRIES", "0"))  # 0 means wait forever
CHAIN_ID = int(os.getenv("CHAIN_ID", "31337"))
PRIVATE_KEY = os.getenv("ORCHESTRATOR_KEY")
VOTING_ETH_ADDRESS = os.getenv("VOTING_ETH_ADDRESS", "0x" + "0" * 40)
VOTING_ETH_ARTIFACT = os.getenv("VOTING_ETH_ARTIFACT")
SC_ADDR_FILE = os.getenv("SC_ADDR_FILE", "/tmp/enigma/addr-voting.txt")
TX_GAS = int(os.getenv("TX_GAS", "4712388"))
TX_GAS_PRICE = int(os.getenv("TX_GAS_PRICE", "100000000000"))
RPC_RETRY_S = 3

# minimal ABI for the poll functions
VOTING_ABI = [
    {
        "inputs": [
            {"internalType": "uint256", "name": "_quorumPercentage", "type": "uint256"},
            {"internalType": "string", "name": "_description", "type": "string"},
            {"internalType": "uint256", "name": "_pollPeriod", "type": "uint256"},
        ],
        "name": "createPoll", "outputs": [], "stateMutability": "nonpayable", "type": "function",
    },
    {
        "inputs": [],
        "name": "getPolls",
        "outputs": [{
            "components": [
                {"internalType": "address", "name": "creator", "type": "address"},
                {"internalType": "uint256", "name": "quorumPercentage", "type": "uint256"},
                {"internalType": "uint256", "name": "expirationTime", "type": "uint256"},
                {"internalType": "uint8", "name": "status", "type": "uint8"},
                {"internalType": "string", "name": "description", "type": "string"},
            ],
            "internalType": "struct VotingETH.Poll[]", "name": "", "type": "tuple[]",
        }],
        "stateMutability": "view", "type": "function",
    },
]

log = logging.getLogger(__name__)


def connect_w3(rpc: str = EVM_RPC, max_retries: int = MAX_RETRIES, sleep=time.sleep) -> Web3:
    """Connect to the EVM provider, waiting if necessary."""
    w3 = Web3(Web3.HTTPProvider(rpc))
    w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    retries = 0
    while not w3.is_connected():
        retries += 1
        if 0 < max_retries <= retries:
            raise ConnectionError(f"EVM RPC not reachable after {retries} retries.")
        log.info("waiting for EVM RPC at %s", rpc)
        sleep(RPC_RETRY_S)
    log.info("connected to EVM RPC at %s", rpc)
    return w3


def load_abi(artifact_path: str | None = VOTING_ETH_ARTIFACT) -> list:
    """ABI from a compiled artifact when configured, else the built-in subset."""
    if not artifact_path:
        return VOTING_ABI
    if not os.path.exists(artifact_path):
        raise RuntimeError(f"Could not load contract ABI from {artifact_path}")
    with open(artifact_path) as f:
        return json.load(f)["abi"]


def save_contract_address(address: str, path: str = SC_ADDR_FILE) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(address, encoding="utf-8")
    return target


def load_contract_address(path: str = SC_ADDR_FILE) -> str:
    return Path(path).read_text(encoding="utf-8").strip()


class VotingLedger:
    """Public ledger contract holding the poll state."""

    def __init__(self, w3: Web3, address: str = VOTING_ETH_ADDRESS,
                 private_key: str | None = PRIVATE_KEY, abi: list | None = None):
        self.w3 = w3
        self.address = Web3.to_checksum_address(address)
        self.contract = w3.eth.contract(address=self.address, abi=abi or load_abi())
        self.account = Account.from_key(private_key) if private_key else None

    @property
    def sender(self) -> str:
        if self.account is not None:
            return self.account.address
        return self.w3.eth.accounts[0]

    def get_polls(self) -> list[Poll]:
        raw = self.contract.functions.getPolls().call()
        return [Poll.from_chain(i, p) for i, p in enumerate(raw)]

    def get_poll(self, poll_id: int) -> Poll:
        polls = self.get_polls()
        if not 0 <= poll_id < len(polls):
            raise IndexError(f"poll {poll_id} does not exist ({len(polls)} polls)")
        return polls[poll_id]

    def _send(self, fn):
        if self.account is not None:
            tx = fn.build_transaction({
                "from": self.account.address,
                "nonce": self.w3.eth.get_transaction_count(self.account.address),
                "gas": TX_GAS,
                "gasPrice": TX_GAS_PRICE,
                "chainId": CHAIN_ID,
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        else:
            tx_hash = fn.transact({"from": self.sender, "gas": TX_GAS, "gasPrice": TX_GAS_PRICE})
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=120)
        if receipt.status != 1:
            raise RuntimeError(f"On-chain transaction reverted. Tx hash: {Web3.to_hex(tx_hash)}")
        return receipt

    def create_poll(self, quorum_percentage: int, description: str, duration_s: int) -> int:
        """Create a poll and return its id (its index in ``getPolls()``)."""
        before = len(self.contract.functions.getPolls().call())
        receipt = self._send(self.contract.functions.createPoll(quorum_percentage, description, duration_s))
        polls = self.contract.functions.getPolls().call()
        if len(polls) - before != 1:
            raise RuntimeError(f"expected one new poll, found {len(polls) - before}")
        poll_id = len(polls) - 1
        log.info("created poll %d in block %s: %s", poll_id, receipt.blockNumber, description)
        return poll_id
