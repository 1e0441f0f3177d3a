import itertools
import logging
import os
import threading
from abc import ABC, abstractmethod

import requests
from web3 import Web3

from .abi import encode_args, selector
from .poller import UnexpectedStatusError
from .schemas import Task, TaskResult
from .status import EthStatus

ENIGMA_PROXY_URL = os.getenv("ENIGMA_PROXY_URL", "http://localhost:3346")
ENIGMA_CONTRACT = os.getenv("ENIGMA_CONTRACT", "0x" + "0" * 40)
RPC_TIMEOUT_S = float(os.getenv("ENIGMA_RPC_TIMEOUT_S", "10"))

# minimal ABI for reading task records off the network contract
NETWORK_ABI = [{
    "inputs": [{"internalType": "bytes32", "name": "_taskId", "type": "bytes32"}],
    "name": "getTaskRecord",
    "outputs": [{
        "components": [
            {"internalType": "address", "name": "sender", "type": "address"},
            {"internalType": "bytes32", "name": "inputsHash", "type": "bytes32"},
            {"internalType": "bytes32", "name": "outputHash", "type": "bytes32"},
            {"internalType": "uint256", "name": "gasLimit", "type": "uint256"},
            {"internalType": "uint256", "name": "gasPx", "type": "uint256"},
            {"internalType": "uint256", "name": "blockNumber", "type": "uint256"},
            {"internalType": "uint8", "name": "status", "type": "uint8"},
            {"internalType": "bytes", "name": "proof", "type": "bytes"},
        ],
        "internalType": "struct TaskRecord", "name": "", "type": "tuple",
    }],
    "stateMutability": "view", "type": "function",
}, {
    "inputs": [{"internalType": "bytes32", "name": "_scAddr", "type": "bytes32"}],
    "name": "getCodeHash",
    "outputs": [{"internalType": "bytes32", "name": "", "type": "bytes32"}],
    "stateMutability": "view", "type": "function",
}]
_STATUS_FIELD = 6

log = logging.getLogger(__name__)


class TaskServiceError(RuntimeError):
    pass


class TaskService(ABC):
    """Submission and status side of the secret compute network."""

    @abstractmethod
    def deploy(self, sender: str, pre_code: bytes, fn: str, args, gas_limit: int) -> Task:
        ...

    @abstractmethod
    def compute(self, sender: str, contract_address: str, fn: str, args, gas_limit: int) -> Task:
        ...

    @abstractmethod
    def get_status(self, task: Task) -> EthStatus:
        ...

    @abstractmethod
    def get_result(self, task: Task) -> TaskResult:
        ...

    @abstractmethod
    def get_code_hash(self, contract_address: str) -> str:
        """Hex code hash of a deployed secret contract; zero when absent."""


def _identity(data: bytes) -> bytes:
    return data


def _plain_output(output: str) -> str:
    if not output:
        return ""
    hex_output = output[2:] if output.startswith("0x") else output
    return bytes.fromhex(hex_output).decode()


class EnigmaTaskService(TaskService):
    """Talks JSON-RPC to the network proxy and reads task records via web3.

    ``encrypt`` is applied to the function name and encoded arguments
    before they leave the process; ``decrypt`` turns a result's hex output
    into the observable string. Both default to plaintext.
    """

    def __init__(self, w3: Web3, proxy_url: str = ENIGMA_PROXY_URL,
                 network_address: str = ENIGMA_CONTRACT, encrypt=_identity, decrypt=_plain_output):
        self.w3 = w3
        self.proxy_url = proxy_url
        self.network = w3.eth.contract(address=Web3.to_checksum_address(network_address), abi=NETWORK_ABI)
        self.encrypt = encrypt
        self.decrypt = decrypt
        self._ids = itertools.count(1)
        self._nonces: dict[str, int] = {}
        self._lock = threading.Lock()

    def _rpc(self, method: str, params: dict):
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        resp = requests.post(self.proxy_url, json=payload, timeout=RPC_TIMEOUT_S)
        resp.raise_for_status()
        body = resp.json()
        if body.get("error"):
            raise TaskServiceError(f"{method} failed: {body['error']}")
        return body.get("result")

    def _next_nonce(self, sender: str) -> int:
        with self._lock:
            if sender not in self._nonces:
                self._nonces[sender] = self.w3.eth.get_transaction_count(sender)
            nonce = self._nonces[sender]
            self._nonces[sender] = nonce + 1
        return nonce

    def _new_task(self, sender: str, target: bytes, fn: str, args, gas_limit: int,
                  contract_address: str | None) -> tuple[Task, bytes]:
        sender = Web3.to_checksum_address(sender)
        sel = selector(fn)
        encoded = encode_args(fn, args)
        inputs_hash = Web3.keccak(sel + encoded + Web3.keccak(target))
        task_id = Web3.to_hex(Web3.solidity_keccak(
            ["bytes32", "address", "uint256"], [inputs_hash, sender, self._next_nonce(sender)]
        ))
        task = Task(
            task_id=task_id,
            sender=sender,
            contract_address=contract_address or task_id,
            fn=fn,
            selector=Web3.to_hex(sel),
            encoded_args=Web3.to_hex(encoded),
            gas_limit=gas_limit,
            is_deploy=contract_address is None,
        )
        return task, encoded

    def deploy(self, sender, pre_code, fn, args, gas_limit):
        task, encoded = self._new_task(sender, pre_code, fn, args, gas_limit, None)
        self._rpc("deploySecretContract", {
            "taskId": task.task_id,
            "preCode": Web3.to_hex(pre_code),
            "encryptedFn": Web3.to_hex(self.encrypt(fn.encode())),
            "encryptedArgs": Web3.to_hex(self.encrypt(encoded)),
            "gasLimit": gas_limit,
            "sender": task.sender,
        })
        log.info("submitted deployment task %s", task.task_id)
        return task

    def compute(self, sender, contract_address, fn, args, gas_limit):
        target = Web3.to_bytes(hexstr=contract_address)
        task, encoded = self._new_task(sender, target, fn, args, gas_limit, contract_address)
        self._rpc("sendTaskInput", {
            "taskId": task.task_id,
            "contractAddress": contract_address,
            "encryptedFn": Web3.to_hex(self.encrypt(fn.encode())),
            "encryptedArgs": Web3.to_hex(self.encrypt(encoded)),
            "gasLimit": gas_limit,
            "sender": task.sender,
        })
        log.info("submitted compute task %s: %s", task.task_id, fn)
        return task

    def get_status(self, task):
        record = self.network.functions.getTaskRecord(Web3.to_bytes(hexstr=task.task_id)).call()
        raw = record[_STATUS_FIELD]
        try:
            return EthStatus(int(raw))
        except ValueError:
            raise UnexpectedStatusError(raw, EthStatus.CREATED, task.task_id)

    def get_code_hash(self, contract_address):
        raw = self.network.functions.getCodeHash(Web3.to_bytes(hexstr=contract_address)).call()
        return Web3.to_hex(raw)

    def get_result(self, task):
        result = self._rpc("getTaskResult", {"taskId": task.task_id}) or {}
        return TaskResult(
            task_id=task.task_id,
            output=self.decrypt(result.get("output") or ""),
            used_gas=result.get("usedGas"),
        )
