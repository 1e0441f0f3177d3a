"""
End-to-end secret voting workflow.

Deploys the voting secret contract, opens a poll on the public ledger,
casts votes as compute tasks (including a rejected double vote), waits for
the poll to expire and tallies it.
"""
import logging
import os
import time
from pathlib import Path

from .ledger import SC_ADDR_FILE, VotingLedger, save_contract_address
from .poller import POLL_INTERVAL_S, await_failure, await_success, poll_until
from .schemas import Poll, PollStatus
from .status import EthStatus
from .tasks import TaskService

DEPLOY_GAS = int(os.getenv("DEPLOY_GAS", "4000000"))
COMPUTE_GAS = int(os.getenv("COMPUTE_GAS", "4000000"))
TIMEOUT_DEPLOY_S = float(os.getenv("TIMEOUT_DEPLOY_S", "600"))
TIMEOUT_COMPUTE_S = float(os.getenv("TIMEOUT_COMPUTE_S", "300"))

CONSTRUCT = "construct(address)"
CAST_VOTE = "cast_vote(uint256,bytes32,uint256)"
TALLY_POLL = "tally_poll(uint256)"

VOTER_1 = "0x" + "0" * 63 + "1"
VOTER_2 = "0x" + "0" * 63 + "2"

log = logging.getLogger(__name__)


class ScenarioError(AssertionError):
    pass


def _expect_void(output: str) -> None:
    if output != "":
        raise ScenarioError(f"expected empty output from a void function, got {output!r}")


class VotingScenario:
    def __init__(self, tasks: TaskService, ledger: VotingLedger, sender: str | None = None, *,
                 addr_file: str = SC_ADDR_FILE, interval: float = POLL_INTERVAL_S,
                 deploy_timeout: float | None = TIMEOUT_DEPLOY_S,
                 compute_timeout: float | None = TIMEOUT_COMPUTE_S,
                 sleep=None, now=time.time):
        self.tasks = tasks
        self.ledger = ledger
        self.sender = sender or ledger.sender
        self.addr_file = addr_file
        self.interval = interval
        self.deploy_timeout = deploy_timeout
        self.compute_timeout = compute_timeout
        self.sleep = sleep
        self.now = now
        self.sc_addr: str | None = None
        self.poll_id: int | None = None

    def _poll_kwargs(self, timeout):
        return {"interval": self.interval, "timeout": timeout, "sleep": self.sleep}

    def _require_setup(self):
        if self.sc_addr is None or self.poll_id is None:
            raise RuntimeError("deploy the secret contract and create a poll first")

    def deploy(self, wasm_path: str) -> str:
        pre_code = Path(wasm_path).read_bytes()
        task = self.tasks.deploy(self.sender, pre_code, CONSTRUCT, [[self.ledger.address, "address"]], DEPLOY_GAS)
        self.sc_addr = task.contract_address
        save_contract_address(self.sc_addr, self.addr_file)

        await_success(self.tasks, task, EthStatus.CREATED, **self._poll_kwargs(self.deploy_timeout))

        # a non-zero code hash also means the contract is registered as deployed
        code_hash = self.tasks.get_code_hash(self.sc_addr)
        if not code_hash or int(code_hash, 16) == 0:
            raise ScenarioError(f"secret contract {self.sc_addr} is not deployed")
        log.info("secret contract deployed at %s", self.sc_addr)
        return self.sc_addr

    def create_poll(self, quorum_percentage: int = 50, question: str = "Is privacy important?",
                    duration_s: int = 30) -> int:
        self.poll_id = self.ledger.create_poll(quorum_percentage, question, duration_s)
        return self.poll_id

    def _vote_task(self, voter: str, choice: int):
        self._require_setup()
        return self.tasks.compute(
            self.sender,
            self.sc_addr,
            CAST_VOTE,
            [[self.poll_id, "uint256"], [voter, "bytes32"], [choice, "uint256"]],
            COMPUTE_GAS,
        )

    def cast_vote(self, voter: str, choice: int):
        task = self._vote_task(voter, choice)
        return await_success(self.tasks, task, EthStatus.CREATED, _expect_void,
                             **self._poll_kwargs(self.compute_timeout))

    def cast_vote_rejected(self, voter: str, choice: int, expected: EthStatus = EthStatus.FAILED) -> EthStatus:
        task = self._vote_task(voter, choice)
        return await_failure(self.tasks, task, expected, **self._poll_kwargs(self.compute_timeout))

    def wait_for_expiration(self, poll: Poll) -> float:
        log.info("waiting for poll %d to expire at %d", poll.id, poll.expiration_time)
        return poll_until(
            self.now,
            lambda t: t > poll.expiration_time,
            interval=self.interval,
            sleep=self.sleep,
            clock=self.now,
        )

    def tally(self) -> Poll:
        self._require_setup()
        before = self.ledger.get_poll(self.poll_id)
        if before.status != PollStatus.ONGOING:
            raise ScenarioError(f"poll {self.poll_id} status is {before.status}, expected {PollStatus.ONGOING}")
        self.wait_for_expiration(before)

        task = self.tasks.compute(self.sender, self.sc_addr, TALLY_POLL, [[self.poll_id, "uint256"]], COMPUTE_GAS)
        await_success(self.tasks, task, EthStatus.CREATED, _expect_void, **self._poll_kwargs(self.compute_timeout))

        after = self.ledger.get_poll(self.poll_id)
        if after.status != PollStatus.TALLIED:
            raise ScenarioError(f"poll {self.poll_id} status is {after.status}, expected {PollStatus.TALLIED}")
        return after

    def run(self, wasm_path: str) -> dict:
        self.deploy(wasm_path)
        self.create_poll()
        self.cast_vote(VOTER_1, 1)
        rejected = self.cast_vote_rejected(VOTER_1, 0)
        self.cast_vote(VOTER_2, 0)
        poll = self.tally()
        return {
            "sc_addr": self.sc_addr,
            "poll_id": self.poll_id,
            "double_vote": rejected.name,
            "poll_status": int(poll.status),
        }
