import itertools

import pytest

from secretvote.abi import parse_signature
from secretvote.schemas import Poll, PollStatus, Task, TaskResult
from secretvote.status import EthStatus
from secretvote.tasks import TaskService

SENDER = "0x" + "1" * 40
LEDGER_ADDR = "0x" + "a" * 40


class FakeClock:
    def __init__(self, start: float = 1_000.0):
        self.t = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.t

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds


class ScriptedService(TaskService):
    """Replays a fixed status sequence; the last value repeats forever."""

    def __init__(self, statuses, output: str = ""):
        self.statuses = list(statuses)
        self.output = output
        self.observed: list = []
        self.result_calls = 0

    def deploy(self, sender, pre_code, fn, args, gas_limit):
        raise NotImplementedError

    def compute(self, sender, contract_address, fn, args, gas_limit):
        raise NotImplementedError

    def get_status(self, task):
        idx = min(len(self.observed), len(self.statuses) - 1)
        status = self.statuses[idx]
        self.observed.append(status)
        return status

    def get_result(self, task):
        self.result_calls += 1
        return TaskResult(task_id=task.task_id, output=self.output)

    def get_code_hash(self, contract_address):
        return "0x" + "ab" * 32


class FakeLedger:
    def __init__(self, clock: FakeClock, address: str = LEDGER_ADDR):
        self.clock = clock
        self.address = address
        self.sender = SENDER
        self.polls: list[Poll] = []

    def create_poll(self, quorum_percentage, description, duration_s):
        poll = Poll(
            id=len(self.polls),
            creator=self.sender,
            quorum_percentage=quorum_percentage,
            expiration_time=int(self.clock.now()) + duration_s,
            status=PollStatus.ONGOING,
            description=description,
        )
        self.polls.append(poll)
        return poll.id

    def get_poll(self, poll_id):
        return self.polls[poll_id]

    def get_polls(self):
        return list(self.polls)


class FakeNetwork(TaskService):
    """In-memory secret network running the voting contract rules."""

    def __init__(self, ledger: FakeLedger, pending_polls: int = 1):
        self.ledger = ledger
        self.pending_polls = pending_polls
        self.scripts: dict[str, list] = {}
        self.outputs: dict[str, str] = {}
        self.votes: set[tuple[int, str]] = set()
        self.deployed: set[str] = set()
        self.submitted: list[Task] = []
        self._ids = itertools.count(1)

    def _task(self, sender, contract_address, fn, statuses, is_deploy=False):
        task_id = "0x" + f"{next(self._ids):064x}"
        task = Task(
            task_id=task_id,
            sender=sender,
            contract_address=contract_address or task_id,
            fn=fn,
            selector="0x00000000",
            gas_limit=4_000_000,
            is_deploy=is_deploy,
        )
        self.scripts[task_id] = [EthStatus.CREATED] * self.pending_polls + list(statuses)
        self.submitted.append(task)
        return task

    def deploy(self, sender, pre_code, fn, args, gas_limit):
        task = self._task(sender, None, fn, [EthStatus.VERIFIED], is_deploy=True)
        self.deployed.add(task.contract_address)
        return task

    def compute(self, sender, contract_address, fn, args, gas_limit):
        name, _ = parse_signature(fn)
        values = [a[0] for a in args]
        if name == "cast_vote":
            poll_id, voter, _choice = values
            if (poll_id, voter) in self.votes:
                return self._task(sender, contract_address, fn, [EthStatus.FAILED])
            self.votes.add((poll_id, voter))
            return self._task(sender, contract_address, fn, [EthStatus.VERIFIED])
        if name == "tally_poll":
            (poll_id,) = values
            poll = self.ledger.polls[poll_id]
            if self.ledger.clock.now() <= poll.expiration_time:
                return self._task(sender, contract_address, fn, [EthStatus.FAILED_ETH])
            self.ledger.polls[poll_id] = poll.model_copy(update={"status": PollStatus.TALLIED})
            return self._task(sender, contract_address, fn, [EthStatus.VERIFIED])
        raise ValueError(f"unknown function {fn}")

    def get_status(self, task):
        script = self.scripts[task.task_id]
        return script.pop(0) if len(script) > 1 else script[0]

    def get_result(self, task):
        return TaskResult(task_id=task.task_id, output=self.outputs.get(task.task_id, ""))

    def get_code_hash(self, contract_address):
        if contract_address in self.deployed:
            return "0x" + "ab" * 32
        return "0x" + "00" * 32


def make_task(task_id: str = "0x" + "f" * 64, fn: str = "cast_vote(uint256,bytes32,uint256)") -> Task:
    return Task(task_id=task_id, sender=SENDER, contract_address="0x" + "c" * 64,
                fn=fn, selector="0x00000000", gas_limit=4_000_000)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def task():
    return make_task()


@pytest.fixture
def scripted():
    return ScriptedService


@pytest.fixture
def ledger(clock):
    return FakeLedger(clock)


@pytest.fixture
def network(ledger):
    return FakeNetwork(ledger)
