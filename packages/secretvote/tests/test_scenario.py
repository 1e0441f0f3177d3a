import pytest

from secretvote.poller import WrongTerminalStatusError
from secretvote.scenario import VOTER_1, VOTER_2, ScenarioError, VotingScenario
from secretvote.schemas import PollStatus
from secretvote.status import EthStatus


@pytest.fixture
def wasm(tmp_path):
    path = tmp_path / "voting.wasm"
    path.write_bytes(b"\x00asm\x01\x00\x00\x00")
    return str(path)


@pytest.fixture
def scenario(network, ledger, clock, tmp_path):
    return VotingScenario(
        network,
        ledger,
        addr_file=str(tmp_path / "enigma" / "addr-voting.txt"),
        interval=1,
        sleep=clock.sleep,
        now=clock.now,
    )


def test_full_voting_run(scenario, network, ledger, clock, wasm, tmp_path):
    summary = scenario.run(wasm)

    assert summary["double_vote"] == "FAILED"
    assert summary["poll_status"] == 2
    assert summary["poll_id"] == 0
    assert (tmp_path / "enigma" / "addr-voting.txt").read_text() == summary["sc_addr"]
    assert ledger.polls[0].status is PollStatus.TALLIED
    assert clock.now() > ledger.polls[0].expiration_time
    assert [t.fn for t in network.submitted] == [
        "construct(address)",
        "cast_vote(uint256,bytes32,uint256)",
        "cast_vote(uint256,bytes32,uint256)",
        "cast_vote(uint256,bytes32,uint256)",
        "tally_poll(uint256)",
    ]


def test_deploy_records_address(scenario, network, wasm):
    sc_addr = scenario.deploy(wasm)
    assert sc_addr == network.submitted[0].task_id
    assert network.submitted[0].is_deploy


def test_deploy_without_code_hash(scenario, network, wasm, monkeypatch):
    monkeypatch.setattr(network, "get_code_hash", lambda addr: "0x" + "00" * 32)
    with pytest.raises(ScenarioError, match="not deployed"):
        scenario.deploy(wasm)


def test_double_vote_is_rejected(scenario, wasm):
    scenario.deploy(wasm)
    scenario.create_poll()
    scenario.cast_vote(VOTER_1, 1)
    assert scenario.cast_vote_rejected(VOTER_1, 0) is EthStatus.FAILED
    scenario.cast_vote(VOTER_2, 0)


def test_first_vote_expected_to_fail_but_succeeds(scenario, wasm):
    scenario.deploy(wasm)
    scenario.create_poll()
    with pytest.raises(WrongTerminalStatusError):
        scenario.cast_vote_rejected(VOTER_1, 0)


def test_repeated_vote_expected_to_succeed(scenario, wasm):
    scenario.deploy(wasm)
    scenario.create_poll()
    scenario.cast_vote(VOTER_1, 1)
    with pytest.raises(WrongTerminalStatusError):
        scenario.cast_vote(VOTER_1, 1)


def test_vote_with_output_fails(scenario, network, wasm, monkeypatch):
    scenario.deploy(wasm)
    scenario.create_poll()
    submit = network.compute

    def compute_with_output(*args, **kwargs):
        task = submit(*args, **kwargs)
        network.outputs[task.task_id] = "unexpected"
        return task

    monkeypatch.setattr(network, "compute", compute_with_output)
    with pytest.raises(ScenarioError, match="empty output"):
        scenario.cast_vote(VOTER_1, 1)


def test_vote_requires_deploy(scenario):
    with pytest.raises(RuntimeError):
        scenario.cast_vote(VOTER_1, 1)


def test_tally_waits_for_expiration(scenario, ledger, clock, wasm):
    scenario.deploy(wasm)
    scenario.create_poll(duration_s=30)
    expiration = ledger.polls[0].expiration_time
    poll = scenario.tally()
    assert poll.status is PollStatus.TALLIED
    assert clock.now() > expiration


def test_tally_requires_ongoing_poll(scenario, ledger, wasm):
    scenario.deploy(wasm)
    scenario.create_poll()
    ledger.polls[0] = ledger.polls[0].model_copy(update={"status": PollStatus.TALLIED})
    with pytest.raises(ScenarioError, match="expected"):
        scenario.tally()


def test_tally_not_applied(scenario, network, ledger, wasm, monkeypatch):
    scenario.deploy(wasm)
    scenario.create_poll()
    submit = network.compute

    def compute_without_tally(sender, contract_address, fn, args, gas_limit):
        task = submit(sender, contract_address, fn, args, gas_limit)
        ledger.polls[0] = ledger.polls[0].model_copy(update={"status": PollStatus.ONGOING})
        return task

    monkeypatch.setattr(network, "compute", compute_without_tally)
    with pytest.raises(ScenarioError):
        scenario.tally()
