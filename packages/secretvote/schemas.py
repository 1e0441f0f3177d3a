from enum import IntEnum
from typing import Any, Optional

from pydantic import BaseModel, Field

from .status import EthStatus


# --- Schemas for secret contract tasks ---

class TaskArg(BaseModel):
    value: Any
    abi_type: str = Field(..., example="uint256")

    @classmethod
    def of(cls, pair) -> "TaskArg":
        if isinstance(pair, TaskArg):
            return pair
        value, abi_type = pair
        return cls(value=value, abi_type=abi_type)


class Task(BaseModel):
    task_id: str = Field(..., example="0x" + "a" * 64)
    sender: str
    # for deployments this is the task id itself
    contract_address: str
    fn: str = Field(..., example="cast_vote(uint256,bytes32,uint256)")
    selector: str = Field(..., example="0x12345678")
    encoded_args: str = "0x"
    gas_limit: int
    is_deploy: bool = False
    status: EthStatus = EthStatus.CREATED


class TaskResult(BaseModel):
    task_id: str
    output: str = ""
    used_gas: Optional[int] = None


# --- Schemas for the voting ledger ---

class PollStatus(IntEnum):
    OPEN = 0
    # voting allowed until expiration_time
    ONGOING = 1
    TALLIED = 2


class Poll(BaseModel):
    id: int
    creator: str
    quorum_percentage: int
    expiration_time: int
    status: PollStatus
    description: str

    @classmethod
    def from_chain(cls, poll_id: int, raw) -> "Poll":
        """Build a Poll from the tuple returned by ``getPolls()``."""
        creator, quorum, expiration, status, description = raw
        return cls(
            id=poll_id,
            creator=creator,
            quorum_percentage=int(quorum),
            expiration_time=int(expiration),
            status=PollStatus(int(status)),
            description=description,
        )
