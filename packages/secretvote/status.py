from enum import IntEnum


class EthStatus(IntEnum):
    """Task status as recorded by the network contract on the ledger."""

    UNDEFINED = 0
    CREATED = 1
    VERIFIED = 2
    FAILED = 3
    # verification of the task result failed on the ledger side
    FAILED_ETH = 4
    # the task's ledger callback reverted
    FAILED_RETURN = 5

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_failure(self) -> bool:
        return self in FAILURE_STATUSES


FAILURE_STATUSES: frozenset[EthStatus] = frozenset({
    EthStatus.FAILED,
    EthStatus.FAILED_ETH,
    EthStatus.FAILED_RETURN,
})

TERMINAL_STATUSES: frozenset[EthStatus] = FAILURE_STATUSES | {EthStatus.VERIFIED}
