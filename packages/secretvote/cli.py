import json
import logging
import os

import sentry_sdk
import typer
from prometheus_client import start_http_server
from pythonjsonlogger import jsonlogger

from .ledger import VotingLedger, connect_w3
from .poller import PollTimeoutError, TaskPollError
from .scenario import ScenarioError, VotingScenario
from .schemas import Task
from .tasks import EnigmaTaskService, TaskServiceError

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
METRICS_PORT = os.getenv("METRICS_PORT")

log = logging.getLogger("secretvote")

app = typer.Typer()


@app.callback()
def setup():
    handler = logging.StreamHandler()
    handler.setFormatter(jsonlogger.JsonFormatter())
    logging.basicConfig(level=LOG_LEVEL, handlers=[handler])
    sentry_sdk.init(dsn=os.getenv("SENTRY_DSN"))
    if METRICS_PORT:
        start_http_server(int(METRICS_PORT))


def _services():
    w3 = connect_w3()
    return EnigmaTaskService(w3), VotingLedger(w3)


def _run(step):
    try:
        return step()
    except (TaskPollError, ScenarioError, PollTimeoutError, TaskServiceError) as exc:
        log.error("step failed: %s", exc)
        typer.echo(f"failed: {exc}", err=True)
        raise typer.Exit(code=1)


@app.command()
def run(wasm: str = typer.Argument(..., help="compiled voting secret contract")):
    tasks, ledger = _services()
    scenario = VotingScenario(tasks, ledger)
    summary = _run(lambda: scenario.run(wasm))
    typer.echo(json.dumps(summary))


@app.command()
def deploy(wasm: str = typer.Argument(...)):
    tasks, ledger = _services()
    scenario = VotingScenario(tasks, ledger)
    typer.echo(_run(lambda: scenario.deploy(wasm)))


@app.command("create-poll")
def create_poll(
    question: str = typer.Option("Is privacy important?"),
    quorum: int = typer.Option(50),
    duration: int = typer.Option(30, help="seconds until the poll expires"),
):
    _, ledger = _services()
    typer.echo(ledger.create_poll(quorum, question, duration))


@app.command()
def status(task_id: str = typer.Argument(...)):
    tasks, _ = _services()
    task = Task(task_id=task_id, sender="0x" + "0" * 40, contract_address=task_id,
                fn="", selector="0x", gas_limit=0)
    typer.echo(_run(lambda: tasks.get_status(task)).name)


if __name__ == "__main__":
    app()
