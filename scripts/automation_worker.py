from __future__ import annotations

from arq import run_worker

from caseflow.core.logging import configure_logging
from caseflow.workers.automation_worker import WorkerSettings


def main() -> None:
    # Run the queued-message worker and the idle sweep cron in one process.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
