"""Per-step result logging for backtest runs."""

import json
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from stock_backtest.engine.ledger import LedgerSnapshot

logger = structlog.get_logger()


class StepLogger:
    """
    Appends one JSON line per replay step.

    Each record is written and the file closed before returning, so a
    run that dies midway still leaves every completed step on disk.

    Example:
        step_logger = StepLogger(Path("logs"), run_id="aapl-threshold")
        engine = ReplayEngine(catalog, series, strategy, result_logger=step_logger)
    """

    def __init__(self, log_dir: Path | None = None, run_id: str | None = None):
        """
        Initialize step logger.

        Args:
            log_dir: Directory for log files (created if needed)
            run_id: Run identifier used in the file name (defaults to a timestamp)
        """
        self.log_dir = log_dir or Path("logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.run_id = run_id or datetime.now().strftime("%Y%m%dT%H%M%S")
        self.log_file = self.log_dir / f"steps_{self.run_id}.jsonl"
        self._last_step: int | None = None

    def record(self, step_index: int, snapshot: "LedgerSnapshot") -> None:
        """
        Append a step's ledger snapshot.

        Raises:
            ValueError: If the step was already recorded or is out of order
        """
        if self._last_step is not None and step_index <= self._last_step:
            raise ValueError(
                f"Step {step_index} recorded after step {self._last_step}"
            )
        self._last_step = step_index

        entry = {"run_id": self.run_id, **snapshot.to_dict()}
        with open(self.log_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry) + "\n")

        if snapshot.resolved or snapshot.submitted:
            logger.debug(
                "Recorded step",
                run_id=self.run_id,
                step_index=step_index,
                submitted=len(snapshot.submitted),
                resolved=len(snapshot.resolved),
                pending=len(snapshot.pending),
            )

    def read_records(self) -> list[dict[str, Any]]:
        """Read back all recorded steps for this run."""
        if not self.log_file.exists():
            return []

        entries = []
        with open(self.log_file, "r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    entries.append(json.loads(line))
        return entries
