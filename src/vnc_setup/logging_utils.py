"""Structured logging and run artifact management."""

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .types import StepRecord


logger = logging.getLogger(__name__)

DEFAULT_RUN_DIR = "/var/log/vnc-setup"


def setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration.

    Args:
        verbose: Enable verbose (DEBUG) logging
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RunLogger:
    """Manages logging and artifacts for a single installer run.

    Creates a dedicated folder for each run with:
    - metadata.json (config, steps, errors, outcome)
    - SETUP_REPORT.md, a readable summary of the steps
    """

    def __init__(
        self,
        command: str,
        config: dict[str, Any] | None = None,
        run_id: str | None = None,
        base_dir: str | Path = DEFAULT_RUN_DIR,
    ) -> None:
        """Initialize run logger.

        Args:
            command: CLI command being run (install, fix, ...)
            config: JSON-serializable config snapshot
            run_id: Optional run ID (generates one if not provided)
            base_dir: Base directory for run artifacts
        """
        self.run_id = run_id or self._generate_run_id()
        self.command = command
        self.base_dir = Path(base_dir)
        self.run_dir = self.base_dir / self.run_id
        self.steps: list[StepRecord] = []

        self.run_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Created run directory: {self.run_dir}")

        self.metadata: dict[str, Any] = {
            "run_id": self.run_id,
            "command": command,
            "config": config or {},
            "start_time": _now(),
            "steps": [],
        }

    def _generate_run_id(self) -> str:
        """Generate unique run ID from timestamp and UUID."""
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        short_uuid = str(uuid.uuid4())[:8]
        return f"{timestamp}_{short_uuid}"

    def log_step(self, name: str, detail: str = "", success: bool = True) -> StepRecord:
        """Record a finished installer step.

        Args:
            name: Short step name
            detail: Outcome description
            success: Whether the step succeeded

        Returns:
            The stored record
        """
        record: StepRecord = {
            "step_number": len(self.steps) + 1,
            "name": name,
            "detail": detail,
            "success": success,
            "timestamp": time.time(),
        }
        self.steps.append(record)
        self.metadata["steps"].append(record)
        status = "ok" if success else "FAILED"
        logger.info(f"Step {record['step_number']}: {name} [{status}] {detail}".rstrip())
        return record

    def log_error(self, name: str, error: str) -> None:
        """Log an error during a step.

        Args:
            name: Step name
            error: Error message
        """
        self.metadata.setdefault("errors", []).append(
            {"step": name, "error": error, "timestamp": _now()}
        )
        self.log_step(name, error, success=False)

    def finalize(self, success: bool) -> Path:
        """Finalize run and save metadata plus report.

        Args:
            success: Whether the run completed successfully

        Returns:
            Path to metadata file
        """
        self.metadata["end_time"] = _now()
        self.metadata["success"] = success

        metadata_path = self.run_dir / "metadata.json"
        metadata_path.write_text(json.dumps(self.metadata, indent=2, default=str))

        report_path = self._generate_markdown_report(success)
        logger.info(f"Run report: {report_path}")

        return metadata_path

    def _generate_markdown_report(self, success: bool) -> Path:
        report_path = self.run_dir / "SETUP_REPORT.md"

        start = datetime.fromisoformat(self.metadata["start_time"])
        end = datetime.fromisoformat(self.metadata["end_time"])
        duration = (end - start).total_seconds()

        with open(report_path, "w") as f:
            f.write(f"# vnc-setup {self.command} report\n\n")
            f.write(f"**Run ID:** `{self.run_id}`\n\n")
            f.write(f"**Duration:** {duration:.1f} seconds\n\n")
            f.write(f"**Status:** {'✓ Completed' if success else '✗ Failed'}\n\n")
            f.write("---\n\n")

            f.write("## Steps\n\n")
            for record in self.steps:
                mark = "✓" if record["success"] else "✗"
                line = f"{record['step_number']}. {mark} **{record['name']}**"
                if record["detail"]:
                    line += f": {record['detail']}"
                f.write(line + "\n")

            errors = self.metadata.get("errors", [])
            if errors:
                f.write("\n## Errors\n\n")
                f.writelines(f"- `{e['step']}`: {e['error']}\n" for e in errors)

        return report_path
