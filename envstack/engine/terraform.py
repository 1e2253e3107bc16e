"""Terraform CLI runner and diagnostics classification."""

import json
import os
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from ..exceptions import ErrorCategory, ToolNotFoundError

logger = structlog.get_logger()


# Error codes and messages the AWS provider surfaces on stdout/stderr.
# Checked in order; the first match wins.
_CLASSIFIERS = [
    (
        ErrorCategory.STATE_LOCK,
        re.compile(r"Error acquiring the state lock|ConditionalCheckFailedException.*LockID", re.I),
    ),
    (
        ErrorCategory.CONFIGURATION,
        re.compile(
            r"InvalidVpc\.Range|InvalidSubnet\.(Conflict|Range)|conflicts with another subnet"
            r"|CidrConflict|unsupported Kubernetes version|UnsupportedAvailabilityZoneException"
            r"|InvalidParameterException|InvalidParameterValue|Unsupported argument"
            r"|Invalid value for|No valid credential sources found|InvalidClientTokenId",
            re.I,
        ),
    ),
    (
        ErrorCategory.TRANSIENT,
        re.compile(
            r"Throttling|RequestLimitExceeded|TooManyRequestsException|Rate exceeded"
            r"|RequestTimeout|ServiceUnavailable|connection reset by peer",
            re.I,
        ),
    ),
]


def classify_error(text: str) -> ErrorCategory:
    for category, pattern in _CLASSIFIERS:
        if pattern.search(text):
            return category
    return ErrorCategory.UNKNOWN


@dataclass
class ChangeSummary:
    add: int = 0
    change: int = 0
    remove: int = 0

    @property
    def converged(self) -> bool:
        return self.add == 0 and self.change == 0 and self.remove == 0


@dataclass
class TerraformRun:
    """Parsed result of one ``terraform ... -json`` invocation."""

    returncode: int
    stdout: str
    stderr: str
    diagnostics: List[Dict[str, Any]] = field(default_factory=list)
    change_summary: Optional[ChangeSummary] = None

    @property
    def errors(self) -> List[str]:
        messages = []
        for diag in self.diagnostics:
            if diag.get("severity") != "error":
                continue
            summary = diag.get("summary", "")
            detail = diag.get("detail", "")
            messages.append(f"{summary}: {detail}" if detail else summary)
        return messages

    @property
    def error_message(self) -> str:
        if self.errors:
            return "; ".join(self.errors)
        return self.stderr.strip().splitlines()[-1] if self.stderr.strip() else ""

    @property
    def category(self) -> ErrorCategory:
        return classify_error("\n".join(self.errors + [self.stderr]))


def parse_json_lines(stdout: str) -> TerraformRun:
    """Parse machine-readable UI output (one JSON message per line)."""
    run = TerraformRun(returncode=0, stdout=stdout, stderr="")
    for line in stdout.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            continue

        kind = message.get("type")
        if kind == "diagnostic" and "diagnostic" in message:
            run.diagnostics.append(message["diagnostic"])
        elif kind == "change_summary":
            changes = message.get("changes", {})
            run.change_summary = ChangeSummary(
                add=changes.get("add", 0),
                change=changes.get("change", 0),
                remove=changes.get("remove", 0),
            )
    return run


class TerraformRunner:
    """Runs terraform in one synthesized stack directory."""

    def __init__(self, binary: str = "terraform"):
        self.binary = binary

    def run(self, args: list[str], cwd: Path, check: bool = True) -> TerraformRun:
        """
        Run terraform command.

        Args:
            args: Terraform command arguments
            cwd: Working directory
            check: Raise on non-zero exit

        Raises:
            ToolNotFoundError: If terraform is not installed
            subprocess.CalledProcessError: If the command fails and check is set
        """
        if not shutil.which(self.binary):
            raise ToolNotFoundError(self.binary)

        cmd = [self.binary] + args

        logger.info("Running terraform", command=" ".join(cmd), cwd=str(cwd))

        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
            env={**os.environ, "TF_IN_AUTOMATION": "1", "TF_INPUT": "0"},
        )

        if check and result.returncode != 0:
            raise subprocess.CalledProcessError(
                result.returncode, cmd, output=result.stdout, stderr=result.stderr
            )

        parsed = parse_json_lines(result.stdout or "")
        parsed.returncode = result.returncode
        parsed.stderr = result.stderr or ""
        return parsed

    def init(self, cwd: Path) -> TerraformRun:
        return self.run(["init", "-input=false", "-reconfigure", "-no-color"], cwd=cwd)

    def plan(self, cwd: Path) -> TerraformRun:
        """Plan with ``-detailed-exitcode``: 0 no changes, 1 error, 2 changes."""
        return self.run(
            ["plan", "-json", "-input=false", "-detailed-exitcode", "-lock-timeout=60s"],
            cwd=cwd,
            check=False,
        )

    def apply(self, cwd: Path) -> TerraformRun:
        return self.run(
            ["apply", "-json", "-input=false", "-auto-approve", "-lock-timeout=60s"],
            cwd=cwd,
            check=False,
        )

    def destroy(self, cwd: Path) -> TerraformRun:
        return self.run(
            ["destroy", "-json", "-input=false", "-auto-approve", "-lock-timeout=60s"],
            cwd=cwd,
            check=False,
        )

    def outputs(self, cwd: Path) -> Dict[str, Any]:
        """Get Terraform outputs as a flat ``name -> value`` dict."""
        result = self.run(["output", "-json"], cwd=cwd)
        outputs_raw = json.loads(result.stdout or "{}")

        # Extract values from Terraform output format
        return {key: value.get("value") for key, value in outputs_raw.items()}
