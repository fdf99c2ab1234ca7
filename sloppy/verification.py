"""
Verification: the project's own test, lint and build commands decide
whether a proposed patch stays.

Commands are opaque shell strings; exit code 0 passes. Steps that are not
configured are skipped, and a run with nothing configured counts as a pass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from sloppy.cancellation import CancelToken
from sloppy.workspace.tools import CommandTimeoutError, clip, run_shell


@dataclass
class VerificationStep:
    name: str
    command: str
    passed: bool
    output: str = ""
    duration_ms: int = 0


@dataclass
class VerificationResult:
    steps: list[VerificationStep] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(step.passed for step in self.steps)

    @property
    def skipped(self) -> bool:
        return not self.steps

    @property
    def failed_step(self) -> VerificationStep | None:
        return next((s for s in self.steps if not s.passed), None)

    def feedback(self, max_chars: int = 3000) -> str:
        step = self.failed_step
        if step is None:
            return "All verification commands passed."
        return clip(f"`{step.name}` failed: {step.command}\n{step.output}", max_chars)


class Verifier:
    ORDER = ("build", "lint", "test")

    def __init__(
        self,
        test_command: str | None = None,
        lint_command: str | None = None,
        build_command: str | None = None,
        timeout: float = 600.0,
    ):
        self.commands = {
            "build": build_command,
            "lint": lint_command,
            "test": test_command,
        }
        self.timeout = timeout

    @property
    def configured(self) -> list[tuple[str, str]]:
        return [(name, self.commands[name]) for name in self.ORDER if self.commands[name]]

    def run(self, working_dir: Path, cancel: CancelToken | None = None) -> VerificationResult:
        """Run the configured steps in order, stopping at the first failure."""
        result = VerificationResult()
        for name, command in self.configured:
            try:
                outcome = run_shell(command, working_dir, self.timeout, cancel)
                step = VerificationStep(
                    name=name,
                    command=command,
                    passed=outcome.success,
                    output=(outcome.stdout + "\n" + outcome.stderr).strip(),
                    duration_ms=outcome.duration_ms,
                )
            except CommandTimeoutError as e:
                step = VerificationStep(name=name, command=command, passed=False, output=str(e))
            except OSError as e:
                step = VerificationStep(name=name, command=command, passed=False, output=f"Could not run: {e}")
            result.steps.append(step)
            logger.info(f"[VERIFY] {name}: {'pass' if step.passed else 'FAIL'} ({command})")
            if not step.passed:
                break
        if result.skipped:
            logger.debug("[VERIFY] No verification commands configured")
        return result
