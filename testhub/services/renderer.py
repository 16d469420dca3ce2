from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Sequence

LOGGER = logging.getLogger("testhub.renderer")

REPORT_ENTRY = "index.html"


class RendererError(RuntimeError):
    """Raised when the report renderer could not produce a report."""


class ReportRenderer:
    def generate(self, output_dir: Path, result_dirs: Sequence[Path]) -> None:
        raise NotImplementedError


class AllureCliRenderer(ReportRenderer):
    """Render Allure reports by shelling out to the ``allure`` command line."""

    def __init__(self, command: str = "allure", timeout: int = 600) -> None:
        self._command = command
        self._timeout = timeout

    def build_command(self, output_dir: Path, result_dirs: Sequence[Path]) -> List[str]:
        args = [self._command, "generate"]
        args.extend(str(path) for path in result_dirs)
        args.extend(["-o", str(output_dir), "--clean"])
        return args

    def generate(self, output_dir: Path, result_dirs: Sequence[Path]) -> None:
        if not result_dirs:
            raise RendererError("No result directories supplied")
        output_dir.mkdir(parents=True, exist_ok=True)
        args = self.build_command(output_dir, result_dirs)
        LOGGER.debug("Running renderer: %s", " ".join(args))
        try:
            proc = subprocess.run(
                args,
                capture_output=True,
                text=True,
                check=False,
                timeout=self._timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise RendererError(f"Failed to run {self._command}: {exc}") from exc
        if proc.returncode != 0:
            error_output = proc.stderr.strip() or proc.stdout.strip() or "allure generate failed"
            raise RendererError(error_output)
        LOGGER.info("Rendered report into %s from %s result set(s)", output_dir, len(result_dirs))
