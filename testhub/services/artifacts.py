from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional

RESULTS_DIRNAME = "allure-results"
REPORT_DIRNAME = "allure-report"
DETAIL_REPORT_DIRNAME = "engine-report"
AXE_RESULT_DIRNAME = "axe-result"
SCREENSHOTS_DIRNAME = "screenshots"
COMBINED_DIRNAME = "combined"


class ArtifactStore:
    """Manage on-disk locations for per-run results and reports."""

    def __init__(self, root: Optional[Path] = None, base_url: str = "/reports") -> None:
        resolved_root = root or Path.cwd() / "test-results"
        self._root = resolved_root.resolve()
        self._base_url = base_url.rstrip("/")
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def base_url(self) -> str:
        return self._base_url

    def run_dir(self, run_id: str) -> Path:
        return self._root / run_id

    def results_dir(self, run_id: str) -> Path:
        return self.run_dir(run_id) / RESULTS_DIRNAME

    def report_dir(self, run_id: str) -> Path:
        return self.run_dir(run_id) / REPORT_DIRNAME

    def detail_report_dir(self, run_id: str) -> Path:
        return self.run_dir(run_id) / DETAIL_REPORT_DIRNAME

    def axe_result_dir(self, run_id: str) -> Path:
        return self.run_dir(run_id) / AXE_RESULT_DIRNAME

    def screenshots_dir(self, run_id: str) -> Path:
        return self.run_dir(run_id) / SCREENSHOTS_DIRNAME

    def combined_report_dir(self) -> Path:
        return self._root / COMBINED_DIRNAME / REPORT_DIRNAME

    def relative(self, path: Path) -> str:
        cleaned = path.resolve()
        return cleaned.relative_to(self._root).as_posix()

    def url(self, path: Path) -> str:
        return f"{self._base_url}/{self.relative(path)}"

    def purge_run(self, run_id: str) -> None:
        """Remove all artifacts associated with a run."""
        target = self.run_dir(run_id)
        if target.exists():
            shutil.rmtree(target, ignore_errors=True)
