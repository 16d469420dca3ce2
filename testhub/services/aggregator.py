from __future__ import annotations

import json
import logging
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Optional

from testhub.services.artifacts import ArtifactStore
from testhub.services.engine import DETAIL_JSON
from testhub.services.manifest import (
    copy_and_enrich_results,
    copy_history,
    read_manifest,
)
from testhub.services.renderer import REPORT_ENTRY, RendererError, ReportRenderer

LOGGER = logging.getLogger("testhub.aggregator")


def parse_run_id(name: str) -> Optional[str]:
    try:
        return str(uuid.UUID(name))
    except ValueError:
        return None


@dataclass
class RunEntry:
    run_id: str
    build_order: int
    tags: str


class ReportAggregator:
    """Build per-run and combined reports from the runs stored on disk."""

    def __init__(self, artifacts: ArtifactStore, renderer: ReportRenderer) -> None:
        self._artifacts = artifacts
        self._renderer = renderer

    # ------------------------------------------------------------------ discovery
    def list_available_runs(self) -> List[str]:
        """Run ids under the results root that carry a results directory."""
        root = self._artifacts.root
        if not root.is_dir():
            return []
        runs: List[str] = []
        try:
            children = sorted(root.iterdir())
        except OSError as exc:
            LOGGER.error("Failed to list runs under %s: %s", root, exc)
            return []
        for child in children:
            if not child.is_dir():
                continue
            run_id = parse_run_id(child.name)
            if run_id is None or run_id != child.name:
                continue
            if (self._artifacts.results_dir(run_id)).is_dir():
                runs.append(run_id)
        return runs

    def _valid_runs(self, run_ids: Optional[Iterable[str]]) -> List[str]:
        available = self.list_available_runs()
        if not run_ids:
            return available
        available_set = set(available)
        requested: List[str] = []
        for run_id in run_ids:
            normalized = parse_run_id(str(run_id))
            if normalized and normalized in available_set and normalized not in requested:
                requested.append(normalized)
        return requested

    def _sorted_entries(self, run_ids: List[str]) -> List[RunEntry]:
        entries = []
        for run_id in run_ids:
            manifest = read_manifest(self._artifacts.results_dir(run_id))
            entries.append(
                RunEntry(
                    run_id=run_id,
                    build_order=manifest.build_order if manifest else 0,
                    tags=manifest.tags.strip() if manifest else "",
                )
            )
        # Stable sort keeps discovery order for equal timestamps.
        return sorted(entries, key=lambda entry: entry.build_order)

    # ------------------------------------------------------------------ reports
    def generate_combined_report(self, run_ids: Optional[Iterable[str]] = None) -> Optional[str]:
        """Merge the given runs (or every run on disk) into the combined report.

        Runs are replayed oldest first so the renderer's additive trend history
        stays chronological. Returns the report URL, or ``None`` when there is
        nothing to merge or rendering failed.
        """
        valid = self._valid_runs(run_ids)
        if not valid:
            LOGGER.warning("No runs available for combined report")
            return None

        entries = self._sorted_entries(valid)
        combined_dir = self._artifacts.combined_report_dir()
        report_url = self._artifacts.url(combined_dir / REPORT_ENTRY)
        staging: Optional[Path] = None
        try:
            combined_dir.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix="allure-combined-"))
            result_dirs: List[Path] = []
            for position, entry in enumerate(entries, start=1):
                target = staging / entry.run_id
                copy_and_enrich_results(
                    self._artifacts.results_dir(entry.run_id),
                    target,
                    run_id=entry.run_id,
                    build_order=position,
                    manifest_build_order=entry.build_order,
                    tags=entry.tags,
                    report_url=report_url,
                )
                result_dirs.append(target)

            copy_history(combined_dir, result_dirs[-1])
            self._renderer.generate(combined_dir, result_dirs)
        except (OSError, RendererError) as exc:
            LOGGER.error("Error generating combined report: %s", exc)
            return None
        finally:
            if staging is not None:
                shutil.rmtree(staging, ignore_errors=True)

        if not (combined_dir / REPORT_ENTRY).exists():
            LOGGER.error("Combined report generation finished but %s is missing", combined_dir / REPORT_ENTRY)
            return None
        LOGGER.info("Combined report generated from %s runs at %s", len(entries), report_url)
        return report_url

    def generate_run_report(self, run_id: str) -> Optional[str]:
        results_dir = self._artifacts.results_dir(run_id)
        report_dir = self._artifacts.report_dir(run_id)
        if not results_dir.is_dir():
            LOGGER.warning("Results directory not found for run %s", run_id)
            return None
        try:
            report_dir.mkdir(parents=True, exist_ok=True)
            copy_history(report_dir, results_dir)
            self._renderer.generate(report_dir, [results_dir])
        except (OSError, RendererError) as exc:
            LOGGER.error("Error generating report for run %s: %s", run_id, exc)
            return None
        return self.run_report_url(run_id)

    def run_report_url(self, run_id: str) -> Optional[str]:
        entry = self._artifacts.report_dir(run_id) / REPORT_ENTRY
        if entry.exists():
            return self._artifacts.url(entry)
        return None

    def raw_result(self, run_id: str) -> Optional[Any]:
        """The engine's native result document for a run, if it exists."""
        path = self._artifacts.detail_report_dir(run_id) / DETAIL_JSON
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOGGER.error("Failed to read report for run %s: %s", run_id, exc)
            return None
