"""Per-run manifest (``executor.json``) helpers and result enrichment.

The manifest doubles as Allure's executor file, so the renderer reads the
build label, build order and report link straight from it.
"""

from __future__ import annotations

import json
import logging
import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

LOGGER = logging.getLogger("testhub.manifest")

MANIFEST_FILENAME = "executor.json"
RESULT_SUFFIX = "-result.json"
HISTORY_DIRNAME = "history"
EXECUTOR_NAME = "Test Execution Service"
RUN_DATE_FORMAT = "%Y%m%d%H%M"


class RunManifest(BaseModel):
    name: str = EXECUTOR_NAME
    type: str = "api"
    build_name: str = Field(..., alias="buildName")
    build_order: int = Field(default=0, alias="buildOrder")
    report_name: Optional[str] = Field(default=None, alias="reportName")
    report_url: Optional[str] = Field(default=None, alias="reportUrl")
    environment: Optional[str] = None
    tags: str = ""

    model_config = ConfigDict(populate_by_name=True)

    def dump(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)


def short_run_id(run_id: str) -> str:
    return run_id[:8]


def write_manifest(results_dir: Path, manifest: RunManifest) -> Path:
    target = results_dir / MANIFEST_FILENAME
    target.write_text(manifest.dump(), encoding="utf-8")
    return target


def write_run_manifest(
    results_dir: Path,
    *,
    run_id: str,
    environment: Optional[str],
    tags: Iterable[str],
    report_url: str,
    build_order: Optional[int] = None,
) -> Optional[RunManifest]:
    """Record the run's label and wall-clock build order next to its results."""
    if not results_dir.exists():
        LOGGER.warning("Results directory %s missing; manifest not written for run %s", results_dir, run_id)
        return None
    build_name = f"Run {short_run_id(run_id)}"
    tag_text = ", ".join(tags)
    manifest = RunManifest(
        build_name=build_name,
        build_order=build_order if build_order is not None else int(time.time() * 1000),
        report_name=f"{build_name} [{environment or 'unknown'}] {tag_text}".strip(),
        report_url=report_url,
        environment=environment,
        tags=tag_text,
    )
    try:
        write_manifest(results_dir, manifest)
    except OSError as exc:
        LOGGER.warning("Failed to write manifest for run %s: %s", run_id, exc)
        return None
    return manifest


def read_manifest(results_dir: Path) -> Optional[RunManifest]:
    path = results_dir / MANIFEST_FILENAME
    if not path.exists():
        return None
    try:
        return RunManifest.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValueError, ValidationError) as exc:
        LOGGER.warning("Unreadable manifest at %s: %s", path, exc)
        return None


def read_build_order(results_dir: Path) -> int:
    manifest = read_manifest(results_dir)
    return manifest.build_order if manifest else 0


def read_tags(results_dir: Path) -> str:
    manifest = read_manifest(results_dir)
    return manifest.tags.strip() if manifest else ""


def format_suite_label(run_id: str, build_order: int, tags: str) -> str:
    parts = []
    if build_order > 0:
        try:
            parts.append(datetime.fromtimestamp(build_order / 1000).strftime(RUN_DATE_FORMAT))
        except (ValueError, OverflowError, OSError) as exc:
            LOGGER.warning("Ignoring out-of-range build order %s for run %s: %s", build_order, run_id, exc)
    parts.append(short_run_id(run_id))
    if tags:
        parts.append(tags)
    return " ".join(parts)


def enrich_result_document(doc: Dict[str, Any], suite_label: str, run_id: str) -> Dict[str, Any]:
    """Tag a single test result with its run and make its history key run-unique."""
    labels = doc.get("labels")
    if not isinstance(labels, list):
        labels = []
    doc["labels"] = [
        {"name": "parentSuite", "value": suite_label},
        {"name": "tag", "value": f"run-{short_run_id(run_id)}"},
        *labels,
    ]
    history_id = doc.get("historyId")
    if isinstance(history_id, str) and history_id:
        doc["historyId"] = f"{history_id}-{run_id}"
    return doc


def _enrich_result_file(source: Path, target: Path, suite_label: str, run_id: str) -> None:
    try:
        doc = json.loads(source.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        LOGGER.warning("Copying unparseable result %s verbatim: %s", source, exc)
        shutil.copy2(source, target)
        return
    if not isinstance(doc, dict):
        shutil.copy2(source, target)
        return
    enrich_result_document(doc, suite_label, run_id)
    target.write_text(json.dumps(doc), encoding="utf-8")


def copy_and_enrich_results(
    source_dir: Path,
    target_dir: Path,
    *,
    run_id: str,
    build_order: int,
    manifest_build_order: int,
    tags: str,
    report_url: str,
) -> RunManifest:
    """Copy one run's results into a staging directory, relabelled for merging.

    ``build_order`` is the sequential position (1..N) the renderer displays;
    ``manifest_build_order`` is the run's own wall-clock ordering key and
    only feeds the human-readable label.
    """
    target_dir.mkdir(parents=True, exist_ok=True)
    suite_label = format_suite_label(run_id, manifest_build_order, tags)

    for source in sorted(source_dir.iterdir()):
        target = target_dir / source.name
        try:
            if source.is_dir():
                shutil.copytree(source, target, dirs_exist_ok=True)
            elif source.name.endswith(RESULT_SUFFIX):
                _enrich_result_file(source, target, suite_label, run_id)
            else:
                shutil.copy2(source, target)
        except OSError as exc:
            LOGGER.warning("Failed to copy/enrich %s: %s", source, exc)

    manifest = RunManifest(
        build_name=suite_label,
        build_order=build_order,
        report_url=report_url,
        tags=tags,
    )
    write_manifest(target_dir, manifest)
    return manifest


def copy_history(report_dir: Path, results_dir: Path) -> bool:
    """Carry a previous report's trend history into a results directory."""
    history_source = report_dir / HISTORY_DIRNAME
    if not history_source.is_dir():
        return False
    history_target = results_dir / HISTORY_DIRNAME
    try:
        history_target.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Failed to create history directory %s: %s", history_target, exc)
        return False
    for source in history_source.iterdir():
        try:
            if source.is_file():
                shutil.copy2(source, history_target / source.name)
        except OSError as exc:
            LOGGER.warning("Failed to copy history file %s: %s", source, exc)
    return True
