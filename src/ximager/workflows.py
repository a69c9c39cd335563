from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .errors import GraphLoadError
from .storage import atomic_write_text

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
WORKFLOW_SUFFIX = ".json"


def display_name(filename: str) -> str:
    """``SDXL_Image_Enhancer_v4.json`` -> ``SDXL Image Enhancer v4``."""
    return filename.removesuffix(WORKFLOW_SUFFIX).replace("_", " ")


def _check_filename(name: str) -> str:
    cleaned = name.strip()
    if not cleaned or "/" in cleaned or "\\" in cleaned or cleaned in {".", ".."}:
        raise ValueError(f"Invalid workflow filename: {name!r}")
    return cleaned


class WorkflowLibrary:
    """Directory of pre-authored execution graphs, one JSON document per workflow."""

    def __init__(self, root: Path, *, manifest_path: Path | None = None) -> None:
        self.root = root
        self.manifest_path = manifest_path if manifest_path is not None else root / MANIFEST_NAME

    def _scan(self) -> list[str]:
        return sorted(
            path.name
            for path in self.root.iterdir()
            if path.is_file() and path.suffix == WORKFLOW_SUFFIX and path.name != MANIFEST_NAME
        )

    def read_manifest(self) -> list[str]:
        if not self.manifest_path.is_file():
            return []
        try:
            manifest = json.loads(self.manifest_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable workflow manifest %s: %s", self.manifest_path, exc)
            return []
        workflows = manifest.get("workflows") if isinstance(manifest, dict) else None
        if not isinstance(workflows, list):
            return []
        return [str(item) for item in workflows if isinstance(item, str)]

    def list(self) -> list[str]:
        """Workflow filenames from a live directory scan, or the manifest if the scan fails."""
        try:
            return self._scan()
        except OSError as exc:
            logger.info("Workflow directory %s not listable (%s), using manifest", self.root, exc)
            return self.read_manifest()

    def write_manifest(self) -> dict[str, Any]:
        workflows = self._scan()
        manifest = {
            "workflows": workflows,
            "generatedAt": datetime.now(UTC).isoformat(),
            "count": len(workflows),
        }
        atomic_write_text(self.manifest_path, json.dumps(manifest, indent=2))
        logger.info("Wrote workflow manifest with %d workflow(s) to %s", len(workflows), self.manifest_path)
        return manifest

    def path_for(self, name: str) -> Path:
        return self.root / _check_filename(name)

    def load(self, name: str) -> dict[str, Any]:
        try:
            path = self.path_for(name)
        except ValueError as exc:
            raise GraphLoadError(str(exc)) from exc
        if not path.is_file():
            raise GraphLoadError(f"Failed to load workflow: {name}")
        try:
            graph = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise GraphLoadError(f"Failed to load workflow {name}: {exc}") from exc
        if not isinstance(graph, dict):
            raise GraphLoadError(f"Workflow {name} must be a JSON object of nodes")
        return graph

    def rename(self, old_name: str, new_name: str) -> str:
        """Rename a workflow file and its manifest entry. Returns the final filename.

        Raises:
            ValueError: If either name contains a path separator.
            FileNotFoundError: If the source workflow does not exist.
            FileExistsError: If another workflow already has the target name.
        """
        old = _check_filename(old_name)
        new = _check_filename(new_name)
        if not new.endswith(WORKFLOW_SUFFIX):
            new = f"{new}{WORKFLOW_SUFFIX}"

        old_path = self.root / old
        new_path = self.root / new
        if not old_path.is_file():
            raise FileNotFoundError(f"Source workflow not found: {old}")
        if new_path.exists() and old != new:
            raise FileExistsError(f"Target workflow already exists: {new}")
        old_path.rename(new_path)

        if self.manifest_path.is_file():
            try:
                manifest = json.loads(self.manifest_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Failed to update workflow manifest %s: %s", self.manifest_path, exc)
                return new
            workflows = manifest.get("workflows") if isinstance(manifest, dict) else None
            if isinstance(workflows, list) and old in workflows:
                workflows[workflows.index(old)] = new
                atomic_write_text(self.manifest_path, json.dumps(manifest, indent=2))

        logger.info("Renamed workflow %s -> %s", old, new)
        return new
