"""Execution state machine: load -> upload -> submit -> poll -> extract.

Each step is a LangGraph node. A step that fails stores the typed error under
``failure`` and the router sends the run to ``fail``; every other step routes
forward. The orchestrator owns the ``ExecutionRecord`` and is the only code
that mutates it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, TypedDict

import httpx
from langgraph.graph import END, START, StateGraph

from .canonical import graph_fingerprint
from .errors import (
    ExecutionTimeoutError,
    GraphLoadError,
    ImagerError,
    InvalidOverrideError,
    KeywordStoreError,
    NoOutputProducedError,
    RunInProgressError,
    TransportError,
)
from .feed import LogFeed
from .gateway import EngineGateway
from .keywords import KeywordIndex, MacroTable
from .models import AssetUpload, Dimensions, ExecutionRecord, OutputAsset, OverrideSet, RunState
from .patching import apply_overrides, count_asset_slots, required_slot_count
from .scope import TaskScope
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

ProgressListener = Callable[[float], None]


class RunGraphState(TypedDict, total=False):
    workflow_name: str
    prompt_text: str
    assets_by_slot: Mapping[int, AssetUpload | Path]
    dimensions: Dimensions | None
    assets: dict[int, AssetUpload]
    graph: dict[str, Any]
    uploaded: dict[int, str]
    prompt_id: str
    history: dict[str, Any]
    output: OutputAsset
    result_ref: str
    failure: ImagerError


def build_overrides(prompt_text: str, uploaded: Mapping[int, str], dimensions: Dimensions | None = None) -> OverrideSet:
    """OverrideSet for one run; uploaded filenames are placed by slot index, gaps left as None."""
    asset_refs: tuple[str | None, ...] | None = None
    if uploaded:
        asset_refs = tuple(uploaded.get(slot) for slot in range(max(uploaded) + 1))
    return OverrideSet(prompt_text=prompt_text, asset_refs=asset_refs, dimensions=dimensions)


def first_output_image(history: Mapping[str, Any]) -> OutputAsset | None:
    """First image reference across the history entry's output nodes."""
    outputs = history.get("outputs")
    if not isinstance(outputs, Mapping):
        return None
    for output in outputs.values():
        if not isinstance(output, Mapping):
            continue
        images = output.get("images")
        if not isinstance(images, list) or not images:
            continue
        info = images[0]
        if not isinstance(info, Mapping) or not isinstance(info.get("filename"), str):
            continue
        return OutputAsset(
            filename=info["filename"],
            subfolder=info.get("subfolder") or "",
            kind=info.get("type") or "output",
        )
    return None


class ExecutionOrchestrator:
    """Runs one workflow at a time against the engine."""

    def __init__(
        self,
        gateway: EngineGateway,
        keywords: KeywordIndex,
        macros: MacroTable,
        *,
        settings: RuntimeSettings | None = None,
        feed: LogFeed | None = None,
        output_dir: Path | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.gateway = gateway
        self.keywords = keywords
        self.macros = macros
        self.feed = feed if feed is not None else LogFeed()
        self.output_dir = output_dir if output_dir is not None else self.settings.output_path(Path.cwd())
        self._record = ExecutionRecord()
        self._running = False
        self._progress_listeners: list[ProgressListener] = []
        self._background: set[asyncio.Task[Any]] = set()
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(RunGraphState)
        graph.add_node("validate", self._validate_node)
        graph.add_node("load", self._load_node)
        graph.add_node("upload", self._upload_node)
        graph.add_node("submit", self._submit_node)
        graph.add_node("poll", self._poll_node)
        graph.add_node("extract", self._extract_node)
        graph.add_node("finish", self._finish_node)
        graph.add_node("fail", self._fail_node)

        graph.add_edge(START, "validate")
        for step, next_step in (
            ("validate", "load"),
            ("load", "upload"),
            ("upload", "submit"),
            ("submit", "poll"),
            ("poll", "extract"),
            ("extract", "finish"),
        ):
            graph.add_conditional_edges(
                step,
                self._step_route,
                {
                    "next": next_step,
                    "fail": "fail",
                },
            )
        graph.add_edge("finish", END)
        graph.add_edge("fail", END)
        return graph

    @staticmethod
    def _step_route(state: RunGraphState) -> str:
        return "fail" if state.get("failure") is not None else "next"

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def record(self) -> ExecutionRecord:
        return self._record

    @property
    def is_running(self) -> bool:
        return self._running

    def on_progress(self, callback: ProgressListener) -> Callable[[], None]:
        self._progress_listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._progress_listeners:
                self._progress_listeners.remove(callback)

        return _unsubscribe

    async def wait_background(self) -> None:
        """Wait for pending keyword-history updates spawned by earlier runs."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def run(
        self,
        workflow_name: str,
        prompt_text: str,
        assets_by_slot: Mapping[int, AssetUpload | Path] | None = None,
        *,
        dimensions: Dimensions | None = None,
    ) -> ExecutionRecord:
        """Execute one workflow and return its terminal record.

        Engine, upload and storage failures end in a ``failed`` record rather
        than an exception.

        Raises:
            RunInProgressError: If this orchestrator is already running; nothing
                about the active run changes.
        """
        if self._running:
            raise RunInProgressError(
                f"Run {self._record.id} is still {self._record.state.value}; wait for it to finish"
            )
        self._running = True
        self._record = ExecutionRecord(workflow=workflow_name)
        self.feed.info(f"Initializing workflow engine for '{workflow_name}' (run {self._record.id})")
        try:
            await self.graph.ainvoke(
                {
                    "workflow_name": workflow_name,
                    "prompt_text": prompt_text,
                    "assets_by_slot": dict(assets_by_slot or {}),
                    "dimensions": dimensions,
                }
            )
        except httpx.HTTPError as exc:
            logger.error("Run %s hit an unwrapped transport error: %s", self._record.id, exc)
            if not self._record.is_terminal:
                self._mark_failed(TransportError(str(exc) or type(exc).__name__))
        except BaseException as exc:
            if not self._record.is_terminal:
                self._mark_failed(TransportError(f"Unexpected error: {exc!s}" if str(exc) else type(exc).__name__))
            raise
        finally:
            self._running = False
        return self._record

    # ------------------------------------------------------------------
    # Record helpers
    # ------------------------------------------------------------------

    def _set_progress(self, percent: float) -> None:
        self._record.progress_percent = percent
        for callback in list(self._progress_listeners):
            try:
                callback(percent)
            except Exception:  # noqa: BLE001
                logger.warning("Progress listener %r failed", callback, exc_info=True)

    def _mark_failed(self, failure: ImagerError) -> None:
        error = failure.to_execution_error()
        self._record.error = error
        self._record.transition(RunState.FAILED)
        logger.info("Run %s failed: %s (%s)", self._record.id, error.kind.value, error.message)
        self.feed.error(f"{error.kind.value}: {error.message}")

    def _spawn_keyword_record(self, prompt_text: str) -> None:
        task = asyncio.create_task(self._record_keywords(prompt_text), name=f"keywords-{self._record.id}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _record_keywords(self, prompt_text: str) -> None:
        try:
            await self.keywords.record(prompt_text)
        except KeywordStoreError as exc:
            logger.warning("Keyword history not updated: %s", exc)

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def _validate_node(self, state: RunGraphState) -> dict[str, Any]:
        dimensions = state.get("dimensions")
        if dimensions is not None:
            try:
                dimensions.validate_complete()
            except ValueError as exc:
                return {"failure": InvalidOverrideError(str(exc))}

        assets: dict[int, AssetUpload] = {}
        for slot, asset in state.get("assets_by_slot", {}).items():
            if isinstance(slot, bool) or not isinstance(slot, int) or slot < 0:
                return {"failure": InvalidOverrideError(f"asset slot must be a non-negative integer, got: {slot!r}")}
            if isinstance(asset, Path):
                try:
                    asset = await asyncio.to_thread(AssetUpload.from_path, asset)
                except OSError as exc:
                    return {"failure": InvalidOverrideError(f"cannot read asset for slot {slot}: {exc}")}
            if not isinstance(asset, AssetUpload):
                return {"failure": InvalidOverrideError(f"asset for slot {slot} must be a file, got {type(asset).__name__}")}
            assets[slot] = asset
        return {"assets": assets}

    async def _load_node(self, state: RunGraphState) -> dict[str, Any]:
        name = state["workflow_name"]
        self.feed.load(f"Workflow '{name}' requested...")
        try:
            graph = await self.gateway.load_graph_template(name)
        except ImagerError as exc:
            return {"failure": exc if isinstance(exc, GraphLoadError) else GraphLoadError(exc.message)}
        slots = count_asset_slots(graph)
        self.feed.load(f"Workflow loaded: {len(graph)} node(s), {slots} image input(s)")
        return {"graph": graph}

    async def _upload_node(self, state: RunGraphState) -> dict[str, Any]:
        self._record.transition(RunState.UPLOADING)
        required = required_slot_count(state["graph"])
        uploaded: dict[int, str] = {}
        for slot in sorted(state.get("assets", {})):
            asset = state["assets"][slot]
            if slot >= required:
                self.feed.info(f"Ignoring {asset.filename} for slot {slot}: workflow has {required} slot(s)")
                continue
            self.feed.load(f"Uploading {asset.filename} for slot {slot}...")
            try:
                uploaded[slot] = await self.gateway.upload_asset(asset)
            except ImagerError as exc:
                return {"failure": exc}
            self._record.uploaded = dict(uploaded)
        return {"uploaded": uploaded}

    async def _submit_node(self, state: RunGraphState) -> dict[str, Any]:
        prompt_text = state.get("prompt_text", "")
        try:
            await self.macros.hydrate()
            expanded = self.macros.expand(prompt_text)
        except KeywordStoreError as exc:
            logger.warning("Macro table unavailable, submitting prompt unexpanded: %s", exc)
            self.feed.info("Keyword macros unavailable; prompt sent as typed")
            expanded = prompt_text
        if expanded != prompt_text:
            self.feed.info(f"Expanded prompt: {expanded}")
        self._spawn_keyword_record(expanded)

        overrides = build_overrides(expanded, state.get("uploaded", {}), state.get("dimensions"))
        patched = apply_overrides(state["graph"], overrides)
        fingerprint = graph_fingerprint(patched)
        self._record.prompt_text = expanded
        self._record.graph_fingerprint = fingerprint

        self._record.transition(RunState.QUEUED)
        self.feed.exec(f"Queueing prompt (graph {fingerprint})...")
        try:
            prompt_id = await self.gateway.submit_graph(patched)
        except ImagerError as exc:
            return {"failure": exc}
        self._record.prompt_id = prompt_id
        self.feed.exec(f"Prompt queued with id {prompt_id}")
        return {"graph": patched, "prompt_id": prompt_id}

    async def _simulate_progress(self) -> None:
        steps = self.settings.progress_steps
        cap = float(self.settings.progress_cap_percent)
        for step in range(1, steps + 1):
            await asyncio.sleep(self.settings.progress_step_seconds)
            self._set_progress(min(step * 100.0 / steps, cap))
            if step == 1 or step % 10 == 0:
                self.feed.exec(f"Sampling step {step} of {steps}...")

    async def _poll_history(self, prompt_id: str) -> dict[str, Any]:
        attempts = self.settings.poll_max_attempts
        for attempt in range(1, attempts + 1):
            history = await self.gateway.fetch_result(prompt_id)
            if history is not None:
                logger.debug("Run %s produced history after %d attempt(s)", prompt_id, attempt)
                return history
            if attempt < attempts:
                await asyncio.sleep(self.settings.poll_interval_seconds)
        raise ExecutionTimeoutError(f"Workflow execution timed out after {attempts} poll attempt(s)")

    async def _poll_node(self, state: RunGraphState) -> dict[str, Any]:
        self._record.transition(RunState.POLLING)
        async with TaskScope(f"progress-{self._record.id}") as scope:
            scope.spawn(self._simulate_progress(), name=f"progress-{self._record.id}")
            try:
                history = await self._poll_history(state["prompt_id"])
            except ImagerError as exc:
                return {"failure": exc}
        return {"history": history}

    async def _extract_node(self, state: RunGraphState) -> dict[str, Any]:
        self._record.transition(RunState.EXTRACTING)
        self.feed.info("Generation complete. Decoding results...")
        output = first_output_image(state["history"])
        if output is None:
            return {"failure": NoOutputProducedError("Execution finished without producing an image")}
        try:
            content = await self.gateway.fetch_asset(output.filename, output.subfolder, output.kind)
        except ImagerError as exc:
            return {"failure": exc}

        target = self.output_dir / Path(output.filename).name
        try:
            await asyncio.to_thread(self._write_output, target, content)
        except OSError as exc:
            return {"failure": TransportError(f"Failed to store output {target}: {exc}")}
        self.feed.load(f"Output asset synchronized to {target}")
        return {"output": output, "result_ref": str(target)}

    @staticmethod
    def _write_output(target: Path, content: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)

    async def _finish_node(self, state: RunGraphState) -> dict[str, Any]:
        self._record.output = state["output"]
        self._record.result_ref = state["result_ref"]
        self._set_progress(100.0)
        self._record.transition(RunState.DONE)
        logger.info("Run %s done: %s", self._record.id, self._record.result_ref)
        self.feed.info("Execution finished successfully.")
        return {"result_ref": state["result_ref"]}

    async def _fail_node(self, state: RunGraphState) -> dict[str, Any]:
        self._mark_failed(state["failure"])
        return {"failure": state["failure"]}
