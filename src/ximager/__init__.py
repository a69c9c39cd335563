from importlib.metadata import version

from .canonical import graph_fingerprint, to_canonical_json
from .errors import (
    ExecutionTimeoutError,
    GraphLoadError,
    ImagerError,
    InvalidOverrideError,
    KeywordStoreError,
    NoOutputProducedError,
    RunInProgressError,
    SubmitError,
    TransportError,
    UploadError,
)
from .feed import LogFeed
from .gateway import EngineGateway, build_http_client, generate_client_id
from .keywords import KeywordIndex, MacroTable, expand_macros, split_prompt_tokens
from .models import (
    AssetUpload,
    Dimensions,
    ErrorKind,
    ExecutionError,
    ExecutionRecord,
    KeywordMacro,
    KeywordStat,
    LogEntry,
    LogLevel,
    OutputAsset,
    OverrideSet,
    RunState,
)
from .orchestrator import ExecutionOrchestrator, build_overrides
from .patching import (
    apply_asset,
    apply_assets,
    apply_dimensions,
    apply_overrides,
    apply_prompt,
    count_asset_slots,
    extract_dimensions,
    required_slot_count,
)
from .scope import TaskScope
from .settings import EngineConfig, RuntimeSettings, default_engine_config
from .storage import HttpDocumentStore, JsonFileStore
from .workflows import WorkflowLibrary, display_name


def get_version() -> str:
    try:
        return version(__name__)
    except Exception:
        return "0.0.0"


__all__ = [
    "AssetUpload",
    "Dimensions",
    "EngineConfig",
    "EngineGateway",
    "ErrorKind",
    "ExecutionError",
    "ExecutionOrchestrator",
    "ExecutionRecord",
    "ExecutionTimeoutError",
    "GraphLoadError",
    "HttpDocumentStore",
    "ImagerError",
    "InvalidOverrideError",
    "JsonFileStore",
    "KeywordIndex",
    "KeywordMacro",
    "KeywordStat",
    "KeywordStoreError",
    "LogEntry",
    "LogFeed",
    "LogLevel",
    "MacroTable",
    "NoOutputProducedError",
    "OutputAsset",
    "OverrideSet",
    "RunInProgressError",
    "RunState",
    "RuntimeSettings",
    "SubmitError",
    "TaskScope",
    "TransportError",
    "UploadError",
    "WorkflowLibrary",
    "apply_asset",
    "apply_assets",
    "apply_dimensions",
    "apply_overrides",
    "apply_prompt",
    "build_http_client",
    "build_overrides",
    "count_asset_slots",
    "default_engine_config",
    "display_name",
    "expand_macros",
    "extract_dimensions",
    "generate_client_id",
    "get_version",
    "graph_fingerprint",
    "required_slot_count",
    "split_prompt_tokens",
    "to_canonical_json",
]
