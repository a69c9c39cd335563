"""Entry point for `python -m ximager` and the `ximager` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

import httpx

from ximager import ExecutionOrchestrator
from ximager.errors import GraphLoadError, ImagerError, KeywordStoreError
from ximager.feed import LogFeed
from ximager.gateway import EngineGateway, build_http_client
from ximager.keywords import KeywordIndex, MacroTable
from ximager.models import AssetUpload, Dimensions, LogEntry, RunState
from ximager.patching import count_asset_slots, extract_dimensions, required_slot_count
from ximager.settings import EngineConfig, RuntimeSettings
from ximager.storage import DocumentStore, HttpDocumentStore, JsonFileStore
from ximager.workflows import WorkflowLibrary, display_name


def _image_arg(value: str) -> tuple[int, Path]:
    slot, sep, path = value.partition("=")
    if not sep or not path:
        raise argparse.ArgumentTypeError(f"expected SLOT=PATH, got: {value!r}")
    try:
        index = int(slot)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"slot must be an integer, got: {slot!r}") from exc
    return index, Path(path)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run image-engine workflows and manage prompt keywords")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Execute a workflow and download its first output image")
    run.add_argument("--workflow", required=True, help="Workflow filename inside the workflow directory")
    run.add_argument("--prompt", default="", help="Prompt text; @key macros are expanded before submission")
    run.add_argument(
        "--image",
        type=_image_arg,
        action="append",
        default=[],
        metavar="SLOT=PATH",
        help="Reference image for a slot (repeatable)",
    )
    run.add_argument("--width", type=int, default=None)
    run.add_argument("--height", type=int, default=None)

    workflows = commands.add_parser("workflows", help="Inspect the workflow library")
    workflow_commands = workflows.add_subparsers(dest="workflow_command", required=True)
    workflow_commands.add_parser("list", help="List available workflows")
    workflow_commands.add_parser("manifest", help="Regenerate manifest.json from the directory")
    rename = workflow_commands.add_parser("rename", help="Rename a workflow file")
    rename.add_argument("old")
    rename.add_argument("new")
    slots = workflow_commands.add_parser("slots", help="Show how many reference images a workflow takes")
    slots.add_argument("name")
    dims = workflow_commands.add_parser("dims", help="Show the workflow's default width and height")
    dims.add_argument("name")

    keywords = commands.add_parser("keywords", help="Manage prompt keyword statistics")
    keyword_commands = keywords.add_subparsers(dest="keyword_command", required=True)
    suggest = keyword_commands.add_parser("suggest", help="Autocomplete suggestions for a partial token")
    suggest.add_argument("partial")
    keyword_commands.add_parser("list", help="All keywords by usage")
    add = keyword_commands.add_parser("add", help="Add a keyword or bump its count")
    add.add_argument("text")
    add.add_argument("--count", type=int, default=1)
    krename = keyword_commands.add_parser("rename", help="Rename a keyword, merging into an existing one")
    krename.add_argument("old")
    krename.add_argument("new")
    krename.add_argument("--count", type=int, required=True, help="Count carried over from the old keyword")
    kremove = keyword_commands.add_parser("remove", help="Delete a keyword")
    kremove.add_argument("text")

    macros = commands.add_parser("macros", help="Manage @key prompt macros")
    macro_commands = macros.add_subparsers(dest="macro_command", required=True)
    macro_commands.add_parser("list", help="List macros")
    mset = macro_commands.add_parser("set", help="Create or replace a macro")
    mset.add_argument("key")
    mset.add_argument("expansion")
    mremove = macro_commands.add_parser("remove", help="Delete a macro")
    mremove.add_argument("key")
    expand = macro_commands.add_parser("expand", help="Expand macros in a prompt")
    expand.add_argument("text")

    commands.add_parser("ping", help="Check that the engine answers /system_stats")
    return parser.parse_args(argv)


def _print_entry(entry: LogEntry) -> None:
    print(entry.format(), flush=True)


def _keyword_store(settings: RuntimeSettings, client: httpx.AsyncClient, repo_root: Path) -> DocumentStore:
    if settings.keywords_url:
        return HttpDocumentStore(client, settings.keywords_url)
    return JsonFileStore(settings.keywords_file(repo_root))


def _macro_store(settings: RuntimeSettings, repo_root: Path) -> DocumentStore:
    return JsonFileStore(settings.macros_file(repo_root))


async def _run_workflow(args: argparse.Namespace, settings: RuntimeSettings, repo_root: Path) -> int:
    dimensions = None
    if args.width is not None or args.height is not None:
        dimensions = Dimensions(width=args.width, height=args.height)
    assets_by_slot: dict[int, AssetUpload | Path] = {slot: path for slot, path in args.image}

    feed = LogFeed()
    feed.subscribe(_print_entry)
    library = WorkflowLibrary(settings.workflow_path(repo_root))
    async with EngineGateway(
        build_http_client(settings),
        library,
        config=EngineConfig(settings.server_url),
    ) as gateway:
        orchestrator = ExecutionOrchestrator(
            gateway,
            KeywordIndex(_keyword_store(settings, gateway.client, repo_root)),
            MacroTable(_macro_store(settings, repo_root)),
            settings=settings,
            feed=feed,
            output_dir=settings.output_path(repo_root),
        )
        record = await orchestrator.run(args.workflow, args.prompt, assets_by_slot, dimensions=dimensions)
        await orchestrator.wait_background()

    print(record.model_dump_json(indent=2))
    return 0 if record.state is RunState.DONE else 1


def _workflows(args: argparse.Namespace, settings: RuntimeSettings, repo_root: Path) -> int:
    library = WorkflowLibrary(settings.workflow_path(repo_root))
    command = args.workflow_command
    if command == "list":
        for name in library.list():
            print(f"{name}\t{display_name(name)}")
    elif command == "manifest":
        manifest = library.write_manifest()
        print(json.dumps(manifest, indent=2))
    elif command == "rename":
        print(library.rename(args.old, args.new))
    elif command == "slots":
        graph = library.load(args.name)
        print(f"image_nodes={count_asset_slots(graph)} required_slots={required_slot_count(graph)}")
    elif command == "dims":
        found = extract_dimensions(library.load(args.name))
        print(f"{found.width}x{found.height}")
    return 0


async def _keywords(args: argparse.Namespace, settings: RuntimeSettings, repo_root: Path) -> int:
    async with httpx.AsyncClient(timeout=settings.request_timeout_seconds) as client:
        index = KeywordIndex(_keyword_store(settings, client, repo_root))
        command = args.keyword_command
        if command == "list":
            await index.refresh()
        else:
            await index.hydrate()
        if command == "suggest":
            for stat in index.suggest(args.partial):
                print(f"{stat.count:>5}  {stat.text}")
        elif command == "list":
            for stat in index.entries():
                print(f"{stat.count:>5}  {stat.text}")
        elif command == "add":
            stat = await index.add(args.text, args.count)
            print(f"{stat.text}: {stat.count}")
        elif command == "rename":
            stat = await index.rename(args.old, args.new, args.count)
            if stat is None:
                logging.error("Keyword not found: %s", args.old)
                return 1
            print(f"{stat.text}: {stat.count}")
        elif command == "remove":
            if not await index.remove(args.text):
                logging.error("Keyword not found: %s", args.text)
                return 1
    return 0


async def _macros(args: argparse.Namespace, settings: RuntimeSettings, repo_root: Path) -> int:
    table = MacroTable(_macro_store(settings, repo_root))
    await table.hydrate()
    command = args.macro_command
    if command == "list":
        for macro in table.items():
            print(f"@{macro.key}\t{macro.expansion}")
    elif command == "set":
        macro = await table.set(args.key, args.expansion)
        print(f"@{macro.key}\t{macro.expansion}")
    elif command == "remove":
        if not await table.remove(args.key):
            logging.error("Macro not found: %s", args.key)
            return 1
    elif command == "expand":
        print(table.expand(args.text))
    return 0


async def _ping(settings: RuntimeSettings, repo_root: Path) -> int:
    library = WorkflowLibrary(settings.workflow_path(repo_root))
    async with EngineGateway(build_http_client(settings), library, config=EngineConfig(settings.server_url)) as gateway:
        stats = await gateway.system_stats()
    print(json.dumps(stats, indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    repo_root = Path.cwd()
    try:
        if args.command == "run":
            return asyncio.run(_run_workflow(args, settings, repo_root))
        if args.command == "workflows":
            return _workflows(args, settings, repo_root)
        if args.command == "keywords":
            return asyncio.run(_keywords(args, settings, repo_root))
        if args.command == "macros":
            return asyncio.run(_macros(args, settings, repo_root))
        if args.command == "ping":
            return asyncio.run(_ping(settings, repo_root))
    except (GraphLoadError, KeywordStoreError) as exc:
        logging.error("%s", exc)
        return 1
    except ImagerError as exc:
        logging.error("%s: %s", type(exc).__name__, exc)
        return 1
    except (OSError, ValueError) as exc:
        logging.error("%s", exc)
        return 1
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
