"""Terminal entry point: search the collection, inspect and save images."""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from metviewer.config import Config, load_config
from metviewer.models import CatalogItem, LoadMode, SearchState, SearchStatus, format_artist
from metviewer.services.catalog_met import MetCatalog, MetCatalogConfig, build_http_client
from metviewer.services.image_preload import ImagePreloader
from metviewer.services.object_cache import ObjectCache
from metviewer.services.persistence import (
    NO_IMAGE_MESSAGE,
    ImageSaver,
    SaveDialog,
    describe_save_result,
)
from metviewer.services.search_session import SearchController
from metviewer.utils.paths import resolve_destination
from logger import info_domain, log_event, setup_logging

_PLACEHOLDER = "—"


class PromptSaveDialog(SaveDialog):
    """Save dialog backed by a terminal prompt seeded with the default name."""

    def __init__(self, console: Console, directory: Path, *, assume_default: bool = False) -> None:
        self._console = console
        self._directory = directory
        self._assume_default = assume_default

    async def choose_path(self, default_name: str) -> Optional[Path]:
        default_path = self._directory / default_name
        if self._assume_default:
            return default_path
        answer = await asyncio.to_thread(
            Prompt.ask,
            "Save image as (enter '-' to cancel)",
            console=self._console,
            default=str(default_path),
        )
        answer = (answer or "").strip()
        if not answer or answer == "-":
            return None
        return resolve_destination(answer, self._directory, default_name)


def ordered_results(state: SearchState) -> list[CatalogItem]:
    """Results in display order: placeholder order in lazy mode, else arrival order."""

    if not state.candidate_ids:
        return list(state.results)
    loaded = {item.object_id: item for item in state.results}
    return [loaded[object_id] for object_id in state.candidate_ids if object_id in loaded]


def render_results(console: Console, state: SearchState, page_size: int) -> None:
    if state.status is SearchStatus.IDLE:
        console.print(Panel("Discover highlights, hidden gems, and everything in-between.", title="Search to get started"))
        return
    if state.error:
        console.print(Panel(state.error, title="Error", border_style="red"))
        return
    if state.status is SearchStatus.EMPTY and not state.results:
        console.print(Panel("Try a different search term or explore another keyword.", title="No results"))
        return

    loaded = {item.object_id: item for item in state.results}
    order = state.candidate_ids or tuple(loaded)
    table = Table(title=f"Results for {state.query!r}", show_lines=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Title")
    table.add_column("Date / type")
    table.add_column("Artist")
    row = 0
    for object_id in order:
        item = loaded.get(object_id)
        if item is None:
            if state.candidate_ids:
                table.add_row("", "[dim]loading…[/dim]", "", "")
            continue
        row += 1
        table.add_row(str(row), item.title or _PLACEHOLDER, item.caption or _PLACEHOLDER, format_artist(item))
    console.print(table)
    if state.status is SearchStatus.ABORTED:
        console.print("[yellow]Search stopped before all results loaded.[/yellow]")
    console.print(f"Showing {state.loaded_count} of up to {page_size} results.")


def render_details(console: Console, item: CatalogItem, *, loading: bool = False) -> None:
    fields = (
        ("Medium", item.medium),
        ("Date", item.object_date),
        ("Dimensions", item.dimensions),
        ("Department", item.department),
        ("Location", item.repository),
        ("Credit", item.credit_line),
    )
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold")
    table.add_column()
    for label, value in fields:
        table.add_row(label, value or _PLACEHOLDER)
    table.add_row("Image", item.full_image_url or _PLACEHOLDER)
    subtitle = "Loading details…" if loading else None
    console.print(
        Panel(table, title=f"{item.title or _PLACEHOLDER} · {format_artist(item)}", subtitle=subtitle)
    )


class ViewerApp:
    """Wires the engine services together for one terminal session."""

    def __init__(self, config: Config, console: Console, *, assume_default_path: bool = False) -> None:
        self.config = config
        self.console = console
        self._client = build_http_client(config.http_timeout)
        self.catalog = MetCatalog(
            MetCatalogConfig(base_url=config.api_base, timeout_seconds=config.http_timeout),
            client=self._client,
        )
        preloader = ImagePreloader(client=self._client) if config.search.preload_images else None
        self.controller = SearchController(
            self.catalog,
            cache=ObjectCache(),
            preloader=preloader,
            config=config.search,
        )
        self.saver = ImageSaver(
            PromptSaveDialog(console, config.download_dir, assume_default=assume_default_path),
            client=self._client,
        )

    async def search(self, query: str) -> SearchState:
        with self.console.status("Gathering artworks from the collection…") as status:

            def _on_change(state: SearchState) -> None:
                if state.is_searching:
                    status.update(f"Searching… {state.loaded_count} loaded")

            unsubscribe = self.controller.subscribe(_on_change)
            try:
                state = await self.controller.search(query)
                if self.config.search.load_mode is LoadMode.LAZY:
                    # Every row of the terminal table counts as visible.
                    for object_id in state.candidate_ids:
                        self.controller.on_visible(object_id)
                    await self.controller.drain()
                    state = self.controller.state
            finally:
                unsubscribe()
        render_results(self.console, state, self.config.search.page_size)
        return state

    async def show_details(self, index: int) -> Optional[CatalogItem]:
        item = self._result_at(index)
        if item is None:
            return None
        task = self.controller.select_item(item)
        if task is not None:
            render_details(self.console, item, loading=True)
            await task
        details = self.controller.state.active_details or item
        render_details(self.console, details)
        return details

    async def save(self, index: int) -> bool:
        item = await self.show_details(index)
        if item is None:
            return False
        if not item.full_image_url:
            self.console.print(NO_IMAGE_MESSAGE)
            return False
        self.console.print("Saving...")
        result = await self.saver.save_item(item)
        self.console.print(describe_save_result(result))
        return result.saved

    async def interactive(self) -> None:
        self.console.print("Commands: <query>, :details N, :save N, :clear, :quit")
        while True:
            line = (await asyncio.to_thread(Prompt.ask, "Search", console=self.console, default="")).strip()
            if line in {":quit", ":q"}:
                return
            if line == ":clear" or not line:
                self.controller.reset()
                render_results(self.console, self.controller.state, self.config.search.page_size)
                continue
            command, _, argument = line.partition(" ")
            if command in {":details", ":save"}:
                try:
                    index = int(argument)
                except ValueError:
                    self.console.print(f"Usage: {command} N")
                    continue
                if command == ":details":
                    await self.show_details(index)
                else:
                    await self.save(index)
                continue
            await self.search(line)

    async def aclose(self) -> None:
        await self.controller.aclose()
        await self._client.aclose()

    def _result_at(self, index: int) -> Optional[CatalogItem]:
        results = ordered_results(self.controller.state)
        if index < 1 or index > len(results):
            self.console.print(f"[red]No result #{index}[/red]")
            return None
        return results[index - 1]


async def run(args: argparse.Namespace) -> int:
    config = load_config(args.env_file)
    if args.mode:
        config.search = replace(config.search, load_mode=LoadMode(args.mode))
    setup_logging(config.log_level)
    info_domain(
        "metviewer.main",
        "Config loaded",
        stage="CONFIG_OK",
        page_size=config.search.page_size,
        max_concurrent=config.search.max_concurrent,
        min_delay_ms=config.search.min_delay_ms,
        mode=config.search.load_mode.value,
    )

    app = ViewerApp(config, Console(), assume_default_path=args.yes)
    try:
        if not args.query:
            await app.interactive()
            return 0
        state = await app.search(" ".join(args.query))
        if args.details:
            await app.show_details(args.details)
        if args.save and not await app.save(args.save):
            return 1
        return 1 if state.error else 0
    finally:
        await app.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Search the Met collection from the terminal")
    parser.add_argument("query", nargs="*", help="Search terms; omit for interactive mode")
    parser.add_argument("--mode", choices=[mode.value for mode in LoadMode], help="Result loading mode")
    parser.add_argument("--details", type=int, metavar="N", help="Show details of result N")
    parser.add_argument("--save", type=int, metavar="N", help="Save the image of result N")
    parser.add_argument("--yes", action="store_true", help="Save to the default path without prompting")
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    args = parser.parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # noqa: BLE001
        setup_logging()
        log_event(
            "CRITICAL",
            "metviewer.runtime",
            f"Unhandled exception: {exc}",
            stage="UNHANDLED_EXCEPTION",
            extra={"exception": repr(exc)},
        )
        raise


__all__ = ["PromptSaveDialog", "ViewerApp", "main", "ordered_results", "render_details", "render_results", "run"]
