"""CLI entry point for alchemist."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import NoReturn

import aiofiles
import typer
from rich.console import Console
from rich.table import Table

from alchemist.compile import compile_file_once
from alchemist.config import AlchemistConfig
from alchemist.errors import AlchemistError
from alchemist.project import find_project
from alchemist.repl.dispatch import SendMode, normalize
from alchemist.repl.manager import SessionManager
from alchemist.repl.prompt import PromptDetector

app = typer.Typer(
    name="alchemist",
    help="Drive an Elixir IEx session from the command line.",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _fail(error: Exception) -> NoReturn:
    err_console.print(f"[bold red]Error:[/bold red] {error}")
    raise typer.Exit(1)


async def _submit(
    config: AlchemistConfig,
    text: str,
    mode: SendMode,
    cwd: str,
    project_scoped: bool,
    timeout: float,
) -> str:
    """Start the session, send ``text`` once IEx is ready, return the reply.

    The reply is everything printed after the echoed input, up to the
    point where IEx sits at a prompt and stays quiet for the configured
    settle time. Verbatim text with several expressions gets one prompt
    per expression, so waiting for the first one would cut the reply short.
    """
    manager = SessionManager(config)
    try:
        session = await manager.run(cwd, project_scoped=project_scoped)
        if not await session.wait_for_prompt(timeout=timeout):
            logging.getLogger(__name__).warning(
                "No prompt from %s after %.0fs, sending anyway",
                session.launch.program,
                timeout,
            )
        mark = session.sink.total_chars
        await manager.send(session.key, text, mode)
        echoed = normalize(text, mode)
        if not await session.wait_for_idle(
            mark=mark, timeout=timeout, settle_time=config.sink.settle_time
        ):
            logging.getLogger(__name__).warning(
                "Reply from %s still incomplete after %.0fs",
                session.launch.program,
                timeout,
            )
        reply = session.sink.read_from(mark)
        return reply[len(echoed):] if reply.startswith(echoed) else reply
    finally:
        await manager.close_all()


def _print_reply(reply: str, prompt_pattern: str) -> None:
    detector = PromptDetector(prompt_pattern)
    lines = reply.rstrip().split("\n")
    if lines and detector.matches(lines[-1]):
        lines = lines[:-1]
    console.print("\n".join(lines), markup=False, highlight=False)


@app.command()
def send(
    text: str = typer.Argument(help="Elixir code to evaluate."),
    mode: SendMode = typer.Option(
        SendMode.LINE,
        "--mode",
        help="'line' joins the text into one line; 'verbatim' sends it as-is.",
    ),
    project: bool = typer.Option(
        False,
        "--project/--no-project",
        help="Require a mix project and run IEx with it loaded.",
    ),
    cwd: str = typer.Option(".", "--cwd", help="Directory to start from."),
    timeout: float = typer.Option(15.0, "--timeout", help="Seconds to wait for IEx."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Evaluate TEXT in IEx and print the result."""
    setup_logging(verbose)
    config = AlchemistConfig.load(config_file)
    try:
        reply = asyncio.run(
            _submit(config, text, mode, os.path.abspath(cwd), project, timeout)
        )
    except AlchemistError as e:
        _fail(e)
    else:
        _print_reply(reply, config.sink.prompt_pattern)


@app.command("send-file")
def send_file(
    path: str = typer.Argument(help="Elixir source file to evaluate."),
    project: bool = typer.Option(
        False,
        "--project/--no-project",
        help="Require a mix project and run IEx with it loaded.",
    ),
    timeout: float = typer.Option(30.0, "--timeout", help="Seconds to wait for IEx."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Evaluate a whole file in IEx, verbatim."""
    setup_logging(verbose)
    file_path = Path(path).resolve()
    if not file_path.is_file():
        err_console.print(f"[bold red]Error:[/bold red] File not found: {file_path}")
        raise typer.Exit(1)

    config = AlchemistConfig.load(config_file)

    async def _run() -> str:
        async with aiofiles.open(file_path, "r", encoding="utf-8") as f:
            source = await f.read()
        return await _submit(
            config, source, SendMode.VERBATIM, str(file_path.parent), project, timeout
        )

    try:
        reply = asyncio.run(_run())
    except AlchemistError as e:
        _fail(e)
    else:
        _print_reply(reply, config.sink.prompt_pattern)


@app.command("compile")
def compile_(
    path: str = typer.Argument(help="Elixir source file to compile."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Compile a single file with elixirc."""
    setup_logging(verbose)
    config = AlchemistConfig.load(config_file)
    try:
        result = asyncio.run(compile_file_once(config, path))
    except AlchemistError as e:
        _fail(e)
    else:
        if result.output:
            console.print(result.output.rstrip(), markup=False, highlight=False)
        raise typer.Exit(result.returncode)


@app.command("project")
def project_(
    cwd: str = typer.Option(".", "--cwd", help="Directory to start from."),
) -> None:
    """Show the mix project enclosing a directory."""
    found = find_project(cwd)
    if found is None:
        err_console.print(
            f"No mix project found from {os.path.abspath(cwd)}. "
            "Sessions started here use the default IEx session."
        )
        raise typer.Exit(1)

    table = Table(show_header=False, box=None)
    table.add_row("[bold]name[/bold]", found.name)
    table.add_row("[bold]root[/bold]", str(found.root))
    console.print(table)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
