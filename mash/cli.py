"""CLI for mash - a minimal agent that acts only through the shell."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal

import click

from mash import __version__
from mash.config import (
    DEFAULT_PROXY_HOST,
    TASK_FILE_ENV,
    ApiConfig,
    ConfigError,
    McpServerConfig,
    command_timeout,
    load_mcp_config,
    proxy_port,
)
from mash.schemas import ExecStatus, LoopState, SessionOutcome
from mash.tasks import TaskFileStore, TaskStoreError, init_session_file

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="mash")
@click.option("--verbose", "-v", is_flag=True, help="Log progress to stderr")
def main(verbose: bool) -> None:
    """mash - a minimal agent whose only tool is the shell.

    Run a session, execute single commands, manage the task list and
    serve MCP tools to shell commands over HTTP.
    """
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format=LOG_FORMAT,
    )


# --- Agent session ---


def _print_event(event) -> None:
    from mash.agent import EventKind

    if event.kind == EventKind.TEXT:
        click.echo(event.text)
    elif event.kind == EventKind.TOOL_CALL:
        click.secho(f"$ {event.text}", fg="cyan")
    elif event.kind == EventKind.TOOL_RESULT:
        click.secho(f"  ⎿ {event.text or '(empty)'}", dim=True)
    elif event.kind == EventKind.PROTOCOL_ERROR:
        click.secho(f"! {event.text}", fg="yellow")
    elif event.kind == EventKind.TASKS_UPDATED:
        click.secho(f"[tasks {event.done}/{event.total}]", fg="green")


async def _run_session(
    goal: str,
    api_config: ApiConfig,
    *,
    max_steps: int | None,
    timeout: float | None,
    start_proxy: bool,
) -> SessionOutcome:
    from mash.agent import ConversationLoop
    from mash.llm import AnthropicClient
    from mash.prompt_engine import build_system_prompt
    from mash.proxy import base_url, create_app, create_server
    from mash.registry import ProviderRegistry

    registry = ProviderRegistry.from_config()
    port = proxy_port()
    proxy_url = base_url(port=port)
    event_loop = asyncio.get_running_loop()
    server = None
    server_task = None
    client = None
    try:
        if start_proxy:
            await registry.connect_all()
            server = create_server(create_app(registry, listing_base_url=proxy_url), port=port)
            server_task = asyncio.create_task(server.serve())

        task_file = init_session_file()
        # Child shells inherit this, so `mash tasks ...` finds the session file.
        os.environ[TASK_FILE_ENV] = str(task_file)

        system = build_system_prompt(
            task_file=task_file,
            snapshot=registry.snapshot() if start_proxy else None,
            proxy_url=proxy_url,
        )
        client = AnthropicClient(api_config, system)
        loop = ConversationLoop(
            client,
            max_steps=max_steps,
            default_timeout=timeout or command_timeout(),
            task_store=TaskFileStore(task_file),
            on_event=_print_event,
        )

        event_loop.add_signal_handler(signal.SIGINT, loop.cancel)
        try:
            return await loop.run(goal)
        finally:
            event_loop.remove_signal_handler(signal.SIGINT)
    finally:
        if client is not None:
            await client.aclose()
        if server is not None:
            server.should_exit = True
            await server_task
        await registry.close()


@main.command()
@click.argument("goal")
@click.option("--max-steps", type=click.IntRange(min=1), default=None, help="Abort after this many actions")
@click.option("--timeout", type=float, default=None, help="Default command timeout in seconds")
@click.option("--no-proxy", is_flag=True, help="Do not connect MCP servers or start the proxy")
def run(goal: str, max_steps: int | None, timeout: float | None, no_proxy: bool) -> None:
    """Run one agent session for GOAL.

    \b
    Example:
        mash run "add a --json flag to the report command"
        mash run "fix the failing test" --max-steps 30
    """
    try:
        api_config = ApiConfig.load()
    except ConfigError as e:
        raise click.UsageError(str(e))

    outcome = asyncio.run(
        _run_session(
            goal,
            api_config,
            max_steps=max_steps,
            timeout=timeout,
            start_proxy=not no_proxy,
        )
    )

    if outcome.state != LoopState.DONE:
        reason = outcome.abort_reason.value if outcome.abort_reason else "unknown"
        click.echo(f"Aborted ({reason}): {outcome.detail}", err=True)
        raise SystemExit(1)


# --- Single command ---


@main.command(name="exec")
@click.argument("command")
@click.option("--timeout", type=float, default=None, help="Timeout in seconds")
@click.option(
    "--cwd",
    default=None,
    type=click.Path(exists=True, file_okay=False, dir_okay=True),
    help="Working directory",
)
@click.option("--raw", is_flag=True, help="Output the result as JSON")
def exec_command(command: str, timeout: float | None, cwd: str | None, raw: bool) -> None:
    """Run COMMAND through the executor and print the result.

    Exits with the command's exit code, or 1 when it did not exit normally.
    """
    from mash.executor import run_command

    result = run_command(command, timeout=timeout or command_timeout(), working_dir=cwd)
    if raw:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        click.echo(result.render())

    if result.status == ExecStatus.EXITED:
        raise SystemExit(result.exit_code)
    raise SystemExit(1)


# --- Task list ---


task_file_option = click.option(
    "--file",
    "-f",
    "task_file",
    default=None,
    type=click.Path(dir_okay=False),
    help=f"Task file (defaults to ${TASK_FILE_ENV})",
)


def _task_store(task_file: str | None) -> TaskFileStore:
    path = task_file or os.environ.get(TASK_FILE_ENV)
    if not path:
        raise click.UsageError(f"No task file: pass --file or set {TASK_FILE_ENV}")
    return TaskFileStore(path)


@main.group()
def tasks() -> None:
    """Create, complete and list checklist tasks."""
    pass


@tasks.command("create")
@task_file_option
@click.argument("descriptions", nargs=-1, required=True)
def tasks_create(task_file: str | None, descriptions: tuple[str, ...]) -> None:
    """Replace the task list with DESCRIPTIONS, numbered from 1.

    \b
    Example:
        mash tasks create "Read the parser" "Add the flag" "Run the tests"
    """
    store = _task_store(task_file)
    try:
        entries = store.create(list(descriptions))
    except (TaskStoreError, ValueError) as e:
        raise click.ClickException(str(e))
    click.echo(f"Created {len(entries)} tasks in {store.path}")


@tasks.command("done")
@task_file_option
@click.argument("ordinal", type=click.IntRange(min=1))
def tasks_done(task_file: str | None, ordinal: int) -> None:
    """Mark task number ORDINAL as complete."""
    store = _task_store(task_file)
    try:
        entry = store.complete(ordinal)
    except TaskStoreError as e:
        raise click.ClickException(str(e))
    click.echo(f"Completed task {entry.ordinal}. {entry.description}")


@tasks.command("list")
@task_file_option
@click.option("--raw", is_flag=True, help="Output raw JSON instead of formatted text")
def tasks_list(task_file: str | None, raw: bool) -> None:
    """Show the current task list."""
    store = _task_store(task_file)
    try:
        entries = store.read()
    except TaskStoreError as e:
        raise click.ClickException(str(e))

    if raw:
        click.echo(json.dumps([e.model_dump() for e in entries], indent=2))
        return

    if not entries:
        click.echo("No tasks.")
        return
    for entry in entries:
        mark = "x" if entry.completed else " "
        click.echo(f"- [{mark}] {entry.ordinal}. {entry.description}")
    done = sum(1 for e in entries if e.completed)
    click.echo(f"\n{done}/{len(entries)} done")


@tasks.command("init")
@click.option("--project", "-p", default=None, help="Project name (defaults to directory name)")
def tasks_init(project: str | None) -> None:
    """Create an empty task file for a new session and print its path."""
    try:
        path = init_session_file(project)
    except OSError as e:
        raise click.ClickException(f"Cannot create task file: {e}")
    click.echo(str(path))


# --- Capability proxy ---


@main.command()
@click.option("--port", default=None, type=int, help=f"Port to bind (defaults to $MCP_HTTP_PORT or {proxy_port()})")
@click.option("--host", default=DEFAULT_PROXY_HOST, help="Host to bind to")
def serve(port: int | None, host: str) -> None:
    """Start the capability proxy HTTP server."""
    import uvicorn

    from mash.proxy import base_url, create_app
    from mash.registry import ProviderRegistry

    logging.getLogger("mash").setLevel(logging.INFO)
    port = port or proxy_port()
    try:
        registry = ProviderRegistry.from_config()
    except ConfigError as e:
        raise click.ClickException(str(e))

    app = create_app(registry, listing_base_url=base_url(host, port), connect_on_startup=True)
    click.echo(f"Starting mash capability proxy on {host}:{port}")
    uvicorn.run(app, host=host, port=port)


@main.group()
def mcp() -> None:
    """Inspect configured MCP servers."""
    pass


async def _fetch_tools(name: str, config: McpServerConfig, timeout: float):
    from mash.registry import McpProvider

    provider = McpProvider(name, config, connect_timeout=timeout)
    await provider.start()
    try:
        return provider.tools
    finally:
        await provider.close()


def _load_configs() -> dict[str, McpServerConfig]:
    try:
        return load_mcp_config()
    except ConfigError as e:
        raise click.ClickException(str(e))


@mcp.command("list")
@click.option("--timeout", default=30.0, help="Connect timeout per server in seconds")
def mcp_list(timeout: float) -> None:
    """List configured MCP servers and whether they connect."""
    from mash.config import mash_config_path

    configs = _load_configs()
    if not configs:
        click.echo("No MCP servers configured.")
        click.echo(f"Add servers to {mash_config_path('mcp.json')}")
        return

    click.echo("MCP Servers:\n")
    for name in sorted(configs):
        config = configs[name]
        cmd_line = " ".join([config.command, *config.args])
        line = f"  {name}  [{cmd_line}]"
        if config.disabled:
            click.echo(f"{line}  — disabled")
            continue
        try:
            tools = asyncio.run(_fetch_tools(name, config, timeout))
        except Exception as e:
            click.echo(f"{line}  — ✗ {e}")
        else:
            click.echo(f"{line}  — ✓ connected ({len(tools)} tools)")


@mcp.command("tools")
@click.argument("name")
@click.option("--timeout", default=30.0, help="Connect timeout in seconds")
def mcp_tools(name: str, timeout: float) -> None:
    """Show the tools offered by MCP server NAME."""
    configs = _load_configs()
    if name not in configs:
        click.echo(f"MCP server '{name}' not found in config.")
        if configs:
            click.echo(f"Available: {', '.join(sorted(configs))}")
        return

    click.echo(f"Connecting to '{name}'...")
    try:
        tools = asyncio.run(_fetch_tools(name, configs[name], timeout))
    except Exception as e:
        raise click.ClickException(str(e))

    if not tools:
        click.echo("No tools available.")
        return

    click.echo(f"\nTools for '{name}' ({len(tools)} total):\n")
    for tool in sorted(tools, key=lambda t: t.name):
        click.echo(f"  {tool.name}")
        for line in (tool.description or "").splitlines()[:3]:
            click.echo(f"    {line}")
        properties = tool.input_schema.get("properties")
        if isinstance(properties, dict) and properties:
            required = set(tool.input_schema.get("required") or [])
            click.echo("    params:")
            for pname in sorted(properties):
                pschema = properties[pname] if isinstance(properties[pname], dict) else {}
                marker = " *" if pname in required else ""
                click.echo(f"      {pname}: {pschema.get('type', 'any')}{marker}")
        click.echo()


if __name__ == "__main__":
    main()
