"""CLI for sessionhub."""

import json
import os
import sys
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.panel import Panel

from sessionhub import __version__

app = typer.Typer(
    name="sessionhub",
    help="Capture Claude Code sessions to SessionHub.",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"sessionhub {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        bool | None,
        typer.Option("--version", "-v", callback=version_callback, is_eager=True),
    ] = None,
    debug: Annotated[bool, typer.Option("--debug", help="Verbose logging on stderr")] = False,
) -> None:
    """Capture Claude Code sessions to SessionHub."""
    from sessionhub.config import load_settings
    from sessionhub.log import setup_logging

    settings = load_settings(debug=debug or None)
    setup_logging(settings.debug)
    ctx.obj = settings


def _print_report(report: dict[str, Any]) -> None:
    typer.echo(json.dumps(report, indent=2))


def error_report(error: Exception) -> dict[str, Any]:
    """JSON report for a failed command, telling the user what to do next."""
    from sessionhub.errors import (
        AuthenticationError,
        OnboardingRequiredError,
        QuotaExceededError,
        SessionHubError,
        TransientError,
    )
    from sessionhub.importer import onboarding_report, quota_report

    if isinstance(error, QuotaExceededError):
        return quota_report(error)
    if isinstance(error, OnboardingRequiredError):
        return onboarding_report(error)
    if isinstance(error, AuthenticationError):
        return {"success": False, "error": "authentication_failed", "message": error.message}
    if isinstance(error, TransientError):
        return {"success": False, "error": "transient", "retryable": True, "message": error.message}
    if isinstance(error, SessionHubError):
        return {"success": False, "error": "failed", "message": error.message}
    return {"success": False, "error": "unexpected", "message": str(error)}


def _show_setup_instructions() -> None:
    err_console.print(
        Panel(
            "To get started, run:\n\n"
            "    sessionhub setup --api-key <your-api-key>\n\n"
            "Get your API key at: https://sessionhub.dev/settings",
            title="SessionHub is not configured yet!",
            border_style="yellow",
        )
    )


def _connect(settings):
    """Client for the configured backend, with the API key already checked."""
    from sessionhub.client import RemoteSessionClient

    if not settings.is_configured:
        _show_setup_instructions()
        raise typer.Exit(1)

    client = RemoteSessionClient.from_settings(settings)
    user = client.validate_credential()
    if user is None:
        err_console.print(
            Panel(
                "Your API key appears to be invalid.\n\n"
                "To reconfigure, run:\n\n"
                "    sessionhub setup --api-key <your-api-key>\n\n"
                "Get a new API key at: https://sessionhub.dev/settings",
                title="Authentication Failed",
                border_style="red",
            )
        )
        raise typer.Exit(1)
    return client


@app.command()
def setup(
    ctx: typer.Context,
    api_key: Annotated[str, typer.Option("--api-key", help="Your SessionHub API key")],
) -> None:
    """Validate and store an API key."""
    from sessionhub.client import RemoteSessionClient
    from sessionhub.config import save_api_key
    from sessionhub.errors import SessionHubError

    settings = ctx.obj
    client = RemoteSessionClient.from_settings(settings.model_copy(update={"api_key": api_key}))
    try:
        user = client.validate_credential()
    except SessionHubError as e:
        err_console.print(f"[red]Error: {e.message}[/red]")
        raise typer.Exit(1)

    if user is None:
        err_console.print("[red]Invalid API key.[/red] Get your API key at https://sessionhub.dev/settings")
        raise typer.Exit(1)

    config_file = save_api_key(api_key, settings.config_dir)
    console.print(f"[green]Configured for {user.email}[/green] ({user.subscription_tier})")
    console.print(f"Config saved to {config_file}")


@app.command()
def capture(
    ctx: typer.Context,
    transcript: Annotated[
        Path | None, typer.Option("--transcript", "-t", help="Transcript file (latest if omitted)")
    ] = None,
    project_path: Annotated[
        str | None, typer.Option("--project-path", help="Project directory (cwd if omitted)")
    ] = None,
    project: Annotated[str | None, typer.Option("--project", "-p", help="Project name")] = None,
    session_id: Annotated[
        str | None, typer.Option("--session-id", help="Claude Code session id to capture")
    ] = None,
    session_name: Annotated[str | None, typer.Option("--session", "-s", help="Session name")] = None,
    last: Annotated[
        int | None, typer.Option("--last", "-n", help="Only capture the last N exchanges")
    ] = None,
    auto: Annotated[
        bool,
        typer.Option("--auto", help="Session-end mode: respect auto-save and skip empty sessions"),
    ] = False,
) -> None:
    """Capture a session transcript."""
    from sessionhub.importer import capture_session, find_latest_transcript, should_auto_save
    from sessionhub.parser import has_meaningful_content

    settings = ctx.obj
    project_path = project_path or os.getcwd()

    if transcript is None:
        transcript = find_latest_transcript(project_path, session_id)
        if transcript is None:
            err_console.print("[red]Error: No transcript file found[/red]")
            raise typer.Exit(1)

    if auto:
        if not settings.is_configured:
            raise typer.Exit(0)
        if not has_meaningful_content(transcript):
            _print_report({"success": True, "skipped": True, "reason": "empty_session"})
            return

    client = _connect(settings)
    if auto and not should_auto_save(client):
        _print_report({"success": True, "skipped": True, "reason": "auto_save_disabled"})
        return

    try:
        report = capture_session(
            client,
            settings,
            transcript,
            project_path=project_path,
            project_name=project,
            session_name=session_name,
            last_exchanges=last,
        )
    except Exception as e:
        _print_report(error_report(e))
        raise typer.Exit(1)

    _print_report(report)
    if not report["success"]:
        raise typer.Exit(1)


@app.command("import-all")
def import_all(
    ctx: typer.Context,
    path: Annotated[
        str | None, typer.Option("--path", help="Project directory (cwd if omitted)")
    ] = None,
    project: Annotated[str | None, typer.Option("--project", "-p", help="Project name")] = None,
) -> None:
    """Import every session of a project."""
    from sessionhub import importer

    settings = ctx.obj
    client = _connect(settings)
    try:
        report = importer.import_all(client, settings, path or os.getcwd(), project)
    except Exception as e:
        _print_report(error_report(e))
        raise typer.Exit(1)

    data = report.to_dict()
    _print_report(data)
    if report.plan.aborted:
        raise typer.Exit(1)


def _hook_cwd() -> str | None:
    if sys.stdin.isatty():
        return None
    raw = sys.stdin.read()
    if not raw.strip():
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    return data.get("cwd") if isinstance(data, dict) else None


@app.command()
def context(
    ctx: typer.Context,
    cwd: Annotated[
        str | None, typer.Option("--cwd", help="Project directory (read from hook stdin if omitted)")
    ] = None,
) -> None:
    """Print SessionStart hook output with project observations."""
    from sessionhub.client import RemoteSessionClient
    from sessionhub.importer import build_session_context, hook_output

    settings = ctx.obj
    project_path = cwd or _hook_cwd() or os.getcwd()
    if not settings.is_configured:
        _print_report(hook_output())
        return

    client = RemoteSessionClient.from_settings(settings)
    _print_report(build_session_context(client, project_path))


def _mark(ok: bool) -> str:
    return "[green]✓[/green]" if ok else "[red]✗[/red]"


@app.command()
def health(
    ctx: typer.Context,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
) -> None:
    """Check configuration and backend connectivity."""
    from sessionhub.client import RemoteSessionClient
    from sessionhub.errors import SessionHubError

    settings = ctx.obj
    status: dict[str, Any] = {
        "configured": settings.is_configured,
        "apiKeyValid": False,
        "backendConnected": False,
        "backendUrl": settings.backend_url,
        "errors": [],
    }

    if not settings.is_configured:
        status["errors"].append("API key not configured")
    else:
        client = RemoteSessionClient.from_settings(settings)
        try:
            user = client.validate_credential()
        except SessionHubError as e:
            status["errors"].append(f"Backend connection failed: {e.message}")
        else:
            status["backendConnected"] = True
            if user is None:
                status["errors"].append("API key validation failed")
            else:
                status["apiKeyValid"] = True

    if json_output:
        _print_report(status)
    else:
        console.print("\n[bold]SessionHub health[/bold]\n")
        console.print(f"Configured:         {_mark(status['configured'])}")
        console.print(f"API Key Valid:      {_mark(status['apiKeyValid'])}")
        console.print(f"Backend Connected:  {_mark(status['backendConnected'])}")
        if status["errors"]:
            console.print("\n[bold]Errors:[/bold]")
            for error in status["errors"]:
                console.print(f"  - {error}")
        else:
            console.print("\nAll checks passed!")

    if status["errors"]:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
