"""
CLI for running and following shipline deployments.

This module provides the operator-facing command line. ``deploy`` runs the
pipeline in-process against the current kubectl context and docker daemon
(or the in-memory simulation) and exits with a status that tells the failure
categories apart; the other commands talk to the shipline trigger API.

Commands:
    deploy: Run the deployment pipeline locally
    trigger: Start a run through the trigger API
    watch: Follow a run's logs until it finishes
    runs: List runs known to the API
    serve: Run the trigger API
    status: Check API health status

Exit codes (deploy and watch):
    0 success, 1 unexpected error, 2 test failure, 3 build failure,
    4 push failure, 5 cluster precondition failure, 6 apply rejected,
    7 rollout timeout, 8 ingress provisioning timeout, 9 transient cluster error

Author: Nosa Omorodion
Version: 0.3.0
"""
import asyncio
import logging
import os
import time
from typing import Any, Dict, List, Optional

import requests
import typer
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from shipline.config import Settings, get_settings
from shipline.errors import ExitCode
from shipline.manifests import current_commit, load_pipeline_file
from shipline.models import PipelineRequest, Revision, Run
from shipline.pipeline_runner import create_executor

app = typer.Typer(help="Build, push and roll out a revision to the cluster")
console = Console()

# Configuration
DEFAULT_BASE = os.getenv("SHIPLINE_API_URL", "http://localhost:8080")
DEFAULT_TIMEOUT = int(os.getenv("SHIPLINE_HTTP_TIMEOUT", "10"))
MAX_WATCH_TIME = int(os.getenv("SHIPLINE_MAX_WATCH_TIME", "1800"))  # 30 minutes

_STATUS_STYLE = {
    "succeeded": "green",
    "failed": "red",
    "running": "yellow",
    "pending": "dim",
}


def _base_url(base: Optional[str]) -> str:
    """Get the base URL for API requests."""
    return base or DEFAULT_BASE


def _setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        force=True,
    )


class APIClient:
    """Thin requests session bound to the trigger API; raises on non-2xx."""

    def __init__(self, base_url: str, timeout: int = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()

    def _send(self, method: str, endpoint: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.session.request(method, f"{self.base_url}{endpoint}", **kwargs)
            response.raise_for_status()
        except requests.RequestException as e:
            logging.debug(f"{method} {endpoint} failed: {e}", exc_info=True)
            raise
        return response

    def get(self, endpoint: str, **kwargs) -> requests.Response:
        return self._send("GET", endpoint, **kwargs)

    def post(self, endpoint: str, json_data: Optional[Dict[str, Any]] = None, **kwargs) -> requests.Response:
        return self._send("POST", endpoint, json=json_data, **kwargs)


def _handle_api_error(error: requests.RequestException, operation: str) -> None:
    """Print an API error consistently."""
    if getattr(error, "response", None) is not None:
        detail = error.response.text
        console.print(f"[red]API Error ({operation}):[/red] {error.response.status_code} - {escape(detail)}")
    else:
        console.print(f"[red]API Error ({operation}):[/red] {escape(str(error))}")
    logging.debug(f"API error during {operation}", exc_info=True)


def _resolve_revision(revision: Optional[str], source: str) -> Revision:
    return Revision(id=revision or current_commit(source))


def _trigger_payload(request: PipelineRequest) -> Dict[str, Any]:
    """Serialize a request for POST /runs, keeping literal secret values."""
    payload = request.model_dump(mode="json", exclude={"secrets"})
    payload["secrets"] = [
        {
            "name": s.name,
            "env": s.env,
            "values": {k: v.get_secret_value() for k, v in s.values.items()},
        }
        for s in request.secrets
    ]
    return payload


def _print_run(run: Dict[str, Any]) -> None:
    """Render step and rollout target tables for a run (as JSON data)."""
    steps = Table(title=f"Run {run['id'][:8]} - revision {run['revision']['id']}", box=box.SIMPLE_HEAVY)
    steps.add_column("Step", style="bold")
    steps.add_column("Status")
    steps.add_column("Detail")
    for step in run.get("steps", []):
        style = _STATUS_STYLE.get(step["status"], "white")
        detail = step.get("message") or ""
        if step.get("error_kind"):
            detail = f"{step['error_kind']}: {detail}"
        steps.add_row(step["name"], f"[{style}]{step['status']}[/{style}]", escape(detail))
    console.print(steps)

    if run.get("targets"):
        targets = Table(title="Rollout targets", box=box.SIMPLE_HEAVY)
        targets.add_column("Deployment", style="bold cyan")
        targets.add_column("Image", style="blue")
        targets.add_column("Status")
        targets.add_column("Message")
        for target in run["targets"]:
            style = _STATUS_STYLE.get(target["status"], "white")
            targets.add_row(
                target["deployment"],
                target["image"],
                f"[{style}]{target['status']}[/{style}]",
                escape(target.get("message") or ""),
            )
        console.print(targets)

    if run["status"] == "succeeded":
        console.print(f"[green]succeeded[/green] - available at [bold]{run.get('endpoint')}[/bold]")
    elif run["status"] == "failed":
        console.print(f"[red]{run['outcome']}[/red] ({run.get('error_kind')}): {escape(run.get('error_message') or '')}")
        console.print("[yellow]No rollback was performed. Inspect the cluster and re-run.[/yellow]")


@app.command("deploy")
def deploy(
    config: str = typer.Argument(..., help="Path to the pipeline definition (YAML or JSON)"),
    revision: Optional[str] = typer.Option(None, "--revision", "-r", help="Revision id (default: git HEAD)"),
    manifests: List[str] = typer.Option([], "--manifests", "-f", help="Manifest file or directory"),
    simulate: bool = typer.Option(False, "--simulate", help="Use the in-memory cluster and registry"),
    concurrent: bool = typer.Option(False, "--concurrent", help="Wait on all rollouts together"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Run the deployment pipeline for a revision."""
    _setup_logging(verbose)
    settings: Settings = get_settings()
    if simulate:
        settings = settings.model_copy(update={"simulate": True})
    try:
        rev = _resolve_revision(revision, os.path.dirname(os.path.abspath(config)))
        request = load_pipeline_file(
            config,
            rev,
            manifests=manifests,
            registry=settings.registry,
            concurrent_rollout=concurrent,
        )
        executor = create_executor(settings)
        executor.validate_request(request)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(int(ExitCode.unexpected))

    console.print(
        f"[blue]Deploying[/blue] {rev.id} to {executor.config.cluster_label}"
        + (" [yellow](simulated)[/yellow]" if settings.simulate else "")
    )
    run: Run = asyncio.run(executor.run_pipeline(request))
    for line in run.logs:
        console.print(f"  {line}", markup=False, highlight=False)
    _print_run(run.model_dump(mode="json"))
    raise typer.Exit(run.exit_code if run.exit_code is not None else int(ExitCode.unexpected))


@app.command("trigger")
def trigger(
    config: str = typer.Argument(..., help="Path to the pipeline definition (YAML or JSON)"),
    revision: Optional[str] = typer.Option(None, "--revision", "-r", help="Revision id (default: git HEAD)"),
    manifests: List[str] = typer.Option([], "--manifests", "-f", help="Manifest file or directory"),
    concurrent: bool = typer.Option(False, "--concurrent", help="Wait on all rollouts together"),
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base API URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Start a pipeline run through the trigger API."""
    _setup_logging(verbose)
    try:
        rev = _resolve_revision(revision, os.path.dirname(os.path.abspath(config)))
        # secret env references are resolved by the API process
        request = load_pipeline_file(
            config, rev, manifests=manifests, concurrent_rollout=concurrent, resolve_secrets=False
        )
        payload = _trigger_payload(request)
        api_client = APIClient(_base_url(base))
        response = api_client.post("/runs", json_data=payload)
        result = response.json()
        console.print(
            f"[green]Triggered run[/green]: {result['run_id']} "
            f"(revision: {result['revision']}, status: {result['status']})"
        )
        console.print(
            f"[blue]Tip:[/blue] Use 'shipline watch {result['run_id']}' to monitor execution"
        )
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(int(ExitCode.unexpected))
    except requests.RequestException as e:
        _handle_api_error(e, "triggering run")
        raise typer.Exit(int(ExitCode.unexpected))


@app.command("watch")
def watch(
    run_id: str = typer.Argument(..., help="Run ID to watch"),
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base API URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    max_time: Optional[int] = typer.Option(None, "--max-time", "-t", help="Maximum watch time in seconds"),
    interval: float = typer.Option(2.0, "--interval", "-i", help="Seconds between polls"),
) -> None:
    """Watch a pipeline run until it finishes."""
    _setup_logging(verbose)
    try:
        api_client = APIClient(_base_url(base))
        status = "pending"
        last_len = 0
        start_time = time.time()
        max_watch_time = max_time or MAX_WATCH_TIME
        run: Dict[str, Any] = {}
        console.print(f"[blue]Watching run:[/blue] {run_id}")
        while status in ("pending", "running"):
            if time.time() - start_time > max_watch_time:
                console.print(f"[yellow]Maximum watch time ({max_watch_time}s) exceeded. Exiting.[/yellow]")
                raise typer.Exit(int(ExitCode.unexpected))
            run = api_client.get(f"/runs/{run_id}").json()
            status = run["status"]
            logs = run.get("logs", [])
            for line in logs[last_len:]:
                console.print(f"  {line}", markup=False, highlight=False)
            last_len = len(logs)
            if status in ("pending", "running"):
                time.sleep(interval)
        _print_run(run)
        code = run.get("exit_code")
        raise typer.Exit(code if code is not None else int(ExitCode.unexpected))
    except requests.RequestException as e:
        _handle_api_error(e, f"watching run {run_id}")
        raise typer.Exit(int(ExitCode.unexpected))


@app.command("runs")
def list_runs(
    revision: Optional[str] = typer.Option(None, "--revision", "-r", help="Only runs of this revision"),
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base API URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """List pipeline runs known to the API."""
    _setup_logging(verbose)
    try:
        api_client = APIClient(_base_url(base))
        params = {"revision": revision} if revision else None
        items = api_client.get("/runs", params=params).json()
        if not items:
            console.print("[yellow]No runs found[/yellow]")
            return
        table = Table(title="Runs", box=box.SIMPLE_HEAVY)
        table.add_column("ID", style="bold cyan")
        table.add_column("Revision", style="bold")
        table.add_column("Outcome")
        table.add_column("Endpoint", style="blue")
        for run in items:
            style = _STATUS_STYLE.get(run["status"], "white")
            table.add_row(
                run["id"][:8] + "...",
                run["revision"]["id"],
                f"[{style}]{run['outcome']}[/{style}]",
                run.get("endpoint") or "",
            )
        console.print(table)
    except requests.RequestException as e:
        _handle_api_error(e, "listing runs")
        raise typer.Exit(int(ExitCode.unexpected))


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Interface to bind"),
    port: int = typer.Option(8080, "--port", "-p", help="Port to listen on"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Run the trigger API (set SHIPLINE_SIMULATE=true for the in-memory cluster)."""
    import uvicorn

    _setup_logging(verbose)
    console.print(f"[blue]Serving shipline API on[/blue] http://{host}:{port}")
    uvicorn.run("shipline.main:app", host=host, port=port)


@app.command("status")
def status(
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base API URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Check the health status of the shipline API."""
    _setup_logging(verbose)
    try:
        api_client = APIClient(_base_url(base), timeout=5)
        health_data = api_client.get("/health").json()
        console.print("[green]shipline API is running[/green]")
        console.print(f"[blue]Base URL:[/blue] {_base_url(base)}")
        console.print(f"[blue]Version:[/blue] {health_data.get('version', 'unknown')}")
        console.print(f"[blue]Simulated:[/blue] {health_data.get('simulate', False)}")
    except requests.RequestException as e:
        console.print(f"[red]Cannot connect to API:[/red] {escape(str(e))}")
        console.print(f"[blue]Attempted URL:[/blue] {_base_url(base)}")
        raise typer.Exit(int(ExitCode.unexpected))


if __name__ == "__main__":
    app()
