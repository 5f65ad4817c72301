from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import requests
import typer
from dotenv import load_dotenv

from .service import QueryOutcome, QueryService
from .workflows.doctor import build_doctor_report, format_doctor_report
from .workflows.query_config import load_config_from_env

app = typer.Typer(add_help_option=False, no_args_is_help=False)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _minimal_help() -> str:
    return """simquery (prepaid SIM status lookup)

Usage:
  simquery serve [--host <HOST>] [--port <PORT>] [--log-file <PATH>] [--no-preload]
  simquery query <iccid> [--json]
  simquery remote <iccid> [--url <URL>]
  simquery doctor

Discoverability:
  --help-full     Expanded help + env vars.
  --find <query>  Search commands, flags, env vars.
  --doctor        Run environment diagnostics and exit.
"""


def _help_full() -> str:
    return """simquery CLI

Commands:
  serve    Run the HTTP service (POST /api/query-sim, GET /health, DELETE /api/failures[/<iccid>]).
  query    Look up one ICCID in-process and print the result.
  remote   Look up one ICCID through a running service.
  doctor   Print environment and dependency diagnostics.

Exit codes:
  0  success
  2  classified query failure (bad ICCID, no data, denied, ...) or doctor warnings
  3  fatal error

Important env vars (a .env file in the working directory is read):
  SIMQUERY_BASE_URL
  SIMQUERY_USERNAME
  SIMQUERY_PASSWORD
  SIMQUERY_LOGIN_MODE          browser (default) or http
  SIMQUERY_SESSION_TTL         seconds, default 1500
  SIMQUERY_CACHE_TTL           seconds, default 14400
  SIMQUERY_HTTP_TIMEOUT
  SIMQUERY_DATA_WAIT_TIMEOUT
  SIMQUERY_FIELD_SELECTORS     JSON object of per-field CSS selector overrides
  SIMQUERY_LOG_FILE

Troubleshooting:
  - Run `playwright install --with-deps chromium` before the first browser login.
  - An ICCID with three failed lookups is denied until reset via DELETE /api/failures/<iccid>.
"""


_FIND_INDEX = [
    ("command", "serve", "Run the HTTP service."),
    ("command", "query", "Look up one ICCID in-process."),
    ("command", "remote", "Look up one ICCID through a running service."),
    ("command", "doctor", "Print environment and dependency diagnostics."),
    ("flag", "--host", "Bind address for serve."),
    ("flag", "--port", "Port for serve."),
    ("flag", "--log-file", "Also write logs to this file."),
    ("flag", "--no-preload", "Skip the login at service start."),
    ("flag", "--json", "Print the result JSON only."),
    ("flag", "--url", "Base URL of a running service for remote."),
    ("flag", "--help-full", "Expanded help and env vars."),
    ("flag", "--find", "Search commands, flags, env vars."),
    ("flag", "--doctor", "Run environment diagnostics and exit."),
    ("env", "SIMQUERY_BASE_URL", "CRM base URL."),
    ("env", "SIMQUERY_USERNAME", "CRM login user."),
    ("env", "SIMQUERY_PASSWORD", "CRM login password."),
    ("env", "SIMQUERY_LOGIN_MODE", "browser or http login."),
    ("env", "SIMQUERY_FIELD_SELECTORS", "Per-field selector overrides (JSON)."),
    ("env", "SIMQUERY_LOG_FILE", "Log file path."),
]


def _run_find(query: str) -> str:
    needle = (query or "").strip().lower()
    if not needle:
        return ""
    lines = []
    for category, name, desc in _FIND_INDEX:
        haystack = f"{category} {name} {desc}".lower()
        if needle in haystack:
            lines.append(f"{category} {name} - {desc}")
    return "\n".join(lines)


def _configure_logging(log_file: Optional[Path], verbose: bool = False) -> None:
    handlers: list = [logging.StreamHandler(sys.stderr)]
    target = log_file or (Path(os.environ["SIMQUERY_LOG_FILE"]) if os.getenv("SIMQUERY_LOG_FILE") else None)
    if target is not None:
        handlers.append(logging.FileHandler(target, encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def _exit_code(outcome: QueryOutcome) -> int:
    return 0 if outcome.ok else 2


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    help: bool = typer.Option(False, "--help", "-h", is_eager=True, help="Show minimal help."),
    help_full: bool = typer.Option(False, "--help-full", is_eager=True, help="Show expanded help."),
    find: Optional[str] = typer.Option(None, "--find", is_eager=True, help="Search commands, flags, env vars."),
    doctor: bool = typer.Option(False, "--doctor", is_eager=True, help="Run environment diagnostics and exit."),
) -> None:
    load_dotenv()
    if help_full:
        typer.echo(_help_full())
        raise typer.Exit(code=0)
    if find is not None:
        output = _run_find(find)
        if output:
            typer.echo(output)
        raise typer.Exit(code=0)
    if doctor:
        report = build_doctor_report()
        typer.echo(format_doctor_report(report))
        raise typer.Exit(code=0 if report.get("ok", True) else 2)
    if help or ctx.invoked_subcommand is None:
        typer.echo(_minimal_help())
        raise typer.Exit(code=0)


@app.command("doctor", add_help_option=True)
def doctor_cmd(
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Check this log file path instead of SIMQUERY_LOG_FILE."),
) -> None:
    """Print environment and dependency diagnostics."""
    report = build_doctor_report(log_file=log_file)
    typer.echo(format_doctor_report(report))
    raise typer.Exit(code=0 if report.get("ok", True) else 2)


@app.command("serve", add_help_option=True)
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Bind address."),
    port: int = typer.Option(3000, "--port", help="Port to listen on."),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Also write logs to this file."),
    no_preload: bool = typer.Option(False, "--no-preload", help="Skip the login at service start."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    """Run the HTTP service."""
    from .server import create_app, run_server

    _configure_logging(log_file, verbose)
    try:
        service = QueryService.from_config(load_config_from_env())
        run_server(create_app(service, preload=not no_preload), host, port)
    except OSError as exc:
        typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)


async def _query_once(iccid: str) -> QueryOutcome:
    service = QueryService.from_config(load_config_from_env())
    try:
        return await service.query_sim(iccid)
    finally:
        await service.close()


@app.command("query", add_help_option=True)
def query(
    iccid: str = typer.Argument(..., help="19-20 digit ICCID."),
    json_out: bool = typer.Option(False, "--json", help="Print the result JSON only."),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Also write logs to this file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    """Look up one ICCID in-process."""
    _configure_logging(log_file, verbose)
    try:
        outcome = asyncio.run(_query_once(iccid))
    except Exception as exc:
        if not json_out:
            typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)
    if json_out:
        sys.stdout.write(json.dumps(outcome.body, ensure_ascii=False) + "\n")
    else:
        typer.echo(f"{outcome.outcome} ({outcome.http_status})")
        for key, value in outcome.body.items():
            if key == "rawData":
                continue
            typer.echo(f"  {key}: {value}")
    raise typer.Exit(code=_exit_code(outcome))


@app.command("remote", add_help_option=True)
def remote(
    iccid: str = typer.Argument(..., help="19-20 digit ICCID."),
    url: str = typer.Option("http://127.0.0.1:3000", "--url", help="Base URL of a running service."),
    timeout: float = typer.Option(120.0, "--timeout", help="Seconds to wait for the service."),
) -> None:
    """Look up one ICCID through a running service."""
    endpoint = f"{url.rstrip('/')}/api/query-sim"
    try:
        resp = requests.post(endpoint, json={"iccid": iccid}, timeout=timeout)
    except requests.RequestException as exc:
        typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)
    try:
        body = resp.json()
    except ValueError:
        typer.echo(f"fatal: non-JSON response ({resp.status_code}) from {endpoint}", err=True)
        raise typer.Exit(code=3)
    sys.stdout.write(json.dumps(body, ensure_ascii=False) + "\n")
    raise typer.Exit(code=0 if resp.status_code == 200 else 2)


__all__ = ["app"]
