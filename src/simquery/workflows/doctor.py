from __future__ import annotations

import codecs
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .query_config import DEFAULT_BASE_URL, LOGIN_MODES


_SECRET_TOKENS = ("key", "token", "secret", "password", "pass", "session")


def _is_secret_name(name: str) -> bool:
    lowered = (name or "").lower()
    return any(token in lowered for token in _SECRET_TOKENS)


def redact_value(value: str, keep: int = 4) -> str:
    raw = (value or "").strip()
    if not raw:
        return ""
    if len(raw) <= keep * 2:
        return "*" * len(raw)
    return f"{raw[:keep]}...{raw[-keep:]}"


def _redacted_env_value(name: str, value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return redact_value(value) if _is_secret_name(name) else value


def _playwright_browsers_dir() -> Path:
    override = os.getenv("PLAYWRIGHT_BROWSERS_PATH")
    if override and override != "0":
        return Path(override)
    return Path.home() / ".cache" / "ms-playwright"


def _check_chromium_installed(root: Path) -> bool:
    try:
        return any(entry.name.startswith("chromium") for entry in root.iterdir())
    except OSError:
        return False


def _check_writable(path: Path) -> bool:
    try:
        if path.exists():
            return os.access(path, os.W_OK)
        parent = path.parent
        if not parent.exists():
            return False
        return os.access(parent, os.W_OK)
    except OSError:
        return False


def _encoding_known(name: str) -> bool:
    try:
        codecs.lookup(name)
    except LookupError:
        return False
    return True


def collect_environment_warnings() -> List[Dict[str, str]]:
    warnings: List[Dict[str, str]] = []
    headless = (os.getenv("SIMQUERY_HEADLESS") or "1").strip().lower() not in {"0", "false", "no", "off"}
    if not headless and not os.getenv("DISPLAY"):
        warnings.append(
            {
                "code": "headed_without_display",
                "message": "SIMQUERY_HEADLESS is off but DISPLAY is not set; Chromium will fail to launch.",
                "remedy": "Unset SIMQUERY_HEADLESS or run under a virtual display.",
            }
        )
    return warnings


def build_doctor_report(*, log_file: Optional[Path] = None) -> Dict[str, Any]:
    report: Dict[str, Any] = {
        "generated_at": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
        "ok": True,
        "checks": [],
        "environment_warnings": collect_environment_warnings(),
    }

    def add_check(
        name: str,
        status: bool,
        *,
        detail: Optional[str] = None,
        remedy: Optional[str] = None,
        level: str = "warn",
        value: Optional[str] = None,
    ) -> None:
        entry = {
            "name": name,
            "status": "ok" if status else "missing",
            "level": level,
            "detail": detail,
        }
        if remedy:
            entry["remedy"] = remedy
        if value is not None:
            entry["value"] = _redacted_env_value(name, value)
        report["checks"].append(entry)
        if not status and level == "warn":
            report["ok"] = False

    username = os.getenv("SIMQUERY_USERNAME")
    add_check(
        "SIMQUERY_USERNAME",
        bool(username),
        detail="CRM user configured" if username else "CRM user missing; logins will fail",
        remedy="Set SIMQUERY_USERNAME (a .env file in the working directory is read).",
        value=username,
    )
    password = os.getenv("SIMQUERY_PASSWORD")
    add_check(
        "SIMQUERY_PASSWORD",
        bool(password),
        detail="CRM password configured" if password else "CRM password missing; logins will fail",
        remedy="Set SIMQUERY_PASSWORD.",
        value=password,
    )

    base_url = os.getenv("SIMQUERY_BASE_URL") or DEFAULT_BASE_URL
    add_check("SIMQUERY_BASE_URL", True, detail="CRM base URL", level="info", value=base_url)

    login_mode = (os.getenv("SIMQUERY_LOGIN_MODE") or "browser").strip().lower()
    add_check(
        "SIMQUERY_LOGIN_MODE",
        login_mode in LOGIN_MODES,
        detail=f"login via {login_mode}",
        remedy=f"Use one of: {', '.join(LOGIN_MODES)}.",
        value=login_mode,
    )

    browsers_dir = _playwright_browsers_dir()
    chromium_ok = _check_chromium_installed(browsers_dir)
    add_check(
        "playwright",
        chromium_ok,
        detail=f"Chromium found under {browsers_dir}" if chromium_ok else f"No Chromium under {browsers_dir}",
        remedy="Run `playwright install --with-deps chromium`.",
    )

    encoding = os.getenv("SIMQUERY_DOCUMENT_ENCODING") or "big5"
    add_check(
        "SIMQUERY_DOCUMENT_ENCODING",
        _encoding_known(encoding),
        detail="codec used to decode CRM pages",
        remedy="Set SIMQUERY_DOCUMENT_ENCODING to a Python codec name such as big5.",
        value=encoding,
    )

    log_path = log_file or (Path(os.environ["SIMQUERY_LOG_FILE"]) if os.getenv("SIMQUERY_LOG_FILE") else None)
    if log_path is None:
        add_check("SIMQUERY_LOG_FILE", True, detail="logging to stderr only", level="info")
    else:
        add_check(
            "SIMQUERY_LOG_FILE",
            _check_writable(log_path),
            detail=str(log_path),
            remedy="Create the log directory or point SIMQUERY_LOG_FILE at a writable location.",
        )

    return report


def format_doctor_report(report: Dict[str, Any]) -> str:
    lines: List[str] = []
    lines.append("simquery doctor")
    lines.append(f"Generated: {report.get('generated_at')}")
    lines.append("Values are redacted where applicable.")
    lines.append(f"Overall: {'ok' if report.get('ok', True) else 'needs attention'}")
    lines.append("")
    for check in report.get("checks", []):
        name = check.get("name", "check")
        status = check.get("status", "unknown")
        level = check.get("level", "info")
        detail = check.get("detail")
        value = check.get("value")
        label = f"{name}: {status}"
        if value:
            label = f"{label} ({value})"
        lines.append(f"- [{level}] {label}")
        if detail:
            lines.append(f"  detail: {detail}")
        remedy = check.get("remedy")
        if remedy:
            lines.append(f"  remedy: {remedy}")
    warnings = report.get("environment_warnings") or []
    if warnings:
        lines.append("")
        lines.append("Environment warnings:")
        for warning in warnings:
            code = warning.get("code", "warning")
            message = warning.get("message", "")
            remedy = warning.get("remedy", "")
            lines.append(f"- {code}: {message}")
            if remedy:
                lines.append(f"  remedy: {remedy}")
    return "\n".join(lines).rstrip() + "\n"
