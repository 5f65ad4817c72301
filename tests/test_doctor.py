from pathlib import Path

from simquery.workflows.doctor import build_doctor_report, format_doctor_report, redact_value


def _env(monkeypatch, tmp_path: Path, *, with_chromium: bool = True) -> None:
    browsers = tmp_path / "browsers"
    browsers.mkdir()
    if with_chromium:
        (browsers / "chromium-1105").mkdir()
    monkeypatch.setenv("PLAYWRIGHT_BROWSERS_PATH", str(browsers))
    monkeypatch.setenv("SIMQUERY_USERNAME", "operator")
    monkeypatch.setenv("SIMQUERY_PASSWORD", "supersecretpw")
    for name in ("SIMQUERY_LOGIN_MODE", "SIMQUERY_DOCUMENT_ENCODING", "SIMQUERY_LOG_FILE", "SIMQUERY_HEADLESS"):
        monkeypatch.delenv(name, raising=False)


def _check(report, name):
    return next(c for c in report["checks"] if c["name"] == name)


def test_redact_value():
    assert redact_value("supersecretpw") == "supe...etpw"
    assert redact_value("short") == "*****"
    assert redact_value("") == ""


def test_report_ok_with_credentials_and_chromium(monkeypatch, tmp_path):
    _env(monkeypatch, tmp_path)

    report = build_doctor_report()

    assert report["ok"] is True
    assert _check(report, "SIMQUERY_PASSWORD")["value"] == "supe...etpw"
    assert _check(report, "playwright")["status"] == "ok"


def test_report_flags_missing_password_and_browser(monkeypatch, tmp_path):
    _env(monkeypatch, tmp_path, with_chromium=False)
    monkeypatch.delenv("SIMQUERY_PASSWORD")

    report = build_doctor_report()

    assert report["ok"] is False
    assert _check(report, "SIMQUERY_PASSWORD")["status"] == "missing"
    assert _check(report, "playwright")["status"] == "missing"


def test_report_checks_log_file_and_encoding(monkeypatch, tmp_path):
    _env(monkeypatch, tmp_path)
    monkeypatch.setenv("SIMQUERY_DOCUMENT_ENCODING", "no-such-codec")

    report = build_doctor_report(log_file=tmp_path / "missing-dir" / "simquery.log")

    assert _check(report, "SIMQUERY_DOCUMENT_ENCODING")["status"] == "missing"
    assert _check(report, "SIMQUERY_LOG_FILE")["status"] == "missing"


def test_format_report_never_prints_password(monkeypatch, tmp_path):
    _env(monkeypatch, tmp_path)

    text = format_doctor_report(build_doctor_report())

    assert text.startswith("simquery doctor")
    assert "supersecretpw" not in text
    assert "Overall: ok" in text
