"""Unit tests for the startup health checks. Probes are patched out."""

from sidecar import health
from sidecar.health import ServiceStatus, check_services, format_report


def test_check_services_marks_model_endpoint_critical(settings, monkeypatch):
    probed = []

    def fake_probe(url, timeout):
        probed.append(url)
        if url.endswith("/models"):
            return False, "connection refused"
        return True, "HTTP 200"

    monkeypatch.setattr(health, "_probe", fake_probe)
    monkeypatch.setattr(health.shutil, "which", lambda name: f"/usr/bin/{name}" if name == "git" else None)

    statuses = {s.name: s for s in check_services(settings)}

    assert probed[0] == f"{settings.llm.base_url.rstrip('/')}/models"
    assert not statuses["model endpoint"].ok and statuses["model endpoint"].critical
    assert statuses["search endpoint"].ok
    assert statuses["git"].ok
    assert not statuses["rg"].ok and not statuses["rg"].critical


def test_format_report():
    report = format_report([
        ServiceStatus("model endpoint", False, True, "down"),
        ServiceStatus("rg", False, False, "not found on PATH"),
        ServiceStatus("git", True, False, "/usr/bin/git"),
    ])
    assert report.splitlines() == [
        "[ERR] model endpoint: down",
        "[warn] rg: not found on PATH",
        "[ok ] git: /usr/bin/git",
    ]
