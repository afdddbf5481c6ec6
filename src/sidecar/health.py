"""Startup health checks for the services sidecar depends on."""

import shutil
import urllib.error
import urllib.request
from dataclasses import dataclass

from .logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class ServiceStatus:
    name: str
    ok: bool
    critical: bool
    detail: str


def _probe(url: str, timeout: float) -> tuple[bool, str]:
    try:
        with urllib.request.urlopen(urllib.request.Request(url), timeout=timeout) as response:
            return True, f"HTTP {response.status}"
    except urllib.error.HTTPError as e:
        return False, f"HTTP {e.code}"
    except (urllib.error.URLError, TimeoutError, OSError) as e:
        return False, str(getattr(e, "reason", e))


def check_services(settings, timeout: float = 3.0) -> list[ServiceStatus]:
    """Probe the model endpoint, the search endpoint and helper binaries."""
    statuses = []
    ok, detail = _probe(f"{settings.llm.base_url.rstrip('/')}/models", timeout)
    statuses.append(ServiceStatus("model endpoint", ok, True, f"{settings.llm.base_url} ({detail})"))
    ok, detail = _probe(settings.search_url, timeout)
    statuses.append(ServiceStatus("search endpoint", ok, False, f"{settings.search_url} ({detail})"))
    for binary in ("git", "rg"):
        path = shutil.which(binary)
        statuses.append(ServiceStatus(binary, path is not None, False, path or "not found on PATH"))
    for status in statuses:
        if not status.ok:
            log = logger.error if status.critical else logger.warning
            log("Health check failed for %s: %s", status.name, status.detail)
    return statuses


def format_report(statuses: list[ServiceStatus]) -> str:
    lines = []
    for s in statuses:
        mark = "ok " if s.ok else ("ERR" if s.critical else "warn")
        lines.append(f"[{mark}] {s.name}: {s.detail}")
    return "\n".join(lines)
