"""Health of reported URLs, probed with curl."""

from __future__ import annotations

import logging
import subprocess

from falconagent.config import URL_CHECK_HEALTH, hostname
from falconagent.model import MetricValue, gauge_value
from falconagent.state import STATE

log = logging.getLogger(__name__)


def probe_url(url: str, timeout: str) -> bool:
    """Tell whether a HEAD request to the URL answers 200 within timeout seconds."""
    args = [
        "curl",
        "--max-filesize",
        "102400",
        "-I",
        "-m",
        str(timeout),
        "-o",
        "/dev/null",
        "-s",
        "-w",
        "%{http_code}",
        url,
    ]
    try:
        result = subprocess.run(
            args, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL, text=True, check=True
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        log.error("probe url [%s] failed.the err is: [%s]", url, exc)
        return False
    lines = result.stdout.splitlines()
    if not lines:
        log.error("read retcode failed: empty output")
        return False
    retcode = lines[0].strip()
    if retcode != "200":
        log.error("return code [%s] is not 200.query url is [%s]", retcode, url)
        return False
    return True


def url_metrics() -> list[MetricValue]:
    """One gauge per reported URL: 1 if healthy, else 0."""
    urls = dict(STATE.report_urls)
    if not urls:
        return []
    try:
        host = hostname()
    except OSError:
        host = "None"
    return [
        gauge_value(
            URL_CHECK_HEALTH,
            1 if probe_url(url, timeout) else 0,
            f"url={url},timeout={timeout},src={host}",
        )
        for url, timeout in urls.items()
    ]