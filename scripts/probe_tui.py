#!/usr/bin/env python3
"""
Probe TUI - Terminal UI for watching a backend's readiness lifecycle.

Polls /health and /version on a running backend and renders a live
dashboard: whether it is down, starting or ready, how long it has been in
that state, the warm-up time it took, and every state or version change seen.
"""

import argparse
import sys
import time
from typing import Any, Dict, List, Optional

import httpx
from rich import box
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

STATE_DOWN = "down"
STATE_STARTING = "starting"
STATE_READY = "ready"
STATE_UNHEALTHY = "unhealthy"
STATES = (STATE_DOWN, STATE_STARTING, STATE_READY, STATE_UNHEALTHY)

STATE_STYLES = {
    STATE_DOWN: "bold white on red",
    STATE_STARTING: "bold black on bright_yellow",
    STATE_READY: "bold white on green",
    STATE_UNHEALTHY: "bold white on magenta",
}

STATE_EMOJI = {
    STATE_DOWN: "❌",
    STATE_STARTING: "⏳",
    STATE_READY: "✅",
    STATE_UNHEALTHY: "⚠️",
}

MAX_HISTORY = 1000
STRIP_LENGTH = 40
TRANSITIONS_SHOWN = 8


def classify_health(status_code: Optional[int], body: Optional[Dict[str, Any]]) -> str:
    """Map a /health response (or its absence) to a lifecycle state."""
    if status_code is None:
        return STATE_DOWN
    status = (body or {}).get("status")
    if status_code == 200 and status == "ok":
        return STATE_READY
    if status_code == 503 and status == "starting":
        return STATE_STARTING
    return STATE_UNHEALTHY


def probe(client: httpx.Client) -> Dict[str, Any]:
    """Call /health once and return a history sample."""
    sample: Dict[str, Any] = {
        "ts": time.time(),
        "state": STATE_DOWN,
        "status_code": None,
        "version": None,
        "latency_ms": None,
        "error": None,
    }
    started = time.monotonic()
    try:
        resp = client.get("/health")
    except httpx.HTTPError as e:
        sample["error"] = str(e) or e.__class__.__name__
        return sample

    sample["latency_ms"] = (time.monotonic() - started) * 1000
    try:
        body = resp.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        body = None

    sample["status_code"] = resp.status_code
    sample["state"] = classify_health(resp.status_code, body)
    sample["version"] = (body or {}).get("version")
    return sample


def fetch_version(client: httpx.Client) -> Optional[str]:
    """Version reported by /version, or None if it cannot be read."""
    try:
        resp = client.get("/version")
        resp.raise_for_status()
        return resp.json().get("version")
    except (httpx.HTTPError, ValueError, AttributeError):
        return None


def format_timestamp(ts: Optional[float]) -> str:
    """Format unix timestamp to human-readable."""
    if ts is None:
        return "N/A"
    return time.strftime("%H:%M:%S", time.localtime(ts))


def format_duration(seconds: Optional[float]) -> str:
    """Format a duration in seconds."""
    if seconds is None:
        return "N/A"
    if seconds < 10:
        return f"{seconds:.1f}s"
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    elif seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    else:
        hours = seconds // 3600
        minutes = (seconds % 3600) // 60
        return f"{hours}h {minutes}m"


def summarize_history(history: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Derive status from the probe history.

    Returns a dict with:
    - counts per state
    - transitions: state changes in order, each {ts, from, to}
    - current_state and state_since (ts of the last change, or first sample)
    - warmup_seconds: first STARTING sample to the first READY sample after it
    - versions: distinct versions seen, in order of appearance
    """
    counts = {state: 0 for state in STATES}
    transitions: List[Dict[str, Any]] = []
    versions: List[str] = []
    first_starting: Optional[float] = None
    warmup_seconds: Optional[float] = None

    prev: Optional[Dict[str, Any]] = None
    for sample in history:
        state = sample["state"]
        counts[state] = counts.get(state, 0) + 1
        if prev is not None and state != prev["state"]:
            transitions.append({"ts": sample["ts"], "from": prev["state"], "to": state})
        if state == STATE_STARTING and first_starting is None:
            first_starting = sample["ts"]
        if state == STATE_READY and first_starting is not None and warmup_seconds is None:
            warmup_seconds = sample["ts"] - first_starting
        version = sample.get("version")
        if version and version not in versions:
            versions.append(version)
        prev = sample

    current_state = history[-1]["state"] if history else None
    state_since: Optional[float] = None
    if history:
        state_since = transitions[-1]["ts"] if transitions else history[0]["ts"]

    return {
        "counts": counts,
        "transitions": transitions,
        "current_state": current_state,
        "state_since": state_since,
        "warmup_seconds": warmup_seconds,
        "versions": versions,
    }


def render_dashboard(
    url: str,
    history: List[Dict[str, Any]],
    reported_version: Optional[str],
    now: Optional[float] = None,
) -> Panel:
    """Render the probe dashboard."""
    now = time.time() if now is None else now
    summary = summarize_history(history)
    current = summary["current_state"]
    last = history[-1] if history else None

    header_table = Table.grid(padding=(0, 2))
    header_table.add_column(style="bold cyan")
    header_table.add_column()
    header_table.add_row("Target:", url)

    if current is None:
        header_table.add_row("Status:", Text("Waiting for first probe", style="dim"))
    else:
        header_table.add_row("Status:", Text(f" {current.upper()} ", style=STATE_STYLES.get(current, "")))
        header_table.add_row("In state for:", format_duration(now - summary["state_since"]))

    header_table.add_row("Version:", reported_version or "N/A")
    if len(summary["versions"]) > 1:
        header_table.add_row("Versions seen:", " → ".join(summary["versions"]))
    header_table.add_row("Warm-up observed:", format_duration(summary["warmup_seconds"]))

    if last is not None:
        if last["latency_ms"] is not None:
            header_table.add_row("Last latency:", f"{last['latency_ms']:.1f} ms")
        if last["error"]:
            header_table.add_row("Last error:", Text(last["error"], style="red"))

    counts = summary["counts"]
    counts_line = Text()
    for state in STATES:
        counts_line.append(f"{STATE_EMOJI[state]} {state}: {counts[state]}  ")

    strip = Text()
    for sample in history[-STRIP_LENGTH:]:
        strip.append(STATE_EMOJI.get(sample["state"], "?"))
    strip_panel = Panel(strip, title=f"Last {min(len(history), STRIP_LENGTH)} probes", box=box.ROUNDED, border_style="dim")

    transitions_table = Table(box=box.SIMPLE, show_edge=False)
    transitions_table.add_column("At")
    transitions_table.add_column("From")
    transitions_table.add_column("To")
    for change in summary["transitions"][-TRANSITIONS_SHOWN:]:
        transitions_table.add_row(
            format_timestamp(change["ts"]),
            Text(change["from"], style=STATE_STYLES.get(change["from"], "")),
            Text(change["to"], style=STATE_STYLES.get(change["to"], "")),
        )

    content_parts: List = [header_table, Text(""), counts_line, strip_panel]
    if summary["transitions"]:
        content_parts.extend([Text("Transitions", style="bold"), transitions_table])

    border_style = "green" if current == STATE_READY else "yellow" if current == STATE_STARTING else "red"
    return Panel(Group(*content_parts), title="Backend Lifecycle", border_style=border_style)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Watch a backend's /health and /version endpoints")
    parser.add_argument("--url", default="http://localhost:3000", help="Base URL of the backend")
    parser.add_argument("--interval", type=float, default=1.0, help="Seconds between probes")
    parser.add_argument("--timeout", type=float, default=2.0, help="Per-request timeout in seconds")
    args = parser.parse_args()

    console = Console()
    history: List[Dict[str, Any]] = []

    with httpx.Client(base_url=args.url, timeout=httpx.Timeout(args.timeout)) as client:
        try:
            with Live(console=console, refresh_per_second=4, screen=True) as live:
                while True:
                    history.append(probe(client))
                    del history[:-MAX_HISTORY]
                    version = fetch_version(client) if history[-1]["state"] != STATE_DOWN else None
                    live.update(render_dashboard(args.url, history, version))
                    time.sleep(args.interval)
        except KeyboardInterrupt:
            console.print("\n[yellow]Exiting...[/yellow]")
            sys.exit(0)


if __name__ == "__main__":
    main()
