"""Rich rendering helpers for the cbt-tunnel CLI."""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.tree import Tree

from cbt_tunnel.supervisor import SupervisorState

PIPELINE_STEPS = [
    (SupervisorState.FETCHING, "Fetch tunnel binary"),
    (SupervisorState.SPAWNING, "Spawn tunnel process"),
    (SupervisorState.AWAITING_READINESS, "Wait for tunnel connection"),
]


class StepTracker:
    """Track and render pipeline steps as a Rich tree."""

    def __init__(self, title: str):
        self.title = title
        self.steps = []  # list of dicts: {key, label, status, detail}

    def add(self, key: str, label: str):
        if key not in [s["key"] for s in self.steps]:
            self.steps.append({"key": key, "label": label, "status": "pending", "detail": ""})

    def start(self, key: str, detail: str = ""):
        self._update(key, status="running", detail=detail)

    def complete(self, key: str, detail: str = ""):
        self._update(key, status="done", detail=detail)

    def error(self, key: str, detail: str = ""):
        self._update(key, status="error", detail=detail)

    def running_key(self) -> str | None:
        for s in self.steps:
            if s["status"] == "running":
                return s["key"]
        return None

    def _update(self, key: str, status: str, detail: str):
        for s in self.steps:
            if s["key"] == key:
                s["status"] = status
                if detail:
                    s["detail"] = detail
                return
        self.steps.append({"key": key, "label": key, "status": status, "detail": detail})

    def render(self) -> Tree:
        tree = Tree(f"[cyan]{self.title}[/cyan]", guide_style="grey50")
        for step in self.steps:
            label = step["label"]
            detail_text = step["detail"].strip() if step["detail"] else ""

            status = step["status"]
            if status == "done":
                symbol = "[green]●[/green]"
            elif status == "running":
                symbol = "[cyan]○[/cyan]"
            elif status == "error":
                symbol = "[red]●[/red]"
            else:
                symbol = "[green dim]○[/green dim]"

            if status == "pending":
                line = f"{symbol} [bright_black]{label}[/bright_black]"
            elif detail_text:
                line = f"{symbol} [white]{label}[/white] [bright_black]({detail_text})[/bright_black]"
            else:
                line = f"{symbol} [white]{label}[/white]"

            tree.add(line)
        return tree


def pipeline_tracker() -> StepTracker:
    tracker = StepTracker("CBT Tunnel")
    for state, label in PIPELINE_STEPS:
        tracker.add(state.value, label)
    return tracker


def track_state(tracker: StepTracker, state: SupervisorState, detail: str) -> None:
    """Move ``tracker`` along as the controller changes state."""
    current = tracker.running_key()
    if state is SupervisorState.FAILED:
        if current is not None:
            tracker.error(current, detail)
        return
    if current is not None:
        tracker.complete(current)
    if state is not SupervisorState.READY:
        tracker.start(state.value, detail)


def print_ready_notice(console: Console) -> None:
    console.print("[bold green]CBT Tunnel started[/bold green]")
    console.print(
        "Visit [cyan]http://app.crossbrowsertesting.com/selenium[/cyan] to view test progress"
    )
    console.print(
        Panel(
            "If connections to CBT time out, they may not be automatically stopped "
            "and eat into CBT account minutes.\n"
            "Please make sure to STOP all tests after the completion of a run!",
            title="!IMPORTANT!",
            border_style="yellow",
            expand=False,
        )
    )


def print_error(console: Console, title: str, message: str) -> None:
    console.print(Panel(message, title=title, border_style="red", expand=False))
