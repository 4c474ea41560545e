"""Pure Rich renderer for the live view layout."""

from __future__ import annotations

from collections.abc import Sequence

from rich.align import Align
from rich.console import Group
from rich.layout import Layout
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..models import ConnectionStatus, SermonNote, SermonSummary, TranscriptSegment
from .view_model import UiSnapshot

_STATUS_STYLES = {
    ConnectionStatus.STOPPED: "bold red",
    ConnectionStatus.CONNECTING: "bold yellow",
    ConnectionStatus.CONNECTED: "bold cyan",
    ConnectionStatus.RECORDING: "bold green",
}


def render_layout(
    snapshot: UiSnapshot,
    *,
    now_monotonic: float,
    max_lines: int = 30,
    diagnostics: str | None = None,
) -> Layout:
    """Return a Rich Layout for the given snapshot."""
    layout = Layout(name="root")
    layout.split_column(
        Layout(name="header", size=4 if snapshot.error else 3),
        Layout(name="body", ratio=1),
        Layout(name="footer", size=1),
    )
    layout["body"].split_row(Layout(name="transcript", ratio=3), Layout(name="notes", ratio=2))
    layout["header"].update(_render_header(snapshot))
    layout["transcript"].update(
        _render_transcript(
            snapshot.segments,
            snapshot.interim,
            highlight=_highlighted(snapshot, now_monotonic),
            max_lines=max_lines,
        )
    )
    layout["notes"].update(_render_notes(snapshot.notes, snapshot.summary))
    footer = Text("c: clear transcript • n: generate notes • q: quit", style="dim")
    if diagnostics:
        footer.append(f"   {diagnostics}", style="bright_black")
    layout["footer"].update(Align.left(footer))
    return layout


def _render_header(snapshot: UiSnapshot) -> Panel:
    title = Text(snapshot.header_text, style="bold")
    status = Text.assemble(
        "Status ", (snapshot.status.value.upper(), _STATUS_STYLES[snapshot.status])
    )
    inner = Table.grid(expand=True)
    inner.add_column(ratio=3)
    inner.add_column(ratio=1, justify="right")
    inner.add_row(title, status)
    if snapshot.error:
        inner.add_row(Text(snapshot.error, style="bold red"), Text(""))
    return Panel(inner, title="Sermon Scribe", border_style="cyan")


def _render_transcript(
    segments: Sequence[TranscriptSegment], interim: str, *, highlight: bool, max_lines: int
) -> Panel:
    visible = list(segments)[-max_lines:]
    lines: list[Text] = []
    for index, segment in enumerate(visible):
        newest = index == len(visible) - 1
        stamp = segment.created_at.astimezone().strftime("%H:%M:%S")
        style = "bold on #23283b" if newest and highlight else ""
        lines.append(Text.assemble((f"{stamp} ", "dim"), (segment.text, style)))
    if interim:
        lines.append(Text(interim, style="italic bright_black"))
    if not lines:
        lines.append(Text("Waiting for speech...", style="dim"))
    return Panel(Group(*lines), title="Transcript", border_style="blue")


def _render_notes(notes: Sequence[SermonNote], summary: SermonSummary | None) -> Panel:
    if summary is not None:
        return _render_summary(summary)
    if not notes:
        return Panel(Text("No notes yet", style="dim"), title="Notes", border_style="magenta")
    blocks: list[Text] = []
    for note in notes:
        header = Text(note.main_point, style="bold")
        if note.theme:
            header.append(f"  [{note.theme}]", style="magenta")
        blocks.append(header)
        for sub_point in note.sub_points:
            blocks.append(Text(f"  • {sub_point}"))
        if note.scripture_references:
            blocks.append(Text("  " + ", ".join(note.scripture_references), style="cyan"))
        if note.key_quote:
            blocks.append(Text(f'  "{note.key_quote}"', style="italic"))
    return Panel(Group(*blocks), title=f"Notes ({len(notes)})", border_style="magenta")


def _render_summary(summary: SermonSummary) -> Panel:
    grid = Table.grid(expand=True)
    grid.add_column()
    grid.add_row(Text(summary.overview))
    if summary.main_themes:
        grid.add_row(Text("Themes: " + ", ".join(summary.main_themes), style="magenta"))
    for key_point in summary.key_points:
        line = Text(f"• {key_point.point}")
        if key_point.scripture:
            line.append(f" ({key_point.scripture})", style="cyan")
        grid.add_row(line)
    if summary.closing_thought:
        grid.add_row(Text(summary.closing_thought, style="bold"))
    return Panel(grid, title=summary.title, border_style="green")


def _highlighted(snapshot: UiSnapshot, now_monotonic: float) -> bool:
    deadline = snapshot.highlight_until
    return deadline is not None and deadline > now_monotonic
