from __future__ import annotations

from typing import Optional, Sequence

from rich import box
from rich.table import Table
from rich.text import Text

from . import config
from .models import ProbeResult, TargetStatus


def format_ms(value: Optional[float]) -> str:
    return "—" if value is None else f"{round(value)} ms"


def format_pct(value: Optional[float]) -> str:
    return "—" if value is None else f"{round(value * 100)}%"


def format_last(result: Optional[ProbeResult]) -> Text:
    if result is None:
        return Text("—")
    if result.ok:
        return Text(format_ms(result.latency_ms))
    return Text(f"FAIL ({result.error_tag})", style="red")


def health_text(status: TargetStatus) -> Text:
    name = "unsupported" if status.unsupported else status.health.value
    return Text(name.upper(), style=config.HEALTH_STYLES.get(name, ""))


def build_table(statuses: Sequence[TargetStatus], icmp_available: bool = True) -> Table:
    table = Table(
        title="Endpoint Monitor",
        box=box.MINIMAL_DOUBLE_HEAD,
        expand=True,
        caption_style="bold",
    )
    table.add_column("Name", style="bold")
    table.add_column("Host")
    table.add_column("Health")
    table.add_column("Last", justify="right")
    table.add_column("Avg", justify="right")
    table.add_column("p90", justify="right")
    table.add_column("Success", justify="right")

    for st in statuses:
        summary = st.summary
        table.add_row(
            st.target.name,
            st.target.address,
            health_text(st),
            format_last(summary.last_result),
            format_ms(summary.average),
            format_ms(summary.p90),
            format_pct(summary.success_rate),
        )

    icmp = "available" if icmp_available else "unavailable (ping targets unsupported)"
    table.caption = f"Targets: {len(statuses)} | ICMP: {icmp}"
    return table
