from typing import Iterable
from rich.table import Table
from rich.text import Text
from vidcat.domain.models import CatalogEntry, EntryStatus

STATUS_STYLES = {
    EntryStatus.PENDING: "yellow",
    EntryStatus.PROCESSING: "cyan",
    EntryStatus.COMPLETED: "green",
    EntryStatus.FAILED: "bold red",
}


def format_size(size: int) -> str:
    value = float(size)
    for unit in ["B", "KB", "MB", "GB"]:
        if value < 1024.0:
            return f"{value:.1f}{unit}"
        value /= 1024.0
    return f"{value:.1f}TB"


def render_catalog(entries: Iterable[CatalogEntry], title: str = "Catalog") -> Table:
    table = Table(title=title, show_lines=False)
    table.add_column("ID", justify="right", style="dim")
    table.add_column("File")
    table.add_column("Type")
    table.add_column("Size", justify="right")
    table.add_column("Modified")
    table.add_column("Status")
    table.add_column("Output / Error", overflow="fold")

    for entry in entries:
        if entry.status == EntryStatus.FAILED:
            detail = Text(entry.error_message or "", style="red")
        else:
            detail = Text(entry.transcoded_path or "-")
        table.add_row(
            str(entry.id),
            entry.filename,
            entry.file_type,
            format_size(entry.file_size),
            entry.file_date_time.strftime("%Y-%m-%d %H:%M"),
            Text(entry.status.value, style=STATUS_STYLES[entry.status]),
            detail,
        )
    return table
