"""Output generation: summary, findings JSON, rich terminal output."""

import json
from pathlib import Path
from typing import Optional

from .models import Finding

_RISK_ORDER = {"red": 0, "yellow": 1, "green": 2}


def _ranked(findings: list[Finding]) -> list[Finding]:
    return sorted(findings, key=lambda f: _RISK_ORDER.get(f.risk_level.value, 9))


def generate_summary(findings: list[Finding]) -> dict:
    by_risk: dict[str, int] = {}
    for f in findings:
        by_risk[f.risk_level.value] = by_risk.get(f.risk_level.value, 0) + 1
    return {
        "total_findings": len(findings),
        "risk_breakdown": by_risk,
        "high_risk_count": by_risk.get("red", 0),
        "recovered_count": sum(1 for f in findings if f.recovered),
        "top_risks": [
            {"target_id": f.target_id, "risk": f.risk_level.value,
             "issue": f.issue_type, "summary": f.reasoning[:200]}
            for f in _ranked(findings)[:10]
        ],
    }


def write_findings_json(result, path: Path) -> Path:
    """Write a ReviewResult as ``{metadata, summary, warnings, rejections, findings}``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    output = {
        "metadata": result.metadata,
        "summary": generate_summary(result.findings),
        "warnings": list(result.warnings),
        "rejections": list(result.rejections),
        "findings": [f.to_dict() for f in result.findings],
    }
    with open(path, "w") as fh:
        json.dump(output, fh, indent=2, ensure_ascii=False)
    return path


def print_rich_summary(summary: dict, findings: list[Finding], metadata: Optional[dict] = None,
                       warnings: list[str] = ()) -> None:
    """Print a rich formatted summary to the terminal."""
    metadata = metadata or {}
    try:
        from rich.console import Console
        from rich.table import Table
        from rich.panel import Panel
        from rich import box
    except ImportError:
        return _print_plain_summary(summary, findings, warnings)

    console = Console()
    console.print()
    risk_bd = summary.get("risk_breakdown", {})
    summary_text = (
        f"[bold]Findings:[/bold] {summary['total_findings']}\n"
        f"[bold red]Red:[/bold red] {risk_bd.get('red', 0)}  "
        f"[bold yellow]Yellow:[/bold yellow] {risk_bd.get('yellow', 0)}  "
        f"[bold green]Green:[/bold green] {risk_bd.get('green', 0)}\n"
        f"[bold]Recovered records:[/bold] {summary.get('recovered_count', 0)}\n"
        f"[bold]Batches:[/bold] {metadata.get('batches', 0)} "
        f"({metadata.get('batches_skipped', 0)} skipped, {metadata.get('batches_failed', 0)} failed)  "
        f"[bold]Elapsed:[/bold] {metadata.get('elapsed_seconds', 0)}s"
    )
    console.print(Panel(summary_text, title="Contract Review Summary", border_style="blue", expand=False))

    table = Table(title="Top Risk Findings", box=box.ROUNDED, show_lines=True)
    table.add_column("Clause", style="bold", width=14)
    table.add_column("Risk", width=8)
    table.add_column("Issue", width=28)
    table.add_column("Reasoning", width=60)
    risk_style = {"red": "bold red", "yellow": "bold yellow", "green": "bold green"}
    for f in _ranked(findings)[:10]:
        risk = f.risk_level.value
        label = f"{risk}{' *' if f.recovered else ''}"
        table.add_row(
            f.target_id[:14],
            f"[{risk_style.get(risk, '')}]{label}[/]",
            f.issue_type,
            f.reasoning[:80] + "..." if len(f.reasoning) > 80 else f.reasoning,
        )
    console.print(table)
    if any(f.recovered for f in findings):
        console.print("[yellow]* recovered from a truncated response; verify before accepting[/yellow]")
    for w in warnings:
        console.print(f"[yellow]Warning:[/yellow] {w}")
    console.print()


def _print_plain_summary(summary: dict, findings: list[Finding], warnings=()) -> None:
    print(f"\n{'='*60}")
    print(f"  SUMMARY")
    print(f"{'='*60}")
    print(f"  Findings         : {summary['total_findings']}")
    print(f"  Risk breakdown   : {summary['risk_breakdown']}")
    print(f"  High-risk        : {summary['high_risk_count']}")
    print(f"  Recovered        : {summary['recovered_count']}")
    if summary["top_risks"]:
        print(f"\n  TOP RISKS:")
        for r in summary["top_risks"][:5]:
            print(f"    [{r['risk']:6s}] {r['target_id']}: {r['issue']}")
    for w in warnings:
        print(f"  Warning: {w}")
    print()
