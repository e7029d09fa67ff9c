"""
Reporting helpers (table or JSON) for plans and apply results.

`print_rows` keeps only the columns that carry data and produces a compact
markdown-like table for the CLI. JSON output is meant for machines.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List, Sequence

from .models import AggregateConflictResult
from .reconciler import ApplyOutcome, summarize_counts

_MAX_CELL = 80


def _present(v: Any) -> bool:
    return not (v is None or v == "" or v == [] or v == ())


def _fmt(v: Any) -> str:
    if isinstance(v, bool):
        return "✓" if v else "✗"
    if isinstance(v, (list, tuple)):
        v = ", ".join(str(x) for x in v)
    s = "" if v is None else str(v)
    if s == "":
        return "—"
    if len(s) > _MAX_CELL:
        return s[: _MAX_CELL - 1] + "…"
    return s


def print_rows(rows: List[Dict[str, Any]], columns: Sequence[str], mandatory: Sequence[str] = ()) -> None:
    """Render dict rows as a table limited to `columns` that have values."""
    cols = [c for c in columns if c in mandatory or any(_present(r.get(c)) for r in rows)]
    if not cols:
        return
    widths = {c: len(c) for c in cols}
    for r in rows:
        for c in cols:
            widths[c] = max(widths[c], len(_fmt(r.get(c))))

    print("| " + " | ".join(c.ljust(widths[c]) for c in cols) + " |")
    print("| " + " | ".join("-" * widths[c] for c in cols) + " |")
    for r in rows:
        print("| " + " | ".join(_fmt(r.get(c)).ljust(widths[c]) for c in cols) + " |")


def plan_rows(result: AggregateConflictResult) -> List[Dict[str, Any]]:
    rows = []
    for rep in result.reports:
        rec = rep.recommended
        rows.append({
            "kind": rep.kind.value,
            "resource": rep.resource_id,
            "exists": rep.exists,
            "severity": rep.severity.label if rep.exists else "",
            "differences": len(rep.differences) if rep.exists else "",
            "action": rep.implied_action,
            "recommendation": rec.title if rec else "",
        })
    return rows


def difference_rows(result: AggregateConflictResult) -> List[Dict[str, Any]]:
    rows = []
    for rep in result.reports:
        for d in rep.differences:
            rows.append({
                "resource": rep.resource_id,
                "field": d.field,
                "severity": d.severity.label,
                "live": d.live_value,
                "desired": d.desired_value,
                "description": d.description,
            })
    return rows


def print_plan(result: AggregateConflictResult, fmt: str = "table") -> None:
    if fmt == "json":
        print(json.dumps(result.to_dict(), indent=2))
        return
    print(result.summary)
    print(f"Recommended action: {result.recommended_action}")
    print()
    print_rows(
        plan_rows(result),
        ["kind", "resource", "exists", "severity", "differences", "action", "recommendation"],
        mandatory=("kind", "resource", "exists", "action"),
    )
    diffs = difference_rows(result)
    if diffs:
        print()
        print_rows(diffs, ["resource", "field", "severity", "live", "desired", "description"])


def print_outcome(outcome: ApplyOutcome, fmt: str = "table") -> None:
    rows = [r.to_dict() for r in outcome.results]
    if fmt == "json":
        payload: Dict[str, Any] = {"counts": outcome.counts, "results": rows}
        if outcome.plan is not None:
            payload["plan"] = outcome.plan.to_dict()
        print(json.dumps(payload, indent=2))
        return
    print_rows(rows, ["step", "resource", "status", "reason", "error"], mandatory=("step", "status"))
    print(summarize_counts(outcome.counts))
