"""
TestMaster AI
Record Export Service.

Renders a test plan, case or execution as a download-ready document.

Formats:
    md    Markdown with a steps table for cases
    txt   plain text, headings underlined, steps as a numbered list
    json  the record's to_dict() plus export metadata
"""

import json
import logging
from datetime import datetime, timezone

from testmaster.models.ai import RecordKind

logger = logging.getLogger(__name__)

EXPORT_FORMATS = {
    "md": "text/markdown",
    "txt": "text/plain",
    "json": "application/json",
}

# (heading, attribute) per kind, in document order
_PLAN_SECTIONS = (
    ("Description", "description"),
    ("Objective", "objective"),
    ("Scope", "scope"),
    ("Approach", "approach"),
    ("Acceptance Criteria", "criteria"),
    ("Resources", "resources"),
    ("Schedule", "schedule"),
    ("Risks", "risks"),
)
_CASE_SECTIONS = (
    ("Description", "description"),
    ("Preconditions", "preconditions"),
)
_EXECUTION_SECTIONS = (
    ("Actual Result", "actual_result"),
    ("Notes", "notes"),
)


def _stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def record_title(kind: RecordKind, record) -> str:
    if kind == RecordKind.EXECUTION:
        case_title = record.test_case.title if record.test_case else f"case #{record.case_id}"
        return f"Execution #{record.id}: {case_title}"
    return record.title


def export_filename(kind: RecordKind, record, fmt: str) -> str:
    slug = "".join(c if c.isalnum() else "-" for c in record_title(kind, record).lower())
    slug = "-".join(part for part in slug.split("-") if part)[:60] or kind.value
    return f"{kind.value}-{record.id}-{slug}.{fmt}"


class RecordExporter:
    """Exports domain records to Markdown, plain text or JSON."""

    def export(self, kind, record, fmt: str) -> str:
        kind = RecordKind(kind)
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"Unsupported export format: {fmt}")
        if fmt == "json":
            return self.export_json(kind, record)
        blocks = self._blocks(kind, record)
        if fmt == "md":
            return self._render_markdown(record_title(kind, record), blocks)
        return self._render_text(record_title(kind, record), blocks)

    def export_json(self, kind: RecordKind, record) -> str:
        export = {
            "document_type": kind.value,
            "title": record_title(kind, record),
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "content": record.to_dict(),
        }
        return json.dumps(export, indent=2, default=str)

    # ── Content blocks ────────────────────────────────────────────────────
    # A block is ("section", heading, text) | ("steps", rows) | ("field", label, value)

    def _blocks(self, kind: RecordKind, record) -> list[tuple]:
        sections = {
            RecordKind.PLAN: _PLAN_SECTIONS,
            RecordKind.CASE: _CASE_SECTIONS,
            RecordKind.EXECUTION: _EXECUTION_SECTIONS,
        }[kind]
        blocks = []
        if kind == RecordKind.EXECUTION:
            blocks.append(("section", "Status", record.status.replace("_", " ")))
        for heading, attr in sections:
            value = getattr(record, attr, "") or ""
            if value.strip():
                blocks.append(("section", heading, value.strip()))
        if kind == RecordKind.CASE:
            rows = [(s.order, s.action, s.expected_result or "") for s in record.steps]
            if rows:
                blocks.append(("steps", rows))
            if (record.expected_result or "").strip():
                blocks.append(("section", "Expected Result", record.expected_result.strip()))
            blocks.append(("field", "Priority", record.priority))
            blocks.append(("field", "Type", record.type))
        if kind == RecordKind.EXECUTION:
            if record.executed_by:
                blocks.append(("field", "Executed by", record.executed_by))
            if record.executed_at:
                blocks.append(("field", "Executed at", record.executed_at.strftime("%Y-%m-%d %H:%M")))
        if record.generated_by_ai:
            blocks.append(("field", "Origin", "AI generated"))
        return blocks

    # ── Renderers ─────────────────────────────────────────────────────────

    def _render_markdown(self, title: str, blocks: list[tuple]) -> str:
        md = f"# {title}\n\n"
        md += f"**Exported:** {_stamp()}\n\n"
        md += "---\n\n"
        for block in blocks:
            if block[0] == "section":
                md += f"## {block[1]}\n\n{block[2]}\n\n"
            elif block[0] == "steps":
                md += "## Test Steps\n\n"
                md += "| Step | Action | Expected Result |\n"
                md += "|------|--------|-----------------|\n"
                for order, action, expected in block[1]:
                    md += f"| {order} | {_cell(action)} | {_cell(expected)} |\n"
                md += "\n"
            else:
                md += f"**{block[1]}:** {block[2]}\n\n"
        return md

    def _render_text(self, title: str, blocks: list[tuple]) -> str:
        lines = [title, "=" * len(title), f"Exported: {_stamp()}", ""]
        for block in blocks:
            if block[0] == "section":
                lines += [block[1], "-" * len(block[1]), block[2], ""]
            elif block[0] == "steps":
                lines += ["Test Steps", "-" * 10]
                for order, action, expected in block[1]:
                    lines.append(f"{order}. {action}")
                    if expected:
                        lines.append(f"   Expected: {expected}")
                lines.append("")
            else:
                lines.append(f"{block[1]}: {block[2]}")
        return "\n".join(lines).rstrip() + "\n"


def _cell(text: str) -> str:
    return text.replace("|", "\\|").replace("\n", " ")
