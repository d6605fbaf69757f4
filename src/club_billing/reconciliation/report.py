"""Rendering of diagnostics reports for operators."""

import csv
import io
import json
from datetime import datetime

from .models import DiagnosticsReport


class ReportGenerator:
    """Renders a DiagnosticsReport as JSON, CSV or text."""

    FORMATS = ("json", "csv", "text", "detailed_text")

    def __init__(self, report: DiagnosticsReport):
        """Initialize the report generator.

        Args:
            report: The diagnostics snapshot to render.
        """
        self.report = report

    def render(self, format: str = "json") -> str:
        """Render in one of FORMATS.

        Raises:
            ValueError: If the format is not supported.
        """
        if format == "json":
            return self.to_json()
        elif format == "csv":
            return self.to_csv()
        elif format == "text":
            return self.to_summary_text()
        elif format == "detailed_text":
            return self.to_detailed_text()
        raise ValueError(f"Unsupported report format: {format}")

    def to_json(self, include_details: bool = True, indent: int = 2) -> str:
        """Generate JSON representation of the report.

        Args:
            include_details: If True, include the capped rows. If False, only counts.
            indent: JSON indentation level.
        """
        if include_details:
            data = self.report.to_full_dict()
        else:
            data = self.report.to_summary_dict()

        def json_serializer(obj):
            if isinstance(obj, datetime):
                return obj.isoformat()
            raise TypeError(f"Object of type {type(obj)} is not JSON serializable")

        return json.dumps(data, indent=indent, default=json_serializer)

    def to_csv(self) -> str:
        """One CSV table of every flagged row, tagged by section."""
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(["section", "id", "tracking_key", "status", "amount", "currency", "detail"])

        for row in self.report.unmaterialized:
            writer.writerow([
                "unmaterialized",
                row.item_id,
                row.tracking_key,
                row.order_status or "no_order",
                row.amount,
                row.currency,
                row.cause,
            ])
        for row in self.report.stuck_items:
            writer.writerow([
                "stuck",
                row.item_id,
                row.tracking_key,
                row.processing_status,
                row.amount,
                row.currency,
                row.cause,
            ])
        for row in self.report.orphans:
            writer.writerow([
                "orphan",
                row.subscription_id,
                row.tracking_key,
                row.status,
                "",
                "",
                row.plan_title,
            ])
        for row in self.report.mismatches:
            writer.writerow([
                "mismatch",
                row.order_id,
                row.order_number,
                f"{row.order_product_id}/{row.order_tariff_id}",
                "",
                "",
                f"mapping says {row.mapping_product_id}/{row.mapping_tariff_id}",
            ])

        return output.getvalue()

    def to_summary_text(self) -> str:
        """Generate a human-readable text summary of the report."""
        summary = self.report.to_summary_dict()
        stats = summary["statistics"]

        lines = [
            "=" * 60,
            "BILLING DIAGNOSTICS SUMMARY",
            "=" * 60,
            f"Generated At: {summary['generated_at']}",
            f"Rows Per Section: {summary['row_limit']}",
            "",
            "Statistics:",
            f"  Unmaterialized Payments: {stats['unmaterialized_payments']}",
            f"  Stuck Queue Items: {stats['stuck_items']}",
            f"  Orphaned Subscriptions: {stats['orphaned_subscriptions']}",
            f"  Mismatched Mappings: {stats['mismatched_mappings']}",
            f"  Unmapped Plan Titles: {stats['unmapped_titles']}",
        ]

        if self.report.stuck_summary:
            lines.extend(["", "Stuck By Kind:"])
            for group in self.report.stuck_summary:
                lines.append(f"  {group.kind} / {group.processing_status}: {group.count}")

        if summary.get("orphan_check_error"):
            lines.extend([
                "",
                "Orphan Check Error:",
                f"  {summary['orphan_check_error']}",
            ])

        lines.append("=" * 60)

        return "\n".join(lines)

    def to_detailed_text(self) -> str:
        """Summary followed by every capped row."""
        lines = [self.to_summary_text(), ""]

        if self.report.unmaterialized:
            lines.extend(["UNMATERIALIZED PAYMENTS", "-" * 40])
            for r in self.report.unmaterialized:
                lines.append(
                    f"  {r.tracking_key} ({r.provider_event_id}): "
                    f"{r.amount} {r.currency}, {r.cause}"
                )
            lines.append("")

        if self.report.stuck_items:
            lines.extend(["STUCK QUEUE ITEMS", "-" * 40])
            for r in self.report.stuck_items:
                lines.append(
                    f"  {r.tracking_key} [{r.processing_status}] attempts={r.attempt_count}"
                    + (f": {r.cause}" if r.cause else "")
                )
            lines.append("")

        if self.report.orphans:
            lines.extend(["ORPHANED SUBSCRIPTIONS", "-" * 40])
            for r in self.report.orphans:
                lines.append(f"  {r.subscription_id} [{r.status}] plan={r.plan_title or 'N/A'}")
            lines.append("")

        if self.report.mismatches:
            lines.extend(["MISMATCHED MAPPINGS", "-" * 40])
            for r in self.report.mismatches:
                lines.append(
                    f"  {r.order_number}: order {r.order_product_id}/{r.order_tariff_id}, "
                    f"mapping {r.mapping_product_id}/{r.mapping_tariff_id}"
                )
            lines.append("")

        if self.report.unmapped_titles:
            lines.extend(["UNMAPPED PLAN TITLES", "-" * 40])
            for title, count in self.report.unmapped_titles.items():
                lines.append(f"  {title}: {count}")
            lines.append("")

        return "\n".join(lines)
