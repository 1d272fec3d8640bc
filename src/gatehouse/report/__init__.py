"""
Audit reporting for Gatehouse.

Renders a time range of the audit log for operators.

Output formats:
    - Console: Rich table of decisions with outcome icons and summary counts
    - JSON: Structured export of every stored field

Example:
    from gatehouse.report import generate_console_report, generate_json_report

    generate_console_report("gatehouse.db", start=yesterday)
    print(generate_json_report("gatehouse.db", identity_id="agent-7"))
"""

from gatehouse.report.console import generate_console_report
from gatehouse.report.json import build_report_dict, generate_json_report

__all__ = [
    "generate_console_report",
    "generate_json_report",
    "build_report_dict",
]
