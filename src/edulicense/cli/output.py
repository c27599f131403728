"""Output formatting for the edulicense CLI.

Every public function accepts a ``json_mode`` flag:
    - ``True``  → indented JSON envelope ``{status, data, error}``
    - ``False`` → Rich-formatted text for humans
"""

from __future__ import annotations

import json
import time
from io import StringIO
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

_STATUS_STYLES = {
    "active": "green",
    "pending": "yellow",
    "expired": "red",
    "revoked": "magenta",
}


def _render(renderable: Any) -> str:
    """Render a Rich object to a string."""
    buf = StringIO()
    console = Console(file=buf, force_terminal=True, width=100)
    console.print(renderable)
    return buf.getvalue().rstrip("\n")


def _envelope(data: dict[str, Any]) -> str:
    return json.dumps({"status": "success", "data": data}, indent=2, sort_keys=False, default=str)


def _mask_key(key: str) -> str:
    """Shorten a credential for display."""
    if not key:
        return "-"
    if len(key) <= 24:
        return key
    return f"{key[:16]}...{key[-6:]}"


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


def format_response(
    status: str,
    data: dict[str, Any] | None = None,
    error: dict[str, Any] | None = None,
    *,
    json_mode: bool = False,
) -> str:
    """Build a standard ``{status, data, error}`` response."""
    if json_mode:
        envelope: dict[str, Any] = {"status": status}
        if data is not None:
            envelope["data"] = data
        if error is not None:
            envelope["error"] = error
        return json.dumps(envelope, indent=2, sort_keys=False, default=str)

    if status == "error" and error:
        t = Text()
        t.append("Error", style="bold red")
        t.append(f" [{error.get('code', 'UNKNOWN')}]: ", style="red")
        t.append(error.get("message", "An unknown error occurred."))
        return _render(Panel(t, title="Error", border_style="red"))

    if data:
        lines = [f"[bold]{k}:[/bold] {v}" for k, v in data.items()]
        return _render(Panel("\n".join(lines), border_style="green"))

    return f"Status: {status}"


def format_error(
    message: str,
    code: str = "ERROR",
    *,
    json_mode: bool = False,
) -> str:
    """Shortcut for a standard error response."""
    return format_response("error", error={"code": code, "message": message}, json_mode=json_mode)


# ---------------------------------------------------------------------------
# Licenses
# ---------------------------------------------------------------------------


def format_license(
    lic: dict[str, Any],
    *,
    title: str = "License",
    show_key: bool = False,
    claims: dict[str, Any] | None = None,
    json_mode: bool = False,
) -> str:
    """Format one license record (from ``License.to_dict()``).

    *claims* are the unverified claims decoded from the license key.
    """
    if json_mode:
        data: dict[str, Any] = {"license": lic}
        if claims is not None:
            data["claims"] = claims
        return _envelope(data)

    status = lic.get("status", "")
    t = Text()
    t.append("ID:         ", style="bold")
    t.append(f"{lic.get('id')}\n")
    t.append("School:     ", style="bold")
    t.append(f"{lic.get('school_name')} ({lic.get('school_id')})\n")
    t.append("Status:     ", style="bold")
    t.append(status, style=_STATUS_STYLES.get(status, ""))
    if lic.get("blacklisted"):
        t.append(f"  BLACKLISTED: {lic.get('blacklist_reason') or 'no reason given'}", style="bold red")
    t.append("\n")
    t.append("Issued:     ", style="bold")
    t.append(f"{lic.get('issued_at')}\n")
    t.append("Expires:    ", style="bold")
    t.append(f"{lic.get('expires_at')}\n")
    t.append("Features:   ", style="bold")
    names = [f["name"] + ("" if f.get("enabled", True) else " (disabled)") for f in lic.get("features", [])]
    t.append(", ".join(names) or "-")
    restrictions = lic.get("security_restrictions") or {}
    enabled = [name for name, policy in restrictions.items() if policy.get("enabled")]
    if enabled:
        t.append("\nSecurity:   ", style="bold")
        t.append(", ".join(enabled))
    t.append("\nKey:        ", style="bold")
    key = lic.get("license_key", "")
    t.append(key if show_key else _mask_key(key))
    if claims is not None:
        t.append("\nClaims:     ", style="bold")
        t.append(json.dumps(claims, sort_keys=True, default=str))
    return _render(Panel(t, title=title, border_style=_STATUS_STYLES.get(status, "blue")))


def format_licenses(
    licenses: list[dict[str, Any]],
    *,
    title: str = "Licenses",
    json_mode: bool = False,
) -> str:
    """Format a list of license records as a table."""
    if json_mode:
        return _envelope({"licenses": licenses, "count": len(licenses)})

    if not licenses:
        return _render(Panel("No licenses found.", border_style="yellow"))

    table = Table(title=title, border_style="blue")
    table.add_column("ID", style="dim")
    table.add_column("School", style="bold")
    table.add_column("Status")
    table.add_column("Expires")
    table.add_column("Features")
    for lic in licenses:
        status = lic.get("status", "")
        if lic.get("blacklisted"):
            status += " (blacklisted)"
        table.add_row(
            str(lic.get("id", ""))[:8],
            f"{lic.get('school_name')} ({lic.get('school_id')})",
            Text(status, style=_STATUS_STYLES.get(lic.get("status", ""), "")),
            str(lic.get("expires_at", "")),
            ", ".join(f["name"] for f in lic.get("features", [])),
        )
    return _render(table)


def format_validation(result: dict[str, Any], *, json_mode: bool = False) -> str:
    """Format a ``ValidationResult.to_dict()``."""
    if json_mode:
        return _envelope(result)

    if result.get("valid"):
        lic = result.get("license") or {}
        msg = f"License valid for {lic.get('school_name')}: expires in {result.get('expires_in')} day(s)."
        return _render(Panel(Text(msg, style="bold green"), title="Valid", border_style="green"))

    t = Text()
    t.append("License invalid\n", style="bold red")
    for err in result.get("errors", []):
        t.append(f"  - {err}\n")
    return _render(Panel(t, title="Invalid", border_style="red"))


def format_report(report: dict[str, Any], *, json_mode: bool = False) -> str:
    """Format a ``LicenseCheckReport.to_dict()``."""
    if json_mode:
        return _envelope(report)

    summary = (
        f"Checked {report['total_checked']}: "
        f"{report['active']} active, {report['expired']} expired, "
        f"{report['revoked']} revoked, {report['failed']} failed"
    )
    table = Table(title=summary, border_style="blue")
    table.add_column("License", style="dim")
    table.add_column("School", style="bold")
    table.add_column("Status")
    table.add_column("Message")
    for detail in report.get("details", []):
        table.add_row(
            str(detail["license_id"])[:8],
            detail["school_name"],
            Text(detail["status"], style=_STATUS_STYLES.get(detail["status"], "")),
            detail["message"],
        )
    return _render(table)


def format_expiring(report: dict[str, Any], *, json_mode: bool = False) -> str:
    """Format the output of ``LicenseService.expiration_report``."""
    if json_mode:
        return _envelope(report)

    entries = report.get("licenses", [])
    if not entries:
        return _render(
            Panel(f"No licenses expire within {report['window_days']} day(s).", border_style="green")
        )
    table = Table(title=f"Expiring within {report['window_days']} day(s)", border_style="yellow")
    table.add_column("License", style="dim")
    table.add_column("School", style="bold")
    table.add_column("Expires")
    table.add_column("Days left", justify="right")
    for entry in entries:
        days = entry["days_left"]
        table.add_row(
            str(entry["license_id"])[:8],
            f"{entry['school_name']} ({entry['school_id']})",
            entry["expires_at"],
            Text(str(days), style="bold red" if days <= 7 else "yellow"),
        )
    return _render(table)


def format_scheduler_status(
    tasks: list[dict[str, Any]],
    failed: list[dict[str, Any]],
    *,
    json_mode: bool = False,
) -> str:
    """Format scheduler task status and the failure map."""
    if json_mode:
        return _envelope({"tasks": tasks, "failed_tasks": failed})

    table = Table(title="Scheduled Tasks", border_style="blue")
    table.add_column("Task", style="bold")
    table.add_column("Every (s)", justify="right")
    table.add_column("Last run")
    table.add_column("Status")
    table.add_column("Failures", justify="right")
    for task in tasks:
        style = {"ok": "green", "failing": "red"}.get(task["status"], "dim")
        table.add_row(
            task["name"],
            f"{task['interval']:.0f}",
            task["last_run"] or "-",
            Text(task["status"], style=style),
            str(task["fail_count"]),
        )
    return _render(table)


def format_audit(events: list[dict[str, Any]], *, json_mode: bool = False) -> str:
    """Format rows from ``LicenseDB.audit_trail``, newest first."""
    if json_mode:
        return _envelope({"events": events, "count": len(events)})

    if not events:
        return _render(Panel("No audit events recorded.", border_style="yellow"))

    table = Table(title="Audit Trail", border_style="blue")
    table.add_column("When")
    table.add_column("Event", style="bold")
    table.add_column("License", style="dim")
    table.add_column("By")
    for event in events:
        data = event.get("data") or {}
        table.add_row(
            time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(event["timestamp"])),
            event["event_type"],
            str(event.get("license_id") or "-")[:8],
            str(data.get("by") or "-"),
        )
    return _render(table)
