"""edulicense CLI -- issue, validate and administer school licenses.

Every subcommand supports ``--json`` for machine-parseable output.  The
license database defaults to ``~/.edulicense/licenses.db``; pass ``--db``
or set ``EDULICENSE_DB_PATH`` to use another one.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from typing import Any, NoReturn

import click

from edulicense.cli.output import (
    format_audit,
    format_error,
    format_expiring,
    format_license,
    format_licenses,
    format_report,
    format_response,
    format_scheduler_status,
    format_validation,
)
from edulicense.config import get_settings
from edulicense.credentials import parse_credential_claims
from edulicense.errors import ConfigurationError, EduLicenseError, LicenseOperationError, RepositoryError
from edulicense.events import EventBus
from edulicense.log_config import configure_logging
from edulicense.models import (
    ClientInfo,
    DeviceLimit,
    Feature,
    IpRestrictions,
    LicenseRequest,
    LicenseStatus,
    SecurityRestrictions,
)
from edulicense.notifications import build_notification_sink
from edulicense.persistence import LicenseDB
from edulicense.scheduler import (
    DAILY_LICENSE_CHECK,
    EXPIRATION_REPORT,
    RETRY_FAILED_CHECKS,
    FailureTracker,
    LicenseScheduler,
)
from edulicense.service import LICENSE_NOT_FOUND, LicenseService

logger = logging.getLogger(__name__)

_STATUS_CHOICES = tuple(s.value for s in LicenseStatus)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_service(ctx: click.Context) -> LicenseService:
    """Return the service for this invocation, building it on first use."""
    service = ctx.obj.get("service")
    if service is not None:
        return service

    settings = get_settings()
    db = LicenseDB(ctx.obj.get("db_path") or settings.db_path)
    ctx.call_on_close(db.close)

    bus = EventBus()
    bus.subscribe(None, db.log_event)
    service = LicenseService(
        db,
        device_counter=db,
        notifier=build_notification_sink(settings),
        event_bus=bus,
        expiring_soon_days=settings.expiring_soon_days,
        warning_thresholds=settings.warning_thresholds,
    )
    ctx.obj["service"] = service
    ctx.obj["db"] = db
    return service


def _fail(exc: Exception, action: str, json_mode: bool) -> NoReturn:
    """Print *exc* as an error envelope and exit with status 1."""
    logger.debug("CLI action %r failed", action, exc_info=exc)
    if isinstance(exc, LicenseOperationError):
        message, code = exc.message, exc.code
    elif isinstance(exc, ConfigurationError):
        message, code = f"{exc}. Check your edulicense configuration.", "CONFIGURATION_ERROR"
    elif isinstance(exc, RepositoryError):
        message, code = f"Failed to {action}: {exc}", "REPOSITORY_ERROR"
    else:
        message, code = f"Failed to {action}: {exc}", "ERROR"
    click.echo(format_error(message, code=code, json_mode=json_mode))
    sys.exit(1)


def _parse_feature(raw: str) -> Feature:
    """Parse ``name`` or ``name=<json restrictions>``."""
    name, sep, restrictions = raw.partition("=")
    name = name.strip()
    if not name:
        raise click.BadParameter(f"Feature name missing in {raw!r}", param_hint="--feature")
    if not sep:
        return Feature(name=name)
    try:
        parsed = json.loads(restrictions)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"Restrictions for {name!r} are not valid JSON: {exc}", param_hint="--feature") from exc
    if not isinstance(parsed, dict):
        raise click.BadParameter(f"Restrictions for {name!r} must be a JSON object", param_hint="--feature")
    return Feature(name=name, restrictions=parsed)


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.option("--db", "db_path", default=None, help="Path to the license database.")
@click.version_option(package_name="edulicense")
@click.pass_context
def cli(ctx: click.Context, db_path: str | None) -> None:
    """edulicense -- per-school license issuance and validation."""
    ctx.ensure_object(dict)
    ctx.obj.setdefault("db_path", db_path)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--school-id", required=True, help="School identifier.")
@click.option("--school-name", required=True, help="School display name.")
@click.option("--days", default=365, show_default=True, type=int, help="License duration in days.")
@click.option(
    "--feature",
    "features",
    multiple=True,
    help='Feature to license, optionally with restrictions: name or name=\'{"maxUsers": 50}\'.',
)
@click.option("--max-devices", type=int, default=None, help="Enable a device limit.")
@click.option("--allow-ip", "allowed_ips", multiple=True, help="Allowed IP or CIDR (enables IP restrictions).")
@click.option("--allow-country", "allowed_countries", multiple=True, help="Allowed country code.")
@click.option("--hardware-binding", is_flag=True, help="Require registered hardware fingerprints.")
@click.option("--require-activation", is_flag=True, help="Keep the license pending until it is activated.")
@click.option("--by", default=None, help="Operator performing the action.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def generate(
    ctx: click.Context,
    school_id: str,
    school_name: str,
    days: int,
    features: tuple[str, ...],
    max_devices: int | None,
    allowed_ips: tuple[str, ...],
    allowed_countries: tuple[str, ...],
    hardware_binding: bool,
    require_activation: bool,
    by: str | None,
    json_mode: bool,
) -> None:
    """Issue a new license for a school."""
    parsed = [_parse_feature(f) for f in features]

    restrictions = None
    if max_devices is not None or allowed_ips or allowed_countries or hardware_binding:
        restrictions = SecurityRestrictions()
        restrictions.hardware_binding.enabled = hardware_binding
        if allowed_ips or allowed_countries:
            restrictions.ip_restrictions = IpRestrictions(
                enabled=True,
                allowed_ips=list(allowed_ips),
                allowed_countries=[c.upper() for c in allowed_countries] or None,
            )
        if max_devices is not None:
            restrictions.device_limit = DeviceLimit(enabled=True, max_devices=max_devices)

    try:
        service = _get_service(ctx)
        lic = service.generate_license(
            LicenseRequest(
                school_id=school_id,
                school_name=school_name,
                duration_days=days,
                features=parsed,
                security_restrictions=restrictions,
                created_by=by,
                require_activation=require_activation,
            )
        )
        click.echo(format_license(lic.to_dict(), title="License Issued", show_key=True, json_mode=json_mode))
    except EduLicenseError as exc:
        _fail(exc, "generate license", json_mode)


@cli.command()
@click.argument("license_key")
@click.option("--school-id", required=True, help="School the license was issued to.")
@click.option("--by", default=None, help="Operator performing the action.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def activate(ctx: click.Context, license_key: str, school_id: str, by: str | None, json_mode: bool) -> None:
    """Activate a pending license with its key."""
    try:
        lic = _get_service(ctx).activate_license(license_key, school_id, by)
    except EduLicenseError as exc:
        _fail(exc, "activate license", json_mode)
    click.echo(format_license(lic.to_dict(), title="License Activated", json_mode=json_mode))


@cli.command()
@click.argument("license_key")
@click.option("--school-id", required=True, help="School the key is presented for.")
@click.option("--ip", default=None, help="Client IP address.")
@click.option("--country", default=None, help="Client country code.")
@click.option("--device-id", default=None, help="Client device identifier.")
@click.option("--hardware", "hardware_json", default=None, help="Client hardware info as a JSON object.")
@click.option("--read-only", is_flag=True, help="Skip security checks and do not record the check.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def validate(
    ctx: click.Context,
    license_key: str,
    school_id: str,
    ip: str | None,
    country: str | None,
    device_id: str | None,
    hardware_json: str | None,
    read_only: bool,
    json_mode: bool,
) -> None:
    """Validate a license key.  Exits 1 when the license is invalid."""
    hardware_info = None
    if hardware_json:
        try:
            hardware_info = json.loads(hardware_json)
        except json.JSONDecodeError as exc:
            raise click.BadParameter(f"Not valid JSON: {exc}", param_hint="--hardware") from exc

    client = None
    if ip or country or device_id or hardware_info:
        client = ClientInfo(ip=ip, country=country, device_id=device_id, hardware_info=hardware_info)

    try:
        result = _get_service(ctx).validate_license(
            license_key, school_id, check_revocation=not read_only, client_info=client
        )
    except EduLicenseError as exc:
        _fail(exc, "validate license", json_mode)

    click.echo(format_validation(result.to_dict(), json_mode=json_mode))
    if not result.valid:
        sys.exit(1)


@cli.command()
@click.argument("license_id")
@click.option("--by", default=None, help="Operator performing the action.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def revoke(ctx: click.Context, license_id: str, by: str | None, json_mode: bool) -> None:
    """Revoke a license."""
    try:
        revoked = _get_service(ctx).revoke_license(license_id, by)
    except EduLicenseError as exc:
        _fail(exc, "revoke license", json_mode)
    if not revoked:
        click.echo(format_error(f"License {license_id} not found", code=LICENSE_NOT_FOUND, json_mode=json_mode))
        sys.exit(1)
    click.echo(format_response("success", {"license_id": license_id, "status": "revoked"}, json_mode=json_mode))


@cli.command()
@click.argument("license_id")
@click.option("--days", required=True, type=int, help="Days to add.")
@click.option("--by", default=None, help="Operator performing the action.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def renew(ctx: click.Context, license_id: str, days: int, by: str | None, json_mode: bool) -> None:
    """Extend a license.  Prints the re-issued key."""
    try:
        lic = _get_service(ctx).renew_license(license_id, days, by)
    except EduLicenseError as exc:
        _fail(exc, "renew license", json_mode)
    click.echo(format_license(lic.to_dict(), title="License Renewed", show_key=True, json_mode=json_mode))


@cli.command()
@click.argument("license_id")
@click.option("--to-school-id", required=True, help="Receiving school identifier.")
@click.option("--to-school-name", required=True, help="Receiving school name.")
@click.option("--by", default=None, help="Operator performing the action.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def transfer(
    ctx: click.Context,
    license_id: str,
    to_school_id: str,
    to_school_name: str,
    by: str | None,
    json_mode: bool,
) -> None:
    """Move a license to another school.  Prints the re-issued key."""
    try:
        lic = _get_service(ctx).transfer_license(license_id, to_school_id, to_school_name, by)
    except EduLicenseError as exc:
        _fail(exc, "transfer license", json_mode)
    click.echo(format_license(lic.to_dict(), title="License Transferred", show_key=True, json_mode=json_mode))


@cli.command()
@click.argument("license_id")
@click.option("--reason", required=True, help="Why the license is blacklisted.")
@click.option("--by", default=None, help="Operator performing the action.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def blacklist(ctx: click.Context, license_id: str, reason: str, by: str | None, json_mode: bool) -> None:
    """Block a license regardless of its status."""
    try:
        lic = _get_service(ctx).blacklist_license(license_id, reason, by)
    except EduLicenseError as exc:
        _fail(exc, "blacklist license", json_mode)
    click.echo(format_license(lic.to_dict(), title="License Blacklisted", json_mode=json_mode))


@cli.command()
@click.argument("license_id")
@click.option("--by", default=None, help="Operator performing the action.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def unblacklist(ctx: click.Context, license_id: str, by: str | None, json_mode: bool) -> None:
    """Lift a blacklist entry."""
    try:
        lic = _get_service(ctx).remove_from_blacklist(license_id, by)
    except EduLicenseError as exc:
        _fail(exc, "remove license from blacklist", json_mode)
    click.echo(format_license(lic.to_dict(), title="Blacklist Removed", json_mode=json_mode))


# ---------------------------------------------------------------------------
# Security policy
# ---------------------------------------------------------------------------


@cli.group()
def security() -> None:
    """Manage hardware, IP and device restrictions."""


@security.command("register-hardware")
@click.argument("license_id")
@click.argument("hardware_json")
@click.option("--by", default=None, help="Operator performing the action.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def register_hardware(ctx: click.Context, license_id: str, hardware_json: str, by: str | None, json_mode: bool) -> None:
    """Bind a device's hardware info (a JSON object) to a license."""
    try:
        hardware_info = json.loads(hardware_json)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"Not valid JSON: {exc}", param_hint="HARDWARE_JSON") from exc
    if not isinstance(hardware_info, dict):
        raise click.BadParameter("Must be a JSON object", param_hint="HARDWARE_JSON")
    try:
        fingerprint = _get_service(ctx).register_hardware_fingerprint(license_id, hardware_info, by)
    except EduLicenseError as exc:
        _fail(exc, "register hardware", json_mode)
    click.echo(format_response("success", {"license_id": license_id, "fingerprint": fingerprint}, json_mode=json_mode))


@security.command("remove-hardware")
@click.argument("license_id")
@click.argument("fingerprint")
@click.option("--by", default=None, help="Operator performing the action.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def remove_hardware(ctx: click.Context, license_id: str, fingerprint: str, by: str | None, json_mode: bool) -> None:
    """Unbind a hardware fingerprint."""
    try:
        removed = _get_service(ctx).remove_hardware_fingerprint(license_id, fingerprint, by)
    except EduLicenseError as exc:
        _fail(exc, "remove hardware", json_mode)
    click.echo(format_response("success", {"license_id": license_id, "removed": removed}, json_mode=json_mode))


@security.command("ip")
@click.argument("license_id")
@click.option("--allow-ip", "allowed_ips", multiple=True, help="Allowed IP or CIDR.")
@click.option("--allow-country", "allowed_countries", multiple=True, help="Allowed country code.")
@click.option("--disable", is_flag=True, help="Turn IP restrictions off.")
@click.option("--by", default=None, help="Operator performing the action.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def ip_restrictions(
    ctx: click.Context,
    license_id: str,
    allowed_ips: tuple[str, ...],
    allowed_countries: tuple[str, ...],
    disable: bool,
    by: str | None,
    json_mode: bool,
) -> None:
    """Replace a license's IP and country allow-lists."""
    try:
        lic = _get_service(ctx).update_ip_restrictions(
            license_id, not disable, list(allowed_ips), list(allowed_countries) or None, by
        )
    except EduLicenseError as exc:
        _fail(exc, "update IP restrictions", json_mode)
    click.echo(format_license(lic.to_dict(), title="IP Restrictions Updated", json_mode=json_mode))


@security.command("devices")
@click.argument("license_id")
@click.option("--max", "max_devices", required=True, type=int, help="Maximum concurrent devices.")
@click.option("--disable", is_flag=True, help="Turn the device limit off.")
@click.option("--by", default=None, help="Operator performing the action.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def device_limit(
    ctx: click.Context,
    license_id: str,
    max_devices: int,
    disable: bool,
    by: str | None,
    json_mode: bool,
) -> None:
    """Configure a license's device limit."""
    try:
        lic = _get_service(ctx).update_device_limit(license_id, not disable, max_devices, by)
    except EduLicenseError as exc:
        _fail(exc, "update device limit", json_mode)
    click.echo(format_license(lic.to_dict(), title="Device Limit Updated", json_mode=json_mode))


@security.command("register-device")
@click.argument("license_id")
@click.argument("device_id")
@click.option("--by", default=None, help="Operator performing the action.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def register_device(ctx: click.Context, license_id: str, device_id: str, by: str | None, json_mode: bool) -> None:
    """Bind a device id to a license, refusing once the device limit is reached."""
    try:
        count = _get_service(ctx).register_device(license_id, device_id, by)
    except EduLicenseError as exc:
        _fail(exc, "register device", json_mode)
    click.echo(
        format_response(
            "success",
            {"license_id": license_id, "device_id": device_id, "device_count": count},
            json_mode=json_mode,
        )
    )


@security.command("remove-device")
@click.argument("license_id")
@click.argument("device_id")
@click.option("--by", default=None, help="Operator performing the action.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def remove_device(ctx: click.Context, license_id: str, device_id: str, by: str | None, json_mode: bool) -> None:
    """Unbind a device id, freeing a slot under the device limit."""
    try:
        removed = _get_service(ctx).remove_device(license_id, device_id, by)
    except EduLicenseError as exc:
        _fail(exc, "remove device", json_mode)
    click.echo(
        format_response("success", {"license_id": license_id, "device_id": device_id, "removed": removed}, json_mode=json_mode)
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("license_id")
@click.option("--show-key", is_flag=True, help="Print the full license key.")
@click.option("--claims", "show_claims", is_flag=True, help="Decode the claims carried by the license key.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def show(ctx: click.Context, license_id: str, show_key: bool, show_claims: bool, json_mode: bool) -> None:
    """Show one license."""
    try:
        lic = _get_service(ctx).get_license(license_id)
    except EduLicenseError as exc:
        _fail(exc, "load license", json_mode)
    if lic is None:
        click.echo(format_error(f"License {license_id} not found", code=LICENSE_NOT_FOUND, json_mode=json_mode))
        sys.exit(1)
    # Claims are decoded for display only; the signature is not checked.
    claims = (parse_credential_claims(lic.license_key) or {}) if show_claims else None
    click.echo(format_license(lic.to_dict(), show_key=show_key, claims=claims, json_mode=json_mode))


@cli.command()
@click.argument("license_id", required=False)
@click.option("--limit", default=50, show_default=True, type=int, help="Maximum number of events.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def audit(ctx: click.Context, license_id: str | None, limit: int, json_mode: bool) -> None:
    """Show the audit trail, optionally for one license."""
    try:
        _get_service(ctx)
        db = ctx.obj.get("db")
        if db is None:
            raise ConfigurationError("No license database configured for the audit trail")
        events = db.audit_trail(license_id, limit)
    except EduLicenseError as exc:
        _fail(exc, "load audit trail", json_mode)
    click.echo(format_audit(events, json_mode=json_mode))


@cli.command("list")
@click.option("--status", type=click.Choice(_STATUS_CHOICES), default=None, help="Filter by status.")
@click.option("--school-id", default=None, help="Filter by school.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def list_cmd(ctx: click.Context, status: str | None, school_id: str | None, json_mode: bool) -> None:
    """List licenses."""
    try:
        licenses = _get_service(ctx).list_licenses(
            LicenseStatus(status) if status else None, school_id
        )
    except EduLicenseError as exc:
        _fail(exc, "list licenses", json_mode)
    click.echo(format_licenses([lic.to_dict() for lic in licenses], json_mode=json_mode))


@cli.command()
@click.option("--retry", is_flag=True, help="Also retry licenses whose check failed.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def check(ctx: click.Context, retry: bool, json_mode: bool) -> None:
    """Sweep all licenses now, marking expired ones."""
    try:
        service = _get_service(ctx)
        report = service.check_licenses()
        if retry and report.failed:
            service.retry_failed_checks()
    except EduLicenseError as exc:
        _fail(exc, "check licenses", json_mode)
    click.echo(format_report(report.to_dict(), json_mode=json_mode))


@cli.command()
@click.option("--days", type=int, default=None, help="Lookahead in days (default from config).")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def expiring(ctx: click.Context, days: int | None, json_mode: bool) -> None:
    """List active licenses that expire soon."""
    try:
        report = _get_service(ctx).expiration_report(days)
    except EduLicenseError as exc:
        _fail(exc, "build expiration report", json_mode)
    click.echo(format_expiring(report, json_mode=json_mode))


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--once", is_flag=True, help="Run every task once, print status and exit.")
@click.option("--log-dir", default=None, help="Directory for rotating log files.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def scheduler(ctx: click.Context, once: bool, log_dir: str | None, json_mode: bool) -> None:
    """Run the license maintenance scheduler in the foreground."""
    settings = get_settings()
    try:
        service = _get_service(ctx)
    except EduLicenseError as exc:
        _fail(exc, "start scheduler", json_mode)

    tracker = FailureTracker(service.notifier, threshold=settings.failure_threshold)
    runner = LicenseScheduler(
        service,
        tracker,
        intervals={
            DAILY_LICENSE_CHECK: settings.license_check_interval,
            RETRY_FAILED_CHECKS: settings.retry_interval,
            EXPIRATION_REPORT: settings.expiration_report_interval,
        },
        run_on_start=True,
    )

    if once:
        results: dict[str, Any] = {name: runner.run_task(name) for name in runner.task_names}
        click.echo(
            format_scheduler_status(
                runner.status(),
                [f.to_dict() for f in tracker.failed_tasks()],
                json_mode=json_mode,
            )
        )
        if not all(results.values()):
            sys.exit(1)
        return

    log_path = configure_logging(log_dir)
    runner.start()
    click.echo(f"Scheduler running, logging to {log_path}. Press Ctrl+C to stop.")
    try:
        while runner.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nStopping scheduler...")
    finally:
        runner.stop()


def main() -> None:
    """Entry point for ``python -m edulicense.cli.main``."""
    cli()


if __name__ == "__main__":
    main()
