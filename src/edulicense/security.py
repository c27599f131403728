"""License-level runtime binding policies.

Evaluates the three independently toggleable security sub-policies of a
license (hardware binding, IP/country allow-listing and device limits) and
composes them with the blacklist and fingerprint checks into one verdict.

Order of :func:`validate_security_restrictions`, first failure wins:

    1. blacklist flag
    2. fingerprint verification
    3. no restrictions configured → valid
    4. hardware binding
    5. IP / country restrictions
    6. device limit

Hardware binding is trust-on-first-use: an enabled binding with no
registered fingerprints accepts any hardware.  Registering the first
fingerprint is an explicit administrative call, never a side effect of
validation.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Iterable
from typing import Any

from edulicense.integrity import IntegritySigner, compute_hardware_fingerprint, get_signer
from edulicense.models import ClientInfo, License, SecurityValidationResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# IP matching
# ---------------------------------------------------------------------------


def _ip_matches(ip: ipaddress.IPv4Address | ipaddress.IPv6Address, entry: str) -> bool:
    entry = entry.strip()
    try:
        if "/" in entry:
            return ip in ipaddress.ip_network(entry, strict=False)
        return ip == ipaddress.ip_address(entry)
    except ValueError:
        logger.warning("Ignoring malformed IP allow-list entry %r", entry)
        return False


def is_ip_allowed(ip: str, entries: Iterable[str]) -> bool:
    """True if *ip* equals an exact entry or falls inside a CIDR entry.

    Works for IPv4 and IPv6.  A malformed *ip* never matches.
    """
    try:
        address = ipaddress.ip_address(ip.strip())
    except (AttributeError, ValueError):
        return False
    return any(_ip_matches(address, entry) for entry in entries)


# ---------------------------------------------------------------------------
# Sub-validators
# ---------------------------------------------------------------------------


def validate_hardware_binding(
    license: License,
    hardware_info: dict[str, Any] | None = None,
) -> SecurityValidationResult:
    restrictions = license.security_restrictions
    if restrictions is None or not restrictions.hardware_binding.enabled:
        return SecurityValidationResult.ok()
    if not hardware_info:
        return SecurityValidationResult.fail("Hardware information required for validation")

    registered = restrictions.hardware_binding.fingerprints
    if not registered:
        # Trust-on-first-use.
        return SecurityValidationResult.ok()

    if compute_hardware_fingerprint(hardware_info) in registered:
        return SecurityValidationResult.ok()
    return SecurityValidationResult.fail("Hardware fingerprint not authorized for this license")


def validate_ip_restrictions(
    license: License,
    client_info: ClientInfo | None = None,
) -> SecurityValidationResult:
    restrictions = license.security_restrictions
    if restrictions is None or not restrictions.ip_restrictions.enabled:
        return SecurityValidationResult.ok()
    if client_info is None or not client_info.ip:
        return SecurityValidationResult.fail("Client IP information required for validation")

    policy = restrictions.ip_restrictions
    if policy.allowed_ips and not is_ip_allowed(client_info.ip, policy.allowed_ips):
        return SecurityValidationResult.fail("IP address not authorized for this license")

    if policy.allowed_countries and client_info.country:
        if client_info.country not in policy.allowed_countries:
            return SecurityValidationResult.fail("Country not authorized for this license")

    return SecurityValidationResult.ok()


def validate_device_limit(
    license: License,
    device_id: str | None = None,
    current_device_count: int | None = None,
) -> SecurityValidationResult:
    restrictions = license.security_restrictions
    if restrictions is None or not restrictions.device_limit.enabled:
        return SecurityValidationResult.ok()
    if not device_id:
        return SecurityValidationResult.fail("Device ID required for validation")

    max_devices = restrictions.device_limit.max_devices
    if current_device_count is None or current_device_count < max_devices:
        return SecurityValidationResult.ok()
    return SecurityValidationResult.fail(f"Device limit exceeded ({current_device_count}/{max_devices})")


# ---------------------------------------------------------------------------
# Composite
# ---------------------------------------------------------------------------


def validate_security_restrictions(
    license: License,
    client_info: ClientInfo | None = None,
    current_device_count: int | None = None,
    *,
    signer: IntegritySigner | None = None,
) -> SecurityValidationResult:
    """Run every security check in order and stop at the first failure.

    :param signer: Integrity signer for fingerprint verification.  Defaults
        to the process-wide signer.
    :raises ConfigurationError: No secret is available to verify a stored
        fingerprint.
    """
    if license.blacklisted:
        return SecurityValidationResult.fail(f"License is blacklisted: {license.blacklist_reason or 'no reason given'}")

    if not (signer or get_signer()).verify_fingerprint(license):
        logger.warning("Fingerprint mismatch for license %s", license.id)
        return SecurityValidationResult.fail("License fingerprint verification failed, possible tampering detected")

    if license.security_restrictions is None:
        return SecurityValidationResult.ok()

    hardware_info = client_info.hardware_info if client_info is not None else None
    result = validate_hardware_binding(license, hardware_info)
    if not result.valid:
        return result

    result = validate_ip_restrictions(license, client_info)
    if not result.valid:
        return result

    device_id = client_info.device_id if client_info is not None else None
    return validate_device_limit(license, device_id, current_device_count)
