"""
Probe registry.

REGISTRY maps the service_type tag carried by a task to the probe class
that knows how to run it. The configuration file uses one array per type
under each [[Box]]; CONFIG_KEYS maps those array names to the same tags.
"""

from ccdc_scoring.checks.base import CredentialsError, Service, build_dataclass, string_hash
from ccdc_scoring.checks.directory import Ldap
from ccdc_scoring.checks.dns import Dns
from ccdc_scoring.checks.files import Ftp, Smb
from ccdc_scoring.checks.mail import Imap, Pop3, Smtp
from ccdc_scoring.checks.network import Ping, Rdp, Tcp, Vnc
from ccdc_scoring.checks.remote import Custom, Ssh, WinRM
from ccdc_scoring.checks.sql import Sql
from ccdc_scoring.checks.web import Web

REGISTRY = {
    cls.service_type: cls
    for cls in (Custom, Dns, Ftp, Imap, Ldap, Ping, Pop3, Rdp, Smb, Smtp, Sql, Ssh, Tcp, Vnc, Web, WinRM)
}

# [[Box.Winrm]] in the config file, "WinRM" on the wire
CONFIG_KEYS = {("Winrm" if name == "WinRM" else name): name for name in REGISTRY}


class UnknownServiceType(LookupError):
    """No probe is registered under the requested service_type."""


def build_runner(service_type, check_data):
    """Rebuild a configured probe from a task's check_data payload."""
    cls = REGISTRY.get(service_type)
    if cls is None:
        raise UnknownServiceType(service_type)
    if not isinstance(check_data, dict):
        raise ValueError(f"check_data for {service_type} must be an object, got {type(check_data).__name__}")
    return cls.from_dict(check_data)


def service_from_config(config_key, data):
    """
    Build an unverified probe from one [[Box.<Type>]] table.
    Returns (service, unknown_keys).
    """
    return build_dataclass(REGISTRY[CONFIG_KEYS[config_key]], data)


__all__ = [
    "REGISTRY",
    "CONFIG_KEYS",
    "CredentialsError",
    "Service",
    "UnknownServiceType",
    "build_runner",
    "service_from_config",
    "string_hash",
]
