"""Target URL validation for webhook subscriptions.

Subscribers register arbitrary URLs, so every target is checked before it
is stored and again before each delivery.

Security Controls:
    - http/https schemes only (plain http configurable)
    - Private IP range blocking (RFC 1918, RFC 4193, link-local)
    - Cloud metadata endpoint blocking (169.254.169.254)
    - Resolution-time checks so a hostname cannot point at a blocked address
"""

from __future__ import annotations

import ipaddress
import logging
import socket
from dataclasses import dataclass, field
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

__all__ = [
    "URLValidationError",
    "ValidatedURL",
    "WebhookURLValidator",
]


class URLValidationError(Exception):
    """Raised when URL validation fails."""

    def __init__(self, reason: str, code: str = "invalid_url") -> None:
        self.reason = reason
        self.code = code
        super().__init__(reason)


@dataclass
class ValidatedURL:
    """Result of URL validation.

    Attributes:
        url: The validated URL
        host: Extracted hostname
        resolved_ips: IP addresses the hostname resolves to (empty when
            resolution was skipped)
    """

    url: str
    host: str
    resolved_ips: list[str] = field(default_factory=list)


# Private IPv4 ranges (RFC 1918 + link-local + loopback)
PRIVATE_IPV4_NETWORKS = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),
]

# Private IPv6 ranges (RFC 4193 + link-local + loopback)
PRIVATE_IPV6_NETWORKS = [
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
    ipaddress.ip_network("::1/128"),
]

# Cloud metadata endpoints, blocked even when private targets are allowed
METADATA_IPS = [
    "169.254.169.254",
    "fd00:ec2::254",
]

BLOCKED_HOSTNAMES = [
    "localhost",
    "metadata.google.internal",
    "metadata",
    "kubernetes.default.svc",
]


class WebhookURLValidator:
    """Validates subscription target URLs.

    Example:
        >>> validator = WebhookURLValidator()
        >>> validator.validate("https://93.184.216.34/hook").host
        '93.184.216.34'

        >>> validator.validate("ftp://example.com/hook")
        URLValidationError: Invalid scheme: ftp

        >>> validator.validate("https://192.168.1.1/hook")
        URLValidationError: Private IP addresses are not allowed: 192.168.1.1
    """

    def __init__(
        self,
        allow_private: bool = False,
        allow_http: bool = True,
        dns_timeout: float = 5.0,
    ) -> None:
        """Initialize URL validator.

        Args:
            allow_private: Allow loopback and private targets (development only)
            allow_http: Allow plain http:// URLs
            dns_timeout: Timeout for DNS resolution in seconds
        """
        self.allow_private = allow_private
        self.allow_http = allow_http
        self.dns_timeout = dns_timeout

    def validate(self, url: str) -> ValidatedURL:
        """Validate a subscription URL.

        Hostnames are only resolved when private targets are blocked.

        Raises:
            URLValidationError: If URL fails validation
        """
        try:
            parsed = urlparse(url)
        except ValueError as e:
            raise URLValidationError(f"Invalid URL format: {e}") from e

        if parsed.scheme not in ("http", "https"):
            raise URLValidationError(
                f"Invalid scheme: {parsed.scheme}",
                code="invalid_scheme",
            )

        if not self.allow_http and parsed.scheme != "https":
            raise URLValidationError(
                "URL must use HTTPS",
                code="https_required",
            )

        if not parsed.hostname:
            raise URLValidationError("URL must include a hostname", code="missing_host")

        hostname = parsed.hostname.lower()

        if hostname in METADATA_IPS or hostname == "metadata.google.internal":
            raise URLValidationError(
                "Cloud metadata endpoints are blocked",
                code="metadata_blocked",
            )

        if self.allow_private:
            return ValidatedURL(url=url, host=hostname)

        if hostname in BLOCKED_HOSTNAMES:
            raise URLValidationError(
                f"Hostname not allowed: {hostname}",
                code="blocked_hostname",
            )

        resolved_ips = self._resolve_host(hostname)
        for ip_str in resolved_ips:
            self._validate_ip(ip_str)

        return ValidatedURL(url=url, host=hostname, resolved_ips=resolved_ips)

    def _resolve_host(self, hostname: str) -> list[str]:
        """Resolve hostname to IP addresses.

        Raises:
            URLValidationError: If DNS resolution fails
        """
        try:
            return [str(ipaddress.ip_address(hostname))]
        except ValueError:
            pass  # Not an IP literal

        previous_timeout = socket.getdefaulttimeout()
        try:
            socket.setdefaulttimeout(self.dns_timeout)
            results = socket.getaddrinfo(
                hostname, None, socket.AF_UNSPEC, socket.SOCK_STREAM
            )
            ips: list[str] = []
            for result in results:
                addr = result[4][0]
                if isinstance(addr, str) and addr not in ips:
                    ips.append(addr)
            if not ips:
                raise URLValidationError(
                    f"No IP addresses found for {hostname}",
                    code="dns_resolution_failed",
                )
            return ips
        except socket.gaierror as e:
            raise URLValidationError(
                f"DNS resolution failed for {hostname}: {e}",
                code="dns_resolution_failed",
            ) from e
        except TimeoutError as e:
            raise URLValidationError(
                f"DNS resolution timed out for {hostname}",
                code="dns_timeout",
            ) from e
        finally:
            socket.setdefaulttimeout(previous_timeout)

    def _validate_ip(self, ip_str: str) -> None:
        """Reject loopback, private, link-local, reserved and metadata IPs."""
        try:
            ip = ipaddress.ip_address(ip_str)
        except ValueError as e:
            raise URLValidationError(f"Invalid IP address: {ip_str}") from e

        if ip_str in METADATA_IPS:
            raise URLValidationError(
                "Cloud metadata endpoints are blocked",
                code="metadata_blocked",
            )

        if ip.is_loopback:
            raise URLValidationError(
                "Localhost addresses are not allowed",
                code="localhost_blocked",
            )

        networks = (
            PRIVATE_IPV4_NETWORKS
            if isinstance(ip, ipaddress.IPv4Address)
            else PRIVATE_IPV6_NETWORKS
        )
        for network in networks:
            if ip in network:
                raise URLValidationError(
                    f"Private IP addresses are not allowed: {ip_str}",
                    code="private_ip_blocked",
                )

        if ip.is_link_local:
            raise URLValidationError(
                f"Link-local addresses are not allowed: {ip_str}",
                code="link_local_blocked",
            )

        if ip.is_reserved:
            raise URLValidationError(
                f"Reserved IP addresses are not allowed: {ip_str}",
                code="reserved_ip_blocked",
            )
