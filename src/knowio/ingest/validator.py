"""URL validation stage — scheme, SSRF guard, and robots.txt policy.

Security requirements:
- Allowed URL schemes: https:// and http:// only.
- SSRF guard: the hostname is resolved and every address is checked with the
  stdlib ``ipaddress`` module before any connection is made.
- robots.txt is honoured for our user agent unless the job opts out; a missing
  or unreachable robots.txt allows everything.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
import urllib.error
import urllib.parse
import urllib.request
import urllib.robotparser
from dataclasses import dataclass, field

from knowio.errors import SsrfError, ValidationFailure

logger = logging.getLogger(__name__)

_ALLOWED_SCHEMES = {"https", "http"}
_MAX_URL_LENGTH = 2048
_ROBOTS_TIMEOUT = 10  # seconds
_ROBOTS_MAX_BYTES = 512 * 1024


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    sanitized_url: str | None = None


class URLValidator:
    """Decide whether a URL may be fetched, and normalise it.

    Args:
        user_agent: Agent name matched against robots.txt rules.
    """

    def __init__(self, user_agent: str = "knowio-bot/0.1") -> None:
        self.user_agent = user_agent
        self._robots: dict[str, urllib.robotparser.RobotFileParser | None] = {}
        self._robots_lock = threading.Lock()

    def validate(self, url: str, respect_robots: bool = True) -> ValidationResult:
        """Run all checks on *url*. Never raises; failures land in ``errors``."""
        try:
            sanitized = self.sanitize(url)
            self._validate_scheme(sanitized)
            self.check_ssrf(sanitized)
        except ValidationFailure as exc:
            return ValidationResult(is_valid=False, errors=exc.errors)

        if respect_robots and not self.robots_allowed(sanitized):
            return ValidationResult(
                is_valid=False,
                errors=[f"Blocked by robots.txt for user agent '{self.user_agent}'"],
            )
        return ValidationResult(is_valid=True, sanitized_url=sanitized)

    @staticmethod
    def sanitize(url: str) -> str:
        """Strip whitespace and the fragment; drop the trailing slash of a bare root path."""
        candidate = url.strip()
        if not candidate or len(candidate) > _MAX_URL_LENGTH:
            raise ValidationFailure(["Invalid URL format"])
        try:
            parsed = urllib.parse.urlsplit(candidate)
        except ValueError as exc:
            raise ValidationFailure([f"Invalid URL format: {exc}"]) from exc
        if not parsed.scheme or not parsed.netloc:
            raise ValidationFailure(["Invalid URL format"])

        path = "" if parsed.path == "/" else parsed.path
        return urllib.parse.urlunsplit(
            (parsed.scheme.lower(), parsed.netloc.lower(), path, parsed.query, "")
        )

    @staticmethod
    def _validate_scheme(url: str) -> None:
        parsed = urllib.parse.urlparse(url)
        if parsed.scheme not in _ALLOWED_SCHEMES:
            raise ValidationFailure(
                [f"Unsupported URL scheme '{parsed.scheme}'. Only https:// and http:// are allowed."]
            )

    @staticmethod
    def check_ssrf(url: str) -> None:
        """Resolve the hostname and block private/reserved IP ranges.

        Raises:
            SsrfError: If any resolved address is private, loopback,
                link-local, reserved, multicast, or unspecified.
            ValidationFailure: If the URL has no hostname or it does not resolve.
        """
        parsed = urllib.parse.urlparse(url)
        hostname = parsed.hostname
        if not hostname:
            raise ValidationFailure([f"URL has no hostname: {url}"])

        try:
            addrinfos = socket.getaddrinfo(hostname, None)
        except socket.gaierror as exc:
            raise ValidationFailure(
                [f"DNS resolution failed for '{hostname}': {exc}"]
            ) from exc

        for addrinfo in addrinfos:
            addr_str = addrinfo[4][0]
            try:
                ip = ipaddress.ip_address(addr_str)
            except ValueError:
                continue
            if (
                ip.is_private
                or ip.is_loopback
                or ip.is_link_local
                or ip.is_reserved
                or ip.is_multicast
                or ip.is_unspecified
            ):
                raise SsrfError(
                    f"URL resolves to private address ({ip}). "
                    "Access to internal network addresses is not allowed."
                )

    # ------------------------------------------------------------------
    # robots.txt
    # ------------------------------------------------------------------

    def robots_allowed(self, url: str) -> bool:
        """Return True if robots.txt on *url*'s origin lets us fetch it."""
        parsed = urllib.parse.urlsplit(url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        with self._robots_lock:
            if origin not in self._robots:
                self._robots[origin] = self._load_robots(origin)
            parser = self._robots[origin]
        if parser is None:
            return True
        return parser.can_fetch(self.user_agent, url)

    def _load_robots(self, origin: str) -> urllib.robotparser.RobotFileParser | None:
        """Fetch and parse ``origin/robots.txt``; None means "no rules"."""
        robots_url = f"{origin}/robots.txt"
        parser = urllib.robotparser.RobotFileParser(robots_url)
        request = urllib.request.Request(robots_url, headers={"User-Agent": self.user_agent})
        try:
            with urllib.request.urlopen(request, timeout=_ROBOTS_TIMEOUT) as response:
                body = response.read(_ROBOTS_MAX_BYTES)
        except urllib.error.HTTPError as exc:
            if exc.code in (401, 403):
                parser.disallow_all = True
                return parser
            return None
        except (urllib.error.URLError, OSError) as exc:
            logger.info("robots.txt unavailable for %s: %s", origin, exc)
            return None

        parser.parse(body.decode("utf-8", errors="replace").splitlines())
        return parser
