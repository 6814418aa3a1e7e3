"""Registry of throwaway email domains used by the signup risk scorer."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import Iterable, List, Optional, Set

log = logging.getLogger(__name__)


# Built-in list. Deployments extend it via DISPOSABLE_EMAIL_DOMAINS or
# DISPOSABLE_EMAIL_DOMAINS_FILE, see :func:`load_disposable_domains`.
DEFAULT_DISPOSABLE_DOMAINS = frozenset(
    {
        "tempmail.com",
        "temp-mail.org",
        "guerrillamail.com",
        "guerrillamail.org",
        "mailinator.com",
        "mailnator.com",
        "10minutemail.com",
        "10minmail.com",
        "throwaway.email",
        "throwawaymail.com",
        "fakeinbox.com",
        "fakemailgenerator.com",
        "yopmail.com",
        "yopmail.fr",
        "trashmail.com",
        "trashmail.net",
        "dispostable.com",
        "mailcatch.com",
        "maildrop.cc",
        "mintemail.com",
        "mohmal.com",
        "tempail.com",
        "tempr.email",
        "discard.email",
        "emailondeck.com",
        "getnada.com",
        "sharklasers.com",
        "grr.la",
        "guerrillamailblock.com",
        "pokemail.net",
        "spam4.me",
        "spamgourmet.com",
        "mytrashmail.com",
        "mailexpire.com",
        "mailnesia.com",
        "spamex.com",
        "getairmail.com",
        "tempinbox.com",
        "incognitomail.org",
        "anonbox.net",
        "jetable.org",
        "spamfree24.org",
        "mailsac.com",
        "boun.cr",
        "burnermail.io",
        "spamcowboy.com",
        "tempomail.fr",
        "emailtemporanea.com",
        "crazymailing.com",
        "tempmailer.com",
        "tempmail.net",
        "anonymbox.com",
    }
)


_WHITESPACE_RE = re.compile(r"\s+", re.UNICODE)


def normalize_domain(domain: Optional[str]) -> str:
    """Return a canonical lowercase domain without whitespace or a leading ``@``."""

    if not domain:
        return ""
    text = _WHITESPACE_RE.sub("", str(domain)).replace("\u200b", "")
    return text.lstrip("@").rstrip(".").lower()


def _parse_domain_blob(blob: str, source: str) -> List[str]:
    """Parse domains from JSON (a list) or from comma/semicolon/newline separated text."""

    text = (blob or "").strip()
    if not text:
        return []

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None

    if isinstance(parsed, list):
        return [str(item) for item in parsed]
    if parsed is not None:
        log.warning("Ignoring disposable domain JSON from %s: expected a list", source)
        return []

    return [entry for entry in re.split(r"[\n,;]+", text) if entry.strip() and not entry.strip().startswith("#")]


def _load_from_file(path: str) -> List[str]:
    file_path = Path(path).expanduser()
    try:
        content = file_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        log.warning("Disposable domains file '%s' not found", file_path)
        return []
    except OSError as exc:
        log.warning("Cannot read disposable domains file '%s': %s", file_path, exc)
        return []
    return _parse_domain_blob(content, f"file:{file_path}")


def load_disposable_domains(defaults: Optional[Iterable[str]] = None) -> Set[str]:
    """Merge the defaults with domains from the environment and an optional file."""

    merged: Set[str] = set()

    def _apply(domains: Iterable[str], source: str) -> None:
        for raw in domains:
            normalized = normalize_domain(raw)
            if not normalized or "." not in normalized:
                log.warning("Ignoring malformed disposable domain %r from %s", raw, source)
                continue
            merged.add(normalized)

    _apply(DEFAULT_DISPOSABLE_DOMAINS if defaults is None else defaults, "defaults")

    env_value = os.getenv("DISPOSABLE_EMAIL_DOMAINS")
    if env_value:
        _apply(
            _parse_domain_blob(env_value, "env:DISPOSABLE_EMAIL_DOMAINS"),
            "env:DISPOSABLE_EMAIL_DOMAINS",
        )

    file_path = os.getenv("DISPOSABLE_EMAIL_DOMAINS_FILE")
    if file_path:
        _apply(_load_from_file(file_path), f"file:{file_path}")

    return merged


class DisposableDomainRegistry:
    """Thread-safe set of disposable domains that can grow at runtime."""

    def __init__(self, domains: Optional[Iterable[str]] = None) -> None:
        self._lock = threading.Lock()
        source = load_disposable_domains() if domains is None else domains
        self._domains: Set[str] = {normalize_domain(item) for item in source if normalize_domain(item)}

    def is_disposable(self, domain: Optional[str]) -> bool:
        normalized = normalize_domain(domain)
        if not normalized:
            return False
        with self._lock:
            if normalized in self._domains:
                return True
            # subdomains of a listed domain count as well
            parts = normalized.split(".")
            return any(".".join(parts[i:]) in self._domains for i in range(1, len(parts) - 1))

    def add(self, domain: str) -> bool:
        normalized = normalize_domain(domain)
        if not normalized or "." not in normalized:
            raise ValueError(f"invalid domain: {domain!r}")
        with self._lock:
            if normalized in self._domains:
                return False
            self._domains.add(normalized)
        log.info("disposable_domains.added | domain=%s", normalized)
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._domains)


__all__ = [
    "DEFAULT_DISPOSABLE_DOMAINS",
    "DisposableDomainRegistry",
    "load_disposable_domains",
    "normalize_domain",
]
