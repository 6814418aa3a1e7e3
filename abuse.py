"""Heuristic signup risk scoring.

Each signal adds a fixed weight to the risk score:

* disposable email domain: +40, requires third-party identity
* device fingerprint already seen on ``max_accounts_per_fingerprint`` accounts: +50
* IP address already seen on ``max_accounts_per_ip`` accounts: +30
* more than ``max_signups_per_subnet_window`` signups from the same /24 (IPv6 /48)
  in the current bucket: +25, requires captcha
* no device fingerprint at all: +10

The total is clamped to 0..100 and mapped onto a credit tier.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from core.constants import COUNTER_NS_FINGERPRINT, COUNTER_NS_IP, COUNTER_NS_SUBNET
from counters import CounterStore
from disposable_domains import DisposableDomainRegistry
from logging_utils import build_log_extra, mask_identifier
from metrics import record_abuse_check

log = logging.getLogger("abuse")

BLOCK_THRESHOLD = 80
THROTTLE_THRESHOLD = 40
SUSPICIOUS_THRESHOLD = 20
CAPTCHA_THRESHOLD = 30
IDENTITY_THRESHOLD = 50

WEIGHT_DISPOSABLE_EMAIL = 40
WEIGHT_FINGERPRINT_REUSE = 50
WEIGHT_IP_REUSE = 30
WEIGHT_SUBNET_VELOCITY = 25
WEIGHT_MISSING_FINGERPRINT = 10

NEUTRAL_BEHAVIOR_SCORE = 50


class CreditTier(str, Enum):
    FULL = "full"
    THROTTLED = "throttled"
    BLOCKED = "blocked"


class RequiredAction(str, Enum):
    PHONE_VERIFY = "phone_verify"
    CAPTCHA = "captcha"
    THIRD_PARTY_IDENTITY = "third_party_identity"


def tier_for_score(score: int) -> CreditTier:
    if score >= BLOCK_THRESHOLD:
        return CreditTier.BLOCKED
    if score >= THROTTLE_THRESHOLD:
        return CreditTier.THROTTLED
    return CreditTier.FULL


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class SignupSignals:
    """Everything the signup flow knows about a registration attempt.

    Only ``email`` is mandatory. ``identity_proof`` is the external account id
    returned by a third-party identity provider (e.g. a LinkedIn profile id).
    """

    email: str
    ip_address: Optional[str] = None
    device_fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    captcha_completed: bool = False
    identity_proof: Optional[str] = None

    _ALIASES = {
        "ip_address": ("ip_address", "ipAddress", "ip"),
        "device_fingerprint": ("device_fingerprint", "deviceFingerprint", "fingerprint"),
        "user_agent": ("user_agent", "userAgent"),
        "identity_proof": ("identity_proof", "linkedInId", "linkedin_id", "identityProof"),
    }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SignupSignals":
        """Build signals from either the snake_case or the camelCase payload shape."""

        def pick(name: str) -> Optional[str]:
            for alias in cls._ALIASES[name]:
                value = _clean(data.get(alias))
                if value:
                    return value
            return None

        captcha = data.get("captcha_completed")
        if captcha is None:
            captcha = bool(_clean(data.get("captchaToken")) or _clean(data.get("captcha_token")))
        return cls(
            email=str(data.get("email") or "").strip(),
            ip_address=pick("ip_address"),
            device_fingerprint=pick("device_fingerprint"),
            user_agent=pick("user_agent"),
            captcha_completed=bool(captcha),
            identity_proof=pick("identity_proof"),
        )


@dataclass
class AbuseCheckResult:
    allowed: bool
    credit_tier: CreditTier
    risk_score: int
    is_suspicious: bool
    suspicion_reasons: List[str] = field(default_factory=list)
    required_actions: List[RequiredAction] = field(default_factory=list)
    email_domain: str = ""
    is_disposable_email: bool = False
    subnet: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "creditTier": self.credit_tier.value,
            "riskScore": self.risk_score,
            "isSuspicious": self.is_suspicious,
            "suspicionReasons": list(self.suspicion_reasons),
            "requiredActions": [action.value for action in self.required_actions],
        }


@dataclass(frozen=True)
class AbuseConfig:
    max_accounts_per_ip: int = 2
    max_accounts_per_fingerprint: int = 1
    max_signups_per_subnet_window: int = 3
    velocity_window_minutes: int = 60
    subnet_tracker_expiry_hours: int = 24
    counter_retention_hours: int = 720
    min_behavior_score_for_upgrade: int = 30

    @classmethod
    def from_settings(cls, config: Any) -> "AbuseConfig":
        return cls(
            max_accounts_per_ip=config.MAX_ACCOUNTS_PER_IP,
            max_accounts_per_fingerprint=config.MAX_ACCOUNTS_PER_FINGERPRINT,
            max_signups_per_subnet_window=config.MAX_SIGNUPS_PER_SUBNET_HOUR,
            velocity_window_minutes=config.SUBNET_VELOCITY_WINDOW_MINUTES,
            subnet_tracker_expiry_hours=config.SUBNET_TRACKER_EXPIRY_HOURS,
            counter_retention_hours=config.COUNTER_RETENTION_HOURS,
            min_behavior_score_for_upgrade=config.MIN_BEHAVIOR_SCORE_FOR_UPGRADE,
        )


def extract_email_domain(email: Optional[str]) -> str:
    text = (email or "").strip().lower()
    if "@" not in text:
        return ""
    return text.rsplit("@", 1)[1].strip()


def extract_subnet(ip_address: Optional[str]) -> str:
    """Return the /24 (IPv4) or /48 (IPv6) network of an address.

    Unparseable input is returned stripped so it still groups with itself.
    """

    text = (ip_address or "").strip()
    if not text:
        return ""
    try:
        address = ipaddress.ip_address(text)
    except ValueError:
        return text
    prefix = 24 if address.version == 4 else 48
    return str(ipaddress.ip_network(f"{address}/{prefix}", strict=False))


def velocity_bucket_start(now: datetime, window_minutes: int) -> datetime:
    """Start of the fixed, non-overlapping bucket containing ``now``."""

    window = max(int(window_minutes), 1) * 60
    epoch = int(now.timestamp())
    return datetime.fromtimestamp(epoch - epoch % window, tz=timezone.utc)


@dataclass(frozen=True)
class SessionActivity:
    """One post-signup usage session as seen by the behavior score."""

    status: str
    created_at: datetime
    duration_seconds: Optional[float] = None


def compute_behavior_score(
    account_created_at: Optional[datetime],
    sessions: Sequence[SessionActivity],
) -> int:
    """Score post-signup behavior between 0 and 100; higher is more trustworthy."""

    score = NEUTRAL_BEHAVIOR_SCORE
    if not sessions:
        return score

    ordered = sorted(sessions, key=lambda item: item.created_at)
    total = len(ordered)
    statuses = [str(item.status or "").upper() for item in ordered]

    completion_rate = statuses.count("COMPLETED") / total
    score += round(completion_rate * 20)

    durations = [item.duration_seconds for item in ordered if item.duration_seconds and item.duration_seconds > 0]
    if durations:
        average = sum(durations) / len(durations)
        if average < 60:
            score -= 20
        elif average < 180:
            score -= 10
        elif average >= 300:
            score += 15

    if account_created_at is not None:
        hours_to_first = (ordered[0].created_at - account_created_at).total_seconds() / 3600
        if hours_to_first < 0.1:
            score -= 10
        elif hours_to_first > 24:
            score += 10

    if statuses.count("CANCELLED") / total > 0.5:
        score -= 15

    return max(0, min(100, score))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AbuseRiskScorer:
    """Combine independent signup signals into a risk score and credit tier."""

    def __init__(
        self,
        counters: CounterStore,
        *,
        config: Optional[AbuseConfig] = None,
        domains: Optional[DisposableDomainRegistry] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.counters = counters
        self.config = config or AbuseConfig()
        self.domains = domains or DisposableDomainRegistry()
        self._clock = clock

    # ------------------------------------------------------------------
    #   Counter keys
    # ------------------------------------------------------------------
    @staticmethod
    def _fingerprint_key(fingerprint: str) -> str:
        return f"{COUNTER_NS_FINGERPRINT}:{fingerprint}"

    @staticmethod
    def _ip_key(ip_address: str) -> str:
        return f"{COUNTER_NS_IP}:{ip_address}"

    @staticmethod
    def _subnet_key(subnet: str, bucket: datetime) -> str:
        return f"{COUNTER_NS_SUBNET}:{int(bucket.timestamp())}:{subnet}"

    @property
    def _retention_seconds(self) -> int:
        return self.config.counter_retention_hours * 3600

    # ------------------------------------------------------------------
    #   Individual signals
    # ------------------------------------------------------------------
    def is_disposable_email(self, email: Optional[str]) -> bool:
        return self.domains.is_disposable(extract_email_domain(email))

    def add_disposable_domain(self, domain: str) -> bool:
        return self.domains.add(domain)

    def fingerprint_accounts(self, fingerprint: str) -> int:
        return self.counters.get(self._fingerprint_key(fingerprint))

    def ip_accounts(self, ip_address: str) -> int:
        return self.counters.get(self._ip_key(ip_address))

    def track_subnet_signup(self, ip_address: str, now: Optional[datetime] = None) -> Tuple[str, int]:
        """Count one signup attempt in the subnet's current bucket."""

        subnet = extract_subnet(ip_address)
        bucket = velocity_bucket_start(now or self._clock(), self.config.velocity_window_minutes)
        count = self.counters.increment(
            self._subnet_key(subnet, bucket),
            ttl=self.config.subnet_tracker_expiry_hours * 3600,
        )
        return subnet, count

    def high_velocity_subnets(self, limit: int = 10) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        for key, count in self.counters.items(f"{COUNTER_NS_SUBNET}:"):
            if count <= self.config.max_signups_per_subnet_window:
                continue
            _, bucket, subnet = key.split(":", 2)
            rows.append(
                {
                    "subnet": subnet,
                    "signupCount": count,
                    "windowStart": datetime.fromtimestamp(int(bucket), tz=timezone.utc).isoformat(),
                }
            )
        rows.sort(key=lambda row: row["signupCount"], reverse=True)
        return rows[:limit]

    # ------------------------------------------------------------------
    #   Public API
    # ------------------------------------------------------------------
    def check(
        self,
        signals: SignupSignals,
        *,
        now: Optional[datetime] = None,
        count_attempt: bool = True,
    ) -> AbuseCheckResult:
        """Score a signup attempt.

        With ``count_attempt`` the attempt is added to the subnet velocity
        bucket before it is compared against the threshold.
        """

        cfg = self.config
        reasons: List[str] = []
        actions: List[RequiredAction] = []
        score = 0

        domain = extract_email_domain(signals.email)
        disposable = self.domains.is_disposable(domain)
        if disposable:
            reasons.append(f"Disposable email domain: {domain}")
            score += WEIGHT_DISPOSABLE_EMAIL
            actions.append(RequiredAction.THIRD_PARTY_IDENTITY)

        if signals.device_fingerprint:
            previous = self.fingerprint_accounts(signals.device_fingerprint)
            if previous >= cfg.max_accounts_per_fingerprint:
                reasons.append(f"Device fingerprint reused ({previous} previous accounts)")
                score += WEIGHT_FINGERPRINT_REUSE
                log.warning(
                    "abuse.fingerprint_reuse",
                    extra=build_log_extra(
                        fingerprint=mask_identifier(signals.device_fingerprint),
                        previous=previous,
                    ),
                )
        else:
            score += WEIGHT_MISSING_FINGERPRINT

        subnet: Optional[str] = None
        if signals.ip_address:
            previous = self.ip_accounts(signals.ip_address)
            if previous >= cfg.max_accounts_per_ip:
                reasons.append(f"IP address limit exceeded ({previous} previous accounts)")
                score += WEIGHT_IP_REUSE
                log.warning(
                    "abuse.ip_limit",
                    extra=build_log_extra(ip=mask_identifier(signals.ip_address), previous=previous),
                )

            if count_attempt:
                subnet, in_window = self.track_subnet_signup(signals.ip_address, now)
            else:
                subnet = extract_subnet(signals.ip_address)
                bucket = velocity_bucket_start(now or self._clock(), cfg.velocity_window_minutes)
                in_window = self.counters.get(self._subnet_key(subnet, bucket))
            if in_window > cfg.max_signups_per_subnet_window:
                reasons.append(
                    f"High velocity signups from subnet ({in_window} in last "
                    f"{cfg.velocity_window_minutes} minutes)"
                )
                score += WEIGHT_SUBNET_VELOCITY
                actions.append(RequiredAction.CAPTCHA)
                log.warning(
                    "abuse.subnet_velocity",
                    extra=build_log_extra(
                        subnet=subnet,
                        count=in_window,
                        threshold=cfg.max_signups_per_subnet_window,
                    ),
                )

        score = max(0, min(100, score))

        if score > CAPTCHA_THRESHOLD and not signals.captcha_completed:
            actions.append(RequiredAction.CAPTCHA)
        if score > IDENTITY_THRESHOLD and not signals.identity_proof:
            actions.append(RequiredAction.THIRD_PARTY_IDENTITY)
        actions.append(RequiredAction.PHONE_VERIFY)

        tier = tier_for_score(score)
        result = AbuseCheckResult(
            allowed=tier is not CreditTier.BLOCKED,
            credit_tier=tier,
            risk_score=score,
            is_suspicious=score >= SUSPICIOUS_THRESHOLD,
            suspicion_reasons=reasons,
            required_actions=list(dict.fromkeys(actions)),
            email_domain=domain,
            is_disposable_email=disposable,
            subnet=subnet,
        )
        record_abuse_check(tier.value, score)
        log.info(
            "abuse.check",
            extra=build_log_extra(
                email=mask_identifier(signals.email),
                risk_score=score,
                tier=tier.value,
                reasons=len(reasons),
                required_actions=[action.value for action in result.required_actions],
            ),
        )
        return result

    def register_signup(self, signals: SignupSignals) -> None:
        """Associate the signup's fingerprint and IP with one more account."""

        ttl = self._retention_seconds
        if signals.device_fingerprint:
            self.counters.increment(self._fingerprint_key(signals.device_fingerprint), ttl=ttl)
        if signals.ip_address:
            self.counters.increment(self._ip_key(signals.ip_address), ttl=ttl)

    def purge_expired(self) -> int:
        return self.counters.purge_expired()


__all__ = [
    "AbuseCheckResult",
    "AbuseConfig",
    "AbuseRiskScorer",
    "CreditTier",
    "RequiredAction",
    "SessionActivity",
    "SignupSignals",
    "compute_behavior_score",
    "extract_email_domain",
    "extract_subnet",
    "tier_for_score",
    "velocity_bucket_start",
]
