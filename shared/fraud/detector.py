"""Bot follower signal detection.

``detect()`` is deterministic and side-effect free: the same context snapshot
always yields the same signals (same types, confidences and fingerprints), so
batch runs are reproducible and heuristics can be regression tested.

Rules are independent callables ``rule(ctx, config) -> DetectedSignal | None``.
A rule that cannot reach a conclusion returns ``None``; a rule that raises is
logged and treated the same way. Signals never accuse: they carry a
confidence in [0, 1] and the evidence that produced it.

Output:
- list[DetectedSignal] sorted by (signal_type, fingerprint)
"""

from __future__ import annotations

import hashlib
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Mapping, Optional

import structlog
from sqlalchemy.orm import Session

from db_models import FollowerEvent, FollowerEventType
from fraud import events as event_store
from fraud.config import FraudSettings
from fraud.profiles import ProfileReader
from fraud.types import ProfileSnapshot

log = structlog.get_logger(__name__)

BURST_FOLLOWING = "burst_following"
RAPID_FOLLOWS = "rapid_follows"
IP_CLUSTER = "ip_cluster"
NO_PROFILE = "no_profile"
FOLLOW_CHURN = "follow_churn"


@dataclass(frozen=True)
class EventRecord:
    follower_user_id: str
    followed_user_id: str
    event_type: str
    occurred_at: datetime
    ip_address: Optional[str] = None

    @classmethod
    def from_row(cls, row: FollowerEvent) -> "EventRecord":
        meta = row.source_metadata or {}
        ip = meta.get("ip_address") or meta.get("ip")
        return cls(
            follower_user_id=row.follower_user_id,
            followed_user_id=row.followed_user_id,
            event_type=getattr(row.event_type, "value", row.event_type),
            occurred_at=row.occurred_at,
            ip_address=str(ip) if ip else None,
        )


@dataclass(frozen=True)
class DetectionContext:
    subject_id: str
    profile: Optional[ProfileSnapshot]
    history: tuple[EventRecord, ...]          # subject's own events, oldest first
    peers: tuple[EventRecord, ...] = ()       # other accounts' follows on the subject's targets
    peer_profiles: Mapping[str, ProfileSnapshot] = field(default_factory=dict)
    as_of: Optional[datetime] = None

    def follows(self) -> list[EventRecord]:
        return [e for e in self.history if e.event_type == FollowerEventType.follow.value]


@dataclass(frozen=True)
class DetectedSignal:
    subject_user_id: str
    signal_type: str
    confidence: float
    fingerprint: str
    evidence: dict
    related_accounts: tuple[str, ...] = ()


Rule = Callable[[DetectionContext, FraudSettings], Optional[DetectedSignal]]


def _fingerprint(*parts: object) -> str:
    raw = "|".join(str(p) for p in parts)
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


def _signal(ctx: DetectionContext, signal_type: str, confidence: float, key: str, evidence: dict, related: Iterable[str] = ()) -> DetectedSignal:
    return DetectedSignal(
        subject_user_id=ctx.subject_id,
        signal_type=signal_type,
        confidence=confidence,
        fingerprint=_fingerprint(signal_type, key),
        evidence=evidence,
        related_accounts=tuple(sorted(set(related) - {ctx.subject_id})),
    )


### Rules

def burst_following(ctx: DetectionContext, config: FraudSettings) -> Optional[DetectedSignal]:
    """Many accounts created within one short window, all following the same target."""
    if ctx.profile is None or ctx.profile.account_created_at is None:
        return None
    created = ctx.profile.account_created_at
    window = timedelta(seconds=config.burst_window_seconds)

    best: Optional[tuple[int, str, datetime, list[str]]] = None
    for target in sorted({e.followed_user_id for e in ctx.follows()}):
        cohort = {ctx.subject_id: created}
        for p in ctx.peers:
            if p.followed_user_id != target or p.event_type != FollowerEventType.follow.value:
                continue
            prof = ctx.peer_profiles.get(p.follower_user_id)
            if prof is not None and prof.account_created_at is not None:
                cohort[p.follower_user_id] = prof.account_created_at

        # every window of width `window` that contains the subject's creation time
        starts = sorted(t for t in cohort.values() if created - window <= t <= created)
        for start in starts:
            members = sorted(uid for uid, t in cohort.items() if start <= t <= start + window)
            if best is None or len(members) > best[0]:
                best = (len(members), target, start, members)

    if best is None or best[0] < config.burst_min_accounts:
        return None
    count, target, start, members = best
    return _signal(
        ctx,
        BURST_FOLLOWING,
        config.burst_confidence,
        f"target:{target}",
        {
            "target_user_id": target,
            "accounts_in_window": count,
            "window_start": start.isoformat(),
            "window_seconds": config.burst_window_seconds,
            "threshold": config.burst_min_accounts,
        },
        related=members,
    )


def rapid_follows(ctx: DetectionContext, config: FraudSettings) -> Optional[DetectedSignal]:
    """Following too many accounts too quickly."""
    follows = sorted(ctx.follows(), key=lambda e: (e.occurred_at, e.followed_user_id))
    if len(follows) < config.rapid_follow_threshold:
        return None
    window = timedelta(seconds=config.rapid_follow_window_seconds)

    best_count, best_lo = 0, 0
    lo = 0
    for hi in range(len(follows)):
        while follows[hi].occurred_at - follows[lo].occurred_at > window:
            lo += 1
        if hi - lo + 1 > best_count:
            best_count, best_lo = hi - lo + 1, lo
    if best_count < config.rapid_follow_threshold:
        return None

    burst = follows[best_lo:best_lo + best_count]
    min_gap = min(
        ((b.occurred_at - a.occurred_at).total_seconds() for a, b in zip(burst, burst[1:])),
        default=float(config.rapid_follow_window_seconds),
    )
    confidence = 0.5
    if min_gap < config.rapid_follow_min_interval_seconds:
        confidence = 0.9
    elif best_count > config.rapid_follow_threshold * 2:
        confidence = 0.8

    return _signal(
        ctx,
        RAPID_FOLLOWS,
        confidence,
        f"window:{burst[0].occurred_at.isoformat()}",
        {
            "follows_in_window": best_count,
            "window_seconds": config.rapid_follow_window_seconds,
            "threshold": config.rapid_follow_threshold,
            "min_interval_seconds": min_gap,
        },
    )


def ip_cluster(ctx: DetectionContext, config: FraudSettings) -> Optional[DetectedSignal]:
    """Many distinct follower accounts acting from the subject's IP address."""
    own_ips = sorted({e.ip_address for e in ctx.history if e.ip_address})
    if not own_ips:
        return None
    by_ip: dict[str, set[str]] = defaultdict(set)
    for e in list(ctx.history) + list(ctx.peers):
        if e.ip_address in own_ips:
            by_ip[e.ip_address].add(e.follower_user_id)

    ip, accounts = max(sorted(by_ip.items()), key=lambda kv: len(kv[1]))
    if len(accounts) < config.ip_cluster_threshold:
        return None
    confidence = 0.85 if len(accounts) >= config.ip_cluster_threshold * 2 else 0.6
    return _signal(
        ctx,
        IP_CLUSTER,
        confidence,
        f"ip:{ip}",
        {"ip_address": ip, "unique_accounts": len(accounts), "threshold": config.ip_cluster_threshold},
        related=accounts,
    )


def no_profile(ctx: DetectionContext, config: FraudSettings) -> Optional[DetectedSignal]:
    """An old account that never posted and never filled in a profile."""
    prof = ctx.profile
    if prof is None or ctx.as_of is None:
        return None
    age = prof.age_days(ctx.as_of)
    if age is None or age < config.min_profile_age_days:
        return None

    known = []
    if prof.post_count is not None:
        known.append(prof.post_count < config.min_posts_for_active)
    if prof.has_avatar is not None:
        known.append(not prof.has_avatar)
    if prof.has_bio is not None:
        known.append(not prof.has_bio)
    if not known or not all(known):
        return None

    return _signal(
        ctx,
        NO_PROFILE,
        0.6,
        "profile",
        {
            "account_age_days": round(age, 1),
            "post_count": prof.post_count,
            "has_avatar": prof.has_avatar,
            "has_bio": prof.has_bio,
        },
    )


def follow_churn(ctx: DetectionContext, config: FraudSettings) -> Optional[DetectedSignal]:
    """Follow-then-unfollow cycles (follow-for-follow farming)."""
    window = timedelta(seconds=config.churn_window_seconds)
    open_follows: dict[str, datetime] = {}
    churned: list[tuple[datetime, str]] = []
    for e in sorted(ctx.history, key=lambda e: (e.occurred_at, e.event_type)):
        if e.event_type == FollowerEventType.follow.value:
            open_follows[e.followed_user_id] = e.occurred_at
        else:
            followed_at = open_follows.pop(e.followed_user_id, None)
            if followed_at is not None and e.occurred_at - followed_at <= window:
                churned.append((followed_at, e.followed_user_id))

    if len(churned) < config.churn_min_unfollows:
        return None
    churned.sort()
    return _signal(
        ctx,
        FOLLOW_CHURN,
        0.7,
        f"churn:{churned[0][0].isoformat()}",
        {
            "churned_follows": len(churned),
            "window_seconds": config.churn_window_seconds,
            "threshold": config.churn_min_unfollows,
        },
    )


DEFAULT_RULES: dict[str, Rule] = {
    BURST_FOLLOWING: burst_following,
    RAPID_FOLLOWS: rapid_follows,
    IP_CLUSTER: ip_cluster,
    NO_PROFILE: no_profile,
    FOLLOW_CHURN: follow_churn,
}


def detect(
    ctx: DetectionContext,
    config: FraudSettings,
    rules: Optional[Mapping[str, Rule]] = None,
) -> list[DetectedSignal]:
    rules = DEFAULT_RULES if rules is None else rules
    degrade = ctx.profile is None or not ctx.profile.is_complete

    out: list[DetectedSignal] = []
    for name in sorted(rules):
        try:
            sig = rules[name](ctx, config)
        except Exception as e:
            log.warning("detector_rule_failed", rule=name, subject_user_id=ctx.subject_id, error=str(e))
            continue
        if sig is None:
            continue
        confidence = sig.confidence * (config.incomplete_profile_confidence_factor if degrade else 1.0)
        confidence = round(max(0.0, min(1.0, confidence)), 4)
        evidence = dict(sig.evidence)
        if degrade:
            evidence["profile_incomplete"] = True
        out.append(DetectedSignal(
            subject_user_id=sig.subject_user_id,
            signal_type=sig.signal_type,
            confidence=confidence,
            # the same pattern at a new confidence is a new, more recent signal
            fingerprint=_fingerprint(sig.fingerprint, f"{confidence:.4f}"),
            evidence=evidence,
            related_accounts=sig.related_accounts,
        ))
    out.sort(key=lambda s: (s.signal_type, s.fingerprint))
    return out


def build_context(
    db: Session,
    subject_id: str,
    *,
    profiles: ProfileReader,
    as_of: datetime,
    config: FraudSettings,
) -> DetectionContext:
    """Snapshot everything ``detect()`` needs for one account."""
    history = [EventRecord.from_row(r) for r in event_store.events_for_follower(db, subject_id) if r.occurred_at <= as_of]
    cohort_window = timedelta(seconds=config.cohort_window_seconds)

    peers: list[EventRecord] = []
    for target, followed_at in sorted({(e.followed_user_id, e.occurred_at) for e in history if e.event_type == "follow"}):
        rows = event_store.events_for_target(db, target, followed_at - cohort_window, min(followed_at + cohort_window, as_of))
        peers.extend(EventRecord.from_row(r) for r in rows if r.follower_user_id != subject_id)
    peers = sorted(set(peers), key=lambda e: (e.occurred_at, e.followed_user_id, e.follower_user_id, e.event_type))

    peer_ids = {p.follower_user_id for p in peers}
    return DetectionContext(
        subject_id=subject_id,
        profile=profiles.get_profile(db, subject_id),
        history=tuple(history),
        peers=tuple(peers),
        peer_profiles=profiles.get_profiles(db, peer_ids),
        as_of=as_of,
    )


def find_coordinated_networks(signals: Iterable[DetectedSignal], min_size: int = 3) -> list[list[str]]:
    """Connected components of the related-accounts graph, largest first."""
    graph: dict[str, set[str]] = defaultdict(set)
    for s in signals:
        for other in s.related_accounts:
            graph[s.subject_user_id].add(other)
            graph[other].add(s.subject_user_id)

    seen: set[str] = set()
    networks = []
    for start in sorted(graph):
        if start in seen:
            continue
        seen.add(start)
        component, queue = [], deque([start])
        while queue:
            cur = queue.popleft()
            component.append(cur)
            for nxt in sorted(graph[cur]):
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        if len(component) >= min_size:
            networks.append(sorted(component))
    networks.sort(key=lambda c: (-len(c), c[0]))
    return networks
