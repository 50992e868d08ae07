"""
Correlation Service
Links a new or updated alert group to likely-related open groups.

Correlation only links groups; it never merges them. Failures here are
logged and ignored by the ingestion pipeline.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple
from uuid import UUID

import numpy as np
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.metrics.pairwise import cosine_similarity
from sqlalchemy.orm import Session

from alert_engine.database import utc_now
from alert_engine.metrics import CORRELATIONS_RECORDED
from alert_engine.models import AlertGroup, CorrelationGroup
from alert_engine.schemas import (
    AlertForEvaluation,
    AlertStatus,
    CorrelatedAlert,
    CorrelationPolicy,
    CorrelationResult,
)

logger = logging.getLogger(__name__)


class SemanticScorer:
    """Pluggable text similarity. Returns one score in [0, 1] per candidate."""

    def score(self, text: str, candidates: Sequence[str]) -> List[float]:
        raise NotImplementedError


class TfidfSemanticScorer(SemanticScorer):
    """TF-IDF + cosine similarity over alert text."""

    def __init__(self, max_features: int = 200):
        self.max_features = max_features

    def score(self, text: str, candidates: Sequence[str]) -> List[float]:
        if not candidates:
            return []
        try:
            vectorizer = TfidfVectorizer(
                max_features=self.max_features,
                stop_words='english',
                ngram_range=(1, 2)
            )
            tfidf_matrix = vectorizer.fit_transform([text] + list(candidates))
            similarities = cosine_similarity(tfidf_matrix[0:1], tfidf_matrix[1:])[0]
            return [float(s) for s in np.clip(similarities, 0.0, 1.0)]
        except ValueError as e:
            # Empty vocabulary (all stop words or blank text)
            logger.debug(f"Semantic scoring skipped: {e}")
            return [0.0] * len(candidates)


def alert_text(title: str, project: str, environment: str, tags: Optional[dict]) -> str:
    """Convert alert attributes to text for semantic analysis"""
    parts = [title or '', project or '', environment or '']
    if tags:
        parts.extend(str(v) for v in tags.values())
    return ' '.join(parts)


def _tag_overlap(a: Optional[dict], b: Optional[dict]) -> float:
    left = set((a or {}).items())
    right = set((b or {}).items())
    union = left | right
    if not union:
        return 0.0
    return len(left & right) / len(union)


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.strip().lower() == b.strip().lower()


def attribute_score(
    alert: AlertForEvaluation,
    candidate: AlertGroup,
    policy: CorrelationPolicy,
    reference_time: datetime,
) -> float:
    """Weighted shared-attribute score: project, environment, temporal proximity, tag overlap."""
    score = 0.0
    if _same(alert.project, candidate.project):
        score += policy.project_weight
    if _same(alert.environment, candidate.environment):
        score += policy.environment_weight

    if candidate.last_seen_at is not None:
        delta_minutes = abs((reference_time - candidate.last_seen_at).total_seconds()) / 60.0
        score += policy.temporal_weight * max(0.0, 1.0 - delta_minutes / policy.temporal_window_minutes)

    score += policy.tag_weight * _tag_overlap(alert.tags, candidate.tags_json)
    return min(1.0, max(0.0, score))


def _root_cause_analysis(alert: AlertForEvaluation, root: AlertGroup, score: float) -> str:
    reasoning = [f"'{root.title}' was first seen at {root.first_seen_at.isoformat()}"]
    if alert.first_seen_at is not None and root.first_seen_at < alert.first_seen_at:
        seconds = int((alert.first_seen_at - root.first_seen_at).total_seconds())
        reasoning.append(f"{seconds}s before '{alert.title}'")
    if root.environment:
        reasoning.append(f"in the same {root.environment} environment")
    return (
        f"Likely Root Cause: {root.title}\n"
        f"Reasoning: {' '.join(reasoning)}\n"
        f"Confidence: {score:.2f}"
    )


def correlate(
    alert: AlertForEvaluation,
    open_groups: Sequence[AlertGroup],
    policy: Optional[CorrelationPolicy] = None,
    scorer: Optional[SemanticScorer] = None,
    primary_id: Optional[UUID] = None,
    now: Optional[datetime] = None,
) -> Optional[CorrelationResult]:
    """
    Score open groups against an alert and return the correlations above
    threshold, best first, or None when nothing qualifies.
    """
    policy = policy or CorrelationPolicy()
    now = now or utc_now()
    reference_time = alert.last_seen_at or now
    lookback_start = now - timedelta(hours=policy.lookback_hours)

    candidates = [
        g for g in open_groups
        if g.id != primary_id
        and g.status in (AlertStatus.OPEN.value, AlertStatus.ACKED.value)
        and g.last_seen_at is not None
        and g.last_seen_at >= lookback_start
    ]
    if not candidates:
        return None

    scores = [attribute_score(alert, c, policy, reference_time) for c in candidates]

    if scorer is not None and policy.semantic_weight > 0:
        text = alert_text(alert.title, alert.project, alert.environment, alert.tags)
        semantic = scorer.score(
            text,
            [alert_text(c.title, c.project, c.environment, c.tags_json) for c in candidates]
        )
        weight = policy.semantic_weight
        scores = [(1.0 - weight) * s + weight * sem for s, sem in zip(scores, semantic)]

    scored: List[Tuple[AlertGroup, float]] = [
        (c, round(s, 4)) for c, s in zip(candidates, scores) if s >= policy.threshold
    ]
    if not scored:
        return None

    scored.sort(key=lambda pair: (-pair[1], -pair[0].last_seen_at.timestamp()))

    root_cause = None
    strong = [pair for pair in scored if pair[1] >= policy.root_cause_threshold]
    if strong:
        root_cause = min(strong, key=lambda pair: (pair[0].first_seen_at, -pair[1]))

    return CorrelationResult(
        primary_alert_id=primary_id,
        related=[
            CorrelatedAlert(
                alert_group_id=g.id,
                score=s,
                title=g.title,
                first_seen_at=g.first_seen_at,
                last_seen_at=g.last_seen_at,
            )
            for g, s in scored
        ],
        confidence_score=scored[0][1],
        root_cause_alert_id=root_cause[0].id if root_cause else None,
        root_cause_analysis=_root_cause_analysis(alert, root_cause[0], root_cause[1]) if root_cause else None,
    )


class CorrelationEngine:
    """Service for correlating alert groups and persisting the links."""

    def __init__(
        self,
        db: Session,
        policy: Optional[CorrelationPolicy] = None,
        scorer: Optional[SemanticScorer] = None,
    ):
        self.db = db
        self.policy = policy or CorrelationPolicy()
        if scorer is None and self.policy.semantic_weight > 0:
            scorer = TfidfSemanticScorer()
        self.scorer = scorer

    def find_candidates(self, group: AlertGroup, now: datetime) -> List[AlertGroup]:
        lookback_start = now - timedelta(hours=self.policy.lookback_hours)
        return self.db.query(AlertGroup).filter(
            AlertGroup.workspace_id == group.workspace_id,
            AlertGroup.id != group.id,
            AlertGroup.status.in_([AlertStatus.OPEN.value, AlertStatus.ACKED.value]),
            AlertGroup.last_seen_at >= lookback_start
        ).all()

    def correlate_group(
        self, group: AlertGroup, message: str = "", now: Optional[datetime] = None
    ) -> Optional[CorrelationResult]:
        """Correlate a group against its workspace and record the result."""
        if not self.policy.enabled:
            return None

        now = now or utc_now()
        result = correlate(
            AlertForEvaluation.from_group(group, message=message),
            self.find_candidates(group, now),
            policy=self.policy,
            scorer=self.scorer,
            primary_id=group.id,
            now=now,
        )
        if result is None:
            return None

        record = self._record(group, result)
        result.correlation_group_id = record.id
        CORRELATIONS_RECORDED.labels(root_cause="yes" if result.root_cause_alert_id else "no").inc()
        logger.info(
            f"Correlated alert group {group.id} with {len(result.related)} group(s) "
            f"(confidence {result.confidence_score:.2f})"
        )
        return result

    def _record(self, group: AlertGroup, result: CorrelationResult) -> CorrelationGroup:
        """Append to the existing correlation for this primary, or create one."""
        record = self.db.query(CorrelationGroup).filter(
            CorrelationGroup.primary_alert_id == group.id
        ).first()

        related_ids = [str(r.alert_group_id) for r in result.related]
        if record is None:
            record = CorrelationGroup(
                workspace_id=group.workspace_id,
                primary_alert_id=group.id,
                related_alert_ids=related_ids,
                confidence_score=result.confidence_score,
                root_cause_alert_id=result.root_cause_alert_id,
                root_cause_analysis=result.root_cause_analysis,
            )
            self.db.add(record)
        else:
            merged = list(record.related_alert_ids or [])
            merged.extend(i for i in related_ids if i not in merged)
            record.related_alert_ids = merged
            record.confidence_score = max(record.confidence_score or 0.0, result.confidence_score)
            if result.root_cause_alert_id is not None:
                record.root_cause_alert_id = result.root_cause_alert_id
                record.root_cause_analysis = result.root_cause_analysis
            record.updated_at = utc_now()

        self.db.commit()
        self.db.refresh(record)
        return record

    def get_correlations(self, group: AlertGroup) -> List[CorrelationGroup]:
        """Correlations where the group is the primary or one of the related groups."""
        records = self.db.query(CorrelationGroup).filter(
            CorrelationGroup.workspace_id == group.workspace_id
        ).order_by(CorrelationGroup.updated_at.desc()).all()
        group_id = str(group.id)
        return [
            r for r in records
            if r.primary_alert_id == group.id or group_id in (r.related_alert_ids or [])
        ]
