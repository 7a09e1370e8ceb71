"""
Royalty Engine - Content Similarity Oracle

Interface to the external service that scores content: derivative
similarity, quality, collaborator compatibility and trend opportunities.

- ContentSimilarityOracle: abstract interface used by event detection
- HTTPContentOracle: requests-based client for a remote oracle
- StaticContentOracle: deterministic in-process oracle for tests and
  local development, with call recording and fault injection

Every remote call is bounded by a timeout (10s default). A failure to
reach the oracle raises OracleUnavailableError.

Environment Variables:
    ROYALTY_ORACLE_URL=http://localhost:8600
    ROYALTY_ORACLE_API_KEY=...
    ROYALTY_ORACLE_TIMEOUT=10
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

import requests

from errors import OracleUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_ORACLE_TIMEOUT = 10


# =============================================================================
# Result types
# =============================================================================


@dataclass
class ContentItem:
    """A published content unit the oracle knows about."""
    subject_id: str
    author_address: str
    title: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContentItem":
        return cls(
            subject_id=str(data["subjectId"]),
            author_address=str(data["authorAddress"]),
            title=str(data.get("title", "")),
        )


@dataclass
class DerivativeMatch:
    """Content that looks derived from a subject."""
    derivative_id: str
    similarity_score: float
    title: str = ""
    author_address: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "derivativeId": self.derivative_id,
            "similarityScore": self.similarity_score,
            "title": self.title,
            "authorAddress": self.author_address,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DerivativeMatch":
        return cls(
            derivative_id=str(data["derivativeId"]),
            similarity_score=float(data["similarityScore"]),
            title=str(data.get("title", "")),
            author_address=str(data.get("authorAddress", "")),
        )


@dataclass
class QualityAssessment:
    score: float
    improvements: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"qualityScore": self.score, "improvements": list(self.improvements)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QualityAssessment":
        return cls(
            score=float(data["qualityScore"]),
            improvements=[str(i) for i in data.get("improvements", [])],
        )


@dataclass
class CollaborationMatch:
    collaborator_address: str
    compatibility_score: float
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "collaboratorAddress": self.collaborator_address,
            "compatibilityScore": self.compatibility_score,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CollaborationMatch":
        return cls(
            collaborator_address=str(data["collaboratorAddress"]),
            compatibility_score=float(data["compatibilityScore"]),
            reason=str(data.get("reason", "")),
        )


@dataclass
class ContentOpportunity:
    topic: str
    engagement_score: float
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "engagementScore": self.engagement_score,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContentOpportunity":
        return cls(
            topic=str(data["topic"]),
            engagement_score=float(data["engagementScore"]),
            description=str(data.get("description", "")),
        )


# =============================================================================
# Interface
# =============================================================================


class ContentSimilarityOracle(ABC):
    """External content analysis collaborator."""

    @abstractmethod
    def list_content(self, limit: int) -> list[ContentItem]:
        """Return up to ``limit`` recently published content units."""
        pass

    @abstractmethod
    def find_derivatives(self, subject_id: str, threshold: float) -> list[DerivativeMatch]:
        """Return content whose similarity to subject_id is at least threshold."""
        pass

    @abstractmethod
    def assess_quality(self, subject_id: str) -> QualityAssessment:
        pass

    @abstractmethod
    def find_collaborators(
        self, author_address: str, subject_id: str, threshold: float, limit: int
    ) -> list[CollaborationMatch]:
        pass

    @abstractmethod
    def identify_opportunities(
        self, author_address: str, threshold: float
    ) -> list[ContentOpportunity]:
        pass

    def get_title(self, subject_id: str) -> str:
        """Display title for a content unit."""
        return f"Story {subject_id}"


# =============================================================================
# HTTP client
# =============================================================================


@dataclass
class OracleConfig:
    base_url: str = ""
    api_key: str | None = None
    timeout: float = DEFAULT_ORACLE_TIMEOUT

    @classmethod
    def from_env(cls) -> "OracleConfig":
        return cls(
            base_url=os.getenv("ROYALTY_ORACLE_URL", ""),
            api_key=os.getenv("ROYALTY_ORACLE_API_KEY"),
            timeout=float(os.getenv("ROYALTY_ORACLE_TIMEOUT", str(DEFAULT_ORACLE_TIMEOUT))),
        )


class HTTPContentOracle(ContentSimilarityOracle):
    """
    Client for a remote content analysis service.

    No client-side retries: a failed scan is retried on the next
    scheduler tick.
    """

    def __init__(self, config: OracleConfig, session: requests.Session | None = None):
        if not config.base_url:
            raise ValueError("Oracle base_url is required")
        self.base_url = config.base_url.rstrip("/")
        self.timeout = config.timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {"Accept": "application/json", "User-Agent": "royalty-engine/1.0"}
        )
        if config.api_key:
            self.session.headers["Authorization"] = f"Bearer {config.api_key}"

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise OracleUnavailableError(
                f"Oracle request failed: {e}", details={"path": path}, cause=e
            ) from e

        if response.status_code >= 500:
            raise OracleUnavailableError(
                f"Oracle returned {response.status_code}",
                details={"path": path, "status": response.status_code},
            )
        response.raise_for_status()
        return response.json()

    def list_content(self, limit: int) -> list[ContentItem]:
        data = self._get("/content", {"limit": limit})
        return [ContentItem.from_dict(item) for item in data.get("items", [])][:limit]

    def find_derivatives(self, subject_id: str, threshold: float) -> list[DerivativeMatch]:
        data = self._get(f"/content/{subject_id}/derivatives", {"threshold": threshold})
        return [DerivativeMatch.from_dict(m) for m in data.get("matches", [])]

    def assess_quality(self, subject_id: str) -> QualityAssessment:
        return QualityAssessment.from_dict(self._get(f"/content/{subject_id}/quality"))

    def find_collaborators(
        self, author_address: str, subject_id: str, threshold: float, limit: int
    ) -> list[CollaborationMatch]:
        data = self._get(
            f"/authors/{author_address}/collaborators",
            {"subjectId": subject_id, "threshold": threshold, "limit": limit},
        )
        return [CollaborationMatch.from_dict(m) for m in data.get("matches", [])]

    def identify_opportunities(
        self, author_address: str, threshold: float
    ) -> list[ContentOpportunity]:
        data = self._get(f"/authors/{author_address}/opportunities", {"threshold": threshold})
        return [ContentOpportunity.from_dict(o) for o in data.get("opportunities", [])]

    def get_title(self, subject_id: str) -> str:
        try:
            data = self._get(f"/content/{subject_id}")
        except (OracleUnavailableError, requests.HTTPError) as e:
            logger.warning(f"Could not fetch title for {subject_id}: {e}")
            return super().get_title(subject_id)
        return data.get("title") or super().get_title(subject_id)


# =============================================================================
# In-process oracle
# =============================================================================


class StaticContentOracle(ContentSimilarityOracle):
    """
    Deterministic oracle backed by fixed data.

    Every call is recorded in ``calls``. ``fail_next(n)`` makes the next n
    calls raise OracleUnavailableError.
    """

    def __init__(self):
        self.content: list[ContentItem] = []
        self.derivatives: dict[str, list[DerivativeMatch]] = {}
        self.quality: dict[str, QualityAssessment] = {}
        self.collaborators: dict[str, list[CollaborationMatch]] = {}
        self.opportunities: dict[str, list[ContentOpportunity]] = {}
        self.calls: list[tuple[str, tuple]] = []
        self._failures_remaining = 0
        self._failing_subjects: set[str] = set()
        self._lock = threading.Lock()

    def add_content(self, subject_id: str, author_address: str, title: str = "") -> ContentItem:
        item = ContentItem(subject_id, author_address, title or f"Story {subject_id}")
        self.content.append(item)
        return item

    def fail_next(self, count: int = 1) -> None:
        with self._lock:
            self._failures_remaining = count

    def fail_for_subject(self, subject_id: str) -> None:
        self._failing_subjects.add(subject_id)

    def call_count(self, method: str | None = None) -> int:
        with self._lock:
            if method is None:
                return len(self.calls)
            return sum(1 for name, _ in self.calls if name == method)

    def calls_by_method(self) -> dict[str, int]:
        counts: dict[str, int] = defaultdict(int)
        with self._lock:
            for name, _ in self.calls:
                counts[name] += 1
        return dict(counts)

    def _record(self, method: str, *args) -> None:
        with self._lock:
            self.calls.append((method, args))
            if self._failures_remaining > 0:
                self._failures_remaining -= 1
                raise OracleUnavailableError(f"Injected oracle failure in {method}")
        if any(arg in self._failing_subjects for arg in args if isinstance(arg, str)):
            raise OracleUnavailableError(f"Injected oracle failure for {args}")

    def list_content(self, limit: int) -> list[ContentItem]:
        self._record("list_content", limit)
        return list(self.content[:limit])

    def find_derivatives(self, subject_id: str, threshold: float) -> list[DerivativeMatch]:
        self._record("find_derivatives", subject_id, threshold)
        return [m for m in self.derivatives.get(subject_id, []) if m.similarity_score >= threshold]

    def assess_quality(self, subject_id: str) -> QualityAssessment:
        self._record("assess_quality", subject_id)
        return self.quality.get(subject_id, QualityAssessment(score=1.0))

    def find_collaborators(
        self, author_address: str, subject_id: str, threshold: float, limit: int
    ) -> list[CollaborationMatch]:
        self._record("find_collaborators", author_address, subject_id)
        matches = [
            m for m in self.collaborators.get(subject_id, []) if m.compatibility_score >= threshold
        ]
        return matches[:limit]

    def identify_opportunities(
        self, author_address: str, threshold: float
    ) -> list[ContentOpportunity]:
        self._record("identify_opportunities", author_address, threshold)
        return [
            o for o in self.opportunities.get(author_address, []) if o.engagement_score >= threshold
        ]

    def get_title(self, subject_id: str) -> str:
        for item in self.content:
            if item.subject_id == subject_id:
                return item.title
        return super().get_title(subject_id)
