"""
Job context source: structured snapshot and evidence for a job
"""
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from field_copilot.exceptions import JobNotFoundError
from field_copilot.models.chat import EvidenceItem

logger = structlog.get_logger()


class JobContext(BaseModel):
    """Everything the copilot knows about one job"""
    tenant_id: Optional[str] = None
    snapshot: Dict[str, Any] = Field(default_factory=dict)
    evidence: List[EvidenceItem] = Field(default_factory=list)


class JobContextProvider(ABC):
    """Supplies the structured snapshot and evidence for a job"""

    @abstractmethod
    async def get_snapshot(self, tenant_id: str, job_id: str) -> Dict[str, Any]:
        """Return the JSON-serializable snapshot; raise JobNotFoundError if unknown"""

    @abstractmethod
    async def get_evidence(self, tenant_id: str, job_id: str, limit: Optional[int] = None) -> List[EvidenceItem]:
        """Return evidence newest first, at most ``limit`` items"""


class StaticJobContextProvider(JobContextProvider):
    """Job contexts held in memory, optionally loaded from a JSON file"""

    def __init__(self, jobs: Optional[Dict[str, JobContext]] = None):
        self.jobs: Dict[str, JobContext] = dict(jobs or {})

    @classmethod
    def from_file(cls, path: str) -> "StaticJobContextProvider":
        """
        Load ``{"<job_id>": {"tenant_id": ..., "snapshot": {...}, "evidence": [...]}}``
        """
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        jobs = {job_id: JobContext.model_validate(value) for job_id, value in raw.items()}
        logger.info("Loaded job contexts", path=path, jobs=len(jobs))
        return cls(jobs)

    def _lookup(self, tenant_id: str, job_id: str) -> JobContext:
        context = self.jobs.get(job_id)
        if context is None or (context.tenant_id and context.tenant_id != tenant_id):
            raise JobNotFoundError(f"Job {job_id} not found")
        return context

    async def get_snapshot(self, tenant_id: str, job_id: str) -> Dict[str, Any]:
        return self._lookup(tenant_id, job_id).snapshot

    async def get_evidence(self, tenant_id: str, job_id: str, limit: Optional[int] = None) -> List[EvidenceItem]:
        evidence = sorted(self._lookup(tenant_id, job_id).evidence, key=lambda item: item.date, reverse=True)
        return evidence[:limit] if limit else evidence
