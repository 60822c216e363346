"""
Workflow Request/Response Models

Pydantic models for the recruiter workflow backend contract and for the
metadata attached to each run.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


# ============================================================
# REQUEST
# ============================================================

class ResumeReference(BaseModel):
    resume_id: str
    candidate_id: Optional[str] = None


class JobMetadata(BaseModel):
    title: str = ""
    code: str = ""
    level: str = ""
    salary_band: str = ""
    summary: str = ""


class LLMProviderConfig(BaseModel):
    """Per-step provider override. Passed through to the backend untouched."""
    provider: str
    model: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    extra_headers: dict[str, str] = Field(default_factory=dict)
    extra_payload: dict[str, Any] = Field(default_factory=dict)


class WorkflowRequest(BaseModel):
    """Body of a workflow generation request."""
    job_description: str
    resumes: list[ResumeReference]
    job_metadata: Optional[JobMetadata] = None
    step_overrides: Optional[dict[str, LLMProviderConfig]] = None

    def to_payload(self) -> dict:
        """JSON body for the backend; unset optional sections are omitted."""
        return self.model_dump(exclude_none=True)


# ============================================================
# RUN METADATA
# ============================================================

class CandidateRecord(BaseModel):
    """A stored candidate profile."""
    kind: Literal["candidate"] = "candidate"
    candidate_id: str


class StandaloneResume(BaseModel):
    """A resume uploaded without a candidate profile behind it."""
    kind: Literal["standalone_resume"] = "standalone_resume"
    resume_id: str


CandidateRef = Annotated[
    Union[CandidateRecord, StandaloneResume],
    Field(discriminator="kind"),
]


class RunMeta(BaseModel):
    """Display metadata for one workflow run."""
    model_config = {"frozen": True}

    candidate_name: str
    job_title: str
    resume_ids: tuple[str, ...] = ()
    candidate: Optional[CandidateRef] = None


# ============================================================
# RESPONSE
# ============================================================

class CoreSkill(BaseModel):
    name: str
    reason: str


class SkillAlignment(BaseModel):
    skill: str
    status: str
    evidence: str


class CandidateAnalysis(BaseModel):
    candidate_id: str
    name: Optional[str] = None
    match_score: Optional[float] = None
    bias_free_score: Optional[float] = None
    summary: Optional[str] = None
    highlights: list[str] = Field(default_factory=list)
    skill_alignment: list[SkillAlignment] = Field(default_factory=list)


class RankedCandidateItem(BaseModel):
    candidate_id: str
    rank: int
    priority: Optional[str] = None
    status: Optional[str] = None
    availability: Optional[str] = None
    notes: Optional[str] = None


class CandidateReadout(BaseModel):
    candidate_id: str
    strengths: list[str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    recommended_actions: list[str] = Field(default_factory=list)


class InsightItem(BaseModel):
    label: str
    value: str
    helper: Optional[str] = None


class InterviewQuestion(BaseModel):
    question: str
    rationale: str


class WorkflowResponse(BaseModel):
    """Full recruiter workflow output."""
    job: JobMetadata = Field(default_factory=JobMetadata)
    core_skills: list[CoreSkill] = Field(default_factory=list)
    ai_analysis_markdown: str = ""
    candidate_analysis: list[CandidateAnalysis] = Field(default_factory=list)
    ranked_shortlist: list[RankedCandidateItem] = Field(default_factory=list)
    detailed_readout: list[CandidateReadout] = Field(default_factory=list)
    engagement_plan: list[InsightItem] = Field(default_factory=list)
    fairness_guidance: list[InsightItem] = Field(default_factory=list)
    interview_preparation: list[InterviewQuestion] = Field(default_factory=list)
