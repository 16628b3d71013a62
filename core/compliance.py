"""
Policy Compliance Engine - Score an assessment against local plan policies.

Each policy is decomposed into checkable criteria (requirement phrases,
numeric standards, constraint mentions, procedural steps and cross-references
to other policies). Criteria are scored 0-1 against the application evidence
and combined into a weighted policy score, an overall verdict, a gap
analysis and recommendations.
"""

import re
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.errors import InputError
from core.rag import PolicyDocument, DocumentType, cosine_similarity

log = logging.getLogger(__name__)


# Importance of each criterion type in the policy score
CRITERION_WEIGHTS = {
    "direct_match": 1.0,
    "constraint": 0.8,
    "design": 0.7,
    "technical": 0.6,
    "procedural": 0.5,
    "cross_reference": 0.5,
    "general": 0.5,
}

REQUIREMENT_PATTERNS = {
    "design": [r"must be designed to", r"should incorporate", r"design should", r"shall provide"],
    "technical": [r"minimum of (\d+)", r"at least (\d+)", r"no more than (\d+)", r"maximum of (\d+)"],
    "constraint": [r"protected area", r"conservation area", r"listed building", r"green belt"],
    "procedural": [r"consultation with", r"agreement with", r"approved by", r"submission of"],
}

CATEGORY_REQUIREMENTS = {
    "housing": ("direct_match", "housing provision", "Policy addresses housing development"),
    "design": ("design", "design quality", "Policy addresses design standards"),
    "transport": ("technical", "transport assessment", "Policy addresses transport impacts"),
}

SEMANTIC_MATCHES = {
    "housing": ["residential", "dwelling", "home", "apartment", "flat"],
    "employment": ["commercial", "office", "industrial", "business"],
    "retail": ["shop", "store", "commercial"],
    "community": ["community", "public", "social"],
}

CROSS_REFERENCE_RE = re.compile(r"\b[Pp]olic(?:y|ies)\s+([A-Z]{1,4}\s?\d+[A-Za-z]?)\b")

CRITICAL_SCORE = 0.4
CRITICAL_RELEVANCE = 0.7
MINOR_SCORE = 0.6
MIN_RELEVANCE = 0.3

POLICY_CATEGORY_LABELS = ["housing", "design", "transport", "heritage", "environment", "employment"]


def compliance_status(score: float) -> str:
    """Fixed status bands."""
    if score >= 0.8:
        return "compliant"
    if score >= 0.6:
        return "mostly_compliant"
    if score >= 0.4:
        return "partially_compliant"
    return "non_compliant"


# ═══════════════════════════════════════════════════════════════════════════
# DATA
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class ComplianceOptions:
    generate_recommendations: bool = True
    detailed_analysis: bool = True
    include_gap_analysis: bool = True

    @classmethod
    def from_value(cls, value: Any) -> "ComplianceOptions":
        if value is None:
            return cls()
        if isinstance(value, ComplianceOptions):
            return value
        if isinstance(value, dict):
            def pick(snake, camel):
                return bool(value.get(snake, value.get(camel, True)))
            return cls(
                generate_recommendations=pick("generate_recommendations", "generateRecommendations"),
                detailed_analysis=pick("detailed_analysis", "detailedAnalysis"),
                include_gap_analysis=pick("include_gap_analysis", "includeGapAnalysis"),
            )
        raise InputError(f"Unsupported compliance options: {type(value).__name__}")


@dataclass
class ComplianceCriterion:
    """One checkable requirement. `score` is None when evidence is missing."""
    type: str
    description: str
    context: str = ""
    score: Optional[float] = None
    reasoning: str = ""
    numeric: Optional[int] = None
    target: Optional[str] = None   # referenced policy for cross-references

    @property
    def weight(self) -> float:
        return CRITERION_WEIGHTS.get(self.type, 0.5)

    @property
    def scorable(self) -> bool:
        return self.score is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "description": self.description,
            "context": self.context,
            "score": self.score,
            "scorable": self.scorable,
            "weight": self.weight,
            "reasoning": self.reasoning,
        }


@dataclass
class PolicyComplianceResult:
    policy_ref: str
    title: str
    relevance: float
    compliance_score: float
    status: str
    criteria: List[ComplianceCriterion] = field(default_factory=list)
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)
    evidence: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy_ref": self.policy_ref,
            "title": self.title,
            "relevance": self.relevance,
            "compliance_score": self.compliance_score,
            "status": self.status,
            "criteria": [c.to_dict() for c in self.criteria],
            "strengths": list(self.strengths),
            "weaknesses": list(self.weaknesses),
            "evidence": list(self.evidence),
        }


@dataclass
class ComplianceCheck:
    assessment_id: str
    local_plan_id: str
    overall_score: float
    status: str
    policy_results: List[PolicyComplianceResult] = field(default_factory=list)
    gap_analysis: Optional[Dict[str, List[Dict[str, Any]]]] = None
    recommendations: Optional[Dict[str, List[Dict[str, Any]]]] = None
    confidence: float = 0.0
    retrieval_strategy: Optional[str] = None
    checked_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assessment_id": self.assessment_id,
            "local_plan_id": self.local_plan_id,
            "overall_score": self.overall_score,
            "status": self.status,
            "policy_results": [p.to_dict() for p in self.policy_results],
            "gap_analysis": self.gap_analysis,
            "recommendations": self.recommendations,
            "confidence": self.confidence,
            "retrieval_strategy": self.retrieval_strategy,
            "checked_at": self.checked_at,
            "policies_evaluated": len(self.policy_results),
        }


@dataclass
class ApplicationEvidence:
    """The parts of an assessment that criteria are scored against."""
    description: str = ""
    proposed_use: str = ""
    proposed_units: int = 0
    statements: List[Dict[str, str]] = field(default_factory=list)
    technical_reports: List[Dict[str, str]] = field(default_factory=list)
    constraints: List[str] = field(default_factory=list)

    @classmethod
    def from_assessment(cls, assessment: Dict[str, Any]) -> "ApplicationEvidence":
        statements, reports = [], []
        for doc in assessment.get("documents") or []:
            kind = (doc.get("doc_type") or "").lower()
            entry = {"type": kind, "content": (doc.get("text") or "").lower()}
            if "statement" in kind:
                statements.append(entry)
            elif any(k in kind for k in ("report", "assessment", "survey", "plan")):
                reports.append(entry)

        constraints = []
        report = assessment.get("constraint_report") or {}
        for result in report.get("constraints") or []:
            if result.get("status") != "ok":
                continue
            constraints.append(result.get("dataset_id", "").replace("-", " "))
            for feature in result.get("features") or []:
                if feature.get("name"):
                    constraints.append(str(feature["name"]).lower())

        facts = assessment.get("document_facts") or {}
        return cls(
            description=(assessment.get("description") or "").lower(),
            proposed_use=(assessment.get("development_type") or "").lower(),
            proposed_units=int(facts.get("housing_units") or 0),
            statements=statements,
            technical_reports=reports,
            constraints=[c for c in constraints if c],
        )

    @property
    def search_text(self) -> str:
        return f"{self.proposed_use} {self.description}"

    @property
    def all_content(self) -> str:
        parts = [self.description] + [s["content"] for s in self.statements] + [r["content"] for r in self.technical_reports]
        return " ".join(parts)


# ═══════════════════════════════════════════════════════════════════════════
# CRITERIA
# ═══════════════════════════════════════════════════════════════════════════
def extract_criteria(policy: Dict[str, Any]) -> List[ComplianceCriterion]:
    """Decompose policy text into checkable criteria."""
    content = (policy.get("content") or "").lower()
    criteria = []

    for ctype, patterns in REQUIREMENT_PATTERNS.items():
        for pattern in patterns:
            for match in re.finditer(pattern, content):
                numeric = int(match.group(1)) if match.groups() else None
                criteria.append(ComplianceCriterion(
                    type=ctype,
                    description=match.group(0),
                    context=_context(content, match.start()),
                    numeric=numeric,
                ))

    category = (policy.get("category") or "").lower()
    if category in CATEGORY_REQUIREMENTS:
        ctype, text, context = CATEGORY_REQUIREMENTS[category]
        criteria.append(ComplianceCriterion(type=ctype, description=text, context=context))

    own_ref = _normalise_ref(policy.get("policy_ref") or "")
    seen = set()
    for match in CROSS_REFERENCE_RE.finditer(policy.get("content") or ""):
        target = _normalise_ref(match.group(1))
        if target and target != own_ref and target not in seen:
            seen.add(target)
            criteria.append(ComplianceCriterion(
                type="cross_reference",
                description=f"consistency with policy {target}",
                context=_context(content, match.start()),
                target=target,
            ))

    if not criteria:
        criteria.append(ComplianceCriterion(
            type="general",
            description=(policy.get("title") or "general policy relevance").lower(),
            context="No specific requirements extracted",
        ))
    return criteria


def _context(text: str, index: int, length: int = 100) -> str:
    return text[max(0, index - length):index + length].strip()


def _normalise_ref(ref: str) -> str:
    ref = re.sub(r"^polic(?:y|ies)\s+", "", ref.strip(), flags=re.IGNORECASE)
    return ref.replace(" ", "").upper()


def score_criterion(criterion: ComplianceCriterion, app: ApplicationEvidence):
    """Fill in criterion.score and reasoning. Leaves score None when evidence is missing."""
    ctype = criterion.type
    text = criterion.description.lower()

    if ctype == "direct_match":
        criterion.reasoning = "Direct policy relevance assessment"
        if text in app.search_text:
            criterion.score = 0.9
        elif any(key in text and any(s in app.search_text for s in synonyms)
                 for key, synonyms in SEMANTIC_MATCHES.items()):
            criterion.score = 0.7
        else:
            criterion.score = 0.3

    elif ctype == "design":
        criterion.reasoning = "Design statement and proposal assessment"
        designs = [s["content"] for s in app.statements if "design" in s["type"]]
        if not designs:
            criterion.reasoning = "No design statement submitted"
            return
        design_content = " ".join(designs)
        words = text.split()
        matched = sum(1 for w in words if w in design_content)
        criterion.score = min(0.9, matched / len(words) + 0.3)

    elif ctype == "technical":
        criterion.reasoning = "Technical requirements verification"
        if criterion.numeric is not None and app.proposed_units > 0:
            ratio = criterion.numeric / max(1, app.proposed_units)
            criterion.score = 0.8 if ratio <= 1 else 0.3
        elif app.technical_reports:
            relevant = [r for r in app.technical_reports if text in r["content"]]
            criterion.score = 0.7 if relevant else 0.4
        else:
            criterion.reasoning = "No unit numbers or technical reports to check against"

    elif ctype == "constraint":
        criterion.reasoning = "Constraint impact assessment"
        affected = any(c in text or text in c for c in app.constraints)
        criterion.score = 0.4 if affected else 0.8

    elif ctype == "procedural":
        criterion.reasoning = "Procedural requirements check"
        documents = app.statements + app.technical_reports
        if not documents:
            criterion.reasoning = "No supporting documents submitted"
            return
        addressed = any(text in d["content"] for d in documents)
        criterion.score = 0.7 if addressed else 0.3

    elif ctype == "general":
        criterion.reasoning = "General policy relevance"
        criterion.score = 0.5

    # cross_reference criteria are resolved after every policy is scored


def aggregate_criteria(criteria: List[ComplianceCriterion]) -> float:
    """Importance-weighted mean of the scorable criteria; 0 when none can be scored."""
    scored = [c for c in criteria if c.scorable]
    total_weight = sum(c.weight for c in scored)
    if total_weight == 0:
        return 0.0
    return round(sum(c.score * c.weight for c in scored) / total_weight, 4)


def overall_confidence(results: List[PolicyComplianceResult]) -> float:
    if not results:
        return 0.3
    confidence = 0.7
    if len(results) >= 5:
        confidence += 0.1
    if len(results) >= 10:
        confidence += 0.1
    avg_relevance = sum(r.relevance for r in results) / len(results)
    confidence += (avg_relevance - 0.5) * 0.2
    return round(min(1.0, max(0.3, confidence)), 3)


# ═══════════════════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════════════════
class PolicyComplianceEngine:
    """
    Usage:
        engine = PolicyComplianceEngine(chain, store)
        check = engine.run_compliance_check("asm-1", "lp-2030")
    """

    def __init__(self, chain, store=None):
        self.chain = chain
        self.store = store

    def run_compliance_check(self, assessment_id: str, local_plan_id: str, options: Any = None) -> ComplianceCheck:
        """
        Check a stored assessment against a stored local plan.

        Re-running replaces the stored check for the same pair.

        Raises:
            InputError if the assessment or local plan is unknown
        """
        if self.store is None:
            raise InputError("No assessment store configured")
        assessment = self.store.get_assessment(assessment_id)
        if assessment is None:
            raise InputError(f"Unknown assessment: {assessment_id}")

        check = self.check_assessment(assessment, local_plan_id, options)
        self.store.save_compliance_check(check.to_dict())
        return check

    def check_assessment(self, assessment: Dict[str, Any], local_plan_id: str, options: Any = None) -> ComplianceCheck:
        opts = ComplianceOptions.from_value(options)
        policies = self.load_policies(local_plan_id)
        app = ApplicationEvidence.from_assessment(assessment)
        assessment_id = str(assessment.get("id", ""))

        ranked, strategy = self._rank_policies(policies, app, local_plan_id)

        results = [self._check_policy(policy, relevance, app, opts) for policy, relevance in ranked]
        self._resolve_cross_references(results, app)

        overall = 0.0
        total_relevance = sum(r.relevance for r in results)
        if total_relevance > 0:
            overall = round(sum(r.compliance_score * r.relevance for r in results) / total_relevance, 4)

        gaps = gap_analysis(results)
        check = ComplianceCheck(
            assessment_id=assessment_id,
            local_plan_id=local_plan_id,
            overall_score=overall,
            status=compliance_status(overall),
            policy_results=results,
            gap_analysis=gaps if opts.include_gap_analysis else None,
            recommendations=build_recommendations(results, gaps) if opts.generate_recommendations else None,
            confidence=overall_confidence(results),
            retrieval_strategy=strategy,
            checked_at=datetime.now(timezone.utc).isoformat(),
        )
        log.info(
            f"Compliance {assessment_id} vs {local_plan_id}: {len(results)} policies, "
            f"score {overall:.2f} ({check.status})"
        )
        return check

    def load_policies(self, local_plan_id: str) -> List[Dict[str, Any]]:
        if self.store is None:
            return []
        if self.store.get_local_plan(local_plan_id) is None:
            raise InputError(f"Unknown local plan: {local_plan_id}")
        policies = self.store.get_policies(local_plan_id)

        library = self.chain.library
        for policy in policies:
            if policy["id"] not in library.documents:
                library.ingest_document(PolicyDocument(
                    id=policy["id"],
                    title=policy.get("title") or policy["policy_ref"],
                    content=policy.get("content") or "",
                    doc_type=DocumentType.LOCAL_PLAN_POLICY,
                    local_plan_id=local_plan_id,
                    policy_ref=policy["policy_ref"],
                    category=policy.get("category"),
                ))
        return policies

    def _rank_policies(self, policies, app: ApplicationEvidence, local_plan_id: str):
        """Relevance per policy from the retrieval chain, embedding similarity for the rest."""
        if not policies:
            return [], None

        query = " ".join(filter(None, [app.proposed_use, app.description] + app.constraints[:5])) or "planning application"
        result = self.chain.retrieve(query, {"local_plan_id": local_plan_id})
        retrieved: Dict[str, float] = {}
        for item in result.items:
            if item.source_type == "policy":
                retrieved[item.reference] = max(retrieved.get(item.reference, 0.0), item.relevance_score)

        embedder = self.chain.library.embedder
        query_vec = embedder.embed(query)
        ranked = []
        for policy in policies:
            relevance = retrieved.get(policy["policy_ref"])
            if relevance is None:
                relevance = (cosine_similarity(query_vec, embedder.embed(policy.get("content") or "")) + 1) / 2
            if relevance >= MIN_RELEVANCE:
                ranked.append((policy, round(relevance, 4)))

        ranked.sort(key=lambda pair: pair[1], reverse=True)
        return ranked, result.strategy

    def _check_policy(self, policy, relevance: float, app: ApplicationEvidence, opts: ComplianceOptions) -> PolicyComplianceResult:
        if not policy.get("category") and hasattr(self.chain.library.embedder, "classify"):
            labels = self.chain.library.embedder.classify(policy.get("content") or "", POLICY_CATEGORY_LABELS)
            if labels:
                policy = dict(policy, category=labels[0][0])

        criteria = extract_criteria(policy)
        for criterion in criteria:
            score_criterion(criterion, app)

        score = aggregate_criteria(criteria)
        result = PolicyComplianceResult(
            policy_ref=policy["policy_ref"],
            title=policy.get("title") or policy["policy_ref"],
            relevance=relevance,
            compliance_score=score,
            status=compliance_status(score),
            criteria=criteria,
        )
        _collect_strengths(result)
        if opts.detailed_analysis:
            result.evidence = supporting_evidence(criteria, app)
        return result

    def _resolve_cross_references(self, results: List[PolicyComplianceResult], app: ApplicationEvidence):
        """Score each cross-reference with the referenced policy's own score, when it was assessed."""
        by_ref = {_normalise_ref(r.policy_ref): r for r in results}
        for result in results:
            pending = [c for c in result.criteria if c.type == "cross_reference"]
            if not pending:
                continue
            for criterion in pending:
                target = by_ref.get(criterion.target)
                if target is not None and target is not result:
                    criterion.score = target.compliance_score
                    criterion.reasoning = f"Inherits compliance of policy {criterion.target}"
                else:
                    criterion.reasoning = f"Policy {criterion.target} was not assessed"
            result.compliance_score = aggregate_criteria(result.criteria)
            result.status = compliance_status(result.compliance_score)
            _collect_strengths(result)


def _collect_strengths(result: PolicyComplianceResult):
    result.strengths = [c.description for c in result.criteria if c.scorable and c.score >= 0.7]
    result.weaknesses = [c.description for c in result.criteria if c.scorable and c.score < 0.4]


def supporting_evidence(criteria: List[ComplianceCriterion], app: ApplicationEvidence) -> List[Dict[str, Any]]:
    content = app.all_content
    evidence = []
    for criterion in criteria:
        words = criterion.description.lower().split()
        matched = [w for w in words if w in content]
        if matched:
            evidence.append({
                "requirement": criterion.description,
                "matched_words": matched,
                "confidence": round(len(matched) / len(words), 3),
            })
    return evidence


def gap_analysis(results: List[PolicyComplianceResult]) -> Dict[str, List[Dict[str, Any]]]:
    """Critical: low-scoring criteria on highly relevant policies. Minor: the rest below 0.6."""
    gaps = {"critical": [], "minor": []}
    for result in results:
        for criterion in result.criteria:
            if not criterion.scorable:
                continue
            gap = {
                "policy": result.policy_ref,
                "criterion": criterion.description,
                "type": criterion.type,
                "score": criterion.score,
            }
            if criterion.score < CRITICAL_SCORE and result.relevance >= CRITICAL_RELEVANCE:
                gaps["critical"].append(gap)
            elif criterion.score < MINOR_SCORE:
                gaps["minor"].append(gap)
    return gaps


def build_recommendations(results: List[PolicyComplianceResult], gaps: Dict[str, List[Dict[str, Any]]]) -> Dict[str, List[Dict[str, Any]]]:
    recommendations = {"immediate_actions": [], "improvements": [], "additional_evidence": []}

    for gap in gaps["critical"]:
        recommendations["immediate_actions"].append({
            "priority": "high",
            "policy": gap["policy"],
            "action": f"Address '{gap['criterion']}' under {gap['policy']}",
            "timeline": "Before determination",
        })
    for gap in gaps["minor"]:
        recommendations["improvements"].append({
            "priority": "medium",
            "policy": gap["policy"],
            "action": f"Strengthen compliance with '{gap['criterion']}' under {gap['policy']}",
        })
    for result in results:
        for criterion in result.criteria:
            if not criterion.scorable:
                recommendations["additional_evidence"].append({
                    "priority": "medium",
                    "policy": result.policy_ref,
                    "action": f"Provide evidence for '{criterion.description}'",
                    "reason": criterion.reasoning,
                })
    return recommendations
