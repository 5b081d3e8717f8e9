"""
Root cause analysis: prompt rendering, reply parsing and model invocation

The model is asked to reply in a line-oriented protocol of seven labeled
sections::

    ROOT_CAUSE: <text>
    EVIDENCE:
    - <item>
    CONFIDENCE: <float in [0, 1]>
    CONTRIBUTING_FACTORS:
    - <item>
    RECOMMENDED_ACTIONS:
    - <action_type>: <description> (autonomous_safe|requires_approval) [k=v, ...]
    TIMELINE:
    - <item>
    PREVENTION:
    - <item>

Sections and actions are parsed with the regular expressions below, so a
prompt change only needs the grammar updated here.
"""

import logging
import math
import re
from pathlib import Path
from typing import Any, Optional

import jinja2
import yaml
from pydantic import ValidationError as PydanticValidationError

from .config import IncidentOpsConfig, get_config
from .exceptions import ProcessingError, RCAParseError
from .llm_client import LLMRouter, ModelRequest
from .models import (
    ActionRiskLevel,
    GatheredData,
    Incident,
    IncidentSeverity,
    RCAResult,
    RecommendedAction,
    ValidationResult,
)
from .observability.metrics import get_metrics
from .observability.tracer import add_event, set_attribute, trace_async
from .risk import RiskClassifier

logger = logging.getLogger(__name__)

PROMPTS_DIR = Path(__file__).parent / "prompts"
RCA_TEMPLATE = "rca_analysis:v1"

SECTION_HEADER = re.compile(r"^(?P<name>[A-Z][A-Z_]*):\s*(?P<inline>.*)$")
LIST_ITEM = re.compile(r"^-\s+(?P<item>.+?)\s*$")
ACTION_LINE = re.compile(
    r"^(?P<action_type>\w+):\s*(?P<description>.+?)\s*"
    r"\((?P<risk>autonomous_safe|requires_approval)\)"
    r"\s*(?:\[(?P<params>[^\]]*)\])?\s*$"
)

DEFAULT_CONFIDENCE = 0.5
LIMITED_DATA_NOTE = "Analysis based on limited data: incomplete observability data"

PRIORITY_LEVELS = {
    IncidentSeverity.P0: "CRITICAL",
    IncidentSeverity.P1: "HIGH",
    IncidentSeverity.P2: "MEDIUM",
    IncidentSeverity.P3: "LOW",
}

FOCUS_HINTS = (
    (
        ("memory",),
        "ANALYSIS FOCUS: Memory-related issues (heap usage, garbage collection, leaks, OOM kills)",
    ),
    (
        ("network", "connection"),
        "ANALYSIS FOCUS: Network connectivity issues (DNS, timeouts, load balancers, connection resets)",
    ),
    (
        ("database",),
        "ANALYSIS FOCUS: Database-related issues (connection pools, query performance, locks, replication)",
    ),
)

GENERIC_TERMS = ("unknown", "general", "issue", "problem", "error")
INFRA_TERMS = ("server", "hardware", "network", "infrastructure", "database", "memory", "cpu", "disk")
TECH_TERMS = ("connection", "timeout", "crash", "leak", "exhausted", "overflow", "deadlock")
ACTIONABLE_TERMS = ("restart", "configuration", "deployment", "version")
ERROR_TERMS = ("error", "exception", "failed", "timeout")


class PromptManager:
    """Loads and renders versioned Jinja2 prompt templates"""

    def __init__(self, prompts_dir: Optional[Path] = None):
        self.prompts_dir = Path(prompts_dir or PROMPTS_DIR)
        self.env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(self.prompts_dir)),
            autoescape=jinja2.select_autoescape(["html", "xml"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def load_template_meta(self, template_key: str) -> dict[str, Any]:
        """Metadata for a template key such as 'rca_analysis:v1'"""
        template_name, version = template_key.split(":")
        meta_path = self.prompts_dir / template_name / version / "meta.yaml"
        if not meta_path.exists():
            logger.warning(f"Template metadata not found: {meta_path}")
            return {}
        with open(meta_path, encoding="utf-8") as f:
            return yaml.safe_load(f) or {}

    def render_template(self, template_key: str, context: dict[str, Any]) -> str:
        template_name, version = template_key.split(":")
        template = self.env.get_template(f"{template_name}/{version}/template.jinja2")
        return template.render(**context)


def _format_params(raw: Optional[str]) -> dict[str, Any]:
    params: dict[str, Any] = {}
    if not raw:
        return params
    for pair in raw.split(","):
        if "=" not in pair:
            continue
        key, value = (part.strip() for part in pair.split("=", 1))
        if not key:
            continue
        params[key] = _coerce_scalar(value)
    return params


def _coerce_scalar(value: str) -> Any:
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            continue
    return value


def parse_action_line(line: str) -> Optional[RecommendedAction]:
    """One RECOMMENDED_ACTIONS item, or None when it does not match the grammar"""
    match = ACTION_LINE.match(line.strip())
    if not match:
        return None
    return RecommendedAction(
        action_type=match.group("action_type"),
        description=match.group("description"),
        target="",
        risk_level=ActionRiskLevel(match.group("risk")),
        params=_format_params(match.group("params")),
        estimated_impact="To be determined",
    )


def split_sections(reply: str) -> dict[str, list[str]]:
    """Map each section label to its lines.

    Inline text after the label becomes the section's first line.
    """
    sections: dict[str, list[str]] = {}
    current: Optional[str] = None
    for raw_line in reply.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        header = SECTION_HEADER.match(line)
        if header:
            current = header.group("name")
            sections[current] = []
            inline = header.group("inline").strip()
            if inline:
                sections[current].append(inline)
        elif current is not None:
            sections[current].append(line)
    return sections


def list_items(lines: list[str]) -> list[str]:
    return [m.group("item") for m in (LIST_ITEM.match(line) for line in lines) if m]


class RCAProtocolCodec:
    """Renders analysis prompts and parses seven-section model replies"""

    def __init__(self, prompt_manager: Optional[PromptManager] = None, max_log_lines: int = 20):
        self.prompt_manager = prompt_manager or PromptManager()
        self.max_log_lines = max_log_lines

    def render_prompt(
        self,
        incident: Incident,
        data: GatheredData,
        historical_context: Optional[list[str]] = None,
    ) -> str:
        text = f"{incident.title} {incident.description}".lower()
        focus_hints = [
            hint for keywords, hint in FOCUS_HINTS if any(k in text for k in keywords)
        ]

        context = {
            "incident_id": incident.id,
            "title": incident.title,
            "description": incident.description,
            "severity": incident.severity.value,
            "priority_level": PRIORITY_LEVELS[incident.severity],
            "status": incident.status.value,
            "source": incident.source,
            "affected_services": sorted(incident.affected_services),
            "created_at": incident.created_at.isoformat(),
            "region": incident.metadata.get("region"),
            "customer_impact": incident.metadata.get("customer_impact"),
            "focus_hints": focus_hints,
            "data_limited": bool(data.missing_core_sources()),
            "logs": [
                f"[{log.timestamp.isoformat()}] {log.level.upper()} {log.service}: {log.message}"
                for log in data.logs[: self.max_log_lines]
            ],
            "metrics": [
                f"{m.metric_name}={m.value} at {m.timestamp.isoformat()}"
                + (f" {m.labels}" if m.labels else "")
                for m in data.metrics
            ],
            "alerts": [
                f"[{a.severity}] {a.service}: {a.trigger_condition} ({a.status})"
                for a in data.alerts
            ],
            "system_status": [
                f"{s.service}: {s.status}"
                + (f" (depends on {', '.join(s.dependencies)})" if s.dependencies else "")
                for s in data.system_status
            ],
            "runbooks": [
                f"{r.title} (relevance {r.relevance_score:.0%}): {r.content[:200]}"
                for r in data.runbooks
            ],
            "historical_context": historical_context or [],
        }
        return self.prompt_manager.render_template(RCA_TEMPLATE, context)

    def parse(self, reply: str, incident_id: str = "") -> RCAResult:
        """
        Parse a model reply into an RCAResult

        Raises:
            RCAParseError: If ROOT_CAUSE is missing, CONFIDENCE is invalid,
                or confidence and evidence violate the result invariant
        """
        sections = split_sections(reply)

        root_cause_lines = [
            line for line in sections.get("ROOT_CAUSE", []) if not LIST_ITEM.match(line)
        ]
        root_cause = " ".join(root_cause_lines).strip()
        if not root_cause:
            raise RCAParseError("Invalid RCA response: missing required ROOT_CAUSE section")

        confidence = self._parse_confidence(sections.get("CONFIDENCE"))

        evidence_lines = sections.get("EVIDENCE", [])
        evidence = list_items(evidence_lines)
        if evidence_lines and not LIST_ITEM.match(evidence_lines[0]):
            evidence.insert(0, evidence_lines[0])

        actions = []
        for item in list_items(sections.get("RECOMMENDED_ACTIONS", [])):
            action = parse_action_line(item)
            if action is None:
                logger.debug(f"Skipping malformed action line: {item}")
                continue
            actions.append(action)

        try:
            return RCAResult(
                incident_id=incident_id,
                root_cause=root_cause,
                evidence=evidence,
                confidence_score=confidence,
                contributing_factors=list_items(sections.get("CONTRIBUTING_FACTORS", [])),
                recommended_actions=actions,
                analysis_timeline=list_items(sections.get("TIMELINE", [])),
                prevention_strategies=list_items(sections.get("PREVENTION", [])),
            )
        except PydanticValidationError as e:
            message = "; ".join(err["msg"] for err in e.errors())
            raise RCAParseError(f"Invalid RCA response: {message}") from e

    @staticmethod
    def _parse_confidence(lines: Optional[list[str]]) -> float:
        if not lines:
            return DEFAULT_CONFIDENCE
        token = lines[0].split()[0] if lines[0].strip() else ""
        try:
            value = float(token)
        except ValueError:
            value = None
        if value is None or not math.isfinite(value):
            raise RCAParseError(f"Invalid RCA response: CONFIDENCE is not a number: {lines[0]!r}")
        if not 0.0 <= value <= 1.0:
            raise RCAParseError(
                f"Invalid RCA response: CONFIDENCE {value} out of range, must be between 0 and 1"
            )
        return value


def validate_gathered_data(data: GatheredData) -> ValidationResult:
    """Data-quality check run before analysis"""
    errors = []
    warnings = []
    if not data.logs:
        errors.append("Insufficient log data - at least 1 log entry required")
    if not data.metrics:
        errors.append("No metric data available for analysis")
    if not data.alerts:
        errors.append("No alert data available for correlation")
    if not data.system_status:
        warnings.append("No system status data available")
    if not data.runbooks:
        warnings.append("No relevant runbooks found")
    for gap in data.gaps:
        warnings.append(f"Data source unavailable: {gap}")
    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def adjust_confidence(result: RCAResult, quality: ValidationResult) -> RCAResult:
    """Lower confidence for incomplete data.

    The penalty is min(0.3, 0.1 per data-quality error), floored at 0.1. A
    limited-data note is added to the contributing factors once.
    """
    if not quality.errors:
        return result

    penalty = min(0.3, 0.1 * len(quality.errors))
    adjusted = min(result.confidence_score, max(0.1, result.confidence_score - penalty))

    factors = list(result.contributing_factors)
    if not any("limited data" in factor.lower() for factor in factors):
        factors.append(LIMITED_DATA_NOTE)

    return result.model_copy(
        update={"confidence_score": round(adjusted, 4), "contributing_factors": factors}
    )


def score_confidence(hypothesis: str, data_items: list[str]) -> float:
    """Heuristic support score of a hypothesis against raw data items"""
    if not data_items:
        return 0.0

    count = len(data_items)
    score = min(0.15 * count, 0.7)
    if count >= 3:
        score += 0.1
    if count >= 5:
        score += 0.1

    keywords = [word for word in hypothesis.lower().split() if len(word) > 3]
    for item in data_items:
        item_lower = item.lower()
        score += 0.05 * sum(1 for keyword in keywords if keyword in item_lower)
        if any(term in item_lower for term in ERROR_TERMS):
            score += 0.03

    return min(score, 1.0)


def _hypothesis_weight(hypothesis: str) -> int:
    text = hypothesis.lower()
    weight = 0
    weight -= 2 * sum(1 for term in GENERIC_TERMS if term in text)
    weight += 3 * sum(1 for term in INFRA_TERMS if term in text)
    weight += 2 * sum(1 for term in TECH_TERMS if term in text)
    weight += sum(1 for term in ACTIONABLE_TERMS if term in text)
    return weight


def rank_hypotheses(hypotheses: list[str]) -> list[str]:
    """Order hypotheses from most to least specific"""
    return sorted(hypotheses, key=_hypothesis_weight, reverse=True)


class RCAEngine:
    """
    Runs one analysis pass for an incident

    Renders the prompt, calls the primary model and then the fallback model,
    parses the reply, adjusts confidence for data quality and reclassifies
    every recommended action.
    """

    def __init__(
        self,
        config: Optional[IncidentOpsConfig] = None,
        router: Optional[LLMRouter] = None,
        codec: Optional[RCAProtocolCodec] = None,
        classifier: Optional[RiskClassifier] = None,
    ):
        self.config = config or get_config()
        self.router = router or LLMRouter(self.config)
        self.codec = codec or RCAProtocolCodec(
            max_log_lines=self.config.performance.max_log_lines
        )
        self.classifier = classifier or RiskClassifier(
            max_restart_attempts=self.config.remediation.max_restart_attempts,
            max_autonomous_replicas=self.config.remediation.max_autonomous_replicas,
        )
        meta = self.codec.prompt_manager.load_template_meta(RCA_TEMPLATE)
        self.system_prompt = meta.get("system_prompt", "")

    @trace_async("rca.analyze")
    async def analyze(
        self,
        incident: Incident,
        data: GatheredData,
        historical_context: Optional[list[str]] = None,
    ) -> RCAResult:
        """
        Raises:
            ProcessingError: If both models fail or the reply cannot be parsed
        """
        set_attribute("incident.id", incident.id)
        set_attribute("incident.severity", incident.severity.value)

        quality = validate_gathered_data(data)
        if not quality.valid:
            logger.warning(
                f"Incomplete data for incident {incident.id}: {'; '.join(quality.errors)}"
            )

        prompt = self.codec.render_prompt(incident, data, historical_context)
        reply = await self._invoke_models(prompt)

        result = self.codec.parse(reply, incident.id)
        result = adjust_confidence(result, quality)
        result = result.model_copy(
            update={"recommended_actions": self._classify_actions(result, incident)}
        )

        metrics = get_metrics()
        if metrics:
            metrics.record_rca_confidence(result.confidence_score)
        add_event(
            "rca_completed",
            {
                "confidence": result.confidence_score,
                "actions": len(result.recommended_actions),
            },
        )
        logger.info(
            f"RCA for incident {incident.id} completed with confidence "
            f"{result.confidence_score:.2f} and {len(result.recommended_actions)} actions"
        )
        return result

    def _request_for(self, router_name: str, prompt: str) -> ModelRequest:
        router_config = self.config.get_llm_router_config(router_name)
        return ModelRequest(
            messages=[
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": prompt},
            ],
            max_tokens=router_config.max_tokens,
            temperature=router_config.temperature,
        )

    async def _invoke_models(self, prompt: str) -> str:
        primary = self.config.llm.primary
        fallback = self.config.llm.fallback
        try:
            return await self.router.generate(primary, self._request_for(primary, prompt))
        except Exception as primary_error:
            logger.warning(
                f"Primary model router '{primary}' failed, trying fallback '{fallback}': "
                f"{primary_error}"
            )
        try:
            return await self.router.generate(fallback, self._request_for(fallback, prompt))
        except Exception as fallback_error:
            logger.error(f"Fallback model router '{fallback}' failed: {fallback_error}")
            raise ProcessingError(
                "AI analysis failed: all models unavailable", cause=fallback_error
            ) from fallback_error

    def _classify_actions(
        self, result: RCAResult, incident: Incident
    ) -> list[RecommendedAction]:
        classified = []
        for action in result.recommended_actions:
            if not action.target:
                action = action.model_copy(update={"target": incident.primary_service})
            risk_level = self.classifier.classify(action, incident)
            if action.risk_level is not None and action.risk_level != risk_level:
                logger.info(
                    f"Risk level for {action.action_type} overridden: "
                    f"{action.risk_level.value} -> {risk_level.value}"
                )
            classified.append(action.model_copy(update={"risk_level": risk_level}))
        return classified
