"""
Rule-based quality validation for prompt templates and model outputs.

Every rule is an immutable descriptor (`ValidationRule`) holding a pure check
function `check(subject, context) -> RuleResult`. Validation is a fold over a
rule list that produces a `ValidationReport`:

    overall_score = passed_rules / total_rules * 100
    passed        = no error-severity rule failed

A rule whose check raises is recorded as a failed critical rule; warning and
info failures never block.

Template rules (static text):
    structure    required_sections, json_structure, variable_syntax, conditional_blocks
    content      instruction_clarity, cultural_adaptation, example_quality, output_completeness
    compliance   gdpr_compliance, bias_prevention, prompt_injection_protection, ethical_guidelines
    performance  token_efficiency, processing_time_estimate, output_size_optimization

Output rules (parsed model payload):
    output_json_structure, output_schema_compliance (only with a schema),
    pii_leakage, output_quality

PII leakage is flagged, never redacted.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import structlog

from survey_insights.prompts.renderer import estimate_tokens

_logger = structlog.get_logger()

CATEGORIES = ("structure", "content", "compliance", "performance")
SEVERITIES = ("error", "warning", "info")


@dataclass(frozen=True)
class RuleResult:
    passed: bool
    message: str
    score: Optional[float] = None
    suggestions: Tuple[str, ...] = ()
    # Lets a rule escalate or downgrade a single failure (output_quality).
    severity: Optional[str] = None


@dataclass(frozen=True)
class ValidationRule:
    id: str
    name: str
    description: str
    category: str
    severity: str
    check: Callable[[Any, Mapping[str, Any]], RuleResult]


@dataclass(frozen=True)
class ValidationIssue:
    rule: str
    category: str
    severity: str
    message: str
    suggestions: Tuple[str, ...] = ()
    score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule": self.rule,
            "category": self.category,
            "severity": self.severity,
            "message": self.message,
            "suggestions": list(self.suggestions),
            "score": self.score,
        }


@dataclass
class ValidationReport:
    overall_score: float
    passed: bool
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    info: List[ValidationIssue] = field(default_factory=list)
    metrics: Dict[str, int] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)

    @property
    def issues(self) -> List[ValidationIssue]:
        return [*self.errors, *self.warnings, *self.info]

    @property
    def failed_rules(self) -> List[str]:
        return [issue.rule for issue in self.issues]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_score": self.overall_score,
            "passed": self.passed,
            "errors": [i.to_dict() for i in self.errors],
            "warnings": [i.to_dict() for i in self.warnings],
            "info": [i.to_dict() for i in self.info],
            "metrics": dict(self.metrics),
            "recommendations": list(self.recommendations),
        }


# =============================================================================
# HELPERS
# =============================================================================

def _language(context: Mapping[str, Any]) -> str:
    return (context or {}).get("language") or "en"


def _count_markers(text: str, markers: Iterable[str]) -> int:
    lowered = text.lower()
    return sum(1 for marker in markers if marker.lower() in lowered)


def _scored(found: int, per_marker: float, threshold: float, ok: str, ko: str,
            suggestions: Sequence[str]) -> RuleResult:
    score = min(100.0, found * per_marker)
    passed = score >= threshold
    return RuleResult(
        passed=passed,
        score=score,
        message=(ok if passed else ko).format(found=found),
        suggestions=() if passed else tuple(suggestions),
    )


# =============================================================================
# TEMPLATE RULES
# =============================================================================

SECTION_MARKERS = {
    "pl": ("ZADANIE", "INSTRUKCJE", "FORMAT", "WSKAZÓWKI"),
    "en": ("TASK", "INSTRUCTIONS", "FORMAT", "GUIDELINES"),
}


def check_required_sections(content: str, context: Mapping[str, Any]) -> RuleResult:
    missing_by_lang = {
        lang: [section for section in sections if section not in content]
        for lang, sections in SECTION_MARKERS.items()
    }
    if any(not missing for missing in missing_by_lang.values()):
        return RuleResult(True, "All required sections are present", score=100)

    preferred = _language(context)
    # Report against the header set closest to complete; language breaks ties.
    lang = min(
        missing_by_lang,
        key=lambda l: (len(missing_by_lang[l]), l != preferred),
    )
    missing = ", ".join(missing_by_lang[lang])
    return RuleResult(
        passed=False,
        score=50,
        message=f"Missing required sections: {missing}",
        suggestions=(
            f"Add missing sections: {missing}",
            "Use standard section headers",
            "Follow template structure guidelines",
        ),
    )


_JSON_BLOCK_RE = re.compile(r"```json\s*\n(.*?)\n```", re.DOTALL)
_PLACEHOLDER_RE = re.compile(r"\{\{[^}]+\}\}")


def check_json_structure(content: str, context: Mapping[str, Any]) -> RuleResult:
    match = _JSON_BLOCK_RE.search(content)
    if match:
        try:
            json.loads(_PLACEHOLDER_RE.sub("0", match.group(1)))
        except json.JSONDecodeError as exc:
            return RuleResult(
                passed=False,
                score=0,
                message=f"Invalid JSON structure in template: {exc.msg}",
                suggestions=("Fix JSON syntax errors", "Validate JSON format"),
            )
        return RuleResult(True, "JSON output example is valid", score=100)

    if '"format"' in content or "response_format" in content:
        return RuleResult(True, "JSON structure specification found", score=100)

    return RuleResult(
        passed=False,
        score=0,
        message="No JSON output specification found",
        suggestions=(
            "Add JSON output format specification",
            "Include JSON example in template",
            "Use response_format: json_object in API call",
        ),
    )


_TAG_RE = re.compile(r"\{\{([^}]+)\}\}")
_VARIABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_CONTROL_PREFIXES = ("#if ", "#each ", "/if", "/each")
_LOOP_BINDINGS = ("this", "@index")


def check_variable_syntax(content: str, context: Mapping[str, Any]) -> RuleResult:
    tags = _TAG_RE.findall(content)
    invalid = [
        "{{" + tag + "}}"
        for tag in tags
        if not tag.strip().startswith(_CONTROL_PREFIXES)
        and tag.strip() not in _LOOP_BINDINGS
        and not _VARIABLE_NAME_RE.match(tag.strip())
    ]
    if not invalid:
        return RuleResult(True, f"All {len(tags)} variables use correct syntax", score=100)
    return RuleResult(
        passed=False,
        score=50,
        message=f"Invalid variable syntax found: {', '.join(invalid)}",
        suggestions=(
            "Use alphanumeric variable names with underscores",
            "Start variable names with letters",
            "Avoid special characters in variable names",
        ),
    )


def check_conditional_blocks(content: str, context: Mapping[str, Any]) -> RuleResult:
    openings = len(re.findall(r"\{\{#(?:if|each)\s+\w+\}\}", content))
    closings = len(re.findall(r"\{\{/(?:if|each)\}\}", content))
    if openings == closings:
        return RuleResult(True, "All conditional blocks are properly closed", score=100)
    return RuleResult(
        passed=False,
        score=50,
        message=f"Mismatched conditional blocks: {openings} openings, {closings} closings",
        suggestions=(
            "Ensure all {{#if}} blocks have corresponding {{/if}}",
            "Ensure all {{#each}} blocks have corresponding {{/each}}",
        ),
    )


CLARITY_INDICATORS = (
    "kroki", "krok", "instrukcja", "zrób", "wykonaj",
    "step", "instruction", "do", "execute", "follow",
    "1.", "2.", "3.", "●", "■", "→",
)


def check_instruction_clarity(content: str, context: Mapping[str, Any]) -> RuleResult:
    return _scored(
        _count_markers(content, CLARITY_INDICATORS), 15, 60,
        "Instructions appear clear with {found} clarity indicators",
        "Instructions may be unclear (only {found} clarity indicators)",
        (
            "Add numbered steps for complex processes",
            "Use clear action verbs",
            "Include bullet points for lists",
        ),
    )


CULTURAL_MARKERS = {
    "pl": ("polski", "kontekst kulturowy", "wartości polskie", "społeczeństwo"),
    "en": ("cultural context", "english", "social context", "community values"),
}


def check_cultural_adaptation(content: str, context: Mapping[str, Any]) -> RuleResult:
    markers = CULTURAL_MARKERS.get(_language(context), ())
    return _scored(
        _count_markers(content, markers), 25, 50,
        "Template shows cultural adaptation with {found} markers",
        "Template may lack cultural adaptation ({found} markers found)",
        (
            "Add cultural context references",
            "Include language-specific examples",
            "Consider local values and norms",
        ),
    )


_EXAMPLE_RE = re.compile(r"przykład|example|np\.|e\.g\.", re.IGNORECASE)
_QUOTED_RE = re.compile(r'"[^"]+"')


def check_example_quality(content: str, context: Mapping[str, Any]) -> RuleResult:
    references = len(_EXAMPLE_RE.findall(content))
    if references == 0:
        return RuleResult(
            passed=True,
            score=80,
            message="No examples found (not required for all templates)",
            suggestions=("Consider adding examples to improve clarity",),
        )
    specific = len(_QUOTED_RE.findall(content))
    score = min(100.0, specific / references * 100)
    passed = score >= 60
    return RuleResult(
        passed=passed,
        score=score,
        message=(
            f"Examples appear specific ({specific} specific examples)"
            if passed
            else f"Examples may be too generic ({specific} specific examples for {references} references)"
        ),
        suggestions=() if passed else (
            "Provide concrete examples with quotes",
            "Use realistic data in examples",
        ),
    )


OUTPUT_SPEC_MARKERS = {
    "pl": ("format", "struktura", "wymagane pola"),
    "en": ("format", "structure", "required fields"),
}


def check_output_completeness(content: str, context: Mapping[str, Any]) -> RuleResult:
    best_found, best_total = 0, 1
    for markers in OUTPUT_SPEC_MARKERS.values():
        found = _count_markers(content, markers)
        if found / len(markers) > best_found / best_total:
            best_found, best_total = found, len(markers)
    score = best_found / best_total * 100
    passed = score >= 80
    return RuleResult(
        passed=passed,
        score=score,
        message=(
            "Output specification appears complete"
            if passed
            else f"Output specification may be incomplete ({best_found}/{best_total} indicators found)"
        ),
        suggestions=() if passed else (
            "Specify exact output format",
            "Define required output fields",
            "Provide example output structure",
        ),
    )


GDPR_INDICATORS = (
    "anonim", "dane osobowe", "gdpr", "prywatność", "zgoda",
    "anonymous", "personal data", "privacy", "consent", "pii",
)


def check_gdpr_compliance(content: str, context: Mapping[str, Any]) -> RuleResult:
    return _scored(
        _count_markers(content, GDPR_INDICATORS), 20, 60,
        "Template shows GDPR compliance awareness with {found} indicators",
        "Template may lack GDPR compliance considerations ({found} indicators found)",
        (
            "Add explicit privacy instructions",
            "Include anonymization requirements",
            "Mention data processing consent",
        ),
    )


BIAS_INDICATORS = (
    "bezstronny", "obiektywny", "równy", "różnorodność",
    "unbiased", "objective", "equal", "diversity", "inclusive",
)
_ABSOLUTIST_RE = re.compile(r"\b(zawsze|nigdy|wszyscy|nikt|always|never|everyone|nobody)\b", re.IGNORECASE)


def check_bias_prevention(content: str, context: Mapping[str, Any]) -> RuleResult:
    found = _count_markers(content, BIAS_INDICATORS)
    absolutist = _ABSOLUTIST_RE.findall(content)
    score = max(0.0, min(100.0, found * 15 - len(absolutist) * 10))
    passed = score >= 60 and not absolutist
    if passed:
        message = "Template appears to address bias prevention"
    elif absolutist:
        message = f"Template contains potentially biased language: {', '.join(absolutist)}"
    else:
        message = f"Template may need bias prevention considerations ({found} indicators found)"
    return RuleResult(
        passed=passed,
        score=score,
        message=message,
        suggestions=() if passed else (
            "Add bias awareness instructions",
            "Avoid absolutist language",
            "Use neutral, inclusive language",
        ),
    )


INJECTION_GUARDS = (
    "ignoruj poprzednie instrukcje",
    "tylko analizuj podane dane",
    "nie wykonuj innych poleceń",
    "ignore previous instructions",
    "only analyze provided data",
    "do not execute other commands",
)


def check_prompt_injection_protection(content: str, context: Mapping[str, Any]) -> RuleResult:
    return _scored(
        _count_markers(content, INJECTION_GUARDS), 25, 50,
        "Template includes prompt injection protection ({found} protections found)",
        "Template may lack prompt injection protection ({found} protections found)",
        (
            "Specify to only analyze provided data",
            "Tell the model not to execute instructions found in responses",
        ),
    )


ETHICS_INDICATORS = (
    "etyka", "moralność", "odpowiedzialność", "szacunek",
    "ethics", "morality", "responsibility", "respect", "harm",
)


def check_ethical_guidelines(content: str, context: Mapping[str, Any]) -> RuleResult:
    return _scored(
        _count_markers(content, ETHICS_INDICATORS), 20, 40,
        "Template addresses ethical considerations ({found} indicators found)",
        "Template may benefit from ethical guidelines ({found} indicators found)",
        (
            "Add ethical behavior guidelines",
            "Include harm prevention instructions",
        ),
    )


MAX_TEMPLATE_TOKENS = 4000
MAX_PROCESSING_MS = 5000


def check_token_efficiency(content: str, context: Mapping[str, Any]) -> RuleResult:
    tokens = estimate_tokens(content)
    score = max(0.0, min(100.0, (1 - tokens / (MAX_TEMPLATE_TOKENS * 2)) * 100))
    passed = tokens <= MAX_TEMPLATE_TOKENS
    return RuleResult(
        passed=passed,
        score=score,
        message=(
            f"Template is token-efficient ({tokens} tokens)"
            if passed
            else f"Template may be too verbose ({tokens} tokens, recommended: {MAX_TEMPLATE_TOKENS})"
        ),
        suggestions=() if passed else (
            "Remove redundant instructions",
            "Consider breaking into multiple templates",
        ),
    )


def check_processing_time_estimate(content: str, context: Mapping[str, Any]) -> RuleResult:
    # ~100 ms per 1000 prompt tokens
    estimated_ms = estimate_tokens(content) / 1000 * 100
    score = max(0.0, min(100.0, (1 - estimated_ms / MAX_PROCESSING_MS) * 100))
    passed = estimated_ms <= MAX_PROCESSING_MS
    return RuleResult(
        passed=passed,
        score=score,
        message=(
            f"Estimated processing time is acceptable (~{estimated_ms:.0f}ms)"
            if passed
            else f"Template may be slow to process (~{estimated_ms:.0f}ms, recommended: <{MAX_PROCESSING_MS}ms)"
        ),
        suggestions=() if passed else ("Reduce template complexity",),
    )


SIZE_INDICATORS = (
    "maksymalnie", "limit", "nie więcej niż", "do",
    "maximum", "no more than", "up to",
)


def check_output_size_optimization(content: str, context: Mapping[str, Any]) -> RuleResult:
    return _scored(
        _count_markers(content, SIZE_INDICATORS), 25, 50,
        "Template includes output size constraints ({found} indicators found)",
        "Template may benefit from output size constraints ({found} indicators found)",
        (
            "Add output size limits",
            "Specify maximum response length",
        ),
    )


def default_template_rules() -> List[ValidationRule]:
    return [
        ValidationRule("required_sections", "Required Sections Present",
                       "Template must contain all required sections",
                       "structure", "error", check_required_sections),
        ValidationRule("json_structure", "Valid JSON Structure",
                       "Template output must be valid JSON",
                       "structure", "error", check_json_structure),
        ValidationRule("variable_syntax", "Variable Syntax Check",
                       "Template variables must use correct syntax",
                       "structure", "error", check_variable_syntax),
        ValidationRule("conditional_blocks", "Conditional Block Validation",
                       "Conditional blocks must be properly structured",
                       "structure", "warning", check_conditional_blocks),
        ValidationRule("instruction_clarity", "Instruction Clarity",
                       "Instructions must be clear and unambiguous",
                       "content", "warning", check_instruction_clarity),
        ValidationRule("cultural_adaptation", "Cultural Adaptation",
                       "Template must be culturally adapted",
                       "content", "info", check_cultural_adaptation),
        ValidationRule("example_quality", "Example Quality",
                       "Examples must be relevant and illustrative",
                       "content", "warning", check_example_quality),
        ValidationRule("output_completeness", "Output Completeness",
                       "Output specification must be complete",
                       "content", "error", check_output_completeness),
        ValidationRule("gdpr_compliance", "GDPR Compliance",
                       "Template must comply with GDPR requirements",
                       "compliance", "error", check_gdpr_compliance),
        ValidationRule("bias_prevention", "Bias Prevention",
                       "Template must avoid biased language",
                       "compliance", "warning", check_bias_prevention),
        ValidationRule("prompt_injection_protection", "Prompt Injection Protection",
                       "Template must be protected against prompt injection",
                       "compliance", "error", check_prompt_injection_protection),
        ValidationRule("ethical_guidelines", "Ethical Guidelines",
                       "Template must follow ethical guidelines",
                       "compliance", "warning", check_ethical_guidelines),
        ValidationRule("token_efficiency", "Token Efficiency",
                       "Template should be token-efficient",
                       "performance", "info", check_token_efficiency),
        ValidationRule("processing_time_estimate", "Processing Time Estimate",
                       "Template should have reasonable processing time",
                       "performance", "info", check_processing_time_estimate),
        ValidationRule("output_size_optimization", "Output Size Optimization",
                       "Output should be appropriately sized",
                       "performance", "warning", check_output_size_optimization),
    ]


# =============================================================================
# OUTPUT RULES
# =============================================================================

PII_PATTERNS = {
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "national_id": re.compile(r"\b\d{11}\b"),
    "phone": re.compile(r"\b\d{3}-\d{3}-\d{4}\b"),
    "date": re.compile(r"\b(?:\d{2}/\d{2}/\d{4}|\d{4}-\d{2}-\d{2})\b"),
}

DEFAULT_EXPECTED_SECTIONS = ("results", "summary", "analysis")


def find_pii(text: str) -> Dict[str, List[str]]:
    """Return PII-like matches by kind (only kinds with matches)."""
    found: Dict[str, List[str]] = {}
    for kind, pattern in PII_PATTERNS.items():
        matches = sorted(set(pattern.findall(text)))
        if matches:
            found[kind] = matches
    return found


def check_output_json_structure(output: Any, context: Mapping[str, Any]) -> RuleResult:
    if isinstance(output, dict):
        return RuleResult(True, "Output is a JSON object", score=100)
    return RuleResult(
        passed=False,
        score=0,
        message="Output must be valid JSON object",
        suggestions=("Ensure LLM returns JSON format", "Check response_format parameter"),
    )


def check_output_schema(output: Any, context: Mapping[str, Any]) -> RuleResult:
    schema = context.get("schema") or {}
    if not isinstance(output, dict):
        return RuleResult(False, "Output is not an object",
                          suggestions=("Ensure output is a valid JSON object",))
    required = schema.get("required") or []
    missing = [prop for prop in required if prop not in output]
    if missing:
        joined = ", ".join(missing)
        return RuleResult(False, f"Missing required properties: {joined}",
                          suggestions=(f"Ensure output includes: {joined}",))
    return RuleResult(True, "Output matches schema requirements", score=100)


def check_pii_leakage(output: Any, context: Mapping[str, Any]) -> RuleResult:
    serialized = json.dumps(output, ensure_ascii=False, default=str)
    found = find_pii(serialized)
    if not found:
        return RuleResult(True, "No PII detected in output", score=100)
    count = sum(len(v) for v in found.values())
    return RuleResult(
        passed=False,
        score=0,
        message=f"PII detected in output: {count} instances ({', '.join(sorted(found))})",
        suggestions=(
            "Implement stronger anonymization",
            "Add PII detection in post-processing",
            "Ensure proper data redaction",
        ),
    )


def check_output_quality(output: Any, context: Mapping[str, Any]) -> RuleResult:
    if not isinstance(output, dict) or not output:
        return RuleResult(
            passed=False,
            score=0,
            message="Output is not a valid object",
            suggestions=("Ensure LLM returns structured output",),
            severity="error",
        )
    expected = context.get("expected_sections") or DEFAULT_EXPECTED_SECTIONS
    present = sum(1 for key in expected if key in output)
    completeness = present / len(expected) * 50
    depth = min(50, len(output) * 5)
    score = completeness + depth
    passed = score >= 60
    return RuleResult(
        passed=passed,
        score=score,
        message=(
            f"Output quality is acceptable (score: {score:g})"
            if passed
            else f"Output quality needs improvement (score: {score:g})"
        ),
        suggestions=() if passed else (
            "Ensure output includes expected sections",
            "Add more detailed analysis results",
            "Provide comprehensive summaries",
        ),
        severity=None if passed else ("error" if score < 50 else "warning"),
    )


OUTPUT_SCHEMA_RULE = ValidationRule(
    "output_schema_compliance", "Output Schema Compliance",
    "Output must carry the schema's required properties",
    "structure", "error", check_output_schema,
)


def default_output_rules() -> List[ValidationRule]:
    return [
        ValidationRule("output_json_structure", "Output JSON Structure",
                       "Output must be a JSON object",
                       "structure", "error", check_output_json_structure),
        ValidationRule("pii_leakage", "PII Leakage",
                       "Output must not contain personal data",
                       "compliance", "error", check_pii_leakage),
        ValidationRule("output_quality", "Output Quality",
                       "Output should carry expected sections with some depth",
                       "content", "warning", check_output_quality),
    ]


# =============================================================================
# EVALUATION
# =============================================================================

def evaluate(rules: Sequence[ValidationRule], subject: Any, context: Mapping[str, Any]) -> Tuple[
    List[ValidationIssue], Dict[str, int]
]:
    """Run every rule once and collect failures plus counters."""
    issues: List[ValidationIssue] = []
    passed_rules = 0
    critical = 0
    for rule in rules:
        try:
            result = rule.check(subject, context)
        except Exception as exc:
            _logger.warning("validation.rule_error", rule=rule.id, error=str(exc))
            critical += 1
            issues.append(ValidationIssue(
                rule=rule.id,
                category=rule.category,
                severity="error",
                message=f"Validation rule failed: {exc}",
                suggestions=("Check rule implementation", "Review input format"),
            ))
            continue

        if result.passed:
            passed_rules += 1
            continue

        severity = result.severity or rule.severity
        if severity == "error":
            critical += 1
        issues.append(ValidationIssue(
            rule=rule.id,
            category=rule.category,
            severity=severity,
            message=result.message,
            suggestions=tuple(result.suggestions),
            score=result.score,
        ))

    metrics = {
        "total_rules": len(rules),
        "passed_rules": passed_rules,
        "failed_rules": len(rules) - passed_rules,
        "critical_failures": critical,
    }
    return issues, metrics


def build_report(issues: List[ValidationIssue], metrics: Dict[str, int],
                 recommendations: List[str]) -> ValidationReport:
    total = metrics["total_rules"]
    return ValidationReport(
        overall_score=(metrics["passed_rules"] / total * 100) if total else 0.0,
        passed=metrics["critical_failures"] == 0,
        errors=[i for i in issues if i.severity == "error"],
        warnings=[i for i in issues if i.severity == "warning"],
        info=[i for i in issues if i.severity == "info"],
        metrics=metrics,
        recommendations=recommendations,
    )


_TEMPLATE_RECOMMENDATIONS = (
    ("error", "structure", "Review template structure and fix critical formatting issues"),
    ("error", "compliance", "Address compliance requirements immediately"),
    ("error", "content", "Improve content quality and completeness"),
    ("warning", "content", "Consider enhancing content for better results"),
    ("warning", "compliance", "Review compliance guidance in the template"),
    ("warning", "performance", "Optimize template for better performance"),
    ("info", "performance", "Optimize template for better performance"),
    ("info", "content", "Consider enhancing content for better results"),
)

_OUTPUT_RECOMMENDATIONS = {
    "output_json_structure": "Request JSON output from the model",
    "output_schema_compliance": "Fix output schema validation issues",
    "pii_leakage": "Implement stronger PII detection and redaction",
    "output_quality": "Improve output quality through better prompting",
}


def _dedupe(items: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(items))


def template_recommendations(issues: Sequence[ValidationIssue]) -> List[str]:
    failed = {(i.severity, i.category) for i in issues}
    return _dedupe(text for severity, category, text in _TEMPLATE_RECOMMENDATIONS
                   if (severity, category) in failed)


def output_recommendations(issues: Sequence[ValidationIssue]) -> List[str]:
    return _dedupe(_OUTPUT_RECOMMENDATIONS[i.rule] for i in issues if i.rule in _OUTPUT_RECOMMENDATIONS)


class QualityValidator:
    """Pluggable rule engine for templates and model outputs."""

    def __init__(
        self,
        template_rules: Optional[Sequence[ValidationRule]] = None,
        output_rules: Optional[Sequence[ValidationRule]] = None,
    ):
        self._template_rules: Dict[str, ValidationRule] = {
            r.id: r for r in (template_rules if template_rules is not None else default_template_rules())
        }
        self._output_rules: List[ValidationRule] = list(
            output_rules if output_rules is not None else default_output_rules()
        )

    @property
    def rules(self) -> List[ValidationRule]:
        return list(self._template_rules.values())

    def add_rule(self, rule: ValidationRule) -> None:
        if rule.category not in CATEGORIES:
            raise ValueError(f"Unknown rule category: {rule.category}")
        if rule.severity not in SEVERITIES:
            raise ValueError(f"Unknown rule severity: {rule.severity}")
        self._template_rules[rule.id] = rule

    def remove_rule(self, rule_id: str) -> bool:
        return self._template_rules.pop(rule_id, None) is not None

    def rules_by_category(self, category: str) -> List[ValidationRule]:
        return [r for r in self._template_rules.values() if r.category == category]

    def validate_template(self, content: str, context: Optional[Mapping[str, Any]] = None) -> ValidationReport:
        issues, metrics = evaluate(self.rules, content, context or {})
        report = build_report(issues, metrics, template_recommendations(issues))
        _logger.debug(
            "validation.template",
            passed=report.passed,
            score=round(report.overall_score, 1),
            failed=report.failed_rules,
        )
        return report

    def validate_output(
        self,
        output: Any,
        schema: Optional[Mapping[str, Any]] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> ValidationReport:
        rules = list(self._output_rules)
        ctx: Dict[str, Any] = dict(context or {})
        if schema:
            ctx["schema"] = schema
            rules.insert(1, OUTPUT_SCHEMA_RULE)
        issues, metrics = evaluate(rules, output, ctx)
        report = build_report(issues, metrics, output_recommendations(issues))
        _logger.debug(
            "validation.output",
            passed=report.passed,
            score=round(report.overall_score, 1),
            failed=report.failed_rules,
        )
        return report
