"""
Quality validators.

Each validator is a pure function of a ``TicketSpec`` producing one
``ValidationResult``. Validators never depend on each other or on execution
order. Weights are supplied by the engine from configuration; the
``default_weight`` here is only the fallback.

Validators (criterion, default weight, pass threshold):
- completeness       1.0  0.9
- testability        0.9  0.8
- clarity            0.8  0.7
- consistency        0.8  0.7
- context_alignment  0.7  0.7
- feasibility        0.7  0.7
- scope              0.6  0.6
- api_changes        0.8  0.7  (only for tickets with endpoint changes)
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from .models import TicketSpec, ValidationResult


@dataclass
class Assessment:
    """Raw output of a validator before it is wrapped in a result."""

    score: float
    issues: List[str] = field(default_factory=list)
    blockers: List[str] = field(default_factory=list)


class Validator(ABC):
    """Base class for all validators."""

    criterion: str = ""
    default_weight: float = 1.0
    pass_threshold: float = 0.7

    def applies_to(self, artifact: TicketSpec) -> bool:
        """Return False to exclude this validator from a scoring pass."""
        return True

    @abstractmethod
    def assess(self, artifact: TicketSpec) -> Assessment:
        """Score the artifact in [0, 1] and collect issues and blockers."""

    def validate(
        self, artifact: TicketSpec, weight: Optional[float] = None
    ) -> ValidationResult:
        assessment = self.assess(artifact)
        score = round(min(1.0, max(0.0, assessment.score)), 4)
        passed = score >= self.pass_threshold
        return ValidationResult(
            criterion=self.criterion,
            passed=passed,
            score=score,
            weight=weight if weight is not None else self.default_weight,
            issues=list(assessment.issues),
            blockers=list(assessment.blockers),
            message=self.message(passed, score),
        )

    def message(self, passed: bool, score: float) -> str:
        label = self.criterion.replace("_", " ").capitalize()
        if passed:
            return f"{label} check passed ({score:.0%})"
        return f"{label} needs improvement ({score:.0%})"

    @staticmethod
    def count_score(actual: int, minimum: int, ideal: int) -> float:
        """Linear score: 0 below ``minimum``, 1 at or above ``ideal``."""
        if actual < minimum:
            return 0.0
        if actual >= ideal:
            return 1.0
        return (actual - minimum) / max(1, ideal - minimum)


def _words(text: str) -> List[str]:
    return re.findall(r"[A-Za-z0-9'-]+", text)


class CompletenessValidator(Validator):
    """Are the essential sections present?"""

    criterion = "completeness"
    default_weight = 1.0
    pass_threshold = 0.9

    def assess(self, artifact: TicketSpec) -> Assessment:
        result = Assessment(score=0.0)
        title = artifact.title.strip()
        if len(title) < 3:
            result.blockers.append("Title is missing or too short")
        elif len(title) < 10:
            result.score += 0.15
            result.issues.append("Title is very short; describe the outcome")
        else:
            result.score += 0.25

        if artifact.ticket_type:
            result.score += 0.15
        else:
            result.blockers.append("Ticket type not detected")

        criteria = len(artifact.acceptance_criteria)
        if criteria == 0:
            result.blockers.append("No acceptance criteria defined")
        elif criteria == 1:
            result.score += 0.15
            result.issues.append("Only one acceptance criterion; add edge cases")
        elif criteria == 2:
            result.score += 0.2
        else:
            result.score += 0.25

        if artifact.description.strip() or artifact.assumptions:
            result.score += 0.15
        else:
            result.score += 0.05
            result.issues.append("No description or assumptions provided")

        result.score += 0.1 if artifact.repo_paths else 0.05
        if artifact.has_repository_context:
            result.score += 0.1
        return result


MEASURABLE_WORDS = {
    "when", "then", "should", "must", "can", "will", "displays", "shows",
    "returns", "creates", "updates", "deletes", "validates", "allows",
    "prevents", "redirects", "sends",
}
VAGUE_WORDS = {
    "better", "improved", "good", "nice", "clean", "properly", "correctly",
    "well", "appropriately", "reasonable",
}
_GIVEN_WHEN_THEN = re.compile(r"\bgiven\b.*\bwhen\b.*\bthen\b", re.IGNORECASE | re.DOTALL)


class TestabilityValidator(Validator):
    """Can each acceptance criterion be verified?"""

    criterion = "testability"
    default_weight = 0.9
    pass_threshold = 0.8

    def assess(self, artifact: TicketSpec) -> Assessment:
        criteria = artifact.acceptance_criteria
        if not criteria:
            return Assessment(
                score=0.0, blockers=["No acceptance criteria to test against"]
            )

        result = Assessment(score=0.0)
        measurable = 0
        for criterion in criteria:
            words = {w.lower() for w in _words(criterion)}
            if words & MEASURABLE_WORDS:
                measurable += 1
            if words & VAGUE_WORDS:
                result.score -= 0.05
                result.issues.append(f"Vague wording in criterion: {criterion!r}")

        ratio = measurable / len(criteria)
        if ratio >= 0.8:
            result.score += 0.4
        elif ratio >= 0.5:
            result.score += 0.25
        else:
            result.score += 0.1
            result.issues.append("Most acceptance criteria lack a measurable outcome")

        structured = sum(1 for c in criteria if _GIVEN_WHEN_THEN.search(c))
        if structured:
            result.score += min(0.3, 0.1 * structured)
        else:
            result.issues.append("Use Given/When/Then form for acceptance criteria")

        result.score += 0.2 if artifact.ticket_type in ("feature", "bug") else 0.1
        if len(artifact.description) > 50:
            result.score += 0.1

        result.score = min(1.0, max(0.0, result.score))
        if result.score < 0.4:
            result.blockers.append(
                "Acceptance criteria are not testable - add measurable outcomes"
            )
        return result


_DIRECTIVE_WORDS = {"must", "should", "will", "when", "then", "given"}


class ClarityValidator(Validator):
    """Is the ticket specific and unambiguous?"""

    criterion = "clarity"
    default_weight = 0.8
    pass_threshold = 0.7

    def assess(self, artifact: TicketSpec) -> Assessment:
        text = " ".join([artifact.description, *artifact.acceptance_criteria]).strip()
        if not text:
            return Assessment(
                score=0.0,
                blockers=["Ticket has no description or acceptance criteria"],
            )

        words = _words(text)
        score = 0.5
        if len(words) > 50:
            score += 0.2
        if re.search(r"\d", text):
            score += 0.15
        if {w.lower() for w in words} & _DIRECTIVE_WORDS:
            score += 0.15
        score = min(1.0, score)

        result = Assessment(score=score)
        if score < 0.7:
            result.issues.append(
                "Add specifics: concrete values, limits and expected behaviour"
            )
        if score < 0.4:
            result.blockers.append("Ticket is too ambiguous to implement")
        return result


CONTRADICTORY_KEYWORDS = (
    ("always", "never"),
    ("must", "optional"),
    ("required", "optional"),
    ("public", "private"),
    ("read-only", "editable"),
)
OPPOSITE_ACTIONS = (
    ("enable", "disable"),
    ("show", "hide"),
    ("allow", "prevent"),
    ("create", "delete"),
)


def _action_subjects(verb: str, criteria: List[str]) -> set:
    """Objects of ``verb`` across criteria ("show the banner" -> "the banner")."""
    pattern = re.compile(rf"\b{verb}s?\b\s+(.+)")
    subjects = set()
    for criterion in criteria:
        match = pattern.search(criterion)
        if match:
            subjects.add(match.group(1).strip())
    return subjects


class ConsistencyValidator(Validator):
    """Do the description and criteria contradict each other?"""

    criterion = "consistency"
    default_weight = 0.8
    pass_threshold = 0.7

    def assess(self, artifact: TicketSpec) -> Assessment:
        result = Assessment(score=1.0)
        contradictions = 0
        text = " ".join([artifact.description, *artifact.acceptance_criteria]).lower()
        words = set(re.findall(r"[a-z][a-z-]*", text))

        for first, second in CONTRADICTORY_KEYWORDS:
            if first in words and second in words:
                contradictions += 1
                result.issues.append(f"Conflicting terms: '{first}' and '{second}'")

        criteria = [c.lower().strip(" .") for c in artifact.acceptance_criteria]
        for first, second in OPPOSITE_ACTIONS:
            enabled = _action_subjects(first, criteria)
            disabled = _action_subjects(second, criteria)
            for subject in sorted(enabled & disabled):
                contradictions += 1
                result.issues.append(f"Criteria both {first} and {second} '{subject}'")

        result.score = 1.0 - 0.2 * contradictions
        if contradictions > 2:
            result.blockers.append("Ticket contains multiple contradictory requirements")
        return result


class ContextAlignmentValidator(Validator):
    """Do the referenced paths fit the repository context?"""

    criterion = "context_alignment"
    default_weight = 0.7
    pass_threshold = 0.7

    def assess(self, artifact: TicketSpec) -> Assessment:
        if not artifact.has_repository_context:
            return Assessment(score=1.0)

        result = Assessment(score=0.8)
        paths = artifact.repo_paths
        if not paths:
            result.score -= 0.2
            result.issues.append("No repository paths referenced")
        for path in paths:
            if not path.strip() or ".." in path or path.startswith("/"):
                result.score -= 0.1
                result.issues.append(f"Invalid repository path: {path!r}")
        if len(paths) >= 3:
            result.score += 0.2
        return result


_IMPOSSIBLE_PATTERNS = (
    re.compile(r"real[- ]?time.*100%\s*uptime", re.IGNORECASE),
    re.compile(r"infinite\s+storage", re.IGNORECASE),
    re.compile(r"zero\s+latency", re.IGNORECASE),
    re.compile(r"instant(?:ly)?\s+process", re.IGNORECASE),
    re.compile(r"unlimited\s+concurrent", re.IGNORECASE),
)


class FeasibilityValidator(Validator):
    """Can this be built as described?"""

    criterion = "feasibility"
    default_weight = 0.7
    pass_threshold = 0.7

    def assess(self, artifact: TicketSpec) -> Assessment:
        result = Assessment(score=0.9)
        text = " ".join([artifact.description, *artifact.acceptance_criteria])
        for pattern in _IMPOSSIBLE_PATTERNS:
            match = pattern.search(text)
            if match:
                result.score -= 0.3
                result.issues.append(f"Unrealistic requirement: {match.group(0)!r}")
        if len(artifact.acceptance_criteria) > 10:
            result.score -= 0.1
            result.issues.append("Large number of acceptance criteria")
        if result.score < 0.5:
            result.blockers.append("Ticket contains requirements that cannot be met")
        return result


MAX_CRITERIA_BEFORE_SPLIT = 12
_BROAD_SCOPE_PATTERNS = (
    re.compile(r"entire\s+system", re.IGNORECASE),
    re.compile(r"all\s+modules", re.IGNORECASE),
    re.compile(r"complete\s+refactor", re.IGNORECASE),
    re.compile(r"redesign\s+everything", re.IGNORECASE),
    re.compile(r"migrate\s+all", re.IGNORECASE),
)


class ScopeValidator(Validator):
    """Is this one ticket's worth of work?"""

    criterion = "scope"
    default_weight = 0.6
    pass_threshold = 0.6

    def assess(self, artifact: TicketSpec) -> Assessment:
        criteria = len(artifact.acceptance_criteria)
        if criteria == 0:
            return Assessment(
                score=0.0, blockers=["Scope is undefined without acceptance criteria"]
            )

        result = Assessment(score=0.7)
        if criteria == 1:
            result.score -= 0.2
            result.issues.append("Scope may be too narrow for a standalone ticket")
        elif criteria > 8:
            result.score -= 0.3
            result.issues.append("Scope is broad; consider splitting")
        elif 2 <= criteria <= 6:
            result.score += 0.3
        if criteria > MAX_CRITERIA_BEFORE_SPLIT:
            result.blockers.append("Scope too broad - must be split into multiple tickets")

        text = f"{artifact.title} {artifact.description}"
        for pattern in _BROAD_SCOPE_PATTERNS:
            if pattern.search(text):
                result.score -= 0.15
                result.issues.append(f"Broad scope phrase: {pattern.pattern!r}")
        if len(artifact.repo_paths) > 10:
            result.score -= 0.1
            result.issues.append("Change touches many files")
        return result


class ApiChangesValidator(Validator):
    """Are endpoint changes described and covered by criteria?"""

    criterion = "api_changes"
    default_weight = 0.8
    pass_threshold = 0.7

    def applies_to(self, artifact: TicketSpec) -> bool:
        return bool(artifact.api_changes)

    def assess(self, artifact: TicketSpec) -> Assessment:
        result = Assessment(score=1.0)
        criteria_text = " ".join(artifact.acceptance_criteria).lower()
        for change in artifact.api_changes:
            endpoint = f"{change.method} {change.path}"
            if not change.path.startswith("/"):
                result.score -= 0.2
                result.issues.append(f"{endpoint}: path must start with '/'")
            if not change.description.strip():
                result.score -= 0.2
                result.issues.append(f"{endpoint}: describe the request and response")
            if change.path.lower() not in criteria_text:
                result.score -= 0.1
                result.issues.append(f"{endpoint}: not covered by acceptance criteria")
        return result


def default_validators() -> List[Validator]:
    """The product validator set."""
    return [
        CompletenessValidator(),
        TestabilityValidator(),
        ClarityValidator(),
        ConsistencyValidator(),
        ContextAlignmentValidator(),
        FeasibilityValidator(),
        ScopeValidator(),
        ApiChangesValidator(),
    ]
