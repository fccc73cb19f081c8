from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Pattern, Tuple

from ..core.errors import UnsupportedLanguage, ValidationError
from ..settings import LanguagePolicy

# tab, LF and CR are the only control characters allowed through
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

_LOOPS: Dict[str, Pattern] = {
    "python": re.compile(r"^\s*(?:async\s+)?(?:for|while)\b", re.M),
    "javascript": re.compile(r"\b(?:for|while)\s*\(|\bdo\s*\{|\.(?:forEach|map|reduce)\s*\("),
    "cpp": re.compile(r"\b(?:for|while)\s*\(|\bdo\s*\{"),
    "java": re.compile(r"\b(?:for|while)\s*\(|\bdo\s*\{|\.forEach\s*\("),
}
_FUNCTIONS: Dict[str, Pattern] = {
    "python": re.compile(r"^\s*(?:async\s+)?def\s+\w+|\blambda\b", re.M),
    "javascript": re.compile(r"\bfunction\b|=>"),
    "cpp": re.compile(r"^\s*[\w:<>,\*&\s]+\s+\**\w+\s*\([^;{}]*\)\s*(?:const\s*)?\{", re.M),
    "java": re.compile(
        r"^\s*(?:(?:public|private|protected|static|final|synchronized)\s+)*[\w<>\[\],\s]+\s+\w+\s*\([^;{}]*\)\s*(?:throws[\w\s,]+)?\{",
        re.M,
    ),
}

LOOP_WEIGHT = 3.0
FUNCTION_WEIGHT = 2.0
LINES_PER_POINT = 25.0


@dataclass(frozen=True)
class ValidationReport:
    """Verdict for code that passed every check. `complexity` is advisory only."""
    language: str
    complexity: float
    loop_count: int
    function_count: int
    line_count: int


class CodeValidator:
    """Static, stateless check of one (code, language) pair.

    Order: language known, size limits, control characters, forbidden
    patterns. The first failing check raises ValidationError; identical
    input always yields the identical verdict.
    """

    def __init__(self, languages: Mapping[str, LanguagePolicy]):
        self.languages = dict(languages)
        self._rules: Dict[str, List[Tuple[str, Pattern]]] = {
            name: [(rule.category, re.compile(rule.pattern, re.M)) for rule in policy.forbidden_patterns]
            for name, policy in self.languages.items()
        }

    def validate(self, code: str, language: str, input: str = "") -> ValidationReport:
        policy = self.languages.get(language)
        if policy is None:
            raise UnsupportedLanguage(language, self.languages.keys())

        if not code or not code.strip():
            raise ValidationError("Code must not be empty", reason="empty_code")
        if len(code) > policy.max_code_length:
            raise ValidationError(
                f"Code too long (max {policy.max_code_length} characters)", reason="code_too_long"
            )
        if input and len(input) > policy.max_input_length:
            raise ValidationError(
                f"Input too long (max {policy.max_input_length} characters)", reason="input_too_long"
            )

        if _CONTROL_CHARS.search(code) or (input and _CONTROL_CHARS.search(input)):
            raise ValidationError(
                "Code contains null bytes or control characters", reason="invalid_characters"
            )

        for category, rx in self._rules[language]:
            m = rx.search(code)
            if m:
                line = code.count("\n", 0, m.start()) + 1
                raise ValidationError(
                    f"Forbidden operation ({category.replace('_', ' ')}) on line {line}: "
                    f"{m.group(0).strip()}",
                    reason=f"forbidden_{category}",
                    category=category,
                )

        return self._score(code, language)

    def _score(self, code: str, language: str) -> ValidationReport:
        loops = len(_LOOPS[language].findall(code)) if language in _LOOPS else 0
        funcs = len(_FUNCTIONS[language].findall(code)) if language in _FUNCTIONS else 0
        lines = len(code.splitlines())
        score = LOOP_WEIGHT * loops + FUNCTION_WEIGHT * funcs + lines / LINES_PER_POINT
        return ValidationReport(
            language=language,
            complexity=round(score, 2),
            loop_count=loops,
            function_count=funcs,
            line_count=lines,
        )
