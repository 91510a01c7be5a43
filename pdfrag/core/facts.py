"""Rule-based (and optionally LLM-assisted) fact extraction from chunk text.

Pulls measurements, tolerances, temperatures, pressures, dimensions, dates,
times, requirement keywords, definitions, section references and numeric
ranges out of technical prose. Each rule has a fixed confidence. Overlapping
rules are not deduplicated: "±0.05mm" yields both a measurement and a
tolerance.
"""

import re
import time
from dataclasses import dataclass
from typing import Any, Callable

from pdfrag.core.llm import TextGenerator, parse_llm_json_list
from pdfrag.core.logging import get_logger
from pdfrag.core.result import Ok, call_external
from pdfrag.core.schemas_chunks import Fact, FactExtractionResult, FactPosition, FactType

logger = get_logger(__name__)

CONTEXT_RADIUS = 50
LLM_MIN_TEXT_CHARS = 100
LLM_MAX_TEXT_CHARS = 2000
LLM_FACT_CONFIDENCE = 0.7

_UNITS = (
    "mm|cm|m|km|kg|g|mg|l|ml|Hz|kHz|MHz|GHz|V|A|W|kW|MW|Pa|kPa|MPa|bar|psi|N|kN|lb|ft|in|yd|mi|gal|qt|pt|oz"
)

PATTERNS: dict[str, re.Pattern[str]] = {
    "measurement": re.compile(rf"([±]?\d+\.?\d*)\s*([±]?\d+\.?\d*)?\s*({_UNITS})\b", re.I),
    "tolerance": re.compile(r"([±+/-]\s*\d+\.?\d*)\s*(mm|cm|m|%|°|degrees?)?", re.I),
    "temperature": re.compile(r"(-?\d+\.?\d*)\s*°?\s*(C|F|K|celsius|fahrenheit|kelvin)\b", re.I),
    "pressure": re.compile(r"(\d+\.?\d*)\s*(psi|bar|Pa|kPa|MPa|atm|torr)\b", re.I),
    "dimension": re.compile(
        r"(\d+\.?\d*)\s*[xX×]\s*(\d+\.?\d*)\s*([xX×]\s*\d+\.?\d*)?\s*(mm|cm|m|in|ft)?", re.I
    ),
    "date": re.compile(
        r"\b(\d{4}-\d{2}-\d{2}|\d{1,2}[/-]\d{1,2}[/-]\d{2,4}"
        r"|\d{1,2}\s+(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\s+\d{4})\b",
        re.I,
    ),
    "time": re.compile(r"\b(\d{1,2}:\d{2}(?::\d{2})?(?:\s*[AP]M)?|\d{4}\s*hours?)\b", re.I),
    "requirement": re.compile(
        r"\b(shall|must|required|mandatory|obligatory|compulsory|essential)\b", re.I
    ),
    "definition": re.compile(
        r"([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)\s+(is|are|means?|refers?\s+to|defined\s+as)\s+([^.!?]+)",
        re.I,
    ),
    "reference": re.compile(
        r"(?:section|paragraph|para\.?|clause|chapter|appendix|fig(?:ure)?\.?|table)\s+(\d+(?:\.\d+)*)",
        re.I,
    ),
    "range": re.compile(r"(?:between\s+)?(\d+\.?\d*)\s*(?:to|and|-|–|—)\s*(\d+\.?\d*)", re.I),
}

LLM_FACT_PROMPT = """Extract specific facts, measurements, requirements, and definitions from the following text.
Focus on:
- Exact measurements and tolerances
- Technical specifications
- Requirements (shall, must, required)
- Key definitions

Text: {text}

Return a JSON array of facts with structure: {{"type": "measurement|requirement|definition", "value": "...", "context": "..."}}"""


def extract_context(text: str, position: int, radius: int = CONTEXT_RADIUS) -> str:
    """Text within ``radius`` characters of ``position``, stripped."""
    start = max(0, position - radius)
    end = min(len(text), position + radius)
    return text[start:end].strip()


def _enclosing_sentence(text: str, position: int) -> str:
    start = max(text.rfind(ch, 0, position) for ch in ".!?") + 1
    ends = [i for i in (text.find(ch, position) for ch in ".!?") if i != -1]
    end = min(ends) + 1 if ends else len(text)
    return text[start:end].strip()


def _value_group1(match: re.Match[str]) -> str:
    return match.group(1)


def _measurement_value(match: re.Match[str]) -> str:
    value, tolerance = match.group(1), match.group(2)
    return f"{value}±{tolerance}" if tolerance else value


@dataclass(frozen=True)
class FactRule:
    """One regex rule and how to turn its matches into facts."""

    name: str
    fact_type: FactType
    confidence: float
    value: Callable[[re.Match[str]], str] = _value_group1
    unit_group: int | None = None
    context: Callable[[str, re.Match[str]], str] | None = None

    def apply(self, text: str) -> list[Fact]:
        facts = []
        for match in PATTERNS[self.name].finditer(text):
            unit = match.group(self.unit_group) if self.unit_group else None
            context = (
                self.context(text, match)
                if self.context
                else extract_context(text, match.start())
            )
            facts.append(
                Fact(
                    type=self.fact_type,
                    value=self.value(match),
                    unit=unit,
                    context=context,
                    confidence=self.confidence,
                    position=FactPosition(start=match.start(), end=match.end()),
                )
            )
        return facts


RULES: list[FactRule] = [
    FactRule("measurement", FactType.MEASUREMENT, 0.9, _measurement_value, unit_group=3),
    FactRule("tolerance", FactType.TOLERANCE, 0.85, unit_group=2),
    FactRule("temperature", FactType.TEMPERATURE, 0.9, unit_group=2),
    FactRule("pressure", FactType.PRESSURE, 0.9, unit_group=2),
    FactRule(
        "dimension",
        FactType.DIMENSION,
        0.85,
        lambda m: re.sub(r"\s+", "", m.group(0)),
        unit_group=4,
    ),
    FactRule("date", FactType.DATE, 0.8),
    FactRule("time", FactType.TIME, 0.75),
    FactRule(
        "requirement",
        FactType.REQUIREMENT,
        0.7,
        context=lambda text, m: _enclosing_sentence(text, m.start()),
    ),
    FactRule(
        "definition",
        FactType.DEFINITION,
        0.8,
        lambda m: m.group(1).strip(),
        context=lambda text, m: m.group(3).strip(),
    ),
    FactRule("reference", FactType.REFERENCE, 0.9, context=lambda text, m: m.group(0)),
    FactRule(
        "range",
        FactType.SPECIFICATION,
        0.75,
        lambda m: f"{m.group(1)}-{m.group(2)}",
    ),
]


def _build_result(facts: list[Fact], min_confidence: float, started: float) -> FactExtractionResult:
    kept = [f for f in facts if f.confidence >= min_confidence]
    by_type: dict[str, list[Fact]] = {}
    for fact in kept:
        by_type.setdefault(fact.type.value, []).append(fact)

    return FactExtractionResult(
        facts=kept,
        total_facts=len(kept),
        facts_by_type=by_type,
        processing_time_ms=(time.perf_counter() - started) * 1000,
    )


class FactExtractor:
    """Extracts typed facts from text with regex rules and an optional LLM pass."""

    def __init__(
        self,
        generator: TextGenerator | None = None,
        llm_timeout: float | None = 60.0,
    ):
        self.generator = generator
        self.llm_timeout = llm_timeout

    def extract_sync(self, text: str, min_confidence: float = 0.5) -> FactExtractionResult:
        """Rule-only extraction."""
        started = time.perf_counter()
        facts: list[Fact] = []
        for rule in RULES:
            facts.extend(rule.apply(text))
        return _build_result(facts, min_confidence, started)

    async def extract(
        self,
        text: str,
        use_llm: bool = False,
        min_confidence: float = 0.5,
    ) -> FactExtractionResult:
        """
        Extract facts from text.

        Args:
            text: Source text
            use_llm: Also ask the configured generator for facts
            min_confidence: Drop facts below this confidence

        Returns:
            FactExtractionResult with facts grouped by type. LLM failures
            never surface; the rule facts are returned on their own.
        """
        started = time.perf_counter()
        facts: list[Fact] = []
        for rule in RULES:
            facts.extend(rule.apply(text))

        if use_llm and self.generator is not None and len(text) > LLM_MIN_TEXT_CHARS:
            facts.extend(await self._extract_with_llm(text))

        return _build_result(facts, min_confidence, started)

    async def _extract_with_llm(self, text: str) -> list[Fact]:
        truncated = (
            text[:LLM_MAX_TEXT_CHARS] + "..." if len(text) > LLM_MAX_TEXT_CHARS else text
        )
        prompt = LLM_FACT_PROMPT.format(text=truncated)

        result = await call_external(
            "fact_extraction_llm",
            lambda: self.generator.generate(prompt, max_tokens=500, temperature=0.1),
            self.llm_timeout,
        )
        if not isinstance(result, Ok):
            return []

        try:
            items = parse_llm_json_list(result.value)
        except Exception as e:
            logger.debug(f"LLM fact output unparseable, skipping: {e}")
            return []

        facts = []
        valid_types = {t.value for t in FactType}
        for item in items:
            if not isinstance(item, dict) or item.get("type") not in valid_types:
                continue
            if not item.get("value"):
                continue
            unit = item.get("unit")
            facts.append(
                Fact(
                    type=FactType(item["type"]),
                    value=str(item["value"]),
                    unit=unit if isinstance(unit, str) else None,
                    context=str(item.get("context") or ""),
                    confidence=LLM_FACT_CONFIDENCE,
                    position=FactPosition(start=0, end=0),
                )
            )
        return facts

    @staticmethod
    def get_statistics(result: FactExtractionResult) -> dict[str, Any]:
        """Totals, per-type counts and mean confidence."""
        fact_types: dict[str, int] = {}
        total_confidence = 0.0
        for fact in result.facts:
            fact_types[fact.type.value] = fact_types.get(fact.type.value, 0) + 1
            total_confidence += fact.confidence

        return {
            "total_facts": result.total_facts,
            "fact_types": fact_types,
            "avg_confidence": total_confidence / len(result.facts) if result.facts else 0.0,
        }
