"""
Memory Learner
==============

Learns reusable patterns from processed payslips and merges them into
existing memory.

Pattern kinds:
- company / employee identity
- perception and deduction code sets
- concept names (one per perception/deduction concept)
- amount ranges (gross salary and net pay in 500 EUR bands)
- field shape (which top-level fields the extraction produced)
- per-document summary

Merging is additive: usage_count increments and confidence is the
evidence-weighted mean of every observation, where newer observations
(by observation time) carry exponentially more weight. Because the
evidence sums only ever grow by addition, concurrent merges commute.
"""

import logging
import re
from dataclasses import replace
from datetime import datetime, timezone
from difflib import SequenceMatcher
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .config import LearnerConfig
from .errors import ParseError
from .keywords import extract_document_keywords, parse_number
from .models import (
    MemoryPattern,
    PatternObservation,
    PatternType,
    ValidationStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

EVIDENCE_EPOCH = datetime(2020, 1, 1, tzinfo=timezone.utc)
AMOUNT_BAND = 500

# Types whose keys identify an entity exactly; these never merge fuzzily
EXACT_ONLY_TYPES = {
    PatternType.COMPANY,
    PatternType.EMPLOYEE,
    PatternType.SUMMARY,
    PatternType.AMOUNT_RANGE,
}

VALIDATION_CONFIDENCE = {
    ValidationStatus.VALIDATED: (0.95, 1.0),
    ValidationStatus.REJECTED: (0.3, 0.0),
}

Scope = Tuple[str, str, Optional[str]]


def parse_amount(value: Any, field_name: str) -> Optional[float]:
    """
    Parse a monetary amount ("1.234,56 €", "1234.56", 1234.56).

    Raises:
        ParseError: If the value is not numeric
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ParseError(f"Field '{field_name}' must be numeric, got boolean")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        number = parse_number(value)
        if number is not None:
            return number
    raise ParseError(f"Field '{field_name}' must be numeric, got {value!r}")


def normalize_concept(text: str) -> str:
    text = re.sub(r"[^\w\s]", " ", text.lower(), flags=re.UNICODE)
    return re.sub(r"\s+", " ", text).strip()


def union_metadata(existing: Dict[str, Any], new: Mapping[str, Any]) -> Dict[str, Any]:
    """Union two metadata maps: lists merge, min/max widen, dicts recurse."""
    merged = dict(existing)
    for key, value in new.items():
        if key not in merged or merged[key] is None:
            merged[key] = value
        elif isinstance(merged[key], list) and isinstance(value, list):
            merged[key] = merged[key] + [v for v in value if v not in merged[key]]
        elif isinstance(merged[key], dict) and isinstance(value, Mapping):
            merged[key] = union_metadata(merged[key], value)
        elif key.endswith("min") and isinstance(value, (int, float)):
            merged[key] = min(merged[key], value)
        elif key.endswith("max") and isinstance(value, (int, float)):
            merged[key] = max(merged[key], value)
    return merged


def summarize_document(document_data: Mapping[str, Any]) -> str:
    """One-line summary of a processed payslip."""
    parts = []
    employee = document_data.get("employee") or {}
    company = document_data.get("company") or {}

    if employee.get("name"):
        parts.append(f"Employee: {employee['name']}")
    if company.get("name"):
        parts.append(f"Company: {company['name']}")
    if document_data.get("period_start") and document_data.get("period_end"):
        parts.append(f"Period: {document_data['period_start']} - {document_data['period_end']}")
    if document_data.get("net_pay") is not None:
        parts.append(f"Net: €{document_data['net_pay']}")
    if document_data.get("gross_salary") is not None:
        parts.append(f"Gross: €{document_data['gross_salary']}")

    perceptions = document_data.get("perceptions") or []
    deductions = document_data.get("deductions") or []
    parts.append(f"{len(perceptions)} perceptions, {len(deductions)} deductions")
    return ". ".join(parts)


class MemoryLearner:
    """
    Extracts pattern observations from structured document output and
    merges them into existing MemoryPattern records.

    The learner holds no shared state; stores serialize merge calls per
    (company, document type, employee) scope.
    """

    def __init__(self, config: Optional[LearnerConfig] = None):
        self.config = config or LearnerConfig()

    # =========================================================================
    # Extraction
    # =========================================================================

    def extract_patterns(
        self,
        document_data: Any,
        document_id: Optional[str] = None,
    ) -> List[PatternObservation]:
        """
        Extract pattern observations from a processed payslip.

        Raises:
            ParseError: If the structured data is malformed
        """
        if not isinstance(document_data, Mapping):
            raise ParseError(f"Document data must be a mapping, got {type(document_data).__name__}")

        company = document_data.get("company") or {}
        employee = document_data.get("employee") or {}
        if not isinstance(company, Mapping):
            raise ParseError("Field 'company' must be an object")
        if not isinstance(employee, Mapping):
            raise ParseError("Field 'employee' must be an object")

        observations: List[PatternObservation] = []

        if company.get("name") or company.get("cif"):
            name = company.get("name") or ""
            cif = company.get("cif") or ""
            observations.append(PatternObservation(
                pattern_type=PatternType.COMPANY,
                pattern_key=f"company:{(cif or name).lower()}",
                pattern=f"Company: {name}, CIF: {cif}",
                keywords=[name] if name else [],
                metadata={"name": name, "cif": cif},
            ))

        if employee.get("name") or employee.get("dni"):
            name = employee.get("name") or ""
            dni = employee.get("dni") or ""
            category = employee.get("category")
            observations.append(PatternObservation(
                pattern_type=PatternType.EMPLOYEE,
                pattern_key=f"employee:{(dni or name).lower()}",
                pattern=f"Employee: {name}, DNI: {dni}",
                employee_scoped=True,
                keywords=[category] if category else [],
                metadata={"name": name, "dni": dni, "categories": [category] if category else []},
            ))

        for kind, pattern_type in (("perceptions", PatternType.PERCEPTION), ("deductions", PatternType.DEDUCTION)):
            items = document_data.get(kind)
            if items is None:
                continue
            if not isinstance(items, list):
                raise ParseError(f"Field '{kind}' must be a list")
            observations.extend(self._item_patterns(kind, pattern_type, items))

        for field_name in ("gross_salary", "net_pay"):
            amount = parse_amount(document_data.get(field_name), field_name)
            if amount is None:
                continue
            band = int(amount // AMOUNT_BAND) * AMOUNT_BAND
            observations.append(PatternObservation(
                pattern_type=PatternType.AMOUNT_RANGE,
                pattern_key=f"amount:{field_name}:{band}",
                pattern=f"{field_name} between {band} and {band + AMOUNT_BAND} EUR",
                metadata={"field": field_name, "observed_min": amount, "observed_max": amount},
            ))

        fields = sorted(str(k) for k in document_data.keys())
        if fields:
            observations.append(PatternObservation(
                pattern_type=PatternType.FIELD_SHAPE,
                pattern_key="shape:" + ",".join(fields),
                pattern="Fields: " + ", ".join(fields),
                metadata={"fields": fields},
            ))

        if document_id:
            observations.append(PatternObservation(
                pattern_type=PatternType.SUMMARY,
                pattern_key=f"document:{document_id}",
                pattern=summarize_document(document_data),
                employee_scoped=True,
                keywords=extract_document_keywords(document_data),
                metadata={
                    "document_id": document_id,
                    "period_start": document_data.get("period_start"),
                    "period_end": document_data.get("period_end"),
                },
            ))

        return observations

    def _item_patterns(
        self,
        kind: str,
        pattern_type: PatternType,
        items: List[Any],
    ) -> List[PatternObservation]:
        observations = []
        codes = []
        label = kind[:-1]

        for item in items:
            if not isinstance(item, Mapping):
                raise ParseError(f"Entries of '{kind}' must be objects")
            code = item.get("code")
            if code and str(code) not in codes:
                codes.append(str(code))

            concept = item.get("concept")
            if not concept:
                continue
            amount = parse_amount(item.get("amount"), f"{kind}.amount")
            metadata: Dict[str, Any] = {"kind": label, "codes": [str(code)] if code else []}
            if amount is not None:
                metadata["amount_min"] = amount
                metadata["amount_max"] = amount
            observations.append(PatternObservation(
                pattern_type=PatternType.CONCEPT,
                pattern_key=f"concept:{label}:{normalize_concept(str(concept))}",
                pattern=f"{label.capitalize()} concept: {concept}",
                keywords=[str(concept)],
                metadata=metadata,
            ))

        if codes:
            observations.insert(0, PatternObservation(
                pattern_type=pattern_type,
                pattern_key=f"{label}:codes",
                pattern=f"Common {label} codes: {', '.join(sorted(codes))}",
                metadata={"codes": sorted(codes)},
            ))
        return observations

    # =========================================================================
    # Merging
    # =========================================================================

    def evidence_weight(self, observed_at: datetime) -> float:
        """Weight of one observation; doubles every half-life after the epoch."""
        if observed_at.tzinfo is None:
            observed_at = observed_at.replace(tzinfo=timezone.utc)
        days = (observed_at - EVIDENCE_EPOCH).total_seconds() / 86400
        return 2 ** (days / self.config.recency_half_life_days)

    def find_match(
        self,
        patterns: Sequence[MemoryPattern],
        observation: PatternObservation,
    ) -> Optional[MemoryPattern]:
        """
        Exact key match first, then the best fuzzy match above the bar.

        Fuzzy matching compares only the last segment of the key
        ("concept:deduction:<name>" -> "<name>") and only between keys that
        share every earlier segment, so a deduction never merges into a
        perception.
        """
        candidates = [p for p in patterns if p.pattern_type == observation.pattern_type]
        for pattern in candidates:
            if pattern.pattern_key == observation.pattern_key:
                return pattern

        if observation.pattern_type in EXACT_ONLY_TYPES:
            return None

        prefix, _, name = observation.pattern_key.rpartition(":")
        best, best_ratio = None, 0.0
        for pattern in candidates:
            candidate_prefix, _, candidate_name = pattern.pattern_key.rpartition(":")
            if candidate_prefix != prefix:
                continue
            ratio = SequenceMatcher(None, candidate_name, name).ratio()
            if ratio >= self.config.merge_threshold and ratio > best_ratio:
                best, best_ratio = pattern, ratio
        return best

    def new_pattern(
        self,
        observation: PatternObservation,
        scope: Scope,
        confidence: float,
        observed_at: datetime,
    ) -> MemoryPattern:
        company_id, document_type_id, employee_id = scope
        confidence = max(0.0, min(1.0, confidence))
        weight = self.evidence_weight(observed_at)
        status = (
            ValidationStatus.VALIDATED
            if confidence > self.config.auto_validate_above
            else ValidationStatus.PENDING
        )
        return MemoryPattern(
            pattern_type=observation.pattern_type,
            pattern_key=observation.pattern_key,
            pattern=observation.pattern,
            company_id=company_id,
            document_type_id=document_type_id,
            employee_id=employee_id,
            confidence=confidence,
            usage_count=1,
            validation_status=status,
            keywords=list(observation.keywords),
            metadata=dict(observation.metadata),
            evidence_weight=weight,
            evidence_sum=weight * confidence,
            created_at=observed_at,
            updated_at=observed_at,
            last_used_at=observed_at,
        )

    def reinforce(
        self,
        pattern: MemoryPattern,
        observation: PatternObservation,
        confidence: float,
        observed_at: datetime,
    ) -> MemoryPattern:
        """Fold one observation into an existing pattern."""
        confidence = max(0.0, min(1.0, confidence))
        weight = self.evidence_weight(observed_at)

        evidence_weight = pattern.evidence_weight
        evidence_sum = pattern.evidence_sum
        if evidence_weight <= 0:
            # Rows without recorded evidence count their history at current weight
            evidence_weight = max(pattern.usage_count, 1) * weight
            evidence_sum = pattern.confidence * evidence_weight

        evidence_weight += weight
        evidence_sum += weight * confidence
        merged_confidence = max(0.0, min(1.0, evidence_sum / evidence_weight))

        keywords = list(pattern.keywords) + [k for k in observation.keywords if k not in pattern.keywords]

        return replace(
            pattern,
            usage_count=pattern.usage_count + 1,
            confidence=merged_confidence,
            evidence_weight=evidence_weight,
            evidence_sum=evidence_sum,
            keywords=keywords,
            metadata=union_metadata(pattern.metadata, observation.metadata),
            updated_at=max(pattern.updated_at, observed_at),
            last_used_at=observed_at,
        )

    def merge(
        self,
        existing: Sequence[MemoryPattern],
        observation: PatternObservation,
        scope: Scope,
        confidence: float,
        observed_at: datetime,
    ) -> MemoryPattern:
        """Reinforce the matching pattern, or start a new one."""
        match = self.find_match(existing, observation)
        if match is not None:
            return self.reinforce(match, observation, confidence, observed_at)
        return self.new_pattern(observation, scope, confidence, observed_at)

    def merge_into(
        self,
        existing: Sequence[MemoryPattern],
        observations: Sequence[PatternObservation],
        scope: Scope,
        confidence: float,
        observed_at: Optional[datetime] = None,
    ) -> List[MemoryPattern]:
        """
        Merge observations into the patterns of one scope.

        Returns:
            Patterns to write (updated or new), one per id
        """
        observed_at = observed_at or utcnow()
        working = list(existing)
        changed: Dict[str, MemoryPattern] = {}

        for observation in observations:
            updated = self.merge(working, observation, scope, confidence, observed_at)
            if any(p.id == updated.id for p in working):
                working = [updated if p.id == updated.id else p for p in working]
            else:
                working.append(updated)
            changed[updated.id] = updated

        return list(changed.values())

    def group_by_scope(
        self,
        observations: Sequence[PatternObservation],
        company_id: str,
        document_type_id: str,
        employee_id: Optional[str],
    ) -> Dict[Scope, List[PatternObservation]]:
        """Company-wide observations go to the employee-less scope."""
        groups: Dict[Scope, List[PatternObservation]] = {}
        for observation in observations:
            scoped_employee = employee_id if observation.employee_scoped else None
            scope = (company_id, document_type_id, scoped_employee)
            groups.setdefault(scope, []).append(observation)
        return groups

    # =========================================================================
    # Validation
    # =========================================================================

    def apply_validation(
        self,
        pattern: MemoryPattern,
        status: ValidationStatus,
        feedback: Optional[str] = None,
    ) -> MemoryPattern:
        """
        Move a pattern to a validation state.

        Validated and rejected reset confidence to 0.95 / 0.3; evidence is
        rescaled so later merges continue from the operator's value.
        """
        status = ValidationStatus(status)
        confidence = pattern.confidence
        score = None
        if status in VALIDATION_CONFIDENCE:
            confidence, score = VALIDATION_CONFIDENCE[status]

        evidence_weight = pattern.evidence_weight or self.evidence_weight(utcnow())
        return replace(
            pattern,
            validation_status=status,
            confidence=confidence,
            validation_score=score,
            evidence_weight=evidence_weight,
            evidence_sum=confidence * evidence_weight,
            feedback=feedback if feedback is not None else pattern.feedback,
            updated_at=utcnow(),
        )
