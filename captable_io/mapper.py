"""
mapper.py — infer a source-header -> target-field mapping.

Scoring per (target, pattern) pair, over normalized names:

    exact match                 1.0
    containment either way      0.8
    otherwise                   edit-distance similarity

The best score per header wins only when it is above MATCH_THRESHOLD; ties
keep the pattern declared first. Headers that do not clear the threshold map
to themselves at UNMATCHED_CONFIDENCE so a reviewer can spot them.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Sequence

from captable_io.models import SEVERITY_WARNING, FieldMapping, ParseError
from captable_io.schemas import TargetSchema, get_schema
from captable_io.similarity import normalize_field_name, similarity

logger = logging.getLogger(__name__)

MATCH_THRESHOLD = 0.6
IDENTITY_CONFIDENCE = 0.5
UNMATCHED_CONFIDENCE = 0.3
EXACT_SCORE = 1.0
CONTAINS_SCORE = 0.8


def score_pattern(source_header: str, pattern: str) -> float:
    source = normalize_field_name(source_header)
    target = normalize_field_name(pattern)
    if source == target:
        return EXACT_SCORE
    if source and target and (target in source or source in target):
        return CONTAINS_SCORE
    return similarity(source, target)


def best_target(source_header: str, schema: TargetSchema) -> tuple[str | None, float]:
    best_field: str | None = None
    best_score = 0.0
    for target_field, patterns in schema.patterns.items():
        for pattern in patterns:
            score = score_pattern(source_header, pattern)
            if score > best_score:
                best_field, best_score = target_field, score
    return best_field, best_score


def map_fields(
    source_headers: Sequence[str],
    target_schema: str | TargetSchema | None = None,
) -> list[FieldMapping]:
    schema = get_schema(target_schema)
    if schema is None:
        return [
            FieldMapping(header, header, IDENTITY_CONFIDENCE)
            for header in source_headers
        ]

    mappings: list[FieldMapping] = []
    for header in source_headers:
        target, score = best_target(header, schema)
        if target is not None and score > MATCH_THRESHOLD:
            rule = schema.rule_for(target)
            mappings.append(FieldMapping(
                source_field=header,
                target_field=target,
                confidence=round(score, 4),
                transformation=rule.transformation,
                validation=rule.validation,
            ))
        else:
            mappings.append(FieldMapping(header, header, UNMATCHED_CONFIDENCE))

    matched = sum(1 for m in mappings if m.confidence > UNMATCHED_CONFIDENCE)
    logger.debug("Mapped %d/%d headers onto %s", matched, len(mappings), schema.name)
    return mappings


def find_duplicate_targets(mappings: Sequence[FieldMapping]) -> list[ParseError]:
    """One warning per target field claimed by more than one source column."""
    sources_by_target: dict[str, list[str]] = defaultdict(list)
    for mapping in mappings:
        sources_by_target[mapping.target_field].append(mapping.source_field)

    warnings: list[ParseError] = []
    for target, sources in sources_by_target.items():
        if len(sources) < 2:
            continue
        logger.warning("Target field %r is mapped from %d columns: %s", target, len(sources), sources)
        warnings.append(ParseError(
            0,
            target,
            None,
            f'Target field "{target}" is mapped from multiple columns '
            f"({', '.join(sources)}); the last one wins on write",
            SEVERITY_WARNING,
        ))
    return warnings


def mapping_confidence(mappings: Sequence[FieldMapping], errors: Sequence[ParseError]) -> float:
    if not mappings:
        return 0.0
    mean = sum(m.confidence for m in mappings) / len(mappings)
    penalty = min(sum(1 for e in errors if e.is_error) * 0.1, 0.5)
    return round(max(0.0, min(1.0, mean - penalty)), 4)
