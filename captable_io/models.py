from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from captable_io.values import Scalar

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"


@dataclass(frozen=True)
class FieldMapping:
    source_field: str
    target_field: str
    confidence: float
    transformation: str | None = None
    validation: str | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must lie in [0, 1], got {self.confidence}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "FieldMapping":
        return cls(
            source_field=str(payload["source_field"]),
            target_field=str(payload["target_field"]),
            confidence=float(payload.get("confidence", 1.0)),
            transformation=payload.get("transformation"),
            validation=payload.get("validation"),
        )


@dataclass(frozen=True)
class ParseError:
    row: int
    column: str
    value: Scalar
    message: str
    severity: str = SEVERITY_ERROR

    @property
    def is_error(self) -> bool:
        return self.severity == SEVERITY_ERROR

    def describe(self) -> str:
        where = f"Row {self.row}" if self.row else "File"
        if self.column:
            where += f", {self.column}"
        return f"{where}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ParseResult:
    success: bool
    rows: list[dict[str, Scalar]]
    headers: list[str]
    row_count: int
    errors: list[ParseError]
    field_mappings: list[FieldMapping]
    confidence: float
    source_rows: list[dict[str, Scalar]] = field(default_factory=list, repr=False)
    warnings: list[str] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return sum(1 for error in self.errors if error.is_error)

    @property
    def warning_count(self) -> int:
        return sum(1 for error in self.errors if not error.is_error)

    @property
    def valid_rows(self) -> list[dict[str, Scalar]]:
        bad = {error.row for error in self.errors if error.is_error and error.row > 0}
        return [row for index, row in enumerate(self.rows, start=1) if index not in bad]

    def summary(self) -> dict[str, int]:
        return {
            "rows": self.row_count,
            "valid_rows": len(self.valid_rows),
            "errors": self.error_count,
            "warnings": self.warning_count,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "headers": list(self.headers),
            "row_count": self.row_count,
            "rows": [dict(row) for row in self.rows],
            "errors": [error.to_dict() for error in self.errors],
            "field_mappings": [mapping.to_dict() for mapping in self.field_mappings],
            "confidence": self.confidence,
            "warnings": list(self.warnings),
            "summary": self.summary(),
        }
