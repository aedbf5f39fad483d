from __future__ import annotations


class CaptableIOError(Exception):
    """Base class for every error raised by captable_io."""


class DecodeError(CaptableIOError, ValueError):
    """The input file could not be read as a table."""


class UnknownSchemaError(CaptableIOError, KeyError):
    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Unknown target schema: {self.name!r}"


class UnknownRuleError(CaptableIOError, ValueError):
    """A mapping or template names a transformation/validation we do not have."""


class FormulaError(CaptableIOError, ValueError):
    pass


class DivisionByZeroError(FormulaError, ZeroDivisionError):
    def __init__(self, message: str = "Division by zero") -> None:
        super().__init__(message)


class ConfigError(CaptableIOError, ValueError):
    pass


class TemplateNotFoundError(CaptableIOError, LookupError):
    pass
