"""
schemas.py — the four fixed target record shapes.

Each TargetSchema lists, per target field, the header synonyms the mapper
scores against (declaration order is the tie-break order), the rule the
pipeline applies once a column is mapped onto that field, and the columns a
default export shows.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from captable_io.errors import UnknownSchemaError


@dataclass(frozen=True)
class FieldRule:
    transformation: str | None = None
    validation: str | None = None
    minimum: float | None = None
    maximum: float | None = None
    exclusive_minimum: bool = False
    choices: tuple[str, ...] = ()


@dataclass(frozen=True)
class ExportColumn:
    source_field: str
    display_name: str
    data_type: str = "string"
    required: bool = False
    width: int = 15


@dataclass(frozen=True)
class TargetSchema:
    name: str
    table: str
    patterns: dict[str, tuple[str, ...]]
    required: tuple[str, ...]
    rules: dict[str, FieldRule] = field(default_factory=dict)
    export_columns: tuple[ExportColumn, ...] = ()

    @property
    def fields(self) -> list[str]:
        return list(self.patterns)

    def rule_for(self, target_field: str) -> FieldRule:
        return self.rules.get(target_field, FieldRule())


POSITIVE = dict(validation="number", minimum=0, exclusive_minimum=True)
TRANSACTION_TYPES = ("issue", "transfer", "option_grant", "option_exercise", "repurchase")


SHAREHOLDERS = TargetSchema(
    name="shareholders",
    table="shareholders",
    patterns={
        "name": ("name", "full_name", "shareholder_name", "holder", "investor"),
        "email": ("email", "email_address", "contact_email"),
        "share_count": ("shares", "share_count", "number_of_shares", "qty"),
        "share_class": ("class", "share_class", "security_type", "type"),
        "certificate_number": ("cert", "certificate", "cert_no", "certificate_number"),
        "issue_date": ("date", "issue_date", "grant_date", "issued"),
        "vesting_start": ("vesting_start", "vest_start", "commence_date"),
        "vesting_cliff": ("cliff", "vesting_cliff", "cliff_months"),
        "vesting_period": ("period", "vesting_period", "vest_months"),
    },
    required=("name", "share_count", "share_class"),
    rules={
        "name": FieldRule("trim", "required"),
        "email": FieldRule("lowercase", "email"),
        "share_count": FieldRule("number", **POSITIVE),
        "share_class": FieldRule("uppercase", "required"),
        "certificate_number": FieldRule("trim"),
        "issue_date": FieldRule("date", "date"),
        "vesting_start": FieldRule("date", "date"),
        "vesting_cliff": FieldRule("number", "number", minimum=0),
        "vesting_period": FieldRule("number", "number", minimum=1),
    },
    export_columns=(
        ExportColumn("name", "Shareholder Name", "string", True, 25),
        ExportColumn("email", "Email", "string", False, 30),
        ExportColumn("share_count", "Shares Owned", "number", True, 15),
        ExportColumn("share_class", "Share Class", "string", True, 15),
        ExportColumn("certificate_number", "Certificate #", "string", False, 15),
        ExportColumn("issue_date", "Issue Date", "date", False, 12),
        ExportColumn("vesting_start", "Vesting Start", "date", False, 12),
    ),
)

TRANSACTIONS = TargetSchema(
    name="transactions",
    table="transactions",
    patterns={
        "transaction_type": ("type", "transaction_type", "action"),
        "shareholder_name": ("name", "shareholder", "holder"),
        "share_count": ("shares", "quantity", "amount"),
        "price_per_share": ("price", "price_per_share", "strike_price"),
        "transaction_date": ("date", "transaction_date", "effective_date"),
        "notes": ("notes", "description", "memo"),
    },
    required=("transaction_type", "shareholder_name", "share_count"),
    rules={
        "transaction_type": FieldRule("lowercase", "choice", choices=TRANSACTION_TYPES),
        "shareholder_name": FieldRule("trim", "required"),
        "share_count": FieldRule("number", **POSITIVE),
        "price_per_share": FieldRule("currency", "number", minimum=0),
        "transaction_date": FieldRule("date", "date"),
        "notes": FieldRule("trim"),
    },
    export_columns=(
        ExportColumn("transaction_date", "Date", "date", True, 12),
        ExportColumn("transaction_type", "Type", "string", True, 15),
        ExportColumn("shareholder_name", "Shareholder", "string", True, 25),
        ExportColumn("share_count", "Shares", "number", True, 15),
        ExportColumn("price_per_share", "Price/Share", "currency", False, 12),
        ExportColumn("notes", "Notes", "string", False, 30),
    ),
)

SHARE_CLASSES = TargetSchema(
    name="share_classes",
    table="share_classes",
    patterns={
        "class_name": ("name", "class_name", "class", "series"),
        "authorized_shares": ("authorized", "authorized_shares", "max_shares"),
        "par_value": ("par", "par_value", "nominal_value"),
        "liquidation_preference": ("pref", "liquidation_preference", "preference"),
        "dividend_rate": ("dividend", "dividend_rate", "rate"),
    },
    required=("class_name", "authorized_shares"),
    rules={
        "class_name": FieldRule("uppercase", "required"),
        "authorized_shares": FieldRule("number", **POSITIVE),
        "par_value": FieldRule("currency", "number", minimum=0),
        "liquidation_preference": FieldRule("number", "number", minimum=1),
        "dividend_rate": FieldRule("number", "number", minimum=0, maximum=1),
    },
    export_columns=(
        ExportColumn("class_name", "Class Name", "string", True, 20),
        ExportColumn("authorized_shares", "Authorized Shares", "number", True, 18),
        ExportColumn("par_value", "Par Value", "currency", False, 12),
        ExportColumn("liquidation_preference", "Liquidation Preference", "number", False, 20),
    ),
)

VESTING_SCHEDULES = TargetSchema(
    name="vesting_schedules",
    table="vesting_schedules",
    patterns={
        "shareholder_name": ("shareholder_name", "name", "shareholder", "holder", "grantee"),
        "total_shares": ("total_shares", "shares", "grant_shares", "quantity"),
        "start_date": ("start_date", "vesting_start", "commence_date", "date"),
        "cliff_months": ("cliff_months", "cliff", "vesting_cliff"),
        "vesting_months": ("vesting_months", "vesting_period", "vest_months", "period"),
    },
    required=("shareholder_name", "total_shares", "start_date", "vesting_months"),
    rules={
        "shareholder_name": FieldRule("trim", "required"),
        "total_shares": FieldRule("number", **POSITIVE),
        "start_date": FieldRule("date", "date"),
        "cliff_months": FieldRule("number", "number", minimum=0),
        "vesting_months": FieldRule("number", "number", minimum=1),
    },
    export_columns=(
        ExportColumn("shareholder_name", "Shareholder", "string", True, 25),
        ExportColumn("total_shares", "Total Shares", "number", True, 15),
        ExportColumn("start_date", "Start Date", "date", True, 12),
        ExportColumn("cliff_months", "Cliff (months)", "number", False, 15),
        ExportColumn("vesting_months", "Vesting Period (months)", "number", True, 20),
    ),
)

SCHEMAS: dict[str, TargetSchema] = {
    schema.name: schema
    for schema in (SHAREHOLDERS, TRANSACTIONS, SHARE_CLASSES, VESTING_SCHEDULES)
}
SCHEMA_NAMES = tuple(SCHEMAS)


def get_schema(name: str | TargetSchema | None) -> TargetSchema | None:
    if name is None or isinstance(name, TargetSchema):
        return name
    try:
        return SCHEMAS[name]
    except KeyError:
        raise UnknownSchemaError(name) from None
