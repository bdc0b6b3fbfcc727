"""
The fixed donor schema every spreadsheet column is mapped onto.

Each target field declares the data type its values are coerced into and the
cleaning operations applied by default when a column is mapped to it.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple


class TargetField(str, Enum):
    FIRST_NAME = "first_name"
    LAST_NAME = "last_name"
    FULL_NAME = "full_name"  # Virtual: split into first/last name while cleaning
    EMAIL = "email"
    PHONE = "phone"
    ADDRESS = "address"
    CITY = "city"
    STATE = "state"
    ZIP_CODE = "zip_code"
    COUNTRY = "country"
    DONOR_TYPE = "donor_type"
    STUDENT_NAME = "student_name"
    GRADE_LEVEL = "grade_level"
    ALUMNI_YEAR = "alumni_year"
    GRADUATION_YEAR = "graduation_year"
    ENGAGEMENT_LEVEL = "engagement_level"
    GIFT_SIZE_TIER = "gift_size_tier"
    FIRST_DONATION_DATE = "first_donation_date"
    LAST_DONATION_DATE = "last_donation_date"
    EMAIL_OPT_IN = "email_opt_in"
    PHONE_OPT_IN = "phone_opt_in"
    MAIL_OPT_IN = "mail_opt_in"
    PREFERRED_CONTACT_METHOD = "preferred_contact_method"
    NOTES = "notes"
    SKIP = "skip"


class DataType(str, Enum):
    TEXT = "text"
    EMAIL = "email"
    PHONE = "phone"
    DATE = "date"
    BOOLEAN = "boolean"
    ENUMERATED = "enumerated"


class CleaningOperation(str, Enum):
    SPLIT_NAME = "split_name"
    NORMALIZE_PHONE = "normalize_phone"
    NORMALIZE_EMAIL = "normalize_email"
    PARSE_DATE = "parse_date"
    COERCE_BOOLEAN = "coerce_boolean"
    NORMALIZE_ENUM = "normalize_enum"


@dataclass(frozen=True)
class FieldDefinition:
    name: TargetField
    data_type: DataType
    description: str
    default_operations: FrozenSet[CleaningOperation] = frozenset()
    allowed_values: Tuple[str, ...] = ()
    required: bool = False
    record_default: Optional[object] = None


def _define(
    name: TargetField,
    data_type: DataType,
    description: str,
    *operations: CleaningOperation,
    allowed_values: Tuple[str, ...] = (),
    required: bool = False,
    record_default: Optional[object] = None,
) -> FieldDefinition:
    return FieldDefinition(
        name=name,
        data_type=data_type,
        description=description,
        default_operations=frozenset(operations),
        allowed_values=allowed_values,
        required=required,
        record_default=record_default,
    )


DONOR_TYPES = ("parent", "alumni", "community", "staff", "board", "foundation", "business")
ENGAGEMENT_LEVELS = ("new", "active", "engaged", "at_risk", "lapsed")
GIFT_SIZE_TIERS = ("grassroots", "mid_level", "major", "principal")
CONTACT_METHODS = ("email", "phone", "mail")

FIELD_DEFINITIONS: Dict[TargetField, FieldDefinition] = {
    definition.name: definition
    for definition in (
        _define(TargetField.FIRST_NAME, DataType.TEXT, "Donor's first name", required=True),
        _define(TargetField.LAST_NAME, DataType.TEXT, "Donor's last name", required=True),
        _define(
            TargetField.FULL_NAME,
            DataType.TEXT,
            "Combined name column; split into first_name and last_name",
            CleaningOperation.SPLIT_NAME,
        ),
        _define(TargetField.EMAIL, DataType.EMAIL, "Email address", CleaningOperation.NORMALIZE_EMAIL),
        _define(TargetField.PHONE, DataType.PHONE, "Phone number", CleaningOperation.NORMALIZE_PHONE),
        _define(TargetField.ADDRESS, DataType.TEXT, "Street address"),
        _define(TargetField.CITY, DataType.TEXT, "City name"),
        _define(TargetField.STATE, DataType.TEXT, "State or province"),
        _define(TargetField.ZIP_CODE, DataType.TEXT, "ZIP or postal code"),
        _define(TargetField.COUNTRY, DataType.TEXT, "Country", record_default="USA"),
        _define(
            TargetField.DONOR_TYPE,
            DataType.ENUMERATED,
            "Relationship of the donor to the school",
            CleaningOperation.NORMALIZE_ENUM,
            allowed_values=DONOR_TYPES,
            record_default="community",
        ),
        _define(TargetField.STUDENT_NAME, DataType.TEXT, "Name of the associated student"),
        _define(TargetField.GRADE_LEVEL, DataType.TEXT, "Student's grade level"),
        _define(TargetField.ALUMNI_YEAR, DataType.TEXT, "Year the alumnus graduated"),
        _define(TargetField.GRADUATION_YEAR, DataType.TEXT, "Expected graduation year"),
        _define(
            TargetField.ENGAGEMENT_LEVEL,
            DataType.ENUMERATED,
            "Engagement stage",
            CleaningOperation.NORMALIZE_ENUM,
            allowed_values=ENGAGEMENT_LEVELS,
            record_default="new",
        ),
        _define(
            TargetField.GIFT_SIZE_TIER,
            DataType.ENUMERATED,
            "Gift size tier",
            CleaningOperation.NORMALIZE_ENUM,
            allowed_values=GIFT_SIZE_TIERS,
            record_default="grassroots",
        ),
        _define(
            TargetField.FIRST_DONATION_DATE,
            DataType.DATE,
            "Date of the first gift",
            CleaningOperation.PARSE_DATE,
        ),
        _define(
            TargetField.LAST_DONATION_DATE,
            DataType.DATE,
            "Date of the most recent gift",
            CleaningOperation.PARSE_DATE,
        ),
        _define(
            TargetField.EMAIL_OPT_IN,
            DataType.BOOLEAN,
            "Email permission",
            CleaningOperation.COERCE_BOOLEAN,
            record_default=True,
        ),
        _define(
            TargetField.PHONE_OPT_IN,
            DataType.BOOLEAN,
            "Phone permission",
            CleaningOperation.COERCE_BOOLEAN,
            record_default=False,
        ),
        _define(
            TargetField.MAIL_OPT_IN,
            DataType.BOOLEAN,
            "Postal mail permission",
            CleaningOperation.COERCE_BOOLEAN,
            record_default=True,
        ),
        _define(
            TargetField.PREFERRED_CONTACT_METHOD,
            DataType.ENUMERATED,
            "Preferred contact channel",
            CleaningOperation.NORMALIZE_ENUM,
            allowed_values=CONTACT_METHODS,
            record_default="email",
        ),
        _define(TargetField.NOTES, DataType.TEXT, "Free-form notes"),
    )
}

REQUIRED_FIELDS: Tuple[TargetField, ...] = (TargetField.FIRST_NAME, TargetField.LAST_NAME)

# Fields that exist on stored donor records (full_name and skip are mapping-only).
RECORD_FIELDS: Tuple[str, ...] = tuple(
    f.value for f in FIELD_DEFINITIONS if f is not TargetField.FULL_NAME
)


def default_operations_for(target: TargetField) -> FrozenSet[CleaningOperation]:
    definition = FIELD_DEFINITIONS.get(target)
    return definition.default_operations if definition else frozenset()


def data_type_for(target: TargetField) -> DataType:
    definition = FIELD_DEFINITIONS.get(target)
    return definition.data_type if definition else DataType.TEXT


def record_defaults() -> Dict[str, object]:
    """Values applied to newly created donor records for fields left empty."""
    return {
        definition.name.value: definition.record_default
        for definition in FIELD_DEFINITIONS.values()
        if definition.record_default is not None
    }


def describe_target_schema() -> str:
    """Render the target schema as prompt-ready text for an inference provider."""
    lines: List[str] = ["Target donor fields:"]
    for definition in FIELD_DEFINITIONS.values():
        parts = [f"- {definition.name.value} ({definition.data_type.value})"]
        if definition.required:
            parts.append("REQUIRED")
        parts.append(definition.description)
        if definition.allowed_values:
            parts.append("options: " + ", ".join(definition.allowed_values))
        lines.append(" - ".join(parts))
    lines.append(f"- {TargetField.SKIP.value}: use for columns that should not be imported")
    lines.append(
        "first_name and last_name are required; map a combined name column to "
        "full_name with the split_name cleaning operation."
    )
    lines.append(
        "Cleaning operations: " + ", ".join(op.value for op in CleaningOperation)
    )
    return "\n".join(lines)
