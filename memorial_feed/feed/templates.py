"""
Statement template renderer.

Every activity statement type maps to one versioned ``Template``: the dotted
payload paths that must be present, and an ordered list of segment specs.
Rendering is a pure function of (type, payload, locale).

  TEXT    literal text
  FIELD   dotted path → str/number/bool, optional fallback text
  MONEY   integer minor units + currency code, formatted per locale
  DATE    ISO-8601 value → short month/day/time
  NUMBER  plain number, formatted per locale

Any non-TEXT spec may carry ``source_id_path`` (+ ``source_id_prefix``); the
resolved value becomes the segment's ``"{prefix}:{id}"`` deep-link reference.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Mapping, Optional, Union

from babel import Locale, UnknownLocaleError
from babel.dates import format_skeleton, format_time
from babel.numbers import format_currency, format_decimal

from memorial_feed.errors import TemplateNotFoundError, TemplateValidationError, ValidationError
from memorial_feed.models import StatementType
from memorial_feed.schemas import Segment, SegmentKind

logger = logging.getLogger(__name__)

DEFAULT_LOCALE = "en-US"
DEFAULT_CURRENCY = "USD"

_MISSING = object()


@dataclass(frozen=True)
class _Sourced:
    fallback_text: Optional[str] = None
    source_id_path: Optional[str] = None
    source_id_prefix: Optional[str] = None


@dataclass(frozen=True)
class Text:
    text: str


@dataclass(frozen=True)
class Field(_Sourced):
    path: str = ""


@dataclass(frozen=True)
class Money(_Sourced):
    amount_path: str = ""
    currency_path: str = "currency"


@dataclass(frozen=True)
class Date(_Sourced):
    path: str = ""


@dataclass(frozen=True)
class Number(_Sourced):
    path: str = ""


SegmentSpec = Union[Text, Field, Money, Date, Number]


@dataclass(frozen=True)
class Template:
    required_paths: tuple[str, ...]
    segments: tuple[SegmentSpec, ...]
    version: int = 1


def _update_template(record: str) -> Template:
    """MEMORIAL/FUNDRAISER/OBITUARY updates share one shape."""
    return Template(
        required_paths=(f"{record}.displayName", f"{record}.id", "summary"),
        segments=(
            Field(
                path="actor.displayName",
                source_id_path="actor.id",
                source_id_prefix="user",
                fallback_text="Update to",
            ),
            Field(
                path=f"{record}.displayName",
                source_id_path=f"{record}.id",
                source_id_prefix=record,
            ),
            Text(": "),
            Field(path="summary"),
        ),
    )


TEMPLATES: dict[StatementType, Template] = {
    StatementType.DONATION: Template(
        required_paths=(
            "donation.amountCents",
            "donation.currency",
            "target.displayName",
            "target.id",
        ),
        segments=(
            Field(
                path="actor.displayName",
                source_id_path="actor.id",
                source_id_prefix="user",
                fallback_text="Someone",
            ),
            Text(" donated "),
            Money(
                amount_path="donation.amountCents",
                currency_path="donation.currency",
                source_id_path="donation.id",
                source_id_prefix="donation",
            ),
            Text(" to "),
            Field(
                path="target.displayName",
                source_id_path="target.id",
                source_id_prefix="memorial",
            ),
        ),
    ),
    StatementType.MEMORIAL_UPDATE: _update_template("memorial"),
    StatementType.FUNDRAISER_UPDATE: _update_template("fundraiser"),
    StatementType.OBITUARY_UPDATE: _update_template("obituary"),
    StatementType.EVENT_NOTICE: Template(
        required_paths=("event.displayName", "event.id", "event.startsAt"),
        segments=(
            Field(
                path="event.displayName",
                source_id_path="event.id",
                source_id_prefix="event",
            ),
            Text(" on "),
            Date(path="event.startsAt"),
            Text(" at "),
            Field(path="event.location", fallback_text="online"),
        ),
    ),
    StatementType.AI_SUMMARY: Template(
        required_paths=("summary",),
        segments=(Text("Summary: "), Field(path="summary")),
    ),
}


def get_value(payload: Mapping[str, Any], path: Optional[str]) -> Any:
    """Resolve a dotted path; ``None`` values count as absent."""
    if not path:
        return _MISSING
    current: Any = payload
    for key in path.split("."):
        if not isinstance(current, Mapping) or key not in current:
            return _MISSING
        current = current[key]
    return _MISSING if current is None else current


def _stringify(value: Any) -> Optional[str]:
    if value is _MISSING:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (str, int, float)):
        return str(value)
    return None


def _source_id(spec: _Sourced, payload: Mapping[str, Any]) -> Optional[str]:
    if not spec.source_id_path:
        return None
    ident = _stringify(get_value(payload, spec.source_id_path))
    if not ident:
        return None
    return f"{spec.source_id_prefix}:{ident}" if spec.source_id_prefix else ident


def _parse_date(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _parse_locale(locale: Optional[str]) -> Locale:
    tag = (locale or DEFAULT_LOCALE).replace("-", "_")
    try:
        return Locale.parse(tag)
    except (UnknownLocaleError, ValueError) as exc:
        raise ValidationError(f"Unsupported locale {locale!r}") from exc


def _render_segment(
    spec: SegmentSpec, payload: Mapping[str, Any], locale: Locale
) -> Optional[Segment]:
    if isinstance(spec, Text):
        return Segment(text=spec.text)

    if isinstance(spec, Field):
        text = _stringify(get_value(payload, spec.path)) or spec.fallback_text
        if not text:
            return None
    elif isinstance(spec, Money):
        amount = get_value(payload, spec.amount_path)
        if amount is _MISSING:
            return None
        currency = get_value(payload, spec.currency_path)
        currency = DEFAULT_CURRENCY if currency is _MISSING else str(currency).upper()
        try:
            text = format_currency(float(amount) / 100, currency, locale=locale)
        except (TypeError, ValueError):
            logger.debug("Dropping MONEY segment; bad amount %r", amount)
            return None
    elif isinstance(spec, Date):
        parsed = _parse_date(get_value(payload, spec.path))
        if parsed is None:
            return None
        text = (
            f"{format_skeleton('MMMd', parsed, locale=locale)}, "
            f"{format_time(parsed, 'short', locale=locale)}"
        )
    elif isinstance(spec, Number):
        value = get_value(payload, spec.path)
        if value is _MISSING or isinstance(value, bool):
            return None
        try:
            text = format_decimal(float(value) if isinstance(value, str) else value, locale=locale)
        except (TypeError, ValueError):
            return None
    else:
        return None

    source_id = _source_id(spec, payload)
    return Segment(
        text=text,
        source_id=source_id,
        kind=SegmentKind.RECORD if source_id else SegmentKind.STRING,
    )


class TemplateRenderer:
    """Resolves a template from the registry and renders it into segments."""

    def __init__(
        self,
        templates: Optional[Mapping[StatementType, Template]] = None,
        default_locale: str = DEFAULT_LOCALE,
    ) -> None:
        self.templates = dict(TEMPLATES if templates is None else templates)
        self.default_locale = default_locale

    def render(
        self,
        statement_type: Union[StatementType, str],
        payload: Mapping[str, Any],
        locale: Optional[str] = None,
    ) -> list[Segment]:
        try:
            statement_type = StatementType(statement_type)
        except ValueError:
            raise TemplateNotFoundError(str(statement_type)) from None
        template = self.templates.get(statement_type)
        if template is None:
            raise TemplateNotFoundError(statement_type.value)

        missing = [p for p in template.required_paths if get_value(payload, p) is _MISSING]
        if missing:
            raise TemplateValidationError(statement_type.value, missing)

        resolved_locale = _parse_locale(locale or self.default_locale)
        parts: list[Segment] = []
        for spec in template.segments:
            segment = _render_segment(spec, payload, resolved_locale)
            if segment is None or not segment.text.strip():
                continue
            parts.append(segment)
        return parts
