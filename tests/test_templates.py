import pytest

from memorial_feed.errors import TemplateNotFoundError, TemplateValidationError, ValidationError
from memorial_feed.feed.templates import (
    TEMPLATES,
    Field,
    Money,
    Number,
    Template,
    TemplateRenderer,
    Text,
)
from memorial_feed.models import StatementType
from memorial_feed.schemas import SegmentKind

FULL_PAYLOADS = {
    StatementType.DONATION: {
        "actor": {"id": "u1", "displayName": "Grace"},
        "donation": {"id": "d1", "amountCents": 500, "currency": "USD"},
        "target": {"id": "m1", "displayName": "Ada Lovelace"},
    },
    StatementType.MEMORIAL_UPDATE: {
        "memorial": {"id": "m1", "displayName": "Ada Lovelace"},
        "summary": "New photos added",
    },
    StatementType.FUNDRAISER_UPDATE: {
        "fundraiser": {"id": "f1", "displayName": "Scholarship fund"},
        "summary": "Halfway there",
    },
    StatementType.OBITUARY_UPDATE: {
        "obituary": {"id": "o1", "displayName": "Obituary"},
        "summary": "Service details",
    },
    StatementType.EVENT_NOTICE: {
        "event": {"id": "e1", "displayName": "Candlelight vigil", "startsAt": "2026-03-05T18:30:00Z"},
    },
    StatementType.AI_SUMMARY: {"summary": "A life of curiosity."},
}


@pytest.fixture
def renderer():
    return TemplateRenderer()


def test_every_template_has_a_full_payload_fixture():
    assert set(FULL_PAYLOADS) == set(TEMPLATES)


@pytest.mark.parametrize("statement_type", list(StatementType))
def test_render_returns_segments_for_complete_payload(renderer, statement_type):
    parts = renderer.render(statement_type, FULL_PAYLOADS[statement_type])
    assert parts
    assert all(p.text.strip() for p in parts)


@pytest.mark.parametrize("statement_type", list(StatementType))
def test_render_names_every_missing_required_path(renderer, statement_type):
    with pytest.raises(TemplateValidationError) as excinfo:
        renderer.render(statement_type, {})

    err = excinfo.value
    assert err.statement_type == statement_type.value
    assert err.missing_paths == list(TEMPLATES[statement_type].required_paths)
    for path in TEMPLATES[statement_type].required_paths:
        assert path in str(err)


def test_donation_renders_money_and_source_references(renderer):
    parts = renderer.render(StatementType.DONATION, FULL_PAYLOADS[StatementType.DONATION])

    assert [p.text for p in parts] == ["Grace", " donated ", "$5.00", " to ", "Ada Lovelace"]
    assert parts[0].source_id == "user:u1"
    assert parts[0].kind == SegmentKind.RECORD
    assert parts[1].source_id is None
    assert parts[1].kind == SegmentKind.STRING
    assert parts[2].source_id == "donation:d1"
    assert parts[4].source_id == "memorial:m1"


def test_donation_without_actor_uses_fallback_text(renderer):
    payload = dict(FULL_PAYLOADS[StatementType.DONATION])
    payload.pop("actor")
    parts = renderer.render(StatementType.DONATION, payload)

    assert parts[0].text == "Someone"
    assert parts[0].source_id is None
    assert parts[0].kind == SegmentKind.STRING


def test_null_required_value_counts_as_missing(renderer):
    payload = {"summary": None}
    with pytest.raises(TemplateValidationError) as excinfo:
        renderer.render(StatementType.AI_SUMMARY, payload)
    assert excinfo.value.missing_paths == ["summary"]


def test_update_without_actor_uses_fallback_text(renderer):
    parts = renderer.render(
        StatementType.MEMORIAL_UPDATE,
        {"memorial": {"id": "m1", "displayName": "Ada"}, "summary": "Updated"},
    )
    assert [p.text for p in parts] == ["Update to", "Ada", ": ", "Updated"]


def test_event_notice_formats_date_and_location_fallback(renderer):
    parts = renderer.render(StatementType.EVENT_NOTICE, FULL_PAYLOADS[StatementType.EVENT_NOTICE])
    texts = [p.text for p in parts]

    assert texts[0] == "Candlelight vigil"
    assert parts[0].source_id == "event:e1"
    assert texts[1] == " on "
    assert "Mar" in texts[2] and "5" in texts[2]
    assert "6:30" in texts[2]
    assert texts[-1] == "online"


def test_event_date_uses_locale_date_and_time_order():
    payload = FULL_PAYLOADS[StatementType.EVENT_NOTICE]
    de = [p.text for p in TemplateRenderer().render(StatementType.EVENT_NOTICE, payload, locale="de-DE")]

    assert "5. M" in de[2]
    assert de[2].endswith("18:30")
    assert de[1] == " on "


def test_invalid_date_drops_segment(renderer):
    payload = {"event": {"id": "e1", "displayName": "Vigil", "startsAt": "not a date"}}
    texts = [p.text for p in renderer.render(StatementType.EVENT_NOTICE, payload)]
    assert texts == ["Vigil", " on ", " at ", "online"]


def test_unknown_type_is_a_configuration_error(renderer):
    with pytest.raises(TemplateNotFoundError):
        renderer.render("BIRTHDAY", {})


def test_registry_can_be_narrowed():
    narrow = TemplateRenderer(templates={StatementType.AI_SUMMARY: TEMPLATES[StatementType.AI_SUMMARY]})
    with pytest.raises(TemplateNotFoundError):
        narrow.render(StatementType.DONATION, FULL_PAYLOADS[StatementType.DONATION])


def test_number_and_money_use_locale():
    renderer = TemplateRenderer(
        templates={
            StatementType.AI_SUMMARY: Template(
                required_paths=("count",),
                segments=(
                    Number(path="count"),
                    Text(" candles, "),
                    Money(amount_path="amount", currency_path="currency"),
                    Field(path="missing"),
                ),
            )
        }
    )
    payload = {"count": 12345, "amount": 123456, "currency": "EUR"}

    us = [p.text for p in renderer.render(StatementType.AI_SUMMARY, payload)]
    assert len(us) == 3  # unresolved FIELD without fallback is dropped
    assert us[0] == "12,345"
    assert us[2] == "€1,234.56"

    de = [p.text for p in renderer.render(StatementType.AI_SUMMARY, payload, locale="de-DE")]
    assert de[0] == "12.345"
    assert de[2].startswith("1.234,56")


def test_money_defaults_to_usd_when_currency_absent():
    renderer = TemplateRenderer(
        templates={
            StatementType.AI_SUMMARY: Template(
                required_paths=(),
                segments=(Money(amount_path="amount", currency_path="currency"),),
            )
        }
    )
    assert [p.text for p in renderer.render(StatementType.AI_SUMMARY, {"amount": 250})] == ["$2.50"]


def test_unknown_locale_is_a_validation_error(renderer):
    with pytest.raises(ValidationError):
        renderer.render(StatementType.AI_SUMMARY, {"summary": "x"}, locale="zz-QQ")
