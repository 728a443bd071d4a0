import pytest

from services.product_matching.size_parsing import (
    COUNT,
    MASS,
    VOLUME,
    Quantity,
    parse_size,
    quantity_similarity,
    remove_size_tokens,
    size_similarity,
)


@pytest.mark.parametrize(
    "text,expected",
    [
        ("500ml", Quantity(500.0, VOLUME)),
        ("0.5 L", Quantity(500.0, VOLUME)),
        ("1,5 l", Quantity(1500.0, VOLUME)),
        ("250 g", Quantity(250.0, MASS)),
        ("1 kg", Quantity(1000.0, MASS)),
        ("12 ct", Quantity(12.0, COUNT)),
    ],
)
def test_parse_size_single_readings(text, expected):
    readings = parse_size(text)
    assert readings[0].dimension == expected.dimension
    assert readings[0].value == pytest.approx(expected.value)


def test_bare_ounces_read_as_mass_and_volume():
    readings = parse_size("12 oz")
    assert {r.dimension for r in readings} == {MASS, VOLUME}


def test_fluid_ounces_are_volume_only():
    readings = parse_size("16.9 fl oz")
    assert len(readings) == 1
    assert readings[0].dimension == VOLUME
    assert readings[0].value == pytest.approx(499.8, abs=0.1)


def test_multipack_multiplies_quantity():
    readings = parse_size("6 x 330ml")
    assert readings == [Quantity(1980.0, VOLUME)]


def test_unparsable_size():
    assert parse_size("family size") == []
    assert parse_size(None) == []


def test_quantity_similarity_falls_to_zero_at_twenty_percent():
    assert quantity_similarity(Quantity(100, VOLUME), Quantity(100, VOLUME)) == 1.0
    assert quantity_similarity(Quantity(90, VOLUME), Quantity(100, VOLUME)) == pytest.approx(0.5)
    assert quantity_similarity(Quantity(80, VOLUME), Quantity(100, VOLUME)) == 0.0
    assert quantity_similarity(Quantity(100, VOLUME), Quantity(100, MASS)) == 0.0


def test_size_similarity_across_units():
    assert size_similarity("500ml", "16.9 fl oz") > 0.95
    assert size_similarity("12 oz", "355 ml") > 0.95


def test_size_similarity_text_fallback():
    assert size_similarity("family", "Family Size") == 0.65
    assert size_similarity("family", "single") == 0.0
    assert size_similarity(None, "500ml") == 0.0


def test_remove_size_tokens():
    assert remove_size_tokens("Acme Cola 500ml Bottle") == "Acme Cola Bottle"
