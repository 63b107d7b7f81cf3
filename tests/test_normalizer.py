"""
Unit tests for JSON response normalization.
"""

import json

import pytest

from api_diff import normalize_body


def test_pretty_prints_with_four_spaces_one_key_per_line():
    pretty, ok = normalize_body('{"id":7,"tags":["a","b"]}')

    assert ok is True
    assert pretty.splitlines() == [
        '{',
        '    "id": 7,',
        '    "tags": [',
        '        "a",',
        '        "b"',
        '    ]',
        '}',
    ]


def test_key_order_is_preserved():
    pretty, ok = normalize_body('{"zeta": 1, "alpha": 2}')

    assert ok is True
    assert pretty.index('"zeta"') < pretty.index('"alpha"')


def test_accepts_bytes_and_keeps_unicode():
    pretty, ok = normalize_body('{"name": "João"}'.encode("utf-8"))

    assert ok is True
    assert '"name": "João"' in pretty


@pytest.mark.parametrize("document", [
    '{"a": {"b": [1, 2.5, null, true]}, "c": "x"}',
    '[]',
    '{}',
    '"plain string"',
    '[{"k": 1}, {"k": 2}]',
])
def test_round_trip_preserves_structure(document):
    pretty, ok = normalize_body(document)

    assert ok is True
    assert json.loads(pretty) == json.loads(document)


@pytest.mark.parametrize("raw", [
    "", "internal error", "{'single': 'quotes'}", '{"open": ',
    "NaN", "Infinity", '{"ratio": -Infinity}',
])
def test_invalid_json_is_reported(raw):
    assert normalize_body(raw) == ("", False)
