import os, sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import pytest

from workshop.line_items import (
    ServiceLineItem,
    effective_price,
    format_duration,
    is_valid_object_id,
    normalize,
    normalize_all,
    parse_duration,
)

OID = 'a' * 24
OTHER_OID = '0123456789abcdef01234567'


@pytest.mark.parametrize('text, minutes', [
    ('2h', 120),
    ('30m', 30),
    ('1.5h', 90),
    ('1h 30m', 90),
    ('1 hour 30 mins', 90),
    ('45', 45),
    ('45 mins', 45),
    ('1.5 hours', 90),
    ('', 0),
    ('soon', 0),
    (None, 0),
    ('-20', 0),
])
def test_parse_duration(text, minutes):
    assert parse_duration(text) == minutes


def test_format_duration():
    assert format_duration(90) == '1 hour 30 mins'
    assert format_duration(120) == '2 hours'
    assert format_duration(1) == '1 min'
    assert format_duration(0) == ''


def test_normalize_is_idempotent():
    raw = {
        'name': ' Brake pads ',
        'estimatedCost': '80',
        'estimatedTime': '1h 30m',
        'serviceId': 'not-an-id',
        'catalogId': OID,
        'filter': 'F-100',
        'subOptionValues': {'side': ['front', 'front', 'rear'], 'note': '  '},
    }
    once = normalize(raw)
    twice = normalize(once)
    assert once == twice
    assert once.to_dict() == normalize(once.to_dict()).to_dict()


def test_invalid_ids_are_dropped_without_shadowing_valid_ones():
    item = normalize({'name': 'Tyres', 'serviceId': 'bogus', 'catalogId': OID})
    assert item.service_id == OID
    assert item.catalog_id == OID

    item = normalize({'name': 'Tyres', 'serviceId': OTHER_OID, 'catalogId': 'nope'})
    assert item.service_id == OTHER_OID
    assert item.catalog_id == OTHER_OID

    item = normalize({'name': 'Tyres', 'serviceId': '123'})
    assert item.service_id is None and item.catalog_id is None
    assert is_valid_object_id(OID)
    assert not is_valid_object_id('g' * 24)


def test_detail_precedence():
    item = normalize({
        'name': 'Oil Change',
        'details': {'oilFilter': 'Canonical', 'customField': 'from alias'},
        'oilFilter': 'Top level',
        'filter': 'Legacy',
        'oilGrade': ' 5W-30 ',
        'oilMake': '   ',
    })
    assert item.details == {
        'oilFilter': 'Canonical',
        'oilGrade': '5W-30',
        'customNote': 'from alias',
    }
    assert item.has_oil_details

    legacy = normalize({'name': 'Oil Change', 'filter': 'Legacy', 'customField': 'note'})
    assert legacy.details == {'oilFilter': 'Legacy', 'customNote': 'note'}


def test_numbers_are_total_and_non_negative():
    item = normalize({'name': 'x', 'price': 'abc', 'durationMinutes': float('nan')})
    assert item.price == 0
    assert item.duration_minutes == 0

    item = normalize({'name': 'x', 'price': -5, 'cost': 10, 'durationMinutes': -3})
    assert item.price == 0
    assert item.duration_minutes == 0

    item = normalize({'name': 'x', 'cost': '12.5', 'estimatedTime': '2h'})
    assert item.price == 12.5
    assert item.duration_minutes == 120
    assert effective_price(item) == 12.5


def test_explicit_duration_wins_over_estimated_time():
    item = normalize({'name': 'x', 'durationMinutes': 15, 'estimatedTime': '2h'})
    assert item.duration_minutes == 15
    assert item.estimated_time == '2h'

    item = normalize({'name': 'x', 'durationMinutes': 75})
    assert item.estimated_time == '1 hour 15 mins'


def test_missing_id_gets_stable_fallback():
    a = normalize({'name': 'Wash'})
    b = normalize({'name': 'Wash'})
    assert a.id == b.id
    assert a.id.startswith('line-')
    assert normalize({'name': 'Wash', '_id': 'abc'}).id == 'abc'


def test_normalize_all_skips_empty_entries():
    items = normalize_all([{'name': 'A'}, None, ServiceLineItem(id='b', name='B')])
    assert [i.name for i in items] == ['A', 'B']
    assert normalize_all(None) == []


def test_huge_numbers_normalize_to_zero():
    item = normalize({'name': 'x', 'price': 10**400, 'durationMinutes': 10**400,
                      'estimatedCost': 5})
    assert item.price == 0
    assert item.duration_minutes == 0
    assert parse_duration(10**400) == 0


def test_id_less_lines_with_same_name_get_distinct_ids():
    items = normalize_all([{'name': 'Wheel alignment'}, {'name': 'Wheel alignment'}])
    assert items[0].id != items[1].id
    again = normalize_all(items)
    assert [i.id for i in again] == [i.id for i in items]
    assert [i.id for i in normalize_all([{'name': 'Wheel alignment'}] * 2)] == [i.id for i in items]
