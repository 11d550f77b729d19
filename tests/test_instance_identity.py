from datetime import date, datetime, timedelta, timezone

import pytest

from dayflow.identity import InvalidIdentityError, instance_identity, parse_instance_identity


def test_identity_is_task_id_and_calendar_day():
    assert instance_identity(42, date(2024, 1, 15)) == '42-2024-01-15'


def test_time_of_day_is_not_part_of_identity():
    morning = instance_identity(7, datetime(2024, 3, 5, 6, 0))
    evening = instance_identity(7, datetime(2024, 3, 5, 23, 59))
    assert morning == evening == '7-2024-03-05'


def test_aware_datetime_keeps_its_own_day():
    tz = timezone(timedelta(hours=-5))
    assert instance_identity(3, datetime(2024, 3, 5, 22, 0, tzinfo=tz)) == '3-2024-03-05'


def test_distinct_days_and_tasks_give_distinct_identities():
    ids = {instance_identity(t, date(2024, 1, d)) for t in (1, 11) for d in (1, 11)}
    assert len(ids) == 4


def test_parse_returns_task_and_day():
    assert parse_instance_identity('42-2024-01-15') == (42, date(2024, 1, 15))
    task_id, day = parse_instance_identity(instance_identity(0, date(2024, 2, 29)))
    assert (task_id, day) == (0, date(2024, 2, 29))


@pytest.mark.parametrize('bad', [
    '', 'abc', '42', '42-2024-13-01', '42-2023-02-29', '-2024-01-01',
    '42_2024-01-15', '42-2024-1-5', 'x-2024-01-15', '42-2024-01-15T09:00',
    '042-2024-01-15', '00-2024-01-15',
])
def test_malformed_identities_rejected(bad):
    with pytest.raises(InvalidIdentityError):
        parse_instance_identity(bad)


@pytest.mark.parametrize('task_id', [-1, '5', None, True, 1.0])
def test_identity_requires_integer_task_id(task_id):
    with pytest.raises(InvalidIdentityError):
        instance_identity(task_id, date(2024, 1, 1))


def test_only_canonical_identities_parse():
    ident = instance_identity(1, date(2024, 1, 3))
    assert parse_instance_identity(ident) == (1, date(2024, 1, 3))
    with pytest.raises(InvalidIdentityError):
        parse_instance_identity('0' + ident)
