import hashlib
import logging
from types import SimpleNamespace

from dateutil.rrule import rrulestr
from icalendar import Calendar

from hamflow.calendar_export import (
    calendar_feed_token,
    calendar_feed_url,
    to_calendar_document,
    verify_feed_token,
)
from hamflow.expander import entity_from_task, expand
from hamflow.models import PomodoroSession, Reminder
from hamflow.recurrence import build_rrule, parse_recurring_pattern
from hamflow.utils import to_local_date_key

from conftest import jst, make_habit, make_task, utc

FRONTEND = 'https://hamflow.test'


def _export(**kw):
    kw.setdefault('frontend_url', FRONTEND)
    kw.setdefault('now', utc(2024, 1, 1))
    return to_calendar_document(**kw)


def _lines(doc):
    """Unfolded content lines."""
    return doc.replace('\r\n ', '').split('\r\n')


def _events(doc):
    events, current = [], None
    for line in _lines(doc):
        if line == 'BEGIN:VEVENT':
            current = []
        elif line == 'END:VEVENT':
            events.append(current)
            current = None
        elif current is not None:
            current.append(line)
    return events


def _prop(event, name):
    for line in event:
        head, _, value = line.partition(':')
        if head.split(';')[0] == name:
            return line
    return None


def test_document_envelope():
    doc = _export()
    lines = _lines(doc)
    assert lines[0] == 'BEGIN:VCALENDAR'
    assert doc.endswith('END:VCALENDAR\r\n')
    assert 'VERSION:2.0' in lines
    assert 'PRODID:-//HamFlow//Tasks Calendar//EN' in lines
    assert 'X-WR-CALNAME:HamFlow Tasks & Habits' in lines
    assert '\n' not in doc.replace('\r\n', '')


def test_custom_pattern_task_has_no_rrule():
    task = make_task(id='t1', title='Standup', created_at=jst('2024-01-01'), due_date=jst('2024-01-01', '09:00'),
                     recurring_pattern='custom:0 9 * * 1-5')
    doc = _export(tasks=[task])
    assert 'RRULE' not in doc
    [event] = _events(doc)
    assert 'SUMMARY:[work] Standup' in event
    assert 'DTSTART;TZID=Asia/Tokyo:20240101T090000' in event
    assert 'DTEND;TZID=Asia/Tokyo:20240101T100000' in event


def test_task_event_fields():
    task = make_task(id='t2', title='Pay rent', description='Transfer', created_at=jst('2024-01-01'),
                     due_date=jst('2024-01-05', '18:00'), priority='urgent', space='personal',
                     board_id='b7', link='https://bank.example')
    [event] = _events(_export(tasks=[task]))
    assert 'UID:task-t2@hamflow' in event
    assert 'DTSTAMP:20240101T000000Z' in event
    assert 'SUMMARY:[personal] Pay rent' in event
    assert 'DESCRIPTION:Transfer\\n\\nLink: https://bank.example' in event
    assert 'CATEGORIES:personal,tasks' in event
    assert f'URL:{FRONTEND}/board/b7' in event
    assert 'STATUS:CONFIRMED' in event
    assert 'PRIORITY:1' in event
    assert _prop(event, 'RRULE') is None


def test_completed_one_off_task_is_cancelled_and_links_to_agenda():
    task = make_task(id='t3', title='Done', created_at=jst('2024-01-01'), due_date=jst('2024-01-02', '10:00'),
                     completed=True, priority='low')
    [event] = _events(_export(tasks=[task]))
    assert 'STATUS:CANCELLED' in event
    assert 'PRIORITY:7' in event
    assert f'URL:{FRONTEND}/agenda?date=2024-01-02' in event


def test_weekly_rule_and_until():
    # due on a Tuesday; the first scheduled day is Wednesday
    task = make_task(id='t4', title='Gym', created_at=jst('2024-01-01'), due_date=jst('2024-01-02', '08:00'),
                     recurring_pattern='weekly:1,3', recurring_end_date=jst('2024-01-31', '12:00'))
    [event] = _events(_export(tasks=[task]))
    assert 'DTSTART;TZID=Asia/Tokyo:20240103T080000' in event
    rrule = _prop(event, 'RRULE')
    assert 'FREQ=WEEKLY' in rrule
    assert 'BYDAY=MO,WE' in rrule
    assert 'UNTIL=20240131T145959Z' in rrule


def test_daily_monthly_yearly_rules():
    tasks = [
        make_task(id=f't-{p}', title=p, created_at=jst('2024-01-01'), due_date=jst('2024-01-15', '09:00'),
                  recurring_pattern=p)
        for p in ('daily', 'monthly', 'yearly')
    ]
    events = _events(_export(tasks=tasks))
    rrules = sorted(_prop(e, 'RRULE') for e in events)
    assert rrules == ['RRULE:FREQ=DAILY', 'RRULE:FREQ=MONTHLY', 'RRULE:FREQ=YEARLY']


def test_free_text_is_escaped():
    task = make_task(id='t5', title='a,b;c\\d\nline', created_at=jst('2024-01-01'),
                     due_date=jst('2024-01-01', '09:00'))
    [event] = _events(_export(tasks=[task]))
    assert 'SUMMARY:[work] a\\,b\\;c\\\\d\\nline' in event


def test_habit_events():
    morning = make_habit(id='h1', name='Stretch', created_at=jst('2024-01-01', '06:00'), reminder_time='07:30')
    weekly = make_habit(id='h2', name='Long run', frequency='weekly', target_days=[0],
                        created_at=jst('2024-01-01'), space='personal')
    paused = make_habit(id='h3', name='Paused', created_at=jst('2024-01-01'), active=False)
    events = {(_prop(e, 'UID')): e for e in _events(_export(habits=[morning, weekly, paused]))}
    assert set(events) == {'UID:habit-h1@hamflow', 'UID:habit-h2@hamflow'}

    stretch = events['UID:habit-h1@hamflow']
    assert 'DTSTART;TZID=Asia/Tokyo:20240101T073000' in stretch
    assert 'DTEND;TZID=Asia/Tokyo:20240101T080000' in stretch
    assert 'RRULE:FREQ=DAILY' in stretch
    assert 'PRIORITY:5' in stretch
    assert 'CATEGORIES:work,habits' in stretch

    run = events['UID:habit-h2@hamflow']
    # created on a Monday, first Sunday is 2024-01-07; default time 09:00
    assert 'DTSTART;TZID=Asia/Tokyo:20240107T090000' in run
    assert 'RRULE:FREQ=WEEKLY;BYDAY=SU' in run
    assert 'CATEGORIES:personal,habits' in run


def test_weekly_habit_without_days_is_not_exported():
    habit = make_habit(id='h4', frequency='weekly', target_days=[], created_at=jst('2024-01-01'))
    assert _events(_export(habits=[habit])) == []


def test_reminders_and_sessions():
    reminder = Reminder(id='r1', user_id='u', reminder_time=utc(2024, 1, 2, 0, 0), message='Call mom')
    finished = PomodoroSession(id='p1', user_id='u', duration=25, type='focus',
                               start_time=utc(2024, 1, 2, 1, 0), completed_at=utc(2024, 1, 2, 1, 25))
    running = PomodoroSession(id='p2', user_id='u', duration=25, start_time=utc(2024, 1, 2, 2, 0))
    events = {_prop(e, 'UID'): e for e in _events(_export(reminders=[reminder], sessions=[finished, running]))}
    assert set(events) == {'UID:reminder-r1@hamflow', 'UID:pomodoro-p1@hamflow'}
    assert 'DTSTART;TZID=Asia/Tokyo:20240102T090000' in events['UID:reminder-r1@hamflow']
    assert 'SUMMARY:Call mom' in events['UID:reminder-r1@hamflow']
    assert 'DTEND;TZID=Asia/Tokyo:20240102T102500' in events['UID:pomodoro-p1@hamflow']


def test_incomplete_records_are_skipped(caplog):
    undated = make_task(id='t6', title='Someday', created_at=jst('2024-01-01'))
    bad_pattern = make_task(id='t7', title='Odd', created_at=jst('2024-01-01'), due_date=jst('2024-01-01', '09:00'),
                            recurring_pattern='biweekly')
    broken = SimpleNamespace(id='t8', due_date=jst('2024-01-01', '09:00'))
    no_time = Reminder(id='r2', user_id='u', message='?')
    good = make_task(id='t9', title='Fine', created_at=jst('2024-01-01'), due_date=jst('2024-01-01', '09:00'))
    with caplog.at_level(logging.WARNING):
        doc = _export(tasks=[undated, bad_pattern, broken, good], reminders=[no_time])
    uids = [_prop(e, 'UID') for e in _events(doc)]
    assert uids == ['UID:task-t9@hamflow']
    assert 't7' in caplog.text
    assert 't8' in caplog.text
    assert doc.endswith('END:VCALENDAR\r\n')


def test_events_include_a_timezone_definition():
    task = make_task(id='t10', title='x', created_at=jst('2024-01-01'), due_date=jst('2024-01-01', '09:00'))
    lines = _lines(_export(tasks=[task]))
    assert 'BEGIN:VTIMEZONE' in lines
    assert 'TZID:Asia/Tokyo' in lines


def test_feed_token_and_url():
    token = calendar_feed_token('u1', 's3cret')
    assert token == hashlib.sha256(b'u1-s3cret').hexdigest()
    assert verify_feed_token('u1', token, 's3cret')
    assert not verify_feed_token('u1', token, 'other')
    assert not verify_feed_token('u2', token, 's3cret')
    assert not verify_feed_token('u1', '', 's3cret')
    url = calendar_feed_url('u1', 'https://hamflow.test/', 's3cret')
    assert url == f'https://hamflow.test/api/calendar/ical/u1/{token}'


def _exported_days(task):
    """Local days a subscribed client would generate from the exported
    DTSTART/RRULE, computed twice: from the rule object and from the text."""
    [event] = Calendar.from_ical(_export(tasks=[task])).walk('VEVENT')
    dtstart = event.decoded('dtstart')
    until = event['rrule']['UNTIL'][0]
    rule = parse_recurring_pattern(task.recurring_pattern)
    from_rule = [to_local_date_key(dt) for dt in build_rrule(rule, dtstart, until)]
    from_text = [to_local_date_key(dt) for dt in rrulestr(event['rrule'].to_ical().decode(), dtstart=dtstart)]
    return dtstart, from_rule, from_text


def test_exported_rules_generate_the_expanded_days():
    weekly = make_task(id='t20', title='Gym', created_at=jst('2024-01-01'), due_date=jst('2024-01-02', '08:00'),
                       recurring_pattern='weekly:1,3', recurring_end_date=jst('2024-01-31', '12:00'))
    daily = make_task(id='t21', title='Meds', created_at=jst('2024-01-01'), due_date=utc(2024, 1, 5, 9, 0, 30),
                      recurring_pattern='daily', recurring_end_date=jst('2024-01-09', '08:00'))
    for task in (weekly, daily):
        expanded = [o.occurrence_date for o in expand([entity_from_task(task)], '2024-01-01', '2024-03-01')]
        dtstart, from_rule, from_text = _exported_days(task)
        assert from_rule == from_text == expanded
    assert expanded == ['2024-01-05', '2024-01-06', '2024-01-07', '2024-01-08', '2024-01-09']
    # wall time of the due date survives down to the second
    assert (dtstart.hour, dtstart.minute, dtstart.second) == (18, 0, 30)


def test_one_off_task_start_keeps_seconds():
    task = make_task(id='t22', title='Call', created_at=jst('2024-01-01'), due_date=utc(2024, 1, 5, 9, 0, 30))
    [event] = _events(_export(tasks=[task]))
    assert 'DTSTART;TZID=Asia/Tokyo:20240105T180030' in event
    assert 'DTEND;TZID=Asia/Tokyo:20240105T190030' in event
