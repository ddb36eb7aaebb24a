from datetime import timedelta

from stockaudit.extensions import db
from stockaudit.models import Notification
from stockaudit.services import notification_service
from stockaudit.services.notification_service import NotificationEvent, publish, set_notification_sink
from stockaudit.time_utils import utcnow

from conftest import FailingSink, RecordingSink


def _notify(user_id, title="Hello", is_read=False, created_at=None):
    n = Notification(
        user_id=user_id,
        type=notification_service.TYPE_SYSTEM,
        title=title,
        is_read=is_read,
        created_at=created_at or utcnow(),
    )
    db.session.add(n)
    db.session.commit()
    return n


def test_store_employee_ids(db_session, store_bee, store_ant, employees):
    bee = notification_service.store_employee_ids(store_bee.id)
    ant = notification_service.store_employee_ids(store_ant.id)

    assert sorted(bee) == sorted([employees["alice"].id, employees["bob"].id, employees["carol"].id])
    assert ant == [employees["carol"].id]
    assert employees["alice"].id not in notification_service.store_employee_ids(
        store_bee.id, exclude_user_id=employees["alice"].id,
    )


def test_publish_skips_events_without_recipients(app, db_session):
    sink = RecordingSink()
    set_notification_sink(app, sink)

    publish([NotificationEvent(user_ids=(), type=notification_service.TYPE_SYSTEM, title="nobody")])

    assert sink.calls == []


def test_publish_swallows_sink_failures(app, db_session, employees):
    set_notification_sink(app, FailingSink())

    publish([NotificationEvent(user_ids=(employees["alice"].id,), type=notification_service.TYPE_SYSTEM, title="x")])


def test_database_sink_rejects_unknown_type(app, db_session, employees):
    publish([NotificationEvent(user_ids=(employees["alice"].id,), type="BOGUS", title="x")])

    assert db.session.query(Notification).count() == 0


def test_read_side(db_session, employees):
    alice, bob = employees["alice"], employees["bob"]
    first = _notify(alice.id, "first")
    second = _notify(alice.id, "second")
    _notify(bob.id, "for bob")

    assert notification_service.get_unread_count(alice.id) == 2
    assert [n["title"] for n in notification_service.list_notifications(alice.id)] == ["second", "first"]

    assert notification_service.mark_as_read(first.id, alice.id) is True
    assert notification_service.mark_as_read(first.id, bob.id) is False
    assert [n["id"] for n in notification_service.list_notifications(alice.id, unread_only=True)] == [second.id]

    assert notification_service.mark_all_as_read(alice.id) == 1
    assert notification_service.get_unread_count(alice.id) == 0
    assert notification_service.get_unread_count(bob.id) == 1


def test_clean_old_notifications_only_removes_old_read_rows(db_session, employees):
    alice = employees["alice"]
    old = utcnow() - timedelta(days=45)
    _notify(alice.id, "old read", is_read=True, created_at=old)
    _notify(alice.id, "old unread", is_read=False, created_at=old)
    _notify(alice.id, "new read", is_read=True)

    deleted = notification_service.clean_old_notifications(days_old=30)

    assert deleted == 1
    titles = {n.title for n in db.session.query(Notification).all()}
    assert titles == {"old unread", "new read"}
