# tests/test_tasks.py - Push receipt follow-up task

from unittest.mock import patch

from app.core.config import settings
from app.notifications.models import Teacher
from app.notifications.tasks import check_push_receipts, schedule_receipt_check
from conftest import expo_token


def test_dead_devices_are_pruned(add_user, session_factory):
    """DeviceNotRegistered receipts remove the token from its owner"""
    teacher = add_user(Teacher)
    teacher.replace_endpoint_token(expo_token("dead"), "d1")
    teacher.replace_endpoint_token(expo_token("alive"), "d2")
    with session_factory() as db:
        db.merge(teacher)
        db.commit()

    receipts = {
        "ticket-1": {"status": "error", "message": "gone", "details": {"error": "DeviceNotRegistered"}},
        "ticket-2": {"status": "ok"},
    }
    with patch("app.notifications.tasks.ExpoPushGateway") as gateway_cls:
        gateway_cls.return_value.fetch_receipts.return_value = receipts
        result = check_push_receipts({"ticket-1": expo_token("dead"), "ticket-2": expo_token("alive")})

    assert result == {"checked": 2, "errors": 1, "pruned": 1}
    with session_factory() as db:
        assert db.get(Teacher, teacher.id).token_values() == [expo_token("alive")]


def test_other_errors_are_only_counted():
    with patch("app.notifications.tasks.ExpoPushGateway") as gateway_cls:
        gateway_cls.return_value.fetch_receipts.return_value = {
            "ticket-1": {"status": "error", "details": {"error": "MessageRateExceeded"}},
        }
        result = check_push_receipts({"ticket-1": expo_token("busy")})

    assert result == {"checked": 1, "errors": 1, "pruned": 0}


def test_nothing_to_check():
    with patch("app.notifications.tasks.ExpoPushGateway") as gateway_cls:
        assert check_push_receipts({}) == {"checked": 0, "errors": 0, "pruned": 0}
    gateway_cls.assert_not_called()


def test_schedule_receipt_check_uses_delay():
    with patch.object(check_push_receipts, "apply_async") as apply_async:
        schedule_receipt_check({"ticket-1": expo_token("a")})

    apply_async.assert_called_once_with(
        args=[{"ticket-1": expo_token("a")}],
        countdown=settings.PUSH_RECEIPT_CHECK_DELAY_SECONDS,
    )
