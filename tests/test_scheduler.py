import asyncio
import logging
from datetime import datetime
from threading import Event, Thread

from models import ReservationStatus
from repository import InMemoryReservationRepository
from scheduler import ReminderScheduler, SweepResult

from conftest import ADMIN, BERLIN, NOW, RecordingNotifier, ist, make_reservation


def make_scheduler(repo, notifier, admin_email=ADMIN, **kwargs) -> ReminderScheduler:
    return ReminderScheduler(
        repo,
        notifier,
        admin_email=admin_email,
        timezone="Asia/Kolkata",
        horizon_days=2,
        clock=lambda: NOW,
        **kwargs,
    )


def test_reminds_pending_reservations_within_horizon(repo, notifier):
    due = make_reservation(repo, ist(2024, 5, 22, 20), ist(2024, 5, 22, 21))
    make_reservation(repo, ist(2024, 5, 23, 10), ist(2024, 5, 23, 11))  # after end of day NOW + 2
    make_reservation(repo, ist(2024, 5, 21, 10), ist(2024, 5, 21, 11), status=ReservationStatus.APPROVED)
    make_reservation(repo, ist(2024, 5, 21, 12), ist(2024, 5, 21, 13), reminder_sent=True)
    make_reservation(repo, ist(2024, 5, 20, 9), ist(2024, 5, 20, 10))  # already started

    result = make_scheduler(repo, notifier).sweep(NOW)

    assert result == SweepResult(processed=1, notified=1, failed=0, skipped=0)
    assert [(e.recipient, e.kind.value, e.reservation.id) for e in notifier.events] == [
        (ADMIN, "pending_reminder", due.id)
    ]
    assert repo.get(due.id).reminder_sent is True


def test_second_sweep_sends_nothing(repo, notifier):
    make_reservation(repo, ist(2024, 5, 21, 10), ist(2024, 5, 21, 11))
    make_reservation(repo, ist(2024, 5, 22, 10), ist(2024, 5, 22, 11))
    scheduler = make_scheduler(repo, notifier)

    first = scheduler.sweep(NOW)
    second = scheduler.sweep(NOW)

    assert first.notified == 2
    assert second == SweepResult()
    assert len(notifier.events) == 2


def test_dispatch_failure_still_marks_reminded(repo):
    class BrokenNotifier:
        calls = 0

        def notify(self, event):
            BrokenNotifier.calls += 1
            raise ConnectionError("smtp down")

    r = make_reservation(repo, ist(2024, 5, 21, 10), ist(2024, 5, 21, 11))
    scheduler = make_scheduler(repo, BrokenNotifier())

    result = scheduler.sweep(NOW)
    again = scheduler.sweep(NOW)

    assert result == SweepResult(processed=1, notified=0, failed=1, skipped=0)
    assert repo.get(r.id).reminder_sent is True
    assert again.processed == 0
    assert BrokenNotifier.calls == 1


def test_one_failure_does_not_block_others(repo):
    bad = make_reservation(repo, ist(2024, 5, 21, 10), ist(2024, 5, 21, 11))
    good = [
        make_reservation(repo, ist(2024, 5, 21, 12 + i), ist(2024, 5, 21, 13 + i), resource_id=f"aud_{i}")
        for i in range(4)
    ]

    class FlakyNotifier(RecordingNotifier):
        def notify(self, event):
            if event.reservation.id == bad.id:
                raise RuntimeError("template error")
            super().notify(event)

    notifier = FlakyNotifier()
    result = make_scheduler(repo, notifier).sweep(NOW)

    assert result == SweepResult(processed=5, notified=4, failed=1, skipped=0)
    assert sorted(e.reservation.id for e in notifier.events) == sorted(r.id for r in good)
    assert all(repo.get(r.id).reminder_sent for r in [bad, *good])


def test_store_failure_after_send_is_logged_as_critical(notifier, caplog):
    class FailingMarkRepository(InMemoryReservationRepository):
        def mark_reminder_sent(self, reservation_id):
            raise ConnectionError("store unreachable")

    repo = FailingMarkRepository(clock=lambda: NOW)
    make_reservation(repo, ist(2024, 5, 21, 10), ist(2024, 5, 21, 11))

    with caplog.at_level(logging.CRITICAL, logger="scheduler"):
        result = make_scheduler(repo, notifier).sweep(NOW)

    assert result == SweepResult(processed=1, notified=0, failed=1, skipped=0)
    assert len(notifier.events) == 1
    assert any(rec.levelno == logging.CRITICAL for rec in caplog.records)


def test_no_admin_email_skips_sweep(repo, notifier):
    r = make_reservation(repo, ist(2024, 5, 21, 10), ist(2024, 5, 21, 11))

    result = make_scheduler(repo, notifier, admin_email=None).sweep(NOW)

    assert result == SweepResult()
    assert notifier.events == []
    assert repo.get(r.id).reminder_sent is False


def test_horizon_can_be_overridden_per_sweep(repo, notifier):
    far = make_reservation(repo, ist(2024, 5, 25, 10), ist(2024, 5, 25, 11))
    scheduler = make_scheduler(repo, notifier)

    assert scheduler.sweep(NOW).processed == 0
    assert scheduler.sweep(NOW, horizon_days=5).notified == 1
    assert repo.get(far.id).reminder_sent is True


def test_overlapping_sweeps_do_not_double_send(repo):
    make_reservation(repo, ist(2024, 5, 21, 10), ist(2024, 5, 21, 11))
    entered = Event()
    release = Event()

    class SlowNotifier(RecordingNotifier):
        def notify(self, event):
            entered.set()
            release.wait(timeout=5)
            super().notify(event)

    notifier = SlowNotifier()
    scheduler = make_scheduler(repo, notifier)
    results = []
    worker = Thread(target=lambda: results.append(scheduler.sweep(NOW)))
    worker.start()
    assert entered.wait(timeout=5)

    overlapping = scheduler.sweep(NOW)
    release.set()
    worker.join(timeout=5)

    assert overlapping == SweepResult()
    assert results[0].notified == 1
    assert len(notifier.events) == 1


def test_periodic_task_runs_and_stops(repo, notifier):
    make_reservation(repo, ist(2024, 5, 21, 10), ist(2024, 5, 21, 11))
    scheduler = make_scheduler(repo, notifier, interval_seconds=0.01)

    async def run():
        scheduler.start()
        await asyncio.sleep(0.2)
        await scheduler.stop()

    asyncio.run(run())

    assert len(notifier.events) == 1


def test_reminder_horizon_counts_calendar_days_across_dst_change(repo, notifier):
    # Clocks go back in Berlin on Oct 27; two days after Oct 26 00:30 local is still Oct 28.
    now = datetime(2024, 10, 26, 0, 30, tzinfo=BERLIN)
    due = make_reservation(
        repo, datetime(2024, 10, 28, 20, tzinfo=BERLIN), datetime(2024, 10, 28, 21, tzinfo=BERLIN)
    )
    scheduler = ReminderScheduler(repo, notifier, admin_email=ADMIN, timezone="Europe/Berlin", horizon_days=2)

    window = scheduler.reminder_window(now)
    result = scheduler.sweep(now)

    assert window.end.astimezone(BERLIN).date().isoformat() == "2024-10-28"
    assert window.end.astimezone(BERLIN).hour == 23
    assert result.notified == 1
    assert repo.get(due.id).reminder_sent is True


def test_flag_already_flipped_elsewhere_counts_as_skipped(notifier, caplog):
    class RacedRepository(InMemoryReservationRepository):
        def mark_reminder_sent(self, reservation_id):
            # Another process won the flip between the re-read and this write.
            super().mark_reminder_sent(reservation_id)
            return False

    repo = RacedRepository(clock=lambda: NOW)
    make_reservation(repo, ist(2024, 5, 21, 10), ist(2024, 5, 21, 11))

    with caplog.at_level(logging.ERROR, logger="scheduler"):
        result = make_scheduler(repo, notifier).sweep(NOW)

    assert result == SweepResult(processed=1, notified=0, failed=0, skipped=1)
    assert any(r.levelno == logging.ERROR and "sent twice" in r.getMessage() for r in caplog.records)
