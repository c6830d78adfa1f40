"""
Tests for service CRUD, the detect/confirm flow and the cost summary.
"""
import os
import sys
from datetime import date
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from billtrack.models import Frequency, RecurringService, ServicePayment, ServiceStatus
from billtrack.services.errors import DuplicateServiceError, NotFoundError, ValidationError
from billtrack.services.payment_ledger import PaymentLedger
from billtrack.services.service_registry import RecurringServiceManager

from helpers import USER_ID, add_category, add_monthly_series, add_service, add_transaction, session_scope

TODAY = date(2024, 6, 20)


def test_create_service_normalizes_and_schedules():
    with session_scope() as db:
        manager = RecurringServiceManager(db, USER_ID)
        service = manager.create_service(
            {
                "name": "  Netflix ",
                "frequency": "monthly",
                "typical_day_of_month": 15,
                "estimated_amount": "-15.99",
                "currency": "eur",
            },
            today=date(2024, 3, 20),
            first_payment_date=date(2024, 3, 15),
        )

        assert service.name == "Netflix"
        assert service.normalized_name == "netflix"
        assert service.merchant_patterns == ["netflix"]
        assert service.estimated_amount == Decimal("15.99")
        assert service.currency == "EUR"
        assert service.is_auto_detected is False
        assert service.next_expected_date == date(2024, 4, 15)
        assert service.status == ServiceStatus.UP_TO_DATE
    print("✓ Manual service created and scheduled")


def test_invalid_input_persists_nothing():
    invalid = [
        {"name": "Gym", "typical_day_of_month": 32},
        {"name": "Gym", "typical_day_of_month": 0},
        {"name": "Gym", "frequency": "fortnightly"},
        {"name": "Gym", "amount_varies": True, "min_amount": "50", "max_amount": "20"},
        {"name": "Gym", "currency": "EU"},
        {"name": "Gym", "status": "overdue"},
        {"name": "   "},
        {"name": "Gym", "next_expected_date": "2024-01-01"},
    ]
    with session_scope() as db:
        manager = RecurringServiceManager(db, USER_ID)
        for fields in invalid:
            with pytest.raises(ValidationError):
                manager.create_service(fields)
        assert db.query(RecurringService).count() == 0
    print("✓ Validation errors leave the store untouched")


def test_weekly_service_drops_anchor_day():
    with session_scope() as db:
        service = RecurringServiceManager(db, USER_ID).create_service(
            {"name": "Veggie Box", "frequency": "weekly", "typical_day_of_month": 12}
        )
        assert service.frequency == Frequency.WEEKLY
        assert service.typical_day_of_month is None
    print("✓ Weekly services carry no day of month")


def test_duplicate_names_rejected_until_cancelled():
    with session_scope() as db:
        manager = RecurringServiceManager(db, USER_ID)
        original = manager.create_service({"name": "Netflix"})

        for name in ("NETFLIX", "netflix", "Netflix.com"):
            with pytest.raises(DuplicateServiceError):
                manager.create_service({"name": name})
        assert db.query(RecurringService).count() == 1

        manager.update_service(original.id, {"status": "cancelled"})
        again = manager.create_service({"name": "Netflix"})
        assert again.id != original.id

        with pytest.raises(DuplicateServiceError):
            manager.update_service(original.id, {"status": "active"})
    print("✓ One live service per normalized name")


def test_rename_onto_existing_name_is_duplicate():
    with session_scope() as db:
        manager = RecurringServiceManager(db, USER_ID)
        manager.create_service({"name": "Spotify"})
        gym = manager.create_service({"name": "Gym"})

        with pytest.raises(DuplicateServiceError):
            manager.update_service(gym.id, {"name": "spotify"})

        db.refresh(gym)
        assert gym.name == "Gym"
    print("✓ Renames respect uniqueness")


def test_concurrent_create_loses_on_unique_index(monkeypatch):
    with session_scope() as db:
        manager = RecurringServiceManager(db, USER_ID)
        manager.create_service({"name": "Netflix"})

        # Both writers passed the name check before either committed
        monkeypatch.setattr(manager, "_find_live_service", lambda normalized_name, exclude_id=None: None)
        with pytest.raises(DuplicateServiceError):
            manager.create_service({"name": "NETFLIX"})

        assert db.query(RecurringService).count() == 1
        spotify = manager.create_service({"name": "Spotify"})
        assert spotify.normalized_name == "spotify"
    print("✓ Losing a create race raises DuplicateServiceError and keeps the session usable")


def test_schedule_change_recomputes_next_date():
    with session_scope() as db:
        manager = RecurringServiceManager(db, USER_ID)
        gym = manager.create_service(
            {"name": "Gym", "typical_day_of_month": 1},
            today=date(2024, 1, 10),
            first_payment_date=date(2024, 1, 1),
        )
        assert gym.next_expected_date == date(2024, 2, 1)

        updated = manager.update_service(gym.id, {"frequency": "quarterly"}, today=date(2024, 1, 10))

        assert updated.frequency == Frequency.QUARTERLY
        assert updated.next_expected_date == date(2024, 4, 1)
        assert updated.status == ServiceStatus.UP_TO_DATE
    print("✓ Frequency change re-projects the schedule")


def test_pause_is_sticky_and_resume_reconciles():
    with session_scope() as db:
        manager = RecurringServiceManager(db, USER_ID)
        gym = manager.create_service(
            {"name": "Gym", "typical_day_of_month": 1},
            today=date(2024, 1, 10),
            first_payment_date=date(2024, 1, 1),
        )

        paused = manager.update_service(gym.id, {"status": "paused"}, today=date(2024, 5, 1))
        assert paused.status == ServiceStatus.PAUSED
        assert paused.next_expected_date == date(2024, 2, 1)

        with pytest.raises(ValidationError):
            manager.update_service(gym.id, {"status": "due_soon"})
        with pytest.raises(ValidationError):
            manager.update_service(gym.id, {"next_expected_date": date(2024, 9, 1)})

        resumed = manager.update_service(gym.id, {"status": "active"}, today=date(2024, 5, 1))
        assert resumed.status == ServiceStatus.OVERDUE
        assert resumed.next_expected_date == date(2024, 2, 1)
    print("✓ Paused is sticky; active hands status back to the reconciler")


def test_explicit_nulls_leave_required_fields_unchanged():
    with session_scope() as db:
        manager = RecurringServiceManager(db, USER_ID)
        gym = manager.create_service({"name": "Gym", "typical_day_of_month": 1}, today=date(2024, 1, 10))
        manager.update_service(gym.id, {"status": "paused"}, today=date(2024, 1, 10))

        updated = manager.update_service(
            gym.id,
            {"status": None, "name": None, "frequency": None, "currency": None, "notes": "Annual fee in March"},
            today=date(2024, 5, 1),
        )

        assert updated.status == ServiceStatus.PAUSED
        assert updated.name == "Gym"
        assert updated.frequency == Frequency.MONTHLY
        assert updated.currency == "EUR"
        assert updated.notes == "Annual fee in March"
    print("✓ Null status or name in a patch changes nothing")


def test_delete_removes_payments_and_unknown_ids_404():
    with session_scope() as db:
        manager = RecurringServiceManager(db, USER_ID)
        netflix = manager.create_service({"name": "Netflix", "typical_day_of_month": 15})
        txn = add_transaction(db, date(2024, 3, 15), "-15.99", "NETFLIX.COM")
        PaymentLedger(db, USER_ID).link(netflix.id, txn.id, today=date(2024, 3, 20))

        service_id = netflix.id
        manager.delete_service(service_id)

        assert db.query(RecurringService).count() == 0
        assert db.query(ServicePayment).count() == 0
        with pytest.raises(NotFoundError):
            manager.get_service(service_id)
        with pytest.raises(NotFoundError):
            manager.delete_service("not-a-uuid")
    print("✓ Delete cascades to payments")


def test_get_services_filters_and_recent_payments():
    with session_scope() as db:
        manager = RecurringServiceManager(db, USER_ID)
        netflix = add_service(db, name="Netflix", typical_day_of_month=15)
        add_service(db, name="Gym", status=ServiceStatus.PAUSED)
        ledger = PaymentLedger(db, USER_ID)
        for txn in add_monthly_series(db, "NETFLIX.COM", ["-15.99"] * 7, date(2024, 1, 15)):
            ledger.link(netflix.id, txn.id, today=TODAY)

        assert {l.service.name for l in manager.get_services()} == {"Netflix", "Gym"}
        assert {l.service.name for l in manager.get_services("all")} == {"Netflix", "Gym"}
        assert [l.service.name for l in manager.get_services("paused")] == ["Gym"]
        assert [l.service.name for l in manager.get_services("live")] == ["Netflix"]
        assert manager.get_services("active") == []
        with pytest.raises(ValidationError):
            manager.get_services("sleeping")

        listings = {l.service.name: l for l in manager.get_services(include_payments=True)}
        recent = listings["Netflix"].recent_payments
        assert len(recent) == 5
        assert recent[0].payment_date == date(2024, 7, 15)
        assert listings["Gym"].recent_payments == []
        assert manager.get_services()[0].recent_payments is None
    print("✓ Listing filters by status and attaches recent payments")


def test_detect_then_confirm_links_every_transaction():
    with session_scope() as db:
        category = add_category(db, "Streaming")
        add_monthly_series(
            db, "NETFLIX.COM 866-579-7172", ["-15.99"] * 6, date(2024, 1, 15), category_id=category.id,
        )
        manager = RecurringServiceManager(db, USER_ID)

        candidates = manager.detect(today=TODAY)
        assert [c.name for c in candidates] == ["Netflix"]
        assert db.query(RecurringService).count() == 0

        result = manager.confirm_detected(candidates, today=TODAY)

        assert result.created_count == 1
        assert result.linked_count == 6
        assert result.skipped_duplicates == []
        assert result.errors == []

        service = db.query(RecurringService).one()
        assert service.is_auto_detected is True
        assert service.auto_detection_confidence == candidates[0].auto_detection_confidence
        assert service.category_id == category.id
        assert service.first_payment_date == date(2024, 1, 15)
        assert service.last_payment_date == date(2024, 6, 15)
        assert service.next_expected_date == date(2024, 7, 15)
        assert service.status == ServiceStatus.UP_TO_DATE
        assert db.query(ServicePayment).count() == 6

        assert manager.detect(today=TODAY) == []
    print("✓ Detect, confirm, and detection stays quiet afterwards")


def test_confirmed_alias_service_auto_links_next_charge():
    with session_scope() as db:
        add_monthly_series(db, "ANTHROPIC", ["-20.00"] * 4, date(2024, 2, 5))
        manager = RecurringServiceManager(db, USER_ID)

        candidates = manager.detect(today=TODAY)
        assert [c.name for c in candidates] == ["Claude Pro"]
        manager.confirm_detected(candidates, today=TODAY)
        service = db.query(RecurringService).one()
        assert service.next_expected_date == date(2024, 6, 5)

        charge = add_transaction(db, date(2024, 6, 5), "-20.00", "ANTHROPIC")
        payment = PaymentLedger(db, USER_ID).auto_link_transaction(charge.id, today=TODAY)

        assert payment is not None
        assert payment.service_id == service.id
        assert payment.match_confidence == 100
    print("✓ Alias merchant charges auto-link to the detected service")


def test_confirm_skips_duplicates_and_creates_the_rest():
    with session_scope() as db:
        add_monthly_series(db, "NETFLIX.COM", ["-15.99"] * 5, date(2024, 2, 15))
        add_monthly_series(db, "SPOTIFY P1234567", ["-9.99"] * 5, date(2024, 2, 3))
        manager = RecurringServiceManager(db, USER_ID)

        candidates = manager.detect(today=TODAY)
        assert {c.name for c in candidates} == {"Netflix", "Spotify"}

        manager.create_service({"name": "Netflix"})
        result = manager.confirm_detected(candidates, today=TODAY)

        assert result.created_count == 1
        assert result.skipped_duplicates == ["Netflix"]
        assert result.linked_count == 5
        spotify = db.query(RecurringService).filter(RecurringService.normalized_name == "spotify").one()
        assert str(spotify.id) in result.service_ids
        assert db.query(RecurringService).count() == 2
    print("✓ Duplicates skipped, other candidates confirmed")


def test_detect_validates_parameters():
    with session_scope() as db:
        manager = RecurringServiceManager(db, USER_ID)
        with pytest.raises(ValidationError):
            manager.detect(min_occurrences=1)
        with pytest.raises(ValidationError):
            manager.detect(lookback_months=0)
        assert manager.detect(today=TODAY) == []
    print("✓ Detection parameters validated")


def test_summary_totals_live_services_by_currency():
    with session_scope() as db:
        add_service(db, name="Netflix", estimated_amount=Decimal("15.99"))
        add_service(db, name="Domain", frequency=Frequency.ANNUAL, estimated_amount=Decimal("12.00"))
        add_service(db, name="Gym", status=ServiceStatus.PAUSED, estimated_amount=Decimal("30.00"))
        add_service(db, name="Cleaner", frequency=Frequency.WEEKLY, estimated_amount=Decimal("10.00"), currency="USD")

        summary = RecurringServiceManager(db, USER_ID).get_summary()

        assert summary["total_services"] == 4
        assert summary["total_live"] == 3
        assert summary["by_status"] == {"active": 3, "paused": 1}
        assert summary["by_frequency"]["monthly"]["count"] == 1
        assert summary["by_frequency"]["weekly"]["monthly_equivalent"] == {"USD": 43.3}
        assert summary["monthly_total_by_currency"] == {"EUR": 16.99, "USD": 43.3}
        assert summary["yearly_total_by_currency"] == {"EUR": 203.88, "USD": 519.6}
    print("✓ Summary totals by currency")


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
