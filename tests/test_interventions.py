from datetime import date, datetime, time, timezone
import uuid

import pytest

from fieldops.config import settings
from fieldops.models.models import Intervention, Notification, Shift
from fieldops.services import interventions as svc
from fieldops.services import shift_ledger as ledger
from fieldops.services.errors import (
    ConcurrentActiveJob,
    ConcurrentModification,
    DuplicateCheckpoint,
    FieldOpsError,
    GpsOutOfRange,
    InvalidShiftState,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    commit_or_raise,
)
from fieldops.services.geofence import GpsPoint

NEAR_SITE = GpsPoint(45.00001, -73.00001, accuracy_m=5)
FAR_FROM_SITE = GpsPoint(45.01, -73.0, accuracy_m=5)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_full_lifecycle_of_a_single_job(db, clock, agent, make_intervention):
    intervention = make_intervention([agent], code="INT-001")

    clock.set(utc(2024, 6, 1, 7, 58))
    shift = ledger.clock_in(db, clock, agent.id)
    assert shift.status == "active"

    clock.set(utc(2024, 6, 1, 8, 0))
    intervention = svc.start_intervention(db, clock, intervention.id, agent)
    assert intervention.status == "IN_PROGRESS"
    assert intervention.actual_start_time == utc(2024, 6, 1, 8, 0)
    assert intervention.started_by == agent.id
    # The existing shift is reused
    assert db.query(Shift).count() == 1

    clock.set(utc(2024, 6, 1, 8, 2))
    intervention = svc.check_in(db, clock, intervention.id, agent, NEAR_SITE)
    assert intervention.gps_check_in_time == utc(2024, 6, 1, 8, 2)

    clock.set(utc(2024, 6, 1, 9, 55))
    intervention = svc.check_out(db, clock, intervention.id, agent, NEAR_SITE)
    assert intervention.gps_check_out_time == utc(2024, 6, 1, 9, 55)

    clock.set(utc(2024, 6, 1, 10, 0))
    intervention = svc.complete_intervention(db, clock, intervention.id, agent)
    assert intervention.status == "COMPLETED"
    assert intervention.actual_end_time == utc(2024, 6, 1, 10, 0)

    with pytest.raises(InvalidTransition):
        svc.complete_intervention(db, clock, intervention.id, agent)


def test_generated_codes_are_sequential_per_year(make_intervention, agent):
    first = make_intervention([agent])
    second = make_intervention([agent])
    assert first.intervention_code == "INT-2024-00001"
    assert second.intervention_code == "INT-2024-00002"


def test_create_rejects_unknown_site_and_agents(db, clock, agent, site):
    with pytest.raises(NotFound):
        svc.create_intervention(
            db, clock,
            site_id=agent.id,
            scheduled_date=date(2024, 6, 1),
            scheduled_start_time=time(8, 0),
            scheduled_end_time=time(10, 0),
        )
    with pytest.raises(NotFound):
        svc.create_intervention(
            db, clock,
            site_id=site.id,
            scheduled_date=date(2024, 6, 1),
            scheduled_start_time=time(8, 0),
            scheduled_end_time=time(10, 0),
            assigned_agent_ids=[agent.id, uuid.uuid4()],
        )


def test_create_deduplicates_agents_and_rejects_duplicate_code(make_intervention, agent):
    intervention = make_intervention([agent, agent], code="INT-001")
    assert intervention.assigned_agent_ids == [agent.id]
    with pytest.raises(FieldOpsError):
        make_intervention([agent], code="INT-001")


def test_start_before_scheduled_time_is_rejected(db, clock, agent, make_intervention):
    intervention = make_intervention([agent])
    clock.set(utc(2024, 6, 1, 7, 59))
    with pytest.raises(InvalidTransition):
        svc.start_intervention(db, clock, intervention.id, agent)


def test_early_start_window_allows_starting_ahead(db, clock, agent, make_intervention, monkeypatch):
    monkeypatch.setattr(settings, "early_start_window_min", 15)
    intervention = make_intervention([agent])
    clock.set(utc(2024, 6, 1, 7, 45))
    assert svc.start_intervention(db, clock, intervention.id, agent).status == "IN_PROGRESS"


def test_start_uses_site_timezone(db, clock, agent, site, make_intervention):
    site.timezone = "America/Montreal"
    db.commit()
    intervention = make_intervention([agent])

    # 08:00 in Montreal is 12:00 UTC
    clock.set(utc(2024, 6, 1, 11, 59))
    with pytest.raises(InvalidTransition):
        svc.start_intervention(db, clock, intervention.id, agent)
    clock.set(utc(2024, 6, 1, 12, 0))
    assert svc.start_intervention(db, clock, intervention.id, agent).status == "IN_PROGRESS"


def test_start_clocks_agent_in_when_no_shift_is_open(db, clock, agent, make_intervention):
    intervention = make_intervention([agent])
    clock.set(utc(2024, 6, 1, 8, 0))

    svc.start_intervention(db, clock, intervention.id, agent)

    shift = ledger.find_open_shift(db, agent.id)
    assert shift is not None
    assert shift.clock_in == utc(2024, 6, 1, 8, 0)


def test_start_with_paused_shift_is_rejected(db, clock, agent, make_intervention):
    intervention = make_intervention([agent])
    shift = ledger.clock_in(db, clock, agent.id)
    ledger.pause(db, clock, shift.id)
    clock.set(utc(2024, 6, 1, 8, 0))

    with pytest.raises(InvalidShiftState):
        svc.start_intervention(db, clock, intervention.id, agent)
    assert svc.get_intervention(db, intervention.id).status == "SCHEDULED"


def test_unassigned_agent_cannot_start(db, clock, agent, other_agent, make_intervention):
    intervention = make_intervention([agent])
    clock.set(utc(2024, 6, 1, 8, 0))
    with pytest.raises(PermissionDenied):
        svc.start_intervention(db, clock, intervention.id, other_agent)


def test_supervisor_can_start_on_behalf_of_assigned_agent(db, clock, agent, supervisor, make_intervention):
    intervention = make_intervention([agent])
    clock.set(utc(2024, 6, 1, 8, 0))

    intervention = svc.start_intervention(db, clock, intervention.id, supervisor, agent_id=agent.id)

    assert intervention.started_by == agent.id
    assert ledger.find_open_shift(db, agent.id) is not None
    assert ledger.find_open_shift(db, supervisor.id) is None


def test_agent_cannot_start_on_behalf_of_someone_else(db, clock, agent, other_agent, make_intervention):
    intervention = make_intervention([agent, other_agent])
    clock.set(utc(2024, 6, 1, 8, 0))
    with pytest.raises(PermissionDenied):
        svc.start_intervention(db, clock, intervention.id, agent, agent_id=other_agent.id)


def test_second_concurrent_job_is_rejected(db, clock, agent, make_intervention):
    first = make_intervention([agent])
    second = make_intervention([agent], start=time(8, 30), end=time(9, 30))
    clock.set(utc(2024, 6, 1, 8, 30))

    svc.start_intervention(db, clock, first.id, agent)
    with pytest.raises(ConcurrentActiveJob):
        svc.start_intervention(db, clock, second.id, agent)

    svc.complete_intervention(db, clock, first.id, agent)
    assert svc.start_intervention(db, clock, second.id, agent).status == "IN_PROGRESS"
    # Both jobs ran under the same shift
    assert db.query(Shift).count() == 1


def test_job_started_by_a_teammate_counts_as_active(db, clock, agent, other_agent, make_intervention):
    shared = make_intervention([agent, other_agent])
    own = make_intervention([other_agent], start=time(8, 30), end=time(9, 30))
    clock.set(utc(2024, 6, 1, 8, 30))

    svc.start_intervention(db, clock, shared.id, agent)
    with pytest.raises(ConcurrentActiveJob):
        svc.start_intervention(db, clock, own.id, other_agent)

    assert svc.get_intervention(db, own.id).status == "SCHEDULED"
    assert ledger.find_open_shift(db, other_agent.id) is None


def test_check_in_out_of_range_is_rejected(db, clock, agent, make_intervention):
    intervention = make_intervention([agent])
    clock.set(utc(2024, 6, 1, 8, 0))
    svc.start_intervention(db, clock, intervention.id, agent)

    with pytest.raises(GpsOutOfRange) as exc:
        svc.check_in(db, clock, intervention.id, agent, FAR_FROM_SITE)
    assert exc.value.context["distance_m"] > exc.value.context["allowed_m"]
    assert svc.get_intervention(db, intervention.id).gps_check_in_time is None


def test_check_in_requires_in_progress(db, clock, agent, make_intervention):
    intervention = make_intervention([agent])
    with pytest.raises(InvalidTransition):
        svc.check_in(db, clock, intervention.id, agent, NEAR_SITE)


def test_duplicate_check_in_and_check_out_are_rejected(db, clock, agent, make_intervention):
    intervention = make_intervention([agent])
    clock.set(utc(2024, 6, 1, 8, 0))
    svc.start_intervention(db, clock, intervention.id, agent)

    with pytest.raises(InvalidTransition):
        svc.check_out(db, clock, intervention.id, agent, NEAR_SITE)

    svc.check_in(db, clock, intervention.id, agent, NEAR_SITE)
    with pytest.raises(DuplicateCheckpoint):
        svc.check_in(db, clock, intervention.id, agent, NEAR_SITE)

    svc.check_out(db, clock, intervention.id, agent, NEAR_SITE)
    with pytest.raises(DuplicateCheckpoint):
        svc.check_out(db, clock, intervention.id, agent, NEAR_SITE)


def test_site_without_coordinates_cannot_be_checked_into(db, clock, agent, site, make_intervention):
    site.lat = None
    site.lng = None
    db.commit()
    intervention = make_intervention([agent])
    clock.set(utc(2024, 6, 1, 8, 0))
    svc.start_intervention(db, clock, intervention.id, agent)

    with pytest.raises(GpsOutOfRange):
        svc.check_in(db, clock, intervention.id, agent, NEAR_SITE)


def test_complete_without_checkpoints_is_allowed(db, clock, agent, make_intervention):
    intervention = make_intervention([agent])
    clock.set(utc(2024, 6, 1, 8, 0))
    svc.start_intervention(db, clock, intervention.id, agent)
    assert svc.complete_intervention(db, clock, intervention.id, agent).status == "COMPLETED"


def test_cancel_scheduled_intervention(db, clock, agent, make_intervention):
    intervention = make_intervention([agent])
    intervention = svc.cancel_intervention(db, clock, intervention.id, agent, reason="client closed")
    assert intervention.status == "CANCELLED"
    assert intervention.cancel_reason == "client closed"
    assert intervention.cancelled_by == agent.id


def test_only_supervisors_cancel_in_progress(db, clock, agent, supervisor, make_intervention):
    intervention = make_intervention([agent])
    clock.set(utc(2024, 6, 1, 8, 0))
    svc.start_intervention(db, clock, intervention.id, agent)

    with pytest.raises(PermissionDenied):
        svc.cancel_intervention(db, clock, intervention.id, agent)
    assert svc.cancel_intervention(db, clock, intervention.id, supervisor).status == "CANCELLED"


def test_terminal_interventions_cannot_be_cancelled(db, clock, agent, supervisor, make_intervention):
    intervention = make_intervention([agent])
    svc.cancel_intervention(db, clock, intervention.id, supervisor)
    with pytest.raises(InvalidTransition):
        svc.cancel_intervention(db, clock, intervention.id, supervisor)


def test_reschedule_terminates_original_and_copies_assignment(db, clock, agent, supervisor, make_intervention):
    original = make_intervention([agent], code="INT-001")

    original, replacement = svc.reschedule_intervention(
        db, clock, original.id, supervisor, new_date=date(2024, 6, 3), reason="site closed",
    )

    assert original.status == "RESCHEDULED"
    assert replacement.status == "SCHEDULED"
    assert replacement.scheduled_date == date(2024, 6, 3)
    assert replacement.scheduled_start_time == time(8, 0)
    assert replacement.scheduled_end_time == time(10, 0)
    assert replacement.rescheduled_from_id == original.id
    assert replacement.assigned_agent_ids == [agent.id]
    assert replacement.intervention_code != original.intervention_code
    assert db.query(Intervention).count() == 2


def test_reschedule_into_the_past_is_rejected(db, clock, agent, supervisor, make_intervention):
    original = make_intervention([agent])
    clock.set(utc(2024, 6, 1, 9, 0))
    with pytest.raises(InvalidTransition):
        svc.reschedule_intervention(db, clock, original.id, supervisor, new_date=date(2024, 6, 1), new_start_time=time(9, 0))
    assert svc.get_intervention(db, original.id).status == "SCHEDULED"
    assert db.query(Intervention).count() == 1


def test_agents_cannot_reschedule(db, clock, agent, make_intervention):
    original = make_intervention([agent])
    with pytest.raises(PermissionDenied):
        svc.reschedule_intervention(db, clock, original.id, agent, new_date=date(2024, 6, 5))


def test_status_changes_notify_assigned_agents(db, clock, agent, other_agent, make_intervention):
    intervention = make_intervention([agent, other_agent])
    clock.set(utc(2024, 6, 1, 8, 0))
    svc.start_intervention(db, clock, intervention.id, agent)

    notes = db.query(Notification).filter(Notification.template_key == "intervention_started").all()
    assert {n.user_id for n in notes} == {agent.id, other_agent.id}


def test_update_only_while_scheduled(db, clock, agent, other_agent, supervisor, make_intervention):
    intervention = make_intervention([agent])
    intervention = svc.update_intervention(
        db, clock, intervention.id, supervisor, {"assigned_agent_ids": [other_agent.id], "notes": "bring ladder"},
    )
    assert intervention.assigned_agent_ids == [other_agent.id]
    assert intervention.notes == "bring ladder"

    svc.cancel_intervention(db, clock, intervention.id, supervisor)
    with pytest.raises(InvalidTransition):
        svc.update_intervention(db, clock, intervention.id, supervisor, {"notes": "too late"})


def test_photos_notes_and_rating(db, clock, agent, supervisor, make_intervention):
    intervention = make_intervention([agent])
    clock.set(utc(2024, 6, 1, 8, 0))
    svc.start_intervention(db, clock, intervention.id, agent)
    svc.add_photo(db, clock, intervention.id, agent, "https://cdn.example.com/a.jpg")
    svc.add_photo(db, clock, intervention.id, agent, "https://cdn.example.com/b.jpg")
    svc.add_note(db, clock, intervention.id, agent, "lobby done")

    with pytest.raises(InvalidTransition):
        svc.rate_intervention(db, clock, intervention.id, supervisor, quality_score=90)

    svc.complete_intervention(db, clock, intervention.id, agent)
    intervention = svc.rate_intervention(db, clock, intervention.id, supervisor, quality_score=90)

    assert intervention.photo_urls == ["https://cdn.example.com/a.jpg", "https://cdn.example.com/b.jpg"]
    assert intervention.notes.endswith("lobby done")
    assert intervention.quality_score == 90
    with pytest.raises(InvalidTransition):
        svc.rate_intervention(db, clock, intervention.id, supervisor, quality_score=50)
    with pytest.raises(PermissionDenied):
        svc.rate_intervention(db, clock, intervention.id, agent, client_rating=5)


def test_archive_hides_from_list_but_not_while_in_progress(db, clock, agent, supervisor, make_intervention):
    running = make_intervention([agent])
    idle = make_intervention([agent], scheduled_date=date(2024, 6, 2))
    clock.set(utc(2024, 6, 1, 8, 0))
    svc.start_intervention(db, clock, running.id, agent)

    with pytest.raises(InvalidTransition):
        svc.archive_intervention(db, clock, running.id, supervisor)
    svc.archive_intervention(db, clock, idle.id, supervisor)

    items, total = svc.list_interventions(db, agent_id=agent.id)
    assert total == 1
    assert items[0].id == running.id
    _, total = svc.list_interventions(db, include_archived=True)
    assert total == 2


def test_archived_intervention_cannot_be_started(db, clock, agent, supervisor, make_intervention):
    intervention = make_intervention([agent])
    svc.archive_intervention(db, clock, intervention.id, supervisor)
    clock.set(utc(2024, 6, 1, 8, 0))

    with pytest.raises(InvalidTransition):
        svc.start_intervention(db, clock, intervention.id, agent)

    assert svc.get_intervention(db, intervention.id).status == "SCHEDULED"
    assert ledger.find_open_shift(db, agent.id) is None


def test_archived_intervention_cannot_be_rescheduled(db, clock, agent, supervisor, make_intervention):
    intervention = make_intervention([agent])
    svc.archive_intervention(db, clock, intervention.id, supervisor)

    with pytest.raises(InvalidTransition):
        svc.reschedule_intervention(db, clock, intervention.id, supervisor, new_date=date(2024, 6, 3))

    assert svc.get_intervention(db, intervention.id).status == "SCHEDULED"
    assert db.query(Intervention).count() == 1


def test_list_filters_and_paging(db, clock, agent, other_agent, make_intervention):
    for day in (1, 2, 3):
        make_intervention([agent], scheduled_date=date(2024, 6, day))
    make_intervention([other_agent], scheduled_date=date(2024, 6, 2))

    items, total = svc.list_interventions(db, agent_id=agent.id, page=1, limit=2)
    assert total == 3
    assert [i.scheduled_date.day for i in items] == [1, 2]

    _, total = svc.list_interventions(db, start_date=date(2024, 6, 2), end_date=date(2024, 6, 2))
    assert total == 2

    _, total = svc.list_interventions(db, status="COMPLETED")
    assert total == 0


def test_stale_write_becomes_concurrent_modification(session_factory, clock, agent, make_intervention):
    intervention = make_intervention([agent])
    first = session_factory()
    second = session_factory()
    try:
        mine = first.get(Intervention, intervention.id)
        theirs = second.get(Intervention, intervention.id)

        theirs.notes = "edited elsewhere"
        second.commit()

        mine.notes = "my edit"
        with pytest.raises(ConcurrentModification):
            commit_or_raise(first)
    finally:
        first.close()
        second.close()


def test_racing_check_ins_let_exactly_one_win(db, session_factory, clock, agent, make_intervention, monkeypatch):
    intervention = make_intervention([agent])
    clock.set(utc(2024, 6, 1, 8, 0))
    svc.start_intervention(db, clock, intervention.id, agent)
    clock.set(utc(2024, 6, 1, 8, 5))

    first = session_factory()
    second = session_factory()
    validate = svc.validate_checkpoint

    def check_in_elsewhere_first(*args, **kwargs):
        # The other device commits while this one is still validating its fix
        monkeypatch.setattr(svc, "validate_checkpoint", validate)
        svc.check_in(second, clock, intervention.id, agent, NEAR_SITE)
        return validate(*args, **kwargs)

    monkeypatch.setattr(svc, "validate_checkpoint", check_in_elsewhere_first)
    try:
        with pytest.raises(ConcurrentModification):
            svc.check_in(first, clock, intervention.id, agent, NEAR_SITE)
    finally:
        first.close()
        second.close()

    db.expire_all()
    winner = db.get(Intervention, intervention.id)
    assert winner.gps_check_in_time == utc(2024, 6, 1, 8, 5)
    with pytest.raises(DuplicateCheckpoint):
        svc.check_in(db, clock, intervention.id, agent, NEAR_SITE)
