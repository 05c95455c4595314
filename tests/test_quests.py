"""
Tests del ciclo de vida de las misiones: creación perezosa, toggle,
reemplazo parcial, consultas por mes y acceso a las misiones del compañero.
"""

from types import SimpleNamespace

import pytest

import quests
from database import SessionLocal
from errors import ConflictError, ForbiddenError, InvalidDateError, NotFoundError, NotLinkedError, ValidationError
from models import QuestSet, calculate_completion_rate
from schemas import QuestSetUpdate


def _expected_rate(quest_set):
    total = len(quest_set.items)
    if total == 0:
        return 0
    done = sum(1 for i in quest_set.items if i.completed)
    return int(100 * done / total + 0.5)


class TestCompletionRate:
    def test_empty_is_zero(self):
        assert calculate_completion_rate([]) == 0

    @pytest.mark.parametrize("done,total,expected", [
        (0, 4, 0), (1, 4, 25), (1, 3, 33), (2, 3, 67), (1, 8, 13), (3, 8, 38), (4, 4, 100),
    ])
    def test_rounds_half_up(self, done, total, expected):
        items = [SimpleNamespace(completed=i < done) for i in range(total)]
        assert calculate_completion_rate(items) == expected


class TestGetOrCreate:
    def test_creates_default_template(self, db, alice):
        quest_set = quests.get_or_create_today(db, alice.id)

        assert quest_set.date == quests.today_str()
        assert [i.quest_key for i in quest_set.items] == ["1", "2", "3", "4"]
        assert all(not i.completed and i.completed_at is None for i in quest_set.items)
        assert quest_set.completion_rate == 0

    def test_second_call_returns_same_set(self, db, alice):
        first = quests.get_or_create_today(db, alice.id)
        second = quests.get_or_create_today(db, alice.id)

        assert first.id == second.id
        assert db.query(QuestSet).filter(QuestSet.user_id == alice.id).count() == 1

    def test_sets_are_per_user(self, db, alice, bob):
        a = quests.get_or_create_today(db, alice.id)
        b = quests.get_or_create_today(db, bob.id)
        assert a.id != b.id

    def test_lost_creation_race_returns_existing(self, db, alice, monkeypatch):
        other = SessionLocal()
        try:
            existing = quests.get_or_create(other, alice.id, "2024-05-01")
        finally:
            other.close()

        real_find = quests._find
        calls = []

        def find_missing_first(session, user_id, day):
            calls.append(day)
            return None if len(calls) == 1 else real_find(session, user_id, day)

        monkeypatch.setattr(quests, "_find", find_missing_first)

        quest_set = quests.get_or_create(db, alice.id, "2024-05-01")

        assert quest_set.id == existing.id
        assert db.query(QuestSet).filter(QuestSet.user_id == alice.id).count() == 1


class TestGetByDate:
    def test_found(self, db, alice):
        created = quests.get_or_create(db, alice.id, "2024-05-01")
        assert quests.get_by_date(db, alice.id, "2024-05-01").id == created.id

    def test_missing(self, db, alice):
        with pytest.raises(NotFoundError):
            quests.get_by_date(db, alice.id, "2024-05-01")

    @pytest.mark.parametrize("bad", ["2024-5-1", "20240501", "2024/05/01", "today", "2024-02-30", ""])
    def test_invalid_date(self, db, alice, bad):
        with pytest.raises(InvalidDateError):
            quests.get_by_date(db, alice.id, bad)

    def test_invalid_date_is_validation_error(self, db, alice):
        with pytest.raises(ValidationError):
            quests.get_by_date(db, alice.id, "nope")


class TestToggle:
    def test_toggle_completes_item(self, db, alice):
        quest_set = quests.get_or_create_today(db, alice.id)

        quest_set = quests.toggle_quest(db, alice.id, quest_set.date, "1")

        item = quest_set.items[0]
        assert item.completed is True
        assert item.completed_at is not None
        assert quest_set.completion_rate == 25

    def test_toggle_twice_restores_state(self, db, alice):
        day = quests.get_or_create_today(db, alice.id).date

        quests.toggle_quest(db, alice.id, day, "2")
        quest_set = quests.toggle_quest(db, alice.id, day, "2")

        item = quest_set.items[1]
        assert item.completed is False
        assert item.completed_at is None
        assert quest_set.completion_rate == 0

    def test_rate_holds_after_every_toggle(self, db, alice):
        day = quests.get_or_create_today(db, alice.id).date
        for quest_id in ["1", "2", "3", "4", "1", "2", "3", "4"]:
            quest_set = quests.toggle_quest(db, alice.id, day, quest_id)
            db.refresh(quest_set)
            assert quest_set.completion_rate == _expected_rate(quest_set)
        assert quest_set.completion_rate == 0

    def test_all_completed_is_100(self, db, alice):
        day = quests.get_or_create_today(db, alice.id).date
        for quest_id in ["1", "2", "3", "4"]:
            quest_set = quests.toggle_quest(db, alice.id, day, quest_id)
        assert quest_set.completion_rate == 100

    def test_unknown_quest_leaves_set_untouched(self, db, alice):
        quest_set = quests.toggle_quest(db, alice.id, quests.get_or_create_today(db, alice.id).date, "1")
        before = (quest_set.completion_rate, quest_set.version_id, quest_set.updated_at)

        with pytest.raises(NotFoundError):
            quests.toggle_quest(db, alice.id, quest_set.date, "99")

        db.refresh(quest_set)
        assert (quest_set.completion_rate, quest_set.version_id, quest_set.updated_at) == before
        assert [i.completed for i in quest_set.items] == [True, False, False, False]

    def test_unknown_day(self, db, alice):
        with pytest.raises(NotFoundError):
            quests.toggle_quest(db, alice.id, "2024-05-01", "1")

    def test_concurrent_toggle_is_a_conflict(self, alice):
        setup = SessionLocal()
        try:
            quests.get_or_create(setup, alice.id, "2024-05-01")
        finally:
            setup.close()

        first = SessionLocal()
        second = SessionLocal()
        try:
            held_first = quests.get_by_date(first, alice.id, "2024-05-01")  # noqa: F841
            held_second = quests.get_by_date(second, alice.id, "2024-05-01")  # noqa: F841

            quests.toggle_quest(first, alice.id, "2024-05-01", "1")
            with pytest.raises(ConflictError):
                quests.toggle_quest(second, alice.id, "2024-05-01", "2")
        finally:
            first.close()
            second.close()

        check = SessionLocal()
        try:
            quest_set = quests.get_by_date(check, alice.id, "2024-05-01")
            assert [i.completed for i in quest_set.items] == [True, False, False, False]
            assert quest_set.completion_rate == 25
        finally:
            check.close()


class TestReplace:
    def test_replace_quests_recomputes_rate(self, db, alice):
        quests.get_or_create(db, alice.id, "2024-05-01")

        quest_set = quests.replace_quests(db, alice.id, "2024-05-01", QuestSetUpdate(quests=[
            {"id": "a", "title": "Meditar", "completed": True},
            {"id": "b", "title": "Correr"},
            {"id": "c", "title": "Leer"},
        ]))

        assert [i.quest_key for i in quest_set.items] == ["a", "b", "c"]
        assert quest_set.completion_rate == 33
        assert quest_set.items[0].completed_at is not None
        assert quest_set.items[1].completed_at is None

    def test_client_cannot_set_rate(self, db, alice):
        quests.get_or_create(db, alice.id, "2024-05-01")

        update = QuestSetUpdate.model_validate({"completion_rate": 100, "encouragement_message": "¡Vamos!"})
        quest_set = quests.replace_quests(db, alice.id, "2024-05-01", update)

        assert quest_set.completion_rate == 0

    def test_only_message_keeps_quests(self, db, alice):
        day = "2024-05-01"
        quests.get_or_create(db, alice.id, day)
        quests.toggle_quest(db, alice.id, day, "1")

        quest_set = quests.replace_quests(db, alice.id, day, QuestSetUpdate(encouragement_message="¡Tú puedes!"))

        assert quest_set.encouragement_message == "¡Tú puedes!"
        assert len(quest_set.items) == 4
        assert quest_set.completion_rate == 25

    def test_explicit_null_clears_message(self, db, alice):
        day = "2024-05-01"
        quests.get_or_create(db, alice.id, day)
        quests.replace_quests(db, alice.id, day, QuestSetUpdate(encouragement_message="Hola"))

        quest_set = quests.replace_quests(db, alice.id, day, QuestSetUpdate(encouragement_message=None))

        assert quest_set.encouragement_message is None

    def test_omitted_message_is_kept(self, db, alice):
        day = "2024-05-01"
        quests.get_or_create(db, alice.id, day)
        quests.replace_quests(db, alice.id, day, QuestSetUpdate(encouragement_message="Hola"))

        quest_set = quests.replace_quests(db, alice.id, day, QuestSetUpdate())

        assert quest_set.encouragement_message == "Hola"

    def test_kept_completed_item_keeps_timestamp(self, db, alice):
        day = "2024-05-01"
        quests.get_or_create(db, alice.id, day)
        completed_at = quests.toggle_quest(db, alice.id, day, "1").items[0].completed_at

        quest_set = quests.replace_quests(db, alice.id, day, QuestSetUpdate(quests=[
            {"id": "1", "title": "Levantarse a las 05:00", "completed": True},
            {"id": "5", "title": "Estirar"},
        ]))

        assert quest_set.items[0].completed_at == completed_at
        assert quest_set.items[0].title == "Levantarse a las 05:00"
        assert quest_set.completion_rate == 50

    def test_empty_list_gives_zero_rate(self, db, alice):
        day = "2024-05-01"
        quests.get_or_create(db, alice.id, day)
        quests.toggle_quest(db, alice.id, day, "1")

        quest_set = quests.replace_quests(db, alice.id, day, QuestSetUpdate(quests=[]))

        assert quest_set.items == []
        assert quest_set.completion_rate == 0

    def test_duplicate_ids_rejected(self, db, alice):
        quests.get_or_create(db, alice.id, "2024-05-01")
        with pytest.raises(ValidationError):
            quests.replace_quests(db, alice.id, "2024-05-01", QuestSetUpdate(quests=[
                {"id": "1", "title": "A"}, {"id": "1", "title": "B"},
            ]))

    def test_missing_set(self, db, alice):
        with pytest.raises(NotFoundError):
            quests.replace_quests(db, alice.id, "2024-05-01", QuestSetUpdate(encouragement_message="x"))


class TestListMonth:
    def test_uses_real_month_end_and_sorts(self, db, alice):
        for day in ["2024-02-29", "2024-02-01", "2024-03-01", "2024-01-31", "2024-02-15"]:
            quests.get_or_create(db, alice.id, day)

        result = quests.list_month(db, alice.id, 2024, 2)

        assert [q.date for q in result] == ["2024-02-01", "2024-02-15", "2024-02-29"]

    def test_only_own_sets(self, db, alice, bob):
        quests.get_or_create(db, bob.id, "2024-02-10")
        assert quests.list_month(db, alice.id, 2024, 2) == []

    def test_month_bounds(self):
        assert quests.month_bounds(2023, 2) == ("2023-02-01", "2023-02-28")
        assert quests.month_bounds(2024, 4) == ("2024-04-01", "2024-04-30")
        assert quests.month_bounds(2024, 12) == ("2024-12-01", "2024-12-31")

    @pytest.mark.parametrize("month", [0, 13])
    def test_invalid_month(self, db, alice, month):
        with pytest.raises(ValidationError):
            quests.list_month(db, alice.id, 2024, month)


class TestLinkedPeerQuest:
    def test_reads_peer_set(self, db, linked_pair):
        alice, bob = linked_pair
        bob_set = quests.get_or_create(db, bob.id, "2024-05-01")

        quest_set, peer = quests.get_linked_peer_quest(db, alice, "2024-05-01")

        assert quest_set.id == bob_set.id
        assert peer.id == bob.id

    def test_requires_link(self, db, alice):
        with pytest.raises(NotLinkedError):
            quests.get_linked_peer_quest(db, alice, "2024-05-01")

    def test_one_directional_link_is_forbidden(self, db, alice, bob):
        quests.get_or_create(db, bob.id, "2024-05-01")
        alice.linked_user_id = bob.id
        db.commit()

        with pytest.raises(ForbiddenError):
            quests.get_linked_peer_quest(db, alice, "2024-05-01")

    def test_peer_has_no_set(self, db, linked_pair):
        alice, _ = linked_pair
        with pytest.raises(NotFoundError):
            quests.get_linked_peer_quest(db, alice, "2024-05-01")

    def test_invalid_date(self, db, linked_pair):
        alice, _ = linked_pair
        with pytest.raises(InvalidDateError):
            quests.get_linked_peer_quest(db, alice, "01-05-2024")
