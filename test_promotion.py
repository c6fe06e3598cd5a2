import psycopg2
import pytest

import promotion
from errors import InternalError, NotFoundError, ValidationError

MOVED = [
    {"id": 1, "name": "Kasun", "index_number": "IDX001", "current_class": "11A"},
    {"id": 2, "name": "Dilini", "index_number": "IDX002", "current_class": "11A"},
]


def test_only_students_still_in_source_class_move(fake_db, admin):
    fake_db.on("UPDATE students SET current_class", rows=MOVED)

    result = promotion.promote_students(admin, [1, 2, 3, 2], "10A", "11A", "2025")

    query, params = [(q, p) for q, p in fake_db.queries if "UPDATE students" in q][0]
    assert "WHERE id = ANY(%s) AND current_class = %s" in query
    assert params == ("11A", [1, 2, 3], "10A")
    assert result["promotedCount"] == 2
    assert result["skipped"] == [3]
    assert result["historyRecorded"] is True
    assert [p[0] for p in fake_db.executed("INSERT INTO class_promotions")] == [1, 2]
    assert fake_db.executed("RELEASE SAVEPOINT promotion_history") == [None]
    assert fake_db.commits == 1


def test_history_failure_keeps_class_change_by_default(fake_db, admin):
    fake_db.on("UPDATE students SET current_class", rows=MOVED)
    fake_db.on("INSERT INTO class_promotions", error=psycopg2.OperationalError("audit table locked"))

    result = promotion.promote_students(admin, [1, 2], "10A", "11A", "2025", strict=False)

    assert result["promotedCount"] == 2
    assert result["historyRecorded"] is False
    assert fake_db.executed("ROLLBACK TO SAVEPOINT promotion_history") == [None]
    assert fake_db.commits == 1
    assert fake_db.rollbacks == 0


def test_strict_history_failure_rolls_back_promotion(fake_db, admin):
    fake_db.on("UPDATE students SET current_class", rows=MOVED)
    fake_db.on("INSERT INTO class_promotions", error=psycopg2.OperationalError("audit table locked"))

    with pytest.raises(InternalError):
        promotion.promote_students(admin, [1, 2], "10A", "11A", "2025", strict=True)
    assert fake_db.commits == 0
    assert fake_db.rollbacks == 1


def test_strict_mode_follows_config(fake_db, admin, monkeypatch):
    monkeypatch.setattr(promotion.config, "PROMOTION_AUDIT_STRICT", True)
    fake_db.on("UPDATE students SET current_class", rows=MOVED)
    fake_db.on("INSERT INTO class_promotions", error=psycopg2.OperationalError("audit table locked"))

    with pytest.raises(InternalError):
        promotion.promote_students(admin, [1, 2], "10A", "11A", "2025")


def test_nothing_moved_writes_no_history(fake_db, admin):
    result = promotion.promote_students(admin, [5], "10A", "11A", "2025")
    assert result["promotedCount"] == 0
    assert result["skipped"] == [5]
    assert fake_db.executed("SAVEPOINT") == []


@pytest.mark.parametrize("student_ids, from_class, to_class", [
    ([], "10A", "11A"),
    ("1,2", "10A", "11A"),
    ([1, "x"], "10A", "11A"),
    ([True], "10A", "11A"),
    ([1], "10A", "10A"),
    ([1], "", "11A"),
])
def test_invalid_promotion_requests(fake_db, admin, student_ids, from_class, to_class):
    with pytest.raises(ValidationError):
        promotion.promote_students(admin, student_ids, from_class, to_class, "2025")
    assert fake_db.queries == []


def test_history_for_unknown_student(fake_db):
    with pytest.raises(NotFoundError):
        promotion.promotion_history(404)
