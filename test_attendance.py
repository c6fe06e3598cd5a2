import psycopg2
import pytest

import attendance
from errors import AuthorizationError, ConflictError, InternalError, NotFoundError, ValidationError


def test_calculate_attendance():
    assert attendance.calculate_attendance(90, 61) == {
        "total_school_days": 90,
        "attended_days": 61,
        "absent_days": 29,
        "attendance_percentage": 67.78,
    }
    assert attendance.calculate_attendance(8, 1)["attendance_percentage"] == 12.5


@pytest.mark.parametrize("total, attended", [(0, 0), (-5, 0), (10, 11), (10, -1), ("ten", 5), (10, 2.5), (True, 1)])
def test_calculate_attendance_rejects(total, attended):
    with pytest.raises(ValidationError):
        attendance.calculate_attendance(total, attended)


@pytest.mark.parametrize("percentage, bucket", [
    (100, "good"), (75, "good"), (74.99, "average"), (60, "average"), (59.99, "poor"), (0, "poor"),
])
def test_attendance_bucket_boundaries(percentage, bucket):
    assert attendance.attendance_bucket(percentage) == bucket


def test_attendance_statistics():
    rows = [
        {"attendance_percentage": 90.0, "total_school_days": 100, "attended_days": 90, "absent_days": 10},
        {"attendance_percentage": 75.0, "total_school_days": 100, "attended_days": 75, "absent_days": 25},
        {"attendance_percentage": 62.5, "total_school_days": 80, "attended_days": 50, "absent_days": 30},
        {"attendance_percentage": 40.0, "total_school_days": 100, "attended_days": 40, "absent_days": 60},
    ]
    stats = attendance.attendance_statistics(rows)
    assert stats["total_students"] == 4
    assert stats["average_attendance"] == 66.88
    assert stats["min_attendance"] == 40.0
    assert stats["max_attendance"] == 90.0
    assert (stats["good_attendance_count"], stats["average_attendance_count"], stats["poor_attendance_count"]) == (2, 1, 1)
    assert stats["avg_school_days"] == 95.0
    assert stats["avg_absent_days"] == 31.25


def test_attendance_statistics_empty():
    stats = attendance.attendance_statistics([])
    assert stats["total_students"] == 0
    assert stats["average_attendance"] == 0
    assert stats["min_attendance"] == 0
    assert stats["max_attendance"] == 0
    assert stats["good_attendance_count"] == 0


STUDENTS_10A = [{"id": 1, "current_class": "10A"}, {"id": 2, "current_class": "10A"}]


def test_bulk_upsert_recomputes_values_in_one_transaction(fake_db, admin):
    fake_db.on("FROM students WHERE id = ANY", rows=STUDENTS_10A)
    saved = attendance.save_term_attendance(admin, [
        {"student_id": 1, "term_id": 7, "academic_year": "2025", "total_school_days": 60, "attended_days": 45,
         "absent_days": 99, "attendance_percentage": 1},
        {"student_id": 2, "term_id": 7, "academic_year": "2025", "total_school_days": 60, "attended_days": 60},
    ])
    assert saved == 2
    params = fake_db.executed("INSERT INTO student_term_attendance")
    assert params[0] == (1, 7, "2025", 60, 45, 15, 75.0)
    assert params[1] == (2, 7, "2025", 60, 60, 0, 100.0)
    query = [q for q, _ in fake_db.queries if "INSERT INTO student_term_attendance" in q][0]
    assert "ON CONFLICT (student_id, term_id, academic_year) DO UPDATE" in query
    assert fake_db.commits == 1


def test_bulk_upsert_rejects_batch_with_bad_record(fake_db, admin):
    with pytest.raises(ValidationError) as exc:
        attendance.save_term_attendance(admin, [
            {"student_id": 1, "term_id": 7, "academic_year": "2025", "total_school_days": 60, "attended_days": 45},
            {"student_id": 2, "term_id": 7, "academic_year": "2025", "total_school_days": 60, "attended_days": 61},
        ])
    assert exc.value.message.startswith("Record 2")
    assert fake_db.queries == []


def test_bulk_upsert_failure_rolls_back(fake_db, admin):
    fake_db.on("FROM students WHERE id = ANY", rows=STUDENTS_10A)
    fake_db.on("INSERT INTO student_term_attendance", error=psycopg2.OperationalError("server closed"))
    with pytest.raises(InternalError):
        attendance.save_term_attendance(admin, [
            {"student_id": 1, "term_id": 7, "academic_year": "2025", "total_school_days": 60, "attended_days": 45},
        ])
    assert fake_db.commits == 0
    assert fake_db.rollbacks == 1


def test_coordinator_cannot_save_attendance_outside_assigned_class(fake_db, coordinator):
    fake_db.on("FROM students WHERE id = ANY", rows=[
        {"id": 1, "current_class": "10A"},
        {"id": 5, "current_class": "11B"},
    ])
    with pytest.raises(AuthorizationError):
        attendance.save_term_attendance(coordinator, [
            {"student_id": 1, "term_id": 7, "academic_year": "2025", "total_school_days": 60, "attended_days": 45},
            {"student_id": 5, "term_id": 7, "academic_year": "2025", "total_school_days": 60, "attended_days": 50},
        ])
    assert fake_db.executed("INSERT INTO student_term_attendance") == []
    assert fake_db.commits == 0
    assert fake_db.rollbacks == 1


def test_coordinator_saves_attendance_for_own_class(fake_db, coordinator):
    fake_db.on("FROM students WHERE id = ANY", rows=STUDENTS_10A)
    saved = attendance.save_term_attendance(coordinator, [
        {"student_id": 2, "term_id": 7, "academic_year": "2025", "total_school_days": 60, "attended_days": 30},
    ])
    assert saved == 1
    assert fake_db.executed("FROM students WHERE id = ANY")[0] == ([2],)
    assert fake_db.commits == 1


def test_bulk_upsert_unknown_student(fake_db, admin):
    fake_db.on("FROM students WHERE id = ANY", rows=[{"id": 1, "current_class": "10A"}])
    with pytest.raises(ValidationError) as exc:
        attendance.save_term_attendance(admin, [
            {"student_id": 1, "term_id": 7, "academic_year": "2025", "total_school_days": 60, "attended_days": 45},
            {"student_id": 8, "term_id": 7, "academic_year": "2025", "total_school_days": 60, "attended_days": 45},
        ])
    assert "8" in exc.value.message
    assert fake_db.executed("INSERT INTO student_term_attendance") == []


def test_summary_groups_by_class(fake_db):
    fake_db.on("FROM student_term_attendance a", rows=[
        {"current_class": "10B", "attendance_percentage": 50.0},
        {"current_class": "10A", "attendance_percentage": 80.0},
        {"current_class": "10A", "attendance_percentage": 70.0},
    ])
    summary = attendance.term_attendance_summary(term_id=7)
    assert [s["class_name"] for s in summary] == ["10A", "10B"]
    assert summary[0]["average_attendance"] == 75.0
    assert summary[1]["poor_attendance_count"] == 1


def test_update_missing_record(fake_db, admin):
    with pytest.raises(NotFoundError):
        attendance.update_term_attendance(admin, 5, 10, 5)
    assert fake_db.executed("UPDATE student_term_attendance") == []


def test_update_record_outside_assigned_class(fake_db, coordinator):
    fake_db.on("JOIN students st ON a.student_id = st.id WHERE a.id", rows=[{"id": 5, "current_class": "11B"}])
    with pytest.raises(AuthorizationError):
        attendance.update_term_attendance(coordinator, 5, 10, 5)
    with pytest.raises(AuthorizationError):
        attendance.delete_term_attendance(coordinator, 5)
    assert fake_db.executed("UPDATE student_term_attendance") == []
    assert fake_db.executed("DELETE FROM student_term_attendance") == []


def test_update_record_in_assigned_class(fake_db, coordinator):
    fake_db.on("JOIN students st ON a.student_id = st.id WHERE a.id", rows=[{"id": 5, "current_class": "10A"}])
    fake_db.on("UPDATE student_term_attendance", rows=[{"id": 5, "attendance_percentage": 50.0}])
    record = attendance.update_term_attendance(coordinator, 5, 10, 5)
    assert record["attendance_percentage"] == 50.0
    assert fake_db.executed("UPDATE student_term_attendance")[0] == (10, 5, 5, 50.0, 5)
    assert fake_db.commits == 1


def test_duplicate_daily_attendance_conflicts(fake_db, teacher):
    fake_db.on("SELECT id FROM attendance", rows=[{"id": 3}])
    with pytest.raises(ConflictError):
        attendance.record_daily_attendance(teacher, "2025-03-01", "10A", 12, 14)
    assert fake_db.executed("INSERT INTO attendance") == []


def test_teachers_only_list_their_own_daily_attendance(fake_db, teacher, coordinator):
    attendance.list_daily_attendance(teacher)
    attendance.list_daily_attendance(coordinator)
    first, second = fake_db.queries
    assert "a.teacher_id = %s" in first[0] and first[1] == [teacher.user_id]
    assert "a.teacher_id = %s" not in second[0]
