import psycopg2
import pytest

import reports
from errors import InternalError, NotFoundError

TERM = {"id": 7, "term_number": 1, "term_name": "First Term", "exam_month": 4, "exam_year": 2025, "status": "active"}

SUBJECTS = {
    1: ("MAT", "Mathematics", "Science"),
    2: ("ENG", "English", "Arts"),
    3: ("REL", "Religion", "Common"),
}


def row(student_id, subject_id, marks, status="active", name=None, current_class="10A"):
    code, subject_name, stream = SUBJECTS[subject_id]
    return {
        "student_id": student_id,
        "student_name": name or f"Student {student_id}",
        "index_number": f"IDX{student_id:03d}",
        "current_class": current_class,
        "subject_id": subject_id,
        "subject_code": code,
        "subject_name": subject_name,
        "stream": stream,
        "marks": marks,
        "mark_status": status,
        "entry_date": None,
        "teacher_name": "Ms. Perera",
    }


def ranks_by_name(students):
    return {s["name"]: s["rank"] for s in students}


def test_equal_totals_share_rank_and_next_takes_its_position():
    report = reports.build_term_report(TERM, [
        row(1, 1, 90, name="A"), row(1, 2, 90, name="A"),
        row(2, 1, 100, name="B"), row(2, 2, 80, name="B"),
        row(3, 1, 75, name="C"), row(3, 2, 75, name="C"),
    ])
    assert ranks_by_name(report["students"]) == {"A": 1, "B": 1, "C": 3}
    assert [s["total"] for s in report["students"]] == [180.0, 180.0, 150.0]


def test_ties_leave_gaps_in_later_ranks():
    students = [{"name": n, "total": t} for n, t in [("p", 200), ("q", 190), ("r", 150), ("s", 150), ("t", 120)]]
    ranked = reports.assign_ranks(students)
    assert [s["rank"] for s in ranked] == [1, 2, 3, 3, 5]


def test_rank_never_decreases_as_total_falls():
    totals = [55, 180, 92, 180, 92, 0, 301, 55, 55]
    ranked = reports.assign_ranks([{"total": t} for t in totals])
    for previous, current in zip(ranked, ranked[1:]):
        assert current["total"] <= previous["total"]
        assert current["rank"] >= previous["rank"]
        if current["total"] == previous["total"]:
            assert current["rank"] == previous["rank"]


def test_ranking_is_stable_for_ties():
    ranked = reports.assign_ranks([{"name": "first", "total": 10}, {"name": "second", "total": 10}])
    assert [s["name"] for s in ranked] == ["first", "second"]


def test_total_counts_common_marks_but_average_does_not():
    report = reports.build_term_report(TERM, [
        row(1, 1, 80), row(1, 2, 71), row(1, 3, 99),
    ])
    student = report["students"][0]
    assert student["total"] == 250.0
    assert student["average"] == 75.5


def test_average_is_zero_without_non_common_marks():
    report = reports.build_term_report(TERM, [
        row(1, 1, None), row(1, 2, None, status="absent"), row(1, 3, 88),
        row(2, 1, None), row(2, 2, None), row(2, 3, None),
    ])
    by_id = {s["id"]: s for s in report["students"]}
    assert by_id[1]["average"] == 0
    assert by_id[1]["total"] == 88.0
    assert by_id[2]["average"] == 0
    assert by_id[2]["total"] == 0


def test_absent_marks_are_flagged_and_distinct_from_missing():
    report = reports.build_term_report(TERM, [row(1, 1, None, status="absent"), row(1, 2, None, status=None)])
    marks = report["students"][0]["marks"]
    assert marks[0]["is_absent"] is True and marks[0]["marks"] is None
    assert marks[1]["is_absent"] is False and marks[1]["marks"] is None


def test_total_students_counts_distinct_students():
    rows = [row(sid, subject, 60) for sid in (1, 2, 3) for subject in (1, 2, 3)]
    summary = reports.build_term_report(TERM, rows)["summary"]
    assert summary["totalStudents"] == 3
    assert summary["totalSubjects"] == 3


def test_summary_bounds_and_class_average():
    report = reports.build_term_report(TERM, [
        row(1, 1, 40), row(1, 2, 95),
        row(2, 1, 66), row(2, 2, None),
    ])
    summary = report["summary"]
    assert summary["highestScore"] == 95
    assert summary["lowestScore"] == 40
    assert summary["classAverage"] == 100.5
    assert summary["hasData"] is True


def test_empty_scope_keeps_sentinel_bounds_and_reports_no_data():
    report = reports.build_term_report(TERM, [row(1, 1, None), row(1, 2, None)])
    summary = report["summary"]
    assert summary["lowestScore"] == 100
    assert summary["highestScore"] == 0
    assert summary["hasData"] is False

    empty = reports.build_term_report(TERM, [])["summary"]
    assert empty["totalStudents"] == 0
    assert empty["classAverage"] == 0


def test_round_half_up():
    assert reports.round_half_up(2.345) == 2.35
    assert reports.round_half_up(2.675) == 2.68
    assert reports.round_half_up(72.5, places=0) == 73
    assert reports.round_half_up(200 / 3) == 66.67


def test_subject_statistics_bands_ignore_null_marks():
    entries = [row(i, 1, m) for i, m in enumerate([75, 74, 65, 64, 50, 49, None], 1)]
    stats = reports.build_subject_statistics(entries)[0]
    assert stats["count"] == 6
    assert stats["highest"] == 75
    assert stats["lowest"] == 49
    assert stats["average"] == 62.83
    assert (stats["distinction_count"], stats["credit_count"], stats["pass_count"], stats["fail_count"]) == (1, 2, 2, 1)


def test_subject_without_marks_has_empty_statistics():
    stats = reports.build_subject_statistics([row(1, 2, None)])[0]
    assert stats["count"] == 0
    assert stats["average"] == 0
    assert stats["highest"] is None and stats["lowest"] is None


def test_grade_distribution_lists_every_band():
    distribution = reports.build_grade_distribution([80, 75, 70, 55, 40, 10, None, 34])
    counts = {band["grade_band"]: band["student_count"] for band in distribution}
    assert counts == {"A (75-100)": 2, "B (65-74)": 1, "C (50-64)": 1, "S (35-49)": 1, "F (0-34)": 2}
    assert distribution[0]["percentage"] == 28.57
    assert reports.build_grade_distribution([])[0]["percentage"] == 0


def test_class_comparison():
    rows = [
        {"current_class": "10B", "student_id": 3, "marks": 45},
        {"current_class": "10A", "student_id": 1, "marks": 80},
        {"current_class": "10A", "student_id": 1, "marks": 40},
        {"current_class": "10A", "student_id": 2, "marks": 60},
    ]
    comparison = reports.build_class_comparison(rows)
    assert [c["current_class"] for c in comparison] == ["10A", "10B"]
    first = comparison[0]
    assert first["student_count"] == 2
    assert first["class_average"] == 60.0
    assert (first["pass_count"], first["fail_count"]) == (2, 1)
    assert first["pass_percentage"] == 66.67


def test_student_progress_groups_by_term():
    rows = [
        {"term_id": 1, "term_name": "First Term", "term_number": 1, "exam_year": 2025, "subject_name": "Mathematics", "marks": 70},
        {"term_id": 1, "term_name": "First Term", "term_number": 1, "exam_year": 2025, "subject_name": "English", "marks": None, "mark_status": "absent"},
        {"term_id": 2, "term_name": "Second Term", "term_number": 2, "exam_year": 2025, "subject_name": "Mathematics", "marks": 81},
    ]
    progress = reports.build_student_progress(rows)
    assert [p["term_id"] for p in progress] == [1, 2]
    assert progress[0]["total_marks"] == 70
    assert progress[0]["average"] == 70
    assert progress[0]["subjects"][1]["is_absent"] is True
    assert progress[1]["average"] == 81


def test_class_standing_uses_competition_rank_and_first_place_average():
    rows = [
        {"student_id": 1, "marks": 90, "stream": "Science"},
        {"student_id": 1, "marks": 70, "stream": "Common"},
        {"student_id": 2, "marks": 80, "stream": "Science"},
        {"student_id": 2, "marks": 80, "stream": "Arts"},
        {"student_id": 3, "marks": 50, "stream": "Science"},
    ]
    standing = reports.build_class_standing(rows, 2)
    assert standing == {"studentRank": 1, "classSize": 3, "firstAverage": 90.0}
    assert reports.build_class_standing(rows, 3)["studentRank"] == 3
    assert reports.build_class_standing([], 3) == {"studentRank": None, "classSize": 0, "firstAverage": 0.0}


def test_load_term_report_missing_term(fake_db):
    with pytest.raises(NotFoundError):
        reports.load_term_report(99)
    assert not fake_db.executed("CROSS JOIN subjects")


def test_load_term_report_binds_term_before_filters(fake_db):
    fake_db.on("FROM terms WHERE id", rows=[TERM])
    fake_db.on("CROSS JOIN subjects", rows=[row(1, 1, 70), row(1, 2, 60)])

    report = reports.load_term_report(7, class_name="10A", include_common=False)

    params = fake_db.executed("CROSS JOIN subjects")[0]
    assert params == [7, "10A", "Common"]
    query = [q for q, _ in fake_db.queries if "CROSS JOIN subjects" in q][0]
    assert "LOWER(s.stream) <> LOWER(%s)" in query
    assert "st.status = 'active'" in query and "s.status = 'active'" in query
    assert report["term"]["id"] == 7
    assert report["students"][0]["total"] == 130.0


def test_load_term_report_store_failure_is_internal_error(fake_db):
    fake_db.on("FROM terms WHERE id", rows=[TERM])
    fake_db.on("CROSS JOIN subjects", error=psycopg2.OperationalError("connection reset"))
    with pytest.raises(InternalError):
        reports.load_term_report(7)
    assert fake_db.rollbacks == 1
    assert fake_db.closed == 1


def test_load_academic_record(fake_db):
    fake_db.on("FROM students WHERE id", rows=[{"id": 2, "name": "Nimal", "index_number": "IDX002", "current_class": "10A", "admission_year": 2020}])
    fake_db.on("FROM terms WHERE id", rows=[TERM])
    fake_db.on("WHERE m.student_id = %s AND m.term_id = %s", rows=[
        {"subject_id": 1, "subject_code": "MAT", "subject_name": "Mathematics", "stream": "Science", "marks": 80, "mark_status": "active"},
    ])
    fake_db.on("MAX(marks) AS highest", rows=[{"subject_id": 1, "highest": 95}])
    fake_db.on("FROM student_term_attendance", rows=[{"attendance_percentage": 91.5}])
    fake_db.on("WHERE st.current_class = %s", rows=[
        {"student_id": 1, "marks": 95, "stream": "Science"},
        {"student_id": 2, "marks": 80, "stream": "Science"},
    ])

    record = reports.load_academic_record(2, 7, academic_year="2025")

    assert record["highestMarks"] == {1: 95}
    assert record["marks"][0]["is_absent"] is False
    assert record["attendance"]["attendance_percentage"] == 91.5
    assert record["classStats"] == {"studentRank": 2, "classSize": 2, "firstAverage": 95.0}
    assert fake_db.executed("WHERE st.current_class = %s")[0] == ("10A", 7)
