"""Initial schema for the school report API.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create all tables and indexes for the school report API."""

    # Staff accounts: admin, teacher, coordinator
    op.execute('''CREATE TABLE IF NOT EXISTS users (
                    id SERIAL PRIMARY KEY,
                    username TEXT UNIQUE NOT NULL,
                    password_hash TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'teacher'
                        CHECK (role IN ('admin', 'teacher', 'coordinator')),
                    full_name TEXT,
                    assigned_class TEXT,
                    temp_password BOOLEAN NOT NULL DEFAULT TRUE,
                    last_login TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS students (
                    id SERIAL PRIMARY KEY,
                    index_number TEXT UNIQUE NOT NULL,
                    name TEXT NOT NULL,
                    current_class TEXT NOT NULL,
                    admission_year INTEGER,
                    status TEXT NOT NULL DEFAULT 'active'
                        CHECK (status IN ('active', 'inactive')),
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    # Stream 'Common' marks subjects left out of averages
    op.execute('''CREATE TABLE IF NOT EXISTS subjects (
                    id SERIAL PRIMARY KEY,
                    subject_code TEXT UNIQUE NOT NULL,
                    subject_name TEXT NOT NULL,
                    stream TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active'
                        CHECK (status IN ('active', 'inactive')),
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS class_subjects (
                    id SERIAL PRIMARY KEY,
                    class_name TEXT NOT NULL,
                    subject_id INTEGER NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
                    academic_year TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(class_name, subject_id, academic_year)
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS terms (
                    id SERIAL PRIMARY KEY,
                    term_number INTEGER NOT NULL CHECK (term_number BETWEEN 1 AND 3),
                    term_name TEXT NOT NULL,
                    exam_month INTEGER CHECK (exam_month BETWEEN 1 AND 12),
                    exam_year INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'inactive'
                        CHECK (status IN ('active', 'inactive')),
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(term_number, exam_year)
                )''')

    # A null mark with status 'absent' is the "AB" sentinel
    op.execute('''CREATE TABLE IF NOT EXISTS marks (
                    id SERIAL PRIMARY KEY,
                    student_id INTEGER NOT NULL REFERENCES students(id),
                    subject_id INTEGER NOT NULL REFERENCES subjects(id),
                    term_id INTEGER NOT NULL REFERENCES terms(id),
                    marks INTEGER CHECK (marks BETWEEN 0 AND 100),
                    status TEXT NOT NULL DEFAULT 'active'
                        CHECK (status IN ('active', 'absent')),
                    teacher_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
                    entry_date TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(student_id, subject_id, term_id)
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS attendance (
                    id SERIAL PRIMARY KEY,
                    date DATE NOT NULL,
                    class_name TEXT NOT NULL,
                    boys INTEGER NOT NULL DEFAULT 0 CHECK (boys >= 0),
                    girls INTEGER NOT NULL DEFAULT 0 CHECK (girls >= 0),
                    teacher_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(date, class_name, teacher_id)
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS student_term_attendance (
                    id SERIAL PRIMARY KEY,
                    student_id INTEGER NOT NULL REFERENCES students(id),
                    term_id INTEGER NOT NULL REFERENCES terms(id),
                    academic_year TEXT NOT NULL,
                    total_school_days INTEGER NOT NULL CHECK (total_school_days > 0),
                    attended_days INTEGER NOT NULL CHECK (attended_days >= 0),
                    absent_days INTEGER NOT NULL,
                    attendance_percentage NUMERIC(5, 2) NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(student_id, term_id, academic_year)
                )''')

    # Append-only promotion history
    op.execute('''CREATE TABLE IF NOT EXISTS class_promotions (
                    id SERIAL PRIMARY KEY,
                    student_id INTEGER NOT NULL REFERENCES students(id),
                    from_class TEXT NOT NULL,
                    to_class TEXT NOT NULL,
                    academic_year TEXT NOT NULL,
                    promoted_by INTEGER REFERENCES users(id) ON DELETE SET NULL,
                    promotion_date TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS saved_reports (
                    id SERIAL PRIMARY KEY,
                    term_id INTEGER REFERENCES terms(id) ON DELETE SET NULL,
                    class_name TEXT,
                    academic_year TEXT NOT NULL,
                    ranking_method TEXT NOT NULL,
                    report_data JSONB NOT NULL,
                    generated_by INTEGER REFERENCES users(id) ON DELETE CASCADE,
                    generated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('CREATE INDEX IF NOT EXISTS idx_students_class ON students(current_class, status)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_marks_term ON marks(term_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_marks_student_term ON marks(student_id, term_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_term_attendance_scope ON student_term_attendance(term_id, academic_year)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_promotions_student ON class_promotions(student_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_saved_reports_owner ON saved_reports(generated_by)')


def downgrade() -> None:
    """Drop all tables (destructive)."""
    op.execute('DROP TABLE IF EXISTS saved_reports CASCADE')
    op.execute('DROP TABLE IF EXISTS class_promotions CASCADE')
    op.execute('DROP TABLE IF EXISTS student_term_attendance CASCADE')
    op.execute('DROP TABLE IF EXISTS attendance CASCADE')
    op.execute('DROP TABLE IF EXISTS marks CASCADE')
    op.execute('DROP TABLE IF EXISTS terms CASCADE')
    op.execute('DROP TABLE IF EXISTS class_subjects CASCADE')
    op.execute('DROP TABLE IF EXISTS subjects CASCADE')
    op.execute('DROP TABLE IF EXISTS students CASCADE')
    op.execute('DROP TABLE IF EXISTS users CASCADE')
