"""
GradeLab - Supabase project migration
Copies table rows from a source Supabase project to a target one, parents
before children, upserting on id. Stops at the first table that fails.

Run:
  SOURCE_SUPABASE_URL=... SOURCE_SUPABASE_KEY=... \
  TARGET_SUPABASE_URL=... TARGET_SUPABASE_KEY=... \
  python scripts/migrate_projects.py [--tables classes students] [--dry-run]
"""

import os
import sys
import argparse

from dotenv import load_dotenv

load_dotenv()

MIGRATION_ORDER = [
    "classes",
    "subjects",
    "class_subjects",
    "students",
    "subject_enrollments",
    "tests",
    "test_results",
    "test_papers",
    "student_answer_sheets",
    "chapter_materials",
    "rubrics",
    "auto_grade_status",
    "course_outcomes",
    "analysis_history",
    "generated_questions",
]

UPSERT_CHUNK = 500
# PostgREST returns at most max-rows (1000 by default) per request.
FETCH_PAGE = 1000


def fetch_all(source, table: str, page_size: int = FETCH_PAGE) -> list:
    """Read every row of a table, one id-ordered page at a time, until a short page."""
    rows, start = [], 0
    while True:
        page = (
            source.table(table).select("*").order("id")
            .range(start, start + page_size - 1).execute().data or []
        )
        rows.extend(page)
        if len(page) < page_size:
            return rows
        start += page_size


def migrate_table(source, target, table: str, dry_run: bool = False) -> bool:
    print(f"Migrating table: {table}")
    try:
        rows = fetch_all(source, table)
    except Exception as e:
        print(f"❌ Error fetching from {table}: {e}")
        return False

    if not rows:
        print(f"   No data found in {table}")
        return True
    if dry_run:
        print(f"   [dry-run] would upsert {len(rows)} records into {table}")
        return True

    try:
        for start in range(0, len(rows), UPSERT_CHUNK):
            target.table(table).upsert(rows[start:start + UPSERT_CHUNK], on_conflict="id").execute()
    except Exception as e:
        print(f"❌ Error inserting into {table}: {e}")
        return False

    print(f"✅ Migrated {len(rows)} records from {table}")
    return True


def migrate(source, target, tables: list, dry_run: bool = False) -> bool:
    ordered = [t for t in MIGRATION_ORDER if t in tables]
    print(f"🚀 Migrating {len(ordered)} table(s){' (dry run)' if dry_run else ''}...")
    for table in ordered:
        if not migrate_table(source, target, table, dry_run=dry_run):
            print(f"❌ Migration failed for {table}")
            return False
    print("✅ Migration completed successfully!")
    return True


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="GradeLab Supabase project migration")
    parser.add_argument("--tables", nargs="+", choices=MIGRATION_ORDER, default=MIGRATION_ORDER,
                        help="Subset of tables to copy (dependency order is kept)")
    parser.add_argument("--dry-run", action="store_true", help="Only count source rows")
    args = parser.parse_args(argv)

    missing = [v for v in ("SOURCE_SUPABASE_URL", "SOURCE_SUPABASE_KEY", "TARGET_SUPABASE_URL", "TARGET_SUPABASE_KEY")
               if not os.getenv(v)]
    if missing:
        print(f"ERROR: missing environment variables: {', '.join(missing)}")
        return 2

    from supabase import create_client
    source = create_client(os.getenv("SOURCE_SUPABASE_URL"), os.getenv("SOURCE_SUPABASE_KEY"))
    target = create_client(os.getenv("TARGET_SUPABASE_URL"), os.getenv("TARGET_SUPABASE_KEY"))
    return 0 if migrate(source, target, args.tables, dry_run=args.dry_run) else 1


if __name__ == "__main__":
    sys.exit(main())
