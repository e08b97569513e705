"""
GradeLab - Storage bucket setup
Creates every Supabase bucket and, when Appwrite is configured, every Appwrite
bucket. Buckets that already exist are left alone.
Run: python scripts/create_buckets.py [--supabase-only | --appwrite-only]
"""

import sys
import argparse
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from gradelab import config
from gradelab.storage import SupabaseStorage, AppwriteStorage


def _size_limit(bucket: str) -> int:
    return config.BUCKET_SIZE_LIMITS.get(bucket, config.DEFAULT_BUCKET_SIZE_LIMIT)


def create_supabase_buckets(storage: SupabaseStorage) -> list:
    failures = []
    for bucket in config.SUPABASE_BUCKETS.values():
        try:
            created = storage.ensure_bucket(bucket, public=True, file_size_limit=_size_limit(bucket))
            print(f"✅ Supabase {bucket}: {'created' if created else 'already exists'}")
        except Exception as e:
            print(f"❌ Supabase {bucket}: {e}")
            failures.append(("supabase", bucket))
    return failures


def create_appwrite_buckets(storage: AppwriteStorage) -> list:
    failures = []
    for bucket in config.APPWRITE_BUCKETS.values():
        try:
            created = storage.ensure_bucket(bucket, maximum_file_size=_size_limit(bucket),
                                            allowed_extensions=config.ALLOWED_FILE_EXTENSIONS)
            print(f"✅ Appwrite {bucket}: {'created' if created else 'already exists'}")
        except Exception as e:
            print(f"❌ Appwrite {bucket}: {e}")
            failures.append(("appwrite", bucket))
    return failures


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="GradeLab storage bucket setup")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--supabase-only", action="store_true", help="Skip Appwrite")
    group.add_argument("--appwrite-only", action="store_true", help="Skip Supabase")
    args = parser.parse_args(argv)

    failures = []
    if not args.appwrite_only:
        failures += create_supabase_buckets(SupabaseStorage(config.SUPABASE_URL, config.SUPABASE_KEY))

    if not args.supabase_only:
        if config.appwrite_configured():
            failures += create_appwrite_buckets(AppwriteStorage(
                config.APPWRITE_ENDPOINT, config.APPWRITE_PROJECT_ID, config.APPWRITE_API_KEY
            ))
        else:
            print("⚠️  Appwrite not configured (APPWRITE_ENDPOINT / APPWRITE_PROJECT_ID) - skipped.")

    print(f"\n📊 Bucket setup finished with {len(failures)} failure(s).")
    for store, bucket in failures:
        print(f"   - {store}: {bucket}")
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
