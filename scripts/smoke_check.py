"""
GradeLab - Manual smoke checks against the real services in .env.

  python scripts/smoke_check.py storage
  python scripts/smoke_check.py extract --image page.png [--type student-sheet]
  python scripts/smoke_check.py evaluate --paper q.txt --key a.txt --sheet s.txt
"""

import sys
import time
import base64
import argparse
import json
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from gradelab import config


def check_storage() -> bool:
    from gradelab.storage import get_storage
    storage = get_storage()
    bucket = config.SUPABASE_BUCKETS["GRADELAB_UPLOADS"]
    path = f"smoke/probe_{int(time.time())}.txt"
    print(json.dumps(storage.debug_info(bucket, path), indent=2))

    result = storage.upload(bucket, path, b"gradelab smoke probe", "text/plain")
    if not result.ok:
        print(f"❌ Upload failed: {result.error}")
        return False
    print(f"✅ Uploaded: {result.public_url}")
    print(f"   Appwrite file id: {result.appwrite_file_id or '-'}")
    print(f"   Appwrite files in bucket: {len(storage.list_appwrite_files(bucket))}")

    deleted = storage.delete(bucket, path, result.appwrite_file_id)
    if not deleted.success:
        print(f"❌ Delete reported errors: {deleted.errors}")
        return False
    print("✅ Deleted probe file")
    return True


def check_extract(image: str, document_type: str) -> bool:
    from gradelab.ocr_module import get_ocr_engine, file_to_page_images
    data = Path(image).read_bytes()
    pages = file_to_page_images(data, filename=image)
    ocr = get_ocr_engine()
    for i, page in enumerate(pages, start=1):
        result = ocr.recognize_b64(base64.b64encode(page).decode("ascii"), document_type)
        print(f"=== PAGE {i} ({result.engine}) ===\n{result.text[:1500]}\n")
    print(f"✅ Extracted {len(pages)} page(s)")
    return True


def check_evaluate(paper: str, key: str, sheet: str) -> bool:
    from gradelab.evaluator import EvaluationEngine
    from gradelab.llm_evaluator import StudentInfo
    result = EvaluationEngine().evaluate(
        Path(paper).read_text(encoding="utf-8"),
        Path(key).read_text(encoding="utf-8"),
        Path(sheet).read_text(encoding="utf-8"),
        StudentInfo(name="Smoke Test", roll_number="000", class_name="Demo", subject="Demo"),
    )
    print(result["overall_performance"]["personalized_summary"])
    print(f"✅ Graded {len(result['answers'])} of {result['total_questions_detected']} detected questions")
    return True


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="GradeLab smoke checks")
    parser.add_argument("action", choices=["storage", "extract", "evaluate"], help="Check to run")
    parser.add_argument("--image", help="Image or PDF (for 'extract')")
    parser.add_argument("--type", default="question", help="Document type (for 'extract')")
    parser.add_argument("--paper", help="Question paper text file (for 'evaluate')")
    parser.add_argument("--key", help="Answer key text file (for 'evaluate')")
    parser.add_argument("--sheet", help="Student answer text file (for 'evaluate')")
    args = parser.parse_args(argv)

    try:
        if args.action == "storage":
            ok = check_storage()
        elif args.action == "extract":
            if not args.image:
                parser.error("extract needs --image")
            ok = check_extract(args.image, args.type)
        else:
            if not (args.paper and args.key and args.sheet):
                parser.error("evaluate needs --paper, --key and --sheet")
            ok = check_evaluate(args.paper, args.key, args.sheet)
    except Exception as e:
        print(f"❌ {args.action} check failed: {e}")
        return 1
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
